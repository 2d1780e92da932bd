import pytest

from laradeploy.errors_catalog import actionable_error


def test_actionable_error_formats_message_with_suggested_action():
    message = actionable_error("stage_failed", stage="migrate", name="shop")

    assert "Stage `migrate` failed for shop." in message
    assert "Suggested action:" in message
    assert "laradeploy deploy shop" in message


def test_actionable_error_rejects_unknown_code():
    with pytest.raises(KeyError):
        actionable_error("no_such_error")
