import stat

import pytest

from laradeploy.errors import ValidationError
from laradeploy.services.config_store import APP_KEYS, ConfigRecord, ConfigStore, parse_record


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


def test_parse_record_handles_comments_quotes_and_blank_lines():
    text = (
        "# Application configuration\n"
        "\n"
        'APP_NAME="shop"\n'
        "DOMAIN='shop.example.com'\n"
        "ENABLE_QUEUE=1\n"
    )

    values = parse_record(text, APP_KEYS, scope="shop.conf")

    assert values == {"APP_NAME": "shop", "DOMAIN": "shop.example.com", "ENABLE_QUEUE": "1"}


@pytest.mark.parametrize(
    "line,message",
    [
        ("NOT_A_KEY=1", "unknown configuration key"),
        ("lowercase=1", "malformed"),
        ("JUST_TEXT", "malformed"),
        ('DOMAIN="$(rm -rf /)"', "not a plain string"),
        ("DOMAIN=`id`", "not a plain string"),
    ],
)
def test_parse_record_rejects_unsafe_or_unknown_lines(line, message):
    with pytest.raises(ValidationError, match=message):
        parse_record(line + "\n", APP_KEYS, scope="shop.conf")


def test_merged_record_prefers_application_values(tmp_path):
    store = ConfigStore(str(tmp_path), logger=DummyLogger())
    store.save_global({"PHP_VERSION": "8.1", "ZERO_DOWNTIME": "0", "WWW_DIR": "/srv/www"})
    store.save_app("shop", {"APP_NAME": "shop", "ZERO_DOWNTIME": "1"})

    merged = store.merged("shop")

    assert merged["PHP_VERSION"] == "8.1"
    assert merged["ZERO_DOWNTIME"] == "1"
    assert "WWW_DIR" not in merged


def test_app_records_are_owner_only_and_update_is_atomic(tmp_path):
    store = ConfigStore(str(tmp_path), logger=DummyLogger())
    store.save_app("shop", {"APP_NAME": "shop", "DB_PASSWORD": "first"})

    updated = store.update("shop", DB_PASSWORD="second", BRANCH="release")

    path = store.app_path("shop")
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert updated["DB_PASSWORD"] == "second"
    assert store.load_app("shop")["BRANCH"] == "release"
    assert [entry.name for entry in path.parent.iterdir()] == ["shop.conf"]


def test_save_app_rejects_unknown_keys(tmp_path):
    store = ConfigStore(str(tmp_path), logger=DummyLogger())

    with pytest.raises(ValidationError, match="Unknown configuration keys"):
        store.save_app("shop", {"SOMETHING_ELSE": "1"})


@pytest.mark.parametrize("value", ['pa"ss', "two\nlines", "$(id)", "`id`"])
def test_save_app_rejects_values_that_cannot_round_trip(tmp_path, value):
    store = ConfigStore(str(tmp_path), logger=DummyLogger())
    store.save_app("shop", {"DB_PASSWORD": "original"})

    with pytest.raises(ValidationError, match="DB_PASSWORD"):
        store.update("shop", DB_PASSWORD=value)

    assert store.load_app("shop")["DB_PASSWORD"] == "original"


def test_list_apps_skips_sample_record(tmp_path):
    store = ConfigStore(str(tmp_path), logger=DummyLogger())
    store.save_app("shop", {"APP_NAME": "shop"})
    store.save_app("blog", {"APP_NAME": "blog"})
    store.save_app("sample", {"APP_NAME": "sample"})

    assert store.list_apps() == ["blog", "shop"]


def test_record_repr_masks_secrets_and_typed_getters():
    record = ConfigRecord(
        {"DB_PASSWORD": "hunter2", "MAX_BACKUPS": "7", "ENABLE_SSL": "yes", "HEALTH_CHECK_ENABLED": "maybe"},
        scope="shop.conf",
    )

    assert "hunter2" not in repr(record)
    assert record.get_int("MAX_BACKUPS", 5) == 7
    assert record.get_int("BACKUP_RETENTION_DAYS", 30) == 30
    assert record.get_bool("ENABLE_SSL") is True
    with pytest.raises(ValidationError, match="must be a boolean"):
        record.get_bool("HEALTH_CHECK_ENABLED")


def test_missing_global_record_is_empty(tmp_path):
    store = ConfigStore(str(tmp_path / "absent"), logger=DummyLogger())

    assert len(store.load_global()) == 0
    assert store.load_app("shop") is None
