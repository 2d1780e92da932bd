import pytest

from laradeploy.errors import ValidationError
from laradeploy.services.config_loader import ConfigLoader


def test_config_loader_loads_yaml_mapping(tmp_path):
    config_file = tmp_path / ".laradeploy.yml"
    config_file.write_text(
        "config_dir: /srv/laradeploy\n"
        "strict: true\n"
        "stage_timeout_seconds: 600\n"
        "pre_hooks:\n"
        "  - php artisan down\n",
        encoding="utf-8",
    )

    loader = ConfigLoader()
    loaded = loader.load(str(config_file))

    assert loaded["config_dir"] == "/srv/laradeploy"
    assert loaded["strict"] is True
    assert loaded["stage_timeout_seconds"] == 600
    assert loaded["pre_hooks"] == ["php artisan down"]


def test_config_loader_wraps_single_hook_string(tmp_path):
    config_file = tmp_path / ".laradeploy.yml"
    config_file.write_text("post_hooks: php artisan up\n", encoding="utf-8")

    assert ConfigLoader().load(str(config_file))["post_hooks"] == ["php artisan up"]


def test_config_loader_rejects_unknown_keys(tmp_path):
    config_file = tmp_path / ".laradeploy.yml"
    config_file.write_text("unknown_key: true\n", encoding="utf-8")

    loader = ConfigLoader()

    with pytest.raises(ValidationError, match="Unknown configuration keys"):
        loader.load(str(config_file))


def test_config_loader_rejects_non_list_stage_names(tmp_path):
    config_file = tmp_path / ".laradeploy.yml"
    config_file.write_text("skip_stages: {assets: true}\n", encoding="utf-8")

    with pytest.raises(ValidationError, match="list of strings"):
        ConfigLoader().load(str(config_file))


def test_config_loader_returns_empty_mapping_without_path():
    assert ConfigLoader().load(None) == {}
