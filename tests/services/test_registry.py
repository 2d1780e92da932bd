import json
import stat
from pathlib import Path

import pytest

from conftest import write_laravel_app
from laradeploy.errors import ValidationError
from laradeploy.services.config_store import ConfigStore
from laradeploy.services.registry import ApplicationRegistry
from laradeploy.services.validation import ValidationService


def build_registry(settings, logger, console):
    store = ConfigStore(settings.config_dir, logger=logger)
    registry = ApplicationRegistry(
        settings=settings,
        config_store=store,
        validation_service=ValidationService(),
        logger=logger,
        console=console,
    )
    return registry, store


def test_scan_finds_laravel_apps_sorted_by_name(settings, logger, console):
    www = Path(settings.www_dir)
    write_laravel_app(www / "shop")
    write_laravel_app(www / "blog")
    (www / "static-site").mkdir(parents=True)
    (www / "static-site" / "index.html").write_text("<html></html>", encoding="utf-8")
    write_laravel_app(www / ".releases")
    registry, _ = build_registry(settings, logger, console)

    applications = registry.scan()

    assert [app.name for app in applications] == ["blog", "shop"]


def test_new_application_gets_generated_record_without_leaking_password(settings, logger, console):
    write_laravel_app(Path(settings.www_dir) / "shop")
    registry, store = build_registry(settings, logger, console)

    app = registry.get("shop")

    record = store.load_app("shop")
    assert app.domain == "shop.local"
    assert record["DB_NAME"] == "shop_db"
    assert record["DB_USER"] == "shop_user"
    assert len(record["DB_PASSWORD"]) == 24
    assert app.database_ref.name == "shop_db"
    assert stat.S_IMODE(store.app_path("shop").stat().st_mode) == 0o600
    assert record["DB_PASSWORD"] not in logger.text()


def test_runtime_version_precedence(settings, logger, console):
    www = Path(settings.www_dir)
    write_laravel_app(www / "pinned", php="^8.2")
    write_laravel_app(www / "composer", php="^8.2")
    write_laravel_app(www / "plain")
    (www / "plain" / "composer.json").write_text(
        json.dumps({"require": {"laravel/framework": "^10.0"}}), encoding="utf-8"
    )
    registry, store = build_registry(settings, logger, console)
    store.save_app("pinned", {"APP_NAME": "pinned", "PHP_VERSION": "8.3", "DOMAIN": "pinned.example.com"})

    versions = {app.name: app.runtime_version for app in registry.scan()}

    assert versions == {"composer": "8.2", "pinned": "8.3", "plain": "8.1"}


def test_names_differing_only_by_case_are_rejected(settings, logger, console):
    www = Path(settings.www_dir)
    write_laravel_app(www / "Shop")
    write_laravel_app(www / "shop")
    registry, _ = build_registry(settings, logger, console)

    with pytest.raises(ValidationError, match="Duplicate application name"):
        registry.scan()


def test_scan_skips_application_with_invalid_record(settings, logger, console):
    www = Path(settings.www_dir)
    write_laravel_app(www / "alpha")
    write_laravel_app(www / "beta")
    registry, store = build_registry(settings, logger, console)
    store.save_app("beta", {"APP_NAME": "beta", "PHP_VERSION": "8.4"})
    failures = {}

    applications = registry.scan(failures=failures)

    assert [app.name for app in applications] == ["alpha"]
    assert list(failures) == ["beta"]
    assert isinstance(failures["beta"], ValidationError)
    assert "8.4" in str(failures["beta"])


def test_get_unknown_application_is_actionable(settings, logger, console):
    Path(settings.www_dir).mkdir(parents=True)
    registry, _ = build_registry(settings, logger, console)

    with pytest.raises(ValidationError, match="laradeploy list"):
        registry.get("missing")


def test_register_validates_domain_and_updates_existing_record(settings, logger, console):
    write_laravel_app(Path(settings.www_dir) / "shop")
    registry, store = build_registry(settings, logger, console)

    created = registry.register("shop", "Shop.Example.com")
    password = created["DB_PASSWORD"]
    updated = registry.register("shop", "store.example.com")

    assert created["DOMAIN"] == "shop.example.com"
    assert updated["DOMAIN"] == "store.example.com"
    assert updated["DB_PASSWORD"] == password
    with pytest.raises(ValidationError, match="Invalid domain"):
        registry.register("shop", "bad domain")


def test_flags_come_from_the_merged_record(settings, logger, console):
    write_laravel_app(Path(settings.www_dir) / "shop")
    registry, store = build_registry(settings, logger, console)
    store.save_global({"ZERO_DOWNTIME": "1", "ENABLE_SSL": "1"})
    store.save_app("shop", {"APP_NAME": "shop", "DOMAIN": "shop.example.com", "ENABLE_SSL": "0", "ENABLE_QUEUE": "1"})

    app = registry.get("shop")

    assert app.flags.zero_downtime is True
    assert app.flags.ssl is False
    assert app.flags.queue is True
    assert app.database_ref is None
