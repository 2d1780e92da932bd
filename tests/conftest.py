import gzip
import json
from pathlib import Path

import pytest
from rich.console import Console

from laradeploy.errors import BackupError
from laradeploy.models import Application, AppFlags, DatabaseRef, Settings


class DummyLogger:
    def __init__(self):
        self.messages = []

    def _log(self, level, message, *args, **_kwargs):
        self.messages.append((level, message % args if args else str(message)))

    def debug(self, message, *args, **kwargs):
        self._log("debug", message, *args, **kwargs)

    def info(self, message, *args, **kwargs):
        self._log("info", message, *args, **kwargs)

    def warning(self, message, *args, **kwargs):
        self._log("warning", message, *args, **kwargs)

    def error(self, message, *args, **kwargs):
        self._log("error", message, *args, **kwargs)

    def exception(self, message, *args, **kwargs):
        self._log("error", message, *args, **kwargs)

    def text(self, level=None):
        return "\n".join(message for lvl, message in self.messages if level is None or lvl == level)


class FakeDatabase:
    """Stands in for DatabaseService; dumps are small gzip files."""

    def __init__(self, exists=True, fail_dump=False, fail_restore=False):
        self._exists = exists
        self.fail_dump = fail_dump
        self.fail_restore = fail_restore
        self.dumps = []
        self.restored = []
        self.provisioned = []
        self.optimized = []

    def exists(self, database, timeout=None):
        return self._exists

    def dump(self, database, dest_path, timeout=None):
        if self.fail_dump:
            raise BackupError("mysqldump: Got error 2002")
        with gzip.open(dest_path, "wb") as file_obj:
            file_obj.write(f"-- dump of {database.name}\n".encode("utf-8"))
        self.dumps.append(dest_path)
        return dest_path

    def restore(self, database, dump_path, timeout=None):
        if self.fail_restore:
            from laradeploy.errors import RollbackError

            raise RollbackError("mysql: access denied")
        self.restored.append(dump_path)

    def provision(self, database, password, timeout=None):
        self.provisioned.append((database.name, password))

    def optimize(self, database, timeout=None):
        self.optimized.append(database.name)


def write_laravel_app(root: Path, php: str = "^8.1", version: str = "v1") -> Path:
    root.mkdir(parents=True, exist_ok=True)
    (root / "artisan").write_text("#!/usr/bin/env php\n<?php\n", encoding="utf-8")
    (root / "composer.json").write_text(
        json.dumps({"require": {"php": php, "laravel/framework": "^10.0"}}),
        encoding="utf-8",
    )
    (root / "app").mkdir(exist_ok=True)
    (root / "app" / "Kernel.php").write_text(f"<?php // {version}\n", encoding="utf-8")
    (root / "routes").mkdir(exist_ok=True)
    (root / "routes" / "web.php").write_text("<?php\n", encoding="utf-8")
    (root / "storage" / "logs").mkdir(parents=True, exist_ok=True)
    (root / "storage" / "logs" / "laravel.log").write_text("boot\n", encoding="utf-8")
    (root / "storage" / "app").mkdir(parents=True, exist_ok=True)
    (root / "storage" / "app" / "upload.txt").write_text("user upload\n", encoding="utf-8")
    (root / "vendor").mkdir(exist_ok=True)
    (root / "vendor" / "autoload.php").write_text("<?php\n", encoding="utf-8")
    (root / ".env").write_text("APP_NAME=demo\nAPP_KEY=\nDB_DATABASE=old\n", encoding="utf-8")
    (root / ".env.example").write_text("APP_NAME=demo\nAPP_KEY=\n", encoding="utf-8")
    return root


def snapshot_tree(root: Path, skip=("vendor", "storage/logs", "storage/framework")):
    """Relative path -> content for every regular file outside ``skip``."""
    files = {}
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root).as_posix()
        if any(relative == item or relative.startswith(item + "/") for item in skip):
            continue
        if path.is_file() and not path.is_symlink():
            files[relative] = path.read_bytes()
    return files


@pytest.fixture
def logger():
    return DummyLogger()


@pytest.fixture
def console():
    return Console(quiet=True)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        config_dir=str(tmp_path / "etc"),
        www_dir=str(tmp_path / "www"),
        backup_dir=str(tmp_path / "backups"),
        releases_dir=str(tmp_path / "releases"),
        report_dir=str(tmp_path / "reports"),
        state_dir=str(tmp_path / "state"),
        default_runtime_version="8.1",
        max_backups=5,
        retention_days=30,
        keep_releases=3,
        stage_timeout_seconds=60.0,
        require_root=False,
    )


@pytest.fixture
def make_app(settings):
    def _make(name="shop", zero_downtime=False, database=True, queue=False, **kwargs):
        root = write_laravel_app(Path(settings.www_dir) / name)
        return Application(
            name=name,
            root_path=str(root),
            domain=f"{name}.example.com",
            runtime_version="8.1",
            database_ref=DatabaseRef(name=f"{name}_db", user=f"{name}_user") if database else None,
            flags=AppFlags(zero_downtime=zero_downtime, queue=queue),
            **kwargs,
        )

    return _make
