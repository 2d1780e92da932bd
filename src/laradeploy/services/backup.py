"""Point-in-time application snapshots and their retention."""

import json
import os
import re
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from laradeploy.constants import (
    BACKUP_DATABASE_ARCHIVE,
    BACKUP_FILES_ARCHIVE,
    BACKUP_MANIFEST_FILE,
    PRIVATE_DIR_MODE,
    VOLATILE_PATHS,
    VOLATILE_PATTERNS,
)
from laradeploy.errors import BackupError, DeployError, RollbackError
from laradeploy.errors_catalog import actionable_error
from laradeploy.models import Application, Backup, Settings

BACKUP_ID_PATTERN = re.compile(r"^(\d{8}_\d{6})(?:-(\d+))?$")
BACKUP_ID_FORMAT = "%Y%m%d_%H%M%S"


def backup_sort_key(backup_id: str) -> Tuple[str, int]:
    match = BACKUP_ID_PATTERN.match(backup_id)
    if not match:
        return ("", 0)
    return (match.group(1), int(match.group(2) or 0))


def backup_created_at(backup_id: str) -> datetime:
    match = BACKUP_ID_PATTERN.match(backup_id)
    if not match:
        raise BackupError(f"Invalid backup id: {backup_id}")
    return datetime.strptime(match.group(1), BACKUP_ID_FORMAT)


class BackupManager:
    """Creates, lists, restores and prunes application backups.

    Layout: ``<backup_dir>/<app>/<backup_id>/`` holding ``files.tar.gz``,
    an optional ``database.sql.gz`` and ``manifest.json``. Backup ids are
    second-resolution timestamps; backups created within the same second
    get a ``-N`` suffix so creation order is never lost.
    """

    def __init__(
        self,
        settings: Settings,
        archive_service,
        database_service,
        filesystem_service,
        logger,
        console,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings
        self.archive_service = archive_service
        self.database_service = database_service
        self.filesystem_service = filesystem_service
        self.logger = logger
        self.console = console
        self.clock = clock

    def app_backup_root(self, app_name: str) -> Path:
        return Path(self.settings.backup_dir) / app_name

    def create_backup(self, app: Application, timeout: Optional[float] = None) -> Backup:
        root = Path(app.root_path)
        if not root.is_dir():
            raise BackupError(f"Application directory not found: {app.root_path}")

        app_root = self.app_backup_root(app.name)
        app_root.mkdir(parents=True, exist_ok=True)
        self.filesystem_service.set_permissions(str(app_root), PRIVATE_DIR_MODE)

        now = self.clock()
        backup_id, backup_dir = self._allocate(app_root, now)
        self.console.print(f"[blue]Creating backup {backup_id} for {app.name}...[/blue]")
        self.logger.info("Creating backup %s for %s", backup_id, app.name)

        data_archive = self._dump_database(app, backup_dir, timeout)

        files_archive = backup_dir / BACKUP_FILES_ARCHIVE
        try:
            file_count, archive_size = self.archive_service.create_tar(
                str(root),
                str(files_archive),
                excluded_paths=VOLATILE_PATHS,
                patterns=VOLATILE_PATTERNS,
            )
        except BackupError:
            self.filesystem_service.cleanup_dir(str(backup_dir))
            raise

        manifest = {
            "app": app.name,
            "timestamp": now.astimezone().isoformat(),
            "backup_id": backup_id,
            "files": {"count": file_count, "size": archive_size},
            "database": "yes" if data_archive else "no",
        }
        self._write_manifest(backup_dir / BACKUP_MANIFEST_FILE, manifest)

        self.logger.info(
            "Backup %s created for %s (%s files, %s bytes, database: %s)",
            backup_id,
            app.name,
            file_count,
            archive_size,
            manifest["database"],
        )
        return Backup(
            app_name=app.name,
            backup_id=backup_id,
            directory=str(backup_dir),
            created_at=manifest["timestamp"],
            file_archive=str(files_archive),
            data_archive=str(data_archive) if data_archive else None,
            manifest=manifest,
        )

    def backup_database(self, app: Application, timeout: Optional[float] = None) -> str:
        """Standalone compressed dump kept apart from full snapshots."""
        if app.database_ref is None:
            raise BackupError(f"{app.name} has no database configured.")
        dumps_dir = self.app_backup_root(app.name) / "db-dumps"
        dumps_dir.mkdir(parents=True, exist_ok=True)
        self.filesystem_service.set_permissions(str(dumps_dir), PRIVATE_DIR_MODE)
        dest = dumps_dir / f"{self.clock().strftime(BACKUP_ID_FORMAT)}.sql.gz"
        return self.database_service.dump(app.database_ref, str(dest), timeout=timeout)

    def list_backups(self, app_name: str) -> List[Backup]:
        """Backups for ``app_name``, newest first."""
        app_root = self.app_backup_root(app_name)
        if not app_root.is_dir():
            return []

        backups = []
        for entry in app_root.iterdir():
            if entry.is_dir() and BACKUP_ID_PATTERN.match(entry.name):
                backups.append(self._load(app_name, entry))
        backups.sort(key=lambda backup: backup_sort_key(backup.backup_id), reverse=True)
        return backups

    def get(self, app_name: str, backup_id: str) -> Optional[Backup]:
        for backup in self.list_backups(app_name):
            if backup.backup_id == backup_id:
                return backup
        return None

    def latest(self, app_name: str) -> Optional[Backup]:
        backups = self.list_backups(app_name)
        return backups[0] if backups else None

    def restore(self, app: Application, backup_id: str, timeout: Optional[float] = None):
        """Puts files and data back to the state captured by ``backup_id``.

        Everything in the application root is replaced except volatile paths,
        which are neither archived nor touched, so repeating a restore
        converges on the same tree.
        """
        backup = self.get(app.name, backup_id)
        if backup is None:
            raise RollbackError(actionable_error("backup_not_found", backup_id=backup_id, name=app.name))
        if not os.path.isfile(backup.file_archive):
            raise RollbackError(f"Backup {backup_id} for {app.name} has no file archive.")

        self.console.print(f"[yellow]Restoring {app.name} from backup {backup_id}...[/yellow]")
        self.logger.info("Restoring %s from backup %s", app.name, backup_id)

        try:
            root = Path(app.root_path)
            root.mkdir(parents=True, exist_ok=True)
            # Nothing is removed until the archive is known to extract cleanly.
            self.archive_service.validate_tar(backup.file_archive, str(root))
            self._clear_tree(root, "")
            self.archive_service.safe_extract_tar(backup.file_archive, str(root))

            if backup.data_archive and app.database_ref is not None:
                self.database_service.restore(app.database_ref, backup.data_archive, timeout=timeout)
        except RollbackError:
            raise
        except (DeployError, OSError) as exc:
            raise RollbackError(f"Restore of {app.name} from {backup_id} failed: {exc}") from exc

        self.logger.info("Restored %s from backup %s", app.name, backup_id)

    def cleanup_retention(
        self,
        app_name: str,
        max_backups: Optional[int] = None,
        retention_days: Optional[int] = None,
    ) -> List[str]:
        """Deletes backups outside the retention policy. Returns the removed ids."""
        max_backups = max(1, max_backups if max_backups is not None else self.settings.max_backups)
        retention_days = retention_days if retention_days is not None else self.settings.retention_days

        backups = self.list_backups(app_name)
        cutoff = self.clock() - timedelta(days=retention_days)

        keep = backups[:max_backups]
        has_recent = any(backup_created_at(backup.backup_id) >= cutoff for backup in backups)
        if has_recent:
            keep = [backup for backup in keep if backup_created_at(backup.backup_id) >= cutoff]

        keep_ids = {backup.backup_id for backup in keep}
        removed = []
        for backup in reversed(backups):
            if backup.backup_id in keep_ids:
                continue
            self.filesystem_service.cleanup_dir(backup.directory)
            removed.append(backup.backup_id)
            self.logger.info("Removed old backup %s for %s", backup.backup_id, app_name)

        if removed:
            self.console.print(
                f"[dim]Retention for {app_name}: kept {len(keep_ids)}, removed {len(removed)}.[/dim]"
            )
        return removed

    def _allocate(self, app_root: Path, now: datetime) -> Tuple[str, Path]:
        base_id = now.strftime(BACKUP_ID_FORMAT)
        suffix = 0
        while True:
            backup_id = base_id if suffix == 0 else f"{base_id}-{suffix}"
            backup_dir = app_root / backup_id
            try:
                backup_dir.mkdir()
            except FileExistsError:
                suffix += 1
                continue
            except OSError as exc:
                raise BackupError(f"Could not create backup directory {backup_dir}: {exc}") from exc
            self.filesystem_service.set_permissions(str(backup_dir), PRIVATE_DIR_MODE)
            return backup_id, backup_dir

    def _dump_database(self, app: Application, backup_dir: Path, timeout: Optional[float]) -> Optional[Path]:
        if app.database_ref is None:
            self.logger.warning("No database configured for %s; skipping data dump.", app.name)
            return None

        try:
            if not self.database_service.exists(app.database_ref, timeout=timeout):
                self.logger.warning(
                    "Database %s for %s is missing or unreachable; backup will contain files only.",
                    app.database_ref.name,
                    app.name,
                )
                return None
            dest = backup_dir / BACKUP_DATABASE_ARCHIVE
            self.database_service.dump(app.database_ref, str(dest), timeout=timeout)
            return dest
        except DeployError as exc:
            self.logger.warning("Database dump for %s failed: %s", app.name, exc)
            self.console.print(f"[yellow]Warning:[/yellow] database dump skipped for {app.name}.")
            return None

    def _load(self, app_name: str, backup_dir: Path) -> Backup:
        manifest_path = backup_dir / BACKUP_MANIFEST_FILE
        manifest: Dict = {}
        if manifest_path.is_file():
            try:
                manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                self.logger.warning("Unreadable backup manifest %s: %s", manifest_path, exc)
                manifest = {}

        data_archive = backup_dir / BACKUP_DATABASE_ARCHIVE
        return Backup(
            app_name=app_name,
            backup_id=backup_dir.name,
            directory=str(backup_dir),
            created_at=manifest.get("timestamp") or backup_created_at(backup_dir.name).isoformat(),
            file_archive=str(backup_dir / BACKUP_FILES_ARCHIVE),
            data_archive=str(data_archive) if data_archive.is_file() else None,
            manifest=manifest,
        )

    def _clear_tree(self, directory: Path, relative: str):
        for entry in sorted(directory.iterdir()):
            entry_relative = f"{relative}/{entry.name}" if relative else entry.name
            if self.archive_service.is_excluded(entry_relative, VOLATILE_PATHS, VOLATILE_PATTERNS):
                continue
            holds_volatile = any(path.startswith(entry_relative + "/") for path in VOLATILE_PATHS)
            if holds_volatile and entry.is_dir() and not entry.is_symlink():
                self._clear_tree(entry, entry_relative)
                continue
            self.filesystem_service.remove_path(str(entry))

    def _write_manifest(self, path: Path, manifest: Dict):
        fd, temp_path = tempfile.mkstemp(prefix="manifest-", suffix=".json", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(manifest, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, path)
        except OSError as exc:
            self.logger.warning("Could not write backup manifest '%s': %s", path, exc)
            try:
                os.remove(temp_path)
            except OSError:
                pass
