"""Zero-downtime release directories and the atomic ``current`` switch."""

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from laradeploy.constants import RELEASE_EXCLUDES, RELEASE_SEAL_FILE
from laradeploy.errors import DeployError, DeploymentError
from laradeploy.models import Application, Release, Settings

RELEASE_ID_PATTERN = re.compile(r"^(\d{14})(?:-(\d+))?$")
STORAGE_SKELETON = (
    "app/public",
    "framework/cache",
    "framework/sessions",
    "framework/views",
    "logs",
)


def release_sort_key(release_id: str) -> Tuple[str, int]:
    match = RELEASE_ID_PATTERN.match(release_id)
    if not match:
        return ("", 0)
    return (match.group(1), int(match.group(2) or 0))


class ReleaseManager:
    """Builds releases off to the side and switches traffic to them atomically.

    Per application, under ``<releases_dir>/<app>/``::

        releases/<release_id>/   one immutable copy of the code
        shared/                  storage/ and .env, linked into every release
        current -> releases/<release_id>
    """

    def __init__(
        self,
        settings: Settings,
        filesystem_service,
        process_control,
        logger,
        console,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings
        self.filesystem_service = filesystem_service
        self.process_control = process_control
        self.logger = logger
        self.console = console
        self.clock = clock

    def base_dir(self, app_name: str) -> Path:
        return Path(self.settings.releases_dir) / app_name

    def releases_dir(self, app_name: str) -> Path:
        return self.base_dir(app_name) / "releases"

    def shared_dir(self, app_name: str) -> Path:
        return self.base_dir(app_name) / "shared"

    def current_link(self, app_name: str) -> Path:
        return self.base_dir(app_name) / "current"

    def release_path(self, app_name: str, release_id: str) -> Path:
        return self.releases_dir(app_name) / release_id

    def prepare_release(self, app: Application, builder: Optional[Callable[[str], None]] = None) -> str:
        """Materializes a new release directory without touching the live one.

        When ``builder`` is given it runs inside the new directory and the
        release is sealed on success or discarded on any failure.
        """
        source = Path(app.root_path)
        if not source.is_dir():
            raise DeploymentError(f"Application directory not found: {app.root_path}")

        self.releases_dir(app.name).mkdir(parents=True, exist_ok=True)
        self._seed_shared(app)

        release_id, release_dir = self._allocate(app.name)
        self.logger.info("Preparing release %s for %s", release_id, app.name)
        try:
            # copytree needs a fresh destination; the allocated placeholder is replaced.
            release_dir.rmdir()
            self.filesystem_service.copy_tree(str(source), str(release_dir), excludes=RELEASE_EXCLUDES)
            shared = self.shared_dir(app.name)
            os.symlink(str(shared / "storage"), str(release_dir / "storage"))
            os.symlink(str(shared / ".env"), str(release_dir / ".env"))
        except OSError as exc:
            self.filesystem_service.cleanup_dir(str(release_dir))
            raise DeploymentError(f"Could not prepare release {release_id} for {app.name}: {exc}") from exc

        if builder is not None:
            try:
                builder(str(release_dir))
            except BaseException:
                self.filesystem_service.cleanup_dir(str(release_dir))
                raise
            self.seal(app.name, release_id)

        return release_id

    def seal(self, app_name: str, release_id: str):
        """Marks a release as fully built; only sealed releases can go live."""
        release_dir = self.release_path(app_name, release_id)
        if not release_dir.is_dir():
            raise DeploymentError(f"Release {release_id} not found for {app_name}")
        (release_dir / RELEASE_SEAL_FILE).write_text(self.clock().isoformat() + "\n", encoding="utf-8")

    def is_sealed(self, app_name: str, release_id: str) -> bool:
        return (self.release_path(app_name, release_id) / RELEASE_SEAL_FILE).is_file()

    def activate(self, app: Application, release_id: str) -> Optional[str]:
        """Points ``current`` at ``release_id``. Returns the previously active id."""
        release_dir = self.release_path(app.name, release_id)
        if not release_dir.is_dir():
            raise DeploymentError(f"Release {release_id} not found for {app.name}")
        if not self.is_sealed(app.name, release_id):
            raise DeploymentError(
                f"Release {release_id} for {app.name} has not completed its build and cannot be activated."
            )

        previous = self.current_release(app.name)
        link = self.current_link(app.name)
        temp_link = link.with_name(f".current-{os.getpid()}")
        try:
            if temp_link.is_symlink() or temp_link.exists():
                temp_link.unlink()
            os.symlink(str(release_dir), str(temp_link))
            # rename(2) over the old link: readers see the old or the new release, nothing between.
            os.replace(str(temp_link), str(link))
        except OSError as exc:
            if temp_link.is_symlink():
                temp_link.unlink()
            raise DeploymentError(f"Could not switch {app.name} to release {release_id}: {exc}") from exc

        self.console.print(f"[green]{app.name} is now serving release {release_id}.[/green]")
        self.logger.info("Activated release %s for %s (previous: %s)", release_id, app.name, previous)

        if self.process_control is not None:
            try:
                self.process_control.reload_workers(app)
            except DeployError as exc:
                self.logger.warning("Worker reload after activating %s failed: %s", release_id, exc)
        return previous

    def deactivate(self, app_name: str):
        """Removes ``current``; used when the first release of an app is rolled back."""
        link = self.current_link(app_name)
        if link.is_symlink():
            link.unlink()
            self.logger.info("Removed current release link for %s", app_name)

    def current_release(self, app_name: str) -> Optional[str]:
        link = self.current_link(app_name)
        if not link.is_symlink():
            return None
        return Path(os.readlink(str(link))).name

    def list_releases(self, app_name: str) -> List[Release]:
        """Releases for ``app_name``, newest first."""
        root = self.releases_dir(app_name)
        if not root.is_dir():
            return []
        releases = []
        for entry in root.iterdir():
            if not entry.is_dir() or not RELEASE_ID_PATTERN.match(entry.name):
                continue
            releases.append(
                Release(
                    app_name=app_name,
                    release_id=entry.name,
                    directory=str(entry),
                    created_at=datetime.strptime(entry.name[:14], "%Y%m%d%H%M%S").isoformat(),
                    sealed=(entry / RELEASE_SEAL_FILE).is_file(),
                )
            )
        releases.sort(key=lambda release: release_sort_key(release.release_id), reverse=True)
        return releases

    def prune_releases(self, app_name: str, keep_n: Optional[int] = None) -> List[str]:
        keep_n = max(1, keep_n if keep_n is not None else self.settings.keep_releases)
        active = self.current_release(app_name)
        removed = []
        for index, release in enumerate(self.list_releases(app_name)):
            if index < keep_n or release.release_id == active:
                continue
            self.filesystem_service.cleanup_dir(release.directory)
            removed.append(release.release_id)
            self.logger.info("Pruned release %s for %s", release.release_id, app_name)
        return removed

    def discard(self, app_name: str, release_id: str):
        if self.current_release(app_name) == release_id:
            raise DeploymentError(f"Refusing to discard active release {release_id} for {app_name}")
        self.filesystem_service.cleanup_dir(str(self.release_path(app_name, release_id)))
        self.logger.info("Discarded release %s for %s", release_id, app_name)

    def _allocate(self, app_name: str) -> Tuple[str, Path]:
        base_id = self.clock().strftime("%Y%m%d%H%M%S")
        suffix = 0
        while True:
            release_id = base_id if suffix == 0 else f"{base_id}-{suffix}"
            release_dir = self.release_path(app_name, release_id)
            try:
                release_dir.mkdir()
            except FileExistsError:
                suffix += 1
                continue
            return release_id, release_dir

    def _seed_shared(self, app: Application):
        shared = self.shared_dir(app.name)
        shared.mkdir(parents=True, exist_ok=True)
        source = Path(app.root_path)

        shared_storage = shared / "storage"
        if not shared_storage.exists():
            if (source / "storage").is_dir():
                self.filesystem_service.copy_tree(str(source / "storage"), str(shared_storage))
            for relative in STORAGE_SKELETON:
                (shared_storage / relative).mkdir(parents=True, exist_ok=True)

        shared_env = shared / ".env"
        if not shared_env.exists() and (source / ".env").is_file():
            shared_env.write_bytes((source / ".env").read_bytes())
            os.chmod(str(shared_env), 0o640)
