"""Archive creation and safe extraction helpers for LaraDeploy."""

import fnmatch
import os
import tarfile
from pathlib import Path
from typing import Iterable, Tuple

from laradeploy.errors import BackupError, RollbackError


class ArchiveService:
    """Builds compressed file archives and extracts them without escaping the target."""

    def is_within_dir(self, base_dir: Path, candidate: Path) -> bool:
        try:
            return os.path.commonpath([str(base_dir), str(candidate)]) == str(base_dir)
        except ValueError:
            return False

    @staticmethod
    def is_excluded(relative_path: str, excluded_paths: Iterable[str], patterns: Iterable[str]) -> bool:
        relative_path = relative_path.strip("/")
        for excluded in excluded_paths:
            excluded = excluded.strip("/")
            if relative_path == excluded or relative_path.startswith(excluded + "/"):
                return True
        name = relative_path.rsplit("/", 1)[-1]
        return any(fnmatch.fnmatch(name, pattern) for pattern in patterns)

    def create_tar(
        self,
        source_dir: str,
        archive_path: str,
        excluded_paths: Iterable[str] = (),
        patterns: Iterable[str] = (),
    ) -> Tuple[int, int]:
        """Archives the contents of ``source_dir``. Returns (file count, archive size)."""
        excluded_paths = tuple(excluded_paths)
        patterns = tuple(patterns)
        partial_path = f"{archive_path}.partial"
        counter = {"files": 0}

        def _filter(member: tarfile.TarInfo):
            if self.is_excluded(member.name, excluded_paths, patterns):
                return None
            if member.isfile():
                counter["files"] += 1
            return member

        try:
            with tarfile.open(partial_path, "w:gz") as tar:
                for entry in sorted(os.listdir(source_dir)):
                    tar.add(os.path.join(source_dir, entry), arcname=entry, filter=_filter)
            os.replace(partial_path, archive_path)
        except (OSError, tarfile.TarError) as exc:
            if os.path.exists(partial_path):
                os.remove(partial_path)
            raise BackupError(f"Failed to archive {source_dir}: {exc}") from exc

        return counter["files"], os.path.getsize(archive_path)

    def validate_tar(self, archive_path: str, destination_dir: str):
        """Checks every entry of the archive without extracting anything."""
        base = Path(destination_dir).resolve()
        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                self._check_members(base, tar.getmembers())
        except tarfile.TarError as exc:
            raise RollbackError(f"Invalid archive: {archive_path}") from exc

    def safe_extract_tar(self, archive_path: str, destination_dir: str):
        base = Path(destination_dir).resolve()

        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                members = tar.getmembers()
                self._check_members(base, members)

                base.mkdir(parents=True, exist_ok=True)
                if hasattr(tarfile, "fully_trusted_filter"):
                    tar.extractall(str(base), members=members, filter="fully_trusted")
                else:
                    tar.extractall(str(base), members=members)
        except tarfile.TarError as exc:
            raise RollbackError(f"Invalid archive: {archive_path}") from exc

    def _check_members(self, base: Path, members: Iterable[tarfile.TarInfo]):
        for member in members:
            target_path = (base / member.name).resolve()
            if not self.is_within_dir(base, target_path):
                raise RollbackError(
                    f"Unsafe archive entry detected: `{member.name}`. "
                    "Extraction aborted to prevent path traversal."
                )

            if member.isdev() or member.isfifo():
                raise RollbackError(
                    f"Unsafe archive entry detected: `{member.name}` is a special file."
                )

            if member.issym():
                # Absolute links are kept when they point back inside the target,
                # e.g. public/storage created by `artisan storage:link`.
                if os.path.isabs(member.linkname):
                    link_target = Path(member.linkname).resolve()
                else:
                    link_target = (target_path.parent / member.linkname).resolve()
                if not self.is_within_dir(base, link_target):
                    raise RollbackError(
                        f"Unsafe archive entry detected: `{member.name}` links outside the target."
                    )

            if member.islnk():
                link_target = (base / member.linkname).resolve()
                if not self.is_within_dir(base, link_target):
                    raise RollbackError(
                        f"Unsafe archive entry detected: `{member.name}` links outside the target."
                    )
