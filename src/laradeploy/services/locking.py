"""Per-application run exclusivity."""

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from laradeploy.errors import DeploymentError
from laradeploy.errors_catalog import actionable_error


class LockService:
    """Non-blocking advisory locks, one file per application.

    The kernel drops the lock when the holding process exits, so a crashed
    run never leaves an application locked.
    """

    def __init__(self, lock_dir: str, logger):
        self.lock_dir = lock_dir
        self.logger = logger

    def lock_path(self, app_name: str) -> Path:
        return Path(self.lock_dir) / f"{app_name}.lock"

    @contextmanager
    def hold(self, app_name: str) -> Iterator[None]:
        path = self.lock_path(app_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o600)
        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise DeploymentError(
                    actionable_error("run_locked", name=app_name, path=str(path))
                ) from exc

            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode("ascii"))
            self.logger.debug("Acquired run lock %s", path)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                self.logger.debug("Released run lock %s", path)
        finally:
            os.close(fd)
