"""Filesystem helpers for LaraDeploy."""

import fnmatch
import logging
import os
import shutil
import sys
from typing import Iterable

from rich.console import Console


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except OSError as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def set_tree_permissions(self, root: str, dir_mode: int, file_mode: int, script_mode: int):
        if sys.platform == "win32" or not os.path.exists(root):
            return

        for current_root, dirs, files in os.walk(root):
            for directory in dirs:
                self.set_permissions(os.path.join(current_root, directory), dir_mode)
            for file_name in files:
                path = os.path.join(current_root, file_name)
                if os.path.islink(path):
                    continue
                mode = script_mode if file_name.endswith(".sh") or file_name == "artisan" else file_mode
                self.set_permissions(path, mode)

    def cleanup_dir(self, path: str):
        if os.path.islink(path):
            os.unlink(path)
            return
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
                self.logger.debug("Removed directory: %s", path)
            except OSError as exc:
                message = f"Warning: Could not remove {path}: {exc}"
                self.console.print(f"[yellow]{message}[/yellow]")
                self.logger.warning(message)

    def remove_path(self, path: str):
        if os.path.islink(path) or os.path.isfile(path):
            os.unlink(path)
        elif os.path.isdir(path):
            shutil.rmtree(path)

    def copy_tree(self, source: str, destination: str, excludes: Iterable[str] = ()):
        """Copies ``source`` into ``destination`` skipping top-level-relative ``excludes``."""
        exclude_list = [item.strip("/") for item in excludes]

        def _ignore(directory: str, names):
            relative_dir = os.path.relpath(directory, source)
            ignored = set()
            for name in names:
                relative = name if relative_dir == "." else os.path.join(relative_dir, name)
                relative = relative.replace(os.sep, "/")
                if any(relative == pattern or fnmatch.fnmatch(relative, pattern) for pattern in exclude_list):
                    ignored.add(name)
            return ignored

        shutil.copytree(source, destination, symlinks=True, ignore=_ignore)

    def disk_free_bytes(self, path: str) -> int:
        try:
            return shutil.disk_usage(path).free
        except OSError:
            return 0
