"""Laravel ``.env`` reading and in-place patching."""

import base64
import os
import secrets
import tempfile
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

from laradeploy.constants import FILE_MODE
from laradeploy.errors import DeploymentError

SECRET_ENV_KEYS = {"DB_PASSWORD", "APP_KEY", "REDIS_PASSWORD", "MAIL_PASSWORD"}


class EnvFileService:
    """Reads and patches environment files while keeping their layout."""

    def __init__(self, logger):
        self.logger = logger

    def read(self, path: str) -> Dict[str, str]:
        values: Dict[str, str] = {}
        if not os.path.isfile(path):
            return values

        with open(path, "r", encoding="utf-8") as file_obj:
            for raw_line in file_obj:
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, _, value = line.partition("=")
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
                    value = value[1:-1]
                values[key.strip()] = value
        return values

    def ensure_exists(self, app_root: str, path: str) -> bool:
        """Seeds ``.env`` from ``.env.example`` when missing. Returns True if a file exists."""
        if os.path.isfile(path):
            return True
        example = os.path.join(app_root, ".env.example")
        if not os.path.isfile(example):
            return False
        with open(example, "r", encoding="utf-8") as src:
            content = src.read()
        self._write_atomic(path, content)
        self.logger.info("Created %s from .env.example", path)
        return True

    def patch(self, path: str, changes: Mapping[str, str]):
        """Replaces existing keys in place and appends the missing ones."""
        if not os.path.isfile(path):
            raise DeploymentError(f"Environment file not found: {path}")

        with open(path, "r", encoding="utf-8") as file_obj:
            lines = file_obj.read().splitlines()

        pending = dict(changes)
        output = []
        for line in lines:
            key = line.split("=", 1)[0].strip() if "=" in line and not line.lstrip().startswith("#") else None
            if key in pending:
                output.append(f"{key}={self._format_value(pending.pop(key))}")
            else:
                output.append(line)
        for key, value in pending.items():
            output.append(f"{key}={self._format_value(value)}")

        self._write_atomic(path, "\n".join(output) + "\n")
        self.logger.debug(
            "Patched %s: %s",
            path,
            ", ".join(f"{key}=***" if key in SECRET_ENV_KEYS else f"{key}={value}" for key, value in changes.items()),
        )

    def snapshot(self, path: str) -> Tuple[str, Optional[str]]:
        """Returns the real file behind ``path`` and its content, None when missing."""
        real_path = os.path.realpath(path)
        if not os.path.isfile(real_path):
            return real_path, None
        with open(real_path, "r", encoding="utf-8") as file_obj:
            return real_path, file_obj.read()

    def restore_snapshot(self, real_path: str, content: Optional[str]):
        if content is None:
            try:
                if os.path.exists(real_path):
                    os.remove(real_path)
            except OSError as exc:
                raise DeploymentError(f"Could not remove environment file '{real_path}': {exc}") from exc
        else:
            self._write_atomic(real_path, content)
        self.logger.info("Restored %s", real_path)

    @staticmethod
    def generate_app_key() -> str:
        return "base64:" + base64.b64encode(secrets.token_bytes(32)).decode("ascii")

    @staticmethod
    def has_app_key(values: Mapping[str, str]) -> bool:
        return values.get("APP_KEY", "").startswith("base64:")

    @staticmethod
    def _format_value(value: str) -> str:
        if value == "" or any(char in value for char in " #'\""):
            return '"' + value.replace('"', '\\"') + '"'
        return value

    def _write_atomic(self, path: str, content: str):
        target = Path(path)
        # Writes go through the link target so a shared .env stays shared.
        if target.is_symlink():
            target = target.resolve()
        mode = FILE_MODE
        if target.exists():
            mode = target.stat().st_mode & 0o777

        fd, temp_path = tempfile.mkstemp(prefix=".env-", dir=str(target.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write(content)
            os.chmod(temp_path, mode)
            os.replace(temp_path, target)
        except OSError as exc:
            raise DeploymentError(f"Could not write environment file '{path}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass
