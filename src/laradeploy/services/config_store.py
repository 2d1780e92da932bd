"""Key-value configuration records for the server and each application.

Records are plain ``KEY=value`` files. They are parsed, never sourced, so a
record can only ever carry data: unknown keys and malformed lines are
rejected instead of being evaluated.
"""

import os
import re
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from laradeploy.constants import PRIVATE_DIR_MODE, SECRET_MODE
from laradeploy.errors import ValidationError

KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")

GLOBAL_KEYS = frozenset(
    {
        "WWW_DIR",
        "BACKUP_DIR",
        "RELEASES_DIR",
        "REPORT_DIR",
        "STATE_DIR",
        "PHP_VERSION",
        "MAX_BACKUPS",
        "BACKUP_RETENTION_DAYS",
        "KEEP_RELEASES",
        "STAGE_TIMEOUT_SECONDS",
        "ZERO_DOWNTIME",
        "ENABLE_SSL",
        "ENABLE_QUEUE",
        "ENABLE_SCHEDULER",
        "ENABLE_MONITORING",
        "ENABLE_FIREWALL",
        "REDIS_ENABLED",
        "SSL_EMAIL",
        "BACKUP_SCHEDULE",
        "LOG_LEVEL",
        "LOG_ROTATION_DAYS",
        "LOG_FORMAT",
    }
)

APP_KEYS = frozenset(
    {
        "APP_NAME",
        "APP_PATH",
        "DOMAIN",
        "PHP_VERSION",
        "DB_NAME",
        "DB_USER",
        "DB_PASSWORD",
        "DB_HOST",
        "DB_PORT",
        "REPO_URL",
        "BRANCH",
        "DEPLOYMENT_METHOD",
        "DEPLOYMENT_HOOKS_ENABLED",
        "ENABLE_SSL",
        "SSL_EMAIL",
        "SSL_AUTO_RENEW",
        "ENABLE_QUEUE",
        "QUEUE_WORKERS",
        "QUEUE_CONNECTION",
        "ENABLE_SCHEDULER",
        "ZERO_DOWNTIME",
        "BACKUP_SCHEDULE",
        "BACKUP_RETENTION_DAYS",
        "MAX_BACKUPS",
        "HEALTH_CHECK_ENABLED",
        "HEALTH_CHECK_PATH",
    }
)

SECRET_KEYS = frozenset({"DB_PASSWORD"})

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off", ""}


class ConfigRecord(Mapping):
    """Ordered, read-only mapping of configuration keys to string values."""

    def __init__(self, items: Optional[Mapping] = None, scope: str = "global"):
        self._items: Dict[str, str] = dict(items or {})
        self.scope = scope

    def __getitem__(self, key: str) -> str:
        return self._items[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        visible = {
            key: ("***" if key in SECRET_KEYS and value else value)
            for key, value in self._items.items()
        }
        return f"ConfigRecord(scope={self.scope!r}, {visible!r})"

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self.get(key)
        if value is None:
            return default
        lowered = value.strip().lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
        raise ValidationError(f"{self.scope}: {key} must be a boolean, got '{value}'.")

    def get_int(self, key: str, default: int) -> int:
        value = self.get(key)
        if value is None or value == "":
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ValidationError(f"{self.scope}: {key} must be an integer, got '{value}'.") from exc

    def get_float(self, key: str, default: float) -> float:
        value = self.get(key)
        if value is None or value == "":
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ValidationError(f"{self.scope}: {key} must be a number, got '{value}'.") from exc

    def merged_with(self, override: Optional["ConfigRecord"]) -> "ConfigRecord":
        items = dict(self._items)
        if override is not None:
            items.update(override)
        scope = override.scope if override is not None else self.scope
        return ConfigRecord(items, scope=scope)

    def with_changes(self, **changes: str) -> "ConfigRecord":
        items = dict(self._items)
        items.update(changes)
        return ConfigRecord(items, scope=self.scope)


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


def parse_record(text: str, allowed_keys, scope: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not KEY_PATTERN.match(key):
            raise ValidationError(f"{scope}:{line_number}: malformed configuration line.")
        if key not in allowed_keys:
            raise ValidationError(f"{scope}:{line_number}: unknown configuration key '{key}'.")

        value = _unquote(value.strip())
        if "\n" in value or "$(" in value or "`" in value:
            raise ValidationError(f"{scope}:{line_number}: value for '{key}' is not a plain string.")
        values[key] = value
    return values


def render_record(values: Mapping, header: str = "") -> str:
    lines: List[str] = []
    if header:
        lines.extend(f"# {line}" for line in header.splitlines())
        lines.append("")
    for key, value in values.items():
        text = str(value)
        if '"' in text or "\n" in text or "$(" in text or "`" in text:
            raise ValidationError(f"Value for '{key}' is not a plain string and cannot be saved.")
        lines.append(f'{key}="{text}"')
    return "\n".join(lines) + "\n"


class ConfigStore:
    """Loads, merges and atomically persists configuration records."""

    GLOBAL_FILE = "config.conf"
    APPS_DIR = "apps"

    def __init__(self, config_dir: str, logger):
        self.config_dir = config_dir
        self.logger = logger

    @property
    def global_path(self) -> Path:
        return Path(self.config_dir) / self.GLOBAL_FILE

    def app_path(self, name: str) -> Path:
        return Path(self.config_dir) / self.APPS_DIR / f"{name}.conf"

    def load_global(self) -> ConfigRecord:
        path = self.global_path
        if not path.exists():
            self.logger.debug("No global configuration at %s; using defaults.", path)
            return ConfigRecord(scope=str(path))
        return ConfigRecord(self._read(path, GLOBAL_KEYS), scope=str(path))

    def load_app(self, name: str) -> Optional[ConfigRecord]:
        path = self.app_path(name)
        if not path.exists():
            return None
        return ConfigRecord(self._read(path, APP_KEYS), scope=str(path))

    def merged(self, name: str) -> ConfigRecord:
        global_record = self.load_global()
        inheritable = {key: value for key, value in global_record.items() if key in APP_KEYS}
        return ConfigRecord(inheritable, scope=global_record.scope).merged_with(self.load_app(name))

    def list_apps(self) -> List[str]:
        apps_dir = Path(self.config_dir) / self.APPS_DIR
        if not apps_dir.is_dir():
            return []
        return sorted(
            path.stem
            for path in apps_dir.glob("*.conf")
            if path.is_file() and path.stem != "sample"
        )

    def save_app(self, name: str, values: Mapping, header: str = "") -> ConfigRecord:
        unknown = sorted(set(values) - APP_KEYS)
        if unknown:
            raise ValidationError(f"Unknown configuration keys: {', '.join(unknown)}")
        path = self.app_path(name)
        self._write_atomic(path, render_record(values, header=header), secret=True)
        return ConfigRecord(values, scope=str(path))

    def update(self, name: str, **changes: str) -> ConfigRecord:
        """Applies changes to an application record and rewrites it atomically."""
        current = self.load_app(name) or ConfigRecord(scope=str(self.app_path(name)))
        updated = current.with_changes(**changes)
        changed_keys = ", ".join(sorted(changes))
        self.logger.debug("Updating configuration for %s: %s", name, changed_keys)
        return self.save_app(name, updated)

    def save_global(self, values: Mapping, header: str = "") -> ConfigRecord:
        unknown = sorted(set(values) - GLOBAL_KEYS)
        if unknown:
            raise ValidationError(f"Unknown configuration keys: {', '.join(unknown)}")
        self._write_atomic(self.global_path, render_record(values, header=header), secret=False)
        return ConfigRecord(values, scope=str(self.global_path))

    def _read(self, path: Path, allowed_keys) -> Dict[str, str]:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ValidationError(f"Could not read configuration '{path}': {exc}") from exc
        return parse_record(text, allowed_keys, scope=str(path))

    def _write_atomic(self, path: Path, content: str, secret: bool):
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(path.parent, PRIVATE_DIR_MODE)
        except OSError as exc:
            self.logger.warning("Could not set permissions on %s: %s", path.parent, exc)

        fd, temp_path = tempfile.mkstemp(prefix=".conf-", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write(content)
            os.chmod(temp_path, SECRET_MODE if secret else 0o644)
            os.replace(temp_path, path)
        except OSError as exc:
            raise ValidationError(f"Could not write configuration '{path}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

