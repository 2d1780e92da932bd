"""Input validation helpers for LaraDeploy."""

import json
import re
from pathlib import Path
from typing import Any, Dict, Optional

from packaging.version import InvalidVersion, Version

from laradeploy.constants import SUPPORTED_RUNTIME_VERSIONS
from laradeploy.errors import ValidationError
from laradeploy.errors_catalog import actionable_error

DOMAIN_PATTERN = re.compile(r"^[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
APP_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
CONSTRAINT_VERSION_PATTERN = re.compile(r"(\d+)\.(\d+)")


class ValidationService:
    """Validates application layout, names, domains and runtime versions."""

    MARKER_FILE = "artisan"
    PACKAGE_FILE = "composer.json"
    FRAMEWORK_PACKAGE = "laravel/framework"

    def is_valid_domain(self, domain: str) -> bool:
        return bool(DOMAIN_PATTERN.match(domain or "")) and ".." not in domain

    def ensure_domain(self, domain: str) -> str:
        if not self.is_valid_domain(domain):
            raise ValidationError(actionable_error("invalid_domain", domain=domain))
        return domain.lower()

    def ensure_app_name(self, name: str) -> str:
        if not APP_NAME_PATTERN.match(name or ""):
            raise ValidationError(
                f"Invalid application name '{name}'. Use letters, digits, dots, dashes or underscores."
            )
        return name

    def ensure_runtime_version(self, value: str) -> str:
        if value not in SUPPORTED_RUNTIME_VERSIONS:
            raise ValidationError(
                f"Unsupported PHP version '{value}'. "
                f"Supported versions: {', '.join(SUPPORTED_RUNTIME_VERSIONS)}"
            )
        return value

    def read_package_manifest(self, app_path: Path) -> Optional[Dict[str, Any]]:
        manifest_path = app_path / self.PACKAGE_FILE
        if not manifest_path.is_file():
            return None
        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ValidationError(f"Invalid {self.PACKAGE_FILE} in {app_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError(f"{self.PACKAGE_FILE} in {app_path} must be a JSON object.")
        return data

    def is_application(self, app_path: Path) -> bool:
        """True when the directory holds a Laravel application."""
        if not app_path.is_dir() or not (app_path / self.MARKER_FILE).is_file():
            return False
        try:
            manifest = self.read_package_manifest(app_path)
        except ValidationError:
            return False
        if manifest is None:
            return False
        require = manifest.get("require") or {}
        return isinstance(require, dict) and self.FRAMEWORK_PACKAGE in require

    def runtime_from_constraint(self, constraint: str) -> Optional[str]:
        """Maps a composer ``php`` constraint onto the lowest supported version it allows."""
        match = CONSTRAINT_VERSION_PATTERN.search(constraint or "")
        if not match:
            return None

        try:
            declared = Version(f"{match.group(1)}.{match.group(2)}")
        except InvalidVersion:
            return None

        for candidate in SUPPORTED_RUNTIME_VERSIONS:
            if Version(candidate) >= declared:
                return candidate
        return None
