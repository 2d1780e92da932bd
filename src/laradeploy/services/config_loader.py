"""Operator options loaded from YAML."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from laradeploy.errors import ValidationError


class ConfigLoader:
    """Loads YAML option files for CLI defaults.

    These are per-invocation operator options. Application and host
    configuration lives in the KEY=value records of the config store.
    """

    SUPPORTED_KEYS = {
        "config_dir",
        "verbose",
        "log_file",
        "silent",
        "require_root",
        "strict",
        "skip_stages",
        "pre_hooks",
        "post_hooks",
        "stage_timeout_seconds",
        "health_check_timeout",
    }
    LIST_KEYS = {"skip_stages", "pre_hooks", "post_hooks"}

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ValidationError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ValidationError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ValidationError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ValidationError(f"Unknown configuration keys: {unknown_list}")

        for key in self.LIST_KEYS & set(parsed):
            value = parsed[key]
            if isinstance(value, str):
                parsed[key] = [value]
            elif not isinstance(value, list) or not all(isinstance(item, str) for item in value):
                raise ValidationError(f"Configuration key '{key}' must be a list of strings.")

        return parsed
