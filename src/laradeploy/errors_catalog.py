"""Actionable error catalog for LaraDeploy."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "no_applications": {
        "what": "No Laravel applications found in {path}.",
        "next": "Place applications under the web root or run `laradeploy setup-app <name> <domain>`.",
    },
    "not_root": {
        "what": "This command must run as root.",
        "next": "Re-run with sudo, or set `require_root: false` for non-privileged test hosts.",
    },
    "missing_tool": {
        "what": "Required command not found: {tool}.",
        "next": "Run `laradeploy provision` to see missing packages and install them first.",
    },
    "invalid_domain": {
        "what": "Invalid domain: {domain}.",
        "next": "Use a fully qualified name such as `shop.example.com`.",
    },
    "unknown_application": {
        "what": "Application not found: {name}.",
        "next": "Run `laradeploy list` to see registered applications.",
    },
    "run_locked": {
        "what": "Another run is already in progress for {name}.",
        "next": "Wait for it to finish, or remove a stale lock at {path} if no run is active.",
    },
    "backup_not_found": {
        "what": "Backup {backup_id} not found for {name}.",
        "next": "Run `laradeploy backup {name}` or pick an id from the backup directory.",
    },
    "stage_failed": {
        "what": "Stage `{stage}` failed for {name}.",
        "next": "Inspect the deploy log and the run report, then re-run `laradeploy deploy {name}`.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
