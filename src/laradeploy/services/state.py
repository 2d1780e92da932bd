"""Deployment history persisted between runs."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from laradeploy.errors import DeployError
from laradeploy.models import PipelineRun, RunStatus


class StateService:
    """Remembers the last deployment outcome per application."""

    SCHEMA_VERSION = 1

    def __init__(self, state_file: str, logger):
        self.state_file = state_file
        self.logger = logger

    def load(self) -> Dict[str, Any]:
        if not os.path.exists(self.state_file):
            return {"schema_version": self.SCHEMA_VERSION, "applications": {}}

        try:
            with open(self.state_file, "r", encoding="utf-8") as file_obj:
                data = json.load(file_obj)
        except (OSError, json.JSONDecodeError) as exc:
            raise DeployError(f"Could not read state file '{self.state_file}': {exc}") from exc

        if not isinstance(data, dict) or not isinstance(data.get("applications", {}), dict):
            raise DeployError(f"State file '{self.state_file}' has invalid format.")

        data.setdefault("applications", {})
        return data

    def save(self, state: Dict[str, Any]):
        os.makedirs(os.path.dirname(self.state_file) or ".", exist_ok=True)
        state["schema_version"] = self.SCHEMA_VERSION
        state["updated_at"] = self._now()

        fd, temp_path = tempfile.mkstemp(
            prefix="history-", suffix=".json", dir=os.path.dirname(self.state_file) or "."
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(state, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.state_file)
        except OSError as exc:
            raise DeployError(f"Could not write state file '{self.state_file}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

    def get_app(self, app_name: str) -> Dict[str, Any]:
        return self.load()["applications"].get(app_name, {})

    def last_deployed(self, app_name: str) -> Optional[str]:
        return self.get_app(app_name).get("last_deployed")

    def record_run(self, run: PipelineRun):
        state = self.load()
        entry = state["applications"].setdefault(run.app_name, {})
        status = run.final_status or run.status
        entry["last_status"] = status.value
        entry["last_attempt"] = run.finished_at or self._now()
        entry["last_error"] = run.error
        if status == RunStatus.SUCCESS:
            entry["last_deployed"] = run.finished_at or self._now()
            if run.release_id:
                entry["release_id"] = run.release_id
        if run.backup_id:
            entry["backup_id"] = run.backup_id
        self.save(state)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
