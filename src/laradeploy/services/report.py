"""Run report generation service."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from laradeploy.constants import SECRET_MODE
from laradeploy.models import Application, PipelineRun, RunStatus


class ReportService:
    """Collects per-application outcomes and writes the run report JSON.

    Reporting must never change how a run ends, so every public method
    logs its failures instead of raising them.
    """

    def __init__(
        self,
        report_dir: str,
        logger,
        host_facts: Optional[Callable[[], Dict[str, Any]]] = None,
        last_deployed: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.report_dir = report_dir
        self.logger = logger
        self.host_facts = host_facts
        self.last_deployed = last_deployed
        self.report: Dict[str, Any] = {
            "run_id": None,
            "timestamp": None,
            "finished_at": None,
            "duration_seconds": None,
            "status": "running",
            "summary": {"total": 0, "successful": 0, "failed": 0, "rolled_back": 0, "pending": 0},
            "applications": [],
            "server_info": {},
            "error": None,
        }

    @property
    def report_file(self) -> str:
        return os.path.join(self.report_dir, f"deploy-report-{self.report['run_id']}.json")

    def start_run(self, run_id: str):
        self.report["run_id"] = run_id
        self.report["timestamp"] = self._now()
        self.report["status"] = "running"

    def add_application(self, app: Application, run: PipelineRun):
        try:
            status = run.final_status or run.status
            last_deployed = self.last_deployed(app.name) if self.last_deployed else None
            entry = {
                "name": app.name,
                "path": app.root_path,
                "domain": app.domain,
                "status": status.value,
                "runtime_version": app.runtime_version,
                "last_deployed": last_deployed,
            }
            entry.update(
                {
                    key: value
                    for key, value in run.to_dict().items()
                    if key not in {"app", "status"}
                }
            )
            self.report["applications"].append(entry)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("Could not record %s in the run report: %s", app.name, exc)

    def add_rejected(self, path: str, run: PipelineRun):
        """Records an application that failed before a descriptor could be built."""
        entry = {
            "name": run.app_name,
            "path": path,
            "domain": None,
            "status": RunStatus.FAILED.value,
            "runtime_version": None,
            "last_deployed": None,
        }
        entry.update({key: value for key, value in run.to_dict().items() if key not in {"app", "status"}})
        self.report["applications"].append(entry)

    def add_skipped(self, app: Application, reason: str):
        self.report["applications"].append(
            {
                "name": app.name,
                "path": app.root_path,
                "domain": app.domain,
                "status": RunStatus.PENDING.value,
                "runtime_version": app.runtime_version,
                "last_deployed": None,
                "error": reason,
                "stages": [],
            }
        )

    def finalize(self, status: str, error: Optional[str] = None) -> Optional[str]:
        try:
            applications: List[Dict[str, Any]] = self.report["applications"]
            summary = self.report["summary"]
            summary["total"] = len(applications)
            summary["successful"] = sum(1 for app in applications if app["status"] == "success")
            summary["rolled_back"] = sum(1 for app in applications if app["status"] == "rolled_back")
            summary["failed"] = sum(1 for app in applications if app["status"] in {"failed", "rolled_back"})
            summary["pending"] = sum(1 for app in applications if app["status"] == "pending")

            self.report["status"] = status
            self.report["error"] = error
            self.report["finished_at"] = self._now()
            if self.report.get("timestamp"):
                started_at = datetime.fromisoformat(self.report["timestamp"])
                finished_at = datetime.fromisoformat(self.report["finished_at"])
                self.report["duration_seconds"] = (finished_at - started_at).total_seconds()
            if self.host_facts is not None:
                self.report["server_info"] = self.host_facts()
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("Could not finalize the run report: %s", exc)
        return self.write()

    def write(self) -> Optional[str]:
        try:
            os.makedirs(self.report_dir, exist_ok=True)
        except OSError as exc:
            self.logger.warning("Could not create report directory '%s': %s", self.report_dir, exc)
            return None

        fd, temp_path = tempfile.mkstemp(prefix="deploy-report-", suffix=".json", dir=self.report_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.report, file_obj, indent=2, sort_keys=True, default=str)
                file_obj.write("\n")
            os.chmod(temp_path, SECRET_MODE)
            os.replace(temp_path, self.report_file)
        except (OSError, TypeError, ValueError) as exc:
            self.logger.warning("Could not write report file '%s': %s", self.report_file, exc)
            try:
                os.remove(temp_path)
            except OSError:
                pass
            return None
        return self.report_file

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
