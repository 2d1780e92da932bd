"""Shared domain models for LaraDeploy."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class AppFlags:
    ssl: bool = False
    queue: bool = False
    scheduler: bool = False
    zero_downtime: bool = False


@dataclass(frozen=True)
class DatabaseRef:
    """Where an application's data lives. Credentials stay in the config record."""

    name: str
    user: str
    host: str = "localhost"
    port: str = "3306"


@dataclass(frozen=True)
class Application:
    """Immutable descriptor produced by a registry scan."""

    name: str
    root_path: str
    domain: str
    runtime_version: str
    deployment_method: str = "local"
    repo_url: str = ""
    branch: str = "main"
    database_ref: Optional[DatabaseRef] = None
    flags: AppFlags = field(default_factory=AppFlags)


@dataclass(frozen=True)
class Settings:
    """Run-wide settings resolved once from the global config and operator options."""

    config_dir: str
    www_dir: str
    backup_dir: str
    releases_dir: str
    report_dir: str
    state_dir: str
    default_runtime_version: str
    max_backups: int
    retention_days: int
    keep_releases: int
    stage_timeout_seconds: float
    skip_stages: Tuple[str, ...] = ()
    pre_hooks: Tuple[str, ...] = ()
    post_hooks: Tuple[str, ...] = ()
    health_check_timeout: float = 10.0
    require_root: bool = True
    strict: bool = False

    @property
    def lock_dir(self) -> str:
        return f"{self.state_dir}/locks"


@dataclass(frozen=True)
class Backup:
    app_name: str
    backup_id: str
    directory: str
    created_at: str
    file_archive: str
    data_archive: Optional[str]
    manifest: Dict[str, Any]


@dataclass(frozen=True)
class Release:
    app_name: str
    release_id: str
    directory: str
    created_at: str
    sealed: bool = False


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATUSES = (RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.ROLLED_BACK)


@dataclass
class StageResult:
    name: str
    status: str
    started_at: str
    ended_at: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PipelineRun:
    """Outcome of one application's pipeline within a single invocation."""

    app_name: str
    status: RunStatus = RunStatus.PENDING
    stage_results: List[StageResult] = field(default_factory=list)
    rollback_eligible: bool = False
    final_status: Optional[RunStatus] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    rollback_error: Optional[str] = None
    backup_id: Optional[str] = None
    release_id: Optional[str] = None
    cancelled: bool = False
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.final_status is not None

    @property
    def failed_stage(self) -> Optional[str]:
        for result in self.stage_results:
            if result.status == "failed":
                return result.name
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "app": self.app_name,
            "status": (self.final_status or self.status).value,
            "rollback_eligible": self.rollback_eligible,
            "error_kind": self.error_kind,
            "error": self.error,
            "rollback_error": self.rollback_error,
            "backup_id": self.backup_id,
            "release_id": self.release_id,
            "cancelled": self.cancelled,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "stages": [
                {
                    "name": result.name,
                    "status": result.status,
                    "started_at": result.started_at,
                    "ended_at": result.ended_at,
                    "error": result.error,
                }
                for result in self.stage_results
            ],
        }
