import logging
import os
import subprocess
import uuid
from typing import Any, Dict, Iterable, List, Optional

import requests
from rich.console import Console
from rich.table import Table

from .constants import (
    DEFAULT_BACKUP_DIR,
    DEFAULT_CONFIG_DIR,
    DEFAULT_KEEP_RELEASES,
    DEFAULT_MAX_BACKUPS,
    DEFAULT_RELEASES_DIR,
    DEFAULT_REPORT_DIR,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_RUNTIME_VERSION,
    DEFAULT_STAGE_TIMEOUT_SECONDS,
    DEFAULT_STATE_DIR,
    DEFAULT_WWW_DIR,
    DIR_MODE,
    PRIVATE_DIR_MODE,
)
from .errors import DeployError, RunCancelled, SSLError, ValidationError
from .errors_catalog import actionable_error
from .models import Application, PipelineRun, RunStatus, Settings
from .services.archive import ArchiveService
from .services.backup import BackupManager
from .services.command_runner import CommandRunner
from .services.config_store import ConfigRecord, ConfigStore
from .services.database import DatabaseService
from .services.envfile import EnvFileService
from .services.filesystem import FileSystemService
from .services.health import HealthService
from .services.locking import LockService
from .services.pipeline import STAGE_NAMES, PipelineExecutor, PipelineServices
from .services.process_control import ProcessControlService
from .services.registry import ApplicationRegistry
from .services.release import ReleaseManager
from .services.report import ReportService
from .services.ssl import SSLService
from .services.state import StateService
from .services.validation import ValidationService

console = Console()
logger = logging.getLogger("laradeploy")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PRECONDITION = 2

REQUIRED_TOOLS = ("php", "composer", "git", "mysql", "mysqldump", "tar", "systemctl")
OPTIONAL_TOOLS = ("npm", "certbot", "crontab", "mysqlcheck", "nginx")


def build_settings(config_dir: str, record: ConfigRecord, options: Optional[Dict[str, Any]] = None) -> Settings:
    """Resolves run-wide settings: operator options, then the global record, then defaults."""
    options = options or {}
    validation = ValidationService()

    skip_stages = tuple(options.get("skip_stages") or ())
    unknown = sorted(set(skip_stages) - set(STAGE_NAMES))
    if unknown:
        raise ValidationError(
            f"Unknown stage(s) in skip_stages: {', '.join(unknown)}. Valid stages: {', '.join(STAGE_NAMES)}"
        )

    stage_timeout = options.get("stage_timeout_seconds")
    if stage_timeout is None:
        stage_timeout = record.get_float("STAGE_TIMEOUT_SECONDS", DEFAULT_STAGE_TIMEOUT_SECONDS)

    www_dir = record.get("WWW_DIR") or DEFAULT_WWW_DIR
    return Settings(
        config_dir=config_dir,
        www_dir=www_dir,
        backup_dir=record.get("BACKUP_DIR") or DEFAULT_BACKUP_DIR,
        releases_dir=record.get("RELEASES_DIR") or DEFAULT_RELEASES_DIR,
        report_dir=record.get("REPORT_DIR") or DEFAULT_REPORT_DIR,
        state_dir=record.get("STATE_DIR") or DEFAULT_STATE_DIR,
        default_runtime_version=validation.ensure_runtime_version(
            record.get("PHP_VERSION") or DEFAULT_RUNTIME_VERSION
        ),
        max_backups=max(1, record.get_int("MAX_BACKUPS", DEFAULT_MAX_BACKUPS)),
        retention_days=max(0, record.get_int("BACKUP_RETENTION_DAYS", DEFAULT_RETENTION_DAYS)),
        keep_releases=max(1, record.get_int("KEEP_RELEASES", DEFAULT_KEEP_RELEASES)),
        stage_timeout_seconds=float(stage_timeout),
        skip_stages=skip_stages,
        pre_hooks=tuple(options.get("pre_hooks") or ()),
        post_hooks=tuple(options.get("post_hooks") or ()),
        health_check_timeout=float(options.get("health_check_timeout") or 10.0),
        require_root=bool(options.get("require_root", True)),
        strict=bool(options.get("strict", False)),
    )


def exit_code_for(runs: Iterable[PipelineRun], strict: bool = False) -> int:
    failing = {RunStatus.FAILED, RunStatus.ROLLED_BACK} if strict else {RunStatus.FAILED}
    for run in runs:
        if run.cancelled or (run.final_status or run.status) in failing:
            return EXIT_FAILED
    return EXIT_OK


class LaraDeploy:
    """Entry point behind every CLI command. Each public command returns an exit code."""

    def __init__(
        self,
        config_dir: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        silent: bool = False,
    ):
        self.config_dir = config_dir or DEFAULT_CONFIG_DIR
        self.console = Console(quiet=True) if silent else console

        self.config_store = ConfigStore(config_dir=self.config_dir, logger=logger)
        self.settings = build_settings(self.config_dir, self.config_store.load_global(), options)

        self.validation_service = ValidationService()
        self.command_runner = CommandRunner(logger=logger)
        self.filesystem_service = FileSystemService(logger=logger, console=self.console)
        self.archive_service = ArchiveService()
        self.env_service = EnvFileService(logger=logger)
        self.database_service = DatabaseService(
            logger=logger,
            console=self.console,
            run_cmd=self._run_cmd,
            subprocess_module=subprocess,
        )
        self.process_control = ProcessControlService(logger=logger, run_cmd=self._run_cmd)
        self.ssl_service = SSLService(logger=logger, console=self.console, run_cmd=self._run_cmd)
        self.health_service = HealthService(
            logger=logger,
            requests_module=requests,
            timeout_seconds=self.settings.health_check_timeout,
        )
        self.backup_manager = BackupManager(
            settings=self.settings,
            archive_service=self.archive_service,
            database_service=self.database_service,
            filesystem_service=self.filesystem_service,
            logger=logger,
            console=self.console,
        )
        self.release_manager = ReleaseManager(
            settings=self.settings,
            filesystem_service=self.filesystem_service,
            process_control=self.process_control,
            logger=logger,
            console=self.console,
        )
        self.registry = ApplicationRegistry(
            settings=self.settings,
            config_store=self.config_store,
            validation_service=self.validation_service,
            logger=logger,
            console=self.console,
        )
        self.lock_service = LockService(lock_dir=self.settings.lock_dir, logger=logger)
        self.state_service = StateService(
            state_file=os.path.join(self.settings.state_dir, "history.json"),
            logger=logger,
        )

    def _run_cmd(self, cmd: List[str], **kwargs):
        return self.command_runner.run(cmd, **kwargs)

    def build_executor(self) -> PipelineExecutor:
        services = PipelineServices(
            command_runner=self.command_runner,
            backup_manager=self.backup_manager,
            release_manager=self.release_manager,
            database_service=self.database_service,
            env_service=self.env_service,
            config_store=self.config_store,
            process_control=self.process_control,
            health_service=self.health_service,
            filesystem_service=self.filesystem_service,
        )
        return PipelineExecutor(
            settings=self.settings,
            services=services,
            lock_service=self.lock_service,
            logger=logger,
            console=self.console,
        )

    def _require_root(self):
        if self.settings.require_root and hasattr(os, "geteuid") and os.geteuid() != 0:
            raise ValidationError(actionable_error("not_root"))

    def _select(
        self, app_name: Optional[str] = None, failures: Optional[Dict[str, DeployError]] = None
    ) -> List[Application]:
        if app_name:
            return [self.registry.get(app_name)]
        applications = self.registry.scan(failures=failures)
        if not applications and not failures:
            raise ValidationError(actionable_error("no_applications", path=self.settings.www_dir))
        return applications

    def _precondition_failed(self, exc: DeployError) -> int:
        self.console.print(f"[bold red]Error:[/bold red] {exc}")
        logger.error(str(exc))
        return EXIT_PRECONDITION

    def deploy(self, app_name: Optional[str] = None) -> int:
        rejected: Dict[str, DeployError] = {}
        try:
            self._require_root()
            applications = self._select(app_name, failures=rejected)
        except DeployError as exc:
            return self._precondition_failed(exc)

        run_id = uuid.uuid4().hex[:10]
        report = ReportService(
            report_dir=self.settings.report_dir,
            logger=logger,
            host_facts=lambda: self.health_service.host_facts(self.settings.www_dir),
            last_deployed=self._last_deployed,
        )
        report.start_run(run_id)
        logger.info(
            "Starting deployment run %s for %s application(s)", run_id, len(applications) + len(rejected)
        )

        # Applications whose record could not be loaded fail without touching the batch.
        rejected_runs = []
        for name, exc in sorted(rejected.items()):
            run = PipelineRun(app_name=name, error_kind=exc.kind, error=str(exc))
            run.status = run.final_status = RunStatus.FAILED
            self.console.print(f"[bold red]{name}:[/bold red] {exc}")
            report.add_rejected(os.path.join(self.settings.www_dir, name), run)
            rejected_runs.append(run)

        executor = self.build_executor()
        runs: List[PipelineRun] = []
        error = None
        try:
            runs = executor.run_batch(applications, self.config_store.merged, on_complete=self._record_history)
        except (KeyboardInterrupt, RunCancelled):
            # Only reachable outside any application; nothing is in flight.
            executor.cancelled = True
            error = "Operation cancelled by user."
            self.console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")

        by_name = {run.app_name: run for run in runs}
        for app in applications:
            run = by_name.get(app.name)
            if run is None or run.status == RunStatus.PENDING:
                report.add_skipped(app, "Run cancelled before this application started.")
            else:
                report.add_application(app, run)

        runs = rejected_runs + runs
        if executor.cancelled:
            status = "cancelled"
            error = error or "Operation cancelled by user."
        elif all((run.final_status or run.status) == RunStatus.SUCCESS for run in runs):
            status = "success"
        elif any((run.final_status or run.status) == RunStatus.SUCCESS for run in runs):
            status = "partial"
        else:
            status = "failed"

        report_path = report.finalize(status, error)
        self._print_summary(runs)
        if report_path:
            self.console.print(f"[blue]Run report:[/blue] {report_path}")

        exit_code = exit_code_for(runs, strict=self.settings.strict)
        if executor.cancelled:
            exit_code = EXIT_FAILED
        logger.info("Deployment run %s finished: %s", run_id, status)
        return exit_code

    def backup(self, app_name: Optional[str] = None) -> int:
        try:
            self._require_root()
            applications = self._select(app_name)
        except DeployError as exc:
            return self._precondition_failed(exc)

        failures = 0
        for app in applications:
            try:
                with self.lock_service.hold(app.name):
                    backup = self.backup_manager.create_backup(app)
                    config = self.config_store.merged(app.name)
                    self.backup_manager.cleanup_retention(
                        app.name,
                        max_backups=config.get_int("MAX_BACKUPS", self.settings.max_backups),
                        retention_days=config.get_int("BACKUP_RETENTION_DAYS", self.settings.retention_days),
                    )
                self.console.print(f"[green]{app.name}:[/green] backup {backup.backup_id} created.")
            except DeployError as exc:
                failures += 1
                self.console.print(f"[bold red]{app.name}:[/bold red] {exc}")
                logger.error("Backup of %s failed: %s", app.name, exc)
        return EXIT_FAILED if failures else EXIT_OK

    def restore(self, app_name: str, backup_id: Optional[str] = None) -> int:
        try:
            self._require_root()
            app = self.registry.get(app_name)
        except DeployError as exc:
            return self._precondition_failed(exc)

        try:
            with self.lock_service.hold(app.name):
                backup = (
                    self.backup_manager.get(app.name, backup_id)
                    if backup_id
                    else self.backup_manager.latest(app.name)
                )
                if backup is None:
                    raise ValidationError(
                        actionable_error("backup_not_found", backup_id=backup_id or "<latest>", name=app.name)
                    )
                self.backup_manager.restore(app, backup.backup_id)
        except DeployError as exc:
            self.console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            return EXIT_FAILED

        self.console.print(f"[green]{app.name} restored from backup {backup.backup_id}.[/green]")
        return EXIT_OK

    def ssl(self, app_name: Optional[str] = None) -> int:
        try:
            self._require_root()
            applications = self._select(app_name)
        except DeployError as exc:
            return self._precondition_failed(exc)

        if not app_name:
            applications = [app for app in applications if app.flags.ssl]
            if not applications:
                self.console.print("[yellow]No applications have ENABLE_SSL set.[/yellow]")
                return EXIT_OK

        failures = 0
        for app in applications:
            config = self.config_store.merged(app.name)
            try:
                self.ssl_service.obtain(app, email=config.get("SSL_EMAIL") or None)
            except SSLError as exc:
                failures += 1
                self.console.print(f"[yellow]{exc}[/yellow]")
                logger.warning(str(exc))
                continue
            if not app.flags.ssl:
                self.config_store.update(app.name, ENABLE_SSL="1")
        return EXIT_FAILED if failures else EXIT_OK

    def db_backup(self, app_name: str) -> int:
        try:
            self._require_root()
            app = self.registry.get(app_name)
        except DeployError as exc:
            return self._precondition_failed(exc)

        try:
            dump_path = self.backup_manager.backup_database(app)
        except DeployError as exc:
            self.console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            return EXIT_FAILED
        self.console.print(f"[green]Database dump written to {dump_path}[/green]")
        return EXIT_OK

    def db_optimize(self, app_name: str) -> int:
        try:
            self._require_root()
            app = self.registry.get(app_name)
        except DeployError as exc:
            return self._precondition_failed(exc)

        if app.database_ref is None:
            self.console.print(f"[yellow]{app.name} has no database configured.[/yellow]")
            return EXIT_FAILED
        try:
            self.database_service.optimize(app.database_ref)
        except DeployError as exc:
            self.console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            return EXIT_FAILED
        self.console.print(f"[green]Database {app.database_ref.name} optimized.[/green]")
        return EXIT_OK

    def list_apps(self) -> int:
        try:
            self._require_root()
            applications = self.registry.scan()
        except DeployError as exc:
            return self._precondition_failed(exc)

        if not applications:
            self.console.print(f"[yellow]No Laravel applications found in {self.settings.www_dir}.[/yellow]")
            return EXIT_OK

        table = Table(title="Laravel applications")
        table.add_column("Name", style="cyan")
        table.add_column("Domain")
        table.add_column("PHP")
        table.add_column("Method")
        table.add_column("Zero downtime")
        table.add_column("Last deployed")
        table.add_column("Last status")
        for app in applications:
            history = self._history(app.name)
            table.add_row(
                app.name,
                app.domain,
                app.runtime_version,
                app.deployment_method,
                "yes" if app.flags.zero_downtime else "no",
                history.get("last_deployed") or "-",
                history.get("last_status") or "-",
            )
        self.console.print(table)
        return EXIT_OK

    def monitor(self) -> int:
        try:
            self._require_root()
            applications = self._select()
        except DeployError as exc:
            return self._precondition_failed(exc)

        table = Table(title="Application health")
        table.add_column("Name", style="cyan")
        table.add_column("URL")
        table.add_column("HTTP")
        table.add_column("Release")
        table.add_column("Backups")
        table.add_column("Last deployed")

        unhealthy = 0
        for app in applications:
            config = self.config_store.merged(app.name)
            probe = self.health_service.probe(app, config.get("HEALTH_CHECK_PATH") or "/")
            if not probe["ok"]:
                unhealthy += 1
            table.add_row(
                app.name,
                probe["url"],
                str(probe["status"]) if probe["ok"] else f"[red]{probe['error']}[/red]",
                self.release_manager.current_release(app.name) or "-",
                str(len(self.backup_manager.list_backups(app.name))),
                self._last_deployed(app.name) or "-",
            )
        self.console.print(table)

        facts = self.health_service.host_facts(self.settings.www_dir)
        free = facts.get("disk_free_bytes")
        if free is not None:
            self.console.print(f"Disk free on {self.settings.www_dir}: {free / (1024 ** 3):.1f} GiB")
        if facts.get("load_average"):
            self.console.print("Load average: " + " ".join(f"{value:.2f}" for value in facts["load_average"]))
        return EXIT_FAILED if unhealthy else EXIT_OK

    def setup_app(self, name: str, domain: str) -> int:
        try:
            self._require_root()
            record = self.registry.register(name, domain)
        except DeployError as exc:
            self.console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            return EXIT_FAILED

        self.console.print(
            f"[green]{name} configured for {record['DOMAIN']}[/green] ({self.config_store.app_path(name)})"
        )
        return EXIT_OK

    def provision(self) -> int:
        """Prepares the host layout and reports missing tools."""
        try:
            self._require_root()
        except DeployError as exc:
            return self._precondition_failed(exc)

        directories = [
            (self.config_dir, PRIVATE_DIR_MODE),
            (self.settings.www_dir, DIR_MODE),
            (self.settings.backup_dir, PRIVATE_DIR_MODE),
            (self.settings.releases_dir, DIR_MODE),
            (self.settings.report_dir, PRIVATE_DIR_MODE),
            (self.settings.state_dir, PRIVATE_DIR_MODE),
        ]
        for path, mode in directories:
            try:
                os.makedirs(path, exist_ok=True)
            except OSError as exc:
                self.console.print(f"[bold red]Error:[/bold red] Could not create {path}: {exc}")
                logger.error("Could not create %s: %s", path, exc)
                return EXIT_FAILED
            self.filesystem_service.set_permissions(path, mode)

        if not self.config_store.global_path.exists():
            self.config_store.save_global(
                {
                    "WWW_DIR": self.settings.www_dir,
                    "BACKUP_DIR": self.settings.backup_dir,
                    "RELEASES_DIR": self.settings.releases_dir,
                    "REPORT_DIR": self.settings.report_dir,
                    "STATE_DIR": self.settings.state_dir,
                    "PHP_VERSION": self.settings.default_runtime_version,
                    "MAX_BACKUPS": str(self.settings.max_backups),
                    "BACKUP_RETENTION_DAYS": str(self.settings.retention_days),
                    "KEEP_RELEASES": str(self.settings.keep_releases),
                    "ZERO_DOWNTIME": "0",
                    "ENABLE_SSL": "0",
                },
                header="LaraDeploy global configuration",
            )
            self.console.print(f"[green]Wrote {self.config_store.global_path}[/green]")

        table = Table(title="Host tools")
        table.add_column("Tool", style="cyan")
        table.add_column("Required")
        table.add_column("Found")
        missing = []
        for tool in REQUIRED_TOOLS + OPTIONAL_TOOLS:
            found = self.command_runner.available(tool)
            required = tool in REQUIRED_TOOLS
            if required and not found:
                missing.append(tool)
            table.add_row(tool, "yes" if required else "no", "[green]yes[/green]" if found else "[red]no[/red]")
        self.console.print(table)

        for tool in missing:
            logger.error(actionable_error("missing_tool", tool=tool))
        return EXIT_FAILED if missing else EXIT_OK

    def _record_history(self, app: Application, run: PipelineRun):
        try:
            self.state_service.record_run(run)
        except DeployError as exc:
            logger.warning("Could not record deployment history for %s: %s", app.name, exc)

    def _history(self, app_name: str) -> Dict[str, Any]:
        try:
            return self.state_service.get_app(app_name)
        except DeployError as exc:
            logger.warning(str(exc))
            return {}

    def _last_deployed(self, app_name: str) -> Optional[str]:
        return self._history(app_name).get("last_deployed")

    def _print_summary(self, runs: List[PipelineRun]):
        table = Table(title="Deployment summary")
        table.add_column("Application", style="cyan")
        table.add_column("Status")
        table.add_column("Failed stage")
        table.add_column("Backup")
        table.add_column("Release")
        colors = {
            RunStatus.SUCCESS: "green",
            RunStatus.ROLLED_BACK: "yellow",
            RunStatus.FAILED: "red",
        }
        for run in runs:
            status = run.final_status or run.status
            color = colors.get(status, "white")
            table.add_row(
                run.app_name,
                f"[{color}]{status.value}[/{color}]",
                run.failed_stage or "-",
                run.backup_id or "-",
                run.release_id or "-",
            )
        self.console.print(table)
