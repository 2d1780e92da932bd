"""Staged deployment pipeline with rollback to the run's own backup.

Each application goes through a fixed, ordered list of stages. The state
machine per application is::

    PENDING -> RUNNING -> SUCCESS
                       -> FAILED
                       -> ROLLING_BACK -> ROLLED_BACK | FAILED

A run becomes rollback eligible once its backup stage succeeds. Stage
failures, timeouts and interrupts all end in the same compensation path.
"""

import json
import os
import signal
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from laradeploy.constants import FILE_MODE, WRITABLE_DIR_MODE
from laradeploy.errors import (
    DeployError,
    DeploymentError,
    MigrationError,
    RollbackError,
    RunCancelled,
)
from laradeploy.errors_catalog import actionable_error
from laradeploy.models import Application, Backup, PipelineRun, RunStatus, Settings, StageResult
from laradeploy.services.config_store import ConfigRecord
from laradeploy.services.registry import generate_password


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def interrupt_guard() -> Iterator[None]:
    """Turns SIGTERM into ``RunCancelled`` for the duration of a run."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, _frame):
        raise RunCancelled(f"Received signal {signum}")

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


@dataclass
class PipelineServices:
    command_runner: object
    backup_manager: object
    release_manager: object
    database_service: object
    env_service: object
    config_store: object
    process_control: object
    health_service: object
    filesystem_service: object


@dataclass
class StageContext:
    app: Application
    config: ConfigRecord
    settings: Settings
    services: PipelineServices
    run: PipelineRun
    logger: object = None
    clock: Callable[[], float] = time.monotonic
    workdir: str = ""
    deadline: Optional[float] = None
    backup: Optional[Backup] = None
    release_id: Optional[str] = None
    previous_release_id: Optional[str] = None
    activated: bool = False
    shared_env: Optional[Tuple[str, Optional[str]]] = None
    notes: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.workdir:
            self.workdir = self.app.root_path

    @property
    def php(self) -> str:
        return f"php{self.app.runtime_version}"

    @property
    def env_path(self) -> str:
        return os.path.join(self.workdir, ".env")

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - self.clock()

    def run_cmd(self, cmd: List[str], **kwargs):
        kwargs.setdefault("cwd", self.workdir)
        kwargs.setdefault("timeout", self.remaining())
        kwargs.setdefault("capture_output", True)
        return self.services.command_runner.run(cmd, **kwargs)

    def hook_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "LARADEPLOY_APP": self.app.name,
                "LARADEPLOY_PATH": self.workdir,
                "LARADEPLOY_DOMAIN": self.app.domain,
                "LARADEPLOY_RELEASE": self.release_id or "",
            }
        )
        return env


class Stage:
    """One named, ordered unit of work."""

    name = ""
    restore_point = False

    def applies(self, context: StageContext) -> bool:
        return True

    def run(self, context: StageContext):
        raise NotImplementedError


class PreHooksStage(Stage):
    name = "pre_hooks"

    def applies(self, context):
        return bool(context.settings.pre_hooks) and context.config.get_bool("DEPLOYMENT_HOOKS_ENABLED", True)

    def run(self, context):
        for hook in context.settings.pre_hooks:
            context.run_cmd(["sh", "-c", hook], env=context.hook_env())


class BackupStage(Stage):
    name = "backup"
    restore_point = True

    def run(self, context):
        manager = context.services.backup_manager
        backup = manager.create_backup(context.app, timeout=context.remaining())
        context.backup = backup
        context.run.backup_id = backup.backup_id

        try:
            manager.cleanup_retention(
                context.app.name,
                max_backups=context.config.get_int("MAX_BACKUPS", context.settings.max_backups),
                retention_days=context.config.get_int(
                    "BACKUP_RETENTION_DAYS", context.settings.retention_days
                ),
            )
        except (DeployError, OSError) as exc:
            context.logger.warning(
                "Retention cleanup for %s failed: %s", context.app.name, exc
            )


class CodeUpdateStage(Stage):
    name = "code_update"

    def applies(self, context):
        return context.app.deployment_method == "git"

    def run(self, context):
        root = context.app.root_path
        if not os.path.isdir(os.path.join(root, ".git")):
            raise DeploymentError(f"{root} is not a git checkout; cannot pull {context.app.branch}.")
        context.run_cmd(["git", "fetch", "--prune", "origin", context.app.branch], cwd=root)
        context.run_cmd(["git", "checkout", context.app.branch], cwd=root)
        context.run_cmd(["git", "pull", "--ff-only", "origin", context.app.branch], cwd=root)


class PrepareReleaseStage(Stage):
    name = "prepare_release"

    def applies(self, context):
        return context.app.flags.zero_downtime

    def run(self, context):
        manager = context.services.release_manager
        release_id = manager.prepare_release(context.app)
        context.release_id = release_id
        context.run.release_id = release_id
        context.workdir = str(manager.release_path(context.app.name, release_id))


class DependenciesStage(Stage):
    name = "dependencies"

    def applies(self, context):
        return os.path.isfile(os.path.join(context.workdir, "composer.json"))

    def run(self, context):
        env = dict(os.environ)
        env["COMPOSER_ALLOW_SUPERUSER"] = "1"
        context.run_cmd(
            [
                "composer",
                "install",
                "--no-dev",
                "--optimize-autoloader",
                "--no-interaction",
                "--prefer-dist",
            ],
            env=env,
        )


class DatabaseStage(Stage):
    name = "database"

    def applies(self, context):
        return context.app.database_ref is not None

    def run(self, context):
        services = context.services
        database = context.app.database_ref

        password = context.config.get("DB_PASSWORD", "")
        if not password:
            password = generate_password()
            services.config_store.update(context.app.name, DB_PASSWORD=password)
            context.config = context.config.with_changes(DB_PASSWORD=password)

        services.database_service.provision(database, password, timeout=context.remaining())

        env_service = services.env_service
        if os.path.islink(context.env_path):
            # A release's .env is the live shared file; rollback puts it back.
            context.shared_env = env_service.snapshot(context.env_path)
        if not env_service.ensure_exists(context.workdir, context.env_path):
            context.logger.warning(
                "No .env or .env.example for %s; skipping environment update.", context.app.name
            )
            return

        scheme = "https" if context.app.flags.ssl else "http"
        changes = {
            "APP_URL": f"{scheme}://{context.app.domain}",
            "APP_DEBUG": "false",
            "DB_HOST": database.host,
            "DB_PORT": database.port,
            "DB_DATABASE": database.name,
            "DB_USERNAME": database.user,
            "DB_PASSWORD": password,
        }
        if not env_service.has_app_key(env_service.read(context.env_path)):
            changes["APP_KEY"] = env_service.generate_app_key()
        env_service.patch(context.env_path, changes)


class MigrateStage(Stage):
    name = "migrate"

    def applies(self, context):
        return context.app.database_ref is not None and os.path.isfile(
            os.path.join(context.workdir, "artisan")
        )

    def run(self, context):
        context.run_cmd([context.php, "artisan", "migrate", "--force"], error_cls=MigrationError)


class AssetsStage(Stage):
    name = "assets"

    def applies(self, context):
        package_file = os.path.join(context.workdir, "package.json")
        if not os.path.isfile(package_file):
            return False
        try:
            with open(package_file, "r", encoding="utf-8") as file_obj:
                scripts = json.load(file_obj).get("scripts") or {}
        except (OSError, ValueError, AttributeError):
            return False
        return "build" in scripts

    def run(self, context):
        if os.path.isfile(os.path.join(context.workdir, "package-lock.json")):
            context.run_cmd(["npm", "ci", "--no-audit", "--no-fund"])
        else:
            context.run_cmd(["npm", "install", "--no-audit", "--no-fund"])
        context.run_cmd(["npm", "run", "build"])


class OptimizeStage(Stage):
    name = "optimize"

    def applies(self, context):
        return os.path.isfile(os.path.join(context.workdir, "artisan"))

    def run(self, context):
        for command in ("config:cache", "route:cache", "view:cache"):
            context.run_cmd([context.php, "artisan", command])

        filesystem = context.services.filesystem_service
        for relative in ("storage", "bootstrap/cache"):
            path = Path(context.workdir) / relative
            if path.exists():
                filesystem.set_tree_permissions(
                    str(path.resolve()),
                    dir_mode=WRITABLE_DIR_MODE,
                    file_mode=FILE_MODE | 0o020,
                    script_mode=WRITABLE_DIR_MODE,
                )


class ActivateStage(Stage):
    name = "activate"

    def applies(self, context):
        return context.app.flags.zero_downtime and context.release_id is not None

    def run(self, context):
        manager = context.services.release_manager
        manager.seal(context.app.name, context.release_id)
        context.previous_release_id = manager.activate(context.app, context.release_id)
        context.activated = True

        try:
            manager.prune_releases(context.app.name, context.settings.keep_releases)
        except (DeployError, OSError) as exc:
            context.logger.warning(
                "Pruning releases for %s failed: %s", context.app.name, exc
            )


class WorkersStage(Stage):
    name = "workers"

    def run(self, context):
        control = context.services.process_control
        if not context.app.flags.zero_downtime:
            control.reload_runtime(context.app, timeout=context.remaining())
        if context.app.flags.queue:
            control.restart_queue(context.app, context.workdir, timeout=context.remaining())
        if context.app.flags.scheduler and not control.scheduler_registered(
            context.app, timeout=context.remaining()
        ):
            context.logger.warning(
                "Scheduler enabled for %s but no schedule:run entry is installed.", context.app.name
            )


class PostHooksStage(Stage):
    name = "post_hooks"

    def applies(self, context):
        return bool(context.settings.post_hooks) and context.config.get_bool("DEPLOYMENT_HOOKS_ENABLED", True)

    def run(self, context):
        for hook in context.settings.post_hooks:
            context.run_cmd(["sh", "-c", hook], env=context.hook_env())


class VerifyStage(Stage):
    name = "verify"

    def applies(self, context):
        return os.path.isfile(os.path.join(context.workdir, "artisan"))

    def run(self, context):
        context.run_cmd([context.php, "artisan", "--version"])
        if context.config.get_bool("HEALTH_CHECK_ENABLED"):
            context.services.health_service.check_http(
                context.app,
                context.config.get("HEALTH_CHECK_PATH") or "/",
                timeout=context.remaining(),
            )


DEFAULT_STAGES: Sequence[Stage] = (
    PreHooksStage(),
    BackupStage(),
    CodeUpdateStage(),
    PrepareReleaseStage(),
    DependenciesStage(),
    DatabaseStage(),
    MigrateStage(),
    AssetsStage(),
    OptimizeStage(),
    ActivateStage(),
    WorkersStage(),
    PostHooksStage(),
    VerifyStage(),
)

STAGE_NAMES = tuple(stage.name for stage in DEFAULT_STAGES)


class PipelineExecutor:
    """Runs the stage list for one application at a time."""

    def __init__(
        self,
        settings: Settings,
        services: PipelineServices,
        lock_service,
        logger,
        console,
        stages: Optional[Sequence[Stage]] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], str] = utc_now,
    ):
        self.settings = settings
        self.services = services
        self.lock_service = lock_service
        self.logger = logger
        self.console = console
        self.stages = tuple(stages if stages is not None else DEFAULT_STAGES)
        self.clock = clock
        self.now = now
        self.cancelled = False

        names = [stage.name for stage in self.stages]
        if len(set(names)) != len(names):
            raise DeploymentError(f"Duplicate stage names in pipeline: {', '.join(names)}")

    def run(self, app: Application, config: ConfigRecord, run: Optional[PipelineRun] = None) -> PipelineRun:
        run = run if run is not None else PipelineRun(app_name=app.name)
        run.started_at = self.now()
        try:
            with self.lock_service.hold(app.name):
                self._execute(app, config, run)
        except DeployError as exc:
            # Only lock acquisition can get here; the app was never touched.
            run.status = run.final_status = RunStatus.FAILED
            run.error_kind = exc.kind
            run.error = str(exc)
            self.logger.error("%s: %s", app.name, exc)
        finally:
            run.finished_at = self.now()
        return run

    def run_batch(
        self,
        apps: Sequence[Application],
        load_config: Callable[[str], ConfigRecord],
        on_complete: Optional[Callable[[Application, PipelineRun], None]] = None,
    ) -> List[PipelineRun]:
        """Deploys ``apps`` strictly one after another.

        A failed application never stops the batch. An interrupt stops it
        after the in-flight application has been compensated; applications
        not yet started are returned as PENDING. Runs already finished are
        always returned, wherever the interrupt lands.
        """
        runs: List[PipelineRun] = []
        with interrupt_guard():
            for index, app in enumerate(apps):
                run = PipelineRun(app_name=app.name)
                try:
                    self.console.rule(f"[bold]{app.name}[/bold]")
                    try:
                        config = load_config(app.name)
                    except DeployError as exc:
                        run.started_at = run.finished_at = self.now()
                        run.status = run.final_status = RunStatus.FAILED
                        run.error_kind = exc.kind
                        run.error = str(exc)
                        self.logger.error("%s: %s", app.name, exc)
                    else:
                        self.run(app, config, run)
                    if on_complete is not None:
                        on_complete(app, run)
                except (KeyboardInterrupt, RunCancelled) as exc:
                    self.cancelled = True
                    self._settle_interrupted(run, exc)
                runs.append(run)

                if self.cancelled:
                    for pending in apps[index + 1:]:
                        skipped = PipelineRun(app_name=pending.name)
                        skipped.error = "Run cancelled before this application started."
                        runs.append(skipped)
                    self.logger.warning("Run cancelled; %s application(s) left untouched.", len(apps) - index - 1)
                    break
        return runs

    def _settle_interrupted(self, run: PipelineRun, exc: BaseException):
        """Gives a run cut short by an interrupt outside its stages a final status."""
        reason = str(exc) or "interrupted"
        if run.status == RunStatus.PENDING:
            run.error = "Run cancelled before this application started."
            return
        if run.is_terminal:
            return

        run.cancelled = True
        if run.status == RunStatus.ROLLING_BACK or run.rollback_eligible:
            run.rollback_error = str(RollbackError(f"Rollback interrupted: {reason}"))
            self.console.print(f"[bold red]Rollback of {run.app_name} was interrupted.[/bold red]")
            self.logger.error("Rollback of %s interrupted: %s", run.app_name, reason)
        run.status = run.final_status = RunStatus.FAILED
        run.error = run.error or f"Run cancelled: {reason}"
        run.finished_at = run.finished_at or self.now()

    def _execute(self, app: Application, config: ConfigRecord, run: PipelineRun):
        run.status = RunStatus.RUNNING
        context = StageContext(
            app=app,
            config=config,
            settings=self.settings,
            services=self.services,
            run=run,
            logger=self.logger,
            clock=self.clock,
        )
        self.logger.info("Deploying %s", app.name)

        try:
            for stage in self.stages:
                if stage.name in self.settings.skip_stages or not stage.applies(context):
                    run.stage_results.append(
                        StageResult(stage.name, "skipped", started_at=self.now(), ended_at=self.now())
                    )
                    continue

                self._run_stage(stage, context, run)
                if stage.restore_point:
                    run.rollback_eligible = True

            run.status = run.final_status = RunStatus.SUCCESS
            self.console.print(f"[bold green]{app.name} deployed.[/bold green]")
            self.logger.info("Deployment of %s succeeded", app.name)
        except DeployError as exc:
            self._fail(context, run, exc)
        except (KeyboardInterrupt, RunCancelled) as exc:
            # Compensate like any other failure; the batch stops after this app.
            self.cancelled = run.cancelled = True
            reason = str(exc) or "interrupted"
            self._fail(context, run, DeploymentError(f"Run cancelled during {self._current_stage(run)}: {reason}"))
        except Exception as exc:  # noqa: BLE001
            self.logger.exception("Unexpected error while deploying %s", app.name)
            self._fail(context, run, DeploymentError(f"Unexpected error: {exc}"))

    def _run_stage(self, stage: Stage, context: StageContext, run: PipelineRun):
        result = StageResult(stage.name, "running", started_at=self.now())
        run.stage_results.append(result)
        timeout = self.settings.stage_timeout_seconds
        context.deadline = self.clock() + timeout if timeout and timeout > 0 else None
        self.logger.debug("%s: stage %s started", context.app.name, stage.name)

        try:
            with self.console.status(f"[cyan]{context.app.name}[/cyan]: {stage.name}"):
                stage.run(context)
        except DeployError as exc:
            self._finish(result, "failed", str(exc))
            raise
        except BaseException as exc:
            self._finish(result, "failed", str(exc) or type(exc).__name__)
            if isinstance(exc, Exception):
                raise DeploymentError(f"Stage {stage.name} crashed: {exc}") from exc
            raise

        remaining = context.remaining()
        context.deadline = None
        if remaining is not None and remaining < 0:
            message = f"Stage {stage.name} exceeded its {timeout:.0f}s timeout."
            self._finish(result, "failed", message)
            raise DeploymentError(message)

        self._finish(result, "success")
        self.logger.debug("%s: stage %s finished", context.app.name, stage.name)

    def _fail(self, context: StageContext, run: PipelineRun, exc: DeployError):
        app = context.app
        run.status = RunStatus.FAILED
        run.error_kind = exc.kind
        run.error = str(exc)
        stage = run.failed_stage or "run"
        self.console.print(f"[bold red]{app.name}:[/bold red] {exc}")
        self.logger.error(actionable_error("stage_failed", stage=stage, name=app.name))
        self.logger.error("%s: %s", app.name, exc)

        if not run.rollback_eligible:
            # Nothing to roll back to; leave the tree for inspection.
            self._discard_unactivated_release(context)
            run.final_status = RunStatus.FAILED
            self.logger.warning("%s failed before a backup existed; no rollback attempted.", app.name)
            return

        run.status = RunStatus.ROLLING_BACK
        self.console.print(f"[yellow]Rolling back {app.name} to backup {context.backup.backup_id}...[/yellow]")
        try:
            self._rollback(context)
        except DeployError as rollback_exc:
            error = rollback_exc if isinstance(rollback_exc, RollbackError) else RollbackError(str(rollback_exc))
            run.rollback_error = str(error)
            run.status = run.final_status = RunStatus.FAILED
            self.console.print(f"[bold red]Rollback of {app.name} failed:[/bold red] {error}")
            self.logger.error("Rollback of %s failed: %s", app.name, error)
            return
        except Exception as rollback_exc:  # noqa: BLE001
            self.logger.exception("Unexpected error while rolling back %s", app.name)
            run.rollback_error = str(RollbackError(f"Unexpected error: {rollback_exc}"))
            run.status = run.final_status = RunStatus.FAILED
            return

        run.status = run.final_status = RunStatus.ROLLED_BACK
        self.console.print(f"[yellow]{app.name} rolled back to {context.backup.backup_id}.[/yellow]")
        self.logger.info("Rolled back %s to backup %s", app.name, context.backup.backup_id)

    def _rollback(self, context: StageContext):
        app = context.app
        releases = self.services.release_manager
        if context.activated:
            if context.previous_release_id:
                releases.activate(app, context.previous_release_id)
            else:
                releases.deactivate(app.name)
            releases.discard(app.name, context.release_id)
        else:
            self._discard_unactivated_release(context)

        if context.shared_env is not None:
            self.services.env_service.restore_snapshot(*context.shared_env)
        self.services.backup_manager.restore(app, context.backup.backup_id)

    def _discard_unactivated_release(self, context: StageContext):
        if context.release_id is None or context.activated:
            return
        try:
            self.services.release_manager.discard(context.app.name, context.release_id)
        except (DeployError, OSError) as exc:
            self.logger.warning("Could not discard release %s: %s", context.release_id, exc)

    def _finish(self, result: StageResult, status: str, error: Optional[str] = None):
        result.status = status
        result.ended_at = self.now()
        result.error = error

    @staticmethod
    def _current_stage(run: PipelineRun) -> str:
        for result in reversed(run.stage_results):
            if result.status in {"running", "failed"}:
                return result.name
        return "run"
