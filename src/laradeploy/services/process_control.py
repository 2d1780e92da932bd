"""Signals to the PHP runtime and queue workers after code changes."""

from typing import Callable, Optional

from laradeploy.models import Application


class ProcessControlService:
    """Reloads PHP-FPM and restarts queue workers without dropping requests."""

    def __init__(self, logger, run_cmd: Callable):
        self.logger = logger
        self.run_cmd = run_cmd

    def fpm_service(self, app: Application) -> str:
        return f"php{app.runtime_version}-fpm"

    def reload_runtime(self, app: Application, timeout: Optional[float] = None):
        # reload lets in-flight requests finish on the old workers.
        self.run_cmd(
            ["systemctl", "reload", self.fpm_service(app)],
            check=True,
            capture_output=True,
            timeout=timeout,
        )

    def restart_queue(self, app: Application, workdir: str, timeout: Optional[float] = None):
        self.run_cmd(
            [f"php{app.runtime_version}", "artisan", "queue:restart"],
            check=True,
            capture_output=True,
            timeout=timeout,
            cwd=workdir,
        )

    def reload_workers(self, app: Application, workdir: Optional[str] = None, timeout: Optional[float] = None):
        self.logger.info("Reloading workers for %s", app.name)
        self.reload_runtime(app, timeout=timeout)
        if app.flags.queue:
            self.restart_queue(app, workdir or app.root_path, timeout=timeout)

    def scheduler_registered(self, app: Application, timeout: Optional[float] = None) -> bool:
        result = self.run_cmd(
            ["crontab", "-l", "-u", "www-data"],
            check=False,
            capture_output=True,
            timeout=timeout,
        )
        if result.returncode != 0:
            return False
        return any(
            "schedule:run" in line and app.root_path in line
            for line in (result.stdout or "").splitlines()
        )
