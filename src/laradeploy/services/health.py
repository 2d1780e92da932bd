"""Application health probes and host facts."""

import os
import platform
import shutil
import socket
from typing import Any, Dict, Optional

import requests

from laradeploy.errors import DeploymentError
from laradeploy.models import Application


class HealthService:
    """Probes deployed applications over HTTP and collects host information."""

    def __init__(self, logger, requests_module=requests, timeout_seconds: float = 10.0):
        self.logger = logger
        self.requests = requests_module
        self.timeout_seconds = timeout_seconds

    def url_for(self, app: Application, path: str = "/") -> str:
        scheme = "https" if app.flags.ssl else "http"
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{scheme}://{app.domain}{path}"

    def check_http(self, app: Application, path: str = "/", timeout: Optional[float] = None) -> int:
        url = self.url_for(app, path)
        effective_timeout = min(
            self.timeout_seconds, timeout if timeout is not None else self.timeout_seconds
        )
        try:
            response = self.requests.get(url, timeout=effective_timeout, allow_redirects=True)
        except self.requests.RequestException as exc:
            raise DeploymentError(f"Health check for {app.name} failed: {exc}") from exc

        status = response.status_code
        response.close()
        if status >= 500:
            raise DeploymentError(f"Health check for {app.name} returned HTTP {status} at {url}")
        self.logger.info("Health check for %s returned HTTP %s", app.name, status)
        return status

    def probe(self, app: Application, path: str = "/") -> Dict[str, Any]:
        """Non-raising variant used by the monitor command."""
        try:
            status = self.check_http(app, path)
            return {"app": app.name, "url": self.url_for(app, path), "ok": True, "status": status}
        except DeploymentError as exc:
            return {"app": app.name, "url": self.url_for(app, path), "ok": False, "error": str(exc)}

    def host_facts(self, disk_path: str = "/") -> Dict[str, Any]:
        uname = platform.uname()
        facts: Dict[str, Any] = {
            "hostname": socket.gethostname(),
            "platform": platform.platform(),
            "kernel": uname.release,
            "architecture": uname.machine,
            "cpu_count": os.cpu_count(),
            "python": platform.python_version(),
        }
        try:
            usage = shutil.disk_usage(disk_path)
            facts["disk_total_bytes"] = usage.total
            facts["disk_free_bytes"] = usage.free
        except OSError as exc:
            self.logger.debug("Could not read disk usage for %s: %s", disk_path, exc)

        memory = self._read_meminfo()
        if memory:
            facts.update(memory)
        if hasattr(os, "getloadavg"):
            try:
                facts["load_average"] = list(os.getloadavg())
            except OSError:
                pass
        return facts

    @staticmethod
    def _read_meminfo() -> Dict[str, int]:
        values: Dict[str, int] = {}
        try:
            with open("/proc/meminfo", "r", encoding="utf-8") as file_obj:
                for line in file_obj:
                    key, _, rest = line.partition(":")
                    if key in {"MemTotal", "MemAvailable"}:
                        values[f"{key.lower()}_kb"] = int(rest.strip().split()[0])
        except (OSError, ValueError, IndexError):
            return {}
        return values
