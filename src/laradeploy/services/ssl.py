"""TLS certificate requests through certbot."""

from typing import Callable, Optional

from laradeploy.errors import DeployError, SSLError
from laradeploy.models import Application


class SSLService:
    """Obtains or renews certificates. Failures surface as ``SSLError`` and never stop a deploy."""

    def __init__(self, logger, console, run_cmd: Callable):
        self.logger = logger
        self.console = console
        self.run_cmd = run_cmd

    def obtain(self, app: Application, email: Optional[str] = None, timeout: Optional[float] = 300.0):
        contact = email or f"admin@{app.domain}"
        self.console.print(f"[blue]Requesting certificate for {app.domain}...[/blue]")
        try:
            self.run_cmd(
                [
                    "certbot",
                    "--nginx",
                    "-d",
                    app.domain,
                    "--non-interactive",
                    "--agree-tos",
                    "--redirect",
                    "--email",
                    contact,
                ],
                check=True,
                capture_output=True,
                timeout=timeout,
            )
        except DeployError as exc:
            raise SSLError(f"Failed to obtain SSL certificate for {app.domain}: {exc}") from exc

        self.logger.info("SSL certificate obtained for %s", app.domain)
        self.console.print(f"[green]Certificate installed for {app.domain}.[/green]")
