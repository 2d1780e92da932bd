"""Subprocess execution for deployment stages."""

import os
import shutil
import subprocess
from typing import List, Mapping, Optional, Type

from laradeploy.errors import DependencyError, DeployError, DeploymentError
from laradeploy.errors_catalog import actionable_error

# composer and npm print pages of output; errors keep only the end.
ERROR_TAIL_LINES = 20


def output_tail(text: Optional[str], lines: int = ERROR_TAIL_LINES) -> str:
    stripped = (text or "").strip()
    if not stripped:
        return ""
    return "\n".join(stripped.splitlines()[-lines:])


class CommandRunner:
    """Runs external commands and maps their failures onto ``DeployError`` kinds.

    ``timeout`` is the remaining stage budget. A command asked to start with
    no budget left fails without being spawned. Standard input is never logged
    because it carries SQL with credentials.
    """

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    def available(self, tool: str) -> bool:
        return shutil.which(tool) is not None

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        input_text: Optional[str] = None,
        error_cls: Type[DeployError] = DeploymentError,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        budget = timeout if timeout is not None else self.default_timeout
        if budget is not None and budget <= 0:
            raise error_cls(f"No time left in stage budget to run: {cmd_str}")
        if cwd is not None and not os.path.isdir(cwd):
            raise error_cls(f"Working directory does not exist: {cwd}")

        self.logger.debug("Executing: %s%s", cmd_str, f" (in {cwd})" if cwd else "")
        try:
            result = subprocess.run(
                cmd,
                text=True,
                capture_output=capture_output,
                timeout=budget,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                input=input_text,
            )
        except FileNotFoundError as exc:
            raise DependencyError(actionable_error("missing_tool", tool=cmd[0])) from exc
        except subprocess.TimeoutExpired as exc:
            raise error_cls(f"Command timed out after {budget:.0f}s: {cmd_str}") from exc
        except OSError as exc:
            raise error_cls(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if capture_output and result.stdout:
            self.logger.debug("Command output: %s", output_tail(result.stdout))

        if result.returncode == 0:
            return result

        message = f"Command failed ({result.returncode}): {cmd_str}"
        details = (output_tail(result.stderr) or output_tail(result.stdout)) if capture_output else ""
        if details:
            message = f"{message}\n{details}"

        if check:
            raise error_cls(message)

        self.logger.warning(message)
        return result
