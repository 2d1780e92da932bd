"""MySQL/MariaDB dump, restore, provisioning and maintenance for LaraDeploy."""

import gzip
import os
import re
import shutil
import subprocess
import tempfile
from typing import Callable, Optional

from laradeploy.errors import BackupError, DeploymentError, RollbackError
from laradeploy.models import DatabaseRef

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_]{1,64}$")


def safe_identifier(value: str) -> str:
    """Turns an application name into a usable database identifier."""
    cleaned = re.sub(r"[^a-z0-9_]", "", value.lower())
    return cleaned[:48] or "app"


class DatabaseService:
    """Handles database dumps, restores, provisioning and optimization."""

    def __init__(self, logger, console, run_cmd: Callable, subprocess_module=subprocess):
        self.logger = logger
        self.console = console
        self.run_cmd = run_cmd
        self.subprocess = subprocess_module

    @staticmethod
    def _check_identifier(value: str, label: str) -> str:
        if not IDENTIFIER_PATTERN.match(value or ""):
            raise DeploymentError(f"Invalid database {label}: '{value}'.")
        return value

    def exists(self, database: DatabaseRef, timeout: Optional[float] = None) -> bool:
        name = self._check_identifier(database.name, "name")
        result = self.run_cmd(
            ["mysql", "-N", "-B", "-e", f"SHOW DATABASES LIKE '{name}';"],
            check=False,
            capture_output=True,
            timeout=timeout,
        )
        if result.returncode != 0:
            return False
        return any(line.strip() == name for line in (result.stdout or "").splitlines())

    def dump(self, database: DatabaseRef, dest_path: str, timeout: Optional[float] = None) -> str:
        """Writes a gzip-compressed SQL dump to ``dest_path``."""
        name = self._check_identifier(database.name, "name")
        raw_path = f"{dest_path}.raw"
        self.logger.info("Dumping database %s...", name)

        try:
            # Binary columns are hex-encoded; the dump is still handled as bytes end to end.
            with open(raw_path, "wb") as file_obj:
                self.subprocess.run(
                    ["mysqldump", "--single-transaction", "--routines", "--triggers", "--hex-blob", name],
                    stdout=file_obj,
                    stderr=self.subprocess.PIPE,
                    check=True,
                    timeout=timeout,
                )
            with open(raw_path, "rb") as src, gzip.open(dest_path, "wb") as dst:
                shutil.copyfileobj(src, dst)
        except FileNotFoundError as exc:
            self._discard(dest_path)
            raise BackupError("mysqldump is not installed.") from exc
        except (OSError, self.subprocess.SubprocessError) as exc:
            self._discard(dest_path)
            raise BackupError(f"Failed to dump database {name}: {exc}") from exc
        finally:
            self._discard(raw_path)

        return dest_path

    def restore(self, database: DatabaseRef, dump_path: str, timeout: Optional[float] = None):
        """Replaces the database contents with the dump. Safe to repeat."""
        name = self._check_identifier(database.name, "name")
        self.logger.info("Restoring database %s from %s", name, dump_path)

        if not os.path.isfile(dump_path):
            raise RollbackError(f"Database dump not found: {dump_path}")

        self.run_cmd(
            ["mysql", "-e", f"DROP DATABASE IF EXISTS `{name}`; CREATE DATABASE `{name}` "
             "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;"],
            check=True,
            capture_output=True,
            timeout=timeout,
            error_cls=RollbackError,
        )
        # Streamed as bytes: dumps can be large and are not guaranteed to be valid UTF-8.
        with tempfile.TemporaryFile() as errors:
            try:
                returncode = self._stream_into_mysql(name, dump_path, errors, timeout)
            except FileNotFoundError as exc:
                raise RollbackError("mysql is not installed.") from exc
            except (OSError, self.subprocess.SubprocessError) as exc:
                raise RollbackError(f"Failed to load dump into {name}: {exc}") from exc

            if returncode != 0:
                errors.seek(0)
                details = errors.read().decode("utf-8", "replace").strip()
                raise RollbackError(f"Failed to load dump into {name} ({returncode}): {details}")

    def _stream_into_mysql(self, name: str, dump_path: str, errors, timeout: Optional[float]) -> int:
        with gzip.open(dump_path, "rb") as dump_file:
            process = self.subprocess.Popen(
                ["mysql", name],
                stdin=self.subprocess.PIPE,
                stdout=self.subprocess.DEVNULL,
                stderr=errors,
            )
            try:
                try:
                    shutil.copyfileobj(dump_file, process.stdin)
                    process.stdin.close()
                except BrokenPipeError:
                    # mysql stopped reading; its exit status and stderr say why.
                    pass
                return process.wait(timeout=timeout)
            except BaseException:
                process.kill()
                process.wait()
                raise

    def provision(self, database: DatabaseRef, password: str, timeout: Optional[float] = None):
        name = self._check_identifier(database.name, "name")
        user = self._check_identifier(database.user, "user")
        self.console.print(f"[blue]Provisioning database {name}...[/blue]")
        escaped_password = password.replace("\\", "\\\\").replace("'", "\\'")

        # Statements go through stdin so the password never shows up in the process list.
        statements = "\n".join(
            [
                f"CREATE DATABASE IF NOT EXISTS `{name}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;",
                f"CREATE USER IF NOT EXISTS '{user}'@'{database.host}' IDENTIFIED BY '{escaped_password}';",
                f"ALTER USER '{user}'@'{database.host}' IDENTIFIED BY '{escaped_password}';",
                f"GRANT ALL PRIVILEGES ON `{name}`.* TO '{user}'@'{database.host}';",
                "FLUSH PRIVILEGES;",
            ]
        )
        self.run_cmd(
            ["mysql"],
            check=True,
            capture_output=True,
            timeout=timeout,
            input_text=statements,
        )
        self.logger.info("Database %s ready for user %s", name, user)

    def optimize(self, database: DatabaseRef, timeout: Optional[float] = None):
        name = self._check_identifier(database.name, "name")
        self.console.print(f"[blue]Optimizing database {name}...[/blue]")
        self.run_cmd(
            ["mysqlcheck", "--optimize", "--databases", name],
            check=True,
            capture_output=True,
            timeout=timeout,
        )

    @staticmethod
    def _discard(path: str):
        if os.path.exists(path):
            try:
                os.remove(path)
            except OSError:
                pass
