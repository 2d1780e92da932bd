"""Discovery and registration of applications under the web root."""

import secrets
import string
from pathlib import Path
from typing import Dict, List, Optional

from laradeploy.errors import DeployError, ValidationError
from laradeploy.errors_catalog import actionable_error
from laradeploy.models import Application, AppFlags, DatabaseRef, Settings
from laradeploy.services.config_store import ConfigRecord
from laradeploy.services.database import safe_identifier

PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = 24) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


class ApplicationRegistry:
    """Scans the web root and turns each valid application into a descriptor."""

    def __init__(self, settings: Settings, config_store, validation_service, logger, console):
        self.settings = settings
        self.config_store = config_store
        self.validation = validation_service
        self.logger = logger
        self.console = console

    def scan(self, failures: Optional[Dict[str, DeployError]] = None) -> List[Application]:
        """Returns every valid application under the web root.

        An application whose record cannot be loaded is skipped with a warning
        and, when ``failures`` is given, recorded there by name. Names that
        differ only by case abort the scan.
        """
        root = Path(self.settings.www_dir)
        if not root.is_dir():
            self.logger.warning("Web root %s does not exist.", root)
            return []

        self.logger.info("Scanning %s for Laravel applications...", root)
        seen: Dict[str, str] = {}
        applications = []
        for entry in sorted(root.iterdir(), key=lambda path: path.name):
            if entry.name.startswith(".") or not self.validation.is_application(entry):
                continue

            folded = entry.name.casefold()
            if folded in seen:
                raise ValidationError(
                    f"Duplicate application name: '{entry.name}' conflicts with '{seen[folded]}'."
                )
            seen[folded] = entry.name
            try:
                applications.append(self.load(entry.name, app_path=entry))
            except DeployError as exc:
                self.logger.warning("Skipping %s: %s", entry.name, exc)
                if failures is not None:
                    failures[entry.name] = exc

        self.logger.info(
            "Found %s application(s): %s", len(applications), ", ".join(app.name for app in applications)
        )
        return applications

    def get(self, name: str) -> Application:
        app_path = Path(self.settings.www_dir) / name
        if not self.validation.is_application(app_path):
            raise ValidationError(actionable_error("unknown_application", name=name))
        return self.load(name, app_path=app_path)

    def load(self, name: str, app_path: Optional[Path] = None) -> Application:
        self.validation.ensure_app_name(name)
        app_path = app_path or Path(self.settings.www_dir) / name

        record = self.config_store.load_app(name)
        if record is None:
            record = self._create_record(name, app_path)

        config = self.config_store.merged(name)
        runtime_version = self.resolve_runtime_version(app_path, record)
        return self.build_application(name, app_path, config, runtime_version)

    def register(self, name: str, domain: str) -> ConfigRecord:
        """Creates or updates the record for ``name`` with the given domain."""
        self.validation.ensure_app_name(name)
        domain = self.validation.ensure_domain(domain)
        app_path = Path(self.settings.www_dir) / name
        if self.config_store.load_app(name) is None:
            self._create_record(name, app_path, domain=domain)
            return self.config_store.load_app(name)
        return self.config_store.update(name, DOMAIN=domain)

    def resolve_runtime_version(self, app_path: Path, record: ConfigRecord) -> str:
        """Explicit override, then the composer constraint, then the global default."""
        override = record.get("PHP_VERSION")
        if override:
            return self.validation.ensure_runtime_version(override)

        manifest = self.validation.read_package_manifest(app_path) or {}
        require = manifest.get("require") or {}
        constraint = require.get("php") if isinstance(require, dict) else None
        if constraint:
            resolved = self.validation.runtime_from_constraint(str(constraint))
            if resolved:
                return resolved
            self.logger.warning(
                "PHP constraint '%s' in %s matches no supported version; using %s.",
                constraint,
                app_path.name,
                self.settings.default_runtime_version,
            )

        return self.settings.default_runtime_version

    def build_application(
        self, name: str, app_path: Path, config: ConfigRecord, runtime_version: str
    ) -> Application:
        domain = config.get("DOMAIN") or f"{name}.local"
        if not self.validation.is_valid_domain(domain):
            raise ValidationError(actionable_error("invalid_domain", domain=domain))

        database = None
        if config.get("DB_NAME"):
            database = DatabaseRef(
                name=config["DB_NAME"],
                user=config.get("DB_USER") or config["DB_NAME"],
                host=config.get("DB_HOST") or "localhost",
                port=config.get("DB_PORT") or "3306",
            )

        return Application(
            name=name,
            root_path=str(app_path),
            domain=domain.lower(),
            runtime_version=runtime_version,
            deployment_method=(config.get("DEPLOYMENT_METHOD") or "local").lower(),
            repo_url=config.get("REPO_URL", ""),
            branch=config.get("BRANCH") or "main",
            database_ref=database,
            flags=AppFlags(
                ssl=config.get_bool("ENABLE_SSL"),
                queue=config.get_bool("ENABLE_QUEUE"),
                scheduler=config.get_bool("ENABLE_SCHEDULER"),
                zero_downtime=config.get_bool("ZERO_DOWNTIME"),
            ),
        )

    def _create_record(self, name: str, app_path: Path, domain: Optional[str] = None) -> ConfigRecord:
        identifier = safe_identifier(name)
        values = {
            "APP_NAME": name,
            "APP_PATH": str(app_path),
            "DOMAIN": domain or f"{name.lower()}.local",
            "DB_NAME": f"{identifier}_db",
            "DB_USER": f"{identifier}_user",
            "DB_PASSWORD": generate_password(),
            "DB_HOST": "localhost",
            "DB_PORT": "3306",
            "DEPLOYMENT_METHOD": "local",
            "BRANCH": "main",
            "ENABLE_QUEUE": "0",
            "ENABLE_SCHEDULER": "0",
            "HEALTH_CHECK_ENABLED": "0",
            "HEALTH_CHECK_PATH": "/",
        }
        record = self.config_store.save_app(
            name,
            values,
            header=f"Application configuration for {name}\nGenerated by laradeploy",
        )
        self.logger.info("Created configuration for %s with a generated database password.", name)
        self.console.print(f"[green]Registered new application {name}.[/green]")
        return record
