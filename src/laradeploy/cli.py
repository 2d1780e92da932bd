import logging
import os

import click
from rich.logging import RichHandler

from . import __version__
from .core import EXIT_PRECONDITION, LaraDeploy
from .errors import DeployError
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def _configure_logging(logger: logging.Logger, verbose: bool, log_file, silent: bool):
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    elif silent:
        logger.setLevel(logging.WARNING)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)


def _deployer(ctx: click.Context) -> LaraDeploy:
    """Builds the deployer lazily so `help` and `version` need no configuration."""
    state = ctx.obj
    if state.get("deployer") is None:
        try:
            state["deployer"] = LaraDeploy(
                config_dir=state["config_dir"],
                options=state["options"],
                silent=state["silent"],
            )
        except DeployError as exc:
            click.echo(f"Error: {exc}", err=True)
            raise SystemExit(EXIT_PRECONDITION) from exc
    return state["deployer"]


@click.group(invoke_without_command=True)
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help="Path to a YAML options file. Defaults to .laradeploy.yml if present.",
)
@click.option(
    "--config-dir",
    required=False,
    type=click.Path(),
    help="Directory holding config.conf and apps/*.conf (default: /etc/laravel-deploy).",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option("--silent", is_flag=True, default=None, help="Suppress console output except errors.")
@click.option(
    "--strict",
    is_flag=True,
    default=None,
    help="Exit non-zero when any application was rolled back, not only when one failed.",
)
@click.option(
    "--skip-stage",
    "skip_stages",
    multiple=True,
    help="Pipeline stage to skip. May be given more than once.",
)
@click.option(
    "--stage-timeout",
    required=False,
    type=float,
    default=None,
    help="Per-stage time budget in seconds.",
)
@click.option(
    "--no-root-check",
    is_flag=True,
    default=None,
    help="Do not require root privileges (for test hosts).",
)
@click.pass_context
def main(ctx, config, config_dir, verbose, log_file, silent, strict, skip_stages, stage_timeout, no_root_check):
    """Deploy, back up and restore the Laravel applications on this server."""
    logger = logging.getLogger("laradeploy")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), ".laradeploy.yml")
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except DeployError as exc:
        raise click.ClickException(str(exc)) from exc

    config_dir = _resolve_option(config_dir, config_values, "config_dir")
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    silent = bool(_resolve_option(silent, config_values, "silent", default=False))

    require_root = config_values.get("require_root", True)
    if no_root_check:
        require_root = False

    options = {
        "strict": bool(_resolve_option(strict, config_values, "strict", default=False)),
        "skip_stages": list(skip_stages) or config_values.get("skip_stages") or [],
        "pre_hooks": config_values.get("pre_hooks") or [],
        "post_hooks": config_values.get("post_hooks") or [],
        "stage_timeout_seconds": _resolve_option(stage_timeout, config_values, "stage_timeout_seconds"),
        "health_check_timeout": config_values.get("health_check_timeout"),
        "require_root": bool(require_root),
    }

    _configure_logging(logger, verbose, log_file, silent)

    ctx.obj = {"config_dir": config_dir, "options": options, "silent": silent, "deployer": None}
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@main.command()
@click.pass_context
def provision(ctx):
    """Create the host directory layout and check required tools."""
    raise SystemExit(_deployer(ctx).provision())


@main.command()
@click.argument("app", required=False)
@click.pass_context
def deploy(ctx, app):
    """Deploy one application, or every application when APP is omitted."""
    raise SystemExit(_deployer(ctx).deploy(app))


@main.command()
@click.argument("app", required=False)
@click.pass_context
def backup(ctx, app):
    """Snapshot one application, or every application when APP is omitted."""
    raise SystemExit(_deployer(ctx).backup(app))


@main.command()
@click.argument("app")
@click.argument("backup_id", required=False)
@click.pass_context
def restore(ctx, app, backup_id):
    """Restore APP from BACKUP_ID, or from its latest backup."""
    raise SystemExit(_deployer(ctx).restore(app, backup_id))


@main.command()
@click.argument("app", required=False)
@click.pass_context
def ssl(ctx, app):
    """Obtain TLS certificates for APP, or for every application with SSL enabled."""
    raise SystemExit(_deployer(ctx).ssl(app))


@main.command("db:backup")
@click.argument("app")
@click.pass_context
def db_backup(ctx, app):
    """Write a standalone compressed database dump for APP."""
    raise SystemExit(_deployer(ctx).db_backup(app))


@main.command("db:optimize")
@click.argument("app")
@click.pass_context
def db_optimize(ctx, app):
    """Optimize the database tables of APP."""
    raise SystemExit(_deployer(ctx).db_optimize(app))


@main.command("list")
@click.pass_context
def list_command(ctx):
    """List discovered applications and their last deployment."""
    raise SystemExit(_deployer(ctx).list_apps())


@main.command()
@click.pass_context
def monitor(ctx):
    """Probe every application over HTTP and show host facts."""
    raise SystemExit(_deployer(ctx).monitor())


@main.command("setup-app")
@click.argument("name")
@click.argument("domain")
@click.pass_context
def setup_app(ctx, name, domain):
    """Register NAME under DOMAIN and write its configuration record."""
    raise SystemExit(_deployer(ctx).setup_app(name, domain))


@main.command("help")
@click.pass_context
def help_command(ctx):
    """Show this message."""
    click.echo(ctx.parent.get_help())


@main.command()
def version():
    """Show the LaraDeploy version."""
    click.echo(f"laradeploy {__version__}")


if __name__ == "__main__":
    main()
