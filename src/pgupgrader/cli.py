import logging
import os

import click
from rich.logging import RichHandler

from . import __version__
from .constants import (
    BACKUP_DIR,
    DEFAULT_COMPOSE_FILE,
    DEFAULT_CONFIG_FILE,
    DEFAULT_DATA_DIRECTORY,
    DEFAULT_DB_USER,
    LOG_DATE_FORMAT,
    LOG_FILE,
    LOG_FORMAT,
)
from .core import UpgradeOrchestrator
from .errors import ArgumentError, UpgraderError
from .models import RuntimeSettings
from .services.config_loader import ConfigLoader
from .services.validation import ValidationService

EPILOG = f"""
\b
Examples:
  pgupgrader -n postgres-db 13 14                  Upgrade from PostgreSQL 13 to 14
  pgupgrader -n postgres-db -d /custom/path 13 14  Using custom data directory
  pgupgrader -n postgres-db --backup-only 13       Only create backup of PostgreSQL 13
  pgupgrader -n postgres-db --restore-only 13      Only restore the latest backup of 13

\b
Backups are stored in: {BACKUP_DIR}
Logs are stored in: {LOG_FILE}
"""


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def _attach_file_handler(logger: logging.Logger, log_file: str, verbose: bool):
    for handler in list(logger.handlers):
        if isinstance(handler, logging.FileHandler):
            logger.removeHandler(handler)
            handler.close()

    os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
    file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logger.addHandler(file_handler)


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
)


@click.command(epilog=EPILOG)
@click.argument("versions", nargs=-1)
@click.option("-n", "--name", required=False, help="Container name (mandatory).")
@click.option(
    "-d",
    "--data-dir",
    required=False,
    help=f"Data directory inside the container (default: {DEFAULT_DATA_DIRECTORY}).",
)
@click.option(
    "--service",
    required=False,
    help="Compose service used to clean the data directory (default: the container name).",
)
@click.option(
    "--compose-file",
    required=False,
    type=click.Path(),
    help=f"Compose file pinning the PostgreSQL image (default: {DEFAULT_COMPOSE_FILE}).",
)
@click.option("--backup-only", is_flag=True, default=False, help="Create backup without performing upgrade.")
@click.option(
    "--restore-only",
    is_flag=True,
    default=False,
    help="Restore from an existing backup without performing upgrade.",
)
@click.option("--dry-run", is_flag=True, default=False, help="Show what would happen without making changes.")
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option("--log-file", type=click.Path(), help=f"Path to log file (default: {LOG_FILE}).")
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging.")
@click.version_option(
    __version__,
    "--version",
    message="PostgreSQL Docker Upgrade Script - Version %(version)s",
)
def main(
    versions,
    name,
    data_dir,
    service,
    compose_file,
    backup_only,
    restore_only,
    dry_run,
    config,
    log_file,
    verbose,
):
    """Upgrade a PostgreSQL container in place: FROM_VERSION TO_VERSION.

    With --backup-only or --restore-only pass a single VERSION.
    """
    logger = logging.getLogger("pgupgrader")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc

    name = _resolve_option(name, config_values, "name")
    data_dir = str(_resolve_option(data_dir, config_values, "data_dir", default=DEFAULT_DATA_DIRECTORY))
    service = _resolve_option(service, config_values, "service")
    compose_file = _resolve_option(compose_file, config_values, "compose_file", default=DEFAULT_COMPOSE_FILE)
    log_file = _resolve_option(log_file, config_values, "log_file", default=LOG_FILE)
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    settings = RuntimeSettings(
        compose_file=compose_file,
        backup_dir=_resolve_option(None, config_values, "backup_dir", default=BACKUP_DIR),
        db_user=_resolve_option(None, config_values, "db_user", default=DEFAULT_DB_USER),
        ready_attempts=int(_resolve_option(None, config_values, "ready_attempts", default=6)),
        restart_attempts=int(_resolve_option(None, config_values, "restart_attempts", default=30)),
        restart_grace_seconds=float(
            _resolve_option(None, config_values, "restart_grace_seconds", default=5.0)
        ),
        shutdown_attempts=int(_resolve_option(None, config_values, "shutdown_attempts", default=10)),
        shutdown_interval_seconds=float(
            _resolve_option(None, config_values, "shutdown_interval_seconds", default=2.0)
        ),
        probe_timeout_seconds=float(
            _resolve_option(None, config_values, "probe_timeout_seconds", default=30.0)
        ),
        operation_timeout_seconds=float(
            _resolve_option(None, config_values, "operation_timeout_seconds", default=300.0)
        ),
    )

    try:
        request = ValidationService(logger=logger).build_request(
            container_name=name,
            versions=versions,
            data_directory=data_dir,
            backup_only=backup_only,
            restore_only=restore_only,
            dry_run=dry_run,
            service_name=service,
        )
    except ArgumentError as exc:
        logger.error(str(exc))
        raise click.UsageError(str(exc)) from exc

    _attach_file_handler(logger, log_file, verbose)
    orchestrator = UpgradeOrchestrator(request=request, settings=settings)
    raise SystemExit(orchestrator.run())


if __name__ == "__main__":
    main()
