"""Actionable error catalog for pgupgrader."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "container_not_ready": {
        "what": "Container {name} is not running or not accepting connections.",
        "next": "Start it with `docker compose up -d` and check `docker logs {name}`.",
    },
    "dump_failed": {
        "what": "Database dump for PostgreSQL {version} failed: {detail}",
        "next": "Check free disk space and `docker logs {name}`, then retry.",
    },
    "verification_failed": {
        "what": "Backup verification failed for {path}.",
        "next": "The dump did not finish cleanly. Take a new backup with `--backup-only`.",
    },
    "backup_not_found": {
        "what": "No backup file found for PostgreSQL {version} in {backup_dir}.",
        "next": "Create one with `--backup-only {version}` or copy an existing dump there.",
    },
    "shutdown_timeout": {
        "what": "PostgreSQL in {name} did not shut down within the expected time.",
        "next": "Stop the engine manually. No data has been removed.",
    },
    "data_reset_failed": {
        "what": "Cleaning data directory {data_dir} failed (exit code {exit_code}).",
        "next": "Inspect the volume manually before retrying. Its state is unknown.",
    },
    "config_write_failed": {
        "what": "Could not update {path}: {detail}",
        "next": "Check that the file exists, is writable and pins a `postgres:<version>` image.",
    },
    "restore_failed": {
        "what": "Restoring {path} into {name} failed (exit code {exit_code}).",
        "next": "Inspect `docker logs {name}` and restore manually with `--restore-only`.",
    },
    "lock_unavailable": {
        "what": "Another pgupgrader run is already active for container {name}.",
        "next": "Wait for it to finish or remove {lock_path} if that run is gone.",
    },
}


def actionable_error(code: str, **kwargs) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
