"""Shared constants for pgupgrader."""

import os

TOOL_ROOT = os.path.join(".", "postgres-upgrade")
BACKUP_DIR = os.path.join(TOOL_ROOT, "backups")
LOG_FILE = os.path.join(TOOL_ROOT, "upgrade.log")
LOCK_DIR = os.path.join(TOOL_ROOT, "locks")

DEFAULT_DATA_DIRECTORY = "/var/lib/postgresql/data"
DEFAULT_COMPOSE_FILE = "docker-compose.yml"
DEFAULT_DB_USER = "postgres"
DEFAULT_CONFIG_FILE = ".pgupgrader.yml"

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
DUMP_COMPLETE_MARKER = "PostgreSQL database dump complete"

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
