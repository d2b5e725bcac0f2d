"""Configuration loader for pgupgrader."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from pgupgrader.errors import UpgraderError

_STRING_KEYS = ("name", "data_dir", "service", "compose_file", "backup_dir", "log_file", "db_user")
_COUNT_KEYS = ("ready_attempts", "restart_attempts", "shutdown_attempts")
_SECONDS_KEYS = (
    "restart_grace_seconds",
    "shutdown_interval_seconds",
    "probe_timeout_seconds",
    "operation_timeout_seconds",
)


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = set(_STRING_KEYS + _COUNT_KEYS + _SECONDS_KEYS + ("verbose",))

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise UpgraderError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise UpgraderError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise UpgraderError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise UpgraderError(f"Unknown configuration keys: {unknown_list}")

        for key, value in parsed.items():
            self._check_type(key, value)
        return parsed

    @staticmethod
    def _check_type(key: str, value: Any):
        # bool is an int subclass; YAML `yes`/`true` must not pass as a count.
        if key in _STRING_KEYS:
            valid = isinstance(value, str) and bool(value.strip())
            expected = "a non-empty string"
        elif key in _COUNT_KEYS:
            valid = isinstance(value, int) and not isinstance(value, bool) and value >= 1
            expected = "a positive integer"
        elif key in _SECONDS_KEYS:
            valid = isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0
            expected = "a non-negative number of seconds"
        else:
            valid = isinstance(value, bool)
            expected = "true or false"

        if not valid:
            raise UpgraderError(f"Config key '{key}' must be {expected}, got {value!r}.")
