"""Input validation helpers for pgupgrader."""

import re
from typing import Optional, Sequence

from packaging import version as packaging_version

from pgupgrader.errors import ArgumentError
from pgupgrader.models import Mode, UpgradeRequest

_VERSION_PATTERN = re.compile(r"^\d+(?:\.\d+)*$")


class ValidationService:
    """Turns raw CLI/config input into an immutable ``UpgradeRequest``."""

    def __init__(self, logger):
        self.logger = logger

    @staticmethod
    def resolve_mode(backup_only: bool, restore_only: bool, dry_run: bool) -> Mode:
        if backup_only and restore_only:
            raise ArgumentError("Cannot specify both --backup-only and --restore-only")

        selected = [flag for flag in (backup_only, restore_only, dry_run) if flag]
        if len(selected) > 1:
            raise ArgumentError("--dry-run cannot be combined with --backup-only or --restore-only")

        if backup_only:
            return Mode.BACKUP_ONLY
        if restore_only:
            return Mode.RESTORE_ONLY
        if dry_run:
            return Mode.DRY_RUN
        return Mode.UPGRADE

    @staticmethod
    def normalize_data_directory(data_directory: str) -> str:
        cleaned = (data_directory or "").strip().rstrip("/")
        if not cleaned:
            raise ArgumentError("Data directory cannot be empty or the filesystem root.")
        if not cleaned.startswith("/"):
            raise ArgumentError(f"Data directory must be an absolute path: {data_directory}")
        return cleaned

    @staticmethod
    def ensure_version(value: str) -> str:
        cleaned = value.strip()
        if not _VERSION_PATTERN.match(cleaned):
            raise ArgumentError(f"Invalid PostgreSQL version '{value}'. Use a numeric version like 14 or 15.2.")
        return cleaned

    def build_request(
        self,
        container_name: Optional[str],
        versions: Sequence[str],
        data_directory: str,
        backup_only: bool = False,
        restore_only: bool = False,
        dry_run: bool = False,
        service_name: Optional[str] = None,
    ) -> UpgradeRequest:
        if not container_name or not container_name.strip():
            raise ArgumentError("Container name is mandatory. Use -n or --name to specify it.")

        mode = self.resolve_mode(backup_only, restore_only, dry_run)

        if mode is Mode.BACKUP_ONLY and len(versions) != 1:
            raise ArgumentError("Backup-only mode requires just the version number")
        if mode is Mode.RESTORE_ONLY and len(versions) != 1:
            raise ArgumentError("Restore-only mode requires just the version number")
        if mode is Mode.UPGRADE and len(versions) != 2:
            raise ArgumentError("Upgrade mode requires both from-version and to-version")
        if mode is Mode.DRY_RUN and len(versions) != 2:
            raise ArgumentError("Dry-run mode requires both from-version and to-version")

        parsed = [self.ensure_version(value) for value in versions]
        to_version = parsed[1] if len(parsed) == 2 else None

        if to_version is not None:
            self._warn_on_unusual_direction(parsed[0], to_version)

        return UpgradeRequest(
            container_name=container_name.strip(),
            data_directory=self.normalize_data_directory(data_directory),
            from_version=parsed[0],
            to_version=to_version,
            mode=mode,
            service_name=service_name.strip() if service_name else None,
        )

    def _warn_on_unusual_direction(self, from_version: str, to_version: str):
        current = packaging_version.parse(from_version)
        target = packaging_version.parse(to_version)
        if target == current:
            self.logger.warning(
                "From and to versions are both %s; the data will be dumped and restored in place.",
                from_version,
            )
        elif target < current:
            self.logger.warning(
                "Target version %s is older than %s. Dumps from newer servers may not restore cleanly.",
                to_version,
                from_version,
            )
