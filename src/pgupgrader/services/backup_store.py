"""Logical backup creation, lookup and verification."""

import os
import re
from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from pgupgrader.constants import BACKUP_TIMESTAMP_FORMAT, DUMP_COMPLETE_MARKER
from pgupgrader.errors import (
    BackupNotFound,
    DumpFailed,
    RestoreFailed,
    RuntimeUnavailable,
    VerificationFailed,
)
from pgupgrader.errors_catalog import actionable_error
from pgupgrader.models import BackupArtifact, VerificationStatus

_ARTIFACT_PATTERN = re.compile(r"^dump_v(?P<version>.+?)(?:_(?P<timestamp>\d{8}_\d{6}))?\.sql$")


def human_size(size_bytes: int) -> str:
    size = float(size_bytes)
    for unit in ("B", "K", "M", "G"):
        if size < 1024:
            return f"{size_bytes}B" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}T"


class BackupStore:
    """Creates and finds ``pg_dumpall`` artifacts keyed by (version, timestamp)."""

    def __init__(
        self,
        runtime,
        waiter,
        logger,
        console,
        backup_dir: str,
        db_user: str = "postgres",
        run_timestamp: Optional[str] = None,
    ):
        self.runtime = runtime
        self.waiter = waiter
        self.logger = logger
        self.console = console
        self.backup_dir = backup_dir
        self.db_user = db_user
        self.run_timestamp = run_timestamp or datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)

    def path_for(self, version: str, timestamp: Optional[str] = None) -> str:
        if timestamp:
            return os.path.join(self.backup_dir, f"dump_v{version}_{timestamp}.sql")
        return os.path.join(self.backup_dir, f"dump_v{version}.sql")

    def create(self, container_name: str, version: str) -> BackupArtifact:
        try:
            self.waiter.wait_until_ready(container_name)
        except RuntimeUnavailable as exc:
            raise DumpFailed(
                actionable_error(
                    "dump_failed",
                    version=version,
                    name=container_name,
                    detail="container is not running",
                )
            ) from exc

        self.logger.info("Creating backup of PostgreSQL %s database...", version)
        dump_path = self.path_for(version, self.run_timestamp)

        try:
            os.makedirs(self.backup_dir, exist_ok=True)
            with self.console.status("Creating database dump...") as status:
                exit_code = self.runtime.exec_inside_streaming(
                    container_name,
                    ["pg_dumpall", "-U", self.db_user],
                    stdout_path=dump_path,
                    on_progress=lambda written: status.update(
                        f"Creating database dump... {human_size(written)}"
                    ),
                )
        except OSError as exc:
            raise DumpFailed(
                actionable_error("dump_failed", version=version, name=container_name, detail=exc)
            ) from exc

        size_bytes = os.path.getsize(dump_path) if os.path.exists(dump_path) else 0
        if exit_code != 0 or size_bytes == 0:
            if os.path.exists(dump_path):
                self._discard_partial(dump_path, size_bytes)
            detail = f"pg_dumpall exited with {exit_code}" if exit_code != 0 else "dump file is empty"
            raise DumpFailed(
                actionable_error("dump_failed", version=version, name=container_name, detail=detail)
            )

        self.logger.info("Database dump created successfully at %s", dump_path)
        self.logger.info("Dump size: %s", human_size(size_bytes))
        return BackupArtifact(
            version=version,
            path=dump_path,
            size_bytes=size_bytes,
            timestamp=self.run_timestamp,
        )

    def _discard_partial(self, dump_path: str, size_bytes: int):
        """Move a failed dump out of the artifact namespace so ``locate`` never picks it."""
        if size_bytes == 0:
            os.remove(dump_path)
            return

        failed_path = f"{dump_path}.failed"
        os.replace(dump_path, failed_path)
        self.logger.warning("Partial dump kept for inspection at %s", failed_path)

    def verify(self, artifact: BackupArtifact) -> BackupArtifact:
        self.logger.info("Verifying backup integrity...")

        if not os.path.isfile(artifact.path):
            self.logger.error("Backup file not found: %s", artifact.path)
            raise VerificationFailed(actionable_error("verification_failed", path=artifact.path))

        with open(artifact.path, "r", encoding="utf-8", errors="replace") as file_obj:
            found = any(DUMP_COMPLETE_MARKER in line for line in file_obj)

        if not found:
            raise VerificationFailed(actionable_error("verification_failed", path=artifact.path))

        self.logger.info("Backup verification successful")
        return replace(artifact, status=VerificationStatus.VERIFIED)

    def list_artifacts(self, version: Optional[str] = None) -> List[BackupArtifact]:
        """Return known artifacts, oldest first. Never creates the backup directory."""
        if not os.path.isdir(self.backup_dir):
            return []

        artifacts = []
        for file_name in os.listdir(self.backup_dir):
            match = _ARTIFACT_PATTERN.match(file_name)
            if not match:
                continue
            if version is not None and match.group("version") != version:
                continue
            path = os.path.join(self.backup_dir, file_name)
            if not os.path.isfile(path):
                continue
            artifacts.append(
                BackupArtifact(
                    version=match.group("version"),
                    path=path,
                    size_bytes=os.path.getsize(path),
                    timestamp=match.group("timestamp"),
                )
            )

        # Un-timestamped legacy dumps sort before every timestamped one.
        return sorted(artifacts, key=lambda item: (item.timestamp or "", item.path))

    def locate(self, version: str) -> BackupArtifact:
        artifacts = self.list_artifacts(version)
        if not artifacts:
            raise BackupNotFound(
                actionable_error("backup_not_found", version=version, backup_dir=self.backup_dir)
            )

        artifact = artifacts[-1]
        if len(artifacts) > 1:
            self.logger.info(
                "Found %s backups for version %s, using the most recent: %s",
                len(artifacts),
                version,
                artifact.path,
            )
        return artifact

    def restore(self, container_name: str, artifact: BackupArtifact):
        self.logger.info("Restoring database from %s...", artifact.path)
        total = human_size(artifact.size_bytes)

        try:
            with self.console.status("Restoring database...") as status:
                exit_code = self.runtime.exec_inside_streaming(
                    container_name,
                    ["psql", "-U", self.db_user, "-d", "postgres"],
                    stdin_path=artifact.path,
                    on_progress=lambda consumed: status.update(
                        f"Restoring database... {human_size(consumed)} / {total}"
                    ),
                )
        except OSError as exc:
            raise RestoreFailed(f"Could not read backup {artifact.path}: {exc}") from exc

        if exit_code != 0:
            raise RestoreFailed(
                actionable_error(
                    "restore_failed",
                    path=artifact.path,
                    name=container_name,
                    exit_code=exit_code,
                )
            )
        self.logger.info("Database restored successfully")
