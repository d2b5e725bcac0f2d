"""Shared domain models for pgupgrader."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from .constants import BACKUP_DIR, DEFAULT_COMPOSE_FILE, DEFAULT_DB_USER


class Mode(Enum):
    UPGRADE = "upgrade"
    BACKUP_ONLY = "backup-only"
    RESTORE_ONLY = "restore-only"
    DRY_RUN = "dry-run"


class VerificationStatus(Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    FAILED = "failed"


class Stage(Enum):
    IDLE = "idle"
    PLANNING = "planning"
    LOCATING = "locating"
    BACKING_UP = "backing up"
    VERIFYING = "verifying"
    RESETTING = "resetting"
    RECONFIGURING = "reconfiguring"
    RESTARTING = "restarting"
    RESTORING = "restoring"
    ROLLING_BACK = "rolling back"


# Stages after which the data directory may already have been touched.
DESTRUCTIVE_STAGES = frozenset(
    {
        Stage.RESETTING,
        Stage.RECONFIGURING,
        Stage.RESTARTING,
        Stage.RESTORING,
        Stage.ROLLING_BACK,
    }
)


class OutcomeStatus(Enum):
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled back"
    FAILED_HARD = "failed"


@dataclass(frozen=True)
class UpgradeRequest:
    """Validated input for one orchestration run."""

    container_name: str
    data_directory: str
    from_version: str
    mode: Mode
    to_version: Optional[str] = None
    service_name: Optional[str] = None

    @property
    def compose_service(self) -> str:
        return self.service_name or self.container_name


@dataclass(frozen=True)
class BackupArtifact:
    version: str
    path: str
    size_bytes: int
    timestamp: Optional[str] = None
    status: VerificationStatus = VerificationStatus.UNVERIFIED

    @property
    def is_verified(self) -> bool:
        return self.status is VerificationStatus.VERIFIED


@dataclass(frozen=True)
class RuntimeSettings:
    """Paths and wait budgets shared by the services of one run."""

    compose_file: str = DEFAULT_COMPOSE_FILE
    backup_dir: str = BACKUP_DIR
    db_user: str = DEFAULT_DB_USER
    ready_attempts: int = 6
    ready_interval_seconds: float = 1.0
    restart_grace_seconds: float = 5.0
    restart_attempts: int = 30
    restart_interval_seconds: float = 1.0
    shutdown_attempts: int = 10
    shutdown_interval_seconds: float = 2.0
    probe_timeout_seconds: float = 30.0
    operation_timeout_seconds: float = 300.0
    progress_log_lines: int = 5
    failure_log_lines: int = 20


@dataclass(frozen=True)
class OrchestrationOutcome:
    status: OutcomeStatus
    stage: Stage
    reason: str = ""
    resolution: str = ""
    error_kind: Optional[str] = None
    artifact: Optional[BackupArtifact] = None
    planned_steps: Tuple[str, ...] = field(default_factory=tuple)
    existing_artifacts: Tuple[BackupArtifact, ...] = field(default_factory=tuple)

    @property
    def exit_code(self) -> int:
        return 0 if self.status is OutcomeStatus.SUCCEEDED else 1
