import logging
import time
from typing import Callable, List, Optional

from rich.console import Console

from .constants import LOCK_DIR
from .errors import (
    DataResetFailed,
    DumpFailed,
    RestoreFailed,
    RuntimeUnavailable,
    ShutdownTimeout,
    UpgraderError,
)
from .models import (
    DESTRUCTIVE_STAGES,
    BackupArtifact,
    Mode,
    OrchestrationOutcome,
    OutcomeStatus,
    RuntimeSettings,
    Stage,
    UpgradeRequest,
)
from .services.backup_store import BackupStore, human_size
from .services.command_runner import CommandRunner
from .services.data_directory import DataDirectoryReset
from .services.docker_runtime import DockerRuntimeService
from .services.filesystem import FileSystemService
from .services.version_configurator import VersionConfigurator
from .services.waiting import ReadinessWaiter

console = Console()
logger = logging.getLogger("pgupgrader")

NO_CHANGES = "No rollback needed: no destructive changes were made."
MANUAL_INTERVENTION = "Manual intervention required."


class UpgradeOrchestrator:
    """Sequences backup, reset, reconfigure, restart and restore for one request.

    ``execute()`` returns an ``OrchestrationOutcome``; ``run()`` reports it and
    converts it into a process exit code.
    """

    def __init__(
        self,
        request: UpgradeRequest,
        settings: Optional[RuntimeSettings] = None,
        runtime=None,
        lock_dir: str = LOCK_DIR,
        run_timestamp: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.request = request
        self.settings = settings or RuntimeSettings()
        self.sleep = sleep
        self.stage = Stage.IDLE
        self.history: List[Stage] = [Stage.IDLE]

        self.command_runner = CommandRunner(logger=logger)
        self.runtime = runtime or DockerRuntimeService(
            logger=logger,
            console=console,
            command_runner=self.command_runner,
            compose_file=self.settings.compose_file,
            db_user=self.settings.db_user,
            probe_timeout=self.settings.probe_timeout_seconds,
            operation_timeout=self.settings.operation_timeout_seconds,
        )
        self.waiter = ReadinessWaiter(
            runtime=self.runtime,
            logger=logger,
            console=console,
            settings=self.settings,
            sleep=sleep,
        )
        self.backup_store = BackupStore(
            runtime=self.runtime,
            waiter=self.waiter,
            logger=logger,
            console=console,
            backup_dir=self.settings.backup_dir,
            db_user=self.settings.db_user,
            run_timestamp=run_timestamp,
        )
        self.version_configurator = VersionConfigurator(self.settings.compose_file, logger=logger)
        self.data_reset = DataDirectoryReset(
            runtime=self.runtime,
            waiter=self.waiter,
            logger=logger,
            console=console,
        )
        self.filesystem_service = FileSystemService(logger=logger, console=console, lock_dir=lock_dir)

    def _enter(self, stage: Stage):
        self.stage = stage
        self.history.append(stage)
        logger.debug("Entering stage: %s", stage.value)

    def _failed(self, exc: UpgraderError, resolution: str, artifact=None) -> OrchestrationOutcome:
        if isinstance(exc, (DumpFailed, RestoreFailed, ShutdownTimeout, DataResetFailed)) and not isinstance(
            exc.__cause__, RuntimeUnavailable
        ):
            self.waiter.log_failure_context(self.request.container_name)

        return OrchestrationOutcome(
            status=OutcomeStatus.FAILED_HARD,
            stage=self.stage,
            reason=str(exc),
            resolution=resolution,
            error_kind=exc.kind,
            artifact=artifact,
        )

    def _succeeded(self, resolution: str, artifact=None) -> OrchestrationOutcome:
        return OrchestrationOutcome(
            status=OutcomeStatus.SUCCEEDED,
            stage=self.stage,
            resolution=resolution,
            artifact=artifact,
        )

    def execute(self) -> OrchestrationOutcome:
        if self.request.mode is Mode.DRY_RUN:
            return self.dry_run()

        try:
            with self.filesystem_service.container_lock(self.request.container_name):
                self.runtime.validate_environment()
                if self.request.mode is Mode.BACKUP_ONLY:
                    return self.backup_only()
                if self.request.mode is Mode.RESTORE_ONLY:
                    return self.restore_only()
                return self.upgrade()
        except UpgraderError as exc:
            if self.stage is not Stage.IDLE:
                raise
            return self._failed(exc, NO_CHANGES)

    def backup_only(self) -> OrchestrationOutcome:
        version = self.request.from_version
        logger.info("Starting backup-only operation for PostgreSQL %s", version)

        self._enter(Stage.BACKING_UP)
        try:
            artifact = self.backup_store.create(self.request.container_name, version)
        except UpgraderError as exc:
            return self._failed(exc, NO_CHANGES)

        return self._succeeded(f"Backup stored at {artifact.path}.", artifact=artifact)

    def restore_only(self) -> OrchestrationOutcome:
        version = self.request.from_version
        name = self.request.container_name
        logger.info("Starting restore-only operation for PostgreSQL %s", version)

        artifact: Optional[BackupArtifact] = None
        try:
            self._enter(Stage.LOCATING)
            artifact = self.backup_store.locate(version)

            self._enter(Stage.VERIFYING)
            artifact = self.backup_store.verify(artifact)

            self._enter(Stage.RESTORING)
            self.waiter.wait_until_ready(
                name,
                attempts=self.settings.restart_attempts,
                interval=self.settings.restart_interval_seconds,
            )
            self.backup_store.restore(name, artifact)
        except UpgraderError as exc:
            return self._failed(
                exc,
                "No rollback attempted; configuration and data directory were not touched.",
                artifact=artifact,
            )

        return self._succeeded(f"Restored {artifact.path}.", artifact=artifact)

    def upgrade(self) -> OrchestrationOutcome:
        request = self.request
        name = request.container_name
        logger.info(
            "Starting PostgreSQL upgrade from version %s to %s",
            request.from_version,
            request.to_version,
        )

        self._enter(Stage.BACKING_UP)
        try:
            artifact = self.backup_store.create(name, request.from_version)
        except UpgraderError as exc:
            return self._failed(exc, NO_CHANGES)

        self._enter(Stage.VERIFYING)
        try:
            artifact = self.backup_store.verify(artifact)
        except UpgraderError as exc:
            return self._failed(exc, NO_CHANGES, artifact=artifact)

        if not artifact.is_verified:
            raise UpgraderError("Refusing to reset the data directory without a verified backup.")

        self._enter(Stage.RESETTING)
        try:
            self.data_reset.quiesce_and_clean(name, request.data_directory, request.compose_service)
        except UpgraderError as exc:
            if not self.data_reset.wipe_started:
                return self._failed(
                    exc,
                    f"{MANUAL_INTERVENTION} The data directory was not cleaned, but PostgreSQL "
                    f"{request.from_version} may be stopped. Start it with "
                    f"`docker compose -f {self.settings.compose_file} up -d` "
                    f"before retrying. Verified backup: {artifact.path}",
                    artifact=artifact,
                )
            return self._failed(
                exc,
                f"{MANUAL_INTERVENTION} The data directory state is unknown. "
                f"Verified backup: {artifact.path}",
                artifact=artifact,
            )

        self._enter(Stage.RECONFIGURING)
        try:
            self.version_configurator.set_version(request.to_version)
        except UpgraderError as exc:
            return self._failed(
                exc,
                f"{MANUAL_INTERVENTION} The data directory was already cleaned and "
                f"{self.settings.compose_file} still pins PostgreSQL {request.from_version}. "
                f"Start it and restore {artifact.path} with --restore-only.",
                artifact=artifact,
            )

        try:
            self._enter(Stage.RESTARTING)
            console.print("[blue]Starting new PostgreSQL container...[/blue]")
            self.waiter.retry_runtime_call(self.runtime.start_topology, "Starting container topology")
            self.sleep(self.settings.restart_grace_seconds)
            self.waiter.wait_until_ready(
                name,
                attempts=self.settings.restart_attempts,
                interval=self.settings.restart_interval_seconds,
            )

            self._enter(Stage.RESTORING)
            self.backup_store.restore(name, artifact)
        except UpgraderError as exc:
            return self.rollback(exc, artifact)

        return self._succeeded(
            f"PostgreSQL {request.to_version} is running with data restored from {artifact.path}.",
            artifact=artifact,
        )

    def rollback(self, cause: UpgraderError, artifact: BackupArtifact) -> OrchestrationOutcome:
        failed_stage = self.stage
        request = self.request
        logger.error("Stage '%s' failed: %s", failed_stage.value, cause)
        if not isinstance(cause, RuntimeUnavailable):
            self.waiter.log_failure_context(request.container_name)
        logger.warning("Rolling back to version %s...", request.from_version)

        self._enter(Stage.ROLLING_BACK)
        try:
            self.data_reset.quiesce_and_clean(
                request.container_name, request.data_directory, request.compose_service
            )
            self.version_configurator.set_version(request.from_version)
            self.waiter.retry_runtime_call(self.runtime.start_topology, "Starting container topology")
        except UpgraderError as exc:
            logger.error("Rollback failed: %s", exc)
            return OrchestrationOutcome(
                status=OutcomeStatus.FAILED_HARD,
                stage=Stage.ROLLING_BACK,
                reason=f"{cause} Rollback also failed: {exc}",
                resolution=(
                    f"{MANUAL_INTERVENTION} Rollback to PostgreSQL {request.from_version} did not "
                    f"complete. Verified backup: {artifact.path}"
                ),
                error_kind=exc.kind,
                artifact=artifact,
            )

        return OrchestrationOutcome(
            status=OutcomeStatus.ROLLED_BACK,
            stage=failed_stage,
            reason=str(cause),
            resolution=(
                f"Rolled back to PostgreSQL {request.from_version} with an empty data directory. "
                f"Restore manually with: pgupgrader -n {request.container_name} "
                f"--restore-only {request.from_version}"
            ),
            error_kind=cause.kind,
            artifact=artifact,
        )

    def planned_steps(self) -> List[str]:
        request = self.request
        backup_path = self.backup_store.path_for(request.from_version, self.backup_store.run_timestamp)
        return [
            f"Check that container {request.container_name} is running and ready",
            f"Create backup of version {request.from_version} database at {backup_path}",
            "Verify the backup contains the dump completion marker",
            f"Stop PostgreSQL in {request.container_name} and stop the topology",
            f"Remove existing PostgreSQL data in {request.data_directory}",
            f"Update {self.settings.compose_file} to version {request.to_version}",
            "Start new PostgreSQL container",
            "Wait for container to be ready",
            "Restore database from backup",
        ]

    def dry_run(self) -> OrchestrationOutcome:
        request = self.request
        self._enter(Stage.PLANNING)
        logger.info(
            "Performing dry run for upgrade from PostgreSQL %s to %s",
            request.from_version,
            request.to_version,
        )

        steps = self.planned_steps()
        console.print("[yellow]The following operations would be performed:[/yellow]")
        for index, step in enumerate(steps, start=1):
            console.print(f"{index}. {step}")

        artifacts = self.backup_store.list_artifacts()
        console.print("[yellow]Existing backups:[/yellow]")
        if artifacts:
            for artifact in artifacts:
                console.print(f"  {artifact.path} ({human_size(artifact.size_bytes)})")
        else:
            console.print("  No backups found")

        return OrchestrationOutcome(
            status=OutcomeStatus.SUCCEEDED,
            stage=Stage.PLANNING,
            resolution="Dry run completed.",
            planned_steps=tuple(steps),
            existing_artifacts=tuple(artifacts),
        )

    def _boundary(self) -> str:
        if self.stage in DESTRUCTIVE_STAGES:
            return (
                f"{MANUAL_INTERVENTION} The data directory and {self.settings.compose_file} "
                "may be in an intermediate state."
            )
        return NO_CHANGES

    def report(self, outcome: OrchestrationOutcome):
        if outcome.status is OutcomeStatus.SUCCEEDED:
            console.print(f"[bold green]{outcome.resolution}[/bold green]")
            logger.info("%s completed successfully. %s", self.request.mode.value, outcome.resolution)
            return

        if outcome.status is OutcomeStatus.ROLLED_BACK:
            console.print(f"[bold yellow]Upgrade rolled back:[/bold yellow] {outcome.reason}")
        else:
            console.print(f"[bold red]Error:[/bold red] {outcome.reason}")
        logger.error(
            "%s failed at stage '%s' (%s): %s %s",
            self.request.mode.value,
            outcome.stage.value,
            outcome.error_kind,
            outcome.reason,
            outcome.resolution,
        )

    def run(self) -> int:
        try:
            outcome = self.execute()
        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.error("Operation cancelled during stage '%s'. %s", self.stage.value, self._boundary())
            return 1
        except UpgraderError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error("Stage '%s' failed: %s %s", self.stage.value, exc, self._boundary())
            return 1
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error during stage '%s'", self.stage.value)
            logger.error("Stage '%s' failed. %s", self.stage.value, self._boundary())
            return 1

        if outcome.artifact is not None:
            logger.debug(
                "Backup artifact: %s (%s, %s)",
                outcome.artifact.path,
                human_size(outcome.artifact.size_bytes),
                outcome.artifact.status.value,
            )
        self.report(outcome)
        return outcome.exit_code
