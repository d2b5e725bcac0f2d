import logging

import pytest

from pgupgrader.core import UpgradeOrchestrator
from pgupgrader.errors import RuntimeUnavailable
from pgupgrader.models import (
    Mode,
    OutcomeStatus,
    RuntimeSettings,
    Stage,
    UpgradeRequest,
    VerificationStatus,
)

COMPOSE = """services:
  postgres-db:
    container_name: postgres-db
    image: postgres:13
    volumes:
      - ./data:/var/lib/postgresql/data
"""

COMPLETE_DUMP = "CREATE ROLE app;\n--\n-- PostgreSQL database dump complete\n--\n"

MUTATING_CALLS = {"exec", "stream", "stop_topology", "start_topology", "run_ephemeral"}


class FakeRuntime:
    """In-memory engine: one container, one data directory."""

    def __init__(
        self,
        dump_content=COMPLETE_DUMP,
        restore_exit=0,
        ready_after_start=True,
        stops_on_pg_ctl=True,
        failing_ephemeral_runs=(),
        dump_exit=0,
        transient_failures=None,
    ):
        self.dump_content = dump_content
        self.restore_exit = restore_exit
        self.ready_after_start = ready_after_start
        self.stops_on_pg_ctl = stops_on_pg_ctl
        self.failing_ephemeral_runs = set(failing_ephemeral_runs)
        self.dump_exit = dump_exit
        self.transient_failures = dict(transient_failures or {})
        self.dumped = False
        self.running = True
        self.ready = True
        self.data_files = {"PG_VERSION", "base"}
        self.ephemeral_runs = 0
        self.restored = []
        self.calls = []

    def validate_environment(self):
        self.calls.append("validate_environment")

    def _flake(self, call):
        if self.dumped and self.transient_failures.get(call, 0) > 0:
            self.transient_failures[call] -= 1
            raise RuntimeUnavailable(f"{call} timed out")

    def is_running(self, _name):
        self.calls.append("is_running")
        self._flake("is_running")
        return self.running

    def is_ready(self, _name):
        self.calls.append("is_ready")
        return self.running and self.ready

    def exec_inside(self, _name, command):
        self.calls.append("exec")
        if "pg_ctl stop" in command[-1] and self.stops_on_pg_ctl:
            self.ready = False
            self.running = False
        return "", 0

    def exec_inside_streaming(self, _name, command, stdin_path=None, stdout_path=None, on_progress=None):
        self.calls.append("stream")
        if command[0] == "pg_dumpall":
            with open(stdout_path, "w", encoding="utf-8") as file_obj:
                file_obj.write(self.dump_content)
            self.dumped = True
            return self.dump_exit

        with open(stdin_path, "r", encoding="utf-8") as file_obj:
            self.restored.append(file_obj.read())
        if self.restore_exit == 0:
            self.data_files.add("restored")
        return self.restore_exit

    def recent_logs(self, _name, _line_count):
        self.calls.append("recent_logs")
        return "LOG:  database system is ready to accept connections"

    def stop_topology(self):
        self.calls.append("stop_topology")
        self.running = False
        self.ready = False

    def start_topology(self):
        self.calls.append("start_topology")
        self._flake("start_topology")
        self.running = True
        self.ready = self.ready_after_start
        if not self.data_files:
            self.data_files.add("PG_VERSION")

    def run_ephemeral(self, _service, _command):
        self.calls.append("run_ephemeral")
        self.ephemeral_runs += 1
        if self.ephemeral_runs in self.failing_ephemeral_runs:
            return 1
        self.data_files.clear()
        return 0


@pytest.fixture
def workspace(tmp_path):
    compose = tmp_path / "docker-compose.yml"
    compose.write_text(COMPOSE, encoding="utf-8")
    return tmp_path


def build_orchestrator(workspace, runtime, mode=Mode.UPGRADE, from_version="13", to_version="14"):
    request = UpgradeRequest(
        container_name="postgres-db",
        data_directory="/var/lib/postgresql/data",
        from_version=from_version,
        to_version=to_version if mode in (Mode.UPGRADE, Mode.DRY_RUN) else None,
        mode=mode,
    )
    settings = RuntimeSettings(
        compose_file=str(workspace / "docker-compose.yml"),
        backup_dir=str(workspace / "backups"),
        ready_attempts=2,
        restart_attempts=3,
        shutdown_attempts=2,
    )
    return UpgradeOrchestrator(
        request=request,
        settings=settings,
        runtime=runtime,
        lock_dir=str(workspace / "locks"),
        run_timestamp="20240101_120000",
        sleep=lambda _seconds: None,
    )


def backups(workspace):
    directory = workspace / "backups"
    return sorted(item.name for item in directory.iterdir()) if directory.exists() else []


def test_upgrade_succeeds_and_pins_new_version(workspace):
    runtime = FakeRuntime()
    orchestrator = build_orchestrator(workspace, runtime)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert outcome.exit_code == 0
    assert outcome.artifact.status is VerificationStatus.VERIFIED
    assert "image: postgres:14" in (workspace / "docker-compose.yml").read_text(encoding="utf-8")
    assert backups(workspace) == ["dump_v13_20240101_120000.sql"]
    assert runtime.restored == [COMPLETE_DUMP]
    assert orchestrator.history == [
        Stage.IDLE,
        Stage.BACKING_UP,
        Stage.VERIFYING,
        Stage.RESETTING,
        Stage.RECONFIGURING,
        Stage.RESTARTING,
        Stage.RESTORING,
    ]


def test_upgrade_rolls_back_when_restore_fails(workspace):
    runtime = FakeRuntime(restore_exit=3)
    orchestrator = build_orchestrator(workspace, runtime)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.ROLLED_BACK
    assert outcome.stage is Stage.RESTORING
    assert outcome.error_kind == "RestoreFailed"
    assert outcome.exit_code == 1
    assert (workspace / "docker-compose.yml").read_text(encoding="utf-8") == COMPOSE
    assert runtime.running is True
    assert runtime.data_files == {"PG_VERSION"}
    assert "--restore-only 13" in outcome.resolution
    assert orchestrator.history[-1] is Stage.ROLLING_BACK


def test_upgrade_rolls_back_when_new_version_never_becomes_ready(workspace):
    runtime = FakeRuntime(ready_after_start=False)
    orchestrator = build_orchestrator(workspace, runtime)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.ROLLED_BACK
    assert outcome.stage is Stage.RESTARTING
    assert outcome.error_kind == "RuntimeUnavailable"
    assert "image: postgres:13" in (workspace / "docker-compose.yml").read_text(encoding="utf-8")
    assert runtime.restored == []


def test_failed_rollback_is_reported_as_hard_failure(workspace):
    runtime = FakeRuntime(restore_exit=3, failing_ephemeral_runs={2})
    orchestrator = build_orchestrator(workspace, runtime)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.FAILED_HARD
    assert outcome.stage is Stage.ROLLING_BACK
    assert "Manual intervention required" in outcome.resolution
    assert "image: postgres:14" in (workspace / "docker-compose.yml").read_text(encoding="utf-8")


def test_upgrade_never_resets_without_verified_backup(workspace):
    runtime = FakeRuntime(dump_content="CREATE TABLE half_written (\n")
    orchestrator = build_orchestrator(workspace, runtime)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.FAILED_HARD
    assert outcome.stage is Stage.VERIFYING
    assert outcome.error_kind == "VerificationFailed"
    assert "run_ephemeral" not in runtime.calls
    assert "stop_topology" not in runtime.calls
    assert runtime.data_files == {"PG_VERSION", "base"}
    assert (workspace / "docker-compose.yml").read_text(encoding="utf-8") == COMPOSE


def test_upgrade_aborts_when_engine_does_not_shut_down(workspace):
    runtime = FakeRuntime(stops_on_pg_ctl=False)
    orchestrator = build_orchestrator(workspace, runtime)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.FAILED_HARD
    assert outcome.stage is Stage.RESETTING
    assert outcome.error_kind == "ShutdownTimeout"
    assert "Manual intervention required" in outcome.resolution
    assert "run_ephemeral" not in runtime.calls
    assert (workspace / "docker-compose.yml").read_text(encoding="utf-8") == COMPOSE


def test_upgrade_reports_manual_recovery_when_reconfigure_fails(workspace):
    (workspace / "docker-compose.yml").write_text("services:\n  db:\n    image: mysql:8\n", encoding="utf-8")
    runtime = FakeRuntime()
    orchestrator = build_orchestrator(workspace, runtime)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.FAILED_HARD
    assert outcome.stage is Stage.RECONFIGURING
    assert outcome.error_kind == "ConfigWriteFailed"
    assert "start_topology" not in runtime.calls


def test_backup_only_with_empty_dump_fails_without_side_effects(workspace):
    runtime = FakeRuntime(dump_content="")
    orchestrator = build_orchestrator(workspace, runtime, mode=Mode.BACKUP_ONLY)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.FAILED_HARD
    assert outcome.error_kind == "DumpFailed"
    assert backups(workspace) == []
    assert (workspace / "docker-compose.yml").read_text(encoding="utf-8") == COMPOSE
    assert not MUTATING_CALLS.difference({"stream"}).intersection(runtime.calls)


def test_backup_only_creates_single_artifact(workspace):
    runtime = FakeRuntime()
    orchestrator = build_orchestrator(workspace, runtime, mode=Mode.BACKUP_ONLY)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert backups(workspace) == ["dump_v13_20240101_120000.sql"]
    assert orchestrator.history == [Stage.IDLE, Stage.BACKING_UP]


def test_restore_only_without_backup_fails_with_not_found(workspace):
    runtime = FakeRuntime()
    orchestrator = build_orchestrator(workspace, runtime, mode=Mode.RESTORE_ONLY)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.FAILED_HARD
    assert outcome.error_kind == "NotFound"
    assert outcome.stage is Stage.LOCATING
    assert not MUTATING_CALLS.intersection(runtime.calls)


def test_restore_only_restores_most_recent_backup(workspace):
    backup_dir = workspace / "backups"
    backup_dir.mkdir()
    (backup_dir / "dump_v13_20231201_000000.sql").write_text("old\n" + COMPLETE_DUMP, encoding="utf-8")
    (backup_dir / "dump_v13_20240201_000000.sql").write_text("new\n" + COMPLETE_DUMP, encoding="utf-8")
    runtime = FakeRuntime()
    orchestrator = build_orchestrator(workspace, runtime, mode=Mode.RESTORE_ONLY)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert runtime.restored == ["new\n" + COMPLETE_DUMP]
    assert "run_ephemeral" not in runtime.calls
    assert (workspace / "docker-compose.yml").read_text(encoding="utf-8") == COMPOSE


def test_dry_run_has_no_side_effects(workspace):
    backup_dir = workspace / "backups"
    backup_dir.mkdir()
    (backup_dir / "dump_v13_20231201_000000.sql").write_text(COMPLETE_DUMP, encoding="utf-8")
    runtime = FakeRuntime()
    orchestrator = build_orchestrator(workspace, runtime, mode=Mode.DRY_RUN)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert len(outcome.planned_steps) == 9
    assert [artifact.version for artifact in outcome.existing_artifacts] == ["13"]
    assert runtime.calls == []
    assert (workspace / "docker-compose.yml").read_text(encoding="utf-8") == COMPOSE
    assert not (workspace / "locks").exists()


def test_dry_run_without_backups_lists_none(workspace):
    orchestrator = build_orchestrator(workspace, FakeRuntime(), mode=Mode.DRY_RUN)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert outcome.existing_artifacts == ()
    assert not (workspace / "backups").exists()


def test_concurrent_run_for_same_container_is_refused(workspace):
    runtime = FakeRuntime()
    orchestrator = build_orchestrator(workspace, runtime)

    with orchestrator.filesystem_service.container_lock("postgres-db"):
        outcome = build_orchestrator(workspace, runtime).execute()

    assert outcome.status is OutcomeStatus.FAILED_HARD
    assert outcome.error_kind == "LockUnavailable"
    assert runtime.calls == []


def test_run_returns_exit_codes(workspace):
    assert build_orchestrator(workspace, FakeRuntime()).run() == 0
    assert build_orchestrator(workspace, FakeRuntime(restore_exit=1)).run() == 1


def test_run_reports_interrupt_as_failure(workspace):
    class InterruptingRuntime(FakeRuntime):
        def exec_inside_streaming(self, *_args, **_kwargs):
            raise KeyboardInterrupt

    orchestrator = build_orchestrator(workspace, InterruptingRuntime())

    assert orchestrator.run() == 1
    assert orchestrator.stage is Stage.BACKING_UP


def test_upgrade_survives_transient_runtime_errors(workspace):
    runtime = FakeRuntime(transient_failures={"is_running": 1, "start_topology": 1})
    orchestrator = build_orchestrator(workspace, runtime)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.SUCCEEDED
    assert runtime.calls.count("start_topology") == 2
    assert runtime.restored == [COMPLETE_DUMP]


def test_reset_reports_untouched_data_when_runtime_stays_unavailable(workspace):
    runtime = FakeRuntime(transient_failures={"is_running": 5})
    orchestrator = build_orchestrator(workspace, runtime)

    outcome = orchestrator.execute()

    assert outcome.status is OutcomeStatus.FAILED_HARD
    assert outcome.stage is Stage.RESETTING
    assert outcome.error_kind == "RuntimeUnavailable"
    assert "data directory was not cleaned" in outcome.resolution
    assert "run_ephemeral" not in runtime.calls
    assert runtime.data_files == {"PG_VERSION", "base"}


def test_failed_backup_only_does_not_shadow_older_backup(workspace):
    (workspace / "backups").mkdir()
    (workspace / "backups" / "dump_v13_20231201_000000.sql").write_text(COMPLETE_DUMP, encoding="utf-8")

    failed = build_orchestrator(
        workspace,
        FakeRuntime(dump_content="CREATE TABLE half (", dump_exit=1),
        mode=Mode.BACKUP_ONLY,
    ).execute()
    runtime = FakeRuntime()
    restored = build_orchestrator(workspace, runtime, mode=Mode.RESTORE_ONLY).execute()

    assert failed.error_kind == "DumpFailed"
    assert restored.status is OutcomeStatus.SUCCEEDED
    assert restored.artifact.timestamp == "20231201_000000"
    assert runtime.restored == [COMPLETE_DUMP]


def _last_error(caplog):
    return [record for record in caplog.records if record.levelno == logging.ERROR][-1].getMessage()


def test_report_describes_rollback(workspace, caplog):
    orchestrator = build_orchestrator(workspace, FakeRuntime(restore_exit=3))

    with caplog.at_level(logging.INFO, logger="pgupgrader"):
        exit_code = orchestrator.run()

    message = _last_error(caplog)
    assert exit_code == 1
    assert "upgrade failed at stage 'restoring' (RestoreFailed)" in message
    assert "Rolled back to PostgreSQL 13" in message
    assert "Manual intervention required" not in message


def test_report_asks_for_manual_intervention_after_reset_failure(workspace, caplog):
    orchestrator = build_orchestrator(workspace, FakeRuntime(stops_on_pg_ctl=False))

    with caplog.at_level(logging.INFO, logger="pgupgrader"):
        exit_code = orchestrator.run()

    message = _last_error(caplog)
    assert exit_code == 1
    assert "upgrade failed at stage 'resetting' (ShutdownTimeout)" in message
    assert "Manual intervention required" in message
    assert "Rolled back" not in message
