"""Engine shutdown and data directory wipe."""

import shlex

from pgupgrader.errors import DataResetFailed, RuntimeUnavailable
from pgupgrader.errors_catalog import actionable_error


class DataDirectoryReset:
    """Stops the engine and empties its data directory.

    Destructive and irreversible: callers must hold a verified backup first.
    ``wipe_started`` tells callers whether data may already be gone.
    """

    def __init__(self, runtime, waiter, logger, console):
        self.runtime = runtime
        self.waiter = waiter
        self.logger = logger
        self.console = console
        self.wipe_started = False

    def quiesce_and_clean(self, container_name: str, data_directory: str, service_name: str):
        self.wipe_started = False
        self.logger.info("Preparing to clean PostgreSQL data directory inside container...")

        running = self.waiter.retry_runtime_call(
            lambda: self.runtime.is_running(container_name), "Checking container state"
        )
        if running:
            self.logger.info("Stopping PostgreSQL service within running container...")
            stop_cmd = f"pg_ctl stop -D {shlex.quote(data_directory)}"
            try:
                output, exit_code = self.runtime.exec_inside(
                    container_name, ["su", "postgres", "-c", stop_cmd]
                )
                if exit_code != 0:
                    self.logger.warning("pg_ctl stop exited with %s: %s", exit_code, output.strip())
            except RuntimeUnavailable as exc:
                self.logger.warning("pg_ctl stop did not complete: %s", exc)

            self.waiter.wait_until_stopped(container_name)

            self.logger.info("Stopping container...")
            self.waiter.retry_runtime_call(self.runtime.stop_topology, "Stopping container topology")
        else:
            self.logger.info("Container is already stopped.")

        self.logger.info("Cleaning PostgreSQL data directory...")
        self.wipe_started = True
        wipe_cmd = f"find {shlex.quote(data_directory)} -mindepth 1 -delete"
        exit_code = self.runtime.run_ephemeral(service_name, wipe_cmd)
        if exit_code != 0:
            raise DataResetFailed(
                actionable_error("data_reset_failed", data_dir=data_directory, exit_code=exit_code)
            )

        self.console.print("[green]PostgreSQL data directory cleaned.[/green]")
        self.logger.info("PostgreSQL data directory cleaned inside container")
