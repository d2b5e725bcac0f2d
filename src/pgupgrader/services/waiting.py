"""Bounded polling helpers shared by readiness, shutdown and restart waits."""

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pgupgrader.errors import RuntimeUnavailable, ShutdownTimeout
from pgupgrader.errors_catalog import actionable_error


@dataclass(frozen=True)
class WaitResult:
    succeeded: bool
    attempts: int


def wait_until(
    predicate: Callable[[], bool],
    attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, int], None]] = None,
) -> WaitResult:
    """Evaluate ``predicate`` up to ``attempts`` times, ``interval`` seconds apart.

    ``RuntimeUnavailable`` raised by the predicate counts as a failed attempt.
    ``on_retry(attempt, remaining)`` is called before each sleep. There is no
    sleep after the last attempt.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            if predicate():
                return WaitResult(succeeded=True, attempts=attempt)
        except RuntimeUnavailable:
            pass

        remaining = attempts - attempt
        if remaining > 0:
            if on_retry:
                on_retry(attempt, remaining)
            sleep(interval)

    return WaitResult(succeeded=False, attempts=attempts)


class ReadinessWaiter:
    """Waits for an engine instance to start or stop accepting connections."""

    def __init__(self, runtime, logger, console, settings, sleep: Callable[[float], None] = time.sleep):
        self.runtime = runtime
        self.logger = logger
        self.console = console
        self.settings = settings
        self.sleep = sleep

    def _ready(self, name: str) -> bool:
        if not self.runtime.is_running(name):
            return False
        if self.runtime.is_ready(name):
            return True

        logs = self.runtime.recent_logs(name, self.settings.progress_log_lines)
        if logs:
            self.logger.info("Container logs: %s", logs)
        return False

    def wait_until_ready(self, name: str, attempts: Optional[int] = None, interval: Optional[float] = None):
        attempts = attempts if attempts is not None else self.settings.ready_attempts
        interval = interval if interval is not None else self.settings.ready_interval_seconds

        def report(_attempt, remaining):
            self.console.print(
                f"[blue]Waiting for container to be ready... ({remaining} attempts remaining)[/blue]"
            )

        result = wait_until(
            lambda: self._ready(name),
            attempts=attempts,
            interval=interval,
            sleep=self.sleep,
            on_retry=report,
        )
        if result.succeeded:
            self.logger.info("Container %s is running and ready", name)
            return

        self.log_failure_context(name)
        raise RuntimeUnavailable(actionable_error("container_not_ready", name=name))

    def wait_until_stopped(self, name: str):
        def still_ready() -> bool:
            return self.runtime.is_ready(name)

        def report(_attempt, remaining):
            self.logger.info(
                "Waiting for PostgreSQL to shut down... (%s retries remaining)", remaining
            )

        result = wait_until(
            lambda: not still_ready(),
            attempts=self.settings.shutdown_attempts,
            interval=self.settings.shutdown_interval_seconds,
            sleep=self.sleep,
            on_retry=report,
        )
        if not result.succeeded:
            raise ShutdownTimeout(actionable_error("shutdown_timeout", name=name))

    def retry_runtime_call(self, action: Callable[[], Any], description: str) -> Any:
        """Call ``action`` until it stops raising ``RuntimeUnavailable``.

        Uses the readiness budget and raises ``RuntimeUnavailable`` once it is spent.
        """
        returned = []
        errors = []

        def attempt() -> bool:
            try:
                returned.append(action())
            except RuntimeUnavailable as exc:
                errors.append(exc)
                return False
            return True

        def report(_attempt, remaining):
            self.logger.warning(
                "%s failed: %s (%s attempts remaining)", description, errors[-1], remaining
            )

        result = wait_until(
            attempt,
            attempts=self.settings.ready_attempts,
            interval=self.settings.ready_interval_seconds,
            sleep=self.sleep,
            on_retry=report,
        )
        if result.succeeded:
            return returned[-1]

        raise RuntimeUnavailable(
            f"{description} failed after {result.attempts} attempts: {errors[-1]}"
        ) from errors[-1]

    def log_failure_context(self, name: str):
        try:
            logs = self.runtime.recent_logs(name, self.settings.failure_log_lines)
        except RuntimeUnavailable:
            self.logger.error("Container logs unavailable for %s", name)
            return

        if not logs:
            return
        self.logger.error("Container logs on failure:")
        for line in logs.splitlines():
            self.logger.error(line)
