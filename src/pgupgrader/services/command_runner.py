"""Subprocess execution service for pgupgrader."""

import subprocess
import tempfile
import time
from typing import Callable, List, Optional

from pgupgrader.errors import RuntimeUnavailable, UpgraderError


class CommandRunner:
    """Runs external commands with consistent error handling."""

    POLL_INTERVAL_SECONDS = 0.1

    def __init__(self, logger, default_timeout: Optional[float] = None, subprocess_module=subprocess):
        self.logger = logger
        self.default_timeout = default_timeout
        self.subprocess = subprocess_module

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        try:
            result = self.subprocess.run(
                cmd,
                text=True,
                capture_output=capture_output,
                timeout=effective_timeout,
            )
        except FileNotFoundError as exc:
            raise RuntimeUnavailable(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise RuntimeUnavailable(f"Command timed out after {effective_timeout}s: {cmd_str}") from exc
        except OSError as exc:
            raise UpgraderError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if capture_output and result.stdout:
            self.logger.debug("Command output: %s", result.stdout.strip())

        if result.returncode == 0:
            return result

        stderr = (result.stderr or "").strip() if capture_output else ""
        message = f"Command failed ({result.returncode}): {cmd_str}"
        if stderr:
            message = f"{message}\n{stderr}"

        if check:
            raise UpgraderError(message)

        self.logger.debug(message)
        return result

    def stream(
        self,
        cmd: List[str],
        stdin_path: Optional[str] = None,
        stdout_path: Optional[str] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> int:
        """Run a long command with files attached to stdin/stdout.

        The child is polled at a fixed interval until it exits. ``on_progress``
        receives the number of bytes written to ``stdout_path`` so far, or the
        number of bytes consumed from ``stdin_path`` when no output file is used.
        """
        cmd_str = " ".join(cmd)
        self.logger.debug("Streaming: %s", cmd_str)

        stdin_file = open(stdin_path, "rb") if stdin_path else None
        stdout_file = open(stdout_path, "wb") if stdout_path else None
        stderr_file = tempfile.TemporaryFile()
        try:
            try:
                process = self.subprocess.Popen(
                    cmd,
                    stdin=stdin_file if stdin_file else self.subprocess.DEVNULL,
                    stdout=stdout_file if stdout_file else self.subprocess.DEVNULL,
                    stderr=stderr_file,
                )
            except FileNotFoundError as exc:
                raise RuntimeUnavailable(
                    f"Required command not found: {cmd[0]}. Please install it and try again."
                ) from exc

            while process.poll() is None:
                if on_progress:
                    on_progress(self._progress_bytes(stdin_file, stdout_file))
                time.sleep(self.POLL_INTERVAL_SECONDS)

            if on_progress:
                on_progress(self._progress_bytes(stdin_file, stdout_file))

            stderr_file.seek(0)
            stderr = stderr_file.read().decode("utf-8", errors="replace").strip()
            if process.returncode != 0 and stderr:
                self.logger.warning("Command failed (%s): %s\n%s", process.returncode, cmd_str, stderr)
            elif stderr:
                self.logger.debug("Command stderr: %s", stderr)
            return process.returncode
        finally:
            stderr_file.close()
            if stdin_file:
                stdin_file.close()
            if stdout_file:
                stdout_file.close()

    @staticmethod
    def _progress_bytes(stdin_file, stdout_file) -> int:
        if stdout_file:
            stdout_file.flush()
            return stdout_file.tell()
        if stdin_file:
            return stdin_file.tell()
        return 0
