"""Docker runtime services for pgupgrader."""

import subprocess
from typing import Callable, List, Optional, Tuple

from pgupgrader.errors import RuntimeUnavailable, UpgraderError


class DockerRuntimeService:
    """Container runtime capability backed by Docker and Docker Compose.

    Every call goes through the shared ``CommandRunner``; a missing docker
    binary or a timed-out command surfaces as ``RuntimeUnavailable``. Probes use
    ``probe_timeout``; compose up/down and ``exec_inside`` use ``operation_timeout``.
    """

    def __init__(
        self,
        logger,
        console,
        command_runner,
        compose_file: str,
        db_user: str = "postgres",
        compose_cmd: Optional[List[str]] = None,
        probe_timeout: Optional[float] = None,
        operation_timeout: Optional[float] = None,
        subprocess_module=subprocess,
    ):
        self.logger = logger
        self.console = console
        self.command_runner = command_runner
        self.compose_file = compose_file
        self.db_user = db_user
        self.probe_timeout = probe_timeout
        self.operation_timeout = operation_timeout
        self.subprocess = subprocess_module
        self._compose_cmd = compose_cmd

    @property
    def compose_cmd(self) -> List[str]:
        if self._compose_cmd is None:
            self._compose_cmd = self.get_docker_compose_cmd()
        return self._compose_cmd

    def get_docker_compose_cmd(self) -> List[str]:
        try:
            self.subprocess.run(
                ["docker", "compose", "version"],
                check=True,
                capture_output=True,
                timeout=self.probe_timeout,
            )
            return ["docker", "compose"]
        except (self.subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
            try:
                self.subprocess.run(
                    ["docker-compose", "--version"],
                    check=True,
                    capture_output=True,
                    timeout=self.probe_timeout,
                )
                return ["docker-compose"]
            except (self.subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
                raise RuntimeUnavailable(
                    "Docker Compose is not available. Install Docker Compose v2 (`docker compose`) "
                    "or v1 (`docker-compose`) and try again."
                )

    def _compose(self, *args: str) -> List[str]:
        return self.compose_cmd + ["-f", self.compose_file, *args]

    def is_running(self, name: str) -> bool:
        result = self.command_runner.run(
            ["docker", "ps", "--format", "{{.Names}}"],
            check=False,
            capture_output=True,
            timeout=self.probe_timeout,
        )
        if result.returncode != 0:
            raise RuntimeUnavailable("Docker daemon did not answer `docker ps`.")
        return name in [line.strip() for line in (result.stdout or "").splitlines()]

    def is_ready(self, name: str) -> bool:
        result = self.command_runner.run(
            ["docker", "exec", name, "pg_isready", "-U", self.db_user],
            check=False,
            capture_output=True,
            timeout=self.probe_timeout,
        )
        return result.returncode == 0

    def exec_inside(self, name: str, command: List[str]) -> Tuple[str, int]:
        result = self.command_runner.run(
            ["docker", "exec", name] + list(command),
            check=False,
            capture_output=True,
            timeout=self.operation_timeout,
        )
        output = (result.stdout or "") + (result.stderr or "")
        return output, result.returncode

    def exec_inside_streaming(
        self,
        name: str,
        command: List[str],
        stdin_path: Optional[str] = None,
        stdout_path: Optional[str] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> int:
        docker_cmd = ["docker", "exec"]
        if stdin_path:
            docker_cmd.append("-i")
        return self.command_runner.stream(
            docker_cmd + [name] + list(command),
            stdin_path=stdin_path,
            stdout_path=stdout_path,
            on_progress=on_progress,
        )

    def recent_logs(self, name: str, line_count: int) -> str:
        result = self.command_runner.run(
            ["docker", "logs", "--tail", str(line_count), name],
            check=False,
            capture_output=True,
            timeout=self.probe_timeout,
        )
        return ((result.stdout or "") + (result.stderr or "")).strip()

    def stop_topology(self):
        self.logger.info("Stopping container topology...")
        self._run_compose("down")

    def start_topology(self):
        self.logger.info("Starting container topology...")
        self._run_compose("up", "-d")

    def _run_compose(self, *args: str):
        try:
            self.command_runner.run(
                self._compose(*args),
                check=True,
                capture_output=True,
                timeout=self.operation_timeout,
            )
        except RuntimeUnavailable:
            raise
        except UpgraderError as exc:
            raise RuntimeUnavailable(str(exc)) from exc

    def run_ephemeral(self, service: str, command: str) -> int:
        result = self.command_runner.run(
            self._compose("run", "--rm", "--no-deps", "--entrypoint", "sh", service, "-c", command),
            check=False,
            capture_output=True,
        )
        if result.returncode != 0:
            self.logger.warning(
                "Ephemeral command in service %s exited with %s: %s",
                service,
                result.returncode,
                (result.stderr or "").strip(),
            )
        return result.returncode

    def validate_environment(self):
        self.console.print("[blue]Validating Docker environment...[/blue]")
        try:
            self.command_runner.run(["docker", "--version"], capture_output=True, timeout=self.probe_timeout)
            self.command_runner.run(
                self.compose_cmd + ["version"], capture_output=True, timeout=self.probe_timeout
            )
        except RuntimeUnavailable:
            raise
        except UpgraderError as exc:
            raise RuntimeUnavailable(str(exc)) from exc
        self.console.print("[green]Docker is available.[/green]")
