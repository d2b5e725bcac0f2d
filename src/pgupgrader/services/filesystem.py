"""Filesystem helpers for pgupgrader."""

import logging
import os
import re
from contextlib import contextmanager

from filelock import FileLock, Timeout
from rich.console import Console

from pgupgrader.errors import LockUnavailable
from pgupgrader.errors_catalog import actionable_error


class FileSystemService:
    """Encapsulates tool directory side effects and run locking."""

    def __init__(self, logger: logging.Logger, console: Console, lock_dir: str):
        self.logger = logger
        self.console = console
        self.lock_dir = lock_dir

    def lock_path(self, container_name: str) -> str:
        safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", container_name)
        return os.path.join(self.lock_dir, f"{safe_name}.lock")

    @contextmanager
    def container_lock(self, container_name: str):
        """Hold an exclusive, non-blocking lock for ``container_name``."""
        os.makedirs(self.lock_dir, exist_ok=True)
        lock_path = self.lock_path(container_name)
        lock = FileLock(lock_path)
        try:
            lock.acquire(timeout=0)
        except Timeout as exc:
            raise LockUnavailable(
                actionable_error("lock_unavailable", name=container_name, lock_path=lock_path)
            ) from exc

        self.logger.debug("Lock '%s' acquired for container %s", lock_path, container_name)
        try:
            yield lock_path
        finally:
            lock.release()
            self.logger.debug("Lock '%s' released", lock_path)
