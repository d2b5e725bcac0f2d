"""Compose file version pinning."""

import os
import re
import shutil
import tempfile
from typing import Optional

from pgupgrader.errors import ConfigWriteFailed
from pgupgrader.errors_catalog import actionable_error


class VersionConfigurator:
    """Rewrites the ``postgres:<version>`` image pin of the compose file.

    The previous content is copied to ``<file>.bak`` before every change and
    the new content replaces the file atomically, so the descriptor is always
    either fully old or fully new.
    """

    def __init__(self, descriptor_path: str, logger, image: str = "postgres"):
        self.descriptor_path = descriptor_path
        self.logger = logger
        # Only ``image:`` lines carry the pin; ``postgres:5432`` in a URL must survive.
        self.pin_pattern = re.compile(
            rf"^(\s*-?\s*image:\s*[\"']?(?:[\w.:-]+/)*{re.escape(image)}:)(\d+(?:\.\d+)*)",
            re.MULTILINE,
        )

    @property
    def backup_path(self) -> str:
        return f"{self.descriptor_path}.bak"

    def _read(self) -> str:
        try:
            with open(self.descriptor_path, "r", encoding="utf-8", newline="") as file_obj:
                return file_obj.read()
        except OSError as exc:
            raise ConfigWriteFailed(
                actionable_error("config_write_failed", path=self.descriptor_path, detail=exc)
            ) from exc

    def current_version(self) -> Optional[str]:
        match = self.pin_pattern.search(self._read())
        return match.group(2) if match else None

    def set_version(self, new_version: str):
        self.logger.info("Updating PostgreSQL version to %s...", new_version)
        content = self._read()

        new_content, replaced = self.pin_pattern.subn(
            lambda match: f"{match.group(1)}{new_version}", content
        )
        if replaced == 0:
            raise ConfigWriteFailed(
                actionable_error(
                    "config_write_failed",
                    path=self.descriptor_path,
                    detail="no postgres image version pin found",
                )
            )

        directory = os.path.dirname(os.path.abspath(self.descriptor_path))
        fd, temp_path = tempfile.mkstemp(prefix=".compose-", suffix=".yml", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as file_obj:
                file_obj.write(new_content)
            shutil.copymode(self.descriptor_path, temp_path)
            shutil.copy2(self.descriptor_path, self.backup_path)
            os.replace(temp_path, self.descriptor_path)
        except OSError as exc:
            raise ConfigWriteFailed(
                actionable_error("config_write_failed", path=self.descriptor_path, detail=exc)
            ) from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

        self.logger.info(
            "Pinned %s to PostgreSQL %s (previous copy at %s)",
            self.descriptor_path,
            new_version,
            self.backup_path,
        )
