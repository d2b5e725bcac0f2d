"""
pgupgrader - In-place PostgreSQL upgrades for Docker Compose deployments
"""

__version__ = "0.1.0"

from .core import UpgradeOrchestrator
from .errors import UpgraderError

__all__ = ["UpgradeOrchestrator", "UpgraderError"]
