"""Domain errors for pgupgrader."""


class UpgraderError(RuntimeError):
    """Raised when the upgrade cannot continue safely."""

    kind = "UpgraderError"


class ArgumentError(UpgraderError):
    """Invalid or missing command-line input."""

    kind = "ArgumentError"


class RuntimeUnavailable(UpgraderError):
    """The container runtime or the engine instance cannot be reached."""

    kind = "RuntimeUnavailable"


class DumpFailed(UpgraderError):
    kind = "DumpFailed"


class VerificationFailed(UpgraderError):
    kind = "VerificationFailed"


class BackupNotFound(UpgraderError):
    kind = "NotFound"


class ShutdownTimeout(UpgraderError):
    kind = "ShutdownTimeout"


class DataResetFailed(UpgraderError):
    kind = "DataResetFailed"


class ConfigWriteFailed(UpgraderError):
    kind = "ConfigWriteFailed"


class RestoreFailed(UpgraderError):
    kind = "RestoreFailed"


class LockUnavailable(UpgraderError):
    """Another run already holds the lock for the same container."""

    kind = "LockUnavailable"
