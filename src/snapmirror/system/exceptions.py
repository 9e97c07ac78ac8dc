# Author: PB
# Maintainer: PB
# Original date: 2025.06.08
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/system/exceptions.py

"""
snapmirror-specific exception classes.

Every failure that aborts reconciliation of a single source is a subclass of
SnapMirrorError. Each class carries a stable ``kind`` string so the run driver
can build a per-source summary without parsing messages.
"""


class SnapMirrorError(Exception):
    """Base exception for all snapmirror errors."""

    kind = "SnapMirrorError"

    def __init__(self, message: str, source: str = None):
        self.source = source
        super().__init__(message)


class ConfigError(SnapMirrorError):
    """Raised when there are configuration validation or loading errors."""

    kind = "ConfigError"


class ToolMissingError(SnapMirrorError):
    """Raised when a required external program is not installed."""

    kind = "ToolMissing"

    def __init__(self, message: str, tool: str = None, **kwargs):
        self.tool = tool
        super().__init__(message, **kwargs)


# === PER-SOURCE PRECONDITIONS ===

class TargetUnavailableError(SnapMirrorError):
    """Target directory is missing or is not a directory."""

    kind = "TargetUnavailable"

    def __init__(self, message: str, target_dir: str = None, **kwargs):
        self.target_dir = target_dir
        super().__init__(message, **kwargs)


class SourceNotReadyError(SnapMirrorError):
    """Source exists but is not currently mounted/ready."""

    kind = "SourceNotReady"


class NoSnapshotsAvailableError(SnapMirrorError):
    """Backend reports no snapshots for the source."""

    kind = "NoSnapshotsAvailable"


# === BACKEND ERRORS ===

class BackendError(SnapMirrorError):
    """Base class for errors raised by zfs/restic adapters."""

    kind = "BackendError"

    def __init__(self, message: str, command: list[str] = None, stderr: str = None, **kwargs):
        self.command = command
        self.stderr = stderr
        super().__init__(message, **kwargs)


class BackendTransportError(BackendError):
    """The external tool could not be invoked at all."""

    kind = "BackendTransportError"


class BackendLogicError(BackendError):
    """The external tool ran but reported failure (e.g. malformed identifier)."""

    kind = "BackendLogicError"


class MountTimeoutError(BackendError):
    """A restic mount did not become ready within the allowed wait."""

    kind = "MountTimeout"

    def __init__(self, message: str, mount_point: str = None, timeout: float = None, **kwargs):
        self.mount_point = mount_point
        self.timeout = timeout
        super().__init__(message, **kwargs)


# === TRANSFER AND STORE ERRORS ===

class TransferError(SnapMirrorError):
    """rsync failed while mirroring into the target."""

    kind = "TransferError"

    def __init__(self, message: str, returncode: int = None, **kwargs):
        self.returncode = returncode
        super().__init__(message, **kwargs)


class PartialDeleteFailureError(SnapMirrorError):
    """Some deletions in the target failed; all were attempted."""

    kind = "PartialDeleteFailure"

    def __init__(self, message: str, deleted: int = 0, errors: int = 0,
                 failures: list[str] = None, **kwargs):
        self.deleted = deleted
        self.errors = errors
        self.failures = failures or []
        super().__init__(message, **kwargs)


class HistoryStoreError(SnapMirrorError):
    """The backup history database could not be opened or queried."""

    kind = "HistoryStoreError"
