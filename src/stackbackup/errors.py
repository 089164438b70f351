"""Exception hierarchy for stackbackup."""

from typing import Optional


class BackupError(RuntimeError):
    """Base exception for all backup failures."""


class ConfigInvalid(BackupError):
    """Raised when a required configuration value is missing or malformed."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid configuration for '{field}': {reason}")


class CaptureFailed(BackupError):
    """Raised when a snapshot source could not be captured."""

    def __init__(self, kind: str, cause: str):
        self.kind = kind
        self.cause = cause
        super().__init__(f"Capture of {kind} snapshot failed: {cause}")


class LockConflict(BackupError):
    """Raised when another run already holds the backup directory lock."""

    def __init__(self, lock_path: str, holder_pid: Optional[int] = None):
        self.lock_path = lock_path
        self.holder_pid = holder_pid
        holder = f" (held by pid {holder_pid})" if holder_pid else ""
        super().__init__(f"Backup directory is locked by another run: {lock_path}{holder}")


class DeletionFailed(BackupError):
    """Raised (and usually collected, not propagated) when a stale snapshot cannot be removed."""

    def __init__(self, path: str, cause: str):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to delete {path}: {cause}")


class CommandTimeout(BackupError):
    """Raised by the command runner when an external command exceeds its time budget."""

    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout:.0f}s: {command}")


class RestoreFailed(BackupError):
    """Raised when a snapshot could not be restored into its service."""

    def __init__(self, kind: str, cause: str):
        self.kind = kind
        self.cause = cause
        super().__init__(f"Restore of {kind} snapshot failed: {cause}")


class VerificationFailed(BackupError):
    """Raised when a snapshot file fails its integrity check."""

    def __init__(self, path: str, cause: str):
        self.path = path
        self.cause = cause
        super().__init__(f"Verification of {path} failed: {cause}")
