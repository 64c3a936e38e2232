"""
Exception hierarchy for backup runs.

Stage components raise these; the executor catches them at stage
boundaries and records them on the run report.
"""

from typing import Optional


class BackupError(Exception):
    """Base class for all backup errors."""
    pass


class ConfigInvalid(BackupError):
    """Raised when the configuration is missing a field or has an empty value."""
    pass


class DirectoryNotFound(BackupError):
    """Raised when the source directory does not exist or cannot be listed."""
    pass


class StatFailed(BackupError):
    """Raised when a single directory entry cannot be stat'ed."""

    def __init__(self, path: str, cause: Exception):
        super().__init__(f"Failed to stat {path}: {cause}")
        self.path = path
        self.cause = cause


class BuildFailed(BackupError):
    """Raised when the archive cannot be built."""

    def __init__(self, message: str, filename: Optional[str] = None):
        super().__init__(message)
        self.filename = filename


class ConnectFailed(BackupError):
    """Raised when the remote session cannot be opened."""
    pass


class UploadFailed(BackupError):
    """Raised when the archive transfer fails part way."""

    def __init__(self, message: str, bytes_transferred: Optional[int] = None):
        if bytes_transferred is not None:
            message = f"{message} (after {bytes_transferred} bytes)"
        super().__init__(message)
        self.bytes_transferred = bytes_transferred


class VerifyFailed(BackupError):
    """Raised when the remote object is missing or has the wrong size."""
    pass


class NotifyFailed(BackupError):
    """Raised by transports when a notification cannot be delivered."""
    pass


class CleanupFailed(BackupError):
    """Raised when the working directory cannot be removed."""
    pass
