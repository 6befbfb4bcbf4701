"""
exceptions.py
--------------------
Error taxonomy for the migration pipeline.

Record-level errors are turned into ``Failed`` outcomes by the writer and
orchestrator; ``ConfigurationError`` is the only error that aborts a run.
"""

from typing import Optional


class MigrationError(Exception):
    """Base exception for migration pipeline errors."""

    pass


class ConfigurationError(MigrationError):
    """Missing credentials, unreachable API or an invalid stage plan."""

    pass


class SourceAuthError(ConfigurationError):
    """The source API rejected our credentials (401/403)."""

    pass


class SourceUnreachable(ConfigurationError):
    """The source API could not be reached at all, even after retries."""

    pass


class TransientNetworkError(MigrationError):
    """Network failure, timeout or 429/5xx still failing once the adapter's retries are spent."""

    pass


class FatalSourceError(MigrationError):
    """Non-transient 4xx from the source API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AttachmentError(MigrationError):
    """Base exception for attachment transfer failures."""

    pass


class AttachmentTooLarge(AttachmentError):
    pass


class AttachmentDownloadFailed(AttachmentError):
    pass


class AttachmentUploadFailed(AttachmentError):
    pass


class DestinationError(MigrationError):
    """Write or read failure reported by the destination store."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class DestinationValidationError(DestinationError):
    pass


class DestinationUniqueViolation(DestinationError):
    pass


class DependencyMissing(DestinationError):
    """A foreign-key target has not been migrated yet."""

    pass


def describe_error(error: BaseException) -> str:
    """Render an error as ``"ClassName: message"`` for outcome reasons."""
    message = str(error)
    name = type(error).__name__
    return f"{name}: {message}" if message else name
