"""Monitor command exceptions and error classification."""

from typing import Any

from prwatch.github.exceptions import GitHubError
from prwatch.models.enums import ErrorKind


class MonitorError(Exception):
    """Base exception for command failures raised by the monitor."""

    kind: ErrorKind | None = None

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize monitor error.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.details = details or {}


class InvalidUrlError(MonitorError):
    """Raised when a pull request URL cannot be parsed."""

    kind = ErrorKind.INVALID_URL


class DuplicateIdentityError(MonitorError):
    """Raised when ``(owner, repo, number)`` is already tracked."""

    kind = ErrorKind.DUPLICATE_IDENTITY


class SettingsValidationError(MonitorError):
    """Raised when a settings update is rejected."""

    pass


def classify_error(exc: BaseException) -> ErrorKind | None:
    """Map an exception to the error taxonomy.

    Returns None for exceptions outside the taxonomy (programming errors,
    storage failures and the like).
    """
    if isinstance(exc, (GitHubError, MonitorError)):
        return exc.kind
    return None
