"""GitHub API client exceptions.

Every exception carries the ``ErrorKind`` it maps to so poll cycles and
commands can report failures without inspecting status codes.
"""

from typing import Any

from prwatch.models.enums import ErrorKind


class GitHubError(Exception):
    """Base exception for GitHub API errors."""

    kind: ErrorKind = ErrorKind.MALFORMED

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_data: dict[str, Any] | None = None,
    ):
        """Initialize GitHub error.

        Args:
            message: Error message
            status_code: HTTP status code
            response_data: Response data from GitHub API
        """
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data or {}


class GitHubAuthenticationError(GitHubError):
    """Raised when the credential is missing, expired or rejected."""

    kind = ErrorKind.UNAUTHORIZED


class GitHubRateLimitError(GitHubError):
    """Raised when rate limit is exceeded."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        reset_time: int | None = None,
        remaining: int = 0,
        limit: int = 0,
        retry_after: float | None = None,
    ):
        """Initialize rate limit error.

        Args:
            message: Error message
            reset_time: Unix timestamp when rate limit resets
            remaining: Remaining API calls
            limit: Total rate limit
            retry_after: Seconds the caller should wait before retrying
        """
        super().__init__(message)
        self.reset_time = reset_time
        self.remaining = remaining
        self.limit = limit
        self.retry_after = retry_after


class GitHubNotFoundError(GitHubError):
    """Raised when the pull request or repository no longer resolves."""

    kind = ErrorKind.NOT_FOUND


class GitHubMalformedResponseError(GitHubError):
    """Raised when a response has an unexpected status or shape."""

    kind = ErrorKind.MALFORMED


class GitHubTransientError(GitHubError):
    """Base for failures that are expected to clear on their own."""

    kind = ErrorKind.TRANSIENT


class GitHubServerError(GitHubTransientError):
    """Raised when GitHub server returns 5xx error."""

    pass


class GitHubConnectionError(GitHubTransientError):
    """Raised when connection to GitHub fails."""

    pass


class GitHubTimeoutError(GitHubTransientError):
    """Raised when request times out."""

    pass
