"""GitHub API rate limiting management."""

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .exceptions import GitHubRateLimitError

logger = logging.getLogger(__name__)


@dataclass
class RateLimitInfo:
    """Rate limit information from GitHub API."""

    limit: int
    remaining: int
    reset: int
    used: int = 0
    resource: str = "core"

    @property
    def reset_datetime(self) -> datetime:
        """Get reset time as datetime."""
        return datetime.fromtimestamp(self.reset, tz=UTC)

    @property
    def seconds_until_reset(self) -> float:
        """Get seconds until rate limit resets."""
        return max(0.0, self.reset - time.time())

    @property
    def is_exceeded(self) -> bool:
        """Check if rate limit is exceeded."""
        return self.remaining <= 0


@dataclass
class RateLimitManager:
    """Tracks GitHub rate limit headers and derives retry hints.

    The manager never sleeps. When the quota is (nearly) exhausted it raises
    ``GitHubRateLimitError`` carrying a ``retry_after`` hint and leaves the
    waiting policy to the caller.
    """

    buffer: int = 0  # Requests held back before the hard limit
    max_retry_wait: int = 3600  # Upper bound for retry hints in seconds

    _rate_limits: dict[str, RateLimitInfo] = field(default_factory=dict)

    def get_rate_limit(self, resource: str = "core") -> RateLimitInfo | None:
        """Get current rate limit info for resource."""
        return self._rate_limits.get(resource)

    def update_rate_limit(self, headers: Mapping[str, str]) -> None:
        """Update rate limit info from response headers.

        Args:
            headers: HTTP response headers from GitHub API
        """
        if "X-RateLimit-Limit" not in headers:
            return

        try:
            rate_limit = RateLimitInfo(
                limit=int(headers.get("X-RateLimit-Limit", 5000)),
                remaining=int(headers.get("X-RateLimit-Remaining", 0)),
                reset=int(headers.get("X-RateLimit-Reset", 0)),
                used=int(headers.get("X-RateLimit-Used", 0)),
                resource=headers.get("X-RateLimit-Resource", "core"),
            )
            self._rate_limits[rate_limit.resource] = rate_limit
        except (ValueError, TypeError):
            logger.debug("Ignoring invalid rate limit headers")

    def check_rate_limit(self, resource: str = "core") -> None:
        """Check if the last known quota allows another request.

        Args:
            resource: GitHub API resource type

        Raises:
            GitHubRateLimitError: If the quota is within the buffer zone
        """
        rate_limit = self.get_rate_limit(resource)
        if not rate_limit:
            return

        if rate_limit.remaining <= self.buffer and rate_limit.seconds_until_reset > 0:
            wait_time = min(rate_limit.seconds_until_reset, self.max_retry_wait)
            raise GitHubRateLimitError(
                f"Rate limit reached for {resource}. "
                f"Remaining: {rate_limit.remaining}, "
                f"Reset in {wait_time:.0f} seconds",
                reset_time=rate_limit.reset,
                remaining=rate_limit.remaining,
                limit=rate_limit.limit,
                retry_after=wait_time,
            )

    def retry_after(self, headers: Mapping[str, str]) -> float | None:
        """Derive a retry hint from a rate limited response.

        ``Retry-After`` wins over ``X-RateLimit-Reset``. Returns None when
        neither header yields a usable value.
        """
        value = headers.get("Retry-After")
        if value is not None:
            try:
                return min(max(0.0, float(value)), float(self.max_retry_wait))
            except ValueError:
                logger.debug(f"Ignoring non-numeric Retry-After header: {value!r}")

        reset = headers.get("X-RateLimit-Reset")
        if reset is not None:
            try:
                wait_time = max(0.0, int(reset) - time.time())
            except ValueError:
                return None
            return min(wait_time, float(self.max_retry_wait))

        return None
