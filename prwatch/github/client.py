"""GitHub API client used as the external state source.

The client answers one question, "what is the current state of pull request
X", and classifies every failure into the error taxonomy. It never retries;
retry policy belongs to the scheduler.
"""

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import urljoin

import aiohttp

from prwatch.models.enums import PRState
from prwatch.models.pull_request import PullRequestSnapshot

from .auth import AuthProvider, TokenAuth
from .exceptions import (
    GitHubAuthenticationError,
    GitHubConnectionError,
    GitHubMalformedResponseError,
    GitHubNotFoundError,
    GitHubRateLimitError,
    GitHubServerError,
    GitHubTimeoutError,
)
from .rate_limiting import RateLimitManager

logger = logging.getLogger(__name__)


@dataclass
class GitHubClientConfig:
    """Configuration for GitHub client."""

    base_url: str = "https://api.github.com"
    timeout: float = 30.0
    rate_limit_buffer: int = 0
    user_agent: str = "prwatch/1.0"
    max_concurrent_requests: int = 10


@dataclass
class _RawResponse:
    status: int
    headers: Mapping[str, str]
    data: Any


class GitHubClient:
    """Async GitHub API client for pull request state lookups."""

    def __init__(self, config: GitHubClientConfig | None = None) -> None:
        """Initialize GitHub client.

        Args:
            config: Client configuration
        """
        self.config = config or GitHubClientConfig()
        self.rate_limiter = RateLimitManager(buffer=self.config.rate_limit_buffer)

        # HTTP session will be initialized on first use
        self._session: aiohttp.ClientSession | None = None
        self._session_lock = asyncio.Lock()
        self._request_semaphore = asyncio.Semaphore(self.config.max_concurrent_requests)

    async def __aenter__(self) -> "GitHubClient":
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is initialized."""
        if self._session is None or self._session.closed:
            async with self._session_lock:
                if self._session is None or self._session.closed:
                    timeout = aiohttp.ClientTimeout(total=self.config.timeout)
                    self._session = aiohttp.ClientSession(
                        timeout=timeout,
                        headers={
                            "User-Agent": self.config.user_agent,
                            "Accept": "application/vnd.github+json",
                        },
                    )

    async def close(self) -> None:
        """Close HTTP session and cleanup resources."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _generate_correlation_id(self) -> str:
        """Generate correlation ID for request tracking."""
        return str(uuid.uuid4())[:8]

    async def _make_request(
        self,
        method: str,
        path: str,
        auth: AuthProvider,
        params: dict[str, Any] | None = None,
    ) -> _RawResponse:
        """Make a single HTTP request and classify transport failures.

        Args:
            method: HTTP method
            path: API path
            auth: Authentication provider
            params: Query parameters

        Returns:
            Status, headers and decoded JSON body (None if the body is empty)

        Raises:
            GitHubError: Various GitHub API errors
        """
        correlation_id = self._generate_correlation_id()
        url = urljoin(self.config.base_url.rstrip("/") + "/", path.lstrip("/"))

        self.rate_limiter.check_rate_limit()

        auth_token = await auth.get_token()
        await self._ensure_session()
        if not self._session:
            raise GitHubConnectionError("Failed to initialize HTTP session")

        try:
            async with self._request_semaphore:
                start_time = time.monotonic()
                logger.debug(f"GitHub API request [{correlation_id}] {method} {url}")

                async with self._session.request(
                    method, url, params=params, headers=auth_token.to_header()
                ) as response:
                    self.rate_limiter.update_rate_limit(response.headers)
                    body = await response.read()
                    status = response.status
                    headers = response.headers

                logger.debug(
                    f"GitHub API response [{correlation_id}] "
                    f"{status} in {time.monotonic() - start_time:.2f}s"
                )

        except TimeoutError as e:
            raise GitHubTimeoutError(
                f"Request timeout for {method} {url} after {self.config.timeout}s"
            ) from e
        except aiohttp.ClientError as e:
            raise GitHubConnectionError(
                f"Connection error for {method} {url}: {e}"
            ) from e

        try:
            data = json.loads(body) if body else None
        except (json.JSONDecodeError, UnicodeDecodeError):
            if 200 <= status < 300:
                raise GitHubMalformedResponseError(
                    f"Response for {method} {url} is not valid JSON", status
                ) from None
            data = {"message": body.decode("utf-8", errors="replace")}

        raw = _RawResponse(status=status, headers=headers, data=data)
        if not 200 <= status < 300:
            self._handle_error_response(raw, correlation_id)
        return raw

    def _handle_error_response(self, response: _RawResponse, correlation_id: str) -> None:
        """Handle error responses from GitHub API.

        Args:
            response: Decoded HTTP response
            correlation_id: Request correlation ID

        Raises:
            GitHubError: Appropriate error based on status code
        """
        error_data = response.data if isinstance(response.data, dict) else {}
        error_message = str(error_data.get("message") or f"HTTP {response.status}")
        status = response.status

        logger.warning(f"GitHub API error [{correlation_id}] {status}: {error_message}")

        if status == 401:
            raise GitHubAuthenticationError(error_message, status, error_data)
        elif status in (403, 429) and self._is_rate_limited(response, error_message):
            reset_time = response.headers.get("X-RateLimit-Reset")
            remaining = response.headers.get("X-RateLimit-Remaining", "0")
            limit = response.headers.get("X-RateLimit-Limit", "0")
            raise GitHubRateLimitError(
                error_message,
                reset_time=int(reset_time) if reset_time and reset_time.isdigit() else None,
                remaining=int(remaining) if remaining.isdigit() else 0,
                limit=int(limit) if limit.isdigit() else 0,
                retry_after=self.rate_limiter.retry_after(response.headers),
            )
        elif status == 403:
            raise GitHubAuthenticationError(error_message, status, error_data)
        elif status in (404, 410):
            raise GitHubNotFoundError(error_message, status, error_data)
        elif 500 <= status < 600:
            raise GitHubServerError(error_message, status, error_data)
        else:
            raise GitHubMalformedResponseError(
                f"Unexpected response {status}: {error_message}", status, error_data
            )

    @staticmethod
    def _is_rate_limited(response: _RawResponse, message: str) -> bool:
        if response.status == 429:
            return True
        if "rate limit" in message.lower():
            return True
        return response.headers.get("X-RateLimit-Remaining") == "0"

    async def get(
        self,
        path: str,
        auth: AuthProvider,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make GET request to GitHub API.

        Args:
            path: API path (e.g., '/repos/owner/repo/pulls/1')
            auth: Authentication provider
            params: Query parameters

        Returns:
            JSON response data
        """
        response = await self._make_request("GET", path, auth, params)
        return response.data

    async def get_pull(
        self, owner: str, repo: str, pull_number: int, auth: AuthProvider
    ) -> dict[str, Any]:
        """Get specific pull request.

        Args:
            owner: Repository owner
            repo: Repository name
            pull_number: Pull request number
            auth: Authentication provider

        Returns:
            Pull request data
        """
        data = await self.get(f"/repos/{owner}/{repo}/pulls/{pull_number}", auth)
        if not isinstance(data, dict):
            raise GitHubMalformedResponseError(
                f"Expected a JSON object for {owner}/{repo}#{pull_number}"
            )
        return data

    async def fetch_state(
        self, owner: str, repo: str, number: int, credential: str | None
    ) -> PullRequestSnapshot:
        """Fetch the current state of a pull request.

        Args:
            owner: Repository owner
            repo: Repository name
            number: Pull request number
            credential: GitHub token; a missing token is reported as Unauthorized

        Returns:
            Current remote state and title

        Raises:
            GitHubError: Classified failure (never retried here)
        """
        auth = TokenAuth(credential)
        data = await self.get_pull(owner, repo, number, auth)
        return self.parse_snapshot(data)

    @staticmethod
    def parse_snapshot(data: dict[str, Any]) -> PullRequestSnapshot:
        """Convert a pull request payload into a snapshot.

        Raises:
            GitHubMalformedResponseError: If required fields are missing or invalid
        """
        raw_state = data.get("state")
        try:
            state = PRState(raw_state)
        except ValueError:
            raise GitHubMalformedResponseError(
                f"Unexpected pull request state: {raw_state!r}"
            ) from None

        title = data.get("title")
        if not isinstance(title, str):
            raise GitHubMalformedResponseError("Pull request payload has no title")

        closed_at = None
        raw_closed_at = data.get("closed_at")
        if raw_closed_at:
            try:
                closed_at = datetime.fromisoformat(str(raw_closed_at))
            except ValueError:
                raise GitHubMalformedResponseError(
                    f"Invalid closed_at timestamp: {raw_closed_at!r}"
                ) from None

        merged = bool(data.get("merged")) or data.get("merged_at") is not None
        html_url = data.get("html_url")

        return PullRequestSnapshot(
            state=state,
            title=title,
            closed_at=closed_at,
            merged=merged,
            html_url=html_url if isinstance(html_url, str) else None,
        )
