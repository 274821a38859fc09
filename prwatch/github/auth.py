"""GitHub authentication handlers."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

from .exceptions import GitHubAuthenticationError


@dataclass
class AuthToken:
    """Authentication token with metadata."""

    token: str
    token_type: str = "Bearer"
    expires_at: int | None = None

    @property
    def is_expired(self) -> bool:
        """Check if token is expired."""
        if self.expires_at is None:
            return False
        return time.time() >= self.expires_at

    def to_header(self) -> dict[str, str]:
        """Convert to authorization header."""
        return {"Authorization": f"{self.token_type} {self.token}"}

    def __repr__(self) -> str:
        return f"AuthToken(token='***', token_type={self.token_type!r})"


class AuthProvider(ABC):
    """Abstract base class for authentication providers."""

    @abstractmethod
    async def get_token(self) -> AuthToken:
        """Get authentication token."""
        pass


class TokenAuth(AuthProvider):
    """Personal access token authentication.

    The monitor builds one of these per request from the credential stored in
    the settings, so a credential changed through the command surface is
    picked up by the next fetch without restarting anything.
    """

    DEFAULT_TOKEN_TYPE = "Bearer"  # nosec B105

    def __init__(self, token: str | None, token_type: str | None = None):
        """Initialize token authentication.

        Args:
            token: GitHub token
            token_type: Type of token (Bearer, token, etc.). Uses Bearer by default.

        Raises:
            GitHubAuthenticationError: If no token is given
        """
        if not token or not token.strip():
            raise GitHubAuthenticationError("No GitHub token configured")
        if token_type is None:
            token_type = self.DEFAULT_TOKEN_TYPE
        self._token = AuthToken(token=token.strip(), token_type=token_type)

    async def get_token(self) -> AuthToken:
        """Get authentication token."""
        return self._token
