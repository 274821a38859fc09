"""Domain models for tracked pull requests and user settings."""

from .enums import ErrorKind, PRState, Theme
from .pull_request import (
    IdentityKey,
    PullRequestRef,
    PullRequestSnapshot,
    TrackedPullRequest,
    identity_key,
)
from .settings import DEFAULT_REFRESH_INTERVAL_SECONDS, Settings

__all__ = [
    "DEFAULT_REFRESH_INTERVAL_SECONDS",
    "ErrorKind",
    "IdentityKey",
    "PRState",
    "PullRequestRef",
    "PullRequestSnapshot",
    "Settings",
    "Theme",
    "TrackedPullRequest",
    "identity_key",
]
