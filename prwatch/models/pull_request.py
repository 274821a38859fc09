"""Pull request data models.

``TrackedPullRequest`` is the entry kept in the State Store. It is a frozen
dataclass so snapshots handed out by the store can never be mutated in place;
state changes go through ``with_state`` and are written back under the store
lock.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from .enums import PRState

IdentityKey = tuple[str, str, int]


def identity_key(owner: str, repo: str, number: int) -> IdentityKey:
    """Build the case-insensitive ``(owner, repo, number)`` identity key."""
    return (owner.lower(), repo.lower(), number)


@dataclass(frozen=True)
class PullRequestRef:
    """A pull request reference parsed from a URL."""

    host: str
    owner: str
    repo: str
    number: int

    @property
    def key(self) -> IdentityKey:
        """Identity key of the referenced pull request."""
        return identity_key(self.owner, self.repo, self.number)

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"


@dataclass(frozen=True)
class PullRequestSnapshot:
    """Remote state of a pull request as returned by the state client."""

    state: PRState
    title: str
    closed_at: datetime | None = None
    merged: bool = False
    html_url: str | None = None


@dataclass(frozen=True)
class TrackedPullRequest:
    """A pull request the user asked to watch."""

    owner: str
    repo: str
    number: int
    title: str
    state: PRState = PRState.OPEN
    url: str = ""
    closed_at: datetime | None = None
    merged: bool = False

    def __post_init__(self) -> None:
        if self.number <= 0:
            raise ValueError(f"Pull request number must be positive: {self.number}")
        if not self.owner or not self.repo:
            raise ValueError("Pull request owner and repo are required")

    @property
    def key(self) -> IdentityKey:
        """Identity key of this entry."""
        return identity_key(self.owner, self.repo, self.number)

    @property
    def is_open(self) -> bool:
        """Check if the entry is still being polled."""
        return self.state is PRState.OPEN

    def matches(
        self, number: int, owner: str | None = None, repo: str | None = None
    ) -> bool:
        """Check if the entry matches a number and optional owner/repo."""
        if self.number != number:
            return False
        if owner is not None and self.owner.lower() != owner.lower():
            return False
        return repo is None or self.repo.lower() == repo.lower()

    def with_state(
        self,
        state: PRState,
        closed_at: datetime | None = None,
        merged: bool | None = None,
    ) -> "TrackedPullRequest":
        """Return a copy moved to ``state``."""
        return replace(
            self,
            state=state,
            closed_at=closed_at if closed_at is not None else self.closed_at,
            merged=self.merged if merged is None else merged,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the dictionary shape reported at the command boundary."""
        return {
            "owner": self.owner,
            "repo": self.repo,
            "pr_number": self.number,
            "title": self.title,
            "state": self.state.value,
            "url": self.url,
            "closed_at": self.closed_at.isoformat() if self.closed_at else "",
            "merged": self.merged,
        }
