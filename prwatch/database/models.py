"""SQLAlchemy tables backing the persisted monitor state."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from prwatch.models.enums import PRState
from prwatch.models.pull_request import TrackedPullRequest


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TrackedPullRequestRecord(Base):
    """One tracked pull request.

    The autoincrement ``id`` preserves insertion order when the list is
    restored.
    """

    __tablename__ = "tracked_pull_request"
    __table_args__ = (
        UniqueConstraint("owner", "repo", "number", name="uq_tracked_pull_request"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    repo: Mapped[str] = mapped_column(String(255), nullable=False)
    number: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    merged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        """Return string representation of the model."""
        return (
            f"<TrackedPullRequestRecord({self.owner}/{self.repo}#{self.number}, "
            f"state={self.state})>"
        )

    def to_entry(self) -> TrackedPullRequest:
        """Convert to the in-memory entry."""
        return TrackedPullRequest(
            owner=self.owner,
            repo=self.repo,
            number=self.number,
            title=self.title,
            state=PRState(self.state),
            url=self.url,
            closed_at=_as_utc(self.closed_at),
            merged=self.merged,
        )

    @classmethod
    def from_entry(cls, entry: TrackedPullRequest) -> "TrackedPullRequestRecord":
        """Create a record from an in-memory entry."""
        return cls(**cls.columns_from_entry(entry))

    @staticmethod
    def columns_from_entry(entry: TrackedPullRequest) -> dict[str, Any]:
        """Column values for an entry."""
        return {
            "owner": entry.owner,
            "repo": entry.repo,
            "number": entry.number,
            "title": entry.title,
            "state": entry.state.value,
            "url": entry.url,
            "closed_at": entry.closed_at,
            "merged": entry.merged,
        }


class SettingRecord(Base):
    """Key/value row holding one user setting."""

    __tablename__ = "setting"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        """Return string representation without the value."""
        return f"<SettingRecord(key={self.key})>"
