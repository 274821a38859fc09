"""Persistence backends for the State Store.

The store keeps the authoritative copy in memory and writes every change
through one of these backends while holding its lock. ``InMemoryPersistence``
keeps nothing across restarts; ``SqlStatePersistence`` stores the tracked
list and the settings in two tables.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from pydantic import ValidationError
from sqlalchemy import delete, select, update

from prwatch.models.pull_request import TrackedPullRequest
from prwatch.models.settings import Settings

from .connection import DatabaseConnectionManager
from .models import SettingRecord, TrackedPullRequestRecord

logger = logging.getLogger(__name__)


class StatePersistence(ABC):
    """Storage contract used by the State Store."""

    @abstractmethod
    async def load(self) -> tuple[list[TrackedPullRequest], Settings]:
        """Load the tracked list (insertion order) and the settings."""
        pass

    @abstractmethod
    async def insert_pull_request(self, entry: TrackedPullRequest) -> None:
        """Persist a newly tracked entry."""
        pass

    @abstractmethod
    async def update_pull_request(self, entry: TrackedPullRequest) -> None:
        """Persist a changed entry."""
        pass

    @abstractmethod
    async def delete_pull_requests(self, entries: list[TrackedPullRequest]) -> None:
        """Remove entries."""
        pass

    @abstractmethod
    async def save_settings(self, settings: Settings) -> None:
        """Persist the full settings object."""
        pass

    async def close(self) -> None:
        """Release resources."""
        return None


class InMemoryPersistence(StatePersistence):
    """Persistence that keeps nothing beyond the process lifetime."""

    def __init__(
        self,
        entries: list[TrackedPullRequest] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._entries = list(entries or [])
        self._settings = settings or Settings()

    async def load(self) -> tuple[list[TrackedPullRequest], Settings]:
        return list(self._entries), self._settings

    async def insert_pull_request(self, entry: TrackedPullRequest) -> None:
        self._entries.append(entry)

    async def update_pull_request(self, entry: TrackedPullRequest) -> None:
        self._entries = [entry if e.key == entry.key else e for e in self._entries]

    async def delete_pull_requests(self, entries: list[TrackedPullRequest]) -> None:
        keys = {e.key for e in entries}
        self._entries = [e for e in self._entries if e.key not in keys]

    async def save_settings(self, settings: Settings) -> None:
        self._settings = settings


class SqlStatePersistence(StatePersistence):
    """SQLAlchemy-backed persistence."""

    def __init__(
        self,
        connection_manager: DatabaseConnectionManager,
        default_settings: Settings | None = None,
    ) -> None:
        """Initialize SQL persistence.

        Args:
            connection_manager: Database connection manager
            default_settings: Settings used for keys that were never stored
        """
        self.connection_manager = connection_manager
        self.default_settings = default_settings or Settings()

    async def initialize(self) -> None:
        """Create tables if needed."""
        await self.connection_manager.create_tables()

    async def load(self) -> tuple[list[TrackedPullRequest], Settings]:
        async with self.connection_manager.get_session() as session:
            result = await session.execute(
                select(TrackedPullRequestRecord).order_by(TrackedPullRequestRecord.id)
            )
            entries = [record.to_entry() for record in result.scalars().all()]

            result = await session.execute(select(SettingRecord))
            raw_settings = {
                record.key: record.value
                for record in result.scalars().all()
                if record.value is not None
            }

        settings = self._settings_from_rows(raw_settings)
        logger.info(f"Loaded {len(entries)} tracked pull requests from storage")
        return entries, settings

    def _settings_from_rows(self, rows: dict[str, str]) -> Settings:
        data: dict[str, Any] = self.default_settings.model_dump()
        data.update({k: v for k, v in rows.items() if k in Settings.model_fields})
        if "notifications_enabled" in rows:
            data["notifications_enabled"] = rows["notifications_enabled"] == "true"
        try:
            return Settings.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Stored settings are invalid, using defaults: {e}")
            return self.default_settings.merged_with(credential=data.get("credential"))

    async def insert_pull_request(self, entry: TrackedPullRequest) -> None:
        async with self.connection_manager.get_session() as session:
            session.add(TrackedPullRequestRecord.from_entry(entry))

    async def update_pull_request(self, entry: TrackedPullRequest) -> None:
        async with self.connection_manager.get_session() as session:
            await session.execute(
                update(TrackedPullRequestRecord)
                .where(
                    TrackedPullRequestRecord.owner == entry.owner,
                    TrackedPullRequestRecord.repo == entry.repo,
                    TrackedPullRequestRecord.number == entry.number,
                )
                .values(**TrackedPullRequestRecord.columns_from_entry(entry))
            )

    async def delete_pull_requests(self, entries: list[TrackedPullRequest]) -> None:
        if not entries:
            return
        async with self.connection_manager.get_session() as session:
            for entry in entries:
                await session.execute(
                    delete(TrackedPullRequestRecord).where(
                        TrackedPullRequestRecord.owner == entry.owner,
                        TrackedPullRequestRecord.repo == entry.repo,
                        TrackedPullRequestRecord.number == entry.number,
                    )
                )

    async def save_settings(self, settings: Settings) -> None:
        values = {
            "credential": settings.credential or "",
            "refresh_interval_seconds": str(settings.refresh_interval_seconds),
            "notifications_enabled": "true" if settings.notifications_enabled else "false",
            "theme": settings.theme.value,
        }
        async with self.connection_manager.get_session() as session:
            for key, value in values.items():
                await session.merge(SettingRecord(key=key, value=value))

    async def close(self) -> None:
        await self.connection_manager.close()
