"""State Store: tracked pull requests and user settings.

All reads and writes go through one ``asyncio.Lock``. Public methods take the
lock themselves; ``transaction()`` hands out a ``StoreTransaction`` so callers
such as the scheduler can read, check and write several things atomically.
Network I/O must never happen inside a transaction.

Every mutation is applied in memory first and then written through the
persistence backend. If the write fails the in-memory change is rolled back
and the error propagates, so memory and storage never disagree.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from prwatch.database.persistence import InMemoryPersistence, StatePersistence
from prwatch.models.enums import PRState
from prwatch.models.pull_request import IdentityKey, TrackedPullRequest
from prwatch.models.settings import Settings

from .exceptions import DuplicateIdentityError, SettingsValidationError

logger = logging.getLogger(__name__)


class StoreTransaction:
    """Operations on the store data, valid only while the lock is held."""

    def __init__(self, store: "StateStore") -> None:
        self._store = store
        self._open = True

    def _check_open(self) -> None:
        if not self._open:
            raise RuntimeError("Store transaction used after it was closed")

    # Reads

    def list_tracked(self) -> list[TrackedPullRequest]:
        """All tracked entries in insertion order."""
        self._check_open()
        return list(self._store._entries)

    def open_entries(self) -> tuple[TrackedPullRequest, ...]:
        """Snapshot of entries still in the ``OPEN`` state."""
        self._check_open()
        return tuple(e for e in self._store._entries if e.is_open)

    def get(self, key: IdentityKey) -> TrackedPullRequest | None:
        """Look up an entry by identity key."""
        self._check_open()
        for entry in self._store._entries:
            if entry.key == key:
                return entry
        return None

    def find(
        self, number: int, owner: str | None = None, repo: str | None = None
    ) -> list[TrackedPullRequest]:
        """Entries matching a number and optional owner/repo."""
        self._check_open()
        return [e for e in self._store._entries if e.matches(number, owner, repo)]

    def contains(self, key: IdentityKey) -> bool:
        """Check if an identity is tracked."""
        return self.get(key) is not None

    @property
    def settings(self) -> Settings:
        """Current settings."""
        self._check_open()
        return self._store._settings

    # Writes

    async def add(self, entry: TrackedPullRequest) -> None:
        """Append a new entry.

        Raises:
            DuplicateIdentityError: If the identity is already tracked
        """
        self._check_open()
        if self.contains(entry.key):
            raise DuplicateIdentityError(
                f"Pull request {entry.owner}/{entry.repo}#{entry.number} "
                "is already tracked",
                details={"owner": entry.owner, "repo": entry.repo, "number": entry.number},
            )

        entries = self._store._entries
        entries.append(entry)
        try:
            await self._store._persistence.insert_pull_request(entry)
        except BaseException:
            entries.remove(entry)
            raise

    async def remove(
        self, number: int, owner: str | None = None, repo: str | None = None
    ) -> list[TrackedPullRequest]:
        """Remove matching entries. Removing nothing is not an error.

        Returns:
            The removed entries
        """
        self._check_open()
        removed = self.find(number, owner, repo)
        if not removed:
            return []

        previous = list(self._store._entries)
        removed_keys = {e.key for e in removed}
        self._store._entries = [e for e in previous if e.key not in removed_keys]
        try:
            await self._store._persistence.delete_pull_requests(removed)
        except BaseException:
            self._store._entries = previous
            raise
        return removed

    async def set_state(
        self,
        target: IdentityKey | int,
        state: PRState,
        closed_at: datetime | None = None,
        merged: bool | None = None,
    ) -> list[TrackedPullRequest]:
        """Move entries to ``state``.

        ``target`` is either a full identity key or a bare number; a number
        updates every entry carrying it. Entries only move forward (``OPEN``
        to ``CLOSED``); a request to move an entry backwards is ignored and
        logged.

        Returns:
            The updated entries
        """
        self._check_open()
        entries = self._store._entries
        previous = list(entries)
        updated: list[TrackedPullRequest] = []

        for index, entry in enumerate(entries):
            if isinstance(target, tuple):
                if entry.key != target:
                    continue
            elif entry.number != target:
                continue
            if state.rank < entry.state.rank:
                logger.warning(
                    f"Ignoring backwards transition {entry.state.value} -> "
                    f"{state.value} for {entry.owner}/{entry.repo}#{entry.number}"
                )
                continue
            entries[index] = entry.with_state(state, closed_at=closed_at, merged=merged)
            updated.append(entries[index])

        try:
            for entry in updated:
                await self._store._persistence.update_pull_request(entry)
        except BaseException:
            self._store._entries = previous
            raise
        return updated

    async def update_settings(self, **changes: Any) -> Settings:
        """Apply a partial settings update.

        Raises:
            SettingsValidationError: If the update is invalid
        """
        self._check_open()
        current = self._store._settings
        try:
            updated = current.merged_with(**changes)
        except ValidationError as e:
            raise SettingsValidationError(
                f"Invalid settings update: {e}", details={"fields": sorted(changes)}
            ) from e

        if updated == current:
            return current

        self._store._settings = updated
        try:
            await self._store._persistence.save_settings(updated)
        except BaseException:
            self._store._settings = current
            raise
        return updated


class StateStore:
    """Owner of the tracked list and the settings."""

    def __init__(
        self,
        persistence: StatePersistence | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            persistence: Storage backend; in-memory when omitted
            settings: Initial settings used until ``load`` is called
        """
        self._persistence = persistence or InMemoryPersistence()
        self._entries: list[TrackedPullRequest] = []
        self._settings = settings or Settings()
        self._lock = asyncio.Lock()

    @property
    def persistence(self) -> StatePersistence:
        """Storage backend."""
        return self._persistence

    @property
    def current_settings(self) -> Settings:
        """Last committed settings, readable from synchronous callbacks."""
        return self._settings

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[StoreTransaction, None]:
        """Hold the store lock for a sequence of operations.

        Usage:
            async with store.transaction() as txn:
                entries = txn.open_entries()
        """
        async with self._lock:
            txn = StoreTransaction(self)
            try:
                yield txn
            finally:
                txn._open = False

    async def load(self) -> None:
        """Replace the in-memory state with what the backend holds."""
        async with self._lock:
            entries, settings = await self._persistence.load()
            self._entries = list(entries)
            self._settings = settings
        logger.info(f"State store loaded with {len(entries)} tracked pull requests")

    async def list_tracked(self) -> list[TrackedPullRequest]:
        """All tracked entries in insertion order."""
        async with self.transaction() as txn:
            return txn.list_tracked()

    async def open_entries(self) -> tuple[TrackedPullRequest, ...]:
        """Snapshot of entries still in the ``OPEN`` state."""
        async with self.transaction() as txn:
            return txn.open_entries()

    async def add(self, entry: TrackedPullRequest) -> None:
        """Track a new entry.

        Raises:
            DuplicateIdentityError: If the identity is already tracked
        """
        async with self.transaction() as txn:
            await txn.add(entry)

    async def remove(
        self, number: int, owner: str | None = None, repo: str | None = None
    ) -> list[TrackedPullRequest]:
        """Stop tracking matching entries (idempotent)."""
        async with self.transaction() as txn:
            return await txn.remove(number, owner, repo)

    async def set_state(
        self,
        target: IdentityKey | int,
        state: PRState,
        closed_at: datetime | None = None,
        merged: bool | None = None,
    ) -> list[TrackedPullRequest]:
        """Move entries matching ``target`` to ``state``."""
        async with self.transaction() as txn:
            return await txn.set_state(target, state, closed_at=closed_at, merged=merged)

    async def get_settings(self) -> Settings:
        """Current settings."""
        async with self.transaction() as txn:
            return txn.settings

    async def set_settings(self, **changes: Any) -> Settings:
        """Apply a partial settings update."""
        async with self.transaction() as txn:
            return await txn.update_settings(**changes)
