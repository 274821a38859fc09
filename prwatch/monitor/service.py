"""Command surface of the monitor.

``MonitorService`` is what a presentation layer (or the CLI) talks to. It
mutates the State Store and drives the Scheduler, and it also exposes the
boundary command names used by the desktop front end (``add_item``,
``delete_pr``, ``set_refresh_time`` and so on), converting units and shapes
at that edge.

Command errors are raised to the caller and never change the tracked list.
Errors from background cycles are not raised here; they arrive as
``Failure`` events on the bus.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from prwatch.github.exceptions import GitHubAuthenticationError, GitHubTimeoutError
from prwatch.github.urls import (
    DEFAULT_HOST,
    build_pull_request_url,
    parse_pull_request_url,
)
from prwatch.models.enums import PRState, Theme
from prwatch.models.pull_request import TrackedPullRequest
from prwatch.models.settings import Settings

from .events import EventBus, Failure, MonitorEvent, StateChanged, Subscription
from .exceptions import DuplicateIdentityError, InvalidUrlError
from .scheduler import MonitorScheduler, StateClient
from .store import StateStore

logger = logging.getLogger(__name__)

SECONDS_PER_MINUTE = 60

ERROR_EVENT = "error-event"
PR_CLOSED_EVENT = "pr-closed"

BoundaryListener = Callable[[str, str], None]


class MonitorService:
    """Public operations for list management, settings and lifecycle."""

    def __init__(
        self,
        store: StateStore,
        client: StateClient,
        scheduler: MonitorScheduler,
        fetch_timeout_seconds: float | None = None,
        web_host: str = DEFAULT_HOST,
    ) -> None:
        """Initialize the service.

        Args:
            store: Shared state store
            client: External state source used for the fetch on add
            scheduler: Poll loop controlled by ``start``/``stop``
            fetch_timeout_seconds: Deadline for the fetch on add
            web_host: Host whose pull request URLs are accepted
        """
        self._store = store
        self._client = client
        self._scheduler = scheduler
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.web_host = web_host

    # Tracked list

    async def add_tracked(self, url: str) -> list[TrackedPullRequest]:
        """Start tracking the pull request behind ``url``.

        The pull request is fetched once to fill in its title and state.
        Nothing is inserted when the fetch fails.

        Args:
            url: Browser URL of the pull request

        Returns:
            The tracked list after the insert

        Raises:
            InvalidUrlError: If the URL does not point at a pull request on
                ``web_host``
            DuplicateIdentityError: If the pull request is already tracked
            GitHubError: If the fetch fails (including a missing token)
        """
        ref = parse_pull_request_url(url)
        if ref is None:
            raise InvalidUrlError(
                f"Not a pull request URL: {url!r}", details={"url": url}
            )
        if ref.host.lower() != self.web_host.lower():
            raise InvalidUrlError(
                f"Not a {self.web_host} pull request URL: {url!r}",
                details={"url": url, "host": ref.host},
            )

        async with self._store.transaction() as txn:
            if txn.contains(ref.key):
                raise DuplicateIdentityError(
                    f"Pull request {ref} is already tracked",
                    details={"owner": ref.owner, "repo": ref.repo, "number": ref.number},
                )
            credential = txn.settings.credential

        if credential is None:
            raise GitHubAuthenticationError("No GitHub token configured")

        try:
            async with asyncio.timeout(self.fetch_timeout_seconds):
                snapshot = await self._client.fetch_state(
                    ref.owner, ref.repo, ref.number, credential
                )
        except TimeoutError as e:
            raise GitHubTimeoutError(
                f"No response for {ref} after {self.fetch_timeout_seconds}s"
            ) from e

        entry = TrackedPullRequest(
            owner=ref.owner,
            repo=ref.repo,
            number=ref.number,
            title=snapshot.title,
            state=snapshot.state,
            url=snapshot.html_url or self._link_for(ref.owner, ref.repo, ref.number),
            closed_at=snapshot.closed_at if snapshot.state is PRState.CLOSED else None,
            merged=snapshot.merged,
        )

        # A concurrent add of the same pull request may have won the race
        async with self._store.transaction() as txn:
            await txn.add(entry)
            entries = txn.list_tracked()

        logger.info(f"Tracking {ref} ({entry.state.value}): {entry.title}")
        return entries

    def _link_for(self, owner: str, repo: str, number: int) -> str:
        return build_pull_request_url(owner, repo, number, host=self.web_host)

    async def remove_tracked(
        self, number: int, owner: str | None = None, repo: str | None = None
    ) -> list[TrackedPullRequest]:
        """Stop tracking entries with ``number``. Removing nothing succeeds.

        Returns:
            The removed entries
        """
        removed = await self._store.remove(number, owner, repo)
        if removed:
            logger.info(f"Stopped tracking {len(removed)} entries for #{number}")
        else:
            logger.debug(f"Nothing tracked for #{number}")
        return removed

    async def list_tracked(self) -> list[TrackedPullRequest]:
        """Tracked entries in insertion order."""
        return await self._store.list_tracked()

    # Settings

    async def get_settings(self) -> Settings:
        return await self._store.get_settings()

    async def set_settings(self, **changes: Any) -> Settings:
        """Apply a partial settings update.

        A changed refresh interval is handed to the scheduler so a pending
        wait picks it up.

        Raises:
            SettingsValidationError: If the update is invalid
        """
        settings = await self._store.set_settings(**changes)
        if "refresh_interval_seconds" in changes:
            await self._scheduler.set_refresh_interval(settings.refresh_interval_seconds)
        return settings

    async def has_credential(self) -> bool:
        settings = await self._store.get_settings()
        return settings.has_credential

    async def set_credential(self, value: str | None) -> None:
        """Store the access token. The token is not checked against GitHub.

        A blank value clears the stored token.
        """
        settings = await self._store.set_settings(credential=value)
        logger.info(
            "GitHub token stored" if settings.has_credential else "GitHub token cleared"
        )

    # Lifecycle

    async def start(self) -> bool:
        return await self._scheduler.start()

    async def stop(self) -> bool:
        return await self._scheduler.stop()

    @property
    def is_running(self) -> bool:
        return self._scheduler.is_running

    # Boundary commands

    async def add_item(self, url: str) -> list[dict[str, Any]]:
        entries = await self.add_tracked(url)
        return [entry.to_dict() for entry in entries]

    async def delete_pr(self, number: int) -> None:
        await self.remove_tracked(number)

    async def get_pr_list(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in await self.list_tracked()]

    async def has_token(self) -> bool:
        return await self.has_credential()

    async def add_token(self, token: str) -> None:
        await self.set_credential(token)

    async def start_task(self) -> None:
        await self.start()

    async def stop_task(self) -> None:
        await self.stop()

    async def get_theme(self) -> str:
        settings = await self.get_settings()
        return settings.theme.value

    async def set_theme(self, theme: str | Theme) -> None:
        await self.set_settings(theme=theme)

    async def get_refresh_time(self) -> int:
        """Refresh interval in seconds."""
        settings = await self.get_settings()
        return settings.refresh_interval_seconds

    async def set_refresh_time(self, minutes: int | float) -> None:
        """Set the refresh interval from a value in minutes."""
        await self.set_settings(
            refresh_interval_seconds=round(minutes * SECONDS_PER_MINUTE)
        )

    async def get_show_notification(self) -> bool:
        settings = await self.get_settings()
        return settings.notifications_enabled

    async def set_show_notification(self, show: bool) -> None:
        await self.set_settings(notifications_enabled=show)


class BoundaryEventEmitter:
    """Translate bus events into the front end's named events.

    ``StateChanged`` becomes ``pr-closed`` with the number as a string;
    ``Failure`` becomes ``error-event`` with the message.
    """

    def __init__(self, event_bus: EventBus, listener: BoundaryListener) -> None:
        self._listener = listener
        self._subscription: Subscription = event_bus.subscribe(self._on_event)

    def _on_event(self, event: MonitorEvent) -> None:
        if isinstance(event, StateChanged):
            self._listener(PR_CLOSED_EVENT, str(event.number))
        elif isinstance(event, Failure):
            self._listener(ERROR_EVENT, event.message)

    def close(self) -> None:
        self._subscription.close()
