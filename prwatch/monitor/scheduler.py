"""Periodic poll loop for tracked pull requests.

``MonitorScheduler`` owns one background task per run. Each run has a
generation number; ``start`` bumps it and ``stop`` clears the running flag,
so a cycle that was in flight when the monitor was stopped or restarted can
tell that it has been superseded and drops its results.

A cycle:

1. snapshots the ``OPEN`` entries and the credential under the store lock,
2. fetches every entry outside the lock with bounded concurrency,
3. re-takes the lock, re-checks the generation, diffs and applies
   transitions,
4. publishes the resulting events, re-checking the generation before each
   delivery.

Cycles never overlap: the loop waits for one cycle to finish before it starts
the wait for the next one, and the wait is measured from the end of the
previous cycle.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Protocol

from prwatch.github.exceptions import (
    GitHubError,
    GitHubRateLimitError,
    GitHubTimeoutError,
)
from prwatch.models.enums import ErrorKind, PRState
from prwatch.models.pull_request import PullRequestSnapshot, TrackedPullRequest
from prwatch.models.settings import DEFAULT_REFRESH_INTERVAL_SECONDS, Settings

from .diff import Decision, decide
from .events import EventBus, Failure, MonitorEvent, StateChanged
from .exceptions import classify_error
from .store import StateStore, StoreTransaction

logger = logging.getLogger(__name__)


class StateClient(Protocol):
    """Source of the current remote state of a pull request."""

    async def fetch_state(
        self, owner: str, repo: str, number: int, credential: str | None
    ) -> PullRequestSnapshot: ...


class SchedulerBusyError(RuntimeError):
    """Raised when a manual cycle is requested while the loop is running."""


@dataclass
class SchedulerConfig:
    """Tuning knobs for the poll loop."""

    max_concurrent_fetches: int = 4
    fetch_timeout_seconds: float = 30.0
    extend_delay_on_rate_limit: bool = True
    max_rate_limit_delay_seconds: float = 3600.0
    stop_on_unauthorized: bool = False


@dataclass
class SchedulerState:
    """Run state of the scheduler. Guarded by the store lock."""

    running: bool = False
    interval_seconds: int = DEFAULT_REFRESH_INTERVAL_SECONDS
    generation: int = 0


@dataclass
class FetchOutcome:
    """Result of fetching one entry during a cycle."""

    entry: TrackedPullRequest
    snapshot: PullRequestSnapshot | None = None
    error: Exception | None = None
    skipped: bool = False


@dataclass
class CycleResult:
    """Summary of one poll cycle."""

    generation: int
    checked: int = 0
    skipped: int = 0
    closed: list[TrackedPullRequest] = field(default_factory=list)
    failures: list[Failure] = field(default_factory=list)
    retry_after: float | None = None
    unauthorized: bool = False
    discarded: bool = False


class MonitorScheduler:
    """Start/stop controller and periodic executor of poll cycles."""

    def __init__(
        self,
        store: StateStore,
        client: StateClient,
        event_bus: EventBus,
        config: SchedulerConfig | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            store: State store shared with the command surface
            client: External state source
            event_bus: Bus receiving ``StateChanged`` and ``Failure`` events
            config: Loop configuration
        """
        if config is not None and config.max_concurrent_fetches < 1:
            raise ValueError("max_concurrent_fetches must be at least 1")

        self._store = store
        self._client = client
        self._bus = event_bus
        self.config = config or SchedulerConfig()

        self._state = SchedulerState()
        self._task: asyncio.Task[None] | None = None
        self._manual_generation: int | None = None
        self._reschedule = asyncio.Event()

        self.last_cycle_finished_at: float | None = None
        self.next_tick_at: float | None = None

        self.stats: dict[str, Any] = {
            "started_at": None,
            "total_cycles": 0,
            "successful_cycles": 0,
            "failed_cycles": 0,
            "discarded_cycles": 0,
            "last_cycle_at": None,
            "last_error": None,
        }

    @property
    def is_running(self) -> bool:
        """Check if the periodic loop is active."""
        return self._state.running

    @property
    def generation(self) -> int:
        """Current run generation."""
        return self._state.generation

    @property
    def state(self) -> SchedulerState:
        """Copy of the current run state."""
        return replace(self._state)

    def _is_current(self, generation: int) -> bool:
        if generation != self._state.generation:
            return False
        return self._state.running or generation == self._manual_generation

    # Lifecycle

    async def start(self) -> bool:
        """Start the periodic loop. No-op if it is already running.

        Returns:
            True if a new loop was started
        """
        async with self._store.transaction() as txn:
            if self._state.running:
                logger.info("Monitor already running")
                return False

            self._state.generation += 1
            self._state.running = True
            self._state.interval_seconds = txn.settings.refresh_interval_seconds
            generation = self._state.generation
            self._task = asyncio.create_task(
                self._run_loop(generation), name=f"pr-monitor-{generation}"
            )

        self.stats["started_at"] = datetime.now(UTC)
        logger.info(
            f"Monitor started (generation {generation}, "
            f"interval {self._state.interval_seconds}s)"
        )
        return True

    async def stop(self) -> bool:
        """Stop the periodic loop. No-op if it is not running.

        The pending wait is cancelled immediately and in-flight fetches are
        asked to cancel. Anything the stopped cycle still produces is
        discarded by the generation check.

        Returns:
            True if a running loop was stopped
        """
        async with self._store.transaction():
            if not self._state.running:
                return False
            self._state.running = False
            task = self._task

        if task is not None and not task.done():
            task.cancel()
        self.next_tick_at = None
        logger.info(f"Monitor stopped (generation {self._state.generation})")
        return True

    async def wait_closed(self) -> None:
        """Wait for the last loop task to finish unwinding."""
        task = self._task
        if task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def set_refresh_interval(self, seconds: int) -> Settings:
        """Change the refresh interval.

        A running loop applies the new interval to the next tick, counted
        from the end of the previous cycle. An in-flight cycle is not
        interrupted.
        """
        async with self._store.transaction() as txn:
            settings = await txn.update_settings(refresh_interval_seconds=seconds)
            self._state.interval_seconds = settings.refresh_interval_seconds

        self._reschedule.set()
        logger.info(f"Refresh interval set to {settings.refresh_interval_seconds}s")
        return settings

    async def run_cycle(self) -> CycleResult:
        """Run a single cycle outside the periodic loop.

        Raises:
            SchedulerBusyError: If the periodic loop is running
        """
        async with self._store.transaction():
            if self._state.running:
                raise SchedulerBusyError("Monitor loop is running")
            self._state.generation += 1
            generation = self._state.generation
            self._manual_generation = generation

        try:
            return await self._run_cycle_guarded(generation)
        finally:
            if self._manual_generation == generation:
                self._manual_generation = None

    # Loop

    async def _run_loop(self, generation: int) -> None:
        """Main loop for one generation."""
        logger.info(f"Starting monitor loop (generation {generation})")
        try:
            while self._is_current(generation):
                result = await self._run_cycle_guarded(generation)
                if not self._is_current(generation):
                    break

                if result.unauthorized and self.config.stop_on_unauthorized:
                    async with self._store.transaction():
                        if self._is_current(generation):
                            self._state.running = False
                    logger.warning("Credential rejected, stopping monitor")
                    break

                await self._wait_for_next_tick(generation, result.retry_after)
        except asyncio.CancelledError:
            logger.debug(f"Monitor loop cancelled (generation {generation})")
            raise
        finally:
            logger.info(f"Monitor loop exited (generation {generation})")

    def _next_delay(self, retry_after: float | None) -> float:
        delay = float(self._state.interval_seconds)
        if retry_after and self.config.extend_delay_on_rate_limit:
            delay = max(delay, min(retry_after, self.config.max_rate_limit_delay_seconds))
        return delay

    async def _wait_for_next_tick(
        self, generation: int, retry_after: float | None = None
    ) -> None:
        """Sleep until the next tick, re-arming when the interval changes."""
        loop = asyncio.get_running_loop()
        cycle_end = self.last_cycle_finished_at or loop.time()

        while self._is_current(generation):
            self.next_tick_at = cycle_end + self._next_delay(retry_after)
            remaining = self.next_tick_at - loop.time()
            if remaining <= 0:
                return

            self._reschedule.clear()
            try:
                await asyncio.wait_for(self._reschedule.wait(), timeout=remaining)
            except TimeoutError:
                return
            logger.debug("Refresh interval changed, re-arming timer")

    async def _run_cycle_guarded(self, generation: int) -> CycleResult:
        """Run a cycle; unexpected errors become one ``Failure`` event."""
        self.stats["total_cycles"] += 1
        self.stats["last_cycle_at"] = datetime.now(UTC)
        try:
            result = await self._run_cycle(generation)
        except Exception as e:
            logger.error(f"Poll cycle failed: {e}", exc_info=True)
            self.stats["failed_cycles"] += 1
            self.stats["last_error"] = {"message": str(e), "timestamp": datetime.now(UTC)}
            failure = Failure(f"Poll cycle failed: {e}", kind=classify_error(e))
            self._publish(generation, [failure])
            result = CycleResult(generation=generation, failures=[failure])
        else:
            if result.discarded:
                self.stats["discarded_cycles"] += 1
            else:
                self.stats["successful_cycles"] += 1
        finally:
            self.last_cycle_finished_at = asyncio.get_running_loop().time()
        return result

    async def _run_cycle(self, generation: int) -> CycleResult:
        """One pass over all open entries."""
        result = CycleResult(generation=generation)

        async with self._store.transaction() as txn:
            if not self._is_current(generation):
                result.discarded = True
                return result
            entries = txn.open_entries()
            credential = txn.settings.credential

        if not entries:
            logger.debug("No open pull requests to check")
            return result

        if credential is None:
            failure = Failure(
                "No GitHub token configured, cannot check pull requests",
                kind=ErrorKind.UNAUTHORIZED,
            )
            result.failures.append(failure)
            result.unauthorized = True
            self._publish(generation, [failure])
            return result

        logger.info(f"Checking {len(entries)} open pull requests")
        outcomes = await self._fetch_all(generation, entries, credential)

        events: list[MonitorEvent] = []
        async with self._store.transaction() as txn:
            if not self._is_current(generation):
                logger.info("Monitor restarted during cycle, discarding results")
                result.discarded = True
                return result

            for outcome in outcomes:
                if outcome.skipped:
                    result.skipped += 1
                    continue
                result.checked += 1

                if outcome.error is not None:
                    failure = self._failure_for(outcome.entry, outcome.error)
                    events.append(failure)
                    result.failures.append(failure)
                    if isinstance(outcome.error, GitHubRateLimitError):
                        result.retry_after = max(
                            result.retry_after or 0.0, outcome.error.retry_after or 0.0
                        ) or None
                    elif failure.kind is ErrorKind.UNAUTHORIZED:
                        result.unauthorized = True
                    continue

                event = await self._apply_snapshot(txn, outcome, result)
                if event is not None:
                    events.append(event)

        self._publish(generation, events)

        if result.skipped:
            logger.warning(
                f"Rate limited: skipped {result.skipped} pull requests this cycle"
            )
        logger.info(
            f"Cycle completed: {result.checked} checked, "
            f"{len(result.closed)} closed, {len(result.failures)} failed"
        )
        return result

    async def _fetch_all(
        self,
        generation: int,
        entries: tuple[TrackedPullRequest, ...],
        credential: str,
    ) -> list[FetchOutcome]:
        """Fetch all entries with bounded concurrency.

        After the first rate limited response no new requests are issued in
        this cycle; requests already in flight are allowed to finish.
        """
        semaphore = asyncio.Semaphore(self.config.max_concurrent_fetches)
        rate_limited = False

        async def fetch(entry: TrackedPullRequest) -> FetchOutcome:
            nonlocal rate_limited
            async with semaphore:
                if rate_limited or not self._is_current(generation):
                    return FetchOutcome(entry, skipped=True)
                try:
                    async with asyncio.timeout(self.config.fetch_timeout_seconds):
                        snapshot = await self._client.fetch_state(
                            entry.owner, entry.repo, entry.number, credential
                        )
                except GitHubRateLimitError as e:
                    rate_limited = True
                    return FetchOutcome(entry, error=e)
                except GitHubError as e:
                    return FetchOutcome(entry, error=e)
                except TimeoutError:
                    return FetchOutcome(
                        entry,
                        error=GitHubTimeoutError(
                            f"No response after {self.config.fetch_timeout_seconds}s"
                        ),
                    )
                except Exception as e:
                    logger.error(
                        f"Unexpected error fetching {entry.owner}/{entry.repo}"
                        f"#{entry.number}: {e}",
                        exc_info=True,
                    )
                    return FetchOutcome(entry, error=e)
                return FetchOutcome(entry, snapshot=snapshot)

        return list(await asyncio.gather(*(fetch(entry) for entry in entries)))

    async def _apply_snapshot(
        self, txn: StoreTransaction, outcome: FetchOutcome, result: CycleResult
    ) -> MonitorEvent | None:
        """Diff one fetched snapshot against the stored entry and apply it."""
        snapshot = outcome.snapshot
        if snapshot is None:
            return None

        current = txn.get(outcome.entry.key)
        if current is None:
            # Removed while the fetch was in flight
            return None

        if decide(current.state, snapshot.state) is not Decision.TRANSITION_TO_CLOSED:
            return None

        try:
            updated = await txn.set_state(
                current.key,
                PRState.CLOSED,
                closed_at=snapshot.closed_at or datetime.now(UTC),
                merged=snapshot.merged,
            )
        except Exception as e:
            logger.error(f"Failed to record closed state for #{current.number}: {e}")
            failure = Failure(
                f"Could not record that #{current.number} closed: {e}",
                number=current.number,
            )
            result.failures.append(failure)
            return failure

        if not updated:
            return None

        entry = updated[0]
        result.closed.append(entry)
        logger.info(
            f"Pull request {entry.owner}/{entry.repo}#{entry.number} "
            f"{'merged' if entry.merged else 'closed'}"
        )
        return StateChanged(
            number=entry.number,
            owner=entry.owner,
            repo=entry.repo,
            title=entry.title,
            url=entry.url,
            merged=entry.merged,
        )

    @staticmethod
    def _failure_for(entry: TrackedPullRequest, error: Exception) -> Failure:
        kind = classify_error(error)
        label = kind.value if kind else type(error).__name__
        return Failure(
            f"{entry.owner}/{entry.repo}#{entry.number}: {label}: {error}",
            kind=kind,
            number=entry.number,
        )

    def _publish(self, generation: int, events: list[MonitorEvent]) -> None:
        """Deliver events unless the cycle has been superseded.

        Runs without awaiting, so a ``stop`` cannot slip in between the check
        and the delivery.
        """
        for index, event in enumerate(events):
            if not self._is_current(generation):
                logger.info(f"Discarding {len(events) - index} events from stopped cycle")
                return
            self._bus.publish(event)
