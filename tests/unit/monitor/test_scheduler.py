"""
Unit tests for the monitor scheduler.

Why: The scheduler is where concurrency goes wrong: duplicate loops,
     overlapping cycles, stale results after a restart, or one bad entry
     taking down a whole cycle
What: Tests lifecycle idempotency, poll-on-start, single-flight, discard on
      stop/restart, failure reporting, rate limit handling, bounded fan-out,
      timeouts and interval changes
How: Drives a real scheduler against a scriptable fake client with short
     real-time waits
"""

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock, patch

import pytest

from prwatch.github.exceptions import (
    GitHubAuthenticationError,
    GitHubNotFoundError,
    GitHubRateLimitError,
)
from prwatch.models.enums import ErrorKind, PRState
from prwatch.models.pull_request import PullRequestSnapshot
from prwatch.monitor.events import Failure, StateChanged
from prwatch.monitor.scheduler import (
    MonitorScheduler,
    SchedulerBusyError,
    SchedulerConfig,
)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.005)


def closed(number: int, merged: bool = False) -> PullRequestSnapshot:
    return PullRequestSnapshot(state=PRState.CLOSED, title=f"PR {number}", merged=merged)


class TestLifecycle:
    """Test start/stop behavior."""

    @pytest.mark.asyncio
    async def test_start_polls_immediately(self, monitor) -> None:
        """
        Why: The first tick fires on start
        What: Tests that a closed pull request is reported right after start
        How: Scripts a Closed response and waits for the event
        """
        await monitor.track(42)
        monitor.client.set_state(42, PRState.CLOSED, title="Fix flaky test", merged=True)

        assert await monitor.scheduler.start() is True
        event = await asyncio.wait_for(monitor.events.get(), timeout=1.0)

        assert event == StateChanged(
            number=42,
            owner="acme",
            repo="widgets",
            title="PR 42",
            url="https://github.com/acme/widgets/pull/42",
            merged=True,
        )
        entry = (await monitor.store.list_tracked())[0]
        assert entry.state is PRState.CLOSED
        assert entry.closed_at is not None

    @pytest.mark.asyncio
    async def test_start_twice_runs_one_loop(self, monitor) -> None:
        """
        Why: start is idempotent
        What: Tests that a second start neither spawns a loop nor bumps the
              generation
        How: Starts twice and counts fetches for the first tick
        """
        await monitor.track(1)

        assert await monitor.scheduler.start() is True
        assert await monitor.scheduler.start() is False
        await wait_until(lambda: monitor.scheduler.next_tick_at is not None)
        await asyncio.sleep(0.05)

        assert monitor.scheduler.generation == 1
        assert monitor.client.numbers_called() == [1]

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, monitor) -> None:
        assert await monitor.scheduler.stop() is False
        assert not monitor.scheduler.is_running

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_wait(self, monitor) -> None:
        await monitor.track(1)
        await monitor.scheduler.start()
        await wait_until(lambda: monitor.scheduler.next_tick_at is not None)

        assert await monitor.scheduler.stop() is True
        await asyncio.wait_for(monitor.scheduler.wait_closed(), timeout=0.5)

        assert not monitor.scheduler.is_running
        assert monitor.scheduler.next_tick_at is None

    @pytest.mark.asyncio
    async def test_restart_bumps_generation(self, monitor) -> None:
        await monitor.scheduler.start()
        await monitor.scheduler.stop()
        await monitor.scheduler.start()

        assert monitor.scheduler.generation == 2
        assert monitor.scheduler.is_running

    @pytest.mark.asyncio
    async def test_run_cycle_refused_while_running(self, monitor) -> None:
        await monitor.scheduler.start()

        with pytest.raises(SchedulerBusyError):
            await monitor.scheduler.run_cycle()


class TestCycle:
    """Test a single poll cycle."""

    @pytest.mark.asyncio
    async def test_open_to_closed_published_once(self, monitor) -> None:
        await monitor.track(42)
        monitor.client.set_state(42, PRState.CLOSED)

        first = await monitor.scheduler.run_cycle()
        second = await monitor.scheduler.run_cycle()

        assert [e.number for e in first.closed] == [42]
        assert second.checked == 0
        assert monitor.events.drain() == [
            StateChanged(
                number=42,
                owner="acme",
                repo="widgets",
                title="PR 42",
                url="https://github.com/acme/widgets/pull/42",
            )
        ]

    @pytest.mark.asyncio
    async def test_still_open_publishes_nothing(self, monitor) -> None:
        await monitor.track(1)

        result = await monitor.scheduler.run_cycle()

        assert result.checked == 1
        assert result.closed == []
        assert monitor.events.drain() == []

    @pytest.mark.asyncio
    async def test_closed_entries_not_polled(self, monitor) -> None:
        await monitor.track(1, state=PRState.CLOSED)

        await monitor.scheduler.run_cycle()

        assert monitor.client.calls == []

    @pytest.mark.asyncio
    async def test_credential_passed_to_client(self, monitor) -> None:
        await monitor.track(1)

        await monitor.scheduler.run_cycle()

        assert monitor.client.calls == [("acme", "widgets", 1, "ghp_test_token")]

    @pytest.mark.asyncio
    async def test_unauthorized_entry_reported_once(self, monitor) -> None:
        """
        Why: A failing entry must not abort the cycle or change state
        What: Tests that entries after an Unauthorized one are still processed
              and exactly one Failure is published
        How: Scripts 1 and 3 as Closed and 2 as Unauthorized
        """
        for number in (1, 2, 3):
            await monitor.track(number)
        monitor.client.set_state(1, PRState.CLOSED)
        monitor.client.set_error(2, GitHubAuthenticationError("Bad credentials", 401))
        monitor.client.set_state(3, PRState.CLOSED)

        result = await monitor.scheduler.run_cycle()

        events = monitor.events.drain()
        failures = [e for e in events if isinstance(e, Failure)]
        assert [type(e).__name__ for e in events] == [
            "StateChanged",
            "Failure",
            "StateChanged",
        ]
        assert len(failures) == 1
        assert failures[0].kind is ErrorKind.UNAUTHORIZED
        assert failures[0].number == 2
        assert "Bad credentials" in failures[0].message
        assert result.unauthorized

        states = {e.number: e.state for e in await monitor.store.list_tracked()}
        assert states == {1: PRState.CLOSED, 2: PRState.OPEN, 3: PRState.CLOSED}

    @pytest.mark.asyncio
    async def test_missing_credential_reports_one_failure(self, monitor) -> None:
        await monitor.track(1)
        await monitor.track(2)
        await monitor.store.set_settings(credential=None)

        result = await monitor.scheduler.run_cycle()

        assert monitor.client.calls == []
        assert result.failures == monitor.events.drain()
        assert len(result.failures) == 1
        assert result.failures[0].kind is ErrorKind.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_no_open_entries(self, monitor) -> None:
        result = await monitor.scheduler.run_cycle()

        assert result.checked == 0
        assert monitor.events.drain() == []

    @pytest.mark.asyncio
    async def test_unexpected_client_error_is_per_entry(self, monitor) -> None:
        await monitor.track(1)
        await monitor.track(2)
        monitor.client.set_error(1, RuntimeError("client bug"))
        monitor.client.set_state(2, PRState.CLOSED)

        result = await monitor.scheduler.run_cycle()

        assert len(result.failures) == 1
        assert result.failures[0].kind is None
        assert [e.number for e in result.closed] == [2]

    @pytest.mark.asyncio
    async def test_empty_fetch_result_leaves_entry_open(self, monitor) -> None:
        await monitor.track(1)
        await monitor.track(2)
        monitor.client.responses[1] = lambda: None
        monitor.client.set_state(2, PRState.CLOSED)

        result = await monitor.scheduler.run_cycle()

        assert result.failures == []
        assert [e.number for e in result.closed] == [2]
        tracked = await monitor.store.list_tracked()
        assert [e.state for e in tracked] == [PRState.OPEN, PRState.CLOSED]

    @pytest.mark.asyncio
    async def test_cycle_failure_becomes_one_failure_event(self, monitor) -> None:
        await monitor.track(1)

        with patch.object(
            monitor.scheduler, "_fetch_all", AsyncMock(side_effect=RuntimeError("boom"))
        ):
            result = await monitor.scheduler.run_cycle()

        events = monitor.events.drain()
        assert len(events) == 1
        assert isinstance(events[0], Failure)
        assert "boom" in events[0].message
        assert result.failures == events
        assert monitor.scheduler.stats["failed_cycles"] == 1

    @pytest.mark.asyncio
    async def test_entry_removed_during_fetch(self, monitor) -> None:
        await monitor.track(42)
        release = asyncio.Event()

        async def slow_close() -> PullRequestSnapshot:
            await release.wait()
            return closed(42)

        monitor.client.responses[42] = slow_close

        cycle = asyncio.create_task(monitor.scheduler.run_cycle())
        await wait_until(lambda: monitor.client.in_flight == 1)
        await monitor.service.remove_tracked(42)
        release.set()
        result = await cycle

        assert result.closed == []
        assert monitor.events.drain() == []
        assert await monitor.store.list_tracked() == []

    @pytest.mark.asyncio
    async def test_commands_not_blocked_by_slow_fetch(self, monitor) -> None:
        """
        Why: Network I/O happens outside the store lock
        What: Tests that list and remove complete while a fetch hangs
        How: Blocks a fetch and runs commands with a short timeout
        """
        await monitor.track(1)
        await monitor.track(2)
        release = asyncio.Event()

        async def hang() -> PullRequestSnapshot:
            await release.wait()
            return closed(1)

        monitor.client.responses[1] = hang
        cycle = asyncio.create_task(monitor.scheduler.run_cycle())
        await wait_until(lambda: monitor.client.in_flight >= 1)

        await asyncio.wait_for(monitor.service.remove_tracked(2), timeout=0.5)
        entries = await asyncio.wait_for(monitor.service.list_tracked(), timeout=0.5)

        assert [e.number for e in entries] == [1]
        release.set()
        await cycle


class TestConcurrency:
    """Test fan-out, single-flight and generation handling."""

    @pytest.mark.asyncio
    async def test_fan_out_is_bounded(self, monitor) -> None:
        async def slow_open() -> PullRequestSnapshot:
            await asyncio.sleep(0.02)
            return PullRequestSnapshot(state=PRState.OPEN, title="open")

        for number in range(1, 11):
            await monitor.track(number)
            monitor.client.responses[number] = slow_open

        result = await monitor.scheduler.run_cycle()

        assert result.checked == 10
        assert 1 < monitor.client.max_in_flight <= 4

    @pytest.mark.asyncio
    async def test_events_follow_snapshot_order(self, monitor) -> None:
        async def close_after(delay: float, number: int) -> PullRequestSnapshot:
            await asyncio.sleep(delay)
            return closed(number)

        for number, delay in ((1, 0.05), (2, 0.0), (3, 0.02)):
            await monitor.track(number)
            monitor.client.responses[number] = (
                lambda d=delay, n=number: close_after(d, n)
            )

        await monitor.scheduler.run_cycle()

        assert [e.number for e in monitor.events.drain()] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_single_flight_when_cycle_outlasts_interval(self, monitor) -> None:
        """
        Why: A new cycle must never begin while the previous one runs
        What: Tests that a cycle longer than the interval delays the next tick
        How: Uses a 1s interval and blocks the first fetch for longer
        """
        await monitor.store.set_settings(refresh_interval_seconds=1)
        await monitor.track(1)
        release = asyncio.Event()

        async def blocked() -> PullRequestSnapshot:
            await release.wait()
            return PullRequestSnapshot(state=PRState.OPEN, title="open")

        monitor.client.responses[1] = blocked
        await monitor.scheduler.start()
        await asyncio.sleep(1.2)

        assert monitor.client.numbers_called() == [1]
        assert monitor.scheduler.stats["total_cycles"] == 1
        release.set()

    @pytest.mark.asyncio
    async def test_stop_discards_in_flight_cycle(self, monitor) -> None:
        await monitor.track(42)
        release = asyncio.Event()

        async def slow_close() -> PullRequestSnapshot:
            await release.wait()
            return closed(42)

        monitor.client.responses[42] = slow_close
        await monitor.scheduler.start()
        await wait_until(lambda: monitor.client.in_flight == 1)

        await monitor.scheduler.stop()
        release.set()
        await monitor.scheduler.wait_closed()
        await asyncio.sleep(0.02)

        assert monitor.events.drain() == []
        assert (await monitor.store.list_tracked())[0].state is PRState.OPEN

    @pytest.mark.asyncio
    async def test_restart_discards_superseded_cycle(self, monitor) -> None:
        """
        Why: Results of a cycle from an older generation must not be applied
             or published after a restart
        What: Tests that a cycle outliving a generation change is discarded
        How: Blocks a manual cycle in its fetch, starts the loop (new
             generation), then lets both finish
        """
        await monitor.track(42)
        release = asyncio.Event()

        async def slow_close() -> PullRequestSnapshot:
            await release.wait()
            return closed(42)

        monitor.client.responses[42] = slow_close
        stale = asyncio.create_task(monitor.scheduler.run_cycle())
        await wait_until(lambda: monitor.client.in_flight == 1)

        await monitor.scheduler.start()
        await wait_until(lambda: monitor.client.in_flight == 2)
        release.set()
        stale_result = await stale
        await wait_until(lambda: monitor.scheduler.next_tick_at is not None)

        assert stale_result.discarded
        assert stale_result.closed == []
        events = monitor.events.drain()
        assert [type(e) for e in events] == [StateChanged]
        assert monitor.scheduler.stats["discarded_cycles"] == 1

    @pytest.mark.asyncio
    async def test_fetch_timeout_is_transient(self, monitor) -> None:
        await monitor.track(1)

        async def hang() -> PullRequestSnapshot:
            await asyncio.sleep(10)
            return closed(1)

        monitor.client.responses[1] = hang
        monitor.scheduler.config.fetch_timeout_seconds = 0.05

        result = await monitor.scheduler.run_cycle()

        assert len(result.failures) == 1
        assert result.failures[0].kind is ErrorKind.TRANSIENT


class TestRateLimiting:
    """Test rate limit handling."""

    @pytest.mark.asyncio
    async def test_rate_limit_skips_remaining_requests(self, monitor) -> None:
        """
        Why: Requests after a rate limit response only compound the limit
        What: Tests that no new fetch starts after a RateLimited outcome
        How: Runs fetches one at a time with entry 2 rate limited
        """
        scheduler = MonitorScheduler(
            monitor.store,
            monitor.client,
            monitor.bus,
            SchedulerConfig(max_concurrent_fetches=1),
        )
        for number in (1, 2, 3, 4):
            await monitor.track(number)
        monitor.client.set_error(2, GitHubRateLimitError("slow down", retry_after=30))

        result = await scheduler.run_cycle()

        assert monitor.client.numbers_called() == [1, 2]
        assert result.checked == 2
        assert result.skipped == 2
        assert result.retry_after == 30
        failures = [e for e in monitor.events.drain() if isinstance(e, Failure)]
        assert [f.kind for f in failures] == [ErrorKind.RATE_LIMITED]

    @pytest.mark.asyncio
    async def test_in_flight_requests_complete_after_rate_limit(self, monitor) -> None:
        scheduler = MonitorScheduler(
            monitor.store,
            monitor.client,
            monitor.bus,
            SchedulerConfig(max_concurrent_fetches=2),
        )

        async def slow_close() -> PullRequestSnapshot:
            await asyncio.sleep(0.05)
            return closed(2)

        for number in (1, 2, 3):
            await monitor.track(number)
        monitor.client.set_error(1, GitHubRateLimitError("slow down"))
        monitor.client.responses[2] = slow_close

        result = await scheduler.run_cycle()

        assert [e.number for e in result.closed] == [2]
        assert result.skipped == 1
        assert 3 not in monitor.client.numbers_called()

    @pytest.mark.asyncio
    async def test_rate_limit_extends_next_delay(self, monitor) -> None:
        await monitor.store.set_settings(refresh_interval_seconds=1)
        await monitor.track(1)
        monitor.client.set_error(1, GitHubRateLimitError("slow down", retry_after=45))

        await monitor.scheduler.start()
        await wait_until(lambda: monitor.scheduler.next_tick_at is not None)

        scheduler = monitor.scheduler
        assert scheduler.last_cycle_finished_at is not None
        assert scheduler.next_tick_at - scheduler.last_cycle_finished_at == pytest.approx(45)

    @pytest.mark.asyncio
    async def test_extension_capped_and_optional(self, monitor) -> None:
        scheduler = monitor.scheduler
        scheduler._state.interval_seconds = 10

        scheduler.config.max_rate_limit_delay_seconds = 20
        assert scheduler._next_delay(5) == 10
        assert scheduler._next_delay(60) == 20

        scheduler.config.extend_delay_on_rate_limit = False
        assert scheduler._next_delay(60) == 10


class TestUnauthorizedPolicy:
    """Test the unauthorized stop policy."""

    @pytest.mark.asyncio
    async def test_keeps_running_by_default(self, monitor) -> None:
        await monitor.track(1)
        monitor.client.set_error(1, GitHubAuthenticationError("expired", 401))

        await monitor.scheduler.start()
        await wait_until(lambda: monitor.scheduler.next_tick_at is not None)

        assert monitor.scheduler.is_running

    @pytest.mark.asyncio
    async def test_stop_on_unauthorized(self, monitor) -> None:
        monitor.scheduler.config.stop_on_unauthorized = True
        await monitor.track(1)
        monitor.client.set_error(1, GitHubAuthenticationError("expired", 401))

        await monitor.scheduler.start()
        await asyncio.wait_for(monitor.scheduler.wait_closed(), timeout=1.0)

        assert not monitor.scheduler.is_running
        assert len(monitor.events.drain()) == 1

    @pytest.mark.asyncio
    async def test_other_failures_do_not_stop(self, monitor) -> None:
        monitor.scheduler.config.stop_on_unauthorized = True
        await monitor.track(1)
        monitor.client.set_error(1, GitHubNotFoundError("gone", 404))

        await monitor.scheduler.start()
        await wait_until(lambda: monitor.scheduler.next_tick_at is not None)

        assert monitor.scheduler.is_running


class TestRefreshInterval:
    """Test interval changes."""

    @pytest.mark.asyncio
    async def test_interval_change_while_stopped_updates_settings(self, monitor) -> None:
        settings = await monitor.scheduler.set_refresh_interval(42)

        assert settings.refresh_interval_seconds == 42
        assert (await monitor.store.get_settings()).refresh_interval_seconds == 42
        assert not monitor.scheduler.is_running

    @pytest.mark.asyncio
    async def test_set_refresh_time_then_start(self, monitor) -> None:
        """
        Why: set_refresh_time(10) while stopped, then start: the first tick
             fires immediately and the second no sooner than 600s later
        What: Tests the scheduled delay after the first cycle
        How: Starts the loop and inspects the armed deadline
        """
        await monitor.track(1)
        await monitor.service.set_refresh_time(10)

        await monitor.scheduler.start()
        await wait_until(lambda: monitor.scheduler.next_tick_at is not None)
        await asyncio.sleep(0.05)

        scheduler = monitor.scheduler
        assert monitor.client.numbers_called() == [1]
        assert scheduler.next_tick_at - scheduler.last_cycle_finished_at == pytest.approx(600)

    @pytest.mark.asyncio
    async def test_interval_change_rearms_pending_wait(self, monitor) -> None:
        await monitor.track(1)
        await monitor.scheduler.start()
        await wait_until(lambda: monitor.scheduler.next_tick_at is not None)
        first_deadline = monitor.scheduler.next_tick_at

        await monitor.scheduler.set_refresh_interval(1)
        await wait_until(lambda: len(monitor.client.calls) >= 2, timeout=3.0)

        assert first_deadline is not None
        assert monitor.scheduler.state.interval_seconds == 1
        assert monitor.client.numbers_called()[:2] == [1, 1]

    @pytest.mark.asyncio
    async def test_interval_change_does_not_interrupt_cycle(self, monitor) -> None:
        await monitor.track(42)
        release = asyncio.Event()

        async def slow_close() -> PullRequestSnapshot:
            await release.wait()
            return closed(42)

        monitor.client.responses[42] = slow_close
        await monitor.scheduler.start()
        await wait_until(lambda: monitor.client.in_flight == 1)

        await monitor.scheduler.set_refresh_interval(120)
        release.set()
        event = await asyncio.wait_for(monitor.events.get(), timeout=1.0)

        assert isinstance(event, StateChanged)
        assert event.number == 42
