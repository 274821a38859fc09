"""
Shared fixtures for prwatch tests.

Provides a scriptable fake state client and a fully wired monitor (store,
event bus, scheduler, service) backed by in-memory persistence.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from typing import Any

import pytest
import pytest_asyncio

from prwatch.models.enums import PRState
from prwatch.models.pull_request import PullRequestSnapshot, TrackedPullRequest
from prwatch.models.settings import Settings
from prwatch.monitor.events import EventBus, QueueSubscription
from prwatch.monitor.scheduler import MonitorScheduler, SchedulerConfig
from prwatch.monitor.service import MonitorService
from prwatch.monitor.store import StateStore

TEST_TOKEN = "ghp_test_token"

Outcome = PullRequestSnapshot | Exception | Callable[[], Any]


class FakeStateClient:
    """State client answering from a per-number script.

    A scripted value may be a snapshot, an exception to raise, or a callable
    returning either (sync or async), which lets tests block a fetch on an
    event.
    """

    def __init__(self) -> None:
        self.responses: dict[int, Outcome] = {}
        self.calls: list[tuple[str, str, int, str | None]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def set_state(self, number: int, state: PRState, title: str = "", **kwargs: Any) -> None:
        self.responses[number] = PullRequestSnapshot(
            state=state, title=title or f"PR {number}", **kwargs
        )

    def set_error(self, number: int, error: Exception) -> None:
        self.responses[number] = error

    async def fetch_state(
        self, owner: str, repo: str, number: int, credential: str | None
    ) -> PullRequestSnapshot:
        self.calls.append((owner, repo, number, credential))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            outcome = self.responses.get(number)
            if outcome is None:
                outcome = PullRequestSnapshot(state=PRState.OPEN, title=f"PR {number}")
            if callable(outcome):
                outcome = outcome()
                if asyncio.iscoroutine(outcome):
                    outcome = await outcome
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1

    def numbers_called(self) -> list[int]:
        return [call[2] for call in self.calls]


@dataclass
class MonitorHarness:
    """Wired monitor components for tests."""

    store: StateStore
    client: FakeStateClient
    bus: EventBus
    scheduler: MonitorScheduler
    service: MonitorService
    events: QueueSubscription

    async def track(
        self,
        number: int,
        owner: str = "acme",
        repo: str = "widgets",
        state: PRState = PRState.OPEN,
    ) -> TrackedPullRequest:
        entry = _make_entry(number, owner, repo, state)
        await self.store.add(entry)
        return entry


def _make_entry(
    number: int,
    owner: str = "acme",
    repo: str = "widgets",
    state: PRState = PRState.OPEN,
    title: str | None = None,
) -> TrackedPullRequest:
    """Build a tracked entry with sensible defaults."""
    return TrackedPullRequest(
        owner=owner,
        repo=repo,
        number=number,
        title=title if title is not None else f"PR {number}",
        state=state,
        url=f"https://github.com/{owner}/{repo}/pull/{number}",
    )


@pytest.fixture
def make_entry() -> Callable[..., TrackedPullRequest]:
    """Factory for tracked entries."""
    return _make_entry


@pytest.fixture
def fake_client() -> FakeStateClient:
    """Scriptable external state client."""
    return FakeStateClient()


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    """Scheduler configuration with a short fetch timeout."""
    return SchedulerConfig(max_concurrent_fetches=4, fetch_timeout_seconds=2.0)


@pytest_asyncio.fixture
async def monitor(
    fake_client: FakeStateClient, scheduler_config: SchedulerConfig
) -> AsyncGenerator[MonitorHarness, None]:
    """
    Fully wired monitor with a stored token.

    Why: Most scheduler and service tests need every component together
    What: Store, bus, scheduler and service sharing one fake client
    How: Builds components on in-memory persistence and stops the loop on teardown
    """
    store = StateStore(settings=Settings(credential=TEST_TOKEN))
    bus = EventBus()
    scheduler = MonitorScheduler(store, fake_client, bus, scheduler_config)
    service = MonitorService(store, fake_client, scheduler, fetch_timeout_seconds=2.0)
    events = bus.subscribe_queue()

    harness = MonitorHarness(
        store=store,
        client=fake_client,
        bus=bus,
        scheduler=scheduler,
        service=service,
        events=events,
    )
    yield harness

    await scheduler.stop()
    await scheduler.wait_closed()
