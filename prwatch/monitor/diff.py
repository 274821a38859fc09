"""Decide whether a freshly fetched state is a reportable transition.

Only ``OPEN -> CLOSED`` matters. A pull request that is already closed, or
one that the remote reports as reopened, yields ``NO_CHANGE``: tracked
entries move in one direction only and closed entries are frozen.
"""

import enum

from prwatch.models.enums import PRState


class Decision(str, enum.Enum):
    """Outcome of comparing a known state with a fetched one."""

    NO_CHANGE = "no_change"
    TRANSITION_TO_CLOSED = "transition_to_closed"


def decide(previous: PRState, fetched: PRState) -> Decision:
    """Compare the last known state with the fetched state."""
    if previous is PRState.OPEN and fetched is PRState.CLOSED:
        return Decision.TRANSITION_TO_CLOSED
    return Decision.NO_CHANGE
