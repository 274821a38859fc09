"""Enums shared across the monitor."""

import enum


class PRState(str, enum.Enum):
    """Lifecycle state of a tracked pull request.

    Members are declared in lifecycle order; ``rank`` is used to assert that
    an entry never moves backwards.
    """

    OPEN = "open"
    CLOSED = "closed"

    @property
    def rank(self) -> int:
        """Position of the state in the ``OPEN < CLOSED`` ordering."""
        return 0 if self is PRState.OPEN else 1


class Theme(str, enum.Enum):
    """Presentation theme preference."""

    SYSTEM = "system"
    LIGHT = "light"
    DARK = "dark"


class ErrorKind(str, enum.Enum):
    """Error taxonomy shared by commands and poll cycles."""

    INVALID_URL = "invalid_url"
    DUPLICATE_IDENTITY = "duplicate_identity"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    MALFORMED = "malformed"
