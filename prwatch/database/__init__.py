"""Storage for the tracked list and user settings."""

from .connection import DEFAULT_DATABASE_URL, DatabaseConnectionManager
from .models import Base, SettingRecord, TrackedPullRequestRecord
from .persistence import InMemoryPersistence, SqlStatePersistence, StatePersistence

__all__ = [
    "DEFAULT_DATABASE_URL",
    "Base",
    "DatabaseConnectionManager",
    "InMemoryPersistence",
    "SettingRecord",
    "SqlStatePersistence",
    "StatePersistence",
    "TrackedPullRequestRecord",
]
