"""Database module."""

from .models import (
    Audiobook,
    Chapter,
    ChapterProgress,
    ContentType,
    Entitlement,
    ListeningProgress,
)
from .session import create_db_and_tables, get_session

__all__ = [
    "Audiobook",
    "Chapter",
    "ChapterProgress",
    "ContentType",
    "Entitlement",
    "ListeningProgress",
    "create_db_and_tables",
    "get_session",
]
