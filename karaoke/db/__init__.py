"""
Database module for the karaoke queue.

Provides async SQLAlchemy support with PostgreSQL and SQLite.
"""
from __future__ import annotations

from karaoke.db.database import (
    get_db,
    init_db,
    close_db,
    get_session_factory,
    AsyncSessionLocal,
)
from karaoke.db.models import KaraokeSession, SingerStat, SongRequest

__all__ = [
    "get_db",
    "init_db",
    "close_db",
    "get_session_factory",
    "AsyncSessionLocal",
    "KaraokeSession",
    "SingerStat",
    "SongRequest",
]
