"""Lifecycle engine: queue ordering, song and session state machines."""
from __future__ import annotations

from karaoke.core.errors import (
    GuardRejectedError,
    InvalidEventDataError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    QueueError,
    SessionClosedError,
    TransitionRejectedError,
)
from karaoke.core.records import Session, SessionStatus, Song, SongStatus, TipHandles

__all__ = [
    "GuardRejectedError",
    "InvalidEventDataError",
    "InvalidTransitionError",
    "NotFoundError",
    "PersistenceError",
    "QueueError",
    "SessionClosedError",
    "TransitionRejectedError",
    "Session",
    "SessionStatus",
    "Song",
    "SongStatus",
    "TipHandles",
]
