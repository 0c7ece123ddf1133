"""
Domain records for songs and sessions.

These are the plain values the core loads from and hands back to the
persistence layer. Status values are the state names of the lifecycle
machines and are stored verbatim as strings.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SongStatus(str, Enum):
    """Song request lifecycle states."""

    WAITING = "waiting"
    DELAYED = "delayed"
    PLAYING = "playing"
    DONE = "done"
    SKIPPED = "skipped"


class SessionStatus(str, Enum):
    """DJ session lifecycle states."""

    ACTIVE = "active"
    PAUSED = "paused"
    ENDING = "ending"
    ENDED = "ended"


@dataclass(frozen=True)
class TipHandles:
    """Optional payment handles shown to singers."""

    venmo_handle: str | None = None
    cashapp_handle: str | None = None
    zelle_handle: str | None = None


@dataclass
class Song:
    """One song request in a session's queue."""

    song_id: str
    session_id: str
    position: int
    status: SongStatus = SongStatus.WAITING
    singer_name: str = ""
    artist: str = ""
    title: str = ""
    requested_at: datetime | None = None
    delayed_until: datetime | None = None
    delay_minutes: int | None = None


@dataclass
class Session:
    """One DJ's live event."""

    session_id: str
    created_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    song_duration_seconds: int = 270
    tip_handles: TipHandles = field(default_factory=TipHandles)
