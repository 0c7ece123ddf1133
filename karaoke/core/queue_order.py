"""
Queue position model.

Positions order the songs of a single session. The next playable song is
the ``waiting`` song with the lowest position; delayed, playing and
finished songs never block it. Ties (which correct reordering never
produces) fall back to input order because ``sorted`` is stable.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Iterable, Sequence

from karaoke.core.errors import NotFoundError
from karaoke.core.records import Song, SongStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionUpdate:
    """A single ``(song_id, position)`` overwrite."""

    song_id: str
    position: int


def waiting_order(songs: Iterable[Song]) -> list[Song]:
    """Waiting songs sorted ascending by position."""
    return sorted(
        (s for s in songs if s.status == SongStatus.WAITING),
        key=lambda s: s.position,
    )


def next_playable(songs: Iterable[Song]) -> Song | None:
    """Return the legitimate next candidate for ``playing``, or None."""
    ordered = waiting_order(songs)
    return ordered[0] if ordered else None


def is_next_in_queue(songs: Iterable[Song], song_id: str) -> bool:
    candidate = next_playable(songs)
    return candidate is not None and candidate.song_id == song_id


def next_position(songs: Sequence[Song]) -> int:
    """Position for a newly submitted request.

    One past the highest position in use, which equals ``len(songs) + 1``
    for a contiguous queue and never collides after deletions.
    """
    return max((s.position for s in songs), default=0) + 1


def reorder(songs: Sequence[Song], updates: Iterable[PositionUpdate]) -> list[Song]:
    """Apply position overwrites all-or-nothing.

    Returns new song values; the inputs are untouched. Every id must belong
    to ``songs`` or nothing is applied. Uniqueness and contiguity of the new
    positions are the caller's responsibility. Status is never touched.
    """
    updates = list(updates)
    by_id = {s.song_id: s for s in songs}
    for update in updates:
        if update.song_id not in by_id:
            raise NotFoundError("song", update.song_id)

    new_positions = {u.song_id: u.position for u in updates}
    result = [
        replace(s, position=new_positions[s.song_id]) if s.song_id in new_positions else s
        for s in songs
    ]
    logger.debug(f"Reordered {len(new_positions)} of {len(result)} songs")
    return result


def songs_playing(songs: Iterable[Song]) -> list[Song]:
    return [s for s in songs if s.status == SongStatus.PLAYING]


def estimate_waits(songs: Iterable[Song], song_duration_seconds: int) -> dict[str, int]:
    """Seconds until each waiting song's turn, keyed by song id."""
    return {
        song.song_id: index * song_duration_seconds
        for index, song in enumerate(waiting_order(songs))
    }


@dataclass(frozen=True)
class QueueSnapshot:
    """Read-only view of a session's songs taken at guard-evaluation time."""

    session_id: str
    songs: tuple[Song, ...]

    def next_playable(self) -> Song | None:
        return next_playable(self.songs)

    def is_next(self, song_id: str) -> bool:
        return is_next_in_queue(self.songs, song_id)

    def playing(self, exclude: str | None = None) -> list[Song]:
        return [s for s in songs_playing(self.songs) if s.song_id != exclude]
