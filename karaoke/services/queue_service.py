"""
Queue service: session and song bookkeeping around the lifecycle engine.

Creating sessions, accepting requests, listing the queue, deleting and
reordering songs. Status changes never happen here; they go through the
transition gateway. Deleting a song is a deletion, not a transition: it
bypasses the song machine and evicts any live instance.
"""
from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from karaoke.config import settings
from karaoke.core.errors import NotFoundError, SessionClosedError
from karaoke.core.queue_order import PositionUpdate, estimate_waits, next_position, reorder
from karaoke.core.records import Session, SessionStatus, Song, SongStatus, TipHandles
from karaoke.db.models import KaraokeSession, SingerStat, SongRequest
from karaoke.services.repository import (
    QueueRepository,
    as_utc,
    session_from_row,
    song_from_row,
)
from karaoke.services.state_manager import StateManager

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_MAX_CODE_ATTEMPTS = 10


@dataclass(frozen=True)
class SessionStats:
    """Per-session counts for the DJ's session list."""

    session_id: str
    created_at: datetime
    status: str
    song_duration_seconds: int
    total_songs: int
    waiting_songs: int
    playing_songs: int
    completed_songs: int
    skipped_songs: int
    unique_singers: int


# =============================================================================
# Sessions
# =============================================================================

def generate_session_code(length: Optional[int] = None) -> str:
    """Random upper-case code singers can type from a flyer."""
    length = length or settings.session_code_length
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


async def create_session(
    db: AsyncSession,
    song_duration_seconds: Optional[int] = None,
    tip_handles: Optional[TipHandles] = None,
) -> Session:
    """
    Create a new session in ``active``.

    Args:
        db: Database session
        song_duration_seconds: Average song length for wait estimates
        tip_handles: Optional payment handles shown to singers

    Returns:
        The created Session
    """
    tips = tip_handles or TipHandles()
    for _ in range(_MAX_CODE_ATTEMPTS):
        code = generate_session_code()
        if await db.get(KaraokeSession, code) is None:
            break
    else:
        raise RuntimeError("Could not allocate a unique session code")

    row = KaraokeSession(
        id=code,
        song_duration=song_duration_seconds or settings.default_song_duration_seconds,
        status=SessionStatus.ACTIVE.value,
        venmo_handle=tips.venmo_handle,
        cashapp_handle=tips.cashapp_handle,
        zelle_handle=tips.zelle_handle,
    )
    db.add(row)
    await db.flush()

    logger.info(f"Created session {code}")
    return session_from_row(row)


async def get_session(db: AsyncSession, session_id: str) -> Optional[Session]:
    row = await db.get(KaraokeSession, session_id, populate_existing=True)
    return session_from_row(row) if row is not None else None


async def require_session(db: AsyncSession, session_id: str) -> Session:
    """Return the session or raise NotFoundError."""
    session = await get_session(db, session_id)
    if session is None:
        raise NotFoundError("session", session_id)
    return session


async def ensure_session_open(db: AsyncSession, session_id: str) -> Session:
    """Raise SessionClosedError if the session has ended."""
    session = await require_session(db, session_id)
    if session.status == SessionStatus.ENDED:
        raise SessionClosedError(session_id)
    return session


async def list_sessions_with_stats(db: AsyncSession) -> list[SessionStats]:
    """All sessions, newest first, with song and singer counts."""

    def _count(status: SongStatus):
        return func.count(case((SongRequest.status == status.value, 1)))

    query = (
        select(
            KaraokeSession.id,
            KaraokeSession.created_at,
            KaraokeSession.status,
            KaraokeSession.song_duration,
            func.count(SongRequest.id),
            _count(SongStatus.WAITING),
            _count(SongStatus.PLAYING),
            _count(SongStatus.DONE),
            _count(SongStatus.SKIPPED),
            func.count(func.distinct(SongRequest.singer_name)),
        )
        .outerjoin(SongRequest, SongRequest.session_id == KaraokeSession.id)
        .group_by(KaraokeSession.id)
        .order_by(KaraokeSession.created_at.desc())
    )
    result = await db.execute(query)
    return [
        SessionStats(
            session_id=row[0],
            created_at=as_utc(row[1]),
            status=row[2],
            song_duration_seconds=row[3],
            total_songs=row[4],
            waiting_songs=row[5],
            playing_songs=row[6],
            completed_songs=row[7],
            skipped_songs=row[8],
            unique_singers=row[9],
        )
        for row in result.all()
    ]


# =============================================================================
# Songs
# =============================================================================

def deduplicate_singer_name(existing: Iterable[str], requested: str) -> str:
    """``"Ann"`` → ``"Ann (2)"`` → ``"Ann (3)"`` … case-insensitively."""
    taken = {name.lower() for name in existing}
    candidate = requested
    counter = 1
    while candidate.lower() in taken:
        counter += 1
        candidate = f"{requested} ({counter})"
    return candidate


async def get_song(db: AsyncSession, song_id: str) -> Optional[Song]:
    row = await db.get(SongRequest, song_id, populate_existing=True)
    return song_from_row(row) if row is not None else None


async def require_song(db: AsyncSession, song_id: str) -> Song:
    """Return the song or raise NotFoundError."""
    song = await get_song(db, song_id)
    if song is None:
        raise NotFoundError("song", song_id)
    return song


async def list_songs(db: AsyncSession, session_id: str) -> list[Song]:
    """The session's songs ordered by position."""
    result = await db.execute(
        select(SongRequest)
        .where(SongRequest.session_id == session_id)
        .order_by(SongRequest.position.asc())
        .execution_options(populate_existing=True)
    )
    return [song_from_row(row) for row in result.scalars().all()]


async def add_song(
    db: AsyncSession,
    session_id: str,
    singer_name: str,
    artist: str,
    title: str,
) -> Song:
    """
    Append a request to the end of a session's queue in ``waiting``.

    Paused sessions still accept requests; ended sessions do not.

    Raises:
        NotFoundError: unknown session
        SessionClosedError: the session has ended
    """
    await ensure_session_open(db, session_id)
    existing = await list_songs(db, session_id)

    final_name = deduplicate_singer_name((s.singer_name for s in existing), singer_name.strip())
    row = SongRequest(
        session_id=session_id,
        singer_name=final_name,
        artist=artist.strip(),
        song_title=title.strip(),
        position=next_position(existing),
        status=SongStatus.WAITING.value,
    )
    db.add(row)

    stat = await db.get(SingerStat, (session_id, final_name))
    if stat is None:
        db.add(SingerStat(session_id=session_id, singer_name=final_name, song_count=1))
    else:
        stat.song_count += 1

    await db.flush()
    logger.info(f"Added song {row.id[:8]} at #{row.position} to session {session_id}")
    return song_from_row(row)


async def list_singers(db: AsyncSession, session_id: str) -> list[str]:
    """Distinct singer names in the session, alphabetical."""
    result = await db.execute(
        select(SongRequest.singer_name)
        .where(SongRequest.session_id == session_id)
        .distinct()
        .order_by(SongRequest.singer_name.asc())
    )
    return list(result.scalars().all())


async def get_singer_stats(db: AsyncSession, session_id: str) -> dict[str, int]:
    result = await db.execute(
        select(SingerStat).where(SingerStat.session_id == session_id)
        .execution_options(populate_existing=True)
    )
    return {stat.singer_name: stat.song_count for stat in result.scalars().all()}


async def delete_song(
    db: AsyncSession,
    song_id: str,
    manager: Optional[StateManager] = None,
) -> None:
    """Remove a request outright, whatever its status."""
    result = await db.execute(delete(SongRequest).where(SongRequest.id == song_id))
    if result.rowcount == 0:
        raise NotFoundError("song", song_id)
    await db.flush()
    if manager is not None:
        manager.evict("song", song_id)
    logger.info(f"Deleted song {song_id[:8]}")


async def reorder_songs(
    repository: QueueRepository,
    session_id: str,
    updates: Sequence[PositionUpdate],
    manager: Optional[StateManager] = None,
) -> list[Song]:
    """
    Apply a DJ's renumbering of the queue all-or-nothing.

    Every id must belong to the session. The new positions are written in one
    transaction and then pushed into any cached song instances.

    Returns:
        The session's songs ordered by their new positions
    """
    songs = await repository.load_sibling_songs(session_id)
    if not songs and await repository.load_session(session_id) is None:
        raise NotFoundError("session", session_id)

    reordered = reorder(songs, updates)
    await repository.persist_reorder(session_id, list(updates))
    if manager is not None:
        await manager.apply_positions({u.song_id: u.position for u in updates})
    return sorted(reordered, key=lambda s: s.position)


async def estimate_session_waits(db: AsyncSession, session_id: str) -> dict[str, int]:
    """Seconds until each waiting song's turn, using the session's song length."""
    session = await require_session(db, session_id)
    songs = await list_songs(db, session_id)
    return estimate_waits(songs, session.song_duration_seconds)


async def move_song(
    repository: QueueRepository,
    song_id: str,
    position: int,
    manager: Optional[StateManager] = None,
) -> Song:
    """Give one song a new position: a reorder of a single entry."""
    song = await repository.load_song(song_id)
    if song is None:
        raise NotFoundError("song", song_id)
    songs = await reorder_songs(
        repository, song.session_id, [PositionUpdate(song_id, position)], manager=manager
    )
    return next(s for s in songs if s.song_id == song_id)
