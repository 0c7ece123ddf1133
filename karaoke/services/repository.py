"""Queue persistence adapter: the lifecycle engine's only route to storage.

The state manager talks to storage exclusively through the
``QueueRepository`` contract below: load an entity's current status and
context, load a session's songs, and persist a new status (plus the context
fields that changed) when a transition commits. ``SqlQueueRepository`` is the
SQLAlchemy implementation; each call runs in its own transaction.

Boundary rules:
  - Must NOT import the state manager or the machines.
  - Every SQLAlchemy failure leaves here as ``PersistenceError``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from karaoke.core.errors import NotFoundError, PersistenceError
from karaoke.core.queue_order import PositionUpdate
from karaoke.core.records import Session, Song, TipHandles
from karaoke.db.models import KaraokeSession, SongRequest

logger = logging.getLogger(__name__)


class QueueRepository(Protocol):
    """What the lifecycle engine needs from storage."""

    async def load_song(self, song_id: str) -> Song | None: ...

    async def load_session(self, session_id: str) -> Session | None: ...

    async def load_sibling_songs(self, session_id: str) -> list[Song]: ...

    async def persist_song_status(
        self, song_id: str, status: str, delta: Mapping[str, Any]
    ) -> None: ...

    async def persist_session_status(
        self, session_id: str, status: str, delta: Mapping[str, Any]
    ) -> None: ...

    async def persist_reorder(
        self, session_id: str, updates: Sequence[PositionUpdate]
    ) -> None: ...


# ---------------------------------------------------------------------------
# Row <-> record translation
# ---------------------------------------------------------------------------


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything in the core is UTC-aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def song_from_row(row: SongRequest) -> Song:
    return Song(
        song_id=row.id,
        session_id=row.session_id,
        position=row.position,
        status=row.status,
        singer_name=row.singer_name,
        artist=row.artist,
        title=row.song_title,
        requested_at=as_utc(row.requested_at),
        delayed_until=as_utc(row.delayed_until),
        delay_minutes=row.delay_minutes,
    )


def session_from_row(row: KaraokeSession) -> Session:
    return Session(
        session_id=row.id,
        created_at=as_utc(row.created_at),
        status=row.status,
        song_duration_seconds=row.song_duration,
        tip_handles=TipHandles(
            venmo_handle=row.venmo_handle,
            cashapp_handle=row.cashapp_handle,
            zelle_handle=row.zelle_handle,
        ),
    )


# Context field -> column for fields a transition may change.
_SONG_COLUMNS = {
    "position": "position",
    "artist": "artist",
    "title": "song_title",
    "delayed_until": "delayed_until",
    "delay_minutes": "delay_minutes",
}


def _song_values(status: str, delta: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {"status": status}
    for field_name, value in delta.items():
        column = _SONG_COLUMNS.get(field_name)
        if column is not None:
            values[column] = value
    return values


def _session_values(status: str, delta: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {"status": status}
    if "song_duration_seconds" in delta:
        values["song_duration"] = delta["song_duration_seconds"]
    tips = delta.get("tip_handles")
    if tips is not None:
        if isinstance(tips, TipHandles):
            tips = {
                "venmo_handle": tips.venmo_handle,
                "cashapp_handle": tips.cashapp_handle,
                "zelle_handle": tips.zelle_handle,
            }
        values.update(tips)
    return values


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


class SqlQueueRepository:
    """``QueueRepository`` over the songs/sessions tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load_song(self, song_id: str) -> Song | None:
        try:
            async with self._session_factory() as db:
                row = await db.get(SongRequest, song_id)
                return song_from_row(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError("song", song_id, "load status", exc) from exc

    async def load_session(self, session_id: str) -> Session | None:
        try:
            async with self._session_factory() as db:
                row = await db.get(KaraokeSession, session_id)
                return session_from_row(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError("session", session_id, "load status", exc) from exc

    async def load_sibling_songs(self, session_id: str) -> list[Song]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(SongRequest)
                    .where(SongRequest.session_id == session_id)
                    .order_by(SongRequest.position.asc())
                )
                return [song_from_row(row) for row in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise PersistenceError("session", session_id, "load songs", exc) from exc

    async def persist_song_status(
        self, song_id: str, status: str, delta: Mapping[str, Any]
    ) -> None:
        values = _song_values(status, delta)
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(SongRequest).where(SongRequest.id == song_id).values(**values)
                )
                if result.rowcount == 0:
                    await db.rollback()
                    raise NotFoundError("song", song_id)
                await db.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("song", song_id, "persist status", exc) from exc
        logger.debug(f"Persisted song {song_id[:8]}: {sorted(values)}")

    async def persist_session_status(
        self, session_id: str, status: str, delta: Mapping[str, Any]
    ) -> None:
        values = _session_values(status, delta)
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(KaraokeSession)
                    .where(KaraokeSession.id == session_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    await db.rollback()
                    raise NotFoundError("session", session_id)
                await db.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("session", session_id, "persist status", exc) from exc
        logger.debug(f"Persisted session {session_id}: {sorted(values)}")

    async def persist_reorder(
        self, session_id: str, updates: Sequence[PositionUpdate]
    ) -> None:
        """Write every position in one transaction, or none of them."""
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    for item in updates:
                        result = await db.execute(
                            update(SongRequest)
                            .where(
                                SongRequest.id == item.song_id,
                                SongRequest.session_id == session_id,
                            )
                            .values(position=item.position)
                        )
                        if result.rowcount == 0:
                            raise NotFoundError("song", item.song_id)
        except SQLAlchemyError as exc:
            raise PersistenceError("session", session_id, "persist reorder", exc) from exc
        logger.info(f"Reordered {len(updates)} songs in session {session_id}")
