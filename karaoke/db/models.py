"""
SQLAlchemy ORM models for the karaoke queue.

Tables:
- sessions: one row per DJ session, status is the session machine state
- songs: song requests, status is the song machine state
- singer_stats: per-session request counts by singer
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from karaoke.db.database import Base


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class KaraokeSession(Base):
    """
    A DJ's live session.

    The id is the short code singers type or scan to reach the request form.
    """
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(16), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    song_duration: Mapped[int] = mapped_column(Integer, default=270, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)

    # Tip handles shown to singers
    venmo_handle: Mapped[str | None] = mapped_column(String(100), nullable=True)
    cashapp_handle: Mapped[str | None] = mapped_column(String(100), nullable=True)
    zelle_handle: Mapped[str | None] = mapped_column(String(100), nullable=True)

    songs: Mapped[list["SongRequest"]] = relationship(
        "SongRequest",
        back_populates="session",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<KaraokeSession {self.id} status={self.status}>"


class SongRequest(Base):
    """A single song request in a session's queue."""
    __tablename__ = "songs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    session_id: Mapped[str] = mapped_column(
        String(16),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    singer_name: Mapped[str] = mapped_column(String(100), nullable=False)
    artist: Mapped[str] = mapped_column(String(200), nullable=False)
    song_title: Mapped[str] = mapped_column(String(200), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="waiting", nullable=False)
    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    delayed_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delay_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    session: Mapped["KaraokeSession"] = relationship("KaraokeSession", back_populates="songs")

    __table_args__ = (
        Index("idx_songs_session_position", "session_id", "position"),
        Index("idx_songs_session_status", "session_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<SongRequest {self.id[:8]} #{self.position} {self.status}>"


class SingerStat(Base):
    """How many songs a singer has requested in a session."""
    __tablename__ = "singer_stats"

    session_id: Mapped[str] = mapped_column(
        String(16),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        primary_key=True,
    )
    singer_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    song_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
