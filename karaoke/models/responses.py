"""Response models for the karaoke queue API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import Field
from pydantic.alias_generators import to_camel

from karaoke.core.records import Session, Song
from karaoke.models.base import CamelModel
from karaoke.models.requests import TipHandlesModel
from karaoke.services.gateway import TransitionResult
from karaoke.services.queue_service import SessionStats
from karaoke.services.state_manager import MachineState


class SessionResponse(CamelModel):
    id: str
    created_at: datetime
    status: str
    song_duration_seconds: int
    tip_handles: TipHandlesModel

    @classmethod
    def from_record(cls, session: Session) -> "SessionResponse":
        tips = session.tip_handles
        return cls(
            id=session.session_id,
            created_at=session.created_at,
            status=str(getattr(session.status, "value", session.status)),
            song_duration_seconds=session.song_duration_seconds,
            tip_handles=TipHandlesModel(
                venmo_handle=tips.venmo_handle,
                cashapp_handle=tips.cashapp_handle,
                zelle_handle=tips.zelle_handle,
            ),
        )


class SessionSummaryResponse(CamelModel):
    """One row of the DJ's session list."""

    id: str
    created_at: datetime
    status: str
    song_duration_seconds: int
    total_songs: int
    waiting_songs: int
    playing_songs: int
    completed_songs: int
    skipped_songs: int
    unique_singers: int

    @classmethod
    def from_stats(cls, stats: SessionStats) -> "SessionSummaryResponse":
        return cls(
            id=stats.session_id,
            created_at=stats.created_at,
            status=stats.status,
            song_duration_seconds=stats.song_duration_seconds,
            total_songs=stats.total_songs,
            waiting_songs=stats.waiting_songs,
            playing_songs=stats.playing_songs,
            completed_songs=stats.completed_songs,
            skipped_songs=stats.skipped_songs,
            unique_singers=stats.unique_singers,
        )


class SessionListResponse(CamelModel):
    sessions: list[SessionSummaryResponse]


class SongResponse(CamelModel):
    id: str
    session_id: str
    position: int
    status: str
    singer_name: str
    artist: str
    title: str
    requested_at: Optional[datetime] = None
    delayed_until: Optional[datetime] = None
    delay_minutes: Optional[int] = None
    estimated_wait_seconds: Optional[int] = Field(
        default=None,
        description="Seconds until this song's turn; only set for waiting songs",
    )

    @classmethod
    def from_record(cls, song: Song, wait_seconds: Optional[int] = None) -> "SongResponse":
        return cls(
            id=song.song_id,
            session_id=song.session_id,
            position=song.position,
            status=str(getattr(song.status, "value", song.status)),
            singer_name=song.singer_name,
            artist=song.artist,
            title=song.title,
            requested_at=song.requested_at,
            delayed_until=song.delayed_until,
            delay_minutes=song.delay_minutes,
            estimated_wait_seconds=wait_seconds,
        )


class SongListResponse(CamelModel):
    session_id: str
    songs: list[SongResponse]


class SingersResponse(CamelModel):
    session_id: str
    singers: list[str]
    song_counts: dict[str, int]


def _camel_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {to_camel(k): v for k, v in value.items()}
    return value


class MachineStateResponse(CamelModel):
    """Current state, context and accepted events of one live instance."""

    value: str
    context: dict[str, Any]
    can: dict[str, bool]

    @classmethod
    def from_state(cls, state: MachineState) -> "MachineStateResponse":
        return cls(
            value=state.value,
            context={to_camel(k): _camel_keys(v) for k, v in state.context.items()},
            can=dict(state.can),
        )


class TransitionResponse(CamelModel):
    success: bool
    state: str

    @classmethod
    def from_result(cls, result: TransitionResult) -> "TransitionResponse":
        return cls(success=result.success, state=result.state)
