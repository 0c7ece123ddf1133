"""Request models for the karaoke queue API."""
from __future__ import annotations

from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic.alias_generators import to_snake

from karaoke.core.queue_order import PositionUpdate
from karaoke.core.records import TipHandles
from karaoke.models.base import CamelModel

_MAX_NAME_LENGTH = 100
_MAX_TEXT_LENGTH = 200
_MAX_HANDLE_LENGTH = 100


class TipHandlesModel(CamelModel):
    """Payment handles a DJ can show to singers."""

    venmo_handle: Optional[str] = Field(default=None, max_length=_MAX_HANDLE_LENGTH)
    cashapp_handle: Optional[str] = Field(default=None, max_length=_MAX_HANDLE_LENGTH)
    zelle_handle: Optional[str] = Field(default=None, max_length=_MAX_HANDLE_LENGTH)

    def to_record(self) -> TipHandles:
        return TipHandles(
            venmo_handle=self.venmo_handle or None,
            cashapp_handle=self.cashapp_handle or None,
            zelle_handle=self.zelle_handle or None,
        )


class CreateSessionRequest(CamelModel):
    """Start a new DJ session."""

    song_duration_seconds: Optional[int] = Field(
        default=None,
        gt=0,
        description="Average song length used for wait estimates (default 270)",
    )
    tip_handles: Optional[TipHandlesModel] = None


class SubmitSongRequest(CamelModel):
    """A singer's song request."""

    singer_name: str = Field(..., min_length=1, max_length=_MAX_NAME_LENGTH)
    artist: str = Field(..., min_length=1, max_length=_MAX_TEXT_LENGTH)
    title: str = Field(..., min_length=1, max_length=_MAX_TEXT_LENGTH)

    @field_validator("singer_name", "artist", "title")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class TransitionRequest(CamelModel):
    """Send one lifecycle event to a song or session.

    ``event`` is matched case-insensitively; ``data`` carries the event
    payload (``delay_minutes`` for DELAY, ``artist``/``title`` for EDIT,
    ``song_duration_seconds`` for UPDATE_DURATION, ``tip_handles`` for
    UPDATE_TIPS). Payload keys may be camelCase or snake_case.
    """

    event: str = Field(..., min_length=1, max_length=32, examples=["play", "delay", "cancel_end"])
    data: dict[str, Any] = Field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        """Event data with snake_case keys, one level of nesting deep."""
        return {
            to_snake(key): (
                {to_snake(k): v for k, v in value.items()} if isinstance(value, dict) else value
            )
            for key, value in self.data.items()
        }


class PositionUpdateModel(CamelModel):
    song_id: str
    position: int = Field(..., ge=1)


class ReorderRequest(CamelModel):
    """New positions for some or all of a session's songs."""

    updates: list[PositionUpdateModel] = Field(..., min_length=1)

    @field_validator("updates")
    @classmethod
    def _unique_ids(cls, value: list[PositionUpdateModel]) -> list[PositionUpdateModel]:
        ids = [u.song_id for u in value]
        if len(ids) != len(set(ids)):
            raise ValueError("each song may appear only once")
        return value

    def to_updates(self) -> list[PositionUpdate]:
        return [PositionUpdate(song_id=u.song_id, position=u.position) for u in self.updates]


class MoveSongRequest(CamelModel):
    """New position for a single song."""

    position: int = Field(..., ge=1)
