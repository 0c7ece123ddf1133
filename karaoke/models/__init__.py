"""Pydantic models for the karaoke queue API."""
from __future__ import annotations

from karaoke.models.base import CamelModel
from karaoke.models.requests import (
    CreateSessionRequest,
    MoveSongRequest,
    ReorderRequest,
    SubmitSongRequest,
    TransitionRequest,
)
from karaoke.models.responses import (
    MachineStateResponse,
    SessionListResponse,
    SessionResponse,
    SongListResponse,
    SongResponse,
    TransitionResponse,
)

__all__ = [
    "CamelModel",
    "CreateSessionRequest",
    "MoveSongRequest",
    "ReorderRequest",
    "SubmitSongRequest",
    "TransitionRequest",
    "MachineStateResponse",
    "SessionListResponse",
    "SessionResponse",
    "SongListResponse",
    "SongResponse",
    "TransitionResponse",
]
