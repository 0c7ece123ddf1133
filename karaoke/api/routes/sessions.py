"""
Session endpoints.

DJ-facing session management plus the singer-facing request form:
create and list sessions, drive the session lifecycle, submit, list and
reorder songs.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from karaoke.api.errors import to_http_exception
from karaoke.config import settings
from karaoke.core.errors import QueueError
from karaoke.db import get_db
from karaoke.models.requests import (
    CreateSessionRequest,
    ReorderRequest,
    SubmitSongRequest,
    TransitionRequest,
)
from karaoke.models.responses import (
    MachineStateResponse,
    SessionListResponse,
    SessionResponse,
    SessionSummaryResponse,
    SingersResponse,
    SongListResponse,
    SongResponse,
    TransitionResponse,
)
from karaoke.services import queue_service
from karaoke.services.gateway import get_gateway
from karaoke.services.state_manager import get_state_manager

logger = logging.getLogger(__name__)

router = APIRouter()

limiter = Limiter(key_func=get_remote_address)


# =============================================================================
# Sessions
# =============================================================================

@router.post(
    "/sessions",
    response_model=SessionResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
)
async def create_session(
    create_request: CreateSessionRequest,
    db: AsyncSession = Depends(get_db),
) -> SessionResponse:
    """Start a new session; the returned id is the code singers use."""
    tips = create_request.tip_handles.to_record() if create_request.tip_handles else None
    session = await queue_service.create_session(
        db,
        song_duration_seconds=create_request.song_duration_seconds,
        tip_handles=tips,
    )
    await db.commit()
    return SessionResponse.from_record(session)


@router.get("/sessions", response_model=SessionListResponse, response_model_by_alias=True)
async def list_sessions(db: AsyncSession = Depends(get_db)) -> SessionListResponse:
    stats = await queue_service.list_sessions_with_stats(db)
    return SessionListResponse(sessions=[SessionSummaryResponse.from_stats(s) for s in stats])


@router.get("/sessions/{session_id}", response_model=SessionResponse, response_model_by_alias=True)
async def get_session(session_id: str, db: AsyncSession = Depends(get_db)) -> SessionResponse:
    session = await queue_service.get_session(db, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail={
            "error": "not_found",
            "message": f"Session {session_id} not found",
        })
    return SessionResponse.from_record(session)


@router.get(
    "/sessions/{session_id}/state",
    response_model=MachineStateResponse,
    response_model_by_alias=True,
)
async def get_session_state(session_id: str) -> MachineStateResponse:
    """Lifecycle state, context and accepted events of the session."""
    try:
        state = await get_gateway().get_state("session", session_id)
    except QueueError as e:
        raise to_http_exception(e)
    return MachineStateResponse.from_state(state)


@router.post(
    "/sessions/{session_id}/transitions",
    response_model=TransitionResponse,
    response_model_by_alias=True,
)
async def transition_session(
    session_id: str,
    transition_request: TransitionRequest,
) -> TransitionResponse:
    """Send PAUSE, RESUME, END, CANCEL_END, UPDATE_DURATION or UPDATE_TIPS."""
    try:
        result = await get_gateway().transition(
            "session",
            session_id,
            transition_request.event,
            transition_request.payload(),
        )
    except QueueError as e:
        raise to_http_exception(e)
    return TransitionResponse.from_result(result)


# =============================================================================
# Songs within a session
# =============================================================================

@router.get(
    "/sessions/{session_id}/songs",
    response_model=SongListResponse,
    response_model_by_alias=True,
)
async def list_songs(session_id: str, db: AsyncSession = Depends(get_db)) -> SongListResponse:
    """The queue ordered by position, with wait estimates for waiting songs."""
    try:
        session = await queue_service.require_session(db, session_id)
    except QueueError as e:
        raise to_http_exception(e)
    songs = await queue_service.list_songs(db, session_id)
    waits = queue_service.estimate_waits(songs, session.song_duration_seconds)
    return SongListResponse(
        session_id=session_id,
        songs=[SongResponse.from_record(s, waits.get(s.song_id)) for s in songs],
    )


@router.post(
    "/sessions/{session_id}/songs",
    response_model=SongResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.song_request_rate_limit)
async def submit_song(
    request: Request,
    session_id: str,
    song_request: SubmitSongRequest,
    db: AsyncSession = Depends(get_db),
) -> SongResponse:
    """Singer-facing: append a request to the end of the queue."""
    try:
        song = await queue_service.add_song(
            db,
            session_id,
            singer_name=song_request.singer_name,
            artist=song_request.artist,
            title=song_request.title,
        )
    except QueueError as e:
        raise to_http_exception(e)
    await db.commit()
    return SongResponse.from_record(song)


@router.get(
    "/sessions/{session_id}/singers",
    response_model=SingersResponse,
    response_model_by_alias=True,
)
async def list_singers(session_id: str, db: AsyncSession = Depends(get_db)) -> SingersResponse:
    try:
        await queue_service.require_session(db, session_id)
    except QueueError as e:
        raise to_http_exception(e)
    return SingersResponse(
        session_id=session_id,
        singers=await queue_service.list_singers(db, session_id),
        song_counts=await queue_service.get_singer_stats(db, session_id),
    )


@router.put(
    "/sessions/{session_id}/reorder",
    response_model=SongListResponse,
    response_model_by_alias=True,
)
async def reorder_songs(
    session_id: str,
    reorder_request: ReorderRequest,
) -> SongListResponse:
    """Renumber the queue. Unknown song ids reject the whole request."""
    manager = get_state_manager()
    try:
        songs = await queue_service.reorder_songs(
            manager.repository,
            session_id,
            reorder_request.to_updates(),
            manager=manager,
        )
    except QueueError as e:
        raise to_http_exception(e)
    return SongListResponse(
        session_id=session_id,
        songs=[SongResponse.from_record(s) for s in songs],
    )
