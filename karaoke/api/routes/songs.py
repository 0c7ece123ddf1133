"""
Song endpoints.

The DJ drives each request through its lifecycle here (play, skip,
delay, edit, complete), moves it in the queue or deletes it. Lifecycle
events for songs of an ended session are refused.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from karaoke.api.errors import to_http_exception
from karaoke.core.errors import QueueError
from karaoke.db import get_db
from karaoke.models.requests import MoveSongRequest, TransitionRequest
from karaoke.models.responses import MachineStateResponse, SongResponse, TransitionResponse
from karaoke.services import queue_service
from karaoke.services.gateway import get_gateway
from karaoke.services.state_manager import get_state_manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/songs/{song_id}/state",
    response_model=MachineStateResponse,
    response_model_by_alias=True,
)
async def get_song_state(song_id: str) -> MachineStateResponse:
    """Lifecycle state, context and accepted events of the song."""
    try:
        state = await get_gateway().get_state("song", song_id)
    except QueueError as e:
        raise to_http_exception(e)
    return MachineStateResponse.from_state(state)


@router.post(
    "/songs/{song_id}/transitions",
    response_model=TransitionResponse,
    response_model_by_alias=True,
)
async def transition_song(
    song_id: str,
    transition_request: TransitionRequest,
    db: AsyncSession = Depends(get_db),
) -> TransitionResponse:
    """Send PLAY, SKIP, DELAY, EDIT or COMPLETE."""
    try:
        song = await queue_service.require_song(db, song_id)
        await queue_service.ensure_session_open(db, song.session_id)
        result = await get_gateway().transition(
            "song",
            song_id,
            transition_request.event,
            transition_request.payload(),
        )
    except QueueError as e:
        raise to_http_exception(e)
    return TransitionResponse.from_result(result)


@router.put(
    "/songs/{song_id}/position",
    response_model=SongResponse,
    response_model_by_alias=True,
)
async def move_song(song_id: str, move_request: MoveSongRequest) -> SongResponse:
    """Move one song; other songs keep their positions."""
    manager = get_state_manager()
    try:
        song = await queue_service.move_song(
            manager.repository, song_id, move_request.position, manager=manager
        )
    except QueueError as e:
        raise to_http_exception(e)
    return SongResponse.from_record(song)


@router.delete("/songs/{song_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_song(song_id: str, db: AsyncSession = Depends(get_db)) -> Response:
    """Remove a request from the queue outright."""
    try:
        await queue_service.delete_song(db, song_id, manager=get_state_manager())
    except QueueError as e:
        raise to_http_exception(e)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
