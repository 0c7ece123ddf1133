"""Tests for the transition gateway."""
from __future__ import annotations

import pytest

from karaoke.core.errors import (
    GuardRejectedError,
    InvalidEventDataError,
    InvalidTransitionError,
    NotFoundError,
)
from karaoke.services.gateway import (
    TransitionGateway,
    TransitionResult,
    get_gateway,
    normalize_event_name,
)


@pytest.fixture
def gateway(manager) -> TransitionGateway:
    return TransitionGateway(manager)


@pytest.mark.parametrize("raw,expected", [
    ("play", "PLAY"),
    ("PLAY", "PLAY"),
    ("cancel_end", "CANCEL_END"),
    ("cancel-end", "CANCEL_END"),
    (" Delay-Expired ", "DELAY_EXPIRED"),
])
def test_normalize_event_name(raw: str, expected: str) -> None:
    assert normalize_event_name(raw) == expected


@pytest.mark.asyncio
async def test_queue_walkthrough(gateway: TransitionGateway, repository, seed) -> None:

    """A, B, C waiting: B cannot jump A; after A is done, B is next."""
    await seed.queue("S1", "A", "B", "C")

    with pytest.raises(GuardRejectedError) as exc:
        await gateway.transition("song", "B", "PLAY")
    assert exc.value.guard == "is_next_in_queue"

    assert await gateway.transition("song", "A", "PLAY") == TransitionResult(True, "playing")
    assert (await repository.load_song("A")).status == "playing"

    assert await gateway.transition("song", "A", "COMPLETE") == TransitionResult(True, "done")
    assert (await repository.load_song("A")).status == "done"

    assert await gateway.transition("song", "B", "PLAY") == TransitionResult(True, "playing")


@pytest.mark.asyncio
async def test_done_song_reports_nothing_possible(gateway: TransitionGateway, seed) -> None:
    await seed.queue("S1", "A")
    await gateway.transition("song", "A", "play")
    await gateway.transition("song", "A", "complete")

    state = await gateway.get_state("song", "A")
    assert state.value == "done"
    assert state.can["play"] is False
    assert state.can["skip"] is False
    assert not any(state.can.values())


@pytest.mark.asyncio
async def test_reorder_then_play(gateway: TransitionGateway, manager, seed) -> None:

    """Swapping positions 1 and 3 makes the song now at 1 the one that can play."""
    from karaoke.core.queue_order import PositionUpdate
    from karaoke.services.queue_service import reorder_songs

    await seed.queue("S1", "A", "B", "C")
    await reorder_songs(
        manager.repository, "S1", [PositionUpdate("A", 3), PositionUpdate("C", 1)], manager=manager
    )
    assert not await gateway.can_transition("song", "A", "PLAY")
    assert await gateway.can_transition("song", "C", "PLAY")
    assert (await gateway.transition("song", "C", "PLAY")).state == "playing"


@pytest.mark.asyncio
async def test_unknown_event_name_is_invalid_transition(gateway: TransitionGateway, seed) -> None:
    await seed.queue("S1", "A")
    with pytest.raises(InvalidTransitionError) as exc:
        await gateway.transition("song", "A", "DANCE")
    assert exc.value.state == "waiting"
    assert exc.value.event == "DANCE"


@pytest.mark.asyncio
async def test_unknown_entity(gateway: TransitionGateway, seed) -> None:
    with pytest.raises(NotFoundError):
        await gateway.transition("song", "ghost", "PLAY")
    with pytest.raises(NotFoundError):
        await gateway.transition("song", "ghost", "DANCE")
    with pytest.raises(NotFoundError):
        await gateway.get_state("session", "GHOST1")


@pytest.mark.asyncio
async def test_payloads_reach_the_machine(gateway: TransitionGateway, repository, seed) -> None:
    await seed.queue("S1", "A")
    await gateway.transition("song", "A", "delay", {"delay_minutes": 5})
    song = await repository.load_song("A")
    assert song.status == "delayed"
    assert song.delay_minutes == 5

    with pytest.raises(InvalidEventDataError):
        await gateway.transition("session", "S1", "update_duration", {"song_duration_seconds": -3})
    result = await gateway.transition("session", "S1", "update-duration", {"song_duration_seconds": 200})
    assert result.state == "active"
    assert (await repository.load_session("S1")).song_duration_seconds == 200


@pytest.mark.asyncio
async def test_can_transition_is_a_pure_query(gateway: TransitionGateway, repository, seed) -> None:
    await seed.queue("S1", "A")
    assert await gateway.can_transition("song", "A", "play")
    assert not await gateway.can_transition("song", "A", "complete")
    assert not await gateway.can_transition("song", "A", "dance")
    assert not await gateway.can_transition("song", "ghost", "play")
    assert (await repository.load_song("A")).status == "waiting"


@pytest.mark.asyncio
async def test_unknown_kind_rejected(gateway: TransitionGateway) -> None:
    with pytest.raises(ValueError):
        await gateway.transition("singer", "x", "PLAY")


@pytest.mark.asyncio
async def test_get_gateway_follows_installed_manager(manager) -> None:
    gw = get_gateway()
    assert gw is get_gateway()
    assert gw._manager is manager


@pytest.mark.asyncio
async def test_timer_only_event_cannot_be_sent(gateway: TransitionGateway, repository, seed) -> None:
    await seed.session("S1")
    await gateway.transition("session", "S1", "end")

    with pytest.raises(InvalidTransitionError) as exc:
        await gateway.transition("session", "S1", "grace_expired")
    assert exc.value.state == "ending"
    assert not await gateway.can_transition("session", "S1", "grace_expired")
    assert "grace_expired" not in (await gateway.get_state("session", "S1")).can
    assert (await repository.load_session("S1")).status == "ending"
