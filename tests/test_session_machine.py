"""Tests for the Session State Machine."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from karaoke.core.errors import InvalidEventDataError, InvalidTransitionError
from karaoke.core.machine import Event, GuardEnv, Snapshot
from karaoke.core.records import Session, SessionStatus, TipHandles
from karaoke.core.session_machine import (
    SessionContext,
    SessionEvent,
    build_session_machine,
    session_snapshot,
)

T0 = datetime(2026, 3, 14, 20, 0, 0, tzinfo=timezone.utc)
ENV = GuardEnv(now=T0)

machine = build_session_machine(grace_seconds=5.0)


def _snap(status: SessionStatus = SessionStatus.ACTIVE) -> Snapshot:
    return Snapshot(status, SessionContext(session_id="ABC123", created_at=T0))


def _send(snap: Snapshot, event: str, **data) -> Snapshot:
    return machine.transition(snap, Event(event, data), ENV, "ABC123")


VALID = [
    (SessionStatus.ACTIVE, "PAUSE", SessionStatus.PAUSED),
    (SessionStatus.ACTIVE, "END", SessionStatus.ENDING),
    (SessionStatus.PAUSED, "RESUME", SessionStatus.ACTIVE),
    (SessionStatus.PAUSED, "END", SessionStatus.ENDING),
    (SessionStatus.ENDING, "CANCEL_END", SessionStatus.ACTIVE),
    (SessionStatus.ENDING, "GRACE_EXPIRED", SessionStatus.ENDED),
]


@pytest.mark.parametrize("source,event,target", VALID)
def test_valid_transitions(source: SessionStatus, event: str, target: SessionStatus) -> None:
    assert _send(_snap(source), event).value == target


@pytest.mark.parametrize("source,event", [
    (SessionStatus.ACTIVE, "RESUME"),
    (SessionStatus.ACTIVE, "CANCEL_END"),
    (SessionStatus.PAUSED, "PAUSE"),
    (SessionStatus.PAUSED, "UPDATE_DURATION"),
    (SessionStatus.ENDING, "END"),
    (SessionStatus.ENDING, "PAUSE"),
    (SessionStatus.ACTIVE, "GRACE_EXPIRED"),
])
def test_unlisted_events_are_invalid(source: SessionStatus, event: str) -> None:
    snap = _snap(source)
    with pytest.raises(InvalidTransitionError) as exc:
        _send(snap, event, song_duration_seconds=200)
    assert exc.value.state == source.value
    assert snap.value == source


@pytest.mark.parametrize("event", [e.value for e in SessionEvent])
def test_ended_is_terminal(event: str) -> None:
    assert machine.is_terminal(SessionStatus.ENDED)
    with pytest.raises(InvalidTransitionError):
        _send(_snap(SessionStatus.ENDED), event)


class TestContextUpdates:
    def test_update_duration(self) -> None:
        new = _send(_snap(), "UPDATE_DURATION", song_duration_seconds=180)
        assert new.value == SessionStatus.ACTIVE
        assert new.context.song_duration_seconds == 180

    @pytest.mark.parametrize("value", [0, -1, "180", None, True])
    def test_update_duration_rejects_bad_values(self, value) -> None:
        with pytest.raises(InvalidEventDataError):
            _send(_snap(), "UPDATE_DURATION", song_duration_seconds=value)

    def test_update_tips(self) -> None:
        new = _send(_snap(), "UPDATE_TIPS", tip_handles={"venmo_handle": "@dj", "zelle_handle": "  "})
        assert new.context.tip_handles == TipHandles(venmo_handle="@dj")

    def test_update_tips_rejects_unknown_handles(self) -> None:
        with pytest.raises(InvalidEventDataError):
            _send(_snap(), "UPDATE_TIPS", tip_handles={"paypal_handle": "x"})

    def test_update_tips_requires_mapping(self) -> None:
        with pytest.raises(InvalidEventDataError):
            _send(_snap(), "UPDATE_TIPS", tip_handles="@dj")


class TestGraceTimer:
    def test_ending_owes_grace_expired(self) -> None:
        assert machine.timer_for(_snap(SessionStatus.ENDING), T0) == ("GRACE_EXPIRED", 5.0)

    @pytest.mark.parametrize("status", [SessionStatus.ACTIVE, SessionStatus.PAUSED, SessionStatus.ENDED])
    def test_other_states_owe_nothing(self, status: SessionStatus) -> None:
        assert machine.timer_for(_snap(status), T0) is None

    def test_grace_is_configurable(self) -> None:
        quick = build_session_machine(grace_seconds=0.5)
        assert quick.timer_for(_snap(SessionStatus.ENDING), T0) == ("GRACE_EXPIRED", 0.5)


def test_snapshot_from_record() -> None:
    session = Session(
        session_id="ABC123",
        created_at=T0,
        status="paused",
        song_duration_seconds=200,
        tip_handles=TipHandles(cashapp_handle="$dj"),
    )
    snap = session_snapshot(session)
    assert snap.value == SessionStatus.PAUSED
    assert snap.context.song_duration_seconds == 200
    assert snap.context.tip_handles.cashapp_handle == "$dj"


def test_unknown_persisted_status_resolves_to_active() -> None:
    session = Session(session_id="ABC123", created_at=T0, status="closed")
    assert session_snapshot(session).value == SessionStatus.ACTIVE


def test_grace_expired_is_timer_only() -> None:
    assert machine.is_automatic(SessionEvent.GRACE_EXPIRED.value)
    assert SessionEvent.GRACE_EXPIRED.value not in machine.events
    assert machine.events == ["PAUSE", "END", "UPDATE_DURATION", "UPDATE_TIPS", "RESUME", "CANCEL_END"]
