"""
Session State Machine.

Lifecycle of a DJ's live session.

States:
    active  - running; requests are accepted and the queue advances (initial)
    paused  - the queue does not advance; requests are still accepted
    ending  - grace period before the session closes; END can be cancelled
    ended   - closed (terminal)

Entering ``ending`` owes an automatic GRACE_EXPIRED after the configured
grace period (5 seconds by default).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from karaoke.config import settings
from karaoke.core.errors import InvalidEventDataError
from karaoke.core.machine import (
    Event,
    GuardEnv,
    Snapshot,
    StateMachine,
    TimedTransition,
    Transition,
)
from karaoke.core.records import Session, SessionStatus, TipHandles

logger = logging.getLogger(__name__)


class SessionEvent(str, Enum):
    PAUSE = "PAUSE"
    RESUME = "RESUME"
    END = "END"
    CANCEL_END = "CANCEL_END"
    UPDATE_DURATION = "UPDATE_DURATION"
    UPDATE_TIPS = "UPDATE_TIPS"
    GRACE_EXPIRED = "GRACE_EXPIRED"


@dataclass(frozen=True)
class SessionContext:
    session_id: str
    created_at: datetime
    song_duration_seconds: int = 270
    tip_handles: TipHandles = TipHandles()


SessionSnapshot = Snapshot[SessionStatus, SessionContext]


def _update_duration(ctx: SessionContext, event: Event, env: GuardEnv) -> SessionContext:
    raw = event.data.get("song_duration_seconds")
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise InvalidEventDataError(
            f"UPDATE_DURATION requires a positive integer song_duration_seconds, got {raw!r}"
        )
    return replace(ctx, song_duration_seconds=raw)


def _coerce_tips(raw: Any) -> TipHandles:
    if isinstance(raw, TipHandles):
        return raw
    if not isinstance(raw, dict):
        raise InvalidEventDataError(f"UPDATE_TIPS requires a tip_handles mapping, got {raw!r}")
    unknown = set(raw) - {"venmo_handle", "cashapp_handle", "zelle_handle"}
    if unknown:
        raise InvalidEventDataError(f"Unknown tip handles: {', '.join(sorted(unknown))}")
    # Blank handles are stored as missing.
    return TipHandles(**{k: (v.strip() or None) if isinstance(v, str) else v for k, v in raw.items()})


def _update_tips(ctx: SessionContext, event: Event, env: GuardEnv) -> SessionContext:
    return replace(ctx, tip_handles=_coerce_tips(event.data.get("tip_handles")))


def build_session_machine(
    *,
    grace_seconds: float | None = None,
) -> StateMachine[SessionStatus, SessionContext]:
    """Build the session machine with the configured ending grace period."""
    grace = grace_seconds if grace_seconds is not None else settings.session_end_grace_seconds

    return StateMachine(
        "session",
        initial=SessionStatus.ACTIVE,
        transitions={
            SessionStatus.ACTIVE: {
                SessionEvent.PAUSE.value: Transition(SessionStatus.PAUSED),
                SessionEvent.END.value: Transition(SessionStatus.ENDING),
                SessionEvent.UPDATE_DURATION.value: Transition(
                    SessionStatus.ACTIVE, action=_update_duration
                ),
                SessionEvent.UPDATE_TIPS.value: Transition(
                    SessionStatus.ACTIVE, action=_update_tips
                ),
            },
            SessionStatus.PAUSED: {
                SessionEvent.RESUME.value: Transition(SessionStatus.ACTIVE),
                SessionEvent.END.value: Transition(SessionStatus.ENDING),
            },
            SessionStatus.ENDING: {
                SessionEvent.CANCEL_END.value: Transition(SessionStatus.ACTIVE),
                SessionEvent.GRACE_EXPIRED.value: Transition(SessionStatus.ENDED),
            },
            SessionStatus.ENDED: {},
        },
        terminal=frozenset({SessionStatus.ENDED}),
        automatic=frozenset({SessionEvent.GRACE_EXPIRED.value}),
        timers={
            SessionStatus.ENDING: TimedTransition(
                SessionEvent.GRACE_EXPIRED.value, lambda ctx, now: grace
            ),
        },
    )


def session_snapshot(session: Session) -> SessionSnapshot:
    """Resolve a machine snapshot from a persisted session.

    Unknown status strings resolve to ``active``.
    """
    try:
        status = SessionStatus(session.status)
    except ValueError:
        logger.warning(
            f"Session {session.session_id} has unknown status {session.status!r}, treating as active"
        )
        status = SessionStatus.ACTIVE
    return Snapshot(
        status,
        SessionContext(
            session_id=session.session_id,
            created_at=session.created_at,
            song_duration_seconds=session.song_duration_seconds,
            tip_handles=session.tip_handles,
        ),
    )
