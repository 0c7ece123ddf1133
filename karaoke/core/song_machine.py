"""
Song State Machine.

Lifecycle of one karaoke request from submission to completion.

States:
    waiting  - in the queue, waiting to be played (initial)
    delayed  - temporarily held back; returns to waiting when the delay expires
    playing  - currently being performed
    done     - performed (terminal)
    skipped  - skipped or cancelled (terminal)

Guards:
    is_next_in_queue - the song is the waiting song with the lowest position
                       in its session, read from a queue snapshot taken at
                       evaluation time
    no_song_playing  - only when single-playing enforcement is switched on
    can_be_delayed   - no delay is currently active
    can_be_edited    - details may change while waiting

Entering ``delayed`` owes an automatic DELAY_EXPIRED after
``delayed_until - now`` seconds (clamped to zero).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum

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
from karaoke.core.records import Song, SongStatus

logger = logging.getLogger(__name__)


class SongEvent(str, Enum):
    PLAY = "PLAY"
    SKIP = "SKIP"
    DELAY = "DELAY"
    EDIT = "EDIT"
    DELAY_EXPIRED = "DELAY_EXPIRED"
    COMPLETE = "COMPLETE"


@dataclass(frozen=True)
class SongContext:
    song_id: str
    session_id: str
    position: int
    artist: str = ""
    title: str = ""
    delayed_until: datetime | None = None
    delay_minutes: int | None = None


SongSnapshot = Snapshot[SongStatus, SongContext]


# -- guards -------------------------------------------------------------------

def _is_next_in_queue(ctx: SongContext, event: Event, env: GuardEnv) -> bool:
    if env.queue is None:
        return False
    return env.queue.is_next(ctx.song_id)


def _no_song_playing(ctx: SongContext, event: Event, env: GuardEnv) -> bool:
    if not env.enforce_single_playing:
        return True
    if env.queue is None:
        return False
    return not env.queue.playing(exclude=ctx.song_id)


def _can_be_delayed(ctx: SongContext, event: Event, env: GuardEnv) -> bool:
    return ctx.delayed_until is None


def _can_be_edited(ctx: SongContext, event: Event, env: GuardEnv) -> bool:
    return True


# -- actions ------------------------------------------------------------------

def _clear_delay(ctx: SongContext, event: Event, env: GuardEnv) -> SongContext:
    return replace(ctx, delayed_until=None, delay_minutes=None)


def _make_start_delay(min_minutes: int, max_minutes: int):
    def _start_delay(ctx: SongContext, event: Event, env: GuardEnv) -> SongContext:
        raw = event.data.get("delay_minutes")
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise InvalidEventDataError(
                f"DELAY requires an integer delay_minutes, got {raw!r}"
            )
        if not min_minutes <= raw <= max_minutes:
            raise InvalidEventDataError(
                f"delay_minutes must be between {min_minutes} and {max_minutes}, got {raw}"
            )
        return replace(
            ctx,
            delayed_until=env.now + timedelta(minutes=raw),
            delay_minutes=raw,
        )

    return _start_delay


def _apply_edit(ctx: SongContext, event: Event, env: GuardEnv) -> SongContext:
    changes: dict[str, str] = {}
    for key in ("artist", "title"):
        if key not in event.data or event.data[key] is None:
            continue
        value = str(event.data[key]).strip()
        if not value:
            raise InvalidEventDataError(f"EDIT cannot set an empty {key}")
        changes[key] = value
    return replace(ctx, **changes)


def _delay_remaining(ctx: SongContext, now: datetime) -> float:
    if ctx.delayed_until is None:
        return 0.0
    return (ctx.delayed_until - now).total_seconds()


# -- machine ------------------------------------------------------------------

def build_song_machine(
    *,
    min_delay_minutes: int | None = None,
    max_delay_minutes: int | None = None,
) -> StateMachine[SongStatus, SongContext]:
    """Build the song machine with the configured delay bounds."""
    start_delay = _make_start_delay(
        min_delay_minutes if min_delay_minutes is not None else settings.min_delay_minutes,
        max_delay_minutes if max_delay_minutes is not None else settings.max_delay_minutes,
    )
    return StateMachine(
        "song",
        initial=SongStatus.WAITING,
        transitions={
            SongStatus.WAITING: {
                SongEvent.PLAY.value: Transition(
                    SongStatus.PLAYING, guard=("is_next_in_queue", "no_song_playing")
                ),
                SongEvent.SKIP.value: Transition(SongStatus.SKIPPED),
                SongEvent.DELAY.value: Transition(
                    SongStatus.DELAYED, guard="can_be_delayed", action=start_delay
                ),
                SongEvent.EDIT.value: Transition(
                    SongStatus.WAITING, guard="can_be_edited", action=_apply_edit
                ),
            },
            SongStatus.DELAYED: {
                SongEvent.DELAY_EXPIRED.value: Transition(SongStatus.WAITING),
                SongEvent.SKIP.value: Transition(SongStatus.SKIPPED),
                # A delay is already running; refused by its guard rather than
                # treated as undefined.
                SongEvent.DELAY.value: Transition(
                    SongStatus.DELAYED, guard="can_be_delayed", action=start_delay
                ),
            },
            SongStatus.PLAYING: {
                SongEvent.COMPLETE.value: Transition(SongStatus.DONE),
                SongEvent.SKIP.value: Transition(SongStatus.SKIPPED),
            },
            SongStatus.DONE: {},
            SongStatus.SKIPPED: {},
        },
        terminal=frozenset({SongStatus.DONE, SongStatus.SKIPPED}),
        guards={
            "is_next_in_queue": _is_next_in_queue,
            "no_song_playing": _no_song_playing,
            "can_be_delayed": _can_be_delayed,
            "can_be_edited": _can_be_edited,
        },
        exit_actions={SongStatus.DELAYED: _clear_delay},
        timers={
            SongStatus.DELAYED: TimedTransition(
                SongEvent.DELAY_EXPIRED.value, _delay_remaining
            ),
        },
        queue_guards=frozenset({"is_next_in_queue", "no_song_playing"}),
    )


def song_snapshot(song: Song) -> SongSnapshot:
    """Resolve a machine snapshot from a persisted song.

    Unknown status strings resolve to ``waiting``.
    """
    try:
        status = SongStatus(song.status)
    except ValueError:
        logger.warning(f"Song {song.song_id} has unknown status {song.status!r}, treating as waiting")
        status = SongStatus.WAITING
    return Snapshot(
        status,
        SongContext(
            song_id=song.song_id,
            session_id=song.session_id,
            position=song.position,
            artist=song.artist,
            title=song.title,
            delayed_until=song.delayed_until,
            delay_minutes=song.delay_minutes,
        ),
    )
