"""
Table-driven lifecycle state machines.

A machine is pure: given a snapshot, an event and a guard environment it
either computes the next snapshot or raises. It never persists, never
schedules and never mutates its input, so a rejected event cannot leave a
partial change behind. Committing snapshots, persisting them and arming
timers is the registry's job (``karaoke.services.state_manager``).

Guards receive a ``GuardEnv`` built fresh for every evaluation. Guards
that depend on shared queue state read it from ``env.queue``, a read-only
snapshot taken immediately before the event is evaluated, instead of from
a cached flag.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Generic, Mapping, TypeVar

from karaoke.core.errors import GuardRejectedError, InvalidTransitionError
from karaoke.core.queue_order import QueueSnapshot

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Enum)
C = TypeVar("C")


@dataclass(frozen=True)
class Event:
    """An inbound event with an optional payload."""

    type: str
    data: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GuardEnv:
    """Facts available to guards and actions at evaluation time."""

    now: datetime
    queue: QueueSnapshot | None = None
    enforce_single_playing: bool = False


Guard = Callable[[Any, Event, GuardEnv], bool]
Action = Callable[[Any, Event, GuardEnv], Any]


@dataclass(frozen=True)
class Transition(Generic[S]):
    """One row of a transition table."""

    target: S
    guard: str | tuple[str, ...] | None = None
    action: Action | None = None

    @property
    def guards(self) -> tuple[str, ...]:
        """Guard names evaluated in order; the first false one rejects."""
        if self.guard is None:
            return ()
        if isinstance(self.guard, str):
            return (self.guard,)
        return self.guard


@dataclass(frozen=True)
class TimedTransition:
    """Automatic event fired after ``delay(context, now)`` seconds in a state."""

    event: str
    delay: Callable[[Any, datetime], float]


@dataclass(frozen=True)
class Snapshot(Generic[S, C]):
    """Current state value plus context of one machine instance."""

    value: S
    context: C

    @property
    def status(self) -> str:
        return self.value.value


class StateMachine(Generic[S, C]):
    """A finite state machine described by a transition table."""

    def __init__(
        self,
        kind: str,
        *,
        initial: S,
        transitions: Mapping[S, Mapping[str, Transition[S]]],
        terminal: frozenset[S],
        guards: Mapping[str, Guard] | None = None,
        exit_actions: Mapping[S, Action] | None = None,
        timers: Mapping[S, TimedTransition] | None = None,
        queue_guards: frozenset[str] = frozenset(),
        automatic: frozenset[str] = frozenset(),
    ) -> None:
        self.kind = kind
        self.initial = initial
        self.terminal = terminal
        self._transitions = transitions
        self._guards = dict(guards or {})
        self._exit_actions = dict(exit_actions or {})
        self._timers = dict(timers or {})
        self._queue_guards = queue_guards
        # Timer-only events: applied by the registry, never accepted from callers.
        self.automatic = automatic

        for state, table in transitions.items():
            for event_type, transition in table.items():
                for name in transition.guards:
                    if name not in self._guards:
                        raise ValueError(
                            f"{kind}: {state.value}/{event_type} references unknown guard {name!r}"
                        )

    @property
    def events(self) -> list[str]:
        """Every event name a caller may send, in table order."""
        seen: dict[str, None] = {}
        for table in self._transitions.values():
            for event_type in table:
                if event_type not in self.automatic:
                    seen.setdefault(event_type, None)
        return list(seen)

    def is_automatic(self, event_type: str) -> bool:
        return event_type in self.automatic

    def is_terminal(self, state: S) -> bool:
        return state in self.terminal

    def accepts(self, state: S, event_type: str) -> bool:
        """True if ``event_type`` is defined for ``state`` (guards ignored)."""
        return event_type in self._transitions.get(state, {})

    def requires_queue(self, state: S, event_type: str) -> bool:
        """True if evaluating the event in ``state`` needs a queue snapshot."""
        transition = self._transitions.get(state, {}).get(event_type)
        return transition is not None and any(g in self._queue_guards for g in transition.guards)

    def can(self, snapshot: Snapshot[S, C], event_type: str, env: GuardEnv) -> bool:
        """Pure query: would the event pass its transition and guard?"""
        transition = self._transitions.get(snapshot.value, {}).get(event_type)
        if transition is None:
            return False
        probe = Event(event_type)
        return all(self._guards[name](snapshot.context, probe, env) for name in transition.guards)

    def transition(
        self,
        snapshot: Snapshot[S, C],
        event: Event,
        env: GuardEnv,
        entity_id: str,
    ) -> Snapshot[S, C]:
        """Compute the snapshot that results from ``event``.

        Raises:
            InvalidTransitionError: the event is not defined for the state.
            GuardRejectedError: the event's guard evaluated false.
            InvalidEventDataError: the event payload cannot be applied.
        """
        transition = self._transitions.get(snapshot.value, {}).get(event.type)
        if transition is None:
            raise InvalidTransitionError(self.kind, entity_id, snapshot.status, event.type)

        for name in transition.guards:
            if not self._guards[name](snapshot.context, event, env):
                raise GuardRejectedError(
                    self.kind, entity_id, snapshot.status, event.type, name
                )

        context = snapshot.context
        if transition.target != snapshot.value and snapshot.value in self._exit_actions:
            context = self._exit_actions[snapshot.value](context, event, env)
        if transition.action is not None:
            context = transition.action(context, event, env)

        return Snapshot(transition.target, context)

    def timer_for(self, snapshot: Snapshot[S, C], now: datetime) -> tuple[str, float] | None:
        """The automatic event owed by the snapshot's state, with its delay in seconds."""
        timed = self._timers.get(snapshot.value)
        if timed is None:
            return None
        return timed.event, max(0.0, timed.delay(snapshot.context, now))
