"""
State Manager: live machine instances for songs and sessions.

Keeps one ``LiveInstance`` per entity id, created on first access from the
persisted status, and is the only place where machine snapshots are
committed. Each event is processed as one unit of work:

    load (or reuse) instance → build guard env → compute next snapshot
    → persist status + changed context → commit in memory → re-arm timers
    → evict if terminal

Events for the same entity are serialized through a per-entity FIFO lock,
so a timer-fired DELAY_EXPIRED or GRACE_EXPIRED can never interleave with
a manually sent event. A timer that has fired is applied before any event
that takes the lock after it, so a late CANCEL_END or SKIP meets the state
the timer produced. Different entities never wait on each other.

A failed write for a manual event is raised as ``PersistenceError`` and the
instance is evicted, so the next access reloads from storage. A failed
write for an automatic event is logged; the new state is kept in memory and
flagged dirty until a later write succeeds.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, AsyncIterator, Awaitable, Callable, Literal, Mapping

from karaoke.config import settings
from karaoke.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    TransitionRejectedError,
)
from karaoke.core.machine import Event, GuardEnv, Snapshot, StateMachine
from karaoke.core.queue_order import QueueSnapshot
from karaoke.core.session_machine import build_session_machine, session_snapshot
from karaoke.core.song_machine import build_song_machine, song_snapshot
from karaoke.core.timers import AsyncioScheduler, ScheduledEvent, Scheduler
from karaoke.services.repository import QueueRepository

logger = logging.getLogger(__name__)

EntityKind = Literal["song", "session"]
ENTITY_KINDS: tuple[str, ...] = ("song", "session")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LiveInstance:
    """One live machine bound to a single entity id."""

    kind: str
    entity_id: str
    snapshot: Snapshot[Any, Any]
    timer: ScheduledEvent | None = None
    # In-memory state is ahead of storage (an automatic write failed).
    dirty: bool = False
    # Bumped on every timer (re)arm; identifies which arming a fired event belongs to.
    generation: int = 0
    # Automatic event whose timer fired but which has not been applied yet.
    due_event: str | None = None


@dataclass(frozen=True)
class MachineState:
    """Renderable view of one instance."""

    value: str
    context: dict[str, Any]
    can: dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class _EntityAdapter:
    kind: str
    machine: StateMachine[Any, Any]
    load: Callable[[str], Awaitable[Any | None]]
    to_snapshot: Callable[[Any], Snapshot[Any, Any]]
    persist: Callable[[str, str, Mapping[str, Any]], Awaitable[None]]


class _KeyedLocks:
    """FIFO asyncio locks keyed by entity, dropped once nobody holds or waits."""

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._users: dict[tuple[str, str], int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: tuple[str, str]) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)


def _context_delta(old: Any, new: Any) -> dict[str, Any]:
    """Context fields whose value changed between two snapshots."""
    return {
        f.name: getattr(new, f.name)
        for f in dataclasses.fields(new)
        if getattr(old, f.name) != getattr(new, f.name)
    }


def _context_fields(ctx: Any) -> dict[str, Any]:
    return {f.name: getattr(ctx, f.name) for f in dataclasses.fields(ctx)}


class StateManager:
    """Registry of live song and session machines."""

    def __init__(
        self,
        repository: QueueRepository,
        *,
        song_machine: StateMachine[Any, Any] | None = None,
        session_machine: StateMachine[Any, Any] | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
        enforce_single_playing: bool | None = None,
    ) -> None:
        self._repository = repository
        self._scheduler = scheduler or AsyncioScheduler()
        self._clock = clock
        self._enforce_single_playing = (
            settings.enforce_single_playing
            if enforce_single_playing is None
            else enforce_single_playing
        )
        self._adapters: dict[str, _EntityAdapter] = {
            "song": _EntityAdapter(
                kind="song",
                machine=song_machine or build_song_machine(),
                load=repository.load_song,
                to_snapshot=song_snapshot,
                persist=repository.persist_song_status,
            ),
            "session": _EntityAdapter(
                kind="session",
                machine=session_machine or build_session_machine(),
                load=repository.load_session,
                to_snapshot=session_snapshot,
                persist=repository.persist_session_status,
            ),
        }
        self._instances: dict[tuple[str, str], LiveInstance] = {}
        self._locks = _KeyedLocks()
        self._pending: set[asyncio.Task[None]] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @property
    def repository(self) -> QueueRepository:
        return self._repository

    def machine(self, kind: str) -> StateMachine[Any, Any]:
        return self._adapter(kind).machine

    def _adapter(self, kind: str) -> _EntityAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise ValueError(f"Unknown entity kind {kind!r}; expected one of {ENTITY_KINDS}")
        return adapter

    def cached(self, kind: str, entity_id: str) -> LiveInstance | None:
        """The live instance if one is cached (no loading)."""
        return self._instances.get((kind, entity_id))

    @property
    def count(self) -> int:
        """Number of live instances."""
        return len(self._instances)

    async def get_or_create(self, kind: str, entity_id: str) -> LiveInstance:
        """Return the cached instance, loading it from storage on first access.

        Raises NotFoundError if storage has no record of the entity.
        """
        adapter = self._adapter(kind)
        async with self._locks.hold((kind, entity_id)):
            return await self._live(adapter, entity_id)

    async def _live(self, adapter: _EntityAdapter, entity_id: str) -> LiveInstance:
        """Load or reuse the instance, then apply any automatic event already due.

        A timer that fired before this unit of work got the lock is ahead of it
        in line, so its event is applied first. Caller holds the entity lock.
        """
        instance = await self._get_or_create_unlocked(adapter, entity_id)
        event_type = instance.due_event
        if event_type is not None:
            instance.due_event = None
            await self._apply_automatic(adapter, instance, event_type)
        return instance

    async def _get_or_create_unlocked(self, adapter: _EntityAdapter, entity_id: str) -> LiveInstance:
        key = (adapter.kind, entity_id)
        instance = self._instances.get(key)
        if instance is not None:
            return instance

        record = await adapter.load(entity_id)
        if record is None:
            raise NotFoundError(adapter.kind, entity_id)

        instance = LiveInstance(
            kind=adapter.kind,
            entity_id=entity_id,
            snapshot=adapter.to_snapshot(record),
        )
        if adapter.machine.is_terminal(instance.snapshot.value):
            # Terminal entities are answered but never cached.
            return instance
        self._instances[key] = instance
        # Resume a timed state interrupted by a restart or an eviction.
        self._arm_timer(adapter, instance)
        logger.debug(f"Created {adapter.kind} instance {entity_id} in {instance.snapshot.status}")
        return instance

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _guard_env(self, adapter: _EntityAdapter, instance: LiveInstance, event_types: list[str]) -> GuardEnv:
        """Facts for guard evaluation, read fresh from storage when needed."""
        queue = None
        state = instance.snapshot.value
        if any(adapter.machine.requires_queue(state, e) for e in event_types):
            session_id = instance.snapshot.context.session_id
            songs = await self._repository.load_sibling_songs(session_id)
            queue = QueueSnapshot(session_id=session_id, songs=tuple(songs))
        return GuardEnv(
            now=self._clock(),
            queue=queue,
            enforce_single_playing=self._enforce_single_playing,
        )

    async def get_state(self, kind: str, entity_id: str) -> MachineState:
        """Current state value, context, and which events would be accepted."""
        adapter = self._adapter(kind)
        async with self._locks.hold((kind, entity_id)):
            instance = await self._live(adapter, entity_id)
            events = adapter.machine.events
            env = await self._guard_env(adapter, instance, events)
            snapshot = instance.snapshot
            return MachineState(
                value=snapshot.status,
                context=dataclasses.asdict(snapshot.context),
                can={e.lower(): adapter.machine.can(snapshot, e, env) for e in events},
            )

    async def can_transition(self, kind: str, entity_id: str, event_type: str) -> bool:
        """Pure query: would ``event_type`` be accepted right now?"""
        adapter = self._adapter(kind)
        async with self._locks.hold((kind, entity_id)):
            instance = await self._live(adapter, entity_id)
            env = await self._guard_env(adapter, instance, [event_type])
            return adapter.machine.can(instance.snapshot, event_type, env)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        kind: str,
        entity_id: str,
        event: Event | str,
    ) -> Snapshot[Any, Any]:
        """Send one event and return the committed snapshot.

        Raises:
            NotFoundError: no record for the entity.
            InvalidTransitionError / GuardRejectedError: the machine refused.
            InvalidEventDataError: the payload could not be applied.
            PersistenceError: the write failed; nothing was committed.
        """
        if isinstance(event, str):
            event = Event(event)
        adapter = self._adapter(kind)

        async with self._locks.hold((kind, entity_id)):
            instance = await self._live(adapter, entity_id)
            if adapter.machine.is_automatic(event.type):
                raise InvalidTransitionError(kind, entity_id, instance.snapshot.status, event.type)
            return await self._apply(adapter, instance, event, automatic=False)

    async def _apply(
        self,
        adapter: _EntityAdapter,
        instance: LiveInstance,
        event: Event,
        *,
        automatic: bool,
    ) -> Snapshot[Any, Any]:
        """Evaluate, persist and commit one event. Caller holds the entity lock."""
        kind, entity_id = adapter.kind, instance.entity_id
        old = instance.snapshot
        env = await self._guard_env(adapter, instance, [event.type])

        try:
            new = adapter.machine.transition(old, event, env, entity_id)
        except TransitionRejectedError as exc:
            logger.info(f"Rejected {event.type} for {kind} {entity_id}: {exc}")
            raise

        delta = _context_fields(new.context) if instance.dirty else _context_delta(old.context, new.context)
        try:
            await adapter.persist(entity_id, new.status, delta)
        except NotFoundError:
            self._evict_unlocked((kind, entity_id))
            raise
        except PersistenceError as exc:
            if not automatic:
                self._evict_unlocked((kind, entity_id))
                logger.warning(f"Transition {event.type} for {kind} {entity_id} not committed: {exc}")
                raise
            logger.error(
                f"Failed to persist automatic {event.type} for {kind} {entity_id}; "
                f"keeping in-memory state {new.status}: {exc}"
            )
            instance.dirty = True
        else:
            instance.dirty = False

        self._commit(adapter, instance, new)
        logger.info(f"{kind.capitalize()} {entity_id}: {old.status} → {new.status} ({event.type})")
        return new

    def _commit(self, adapter: _EntityAdapter, instance: LiveInstance, new: Snapshot[Any, Any]) -> None:
        old = instance.snapshot
        instance.snapshot = new
        if adapter.machine.is_terminal(new.value):
            self._evict_unlocked((adapter.kind, instance.entity_id))
            return
        if new != old:
            self._arm_timer(adapter, instance)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm_timer(self, adapter: _EntityAdapter, instance: LiveInstance) -> None:
        """Cancel any running timer and arm the one owed by the current state.

        Every call bumps the instance's generation, so a fire task left over
        from an earlier arming finds nothing to apply.
        """
        instance.generation += 1
        if instance.timer is not None:
            instance.timer.cancel()
            instance.timer = None
            logger.debug(f"Cancelled timer for {adapter.kind} {instance.entity_id}")

        owed = adapter.machine.timer_for(instance.snapshot, self._clock())
        if owed is None or self._closed:
            return
        event_type, delay = owed
        instance.timer = ScheduledEvent(
            self._scheduler,
            delay,
            event_type,
            partial(self._on_timer, adapter.kind, instance.entity_id, instance.generation),
        )
        logger.debug(f"Armed {event_type} for {adapter.kind} {instance.entity_id} in {delay:.1f}s")

    def _on_timer(self, kind: str, entity_id: str, generation: int, event_type: str) -> None:
        if self._closed:
            return
        instance = self._instances.get((kind, entity_id))
        if instance is None or instance.generation != generation:
            logger.debug(f"Discarded stale {event_type} for {kind} {entity_id}")
            return
        # Recorded now so any unit of work that takes the lock first applies it.
        instance.timer = None
        instance.due_event = event_type
        task = asyncio.get_running_loop().create_task(
            self._fire(kind, entity_id, generation)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _fire(self, kind: str, entity_id: str, generation: int) -> None:
        adapter = self._adapter(kind)
        async with self._locks.hold((kind, entity_id)):
            instance = self._instances.get((kind, entity_id))
            if instance is None or instance.generation != generation or instance.due_event is None:
                # Already applied by an earlier unit of work, or evicted.
                return
            event_type, instance.due_event = instance.due_event, None
            await self._apply_automatic(adapter, instance, event_type)

    async def _apply_automatic(self, adapter: _EntityAdapter, instance: LiveInstance, event_type: str) -> None:
        kind, entity_id = adapter.kind, instance.entity_id
        try:
            await self._apply(adapter, instance, Event(event_type), automatic=True)
        except TransitionRejectedError:
            logger.debug(f"Automatic {event_type} for {kind} {entity_id} no longer applies")
        except NotFoundError:
            logger.info(f"Automatic {event_type} for {kind} {entity_id} dropped: record is gone")
        except PersistenceError as exc:
            # Raised while loading guard facts; the instance keeps its state.
            logger.error(f"Automatic {event_type} for {kind} {entity_id} failed: {exc}")

    async def wait_idle(self) -> None:
        """Wait until every fired timer event has been processed."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def apply_positions(self, positions: Mapping[str, int]) -> None:
        """Refresh the position held by cached song instances after a reorder."""
        for song_id, position in positions.items():
            key = ("song", song_id)
            if key not in self._instances:
                continue
            async with self._locks.hold(key):
                instance = self._instances.get(key)
                if instance is None:
                    continue
                ctx = instance.snapshot.context
                instance.snapshot = Snapshot(
                    instance.snapshot.value, dataclasses.replace(ctx, position=position)
                )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def evict(self, kind: str, entity_id: str) -> bool:
        """Drop a live instance and its timer. Persisted data is untouched."""
        self._adapter(kind)
        return self._evict_unlocked((kind, entity_id))

    def _evict_unlocked(self, key: tuple[str, str]) -> bool:
        instance = self._instances.pop(key, None)
        if instance is None:
            return False
        if instance.timer is not None:
            instance.timer.cancel()
            instance.timer = None
        logger.debug(f"Evicted {key[0]} instance {key[1]}")
        return True

    def clear(self) -> None:
        """Evict every instance (for tests and administrative cleanup)."""
        for key in list(self._instances):
            self._evict_unlocked(key)

    async def shutdown(self) -> None:
        """Cancel all timers and pending automatic events; refuse new timers."""
        self._closed = True
        self.clear()
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*list(self._pending), return_exceptions=True)
        self._pending.clear()
        logger.info("State manager shut down")


# Singleton instance
_manager: StateManager | None = None


def get_state_manager() -> StateManager:
    """Get the process-wide StateManager, backed by the application database."""
    global _manager
    if _manager is None:
        from karaoke.db.database import get_session_factory
        from karaoke.services.repository import SqlQueueRepository

        _manager = StateManager(SqlQueueRepository(get_session_factory()))
    return _manager


def set_state_manager(manager: StateManager | None) -> None:
    """Install a specific StateManager (application startup, tests)."""
    global _manager
    _manager = manager


def reset_state_manager() -> None:
    """Reset the singleton (for testing)."""
    global _manager
    if _manager is not None:
        _manager.clear()
    _manager = None
