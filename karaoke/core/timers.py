"""Cancellable one-shot timers for automatic transitions.

A ``ScheduledEvent`` is owned by exactly one live machine instance. It fires
at most once; cancelling after it has fired is a no-op, and an event it has
already queued is judged by whatever state the instance is in when the event
is processed.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Something that can run a callback after a delay in seconds."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class AsyncioScheduler:
    """Schedules on the running event loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class ScheduledEvent:
    """An automatic event armed for one entity."""

    def __init__(
        self,
        scheduler: Scheduler,
        delay: float,
        event: str,
        on_fire: Callable[[str], None],
    ) -> None:
        self.event = event
        self.delay = delay
        self._on_fire = on_fire
        self._fired = False
        self._cancelled = False
        self._handle = scheduler.call_later(delay, self._fire)

    @property
    def active(self) -> bool:
        return not (self._fired or self._cancelled)

    def _fire(self) -> None:
        if not self.active:
            return
        self._fired = True
        self._on_fire(self.event)

    def cancel(self) -> None:
        if not self.active:
            return
        self._cancelled = True
        self._handle.cancel()
