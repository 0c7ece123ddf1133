"""Transition gateway: the core's face toward HTTP handlers and the CLI.

Turns an inbound ``(kind, id, event name[, payload])`` into a state manager
call. Event names are matched case-insensitively and ``-`` is accepted for
``_`` (``cancel-end`` == ``CANCEL_END``). A name the machine does not define
at all is reported the same way as one the current state does not accept:
``InvalidTransitionError``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from karaoke.core.errors import InvalidTransitionError, NotFoundError
from karaoke.core.machine import Event
from karaoke.services.state_manager import ENTITY_KINDS, MachineState, StateManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    state: str


def normalize_event_name(name: str) -> str:
    return name.strip().replace("-", "_").upper()


class TransitionGateway:
    """Dispatch events to the state manager and normalize the answers."""

    def __init__(self, manager: StateManager) -> None:
        self._manager = manager

    @staticmethod
    def _check_kind(kind: str) -> None:
        if kind not in ENTITY_KINDS:
            raise ValueError(f"Unknown entity kind {kind!r}; expected one of {ENTITY_KINDS}")

    async def get_state(self, kind: str, entity_id: str) -> MachineState:
        self._check_kind(kind)
        return await self._manager.get_state(kind, entity_id)

    async def transition(
        self,
        kind: str,
        entity_id: str,
        event_name: str,
        data: Mapping[str, Any] | None = None,
    ) -> TransitionResult:
        """Send the event; return the new state or raise a typed rejection."""
        self._check_kind(kind)
        event_type = normalize_event_name(event_name)
        if event_type not in self._manager.machine(kind).events:
            instance = await self._manager.get_or_create(kind, entity_id)
            raise InvalidTransitionError(kind, entity_id, instance.snapshot.status, event_type)

        snapshot = await self._manager.transition(
            kind, entity_id, Event(event_type, dict(data or {}))
        )
        return TransitionResult(success=True, state=snapshot.status)

    async def can_transition(self, kind: str, entity_id: str, event_name: str) -> bool:
        """Pure query. Unknown ids and unknown events answer False."""
        self._check_kind(kind)
        event_type = normalize_event_name(event_name)
        if event_type not in self._manager.machine(kind).events:
            return False
        try:
            return await self._manager.can_transition(kind, entity_id, event_type)
        except NotFoundError:
            return False


_gateway: TransitionGateway | None = None


def get_gateway() -> TransitionGateway:
    """Gateway over the process-wide state manager."""
    global _gateway
    from karaoke.services.state_manager import get_state_manager

    manager = get_state_manager()
    if _gateway is None or _gateway._manager is not manager:
        _gateway = TransitionGateway(manager)
    return _gateway
