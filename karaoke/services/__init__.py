"""Services: persistence adapter, live instance registry, gateway, queue bookkeeping."""
from __future__ import annotations

from karaoke.services.gateway import TransitionGateway, TransitionResult, get_gateway
from karaoke.services.repository import QueueRepository, SqlQueueRepository
from karaoke.services.state_manager import (
    MachineState,
    StateManager,
    get_state_manager,
    reset_state_manager,
    set_state_manager,
)

__all__ = [
    "MachineState",
    "QueueRepository",
    "SqlQueueRepository",
    "StateManager",
    "TransitionGateway",
    "TransitionResult",
    "get_gateway",
    "get_state_manager",
    "reset_state_manager",
    "set_state_manager",
]
