"""Rejection taxonomy for queue and lifecycle operations.

Every failed operation surfaces as one of these. None of them leaves a
partial state change behind: the machine snapshot, the cache and the
store all look exactly as they did before the call.
"""
from __future__ import annotations


class QueueError(Exception):
    """Base class for all rejected queue operations."""

    code: str = "queue_error"

    def to_detail(self) -> dict[str, str | None]:
        return {"error": self.code, "message": str(self)}


class NotFoundError(QueueError):
    """The entity id has no known record."""

    code = "not_found"

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind.capitalize()} {entity_id} not found")


class TransitionRejectedError(QueueError):
    """An event was refused by the entity's state machine."""

    def __init__(self, kind: str, entity_id: str, state: str, event: str, message: str):
        self.kind = kind
        self.entity_id = entity_id
        self.state = state
        self.event = event
        super().__init__(message)

    def to_detail(self) -> dict[str, str | None]:
        return {
            "error": self.code,
            "message": str(self),
            "currentState": self.state,
            "event": self.event,
        }


class InvalidTransitionError(TransitionRejectedError):
    """The event is not defined for the entity's current state."""

    code = "invalid_transition"

    def __init__(self, kind: str, entity_id: str, state: str, event: str):
        super().__init__(
            kind, entity_id, state, event,
            f"Invalid transition: {kind} {entity_id} cannot handle {event} in state {state}",
        )


class GuardRejectedError(TransitionRejectedError):
    """The event is defined for the state but its guard evaluated false."""

    code = "guard_rejected"

    def __init__(self, kind: str, entity_id: str, state: str, event: str, guard: str):
        self.guard = guard
        super().__init__(
            kind, entity_id, state, event,
            f"{event} rejected for {kind} {entity_id}: {guard} is false",
        )

    def to_detail(self) -> dict[str, str | None]:
        detail = super().to_detail()
        detail["guard"] = self.guard
        return detail


class InvalidEventDataError(QueueError, ValueError):
    """The event carried a payload the transition cannot apply."""

    code = "invalid_event_data"


class PersistenceError(QueueError):
    """The durability write failed after a transition was otherwise valid.

    The caller must not treat the transition as committed.
    """

    code = "persistence_error"

    def __init__(self, kind: str, entity_id: str, operation: str, cause: BaseException | None = None):
        self.kind = kind
        self.entity_id = entity_id
        self.operation = operation
        self.cause = cause
        reason = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to {operation} for {kind} {entity_id}{reason}")


class SessionClosedError(QueueError):
    """A song operation targeted a session that has already ended."""

    code = "session_closed"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} has ended")
