"""Session state machine.

Two orthogonal fields, each with its own transition table.
Invalid transitions raise ValueError rather than silently
proceeding. Re-asserting the current value is always allowed.

status:

    IDLE ──> RUNNING ──┬──> IDLE
      │                └──> ERROR ──> RUNNING (retry)
      └──> ERROR (failed git operation)      └──> IDLE (later success)

operation:

    (created) CREATING ──> NONE
    NONE ──> SWITCHING | MERGING | PUSHING ──> NONE

A successful merge has no terminal operation state: the session
is removed from the registry instead.
"""
from __future__ import annotations

from .models import SessionOperation, SessionStatus

VALID_STATUS_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.IDLE: {
        SessionStatus.RUNNING,
        SessionStatus.ERROR,
    },
    SessionStatus.RUNNING: {
        SessionStatus.IDLE,
        SessionStatus.ERROR,
    },
    SessionStatus.ERROR: {
        SessionStatus.RUNNING,
        SessionStatus.IDLE,
    },
}

VALID_OPERATION_TRANSITIONS: dict[SessionOperation, set[SessionOperation]] = {
    SessionOperation.NONE: {
        SessionOperation.SWITCHING,
        SessionOperation.MERGING,
        SessionOperation.PUSHING,
    },
    SessionOperation.CREATING: {SessionOperation.NONE},
    SessionOperation.SWITCHING: {SessionOperation.NONE},
    SessionOperation.MERGING: {SessionOperation.NONE},
    SessionOperation.PUSHING: {SessionOperation.NONE},
}


def validate_status_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a status transition. Raises ValueError if invalid."""
    if current == target:
        return
    allowed = VALID_STATUS_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none"
        raise ValueError(
            f"Invalid status transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def validate_operation_transition(
    current: SessionOperation, target: SessionOperation,
) -> None:
    """Validate an operation transition. Raises ValueError if invalid."""
    if current == target:
        return
    allowed = VALID_OPERATION_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none"
        raise ValueError(
            f"Invalid operation transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
