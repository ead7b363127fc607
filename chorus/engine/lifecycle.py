"""Turn lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidTransitionError rather than silently proceeding.

State Diagram:

    IDLE ──> SPAWNING ──┬──> STREAMING ──┬──> EXITED
                        │                ├──> ERRORED
                        └──> ERRORED     └──> KILLED

    SPAWNING ──> KILLED  (stopped before the spawn finished)
"""
from __future__ import annotations

from .errors import InvalidTransitionError
from .models import TurnState

VALID_TRANSITIONS: dict[TurnState, set[TurnState]] = {
    TurnState.IDLE: {
        TurnState.SPAWNING,
    },
    TurnState.SPAWNING: {
        TurnState.STREAMING,
        TurnState.ERRORED,
        TurnState.KILLED,
    },
    TurnState.STREAMING: {
        TurnState.EXITED,
        TurnState.ERRORED,
        TurnState.KILLED,
    },
    TurnState.EXITED: set(),
    TurnState.ERRORED: set(),
    TurnState.KILLED: set(),
}

TERMINAL_STATES = frozenset(
    state for state, targets in VALID_TRANSITIONS.items() if not targets
)


def validate_transition(current: TurnState, target: TurnState) -> None:
    """Validate a state transition. Raises InvalidTransitionError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise InvalidTransitionError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def is_terminal(state: TurnState) -> bool:
    """True when no further transitions are possible."""
    return state in TERMINAL_STATES
