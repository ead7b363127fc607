"""Tests for the turn state machine."""
from __future__ import annotations

import pytest

from chorus.engine.errors import InvalidTransitionError
from chorus.engine.lifecycle import TERMINAL_STATES, is_terminal, validate_transition
from chorus.engine.models import TurnState


def test_happy_path_transitions():
    validate_transition(TurnState.IDLE, TurnState.SPAWNING)
    validate_transition(TurnState.SPAWNING, TurnState.STREAMING)
    validate_transition(TurnState.STREAMING, TurnState.EXITED)


def test_spawn_failure_and_stop_during_spawn():
    validate_transition(TurnState.SPAWNING, TurnState.ERRORED)
    validate_transition(TurnState.SPAWNING, TurnState.KILLED)


@pytest.mark.parametrize("state", [TurnState.EXITED, TurnState.ERRORED, TurnState.KILLED])
def test_terminal_states_reject_everything(state):
    assert is_terminal(state)
    with pytest.raises(InvalidTransitionError):
        validate_transition(state, TurnState.STREAMING)


def test_invalid_transition_is_a_value_error():
    with pytest.raises(ValueError, match="idle -> streaming"):
        validate_transition(TurnState.IDLE, TurnState.STREAMING)


def test_terminal_state_set():
    assert TERMINAL_STATES == {TurnState.EXITED, TurnState.ERRORED, TurnState.KILLED}
