"""Exception hierarchy for the agent turn engine.

Every turn-fatal failure maps to one of these. AgentManager catches
them at the turn boundary and turns them into error messages, so a
failing turn never affects other agents.
"""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base exception for all engine errors."""


class AgentBinaryNotFoundError(OrchestrationError):
    """The agent CLI could not be located on PATH."""
    def __init__(self, command: str):
        self.command = command
        super().__init__(f"Agent CLI '{command}' not found on PATH")


class AgentSpawnError(OrchestrationError):
    """Failed to start the agent subprocess."""
    def __init__(self, agent_id: str, reason: str):
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"Failed to spawn agent {agent_id}: {reason}")


class AgentProcessError(OrchestrationError):
    """OS-level failure while the agent subprocess was running."""
    def __init__(self, agent_id: str, reason: str):
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(reason)


class ProtocolDecodeError(OrchestrationError):
    """A stream line could not be decoded into a known protocol event.

    Never fatal: the decoder falls back to plain-text passthrough or
    drops the event.
    """
    def __init__(self, event_type: str, reason: str):
        self.event_type = event_type
        self.reason = reason
        super().__init__(f"Malformed '{event_type}' event: {reason}")


class InvalidTransitionError(OrchestrationError, ValueError):
    """A turn attempted a state transition the lifecycle forbids."""
