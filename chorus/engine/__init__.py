"""Agent turn engine: spawn the agent CLI, decode its stream, record messages."""
from .models import (
    AgentStatus,
    ConversationMessage,
    MessageType,
    PermissionMode,
    SessionState,
    TurnRequest,
    TurnSettings,
    TurnState,
)
from .config import EngineConfig
from .errors import (
    AgentBinaryNotFoundError,
    AgentProcessError,
    AgentSpawnError,
    InvalidTransitionError,
    OrchestrationError,
    ProtocolDecodeError,
)
from .arguments import build_agent_args
from .session_tracker import SessionDecision, SessionTracker, SessionUpdate
from .protocol import StreamDecoder, decode_line
from .aggregator import MessageAggregator
from .agent_manager import AgentManager, TurnHandle

__all__ = [
    # Manager
    "AgentManager",
    "TurnHandle",
    "MessageAggregator",
    # Models
    "AgentStatus",
    "ConversationMessage",
    "MessageType",
    "PermissionMode",
    "SessionState",
    "TurnRequest",
    "TurnSettings",
    "TurnState",
    # Config
    "EngineConfig",
    # Components
    "build_agent_args",
    "SessionDecision",
    "SessionTracker",
    "SessionUpdate",
    "StreamDecoder",
    "decode_line",
    # Errors
    "AgentBinaryNotFoundError",
    "AgentProcessError",
    "AgentSpawnError",
    "InvalidTransitionError",
    "OrchestrationError",
    "ProtocolDecodeError",
]
