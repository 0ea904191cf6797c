"""Core module for agentgate."""

from agentgate.core.cancellation import CancellationToken
from agentgate.core.config import ConfigManager, load_config
from agentgate.core.confirmation import ConfirmationGate
from agentgate.core.controller import IntakeController
from agentgate.core.engine import MAX_TOOL_ROUNDS, AgentEngine
from agentgate.core.evaluator import EvaluatorLoop
from agentgate.core.executor import ToolExecutor
from agentgate.core.gateway import Gateway, get_gateway, reset_gateway
from agentgate.core.llm import ContextOverflowError, LLMClient, LLMError
from agentgate.core.registry import ToolRegistry
from agentgate.core.session_manager import AuthorizationPendingError, RemoteErrorKind, RemoteSessionManager
from agentgate.core.threads import ThreadStore
from agentgate.core.tools import ChatTool, FunctionTool, ToolContext
from agentgate.core.transport import CollectingTransport, ConsoleTransport, MessagingTransport

__all__ = [
    "MAX_TOOL_ROUNDS",
    "AgentEngine",
    "AuthorizationPendingError",
    "CancellationToken",
    "ChatTool",
    "CollectingTransport",
    "ConfigManager",
    "ConfirmationGate",
    "ConsoleTransport",
    "ContextOverflowError",
    "EvaluatorLoop",
    "FunctionTool",
    "Gateway",
    "IntakeController",
    "LLMClient",
    "LLMError",
    "MessagingTransport",
    "RemoteErrorKind",
    "RemoteSessionManager",
    "ThreadStore",
    "ToolContext",
    "ToolExecutor",
    "ToolRegistry",
    "get_gateway",
    "load_config",
    "reset_gateway",
]
