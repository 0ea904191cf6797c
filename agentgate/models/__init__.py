"""Data models for agentgate."""

from agentgate.models.chat_config import (
    AgentToolSpec,
    ChatConfig,
    ChatNotFoundError,
    ChatParams,
    CompletionParams,
    ConfigError,
    EvaluatorSpec,
    GatewayConfig,
    RemoteEndpointConfig,
    load_gateway_config,
)
from agentgate.models.evaluation import EvaluationVerdict
from agentgate.models.message import InboundMessage
from agentgate.models.thread import ConversationThread
from agentgate.models.tool_result import ToolResponse

__all__ = [
    "AgentToolSpec",
    "ChatConfig",
    "ChatNotFoundError",
    "ChatParams",
    "CompletionParams",
    "ConfigError",
    "ConversationThread",
    "EvaluationVerdict",
    "EvaluatorSpec",
    "GatewayConfig",
    "InboundMessage",
    "RemoteEndpointConfig",
    "ToolResponse",
    "load_gateway_config",
]
