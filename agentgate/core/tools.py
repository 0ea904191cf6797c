"""
Tool contract shared by every tool variant.

Three variants exist: built-in static functions, agent-as-tool proxies and
remote session-resolved tools. The variant is fixed when the tool is
registered; the loop only sees ChatTool.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from agentgate.core.cancellation import CancellationToken
from agentgate.models.chat_config import ChatConfig
from agentgate.models.thread import ConversationThread
from agentgate.models.tool_result import ToolResponse

if TYPE_CHECKING:
    from agentgate.core.transport import MessagingTransport

logger = logging.getLogger(__name__)

ToolCallable = Callable[[str], Awaitable[ToolResponse]]


class ToolKind(str, Enum):
    STATIC = "static"
    AGENT = "agent"
    REMOTE = "remote"


class ToolInputError(ValueError):
    """Arguments could not be decoded or failed validation."""


@dataclass
class ToolContext:
    """What a tool callable is bound to for one turn."""

    chat_config: ChatConfig
    thread: ConversationThread
    cancel_token: CancellationToken
    transport: "MessagingTransport | None" = None
    user_id: str | None = None


class ChatTool(ABC):
    """A model-facing tool."""

    kind: ToolKind = ToolKind.STATIC

    def __init__(self, name: str, description: str = "", parameters: dict[str, Any] | None = None):
        self.name = name
        self.description = description or name
        self.parameters = parameters or {"type": "object", "properties": {}}

    def schema(self) -> dict[str, Any]:
        """OpenAI function-calling definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @abstractmethod
    def bind(self, ctx: ToolContext) -> ToolCallable:
        """Return a callable taking the JSON argument string."""

    def system_message(self, ctx: ToolContext) -> str | None:
        return None

    def prompt_append(self, ctx: ToolContext) -> str | None:
        return None

    def options_string(self, arguments: dict[str, Any]) -> str | None:
        """Custom human-readable call summary, or None for the default."""
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} ({self.kind.value})>"


class FunctionTool(ChatTool):
    """Static tool backed by an async Python function ``func(args, ctx)``."""

    kind = ToolKind.STATIC

    def __init__(
        self,
        name: str,
        func: Callable[[dict[str, Any], ToolContext], Awaitable[ToolResponse | str]],
        description: str = "",
        parameters: dict[str, Any] | None = None,
        system_message: str | None = None,
        prompt_append: str | None = None,
        summary: Callable[[dict[str, Any]], str] | None = None,
    ):
        super().__init__(name, description, parameters)
        self.func = func
        self._system_message = system_message
        self._prompt_append = prompt_append
        self._summary = summary

    def bind(self, ctx: ToolContext) -> ToolCallable:
        async def call(arguments: str) -> ToolResponse:
            result = await self.func(parse_arguments(arguments), ctx)
            if isinstance(result, ToolResponse):
                return result
            return ToolResponse.from_text("" if result is None else str(result))

        return call

    def system_message(self, ctx: ToolContext) -> str | None:
        return self._system_message

    def prompt_append(self, ctx: ToolContext) -> str | None:
        return self._prompt_append

    def options_string(self, arguments: dict[str, Any]) -> str | None:
        return self._summary(arguments) if self._summary else None


def parse_arguments(arguments: str | dict[str, Any] | None) -> dict[str, Any]:
    """Decode a JSON argument payload into a dict."""
    if arguments is None or arguments == "":
        return {}
    if isinstance(arguments, dict):
        return arguments
    try:
        data = json.loads(arguments)
    except json.JSONDecodeError as e:
        raise ToolInputError(f"Invalid JSON arguments: {e}") from e
    if not isinstance(data, dict):
        raise ToolInputError("Tool arguments must be a JSON object")
    return data


def remove_nulls_params(arguments: str) -> str:
    """Drop top-level keys whose value is JSON null."""
    data = parse_arguments(arguments)
    return json.dumps({k: v for k, v in data.items() if v is not None})


def prettify_key(key: str) -> str:
    if not key:
        return ""
    normalized = re.sub(r"([a-z])([A-Z])", r"\1 \2", re.sub(r"[_-]", " ", key))
    return normalized[:1].upper() + normalized[1:]


def prettify_key_value(key: str, value: Any, level: int = 0) -> str:
    """Render one argument as a markdown bullet, recursing into containers."""
    prefix = "  " * level + "-"
    label = prettify_key(key)
    if isinstance(value, (list, tuple)):
        if not value:
            return f"{prefix} *{label}:* (empty)"
        lines = [f"{prefix} *{label}:*"]
        lines.extend(prettify_key_value(str(i), v, level + 1) for i, v in enumerate(value))
        return "\n".join(lines)
    if isinstance(value, dict):
        if not value:
            return f"{prefix} *{label}:* (empty)"
        lines = [f"{prefix} *{label}:*"]
        lines.extend(prettify_key_value(k, v, level + 1) for k, v in value.items())
        return "\n".join(lines)
    return f"{prefix} *{label}:* {value}"


def format_tool_params(tool: ChatTool, name: str, arguments: str) -> str:
    """Human-readable summary of one proposed call."""
    try:
        params = parse_arguments(arguments)
    except ToolInputError:
        return f"`{name}:` {arguments}"

    custom = tool.options_string(params)
    if custom:
        return custom

    header = ("Agent: " if tool.kind is ToolKind.AGENT else "") + re.sub(r"[_-]", " ", name)
    return "\n".join([f"`{header}:`"] + [prettify_key_value(k, v) for k, v in params.items()])
