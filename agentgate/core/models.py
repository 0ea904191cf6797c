"""
Shared models for the agentgate core.
"""

import json
import re
import uuid
from typing import Any

_INLINE_TOOL_CALL_RE = re.compile(r"<tool_call>\s*([\s\S]*?)\s*</tool_call>")


class _FunctionObj:
    """Lightweight function call object matching LiteLLM interface."""

    __slots__ = ("name", "arguments")

    def __init__(self, name: str, arguments: str):
        self.name = name
        self.arguments = arguments


class ToolCallObj:
    """
    Lightweight wrapper matching the LiteLLM tool_call interface.

    Used for tool calls recovered from inline ``<tool_call>`` tags and for
    batches replayed through the confirmation gate.
    """

    __slots__ = ("id", "type", "function")

    def __init__(self, id: str, name: str, arguments: str):
        self.id = id
        self.type = "function"
        self.function = _FunctionObj(name, arguments)

    @classmethod
    def from_any(cls, tool_call: Any) -> "ToolCallObj":
        if isinstance(tool_call, ToolCallObj):
            return tool_call
        if isinstance(tool_call, dict):
            function = tool_call.get("function") or {}
            return cls(
                tool_call.get("id") or _new_call_id(),
                function.get("name", ""),
                _arguments_str(function.get("arguments")),
            )
        return cls(
            tool_call.id or _new_call_id(),
            tool_call.function.name,
            _arguments_str(tool_call.function.arguments),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.function.name, "arguments": self.function.arguments},
        }


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def _arguments_str(arguments: Any) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        return arguments or "{}"
    return json.dumps(arguments)


def parse_inline_tool_calls(content: str | None) -> tuple[list[ToolCallObj], str]:
    """
    Extract tool calls embedded as ``<tool_call>{json}</tool_call>`` tags.

    Some models emit calls as text when the provider lacks structured
    function calling.

    Returns:
        (tool_calls, remaining_content). Unparseable tags are left in the text.
    """
    if not content or "<tool_call>" not in content:
        return [], content or ""

    calls: list[ToolCallObj] = []

    def _take(match: re.Match) -> str:
        try:
            data = json.loads(match.group(1))
        except json.JSONDecodeError:
            return match.group(0)
        if not isinstance(data, dict) or not data.get("name"):
            return match.group(0)
        calls.append(
            ToolCallObj(
                data.get("id") or _new_call_id(),
                data["name"],
                _arguments_str(data.get("arguments", data.get("parameters"))),
            )
        )
        return ""

    remaining = _INLINE_TOOL_CALL_RE.sub(_take, content).strip()
    return calls, remaining
