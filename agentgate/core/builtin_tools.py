"""
Tools every gateway provides.
"""

from __future__ import annotations

from typing import Any

from agentgate.core.tools import FunctionTool, ToolContext

FORGET_TOOL_NAME = "forget"


async def _forget(args: dict[str, Any], ctx: ToolContext) -> str:
    ctx.thread.clear()
    return args.get("message") or "Forgot history"


def forget_tool() -> FunctionTool:
    return FunctionTool(
        FORGET_TOOL_NAME,
        _forget,
        description="Clear the conversation history. Use when the user asks to forget or start over.",
        parameters={
            "type": "object",
            "properties": {
                "message": {
                    "type": "string",
                    "description": "Reply to send to the user after forgetting",
                },
            },
        },
    )


def builtin_tools() -> list[FunctionTool]:
    return [forget_tool()]
