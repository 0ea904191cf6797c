"""
Builds the message list sent to the completion service.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from agentgate.models.chat_config import ChatConfig
from agentgate.models.thread import ConversationThread

DEFAULT_SYSTEM_MESSAGE = "You are using functions to answer the questions. Current date: {date}"

_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]+")


def sanitize_name(name: str) -> str:
    return _NAME_RE.sub("_", name)[:64]


def get_system_message(
    chat_config: ChatConfig,
    tool_system_messages: list[str] | None = None,
    tool_prompts: list[str] | None = None,
    now: datetime | None = None,
) -> str:
    """
    Compose the system prompt for a chat.

    Tool-contributed system messages and prompt appendices are added after
    the chat's own prompt. ``{date}`` is replaced with the current time.
    """
    parts = [chat_config.system_message or DEFAULT_SYSTEM_MESSAGE]
    parts.extend(m for m in tool_system_messages or [] if m)
    parts.extend(p for p in tool_prompts or [] if p)
    text = "\n\n".join(parts)
    date = (now or datetime.now()).isoformat(timespec="seconds")
    return text.replace("{date}", date)


def build_messages(
    thread: ConversationThread,
    system_message: str,
    limit: int,
) -> list[dict[str, Any]]:
    """
    Render the thread as a completion request body.

    Takes the last ``limit`` entries and drops anything that would make the
    history structurally invalid: tool results without a preceding call,
    and assistant calls whose results are missing.
    """
    history = thread.messages[-limit:] if limit > 0 else []

    called: set[str] = set()
    answered: set[str] = set()
    for entry in history:
        if entry.get("role") == "assistant":
            called.update(tc["id"] for tc in entry.get("tool_calls") or [])
        elif entry.get("role") == "tool" and entry.get("tool_call_id") in called:
            answered.add(entry["tool_call_id"])

    messages: list[dict[str, Any]] = [{"role": "system", "content": system_message}]
    for entry in history:
        role = entry.get("role")
        if role == "tool" and entry.get("tool_call_id") not in answered:
            continue
        if role == "assistant" and entry.get("tool_calls"):
            if any(tc["id"] not in answered for tc in entry["tool_calls"]):
                continue
        if entry.get("name"):
            entry = {**entry, "name": sanitize_name(entry["name"])}
        messages.append(entry)
    return messages
