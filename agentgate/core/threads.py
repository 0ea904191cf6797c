"""
Process-wide store of conversation threads.

Each conversation id maps to one ConversationThread. There is no lock:
the turn currently executing for a conversation owns its thread, and the
intake controller's cancellation protocol stands in for mutual exclusion.
"""

from __future__ import annotations

import logging
from typing import Any

from agentgate.models.chat_config import ChatConfig
from agentgate.models.message import InboundMessage
from agentgate.models.thread import ConversationThread

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20
RAW_LOG_LIMIT = 20


def trim_messages(messages: list[dict[str, Any]], limit: int) -> list[dict[str, Any]]:
    """
    Keep the last ``limit`` entries, never starting with a tool-role entry.
    """
    trimmed = messages[-limit:] if limit > 0 else []
    while trimmed and trimmed[0].get("role") == "tool":
        trimmed = trimmed[1:]
    return trimmed


class ThreadStore:
    """Keyed map of conversation id to thread, created on first access."""

    def __init__(self):
        self._threads: dict[str, ConversationThread] = {}

    def get(self, conversation_id: str) -> ConversationThread | None:
        return self._threads.get(conversation_id)

    def get_or_create(self, conversation_id: str) -> ConversationThread:
        thread = self._threads.get(conversation_id)
        if thread is None:
            thread = ConversationThread(id=conversation_id)
            self._threads[conversation_id] = thread
            logger.debug("[chat %s] thread created", conversation_id)
        return thread

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._threads

    def __len__(self) -> int:
        return len(self._threads)

    def record_inbound(self, thread: ConversationThread, message: InboundMessage, chat_config: ChatConfig) -> int:
        """
        Log a raw inbound message and return its generation number.

        Clears the context window first when the chat's idle timeout elapsed
        since the previous message.
        """
        self.forget_on_timeout(thread, chat_config, message.date)
        thread.msgs.append(message)
        thread.msgs = thread.msgs[-RAW_LOG_LIMIT:]
        thread.inbound_count += 1
        return thread.inbound_count

    def append(self, thread: ConversationThread, entry: dict[str, Any], limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        """Append a role-tagged entry and trim the window."""
        thread.messages.append(entry)
        thread.messages = trim_messages(thread.messages, limit)

    def add_user_message(
        self,
        thread: ConversationThread,
        text: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        name: str | None = None,
    ) -> None:
        entry: dict[str, Any] = {"role": "user", "content": text}
        if name:
            entry["name"] = name
        self.append(thread, entry, limit)

    def add_answer(self, thread: ConversationThread, content: str, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.append(thread, {"role": "assistant", "content": content}, limit)

    def forget(self, conversation_id: str) -> None:
        thread = self._threads.get(conversation_id)
        if thread is not None:
            thread.clear()
            logger.info("[chat %s] history cleared", conversation_id)

    def forget_on_timeout(self, thread: ConversationThread, chat_config: ChatConfig, now: float) -> bool:
        """
        Clear the thread if the previous message is older than the chat's forget_timeout.

        Returns:
            True if the history was cleared
        """
        timeout = chat_config.chat_params.forget_timeout
        last = thread.last_message
        if not timeout or last is None or not thread.messages:
            return False
        if now - last.date <= timeout:
            return False
        thread.clear()
        logger.info("[chat %s] history cleared after %.0fs idle", thread.id, now - last.date)
        return True
