"""
Per-conversation state.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from agentgate.models.chat_config import CompletionParams
from agentgate.models.message import InboundMessage


class ConversationThread(BaseModel):
    """
    Mutable state for one conversation.

    ``messages`` is the model's context window: role-tagged dicts in the
    OpenAI chat format. ``msgs`` is the raw inbound log used for
    preemption and idle-timeout decisions.
    """

    id: str
    messages: list[dict[str, Any]] = Field(default_factory=list)
    msgs: list[InboundMessage] = Field(default_factory=list)
    completion_params: CompletionParams = Field(default_factory=CompletionParams)
    remote_sessions: set[str] = Field(default_factory=set, description="Session-scoped endpoint keys")
    next_system_message: str | None = None
    inbound_count: int = Field(0, description="Monotonic count of inbound messages")

    def clear(self) -> None:
        """Drop the context window; the raw log is kept."""
        self.messages = []
        self.next_system_message = None

    def fork(self, thread_id: str | None = None) -> "ConversationThread":
        """Independent copy for speculative work such as regeneration."""
        forked = self.model_copy(deep=True)
        if thread_id is not None:
            forked.id = thread_id
        return forked

    @property
    def last_message(self) -> InboundMessage | None:
        return self.msgs[-1] if self.msgs else None
