"""
Confirmation gate in front of tool execution.

A gate request becomes a PendingDecision keyed by a one-time token. The
transport shows approve/reject actions carrying that token; whichever
action fires later resolves the record, and the suspended turn resumes.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any

from agentgate.core.cancellation import CancellationToken
from agentgate.models.chat_config import ChatConfig

logger = logging.getLogger(__name__)

CONFIRM_QUESTION = "Do you want to proceed?"

_NOCONFIRM_RE = re.compile(r"\bnoconfirm\b", re.IGNORECASE)
_CONFIRM_RE = re.compile(r"\bconfirm\b", re.IGNORECASE)


@dataclass
class PendingDecision:
    """One outstanding approve/reject decision."""

    token: str
    conversation_id: str
    user_id: str | None
    text: str
    calls: list[dict[str, Any]]
    created_at: float = field(default_factory=time.time)
    approved: bool | None = None
    _event: asyncio.Event | None = field(default=None, repr=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, repr=False)

    @property
    def settled(self) -> bool:
        return self.approved is not None

    def _settle(self, approved: bool) -> None:
        self.approved = approved
        if self._event is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(self._event.set)


class ConfirmationGate:
    """Registry of pending decisions."""

    def __init__(self):
        self._pending: dict[str, PendingDecision] = {}

    def open(
        self,
        conversation_id: str,
        user_id: str | None,
        text: str,
        calls: list[dict[str, Any]],
    ) -> PendingDecision:
        decision = PendingDecision(
            token=secrets.token_urlsafe(16),
            conversation_id=conversation_id,
            user_id=str(user_id) if user_id is not None else None,
            text=text,
            calls=calls,
        )
        self._pending[decision.token] = decision
        return decision

    def get(self, token: str) -> PendingDecision | None:
        return self._pending.get(token)

    def pending(self, conversation_id: str | None = None) -> list[PendingDecision]:
        return [d for d in self._pending.values() if conversation_id is None or d.conversation_id == conversation_id]

    def resolve(self, token: str, user_id: str | None, approved: bool) -> bool:
        """
        Apply an approve/reject action.

        Only the user who triggered the request may decide.

        Returns:
            True if the action was honored
        """
        decision = self._pending.get(token)
        if decision is None or decision.settled:
            return False
        if decision.user_id is not None and str(user_id) != decision.user_id:
            logger.warning(
                "[chat %s] ignoring decision from user %s (requested by %s)",
                decision.conversation_id,
                user_id,
                decision.user_id,
            )
            return False
        decision._settle(approved)
        logger.info("[chat %s] tools %s", decision.conversation_id, "approved" if approved else "rejected")
        return True

    async def wait(
        self,
        decision: PendingDecision,
        cancel_token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> bool | None:
        """
        Suspend until the decision is resolved.

        Returns:
            True/False for approve/reject, None if the turn was aborted or timed out.
        """
        try:
            if decision.settled:
                return decision.approved
            decision._loop = asyncio.get_running_loop()
            decision._event = asyncio.Event()
            waiter = asyncio.wait_for(decision._event.wait(), timeout)
            token = cancel_token or CancellationToken()
            try:
                done = await token.run(waiter, default=False)
            except asyncio.TimeoutError:
                logger.info("[chat %s] confirmation timed out", decision.conversation_id)
                return None
            if done is False:
                return None
            return decision.approved
        finally:
            self._pending.pop(decision.token, None)

    async def request(self, ctx: Any, text: str, calls: list[dict[str, Any]]) -> bool | None:
        """Ask the requester through the transport and wait for the answer."""
        decision = self.open(ctx.thread.id, ctx.user_id, text, calls)
        if ctx.transport is None:
            logger.warning("[chat %s] confirmation required but no transport attached", ctx.thread.id)
            self._pending.pop(decision.token, None)
            return False
        await ctx.transport.request_confirmation(ctx.thread.id, text, decision.token)
        return await self.wait(decision, ctx.cancel_token)


def apply_confirmation_override(text: str, chat_config: ChatConfig) -> tuple[str, ChatConfig]:
    """
    Honor a one-shot ``noconfirm``/``confirm`` keyword in the message text.

    Returns the text without the keyword and, if a keyword was present, a
    copy of the chat config with confirmation switched for this turn only.
    """
    if _NOCONFIRM_RE.search(text):
        value = False
        text = _NOCONFIRM_RE.sub("", text, count=1)
    elif _CONFIRM_RE.search(text):
        value = True
        text = _CONFIRM_RE.sub("", text, count=1)
    else:
        return text, chat_config

    params = chat_config.chat_params.model_copy(update={"confirmation": value})
    return text.strip(), chat_config.model_copy(update={"chat_params": params})
