"""
Intake and preemption for inbound chat messages.

One turn runs per inbound message. When a newer message for the same
conversation arrives, the turn in flight is told to stop through its
cancellation token and its outcome is dropped. The latest message always
wins; nothing is merged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from agentgate.core.cancellation import CancellationToken
from agentgate.core.llm import ContextOverflowError, LLMError
from agentgate.models.answer import AnswerResult
from agentgate.models.chat_config import ChatConfig
from agentgate.models.message import InboundMessage

if TYPE_CHECKING:
    from agentgate.core.engine import AgentEngine
    from agentgate.core.transport import MessagingTransport

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Sorry, something went wrong while answering. Please try again."
OVERFLOW_NOTICE = "The conversation got too long for the model, so I cleared the history and retried your message."

DeliveryCallback = Callable[[AnswerResult], Awaitable[None] | None]


class IntakeController:
    """
    Serializes turns per conversation with single-winner preemption.

    Example:
        >>> controller = IntakeController(engine, transport)
        >>> await controller.handle(chat_config, InboundMessage(conversation_id="1", text="hi"))
    """

    def __init__(self, engine: "AgentEngine", transport: "MessagingTransport"):
        self.engine = engine
        self.transport = transport
        self._active: dict[str, CancellationToken] = {}

    def active_token(self, conversation_id: str) -> CancellationToken | None:
        return self._active.get(conversation_id)

    def cancel(self, conversation_id: str, reason: str = "cancelled") -> bool:
        """Abort the turn in flight for a conversation, if any."""
        token = self._active.get(conversation_id)
        if token is None or token.cancelled:
            return False
        token.cancel(reason)
        return True

    async def handle(
        self,
        chat_config: ChatConfig,
        message: InboundMessage,
        on_delivered: DeliveryCallback | None = None,
    ) -> AnswerResult | None:
        """
        Answer one inbound message unless a newer one supersedes it.

        Args:
            chat_config: Chat the message was sent to
            message: The inbound message
            on_delivered: Called once with the result after it was delivered

        Returns:
            The delivered result, or None when the turn was superseded
            (or the sender is not allowed to use the chat).
        """
        conversation_id = message.conversation_id
        if not chat_config.is_allowed(message.user_id):
            logger.warning("[chat %s] user %s is not allowed to use %s", conversation_id, message.user_id, chat_config.name)
            return None

        threads = self.engine.threads
        thread = threads.get_or_create(conversation_id)

        if self.cancel(conversation_id, "superseded by a newer message"):
            logger.info("[chat %s] previous generation superseded", conversation_id)
        token = CancellationToken(label=f"chat {conversation_id}")
        self._active[conversation_id] = token
        generation = threads.record_inbound(thread, message, chat_config)

        pipeline = asyncio.create_task(self._answer(chat_config, message, token))
        try:
            superseded = await token.wait(chat_config.chat_params.debounce_seconds)
            result = await pipeline
        finally:
            if self._active.get(conversation_id) is token:
                del self._active[conversation_id]

        if superseded or token.cancelled or result.aborted or thread.inbound_count != generation:
            logger.info("[chat %s] outcome discarded", conversation_id)
            return None

        if result.content:
            await self.transport.deliver_text(conversation_id, result.content)
        if on_delivered is not None:
            outcome = on_delivered(result)
            if asyncio.iscoroutine(outcome):
                await outcome
        return result

    async def _answer(self, chat_config: ChatConfig, message: InboundMessage, token: CancellationToken) -> AnswerResult:
        """Run the pipeline, turning failures into a deliverable answer."""
        conversation_id = message.conversation_id
        try:
            if not message.text:
                raise ValueError("Inbound message has no text")
            return await self._answer_with_replay(chat_config, message, token)
        except LLMError as e:
            logger.error("[chat %s] completion failed: %s", conversation_id, e)
            return AnswerResult(content=str(e))
        except Exception:
            logger.exception("[chat %s] unexpected failure", conversation_id)
            return AnswerResult(content=GENERIC_FAILURE_MESSAGE)

    async def _answer_with_replay(
        self,
        chat_config: ChatConfig,
        message: InboundMessage,
        token: CancellationToken,
    ) -> AnswerResult:
        thread = self.engine.threads.get_or_create(message.conversation_id)
        kwargs = {
            "cancel_token": token,
            "transport": self.transport,
            "user_id": message.user_id,
            "username": message.username,
        }
        try:
            return await self.engine.answer(chat_config, thread, message.text, **kwargs)
        except ContextOverflowError:
            logger.warning("[chat %s] context overflow, clearing history and replaying once", thread.id)
            self.engine.threads.forget(thread.id)
            if token.cancelled:
                return AnswerResult.aborted_result()
            await self.transport.deliver_text(thread.id, OVERFLOW_NOTICE)
            return await self.engine.answer(chat_config, thread, message.text, **kwargs)
