"""
The tool-calling loop.

Drives "ask model -> execute requested tools -> feed results back" until
the model answers in plain text. After MAX_TOOL_ROUNDS rounds the tool
schema is withheld so the model has to answer.
"""

from __future__ import annotations

import json
import logging
import os
from typing import TYPE_CHECKING, Any, Callable

from agentgate.core.builtin_tools import FORGET_TOOL_NAME
from agentgate.core.cancellation import CancellationToken
from agentgate.core.confirmation import apply_confirmation_override
from agentgate.core.executor import CANCELLED_MESSAGE, ToolExecutor
from agentgate.core.llm import LLMClient
from agentgate.core.messages import build_messages, get_system_message
from agentgate.core.models import ToolCallObj, parse_inline_tool_calls
from agentgate.core.registry import ToolRegistry, tool_prompts, tool_schemas, tool_system_messages
from agentgate.core.threads import ThreadStore
from agentgate.core.tools import ToolContext, ToolInputError, parse_arguments
from agentgate.models.answer import AnswerResult
from agentgate.models.chat_config import DEFAULT_MODEL, ChatConfig, GatewayConfig
from agentgate.models.thread import ConversationThread
from agentgate.models.tool_result import ToolResponse

if TYPE_CHECKING:
    from agentgate.core.evaluator import EvaluatorLoop
    from agentgate.core.transport import MessagingTransport

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 6
NO_ANSWER_MESSAGE = "I could not finish that request. Please try again."


class AgentEngine:
    """
    Answer pipeline shared by the intake controller, the HTTP API and
    agent-as-tool proxies.
    """

    def __init__(
        self,
        config: GatewayConfig,
        threads: ThreadStore,
        registry: ToolRegistry,
        executor: ToolExecutor | None = None,
        llm_factory: Callable[..., LLMClient] = LLMClient,
    ):
        """
        Args:
            config: Gateway configuration (chats, model aliases)
            threads: Conversation store
            registry: Tool registry used to resolve each chat's tools
            executor: Tool batch executor (owns the confirmation gate)
            llm_factory: Builds the completion client for a model
        """
        self.config = config
        self.threads = threads
        self.registry = registry
        self.executor = executor or ToolExecutor()
        self.llm_factory = llm_factory
        self.evaluator: "EvaluatorLoop | None" = None

    def client_for(self, chat_config: ChatConfig, thread: ConversationThread | None = None) -> LLMClient:
        """
        Resolve the completion client for a chat.

        A named model alias wins, then the thread's override, then the
        chat's own completion params, then the default model.
        """
        params = chat_config.completion_params
        overrides = thread.completion_params if thread is not None else None
        named = self.config.get_model(chat_config.model) if chat_config.model else None

        if named is not None:
            model = named.model
        else:
            model = (overrides.model if overrides else None) or params.model or DEFAULT_MODEL

        temperature = overrides.temperature if overrides and overrides.temperature is not None else params.temperature
        max_tokens = overrides.max_tokens if overrides and overrides.max_tokens is not None else params.max_tokens

        return self.llm_factory(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            api_base=named.api_base if named else None,
            api_key=os.environ.get(named.api_key_env) if named and named.api_key_env else None,
            fallback_models=named.fallback_models if named else None,
        )

    async def answer(
        self,
        chat_config: ChatConfig,
        thread: ConversationThread,
        text: str,
        *,
        cancel_token: CancellationToken | None = None,
        transport: "MessagingTransport | None" = None,
        user_id: str | None = None,
        username: str | None = None,
        evaluate: bool = True,
        record_user: bool = True,
    ) -> AnswerResult:
        """
        Full pipeline for one user message: record it, run the loop, run evaluators.

        Args:
            chat_config: Chat to answer as
            thread: Conversation thread (mutated)
            text: User message text
            cancel_token: Shared abort signal for this turn
            transport: Where side messages (tool summaries, documents) go
            user_id: Requester, for confirmation and agent access checks
            username: Optional author name stored on the user entry
            evaluate: Run the chat's evaluators afterwards
            record_user: Append ``text`` to the thread first
        """
        token = cancel_token or CancellationToken()
        text, chat_config = apply_confirmation_override(text, chat_config)
        if record_user:
            self.threads.add_user_message(thread, text, chat_config.chat_params.history_limit, name=username)
            logger.info("[chat %s] user: %s", thread.id, text[:500])

        result = await self.request_answer(
            chat_config, thread, cancel_token=token, transport=transport, user_id=user_id
        )
        if result.aborted or result.cancelled or token.cancelled:
            return result if not token.cancelled else AnswerResult.aborted_result(result.rounds)

        if evaluate and chat_config.evaluators and self.evaluator is not None:
            result = await self.evaluator.run(
                chat_config, thread, text, result, cancel_token=token, transport=transport, user_id=user_id
            )
        return result

    async def request_answer(
        self,
        chat_config: ChatConfig,
        thread: ConversationThread,
        *,
        cancel_token: CancellationToken | None = None,
        transport: "MessagingTransport | None" = None,
        user_id: str | None = None,
    ) -> AnswerResult:
        """
        Run the tool-calling loop over the thread as it stands.

        Returns:
            AnswerResult; ``aborted`` when the token fired, ``cancelled``
            when the user rejected a tool batch.
        """
        token = cancel_token or CancellationToken()
        ctx = ToolContext(chat_config=chat_config, thread=thread, cancel_token=token, transport=transport, user_id=user_id)

        tools = await self.registry.resolve_chat_tools(chat_config, thread, user_id)
        if token.cancelled:
            return AnswerResult.aborted_result()
        tool_map = {tool.name: tool for tool in tools}
        schemas = tool_schemas(tools)

        if thread.next_system_message:
            system_message = thread.next_system_message
            thread.next_system_message = None
        else:
            system_message = get_system_message(chat_config, tool_system_messages(tools, ctx), tool_prompts(tools, ctx))

        client = self.client_for(chat_config, thread)
        limit = chat_config.chat_params.history_limit
        tool_used = False
        rounds = 0

        while True:
            rounds += 1
            offer_tools = bool(schemas) and rounds <= MAX_TOOL_ROUNDS
            messages = build_messages(thread, system_message, limit)

            response = await client.achat(messages, schemas if offer_tools else None, cancel_token=token)
            if response is None or token.cancelled:
                logger.info("[chat %s] generation aborted", thread.id)
                return AnswerResult.aborted_result(rounds)

            message = response.choices[0].message
            content = message.content or ""
            tool_calls = [ToolCallObj.from_any(tc) for tc in message.tool_calls or []]
            if not tool_calls:
                tool_calls, content = parse_inline_tool_calls(content)

            if not tool_calls or not offer_tools:
                if not content and tool_calls:
                    content = NO_ANSWER_MESSAGE
                return self._finish(chat_config, thread, content, tool_used, rounds)

            results = await self.executor.execute(tool_calls, tool_map, ctx)
            if token.cancelled:
                return AnswerResult.aborted_result(rounds)

            if results and results[0].cancelled:
                self._narrate_cancellation(thread, results[0], limit)
                return AnswerResult(content=results[0].text or CANCELLED_MESSAGE, cancelled=True, rounds=rounds)

            tool_used = True
            forget = self._forget_answer(tool_calls, results, tool_map)
            if forget is not None:
                thread.clear()
                logger.info("[chat %s] answer: %s", thread.id, forget)
                return AnswerResult(content=forget, tool_used=True, rounds=rounds)

            entries: list[dict[str, Any]] = [
                {"role": "assistant", "content": content or None, "tool_calls": [tc.to_dict() for tc in tool_calls]}
            ]
            for call, result in zip(tool_calls, results):
                entries.append({"role": "tool", "tool_call_id": call.id, "content": result.to_llm_content()})
            for entry in entries:
                self.threads.append(thread, entry, limit)

    def _finish(
        self,
        chat_config: ChatConfig,
        thread: ConversationThread,
        content: str,
        tool_used: bool,
        rounds: int,
    ) -> AnswerResult:
        if content:
            self.threads.add_answer(thread, content, chat_config.chat_params.history_limit)
        logger.info("[chat %s] answer: %s", thread.id, content[:500])
        if chat_config.chat_params.memoryless and tool_used:
            thread.clear()
            logger.debug("[chat %s] memoryless chat, history cleared", thread.id)
        return AnswerResult(content=content, tool_used=tool_used, rounds=rounds)

    def _narrate_cancellation(self, thread: ConversationThread, result: ToolResponse, limit: int) -> None:
        """Record a rejected batch as notes, never as tool results."""
        self.threads.append(thread, {"role": "assistant", "content": "Tool calls were proposed."}, limit)
        for payload in result.cancelled_calls:
            note = f"tool call cancelled: {json.dumps(payload, ensure_ascii=False)}"
            self.threads.append(thread, {"role": "system", "content": note}, limit)

    @staticmethod
    def _forget_answer(
        tool_calls: list[ToolCallObj], results: list[ToolResponse], tool_map: dict[str, Any]
    ) -> str | None:
        if FORGET_TOOL_NAME not in tool_map:
            return None
        for call, result in zip(tool_calls, results):
            if call.function.name != FORGET_TOOL_NAME:
                continue
            try:
                message = parse_arguments(call.function.arguments).get("message")
            except ToolInputError:
                message = None
            return message or result.text
        return None
