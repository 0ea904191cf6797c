"""
Agent-as-tool proxies.

A chat can list other chats (agents) among its tools. The model then sees
one function per agent taking a single ``input`` string; calling it runs
the target agent's whole answer pipeline on a sub-thread of the caller's
conversation, sharing the caller's cancellation token.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from agentgate.core.tools import ChatTool, ToolCallable, ToolContext, ToolInputError, ToolKind, parse_arguments
from agentgate.models.chat_config import AgentToolSpec, ChatConfig
from agentgate.models.tool_result import ToolResponse

if TYPE_CHECKING:
    from agentgate.core.cancellation import CancellationToken
    from agentgate.core.threads import ThreadStore
    from agentgate.core.transport import MessagingTransport
    from agentgate.models.answer import AnswerResult
    from agentgate.models.thread import ConversationThread

logger = logging.getLogger(__name__)


class AgentRunner(Protocol):
    async def answer(
        self,
        chat_config: ChatConfig,
        thread: "ConversationThread",
        text: str,
        *,
        cancel_token: "CancellationToken | None" = None,
        transport: "MessagingTransport | None" = None,
        user_id: str | None = None,
    ) -> "AnswerResult": ...


def sub_thread_id(conversation_id: str, agent_name: str) -> str:
    return f"{conversation_id}:{agent_name}"


class AgentTool(ChatTool):
    """Proxy that forwards the model's ``input`` to another agent."""

    kind = ToolKind.AGENT

    def __init__(self, spec: AgentToolSpec, target: ChatConfig, runner: AgentRunner, threads: "ThreadStore"):
        super().__init__(
            spec.tool_name,
            spec.description or target.description or f"Proxy tool for agent {spec.agent_name}",
            {
                "type": "object",
                "properties": {
                    "input": {
                        "type": "string",
                        "description": "Input text for the agent (task, query, etc.)",
                    },
                },
                "required": ["input"],
            },
        )
        self.spec = spec
        self.target = target
        self.runner = runner
        self.threads = threads

    def prompt_append(self, ctx: ToolContext) -> str | None:
        return self.spec.prompt_append

    def bind(self, ctx: ToolContext) -> ToolCallable:
        async def call(arguments: str) -> ToolResponse:
            agent_name = self.spec.agent_name
            try:
                text = _input_text(arguments)
                thread = self.threads.get_or_create(sub_thread_id(ctx.thread.id, agent_name))
                logger.info("[chat %s] asking agent %s: %s", ctx.thread.id, agent_name, text[:200])
                result = await self.runner.answer(
                    self.target,
                    thread,
                    text,
                    cancel_token=ctx.cancel_token,
                    transport=ctx.transport,
                    user_id=ctx.user_id,
                )
            except Exception as e:
                logger.error("[chat %s] agent %s failed: %s", ctx.thread.id, agent_name, e)
                return ToolResponse.from_text(f"Proxy tool error for agent '{agent_name}': {e}")

            if result.aborted:
                return ToolResponse.from_text("")
            if self.spec.tool_use_behavior == "stop_on_first_tool":
                if ctx.transport is not None and result.content:
                    await ctx.transport.deliver_text(ctx.thread.id, result.content)
                return ToolResponse.from_text("")
            return ToolResponse.from_text(result.content)

        return call


def _input_text(arguments: str) -> str:
    try:
        args: dict[str, Any] = parse_arguments(arguments)
    except ToolInputError:
        return arguments
    return str(args.get("input") or args.get("text") or arguments)
