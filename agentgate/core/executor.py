"""
Executes one batch of model-requested tool calls.

Resolves each call against the chat's tools, asks the confirmation gate
when the chat requires it, runs approved calls concurrently and turns
per-call failures into text results for the model.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from agentgate.core.confirmation import CONFIRM_QUESTION, ConfirmationGate
from agentgate.core.models import ToolCallObj
from agentgate.core.tools import (
    ChatTool,
    ToolContext,
    ToolInputError,
    ToolKind,
    format_tool_params,
    remove_nulls_params,
)
from agentgate.models.tool_result import ToolResponse, document_name, timed_execution

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Tool execution canceled."
SHOW_RESULT_LIMIT = 8000


def _is_invalid_parameter_error(error: Exception) -> bool:
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    return status == 400 and "Invalid parameter" in str(error)


class ToolExecutor:
    """Runs tool-call batches for the tool-calling loop."""

    def __init__(self, gate: ConfirmationGate | None = None):
        self.gate = gate or ConfirmationGate()

    async def execute(
        self,
        tool_calls: list[ToolCallObj],
        tools: dict[str, ChatTool],
        ctx: ToolContext,
    ) -> list[ToolResponse]:
        """
        Execute a batch of tool calls.

        Args:
            tool_calls: Calls requested by the model
            tools: Tools resolved for this chat, by name
            ctx: Turn context the tools are bound to

        Returns:
            One response per call in order, or a single cancelled response
            carrying the original call payloads when the batch was rejected.
        """
        params = ctx.chat_config.chat_params
        prepared: list[tuple[ToolCallObj, ChatTool | None, str, str]] = []
        for call in tool_calls:
            tool = tools.get(call.function.name)
            arguments = call.function.arguments
            if tool is not None:
                try:
                    arguments = remove_nulls_params(arguments)
                except ToolInputError:
                    pass
                summary = format_tool_params(tool, call.function.name, arguments)
            else:
                summary = f"`{call.function.name}:` (not found)"
            prepared.append((call, tool, arguments, summary))

        if params.confirmation:
            return await self._confirm_and_execute(tool_calls, tools, ctx, [p[3] for p in prepared])

        if params.show_tool_messages and ctx.transport is not None:
            for _, tool, _, summary in prepared:
                if tool is not None:
                    await ctx.transport.deliver_text(ctx.thread.id, summary)

        return list(await asyncio.gather(*(self._run_one(call, tool, args, ctx) for call, tool, args, _ in prepared)))

    async def _confirm_and_execute(
        self,
        tool_calls: list[ToolCallObj],
        tools: dict[str, ChatTool],
        ctx: ToolContext,
        summaries: list[str],
    ) -> list[ToolResponse]:
        text = "\n\n".join(summaries) + f"\n\n{CONFIRM_QUESTION}"
        payloads = [tc.to_dict() for tc in tool_calls]
        approved = await self.gate.request(ctx, text, payloads)

        if approved:
            params = ctx.chat_config.chat_params.model_copy(update={"confirmation": False})
            confirmed = ToolContext(
                chat_config=ctx.chat_config.model_copy(update={"chat_params": params}),
                thread=ctx.thread,
                cancel_token=ctx.cancel_token,
                transport=ctx.transport,
                user_id=ctx.user_id,
            )
            results = await self.execute(tool_calls, tools, confirmed)
            logger.info("[chat %s] tools called", ctx.thread.id)
            return results

        if approved is False:
            logger.info("[chat %s] tool batch rejected", ctx.thread.id)
        return [ToolResponse.cancelled_batch(payloads, CANCELLED_MESSAGE)]

    async def _run_one(
        self,
        call: ToolCallObj,
        tool: ChatTool | None,
        arguments: str,
        ctx: ToolContext,
    ) -> ToolResponse:
        name = call.function.name
        if tool is None:
            logger.warning("[chat %s] tool not found: %s", ctx.thread.id, name)
            return ToolResponse.from_text(f"Tool not found: {name}", tool_name=name)

        logger.info("[chat %s] %s: %s", ctx.thread.id, name, arguments)
        invoke = tool.bind(ctx)

        with timed_execution() as timing:
            result = await self._invoke_with_retry(invoke, name, arguments, ctx)
        result.tool_name = name
        result.duration_ms = timing["duration_ms"]

        logger.info("[chat %s] %s result: %s", ctx.thread.id, name, result.text[:500])
        await self._deliver_result(tool, result, ctx)
        return result

    async def _invoke_with_retry(self, invoke: Any, name: str, arguments: str, ctx: ToolContext) -> ToolResponse:
        for attempt in range(2):
            try:
                result = await ctx.cancel_token.run(invoke(arguments))
                return result if result is not None else ToolResponse.from_text("")
            except Exception as e:
                if attempt == 0 and _is_invalid_parameter_error(e):
                    logger.warning("[chat %s] retrying tool %s after 400 error", ctx.thread.id, name)
                    continue
                logger.error("[chat %s] tool %s failed: %s", ctx.thread.id, name, e)
                return ToolResponse.from_text(f"Tool error: {e}")
        return ToolResponse.from_text("")

    async def _deliver_result(self, tool: ChatTool, result: ToolResponse, ctx: ToolContext) -> None:
        if ctx.transport is None or ctx.cancel_token.cancelled:
            return
        for doc in result.documents:
            if doc.type == "resource":
                await ctx.transport.deliver_document(ctx.thread.id, doc.data, doc.filename, doc.media_type)
            else:
                await ctx.transport.deliver_document(ctx.thread.id, doc.path, document_name(doc), doc.media_type)
        text = result.text
        if ctx.chat_config.chat_params.show_tool_messages and tool.kind is not ToolKind.REMOTE and text:
            if len(text) > SHOW_RESULT_LIMIT:
                text = text[:SHOW_RESULT_LIMIT] + "..."
            await ctx.transport.deliver_text(ctx.thread.id, text)
