"""Agent endpoints: status card, one-shot answers and direct tool calls."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException

from agentgate import __version__
from agentgate.core.cancellation import CancellationToken
from agentgate.core.gateway import Gateway
from agentgate.core.llm import LLMError
from agentgate.core.tools import ToolContext
from agentgate.core.transport import CollectingTransport
from agentgate.models.chat_config import ChatConfig, ChatNotFoundError
from agentgate.models.tool_result import document_name
from agentgate.server.dependencies import gateway_dependency, require_token
from agentgate.server.models import AgentCard, AgentRequest, AgentResponse, ToolInvokeRequest, ToolInvokeResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["agents"], dependencies=[Depends(require_token)])


def _chat_or_error(gateway: Gateway, agent_name: str, status_code: int) -> ChatConfig:
    try:
        return gateway.config.get_chat(agent_name)
    except ChatNotFoundError as e:
        raise HTTPException(status_code=status_code, detail=str(e))


def _conversation_id(agent_name: str, conversation_id: str | None) -> str:
    return conversation_id or f"http:{agent_name}"


@router.get("/agent/{agent_name}")
async def agent_card(agent_name: str, gateway: Gateway = Depends(gateway_dependency)) -> AgentCard:
    """Status card for one agent."""
    chat_config = _chat_or_error(gateway, agent_name, 404)
    return AgentCard(
        name=chat_config.agent_name or chat_config.name,
        version=__version__,
        status="online",
        timestamp=datetime.now(timezone.utc).isoformat(),
        description=chat_config.description,
    )


@router.post("/agent/{agent_name}")
async def ask_agent(
    agent_name: str,
    request: AgentRequest,
    gateway: Gateway = Depends(gateway_dependency),
) -> AgentResponse:
    """Run the agent's full answer pipeline, without the intake debounce."""
    if not request.text:
        raise HTTPException(status_code=400, detail="Missing 'text'")
    chat_config = _chat_or_error(gateway, agent_name, 400)
    if not chat_config.is_allowed(request.user_id):
        raise HTTPException(status_code=403, detail=f"User not allowed to use agent '{agent_name}'")

    conversation_id = _conversation_id(agent_name, request.conversation_id)
    thread = gateway.threads.get_or_create(conversation_id)
    transport = CollectingTransport()
    try:
        result = await gateway.engine.answer(
            chat_config,
            thread,
            request.text,
            cancel_token=CancellationToken(label=f"http {conversation_id}"),
            transport=transport,
            user_id=request.user_id,
        )
    except LLMError as e:
        logger.error("[chat %s] completion failed: %s", conversation_id, e)
        raise HTTPException(status_code=502, detail=str(e))

    return AgentResponse(content=result.content, messages=transport.pop(conversation_id))


@router.post("/agent/{agent_name}/tool/{tool_name}")
async def invoke_tool(
    agent_name: str,
    tool_name: str,
    request: ToolInvokeRequest,
    gateway: Gateway = Depends(gateway_dependency),
) -> ToolInvokeResponse:
    """Invoke one of the agent's resolved tools directly."""
    chat_config = _chat_or_error(gateway, agent_name, 400)
    if not chat_config.is_allowed(request.user_id):
        raise HTTPException(status_code=403, detail=f"User not allowed to use agent '{agent_name}'")
    conversation_id = _conversation_id(agent_name, request.conversation_id)
    thread = gateway.threads.get_or_create(conversation_id)

    tools = await gateway.registry.resolve_chat_tools(chat_config, thread, request.user_id)
    tool = next((t for t in tools if t.name == tool_name), None)
    if tool is None:
        raise HTTPException(status_code=404, detail=f"Tool '{tool_name}' not available for agent '{agent_name}'")

    ctx = ToolContext(
        chat_config=chat_config,
        thread=thread,
        cancel_token=CancellationToken(),
        transport=CollectingTransport(),
        user_id=request.user_id,
    )
    logger.info("[chat %s] direct tool call %s: %s", conversation_id, tool_name, request.arguments)
    result = await tool.bind(ctx)(json.dumps(request.arguments))
    documents = [document_name(d) for d in result.documents]
    return ToolInvokeResponse(content=result.text, documents=documents)
