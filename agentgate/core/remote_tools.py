"""
Tools resolved from remote endpoint sessions.
"""

from __future__ import annotations

import logging
from typing import Any

from agentgate.core.session_manager import AuthorizationPendingError, RemoteSessionManager
from agentgate.core.tools import ChatTool, ToolCallable, ToolContext, ToolInputError, ToolKind, parse_arguments
from agentgate.models.chat_config import RemoteEndpointConfig, sanitize_tool_name
from agentgate.models.tool_result import ToolResponse

logger = logging.getLogger(__name__)


def chat_session_key(chat_id: str | int, name: str) -> str:
    """Session key for an endpoint scoped to one chat."""
    return f"chat_{chat_id}_{name}"


class RemoteTool(ChatTool):
    """One tool hosted by a remote endpoint."""

    kind = ToolKind.REMOTE

    def __init__(
        self,
        manager: RemoteSessionManager,
        endpoint_id: str,
        config: RemoteEndpointConfig,
        tool_def: Any,
    ):
        schema = tool_def.inputSchema if isinstance(tool_def.inputSchema, dict) else {}
        parameters = dict(schema)
        parameters.setdefault("type", "object")
        parameters.setdefault("properties", {})
        super().__init__(sanitize_tool_name(tool_def.name), tool_def.description or tool_def.name, parameters)
        self.remote_name = tool_def.name
        self.endpoint_id = endpoint_id
        self.config = config
        self.manager = manager

    def bind(self, ctx: ToolContext) -> ToolCallable:
        async def call(arguments: str) -> ToolResponse:
            try:
                args = parse_arguments(arguments)
            except ToolInputError as e:
                return ToolResponse.from_text(str(e))
            return await self.manager.call(
                self.endpoint_id,
                self.remote_name,
                args,
                config=self.config,
                cancel_token=ctx.cancel_token,
            )

        return call


class RemoteToolProvider:
    """Turns endpoint sessions into RemoteTool lists."""

    def __init__(self, manager: RemoteSessionManager):
        self.manager = manager

    async def endpoint_tools(self, endpoint_id: str, config: RemoteEndpointConfig) -> list[RemoteTool]:
        """
        Connect (or reuse) and wrap the endpoint's tools.

        Connection failures are logged and yield no tools.
        """
        try:
            tool_defs = await self.manager.list_tools(endpoint_id, config)
        except AuthorizationPendingError as e:
            logger.warning("[%s] tools unavailable until authorized: %s", endpoint_id, e.authorization_url)
            return []
        except Exception as e:
            logger.error("[%s] failed to connect: %s", endpoint_id, e)
            return []
        return [RemoteTool(self.manager, endpoint_id, config, t) for t in tool_defs]

    async def chat_tools(self, chat_id: str | int, endpoints: dict[str, RemoteEndpointConfig]) -> tuple[list[RemoteTool], list[str]]:
        """
        Tools from a chat's own endpoints, each in a chat-scoped session.

        Returns:
            (tools, session keys used)
        """
        tools: list[RemoteTool] = []
        keys: list[str] = []
        for name, config in endpoints.items():
            key = chat_session_key(chat_id, name)
            keys.append(key)
            tools.extend(await self.endpoint_tools(key, config))
        return tools, keys

    async def disconnect_chat(self, chat_id: str | int) -> int:
        return await self.manager.disconnect_chat(chat_id)
