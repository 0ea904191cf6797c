"""
Tool registry and per-chat resolution.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from agentgate.core.builtin_tools import builtin_tools
from agentgate.core.delegation import AgentRunner, AgentTool
from agentgate.core.tools import ChatTool, FunctionTool, ToolContext
from agentgate.models.chat_config import AgentToolSpec, ChatConfig, GatewayConfig
from agentgate.models.thread import ConversationThread
from agentgate.models.tool_result import ToolResponse

if TYPE_CHECKING:
    from agentgate.core.remote_tools import RemoteToolProvider
    from agentgate.core.threads import ThreadStore

logger = logging.getLogger(__name__)


class ToolRegistry:
    """
    Maps tool names to tools and resolves the set a chat may use.

    Static tools are registered up front. Agent proxies and remote tools
    are created on resolution, since they depend on the chat, the
    requester and live endpoint sessions.
    """

    def __init__(
        self,
        config: GatewayConfig,
        threads: "ThreadStore",
        remote: "RemoteToolProvider | None" = None,
        agent_runner: AgentRunner | None = None,
    ):
        self.config = config
        self.threads = threads
        self.remote = remote
        self.agent_runner = agent_runner
        self._tools: dict[str, ChatTool] = {}
        for tool in builtin_tools():
            self.register(tool)

    def register(self, tool: ChatTool) -> None:
        if tool.name in self._tools:
            logger.debug("Replacing tool %s", tool.name)
        self._tools[tool.name] = tool

    def register_function(
        self,
        name: str,
        func: Callable[[dict[str, Any], ToolContext], Awaitable[ToolResponse | str]],
        description: str = "",
        parameters: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> FunctionTool:
        tool = FunctionTool(name, func, description=description, parameters=parameters, **kwargs)
        self.register(tool)
        return tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> ChatTool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    async def resolve_chat_tools(
        self,
        chat_config: ChatConfig,
        thread: ConversationThread,
        user_id: str | None = None,
    ) -> list[ChatTool]:
        """
        Tools available to one chat for one turn, without duplicates.

        Entries in ``chat_config.tools`` may name a static tool, a global
        remote endpoint (all its tools), or an agent. The chat's own
        ``mcp_servers`` add session-scoped remote tools.
        """
        resolved: list[ChatTool] = []

        for entry in chat_config.tools:
            if isinstance(entry, AgentToolSpec):
                tool = self._agent_tool(entry, user_id)
                if tool is not None:
                    resolved.append(tool)
            elif entry in self._tools:
                resolved.append(self._tools[entry])
            elif entry in self.config.mcp_servers:
                if self.remote is not None:
                    resolved.extend(await self.remote.endpoint_tools(entry, self.config.mcp_servers[entry]))
            else:
                logger.warning("[chat %s] unknown tool '%s' in chat '%s'", thread.id, entry, chat_config.name)

        if chat_config.mcp_servers and self.remote is not None:
            tools, keys = await self.remote.chat_tools(thread.id, chat_config.mcp_servers)
            thread.remote_sessions.update(keys)
            resolved.extend(tools)

        unique: dict[str, ChatTool] = {}
        for tool in resolved:
            if tool.name in unique:
                logger.warning("[chat %s] duplicate tool name '%s', keeping the first", thread.id, tool.name)
                continue
            unique[tool.name] = tool
        return list(unique.values())

    def _agent_tool(self, spec: AgentToolSpec, user_id: str | None) -> AgentTool | None:
        target = self.config.find_agent(spec.agent_name)
        if target is None:
            logger.warning("Agent not found: %s", spec.agent_name)
            return None
        if not target.is_allowed(user_id):
            return None
        if self.agent_runner is None:
            logger.warning("No agent runner attached, skipping agent %s", spec.agent_name)
            return None
        return AgentTool(spec, target, self.agent_runner, self.threads)


def tool_schemas(tools: list[ChatTool]) -> list[dict[str, Any]]:
    """Flat function-calling schema list."""
    return [tool.schema() for tool in tools]


def tool_system_messages(tools: list[ChatTool], ctx: ToolContext) -> list[str]:
    return [m for m in (tool.system_message(ctx) for tool in tools) if m]


def tool_prompts(tools: list[ChatTool], ctx: ToolContext) -> list[str]:
    return [p for p in (tool.prompt_append(ctx) for tool in tools) if p]
