"""
Wires the orchestration components into one gateway object.

The CLI and the HTTP server both work through a Gateway: it owns the
thread store, the tool registry, the remote session manager, the
confirmation gate, the engine and evaluator, and the intake controller.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable

from agentgate.core.confirmation import ConfirmationGate
from agentgate.core.controller import IntakeController
from agentgate.core.engine import AgentEngine
from agentgate.core.evaluator import EvaluatorLoop
from agentgate.core.executor import ToolExecutor
from agentgate.core.llm import LLMClient
from agentgate.core.registry import ToolRegistry
from agentgate.core.remote_tools import RemoteToolProvider
from agentgate.core.session_manager import RemoteSessionManager, SessionOpener
from agentgate.core.threads import ThreadStore
from agentgate.core.transport import CollectingTransport, MessagingTransport
from agentgate.models.chat_config import GatewayConfig, load_gateway_config

logger = logging.getLogger(__name__)


class Gateway:
    """All long-lived state of one running gateway process."""

    def __init__(
        self,
        config: GatewayConfig,
        transport: MessagingTransport | None = None,
        opener: SessionOpener | None = None,
        llm_factory: Callable[..., LLMClient] = LLMClient,
    ):
        """
        Args:
            config: Parsed gateway configuration
            transport: Messaging transport answers are delivered to
            opener: Remote session factory (tests inject fakes here)
            llm_factory: Completion client factory
        """
        self.config = config
        self.transport = transport or CollectingTransport()
        self.threads = ThreadStore()
        self.gate = ConfirmationGate()
        self.sessions = RemoteSessionManager(
            auth_store_dir=Path(config.auth_store_dir),
            opener=opener,
            on_authorization=self._announce_authorization,
        )
        self.remote = RemoteToolProvider(self.sessions)
        self.registry = ToolRegistry(config, self.threads, remote=self.remote)
        self.engine = AgentEngine(config, self.threads, self.registry, ToolExecutor(self.gate), llm_factory=llm_factory)
        self.engine.evaluator = EvaluatorLoop(self.engine)
        self.registry.agent_runner = self.engine
        self.controller = IntakeController(self.engine, self.transport)

    async def _announce_authorization(self, endpoint_id: str, authorization_url: str) -> None:
        logger.warning("[%s] waiting for authorization at %s", endpoint_id, authorization_url)

    def resolve_confirmation(self, token: str, approved: bool, user_id: str | None = None) -> bool:
        """Settle a pending confirmation; ``user_id`` defaults to the requester."""
        decision = self.gate.get(token)
        if decision is None:
            return False
        return self.gate.resolve(token, user_id if user_id is not None else decision.user_id, approved)

    async def forget_chat(self, conversation_id: str) -> None:
        """Clear a conversation and close its chat-scoped remote sessions."""
        self.threads.forget(conversation_id)
        closed = await self.remote.disconnect_chat(conversation_id)
        if closed:
            logger.info("[chat %s] closed %d remote session(s)", conversation_id, closed)

    async def close(self) -> None:
        await self.sessions.close_all()


_gateway: Gateway | None = None
_gateway_lock = threading.Lock()


def get_gateway(config_path: str | Path | None = None) -> Gateway:
    """Get or create the process-wide gateway."""
    global _gateway
    if _gateway is None:
        with _gateway_lock:
            if _gateway is None:
                _gateway = Gateway(load_gateway_config(config_path))
    return _gateway


def set_gateway(gateway: Gateway | None) -> None:
    global _gateway
    _gateway = gateway


def reset_gateway() -> None:
    """Drop the process-wide gateway (for testing)."""
    set_gateway(None)
