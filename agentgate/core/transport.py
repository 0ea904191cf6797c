"""
Messaging transport contract and the two built-in transports.

The gateway never formats messages for a specific platform. It hands text,
documents and confirmation prompts to a MessagingTransport; platform
adapters implement the three operations.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm

logger = logging.getLogger(__name__)


@runtime_checkable
class MessagingTransport(Protocol):
    """Where answers, documents and confirmation prompts go."""

    async def deliver_text(self, conversation_id: str, text: str) -> None: ...

    async def deliver_document(
        self,
        conversation_id: str,
        document: bytes | str,
        filename: str,
        media_type: str | None = None,
    ) -> None: ...

    async def request_confirmation(self, conversation_id: str, text: str, token: str) -> None:
        """Show ``text`` with approve/reject actions bound to ``token``."""
        ...


class CollectingTransport:
    """
    Buffers everything delivered, per conversation.

    Used by the HTTP API to return a turn's side messages with the answer.
    """

    def __init__(self):
        self.texts: dict[str, list[str]] = {}
        self.documents: dict[str, list[dict[str, Any]]] = {}
        self.confirmations: dict[str, list[dict[str, str]]] = {}

    async def deliver_text(self, conversation_id: str, text: str) -> None:
        self.texts.setdefault(conversation_id, []).append(text)

    async def deliver_document(
        self,
        conversation_id: str,
        document: bytes | str,
        filename: str,
        media_type: str | None = None,
    ) -> None:
        self.documents.setdefault(conversation_id, []).append(
            {"filename": filename, "media_type": media_type, "size": _document_size(document)}
        )

    async def request_confirmation(self, conversation_id: str, text: str, token: str) -> None:
        self.confirmations.setdefault(conversation_id, []).append({"text": text, "token": token})

    def pop(self, conversation_id: str) -> list[str]:
        self.documents.pop(conversation_id, None)
        self.confirmations.pop(conversation_id, None)
        return self.texts.pop(conversation_id, [])


class ConsoleTransport:
    """Interactive terminal transport built on rich."""

    def __init__(
        self,
        console: Console | None = None,
        on_decision: Callable[[str, bool], Any] | None = None,
        download_dir: Path | None = None,
    ):
        """
        Args:
            console: Rich console to print to
            on_decision: Called with (token, approved) after a confirmation prompt
            download_dir: Where delivered binary documents are written
        """
        self.console = console or Console()
        self.on_decision = on_decision
        self.download_dir = download_dir or Path(".")

    async def deliver_text(self, conversation_id: str, text: str) -> None:
        self.console.print(Markdown(text))

    async def deliver_document(
        self,
        conversation_id: str,
        document: bytes | str,
        filename: str,
        media_type: str | None = None,
    ) -> None:
        if isinstance(document, bytes):
            path = self.download_dir / filename
            path.write_bytes(document)
        else:
            path = Path(document)
        self.console.print(f"[cyan]Document:[/cyan] {path} [dim]({media_type or 'unknown type'})[/dim]")

    async def request_confirmation(self, conversation_id: str, text: str, token: str) -> None:
        self.console.print(Panel(text, title="Run tools?", border_style="yellow"))
        approved = await asyncio.to_thread(Confirm.ask, "Approve", console=self.console, default=False)
        if self.on_decision is not None:
            self.on_decision(token, approved)


def _document_size(document: bytes | str) -> int | None:
    if isinstance(document, bytes):
        return len(document)
    path = Path(document)
    return path.stat().st_size if path.exists() else None
