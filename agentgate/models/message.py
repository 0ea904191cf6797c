"""
Inbound message model shared by transports, the controller and the HTTP API.
"""

from __future__ import annotations

import time

from pydantic import BaseModel, Field


class InboundMessage(BaseModel):
    """A user message as received from a messaging transport."""

    conversation_id: str
    text: str
    user_id: str | None = None
    username: str | None = None
    message_id: str | None = None
    date: float = Field(default_factory=time.time, description="Unix timestamp")
