"""Pydantic models for the API layer."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class AgentRequest(BaseModel):
    """POST /agent/{agent_name} body."""

    text: str | None = None
    conversation_id: str | None = Field(default=None, description="Defaults to one thread per agent")
    user_id: str | None = None


class AgentResponse(BaseModel):
    content: str
    messages: list[str] = Field(default_factory=list, description="Side messages delivered during the turn")


class AgentCard(BaseModel):
    """GET /agent/{agent_name} status card."""

    name: str
    version: str
    status: str
    timestamp: str
    description: str = ""


class ToolInvokeRequest(BaseModel):
    arguments: dict[str, Any] = Field(default_factory=dict)
    conversation_id: str | None = None
    user_id: str | None = None


class ToolInvokeResponse(BaseModel):
    content: str
    documents: list[str] = Field(default_factory=list)


class ConfirmationDecision(BaseModel):
    user_id: str | None = None
    approved: bool
