"""
Structured result model for tool invocations.

A result holds either plain text or a list of typed parts, plus the
cancellation metadata the tool-calling loop needs to narrate a rejected
batch back to the model.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ResourcePart(BaseModel):
    """Binary payload to be delivered as a document."""

    type: Literal["resource"] = "resource"
    data: bytes
    filename: str = "file.bin"
    media_type: str = "application/octet-stream"


class FilePart(BaseModel):
    """Reference to a file on disk to be delivered as a document."""

    type: Literal["file"] = "file"
    path: str
    filename: str | None = None
    media_type: str | None = None


ContentPart = Annotated[Union[TextPart, ResourcePart, FilePart], Field(discriminator="type")]


class ToolResponse(BaseModel):
    """Result of one tool call (or of a whole cancelled batch)."""

    content: str | list[ContentPart] = Field("", description="Text or typed parts")
    cancelled: bool = Field(False, description="The batch was rejected before running")
    cancelled_calls: list[dict[str, Any]] = Field(
        default_factory=list, description="Original call payloads of a cancelled batch"
    )
    tool_name: str | None = None
    duration_ms: int | None = None

    @property
    def text(self) -> str:
        """Concatenated textual content."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def documents(self) -> list[ResourcePart | FilePart]:
        if isinstance(self.content, str):
            return []
        return [p for p in self.content if not isinstance(p, TextPart)]

    def to_llm_content(self) -> str:
        """Serialize for passing back to the model as a tool-role entry."""
        notes = [f"[document delivered: {document_name(d)}]" for d in self.documents]
        return "\n".join([t for t in [self.text] if t] + notes)

    @classmethod
    def from_text(cls, text: str, **kwargs: Any) -> "ToolResponse":
        return cls(content=text, **kwargs)

    @classmethod
    def cancelled_batch(cls, calls: list[dict[str, Any]], message: str = "") -> "ToolResponse":
        return cls(content=message, cancelled=True, cancelled_calls=calls)


def document_name(part: ResourcePart | FilePart) -> str:
    if isinstance(part, ResourcePart):
        return part.filename
    return part.filename or part.path.rsplit("/", 1)[-1]


@contextmanager
def timed_execution():
    """Context manager that yields a dict where 'duration_ms' will be set on exit."""
    timing: dict[str, int] = {}
    start = time.monotonic()
    try:
        yield timing
    finally:
        timing["duration_ms"] = int((time.monotonic() - start) * 1000)
