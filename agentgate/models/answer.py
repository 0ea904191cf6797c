"""
Outcome of one answer pipeline run.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from agentgate.models.evaluation import EvaluationVerdict


class AnswerResult(BaseModel):
    """What the tool-calling loop (and evaluators) produced for one turn."""

    content: str = ""
    aborted: bool = Field(False, description="Superseded by a newer message; never delivered")
    cancelled: bool = Field(False, description="A tool batch was rejected at the confirmation gate")
    tool_used: bool = False
    rounds: int = 0
    verdicts: list[EvaluationVerdict] = Field(default_factory=list)

    @classmethod
    def aborted_result(cls, rounds: int = 0) -> "AnswerResult":
        return cls(aborted=True, rounds=rounds)
