"""
Evaluation verdict produced by an evaluator pass.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

COMPLETE_SCORE = 4


class EvaluationVerdict(BaseModel):
    """Completeness score for one answer. Not persisted."""

    score: int = Field(..., ge=0, le=5, description="0 = useless, 5 = fully complete")
    justification: str = Field("", description="What is missing or wrong")
    is_complete: bool = Field(False)

    @classmethod
    def parse(cls, raw: str | None) -> "EvaluationVerdict":
        """Parse model output; anything unparseable scores 0 / incomplete."""
        try:
            data = json.loads(raw or "")
            verdict = cls.model_validate(data)
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning("Evaluator output could not be parsed: %s", e)
            return cls(score=0, justification="", is_complete=False)
        # completeness is derived from the score, not trusted from the model
        verdict.is_complete = verdict.score >= COMPLETE_SCORE
        return verdict


def verdict_response_format() -> dict[str, Any]:
    """Structured-output schema passed to the completion service."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "evaluation",
            "strict": True,
            "schema": {
                "type": "object",
                "properties": {
                    "score": {"type": "integer", "description": "Completeness score from 0 to 5"},
                    "justification": {"type": "string"},
                    "is_complete": {"type": "boolean"},
                },
                "required": ["score", "justification", "is_complete"],
                "additionalProperties": False,
            },
        },
    }
