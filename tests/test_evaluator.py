"""
Tests for the evaluator loop and verdict parsing.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from agentgate.core.engine import AgentEngine
from agentgate.core.evaluator import EvaluatorLoop, corrective_request
from agentgate.core.registry import ToolRegistry
from agentgate.models.chat_config import ChatConfig, EvaluatorSpec, GatewayConfig
from agentgate.models.evaluation import EvaluationVerdict, verdict_response_format


def _verdict(score, justification=""):
    return json.dumps({"score": score, "justification": justification, "is_complete": score >= 4})


@pytest.fixture
def critic():
    return ChatConfig(name="critic", agent_name="critic", system_message="Audit the answer.")


def _engine(chat, critic, threads, *extra):
    config = GatewayConfig(chats=[chat, critic, *extra])
    engine = AgentEngine(config, threads, ToolRegistry(config, threads))
    engine.evaluator = EvaluatorLoop(engine)
    return engine


class TestVerdictParsing:
    def test_valid(self):
        verdict = EvaluationVerdict.parse(_verdict(5, "all good"))
        assert verdict.score == 5
        assert verdict.is_complete

    def test_completeness_derived_from_score(self):
        raw = json.dumps({"score": 3, "justification": "meh", "is_complete": True})
        assert EvaluationVerdict.parse(raw).is_complete is False

    @pytest.mark.parametrize("raw", ["not json", None, '{"score": 9}', "[1, 2]"])
    def test_unparseable_scores_zero(self, raw):
        verdict = EvaluationVerdict.parse(raw)
        assert verdict.score == 0
        assert verdict.is_complete is False

    def test_response_format_is_strict_schema(self):
        fmt = verdict_response_format()
        assert fmt["type"] == "json_schema"
        assert fmt["json_schema"]["strict"] is True
        assert set(fmt["json_schema"]["schema"]["required"]) == {"score", "justification", "is_complete"}


class TestEvaluatorLoop:
    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_regenerates_below_threshold(self, mock_completion, chat_config, critic, threads, make_response):
        chat = chat_config.model_copy(update={"evaluators": [EvaluatorSpec(agent_name="critic", threshold=4, max_iterations=2)]})
        engine = _engine(chat, critic, threads)
        mock_completion.side_effect = [
            make_response("first answer"),
            make_response(_verdict(2, "Missing the second half.")),
            make_response("better answer"),
            make_response(_verdict(5, "Complete.")),
        ]
        thread = threads.get_or_create("1")

        result = await engine.answer(chat, thread, "explain both halves")

        assert mock_completion.call_count == 4
        assert result.content == "better answer"
        assert [v.score for v in result.verdicts] == [2, 5]
        assert thread.messages[-1] == {"role": "assistant", "content": "better answer"}
        assert [m["role"] for m in thread.messages] == ["user", "assistant"]

        regenerate_request = mock_completion.call_args_list[2].kwargs["messages"]
        assert "Missing the second half." in regenerate_request[-1]["content"]
        assert "first answer" not in json.dumps(regenerate_request)

        score_request = mock_completion.call_args_list[1].kwargs
        assert score_request["response_format"] == verdict_response_format()
        assert score_request["messages"][0] == {"role": "system", "content": "Audit the answer."}
        assert "first answer" in score_request["messages"][1]["content"]

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_accepts_at_threshold(self, mock_completion, chat_config, critic, threads, make_response):
        chat = chat_config.model_copy(update={"evaluators": [EvaluatorSpec(agent_name="critic")]})
        engine = _engine(chat, critic, threads)
        mock_completion.side_effect = [make_response("good"), make_response(_verdict(4))]

        result = await engine.answer(chat, threads.get_or_create("1"), "q")

        assert mock_completion.call_count == 2
        assert result.content == "good"

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_iteration_budget_bounds_retries(self, mock_completion, chat_config, critic, threads, make_response):
        chat = chat_config.model_copy(update={"evaluators": [EvaluatorSpec(agent_name="critic", max_iterations=1)]})
        engine = _engine(chat, critic, threads)
        mock_completion.side_effect = [
            make_response("a1"),
            make_response("garbage"),
            make_response("a2"),
            make_response(_verdict(1, "still bad")),
        ]

        result = await engine.answer(chat, threads.get_or_create("1"), "q")

        assert mock_completion.call_count == 4
        assert result.content == "a2"
        assert [v.score for v in result.verdicts] == [0, 1]

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_evaluators_run_in_sequence(self, mock_completion, chat_config, critic, threads, make_response):
        strict = ChatConfig(name="strict", agent_name="strict", system_message="Be strict.")
        chat = chat_config.model_copy(
            update={"evaluators": [EvaluatorSpec(agent_name="critic"), EvaluatorSpec(agent_name="strict", threshold=5, max_iterations=1)]}
        )
        engine = _engine(chat, critic, threads, strict)
        mock_completion.side_effect = [
            make_response("draft"),
            make_response(_verdict(4)),
            make_response(_verdict(3, "add sources")),
            make_response("draft with sources"),
            make_response(_verdict(5)),
        ]

        result = await engine.answer(chat, threads.get_or_create("1"), "q")

        assert result.content == "draft with sources"
        assert mock_completion.call_count == 5
        strict_request = mock_completion.call_args_list[2].kwargs["messages"]
        assert strict_request[0]["content"] == "Be strict."
        assert "draft" in strict_request[1]["content"]

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_missing_evaluator_agent_skipped(self, mock_completion, chat_config, critic, threads, make_response):
        chat = chat_config.model_copy(update={"evaluators": [EvaluatorSpec(agent_name="nobody")]})
        engine = _engine(chat, critic, threads)
        mock_completion.return_value = make_response("answer")

        result = await engine.answer(chat, threads.get_or_create("1"), "q")

        assert result.content == "answer"
        assert mock_completion.call_count == 1

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_evaluate_false_skips(self, mock_completion, chat_config, critic, threads, make_response):
        chat = chat_config.model_copy(update={"evaluators": [EvaluatorSpec(agent_name="critic")]})
        engine = _engine(chat, critic, threads)
        mock_completion.return_value = make_response("answer")

        await engine.answer(chat, threads.get_or_create("1"), "q", evaluate=False)

        assert mock_completion.call_count == 1


def test_corrective_request_keeps_original_text():
    verdict = EvaluationVerdict(score=1, justification="Cite the source.")
    text = corrective_request("What is the capital?", verdict)
    assert text.startswith("What is the capital?")
    assert "Cite the source." in text
