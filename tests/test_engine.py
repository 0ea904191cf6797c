"""
Tests for the tool-calling loop.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from agentgate.core.confirmation import ConfirmationGate
from agentgate.core.engine import MAX_TOOL_ROUNDS, NO_ANSWER_MESSAGE, AgentEngine
from agentgate.core.executor import CANCELLED_MESSAGE, ToolExecutor
from agentgate.core.registry import ToolRegistry
from agentgate.core.transport import CollectingTransport
from agentgate.models.chat_config import ChatParams, GatewayConfig, NamedModel


@pytest.fixture
def tool_calls_seen():
    return []


@pytest.fixture
def registry(gateway_config, threads, tool_calls_seen):
    registry = ToolRegistry(gateway_config, threads)

    async def get_answer(args, ctx):
        tool_calls_seen.append(args)
        return "42"

    registry.register_function(
        "get_answer",
        get_answer,
        description="Returns the answer",
        parameters={"type": "object", "properties": {"question": {"type": "string"}}},
    )
    return registry


@pytest.fixture
def gate():
    return ConfirmationGate()


@pytest.fixture
def engine(gateway_config, threads, registry, gate):
    return AgentEngine(gateway_config, threads, registry, ToolExecutor(gate))


@pytest.fixture
def tool_chat(chat_config):
    return chat_config.model_copy(update={"tools": ["get_answer", "forget"]})


class ApprovingTransport(CollectingTransport):
    """Answers every confirmation request immediately."""

    def __init__(self, gate, user_id, approved):
        super().__init__()
        self.gate = gate
        self.user_id = user_id
        self.approved = approved

    async def request_confirmation(self, conversation_id, text, token):
        await super().request_confirmation(conversation_id, text, token)
        self.gate.resolve(token, self.user_id, self.approved)


class TestPlainAnswer:
    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_hi_hello(self, mock_completion, engine, chat_config, threads, make_response):
        mock_completion.return_value = make_response("hello")
        thread = threads.get_or_create("1")

        result = await engine.answer(chat_config, thread, "hi")

        assert result.content == "hello"
        assert not result.aborted
        user_entries = [m for m in thread.messages if m["role"] == "user"]
        assert user_entries == [{"role": "user", "content": "hi"}]
        assert thread.messages[-1] == {"role": "assistant", "content": "hello"}

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_system_message_has_date(self, mock_completion, engine, chat_config, threads, make_response):
        mock_completion.return_value = make_response("ok")
        await engine.answer(chat_config, threads.get_or_create("1"), "hi")

        system = mock_completion.call_args.kwargs["messages"][0]
        assert system["role"] == "system"
        assert "{date}" not in system["content"]
        assert system["content"].startswith("You are a test assistant.")

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_next_system_message_is_one_shot(self, mock_completion, engine, chat_config, threads, make_response):
        mock_completion.return_value = make_response("ok")
        thread = threads.get_or_create("1")
        thread.next_system_message = "Answer in French."

        await engine.answer(chat_config, thread, "hi")
        assert mock_completion.call_args.kwargs["messages"][0]["content"] == "Answer in French."
        assert thread.next_system_message is None

        await engine.answer(chat_config, thread, "again")
        assert mock_completion.call_args.kwargs["messages"][0]["content"] != "Answer in French."

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_no_tools_offered_without_tools(self, mock_completion, engine, chat_config, threads, make_response):
        mock_completion.return_value = make_response("ok")
        await engine.answer(chat_config, threads.get_or_create("1"), "hi")
        assert "tools" not in mock_completion.call_args.kwargs


class TestToolRounds:
    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_tool_result_fed_back(
        self, mock_completion, engine, tool_chat, threads, make_response, make_tool_call, tool_calls_seen
    ):
        mock_completion.side_effect = [
            make_response(None, [make_tool_call("get_answer", {"question": "meaning"}, call_id="call_abc")]),
            make_response("The answer is 42"),
        ]
        thread = threads.get_or_create("1")

        result = await engine.answer(tool_chat, thread, "what is the answer?")

        assert result.content == "The answer is 42"
        assert result.tool_used
        assert tool_calls_seen == [{"question": "meaning"}]

        second_request = mock_completion.call_args_list[1].kwargs["messages"]
        tool_entries = [m for m in second_request if m["role"] == "tool"]
        assert tool_entries == [{"role": "tool", "tool_call_id": "call_abc", "content": "42"}]
        assert mock_completion.call_args_list[0].kwargs["tool_choice"] == "auto"

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_round_ceiling_withholds_tools(
        self, mock_completion, engine, tool_chat, threads, make_response, make_tool_call
    ):
        async def always_call_tools(**kwargs):
            if "tools" in kwargs:
                return make_response(None, [make_tool_call("get_answer", {}, call_id=f"call_{len(kwargs['messages'])}")])
            return make_response("final answer")

        mock_completion.side_effect = always_call_tools

        result = await engine.answer(tool_chat, threads.get_or_create("1"), "loop forever")

        assert result.content == "final answer"
        assert mock_completion.call_count == MAX_TOOL_ROUNDS + 1
        assert "tools" not in mock_completion.call_args_list[-1].kwargs
        assert all("tools" in c.kwargs for c in mock_completion.call_args_list[:-1])

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_inline_tool_call_tag(
        self, mock_completion, engine, tool_chat, threads, make_response, tool_calls_seen
    ):
        inline = '<tool_call>{"name": "get_answer", "arguments": {"question": "x"}}</tool_call>'
        mock_completion.side_effect = [make_response(inline), make_response("done")]

        result = await engine.answer(tool_chat, threads.get_or_create("1"), "go")

        assert result.content == "done"
        assert tool_calls_seen == [{"question": "x"}]

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_unknown_tool_reported_to_model(
        self, mock_completion, engine, tool_chat, threads, make_response, make_tool_call
    ):
        mock_completion.side_effect = [
            make_response(None, [make_tool_call("missing_tool", {}, call_id="call_x")]),
            make_response("sorry"),
        ]
        await engine.answer(tool_chat, threads.get_or_create("1"), "go")

        second_request = mock_completion.call_args_list[1].kwargs["messages"]
        assert {"role": "tool", "tool_call_id": "call_x", "content": "Tool not found: missing_tool"} in second_request

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_tool_exception_becomes_text(
        self, mock_completion, engine, tool_chat, threads, registry, make_response, make_tool_call
    ):
        async def broken(args, ctx):
            raise RuntimeError("disk on fire")

        registry.register_function("get_answer", broken)
        mock_completion.side_effect = [
            make_response(None, [make_tool_call("get_answer", {}, call_id="call_b")]),
            make_response("it failed"),
        ]
        result = await engine.answer(tool_chat, threads.get_or_create("1"), "go")

        assert result.content == "it failed"
        second_request = mock_completion.call_args_list[1].kwargs["messages"]
        tool_entry = next(m for m in second_request if m["role"] == "tool")
        assert tool_entry["content"] == "Tool error: disk on fire"

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_tag_only_reply_without_tools_gets_fallback(
        self, mock_completion, engine, chat_config, threads, make_response
    ):
        inline = '<tool_call>{"name": "get_answer", "arguments": {}}</tool_call>'
        mock_completion.return_value = make_response(inline)

        result = await engine.answer(chat_config, threads.get_or_create("1"), "go")

        assert result.content == NO_ANSWER_MESSAGE
        assert mock_completion.call_count == 1


class TestForgetAndMemoryless:
    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_forget_short_circuits(self, mock_completion, engine, tool_chat, threads, make_response, make_tool_call):
        thread = threads.get_or_create("1")
        thread.messages = [{"role": "user", "content": "old"}, {"role": "assistant", "content": "older"}]
        mock_completion.return_value = make_response(None, [make_tool_call("forget", {"message": "Done, fresh start."})])

        result = await engine.answer(tool_chat, thread, "forget everything")

        assert result.content == "Done, fresh start."
        assert thread.messages == []
        assert mock_completion.call_count == 1

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_forget_without_message_uses_tool_content(
        self, mock_completion, engine, tool_chat, threads, make_response, make_tool_call
    ):
        mock_completion.return_value = make_response(None, [make_tool_call("forget", {})])
        result = await engine.answer(tool_chat, threads.get_or_create("1"), "forget")
        assert result.content == "Forgot history"

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_forget_not_resolved_keeps_history(
        self, mock_completion, engine, chat_config, threads, make_response, make_tool_call
    ):
        chat = chat_config.model_copy(update={"tools": ["get_answer"]})
        thread = threads.get_or_create("1")
        thread.messages = [{"role": "user", "content": "old"}, {"role": "assistant", "content": "older"}]
        mock_completion.side_effect = [
            make_response(None, [make_tool_call("forget", {}, call_id="call_f")]),
            make_response("real answer"),
        ]

        result = await engine.answer(chat, thread, "forget it")

        assert result.content == "real answer"
        assert mock_completion.call_count == 2
        assert thread.messages[:2] == [{"role": "user", "content": "old"}, {"role": "assistant", "content": "older"}]
        second_request = mock_completion.call_args_list[1].kwargs["messages"]
        assert {"role": "tool", "tool_call_id": "call_f", "content": "Tool not found: forget"} in second_request

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_memoryless_clears_after_tool_use(
        self, mock_completion, engine, tool_chat, threads, make_response, make_tool_call
    ):
        chat = tool_chat.model_copy(update={"chat_params": ChatParams(memoryless=True, debounce_seconds=0)})
        mock_completion.side_effect = [
            make_response(None, [make_tool_call("get_answer", {})]),
            make_response("42 it is"),
        ]
        thread = threads.get_or_create("1")

        result = await engine.answer(chat, thread, "go")

        assert result.content == "42 it is"
        assert thread.messages == []

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_memoryless_keeps_history_without_tools(
        self, mock_completion, engine, tool_chat, threads, make_response
    ):
        chat = tool_chat.model_copy(update={"chat_params": ChatParams(memoryless=True, debounce_seconds=0)})
        mock_completion.return_value = make_response("plain")
        thread = threads.get_or_create("1")

        await engine.answer(chat, thread, "go")
        assert len(thread.messages) == 2


class TestConfirmation:
    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_rejected_batch_is_narrated(
        self, mock_completion, engine, tool_chat, threads, gate, make_response, make_tool_call, tool_calls_seen
    ):
        chat = tool_chat.model_copy(update={"chat_params": ChatParams(confirmation=True, debounce_seconds=0)})
        mock_completion.return_value = make_response(None, [make_tool_call("get_answer", {"question": "q"}, call_id="call_r")])
        transport = ApprovingTransport(gate, "u1", approved=False)
        thread = threads.get_or_create("1")

        result = await engine.answer(chat, thread, "go", transport=transport, user_id="u1")

        assert result.cancelled
        assert result.content == CANCELLED_MESSAGE
        assert tool_calls_seen == []
        assert not any(m["role"] == "tool" for m in thread.messages)
        notes = [m["content"] for m in thread.messages if m["role"] == "system"]
        assert len(notes) == 1
        assert notes[0].startswith("tool call cancelled: ")
        payload = json.loads(notes[0][len("tool call cancelled: "):])
        assert payload["id"] == "call_r"
        assert payload["function"]["name"] == "get_answer"
        assert thread.messages[-2]["role"] == "assistant"

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_approved_batch_runs_once(
        self, mock_completion, engine, tool_chat, threads, gate, make_response, make_tool_call, tool_calls_seen
    ):
        chat = tool_chat.model_copy(update={"chat_params": ChatParams(confirmation=True, debounce_seconds=0)})
        mock_completion.side_effect = [
            make_response(None, [make_tool_call("get_answer", {"question": "q"})]),
            make_response("approved and done"),
        ]
        transport = ApprovingTransport(gate, "u1", approved=True)

        result = await engine.answer(chat, threads.get_or_create("1"), "go", transport=transport, user_id="u1")

        assert result.content == "approved and done"
        assert tool_calls_seen == [{"question": "q"}]
        assert len(transport.confirmations["1"]) == 1

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_noconfirm_keyword_skips_gate(
        self, mock_completion, engine, tool_chat, threads, gate, make_response, make_tool_call, tool_calls_seen
    ):
        chat = tool_chat.model_copy(update={"chat_params": ChatParams(confirmation=True, debounce_seconds=0)})
        mock_completion.side_effect = [
            make_response(None, [make_tool_call("get_answer", {})]),
            make_response("done"),
        ]
        transport = CollectingTransport()
        thread = threads.get_or_create("1")

        await engine.answer(chat, thread, "noconfirm go", transport=transport, user_id="u1")

        assert tool_calls_seen == [{}]
        assert transport.confirmations == {}
        assert thread.messages[0]["content"] == "go"
        assert chat.chat_params.confirmation is True


class TestModelResolution:
    def test_named_model_alias(self, chat_config, threads):
        config = GatewayConfig(
            chats=[chat_config],
            models=[NamedModel(name="fast", model="openai/gpt-4.1-nano", api_key_env="FAST_KEY", fallback_models=["openai/gpt-4.1-mini"])],
        )
        engine = AgentEngine(config, threads, ToolRegistry(config, threads))
        with patch.dict("os.environ", {"FAST_KEY": "sk-test"}):
            client = engine.client_for(chat_config.model_copy(update={"model": "fast"}))

        assert client.model == "openai/gpt-4.1-nano"
        assert client.api_key == "sk-test"
        assert client.fallback_models == ["openai/gpt-4.1-mini"]

    def test_thread_override_then_default(self, engine, chat_config, threads):
        thread = threads.get_or_create("1")
        assert engine.client_for(chat_config, thread).model == "gpt-4.1-mini"

        thread.completion_params.model = "anthropic/claude-sonnet-4"
        thread.completion_params.temperature = 0.2
        client = engine.client_for(chat_config, thread)
        assert client.model == "anthropic/claude-sonnet-4"
        assert client.temperature == 0.2
