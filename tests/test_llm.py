"""
Tests for the completion client: retry, failover, cancellation and friendly errors.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    ContextWindowExceededError,
    RateLimitError,
    ServiceUnavailableError,
)

from agentgate.core.cancellation import CancellationToken
from agentgate.core.llm import ContextOverflowError, LLMClient, LLMError

MESSAGES = [{"role": "user", "content": "test"}]


class TestRetry:
    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_success_no_retry(self, mock_completion):
        mock_response = MagicMock()
        mock_completion.return_value = mock_response

        client = LLMClient("test-model", max_retries=3, retry_delay=0.01)
        result = await client.achat(MESSAGES)

        assert result == mock_response
        assert mock_completion.call_count == 1

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_retry_on_rate_limit(self, mock_completion):
        mock_response = MagicMock()
        mock_completion.side_effect = [
            RateLimitError("Rate limited", "provider", "model"),
            RateLimitError("Rate limited", "provider", "model"),
            mock_response,
        ]

        client = LLMClient("test-model", max_retries=3, retry_delay=0.01)
        result = await client.achat(MESSAGES)

        assert result == mock_response
        assert mock_completion.call_count == 3

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_falls_back_after_retries(self, mock_completion):
        mock_response = MagicMock()

        async def by_model(**kwargs):
            if kwargs["model"] == "primary":
                raise ServiceUnavailableError("down", "provider", "primary")
            return mock_response

        mock_completion.side_effect = by_model

        client = LLMClient("primary", max_retries=1, retry_delay=0.01, fallback_models=["backup"])
        result = await client.achat(MESSAGES)

        assert result == mock_response
        models = [c.kwargs["model"] for c in mock_completion.call_args_list]
        assert models == ["primary", "primary", "backup"]

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_exhausted_retries_raise_llm_error(self, mock_completion):
        mock_completion.side_effect = RateLimitError("Rate limited", "openai", "gpt-4.1-mini")

        client = LLMClient("openai/gpt-4.1-mini", max_retries=1, retry_delay=0.01)
        with pytest.raises(LLMError, match="Rate limit exceeded"):
            await client.achat(MESSAGES)
        assert mock_completion.call_count == 2

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_auth_error_not_retried(self, mock_completion):
        mock_completion.side_effect = AuthenticationError("bad key", "anthropic", "claude")

        client = LLMClient("anthropic/claude-sonnet-4", max_retries=3, retry_delay=0.01)
        with pytest.raises(LLMError) as exc_info:
            await client.achat(MESSAGES)

        assert "ANTHROPIC_API_KEY" in str(exc_info.value)
        assert isinstance(exc_info.value.original, AuthenticationError)
        assert mock_completion.call_count == 1


class TestContextOverflow:
    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_context_window_error(self, mock_completion):
        mock_completion.side_effect = ContextWindowExceededError("too long", "gpt-4.1-mini", "openai")

        with pytest.raises(ContextOverflowError):
            await LLMClient("gpt-4.1-mini").achat(MESSAGES)

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_bad_request_mentioning_context_length(self, mock_completion):
        mock_completion.side_effect = BadRequestError(
            "This model's maximum context length is 8192 tokens", "gpt-4.1-mini", "openai"
        )

        with pytest.raises(ContextOverflowError):
            await LLMClient("gpt-4.1-mini").achat(MESSAGES)


class TestRequestShape:
    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_kwargs(self, mock_completion):
        tools = [{"type": "function", "function": {"name": "t", "parameters": {}}}]
        fmt = {"type": "json_object"}

        client = LLMClient("m", temperature=0.3, max_tokens=100, api_base="http://local", api_key="k")
        await client.achat(MESSAGES, tools=tools, response_format=fmt)

        kwargs = mock_completion.call_args.kwargs
        assert kwargs["model"] == "m"
        assert kwargs["temperature"] == 0.3
        assert kwargs["max_tokens"] == 100
        assert kwargs["api_base"] == "http://local"
        assert kwargs["api_key"] == "k"
        assert kwargs["tools"] == tools
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["response_format"] == fmt

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_unset_options_omitted(self, mock_completion):
        await LLMClient("m").achat(MESSAGES)
        kwargs = mock_completion.call_args.kwargs
        for key in ("temperature", "max_tokens", "api_base", "tools", "tool_choice", "response_format"):
            assert key not in kwargs


class TestCancellation:
    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_cancel_abandons_request(self, mock_completion):
        started = asyncio.Event()

        async def slow(**kwargs):
            started.set()
            await asyncio.sleep(10)

        mock_completion.side_effect = slow
        token = CancellationToken()

        call = asyncio.create_task(LLMClient("m").achat(MESSAGES, cancel_token=token))
        await started.wait()
        token.cancel("superseded")

        assert await asyncio.wait_for(call, 1) is None

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_already_cancelled_never_calls(self, mock_completion):
        token = CancellationToken()
        token.cancel()

        assert await LLMClient("m").achat(MESSAGES, cancel_token=token) is None
        mock_completion.assert_not_called()

    @pytest.mark.asyncio
    @patch("agentgate.core.llm.acompletion", new_callable=AsyncMock)
    async def test_cancel_during_backoff(self, mock_completion):
        mock_completion.side_effect = RateLimitError("Rate limited", "provider", "model")
        token = CancellationToken()

        call = asyncio.create_task(LLMClient("m", max_retries=3, retry_delay=5).achat(MESSAGES, cancel_token=token))
        await asyncio.sleep(0.05)
        token.cancel()

        assert await asyncio.wait_for(call, 1) is None
        assert mock_completion.call_count == 1
