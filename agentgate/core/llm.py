"""
LiteLLM wrapper for async completion calls.
"""

import asyncio
import logging
import re
from typing import Any

import litellm
from litellm import acompletion
from litellm.exceptions import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    BadRequestError,
    BudgetExceededError,
    ContextWindowExceededError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailableError,
)
from litellm.types.utils import ModelResponse

from agentgate.core.cancellation import CancellationToken

# Suppress LiteLLM debug messages (e.g., "Provider List: ...")
litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)


_PROVIDER_KEY_HINTS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "azure": "AZURE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
}

_CREDIT_KEYWORDS = ("402", "credits", "insufficient", "budget")
_OVERFLOW_KEYWORDS = ("context_length_exceeded", "maximum context length", "context window")


def _extract_error_message(error: Exception) -> str:
    """Extract the most useful part of a LiteLLM error message."""
    msg = str(error)
    match = re.search(r'"message"\s*:\s*"([^"]+)"', msg)
    if match:
        return match.group(1)
    if len(msg) > 200:
        return msg[:200] + "..."
    return msg


class LLMError(Exception):
    """User-friendly LLM error with actionable guidance."""

    def __init__(self, message: str, original: Exception | None = None):
        self.original = original
        super().__init__(message)


class ContextOverflowError(LLMError):
    """The conversation no longer fits the model's context window."""


def _is_context_overflow(error: Exception) -> bool:
    if isinstance(error, ContextWindowExceededError):
        return True
    msg = str(error).lower()
    return isinstance(error, BadRequestError) and any(kw in msg for kw in _OVERFLOW_KEYWORDS)


def _friendly_llm_error(model: str, error: Exception | None) -> LLMError:
    """Convert a LiteLLM exception to a user-friendly error message."""
    provider = model.split("/")[0].lower()

    if error is None:
        return LLMError(f"No response from '{model}'.")

    if _is_context_overflow(error):
        return ContextOverflowError(
            f"Context too large for '{model}'. The conversation history will be reset.",
            original=error,
        )

    if isinstance(error, AuthenticationError):
        key_name = _PROVIDER_KEY_HINTS.get(provider, f"{provider.upper()}_API_KEY")
        return LLMError(
            f"Authentication failed for '{model}'. Check that {key_name} is set correctly.\n"
            f"  Run: agentgate config set {key_name}",
            original=error,
        )

    if isinstance(error, NotFoundError):
        return LLMError(
            f"Model '{model}' not found. Check the model name and provider.\n"
            f"  LiteLLM format: provider/model (e.g., openai/gpt-4.1-mini)",
            original=error,
        )

    if isinstance(error, RateLimitError):
        return LLMError(f"Rate limit exceeded for '{model}'. Wait a moment and try again.", original=error)

    if isinstance(error, BudgetExceededError):
        return LLMError(f"API budget/credits exhausted for '{model}'.", original=error)

    if isinstance(error, BadRequestError):
        return LLMError(
            f"Model '{model}' rejected the request.\n  Details: {_extract_error_message(error)}",
            original=error,
        )

    if isinstance(error, APIConnectionError):
        return LLMError(f"Cannot connect to {provider} API. Check your network connection.", original=error)

    if isinstance(error, ServiceUnavailableError):
        return LLMError(f"The {provider} API is temporarily unavailable. Try again in a moment.", original=error)

    if isinstance(error, APIError):
        return LLMError(f"API error from {provider}: {_extract_error_message(error)}", original=error)

    return LLMError(f"LLM error ({type(error).__name__}): {error}", original=error)


class LLMClient:
    """
    Async wrapper around LiteLLM with retry, failover and cancellation.

    Supports any provider that LiteLLM supports (openai/gpt-4.1-mini,
    anthropic/claude-sonnet-4-5, ollama/llama3, ...).
    """

    def __init__(
        self,
        model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        api_base: str | None = None,
        api_key: str | None = None,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        retry_backoff: float = 2.0,
        fallback_models: list[str] | None = None,
    ):
        """
        Initialize the LLM client.

        Args:
            model: LiteLLM model identifier
            temperature: Sampling temperature (0-2), provider default when None
            max_tokens: Maximum tokens in response
            api_base: Custom endpoint base URL
            api_key: Provider key, when not taken from the environment
            max_retries: Maximum number of retries on transient errors
            retry_delay: Initial delay between retries (seconds)
            retry_backoff: Exponential backoff multiplier
            fallback_models: Tried in order when the primary exhausts retries
        """
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_base = api_base
        self.api_key = api_key
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff
        self.fallback_models = fallback_models or []

    async def achat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ModelResponse | None:
        """
        Send a chat completion request with automatic retry and model failover.

        Args:
            messages: OpenAI-format message dicts
            tools: Optional tool definitions (OpenAI format)
            response_format: Optional structured-output schema
            cancel_token: Abort signal for the current turn

        Returns:
            LiteLLM ModelResponse, or None when the token fired first.

        Raises:
            ContextOverflowError: The prompt exceeds the context window
            LLMError: Any other unrecoverable failure
        """
        models = [self.model] + self.fallback_models
        last_error: Exception | None = None

        for i, model in enumerate(models):
            if i > 0:
                logger.warning("Falling back to model: %s", model)
            aborted, result, error = await self._try_model(model, messages, tools, response_format, cancel_token)
            if aborted:
                return None
            if result is not None:
                return result
            last_error = error

        raise _friendly_llm_error(self.model, last_error)

    async def _try_model(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        response_format: dict[str, Any] | None,
        cancel_token: CancellationToken | None,
    ) -> tuple[bool, ModelResponse | None, Exception | None]:
        """
        Try a single model with retries.

        Returns:
            (aborted, response, last_error). Raises LLMError immediately on
            non-transient errors.
        """
        kwargs: dict[str, Any] = {"model": model, "messages": messages}
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if response_format:
            kwargs["response_format"] = response_format

        token = cancel_token or CancellationToken()
        last_error: Exception | None = None
        delay = self.retry_delay

        for attempt in range(self.max_retries + 1):
            if token.cancelled:
                return True, None, None
            try:
                response = await token.run(acompletion(**kwargs))
                if response is None:
                    return True, None, None
                return False, response, None
            except (
                AuthenticationError,
                NotFoundError,
                BudgetExceededError,
                BadRequestError,
                ContextWindowExceededError,
            ) as e:
                raise _friendly_llm_error(model, e) from e
            except (RateLimitError, ServiceUnavailableError, APIConnectionError, APIError) as e:
                if any(kw in str(e).lower() for kw in _CREDIT_KEYWORDS):
                    raise _friendly_llm_error(model, e) from e
                last_error = e

            if attempt < self.max_retries:
                logger.warning(
                    "LLM call failed (attempt %d/%d, model %s): %s. Retrying in %.1fs...",
                    attempt + 1,
                    self.max_retries + 1,
                    model,
                    last_error,
                    delay,
                )
                if await token.wait(delay):
                    return True, None, None
                delay *= self.retry_backoff

        return False, None, last_error
