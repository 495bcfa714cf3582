"""
MemCore — LLM Client Abstraction
===================================
Thin abstraction layer for the chat-completion calls made by the
LLM-backed capabilities (extractors, query expansion, rerank, dedup
confirmation).

Usage:
    client = MockLLMClient(default_response="SAME duplicate")
    response = await client.complete("Are these the same?")
    print(response.content)  # "SAME duplicate"

    # Real client:
    client = AzureOpenAIClient.from_settings()
    response = await client.complete("Summarize ...", system="You extract memories.")
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Callable

from memcore.core.config import Settings, get_settings
from memcore.core.exceptions import LLMError, MissingConfigurationError
from memcore.core.logging import get_logger

logger = get_logger(__name__)


# ── Response Model ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class LLMResponse:
    """Response from an LLM completion call."""

    content: str
    tokens_used: int
    model: str
    metadata: dict[str, Any] = field(default_factory=dict)


# ── Abstract Base ───────────────────────────────────────────────────────


class BaseLLMClient(abc.ABC):
    """Abstract chat-completion client."""

    @abc.abstractmethod
    async def complete(
        self,
        prompt: str,
        model: str | None = None,
        max_tokens: int = 2048,
        system: str | None = None,
    ) -> LLMResponse:
        """
        Send a completion request to the LLM.

        Parameters
        ----------
        prompt
            The user message.
        model
            Model / deployment identifier.  None uses the default.
        max_tokens
            Maximum tokens in the response.
        system
            Optional system message sent before the prompt.

        Returns
        -------
        LLMResponse
        """
        ...

    @abc.abstractmethod
    async def count_tokens(self, text: str) -> int:
        """Estimate token count for the given text."""
        ...


# ── Mock Implementation ────────────────────────────────────────────────


class MockLLMClient(BaseLLMClient):
    """
    Mock LLM client for testing.

    Returns ``default_response``, or the result of ``responder(prompt)``
    when a responder is given.  Every prompt is recorded in ``calls``.
    Token counting uses a word-based heuristic (about 1.3 tokens per word).
    """

    def __init__(
        self,
        default_response: str = "Mock LLM response",
        default_model: str = "mock-model",
        tokens_per_response: int = 100,
        responder: Callable[[str], str] | None = None,
    ) -> None:
        self._default_response = default_response
        self._default_model = default_model
        self._tokens_per_response = tokens_per_response
        self._responder = responder
        self.calls: list[str] = []

    async def complete(
        self,
        prompt: str,
        model: str | None = None,
        max_tokens: int = 2048,
        system: str | None = None,
    ) -> LLMResponse:
        """Return the canned (or responder-produced) response."""
        self.calls.append(prompt)
        content = (
            self._responder(prompt) if self._responder else self._default_response
        )
        return LLMResponse(
            content=content,
            tokens_used=self._tokens_per_response,
            model=model or self._default_model,
            metadata={"prompt_length": len(prompt)},
        )

    async def count_tokens(self, text: str) -> int:
        """Estimate tokens using simple word-based heuristic."""
        word_count = len(text.split())
        return max(1, int(word_count * 1.3))


# ── Azure OpenAI Implementation ─────────────────────────────────────────


class AzureOpenAIClient(BaseLLMClient):
    """
    Azure OpenAI chat-completion client.

    Requires the following environment variables:
        - MEMCORE_AZURE_OPENAI_API_KEY
        - MEMCORE_AZURE_OPENAI_ENDPOINT
        - MEMCORE_AZURE_OPENAI_DEPLOYMENT_NAME
    """

    def __init__(
        self,
        api_key: str,
        endpoint: str,
        api_version: str,
        deployment_name: str,
        temperature: float = 0.0,
    ) -> None:
        self._api_key = api_key
        self._endpoint = endpoint
        self._api_version = api_version
        self._deployment_name = deployment_name
        self._temperature = temperature
        self._client = None
        self._encoding = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "AzureOpenAIClient":
        """Create an AzureOpenAIClient from application settings."""
        settings = settings or get_settings()
        if not settings.azure_openai_api_key:
            raise MissingConfigurationError(
                "MEMCORE_AZURE_OPENAI_API_KEY is required for AzureOpenAIClient"
            )
        if not settings.azure_openai_endpoint:
            raise MissingConfigurationError(
                "MEMCORE_AZURE_OPENAI_ENDPOINT is required for AzureOpenAIClient"
            )
        if not settings.azure_openai_deployment_name:
            raise MissingConfigurationError(
                "MEMCORE_AZURE_OPENAI_DEPLOYMENT_NAME is required for AzureOpenAIClient"
            )
        return cls(
            api_key=settings.azure_openai_api_key.get_secret_value(),
            endpoint=settings.azure_openai_endpoint,
            api_version=settings.azure_openai_api_version,
            deployment_name=settings.azure_openai_deployment_name,
        )

    def _get_client(self):
        """Lazily initialize the OpenAI client."""
        if self._client is None:
            from openai import AsyncAzureOpenAI
            self._client = AsyncAzureOpenAI(
                api_key=self._api_key,
                azure_endpoint=self._endpoint,
                api_version=self._api_version,
            )
        return self._client

    def _get_encoding(self):
        """Lazily initialize the tiktoken encoding."""
        if self._encoding is None:
            import tiktoken
            self._encoding = tiktoken.get_encoding("cl100k_base")
        return self._encoding

    async def complete(
        self,
        prompt: str,
        model: str | None = None,
        max_tokens: int = 2048,
        system: str | None = None,
    ) -> LLMResponse:
        """Send a chat completion request to Azure OpenAI."""
        client = self._get_client()
        deployment = model or self._deployment_name

        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        logger.debug(
            "llm.complete.start",
            deployment=deployment,
            prompt_length=len(prompt),
            max_tokens=max_tokens,
        )

        try:
            response = await client.chat.completions.create(
                model=deployment,
                messages=messages,
                max_tokens=max_tokens,
                temperature=self._temperature,
            )
        except Exception as exc:
            logger.error(
                "llm.complete.error",
                deployment=deployment,
                error=str(exc),
            )
            raise LLMError(f"Azure OpenAI completion failed: {exc}") from exc

        content = ""
        if response.choices:
            content = response.choices[0].message.content or ""
        usage = response.usage
        tokens_used = usage.total_tokens if usage else 0

        logger.debug(
            "llm.complete.success",
            deployment=deployment,
            tokens_used=tokens_used,
            response_length=len(content),
        )

        return LLMResponse(
            content=content,
            tokens_used=tokens_used,
            model=deployment,
            metadata={
                "prompt_tokens": usage.prompt_tokens if usage else 0,
                "completion_tokens": usage.completion_tokens if usage else 0,
                "finish_reason": response.choices[0].finish_reason if response.choices else None,
            },
        )

    async def count_tokens(self, text: str) -> int:
        """Count tokens using tiktoken."""
        encoding = self._get_encoding()
        return len(encoding.encode(text))
