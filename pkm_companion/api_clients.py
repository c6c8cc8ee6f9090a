"""
API Clients — uniform provider adapters for Anthropic, OpenAI, Google, xAI
===========================================================================
Each vendor SDK has its own idiom. Every adapter here normalizes it into the
same contract:

    await provider.generate_text(messages, api_key, options) -> ProviderResponse
    await provider.test_api_key(api_key) -> bool

AIService depends only on LLMProvider, never on a concrete adapter.

SDKs are imported lazily, the first time a client is built for a key, so a
missing optional SDK only disables its own provider. Tests (and hosts with
their own transport) can pass client_factory to bypass the SDK entirely.

Adapters never raise for backend trouble: network errors, timeouts and
malformed payloads come back as ProviderResponse(success=False, error=...).
Each adapter bounds its own calls with `timeout`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from .models import (
    PROVIDER_CONFIGS, Message, ProviderResponse, ProviderType, RequestOptions,
)

logger = logging.getLogger("pkm_companion.api")

DEFAULT_TIMEOUT: float = 60.0
DEFAULT_MAX_TOKENS: int = 4096

ClientFactory = Callable[[str], Any]


class LLMProvider(ABC):
    """Contract every backend adapter implements."""

    id: str

    @abstractmethod
    async def generate_text(self, messages: list[Message], api_key: str,
                            options: RequestOptions) -> ProviderResponse:
        ...

    @abstractmethod
    async def test_api_key(self, api_key: str) -> bool:
        ...


def split_system(messages: list[Message]) -> tuple[str, list[Message]]:
    """Separate system messages (joined) from the conversational turns."""
    system = "\n\n".join(m.content for m in messages if m.role == "system")
    return system, [m for m in messages if m.role != "system"]


class BaseProvider(LLMProvider):
    """
    Shared plumbing: per-key client cache, default model, latency logging and
    exception → unsuccessful response conversion.
    """

    id: str = ""

    def __init__(self, client_factory: Optional[ClientFactory] = None,
                 timeout: float = DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout
        self._client_factory = client_factory
        self._clients: dict[str, Any] = {}

    @property
    def default_model(self) -> str:
        return PROVIDER_CONFIGS[ProviderType(self.id)].default_model

    def _client(self, api_key: str) -> Any:
        client = self._clients.get(api_key)
        if client is None:
            factory = self._client_factory or self._build_client
            client = factory(api_key)
            self._clients[api_key] = client
            logger.info("%s client initialized", self.id)
        return client

    @abstractmethod
    def _build_client(self, api_key: str) -> Any:
        """Construct the vendor SDK client for api_key."""

    @abstractmethod
    async def _complete(self, client: Any, messages: list[Message],
                        options: RequestOptions) -> ProviderResponse:
        """Issue one completion request through the SDK client."""

    async def generate_text(self, messages: list[Message], api_key: str,
                            options: RequestOptions) -> ProviderResponse:
        if not messages:
            return ProviderResponse.failure("No messages to send")
        if not options.model:
            options = RequestOptions(model=self.default_model,
                                     temperature=options.temperature,
                                     max_tokens=options.max_tokens,
                                     extra=options.extra)
        start = time.monotonic()
        try:
            client = self._client(api_key)
            response = await self._complete(client, messages, options)
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s call to %s failed: %s", self.id, options.model, exc)
            return ProviderResponse.failure(f"{type(exc).__name__}: {exc}")
        latency_ms = (time.monotonic() - start) * 1000
        logger.debug("%s %s answered in %.0fms (tokens=%s)",
                     self.id, options.model, latency_ms, response.tokens_used)
        return response

    async def test_api_key(self, api_key: str) -> bool:
        if not api_key:
            return False
        response = await self.generate_text(
            [Message("user", "ping")], api_key,
            RequestOptions(model=self.default_model, max_tokens=1),
        )
        if not response.success:
            logger.info("%s API key check failed: %s", self.id, response.error)
        return response.success


# ─────────────────────────────────────────────────────────────────────────────
# Anthropic
# ─────────────────────────────────────────────────────────────────────────────

class ClaudeProvider(BaseProvider):
    id = ProviderType.CLAUDE.value

    def _build_client(self, api_key: str) -> Any:
        from anthropic import AsyncAnthropic
        return AsyncAnthropic(api_key=api_key, timeout=self.timeout)

    async def _complete(self, client: Any, messages: list[Message],
                        options: RequestOptions) -> ProviderResponse:
        system, turns = split_system(messages)
        kwargs: dict[str, Any] = {
            "model": options.model,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": [m.to_dict() for m in turns],
            **options.extra,
        }
        if system:
            kwargs["system"] = system
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature

        response = await client.messages.create(**kwargs)
        text = ""
        for block in response.content:
            if hasattr(block, "text"):
                text += block.text
        usage = response.usage
        tokens = (usage.input_tokens + usage.output_tokens) if usage else None
        return ProviderResponse(success=True, content=text, tokens_used=tokens)


# ─────────────────────────────────────────────────────────────────────────────
# OpenAI (and OpenAI-compatible endpoints)
# ─────────────────────────────────────────────────────────────────────────────

class OpenAIProvider(BaseProvider):
    id = ProviderType.OPENAI.value
    base_url: Optional[str] = None

    def _build_client(self, api_key: str) -> Any:
        from openai import AsyncOpenAI
        kwargs: dict[str, Any] = {"api_key": api_key, "timeout": self.timeout}
        if self.base_url:
            kwargs["base_url"] = self.base_url
        return AsyncOpenAI(**kwargs)

    async def _complete(self, client: Any, messages: list[Message],
                        options: RequestOptions) -> ProviderResponse:
        kwargs: dict[str, Any] = {
            "model": options.model,
            "messages": [m.to_dict() for m in messages],
            **options.extra,
        }
        if options.max_tokens is not None:
            kwargs["max_tokens"] = options.max_tokens
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature

        response = await client.chat.completions.create(**kwargs)
        if not response.choices:
            return ProviderResponse.failure("Empty response: no choices returned")
        choice = response.choices[0]
        usage = response.usage
        return ProviderResponse(
            success=True,
            content=choice.message.content or "",
            tokens_used=usage.total_tokens if usage else None,
        )


class GrokProvider(OpenAIProvider):
    """xAI exposes an OpenAI-compatible API."""
    id = ProviderType.GROK.value
    base_url = PROVIDER_CONFIGS[ProviderType.GROK].endpoint


# ─────────────────────────────────────────────────────────────────────────────
# Google
# ─────────────────────────────────────────────────────────────────────────────

class GeminiProvider(BaseProvider):
    id = ProviderType.GEMINI.value

    def _build_client(self, api_key: str) -> Any:
        from google import genai
        return genai.Client(api_key=api_key)

    async def _complete(self, client: Any, messages: list[Message],
                        options: RequestOptions) -> ProviderResponse:
        system, turns = split_system(messages)
        contents = [
            {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
            for m in turns
        ]
        config: dict[str, Any] = dict(options.extra)
        if options.max_tokens is not None:
            config["max_output_tokens"] = options.max_tokens
        if options.temperature is not None:
            config["temperature"] = options.temperature
        if system:
            config["system_instruction"] = system

        # google-genai's sync API; run in executor and bound it ourselves
        loop = asyncio.get_running_loop()
        response = await asyncio.wait_for(
            loop.run_in_executor(
                None,
                lambda: client.models.generate_content(
                    model=options.model, contents=contents, config=config or None,
                ),
            ),
            timeout=self.timeout,
        )

        tokens = None
        meta = getattr(response, "usage_metadata", None)
        if meta:
            tokens = getattr(meta, "total_token_count", None)
            if tokens is None:
                tokens = ((getattr(meta, "prompt_token_count", 0) or 0)
                          + (getattr(meta, "candidates_token_count", 0) or 0))
        return ProviderResponse(success=True, content=response.text or "", tokens_used=tokens)


# ─────────────────────────────────────────────────────────────────────────────
# Registry helpers
# ─────────────────────────────────────────────────────────────────────────────

PROVIDER_CLASSES: dict[str, type[BaseProvider]] = {
    ProviderType.CLAUDE.value: ClaudeProvider,
    ProviderType.OPENAI.value: OpenAIProvider,
    ProviderType.GEMINI.value: GeminiProvider,
    ProviderType.GROK.value:   GrokProvider,
}


def create_provider(provider_type: str | ProviderType, **kwargs: Any) -> BaseProvider:
    key = provider_type.value if isinstance(provider_type, ProviderType) else str(provider_type)
    try:
        cls = PROVIDER_CLASSES[key]
    except KeyError:
        raise ValueError(f"Unknown provider type: {key}") from None
    return cls(**kwargs)


def create_all_providers(**kwargs: Any) -> dict[str, BaseProvider]:
    return {key: cls(**kwargs) for key, cls in PROVIDER_CLASSES.items()}
