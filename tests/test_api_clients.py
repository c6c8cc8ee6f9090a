"""
Tests for the provider adapters.
Covers: request shaping per vendor SDK, token accounting, default models,
        failure normalization, client caching, API key checks, registry.

No network: every adapter gets a client_factory returning a fake SDK client.
"""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from pkm_companion.api_clients import (
    PROVIDER_CLASSES, ClaudeProvider, GeminiProvider, GrokProvider,
    OpenAIProvider, create_all_providers, create_provider, split_system,
)
from pkm_companion.models import Message, RequestOptions


# ─────────────────────────────────────────────────────────────────────────────
# Fake SDK clients
# ─────────────────────────────────────────────────────────────────────────────

def fake_anthropic(text="hello", input_tokens=10, output_tokens=5):
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    ))
    return client


def fake_openai(text="hi", total_tokens=42, choices=True):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))] if choices else [],
        usage=SimpleNamespace(total_tokens=total_tokens),
    ))
    return client


def fake_gemini(text="bonjour", total=None, prompt=7, candidates=3):
    client = MagicMock()
    client.models.generate_content = MagicMock(return_value=SimpleNamespace(
        text=text,
        usage_metadata=SimpleNamespace(
            total_token_count=total,
            prompt_token_count=prompt,
            candidates_token_count=candidates,
        ),
    ))
    return client


CONVERSATION = [
    Message("system", "Be terse."),
    Message("user", "Question?"),
    Message("assistant", "Answer."),
    Message("user", "Follow-up?"),
]


# ─────────────────────────────────────────────────────────────────────────────
# split_system
# ─────────────────────────────────────────────────────────────────────────────

def test_split_system_joins_system_messages():
    system, turns = split_system([Message("system", "a"), Message("user", "u"),
                                  Message("system", "b")])
    assert system == "a\n\nb"
    assert turns == [Message("user", "u")]


# ─────────────────────────────────────────────────────────────────────────────
# Claude
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_claude_request_shape_and_tokens():
    client = fake_anthropic()
    provider = ClaudeProvider(client_factory=lambda key: client)
    resp = await provider.generate_text(CONVERSATION, "sk-ant",
                                        RequestOptions(model="claude-x", temperature=0.2))
    assert resp.success is True
    assert resp.content == "hello"
    assert resp.tokens_used == 15

    kwargs = client.messages.create.await_args.kwargs
    assert kwargs["model"] == "claude-x"
    assert kwargs["system"] == "Be terse."
    assert kwargs["temperature"] == 0.2
    assert kwargs["max_tokens"] == 4096
    assert [m["role"] for m in kwargs["messages"]] == ["user", "assistant", "user"]


@pytest.mark.asyncio
async def test_claude_uses_default_model_when_none_given():
    client = fake_anthropic()
    provider = ClaudeProvider(client_factory=lambda key: client)
    await provider.generate_text([Message("user", "x")], "k", RequestOptions())
    kwargs = client.messages.create.await_args.kwargs
    assert kwargs["model"] == provider.default_model
    assert "system" not in kwargs
    assert "temperature" not in kwargs


@pytest.mark.asyncio
async def test_sdk_exception_becomes_failed_response():
    client = MagicMock()
    client.messages.create = AsyncMock(side_effect=ConnectionError("network down"))
    provider = ClaudeProvider(client_factory=lambda key: client)
    resp = await provider.generate_text([Message("user", "x")], "k", RequestOptions())
    assert resp.success is False
    assert resp.content == ""
    assert resp.error == "ConnectionError: network down"


@pytest.mark.asyncio
async def test_empty_message_list_is_rejected_without_calling_sdk():
    factory = MagicMock()
    provider = ClaudeProvider(client_factory=factory)
    resp = await provider.generate_text([], "k", RequestOptions())
    assert resp.success is False
    assert resp.error == "No messages to send"
    factory.assert_not_called()


@pytest.mark.asyncio
async def test_client_cached_per_api_key():
    factory = MagicMock(side_effect=lambda key: fake_anthropic())
    provider = ClaudeProvider(client_factory=factory)
    for key in ("k1", "k1", "k2"):
        await provider.generate_text([Message("user", "x")], key, RequestOptions())
    assert [c.args[0] for c in factory.call_args_list] == ["k1", "k2"]


# ─────────────────────────────────────────────────────────────────────────────
# OpenAI / Grok
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_openai_request_shape_and_tokens():
    client = fake_openai()
    provider = OpenAIProvider(client_factory=lambda key: client)
    resp = await provider.generate_text(CONVERSATION, "sk-x",
                                        RequestOptions(max_tokens=100, extra={"top_p": 0.5}))
    assert resp.success is True
    assert resp.content == "hi"
    assert resp.tokens_used == 42

    kwargs = client.chat.completions.create.await_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["max_tokens"] == 100
    assert kwargs["top_p"] == 0.5
    assert kwargs["messages"][0] == {"role": "system", "content": "Be terse."}
    assert "temperature" not in kwargs


@pytest.mark.asyncio
async def test_openai_empty_choices_is_failure():
    provider = OpenAIProvider(client_factory=lambda key: fake_openai(choices=False))
    resp = await provider.generate_text([Message("user", "x")], "k", RequestOptions())
    assert resp.success is False
    assert "no choices" in resp.error


@pytest.mark.asyncio
async def test_grok_is_openai_compatible_with_own_defaults():
    client = fake_openai(text="grokked")
    provider = GrokProvider(client_factory=lambda key: client)
    resp = await provider.generate_text([Message("user", "x")], "xai", RequestOptions())
    assert resp.content == "grokked"
    assert provider.id == "grok"
    assert provider.base_url == "https://api.x.ai/v1"
    assert client.chat.completions.create.await_args.kwargs["model"] == "grok-3-mini"


# ─────────────────────────────────────────────────────────────────────────────
# Gemini
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_gemini_request_shape_and_token_fallback():
    client = fake_gemini()
    provider = GeminiProvider(client_factory=lambda key: client)
    resp = await provider.generate_text(CONVERSATION, "AIza",
                                        RequestOptions(temperature=0.1, max_tokens=64))
    assert resp.success is True
    assert resp.content == "bonjour"
    assert resp.tokens_used == 10  # prompt + candidates when total is absent

    kwargs = client.models.generate_content.call_args.kwargs
    assert kwargs["model"] == "gemini-2.0-flash"
    assert [c["role"] for c in kwargs["contents"]] == ["user", "model", "user"]
    assert kwargs["config"] == {
        "max_output_tokens": 64, "temperature": 0.1, "system_instruction": "Be terse.",
    }


@pytest.mark.asyncio
async def test_gemini_prefers_total_token_count():
    provider = GeminiProvider(client_factory=lambda key: fake_gemini(total=99))
    resp = await provider.generate_text([Message("user", "x")], "k", RequestOptions())
    assert resp.tokens_used == 99


@pytest.mark.asyncio
async def test_gemini_without_options_sends_no_config():
    client = fake_gemini()
    provider = GeminiProvider(client_factory=lambda key: client)
    await provider.generate_text([Message("user", "x")], "k", RequestOptions())
    assert client.models.generate_content.call_args.kwargs["config"] is None


# ─────────────────────────────────────────────────────────────────────────────
# test_api_key
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_api_key_check_sends_minimal_request():
    client = fake_openai()
    provider = OpenAIProvider(client_factory=lambda key: client)
    assert await provider.test_api_key("sk-good") is True
    kwargs = client.chat.completions.create.await_args.kwargs
    assert kwargs["max_tokens"] == 1


@pytest.mark.asyncio
async def test_api_key_check_false_on_failure_or_blank():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=PermissionError("401"))
    provider = OpenAIProvider(client_factory=lambda key: client)
    assert await provider.test_api_key("sk-bad") is False
    assert await provider.test_api_key("") is False


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────

def test_create_provider_by_id():
    assert isinstance(create_provider("claude"), ClaudeProvider)
    assert isinstance(create_provider("gemini", timeout=5.0), GeminiProvider)
    assert create_provider("gemini", timeout=5.0).timeout == 5.0


def test_create_provider_unknown_raises():
    with pytest.raises(ValueError, match="Unknown provider type: mistral"):
        create_provider("mistral")


def test_create_all_providers_covers_every_backend():
    providers = create_all_providers()
    assert set(providers) == set(PROVIDER_CLASSES) == {"claude", "openai", "gemini", "grok"}
    assert all(p.id == key for key, p in providers.items())
