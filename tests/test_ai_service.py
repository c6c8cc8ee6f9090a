"""
Tests for AIService.
Covers: provider/key refusals, budget gate (explicit spend and ledger),
        model resolution, per-feature routing, API key check, estimation.
"""
from __future__ import annotations

import logging

import pytest

from pkm_companion.ai_service import NO_API_KEY_ERROR, NO_PROVIDER_ERROR, AIService
from pkm_companion.api_clients import LLMProvider
from pkm_companion.cost import CostLedger
from pkm_companion.errors import BudgetExceededError
from pkm_companion.events import EventBus
from pkm_companion.models import Feature, Message, ProviderResponse, RequestOptions
from pkm_companion.settings import AISettings, FeatureModelConfig


# ─────────────────────────────────────────────────────────────────────────────
# Fake provider
# ─────────────────────────────────────────────────────────────────────────────

class FakeProvider(LLMProvider):
    def __init__(self, id: str = "claude", content: str = "ok", tokens: int = 10):
        self.id = id
        self.content = content
        self.tokens = tokens
        self.calls: list[tuple[list[Message], str, RequestOptions]] = []
        self.key_checks: list[str] = []

    async def generate_text(self, messages, api_key, options):
        self.calls.append((messages, api_key, options))
        return ProviderResponse(success=True, content=self.content, tokens_used=self.tokens)

    async def test_api_key(self, api_key):
        self.key_checks.append(api_key)
        return api_key == "good"


def make_service(provider="claude", api_keys=None, budget_limit=None, ledger=None, **kw):
    settings = AISettings(
        provider=provider,
        api_keys={"claude": "sk-ant"} if api_keys is None else api_keys,
        budget_limit=budget_limit,
        **kw,
    )
    return AIService(settings, ledger=ledger)


@pytest.fixture()
def claude():
    return FakeProvider("claude")


# ─────────────────────────────────────────────────────────────────────────────
# Refusals
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_no_provider_registered():
    service = make_service()
    resp = await service.simple_generate("hi")
    assert resp.success is False
    assert resp.error == NO_PROVIDER_ERROR == "No provider selected"


@pytest.mark.asyncio
async def test_no_api_key(claude):
    service = make_service(api_keys={})
    service.register_provider(claude)
    resp = await service.simple_generate("hi")
    assert resp.success is False
    assert resp.error == NO_API_KEY_ERROR == "No API key configured"
    assert claude.calls == []


@pytest.mark.asyncio
async def test_blank_api_key_counts_as_missing(claude):
    service = make_service(api_keys={"claude": ""})
    service.register_provider(claude)
    resp = await service.simple_generate("hi")
    assert resp.error == NO_API_KEY_ERROR
    assert service.is_provider_configured("claude") is False


# ─────────────────────────────────────────────────────────────────────────────
# Budget gate
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_budget_exceeded_blocks_before_provider(claude):
    service = make_service(budget_limit=1.00)
    service.register_provider(claude)
    with pytest.raises(BudgetExceededError) as info:
        await service.simple_generate("hi", current_spend=1.00)
    assert info.value.current_spend == 1.00
    assert info.value.budget_limit == 1.00
    assert claude.calls == []


@pytest.mark.asyncio
async def test_budget_below_limit_passes(claude):
    service = make_service(budget_limit=1.00)
    service.register_provider(claude)
    resp = await service.simple_generate("hi", current_spend=0.50)
    assert resp.success is True
    assert len(claude.calls) == 1


@pytest.mark.asyncio
async def test_no_limit_never_blocks(claude):
    service = make_service(budget_limit=None)
    service.register_provider(claude)
    resp = await service.simple_generate("hi", current_spend=1_000_000.0)
    assert resp.success is True


@pytest.mark.asyncio
async def test_zero_limit_means_unlimited(claude):
    service = make_service(budget_limit=0)
    service.register_provider(claude)
    resp = await service.simple_generate("hi", current_spend=5.0)
    assert resp.success is True


@pytest.mark.asyncio
async def test_budget_gate_falls_back_to_ledger(claude):
    ledger = CostLedger(EventBus())
    service = make_service(budget_limit=3.0, ledger=ledger)
    service.register_provider(claude)
    assert (await service.simple_generate("first")).success is True

    ledger.track_usage("claude", "claude-sonnet", 1_000_000, 0, "f")   # $3
    with pytest.raises(BudgetExceededError):
        await service.simple_generate("second")
    assert len(claude.calls) == 1


@pytest.mark.asyncio
async def test_explicit_spend_overrides_ledger(claude):
    ledger = CostLedger(EventBus())
    ledger.track_usage("claude", "claude-sonnet", 1_000_000, 0, "f")   # $3
    service = make_service(budget_limit=3.0, ledger=ledger)
    service.register_provider(claude)
    resp = await service.simple_generate("hi", current_spend=0.0)
    assert resp.success is True


@pytest.mark.asyncio
async def test_missing_key_reported_before_budget(claude):
    service = make_service(api_keys={}, budget_limit=1.0)
    service.register_provider(claude)
    resp = await service.simple_generate("hi", current_spend=10.0)
    assert resp.error == NO_API_KEY_ERROR


# ─────────────────────────────────────────────────────────────────────────────
# Model resolution
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_current_model_fills_options(claude):
    service = make_service()
    service.register_provider(claude)
    await service.simple_generate("hi", system_prompt="sys",
                                  options=RequestOptions(temperature=0.7))
    messages, key, options = claude.calls[0]
    assert key == "sk-ant"
    assert options.model == "claude-sonnet-4-20250514"
    assert options.temperature == 0.7
    assert [m.role for m in messages] == ["system", "user"]


@pytest.mark.asyncio
async def test_explicit_model_is_kept(claude):
    service = make_service()
    service.register_provider(claude)
    await service.generate_text([Message("user", "x")], RequestOptions(model="claude-haiku"))
    assert claude.calls[0][2].model == "claude-haiku"


def test_current_provider_and_model_lookups(claude):
    service = make_service(models={"claude": "claude-3-5-haiku-20241022"})
    service.register_provider(claude)
    service.register_provider(FakeProvider("openai"))
    assert service.get_current_provider() is claude
    assert service.get_current_api_key() == "sk-ant"
    assert service.get_current_model() == "claude-3-5-haiku-20241022"
    assert service.get_available_providers() == ["claude", "openai"]


def test_update_settings_switches_provider(claude):
    service = make_service()
    openai = FakeProvider("openai")
    service.register_provider(claude)
    service.register_provider(openai)
    service.update_settings(AISettings(provider="openai", api_keys={"openai": "sk"}))
    assert service.get_current_provider() is openai
    assert service.settings.provider == "openai"


# ─────────────────────────────────────────────────────────────────────────────
# Per-feature routing
# ─────────────────────────────────────────────────────────────────────────────

def test_feature_config_defaults_to_active_provider():
    service = make_service()
    cfg = service.get_feature_config(Feature.CONTENT_ANALYSIS)
    assert cfg == FeatureModelConfig("claude", "claude-sonnet-4-20250514")


@pytest.mark.asyncio
async def test_feature_override_routes_to_other_provider(claude):
    gemini = FakeProvider("gemini")
    service = make_service(
        api_keys={"claude": "sk-ant", "gemini": "AIza"},
        feature_models={Feature.CONTENT_ANALYSIS: FeatureModelConfig("gemini", "gemini-2.0-flash")},
    )
    service.register_provider(claude)
    service.register_provider(gemini)

    await service.simple_generate_for_feature(
        Feature.CONTENT_ANALYSIS, "analyze", options=RequestOptions(model="ignored"))
    assert claude.calls == []
    _, key, options = gemini.calls[0]
    assert key == "AIza"
    assert options.model == "gemini-2.0-flash"

    await service.simple_generate_for_feature("permanent-note", "write")
    assert claude.calls[0][2].model == "claude-sonnet-4-20250514"


@pytest.mark.asyncio
async def test_feature_provider_without_key(claude):
    service = make_service(
        feature_models={"content-analysis": FeatureModelConfig("openai", "gpt-4o-mini")},
    )
    service.register_provider(claude)
    service.register_provider(FakeProvider("openai"))
    resp = await service.simple_generate_for_feature("content-analysis", "x")
    assert resp.error == NO_API_KEY_ERROR


@pytest.mark.asyncio
async def test_feature_provider_not_registered(claude):
    service = make_service(
        feature_models={"content-analysis": FeatureModelConfig("grok", "grok-3-mini")},
    )
    service.register_provider(claude)
    resp = await service.simple_generate_for_feature("content-analysis", "x")
    assert resp.error == NO_PROVIDER_ERROR


@pytest.mark.asyncio
async def test_feature_override_without_model_warns(claude, caplog):
    service = make_service(
        feature_models={"content-analysis": FeatureModelConfig("claude", "")},
    )
    service.register_provider(claude)
    with caplog.at_level(logging.WARNING, logger="pkm_companion.ai_service"):
        resp = await service.simple_generate_for_feature("content-analysis", "x")
    assert resp.success is True
    assert claude.calls[0][2].model is None
    (record,) = [r for r in caplog.records if r.name == "pkm_companion.ai_service"]
    assert record.levelno == logging.WARNING
    assert "content-analysis" in record.getMessage()


@pytest.mark.asyncio
async def test_feature_generation_is_budget_gated(claude):
    service = make_service(budget_limit=2.0)
    service.register_provider(claude)
    with pytest.raises(BudgetExceededError):
        await service.simple_generate_for_feature("permanent-note", "x", current_spend=2.5)
    assert claude.calls == []


# ─────────────────────────────────────────────────────────────────────────────
# API key check & estimation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_test_current_api_key(claude):
    service = make_service(api_keys={"claude": "good"})
    service.register_provider(claude)
    assert await service.test_current_api_key() is True
    assert claude.key_checks == ["good"]


@pytest.mark.asyncio
async def test_test_current_api_key_without_provider():
    service = make_service()
    assert await service.test_current_api_key() is False


def test_estimate_cost_uses_current_model():
    service = make_service()
    assert service.estimate_cost(1_000_000, 1_000_000) == pytest.approx(18.0)


def test_estimate_cost_unknown_model_is_zero():
    service = make_service(models={"claude": "claude-next"})
    assert service.estimate_cost(1000, 1000) == 0.0
