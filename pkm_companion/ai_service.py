"""
AIService — single entry point for model completions.
=====================================================
Resolves which provider/model backs a request (globally or per feature),
applies the budget gate and forwards to the registered adapter.

Two kinds of refusal, deliberately different:
  * configuration problems ("No provider selected", "No API key configured")
    come back as ProviderResponse(success=False) so callers can show a message;
  * a spent budget raises BudgetExceededError before any adapter is touched.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Optional

from .api_clients import LLMProvider
from .errors import BudgetExceededError
from .models import Feature, Message, ProviderResponse, RequestOptions, calculate_cost
from .settings import AISettings, FeatureModelConfig

if TYPE_CHECKING:
    from .cost import CostLedger

logger = logging.getLogger("pkm_companion.ai_service")

NO_PROVIDER_ERROR = "No provider selected"
NO_API_KEY_ERROR = "No API key configured"


def build_messages(user_prompt: str, system_prompt: Optional[str] = None) -> list[Message]:
    messages = []
    if system_prompt:
        messages.append(Message("system", system_prompt))
    messages.append(Message("user", user_prompt))
    return messages


class AIService:
    """
    Orchestration facade over the provider registry.

    When a CostLedger is attached and the caller passes no explicit
    current_spend, the ledger's running total is used for the budget gate.
    """

    def __init__(self, settings: AISettings, ledger: Optional["CostLedger"] = None) -> None:
        self._settings = settings
        self._ledger = ledger
        self._providers: dict[str, LLMProvider] = {}

    # ── Registry & settings ──────────────────────────────────────────────────

    def register_provider(self, provider: LLMProvider) -> None:
        if provider.id in self._providers:
            logger.debug("Replacing provider adapter %r", provider.id)
        self._providers[provider.id] = provider

    @property
    def settings(self) -> AISettings:
        return self._settings

    def update_settings(self, settings: AISettings) -> None:
        self._settings = settings

    def get_available_providers(self) -> list[str]:
        return list(self._providers)

    def is_provider_configured(self, provider: str) -> bool:
        return bool(self._settings.api_key_for(provider))

    def get_current_provider(self) -> Optional[LLMProvider]:
        return self._providers.get(self._settings.provider)

    def get_current_api_key(self) -> Optional[str]:
        return self._settings.api_key_for(self._settings.provider)

    def get_current_model(self) -> Optional[str]:
        return self._settings.model_for(self._settings.provider)

    def get_feature_config(self, feature: str | Feature) -> FeatureModelConfig:
        """Feature override if one is configured, else the active provider and its model."""
        key = feature.value if isinstance(feature, Feature) else str(feature)
        override = self._settings.feature_models.get(key)
        if override is not None:
            return override
        provider = self._settings.provider
        return FeatureModelConfig(provider=provider, model=self._settings.model_for(provider) or "")

    async def test_current_api_key(self) -> bool:
        provider = self.get_current_provider()
        api_key = self.get_current_api_key()
        if provider is None or not api_key:
            return False
        return await provider.test_api_key(api_key)

    # ── Budget gate ──────────────────────────────────────────────────────────

    def check_budget(self, current_spend: Optional[float] = None) -> None:
        """Raise BudgetExceededError if spend is at or above the configured limit."""
        limit = self._settings.budget_limit
        if not limit or limit <= 0:
            return
        if current_spend is None and self._ledger is not None:
            current_spend = self._ledger.get_current_spend()
        if current_spend is not None and current_spend >= limit:
            logger.warning("Budget gate closed: spent $%.4f of $%.2f", current_spend, limit)
            raise BudgetExceededError("Budget limit exceeded", current_spend, limit)

    # ── Generation ───────────────────────────────────────────────────────────

    async def generate_text(self, messages: list[Message],
                            options: Optional[RequestOptions] = None,
                            current_spend: Optional[float] = None) -> ProviderResponse:
        provider = self.get_current_provider()
        if provider is None:
            return ProviderResponse.failure(NO_PROVIDER_ERROR)
        api_key = self.get_current_api_key()
        if not api_key:
            return ProviderResponse.failure(NO_API_KEY_ERROR)

        self.check_budget(current_spend)

        options = options or RequestOptions()
        merged = replace(options, model=options.model or self.get_current_model())
        logger.debug("generate_text via %s/%s (%d messages)",
                     provider.id, merged.model, len(messages))
        return await provider.generate_text(messages, api_key, merged)

    async def simple_generate(self, user_prompt: str,
                              system_prompt: Optional[str] = None,
                              options: Optional[RequestOptions] = None,
                              current_spend: Optional[float] = None) -> ProviderResponse:
        return await self.generate_text(build_messages(user_prompt, system_prompt),
                                        options, current_spend)

    async def simple_generate_for_feature(self, feature: str | Feature, user_prompt: str,
                                          system_prompt: Optional[str] = None,
                                          options: Optional[RequestOptions] = None,
                                          current_spend: Optional[float] = None) -> ProviderResponse:
        """
        Generate with the provider/model bound to `feature`.

        This is how feature tiers are honoured, e.g. an economical model for
        bulk content analysis and a premium one for permanent notes. The
        resolved model always wins over options.model.
        """
        config = self.get_feature_config(feature)
        provider = self._providers.get(config.provider)
        if provider is None:
            return ProviderResponse.failure(NO_PROVIDER_ERROR)
        api_key = self._settings.api_key_for(config.provider)
        if not api_key:
            return ProviderResponse.failure(NO_API_KEY_ERROR)

        self.check_budget(current_spend)

        if not config.model:
            logger.warning("No model configured for feature %s on %s; using the adapter default",
                           feature, config.provider)
        merged = replace(options or RequestOptions(), model=config.model or None)
        logger.debug("Feature %s → %s/%s", feature, config.provider, merged.model)
        return await provider.generate_text(build_messages(user_prompt, system_prompt),
                                            api_key, merged)

    # ── Estimation ───────────────────────────────────────────────────────────

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """USD for the given token counts at the current model's rates (0 if unknown)."""
        model = self.get_current_model()
        if not model:
            return 0.0
        return calculate_cost(model, input_tokens, output_tokens)
