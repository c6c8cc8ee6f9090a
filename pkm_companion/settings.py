"""
AI settings — provider selection, credentials, per-feature models, budget.

The persisted shape (camelCase, see to_dict/from_dict) is owned by the host:
loading and saving it is not this package's job. from_env() exists for the
CLI and for scripts, and reads credentials from the environment / .env.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import ConfigurationError
from .models import PROVIDER_CONFIGS, Feature, ProviderType

logger = logging.getLogger("pkm_companion.settings")

# provider id → environment variables checked in order
API_KEY_ENV_VARS: dict[str, tuple[str, ...]] = {
    ProviderType.CLAUDE.value: ("ANTHROPIC_API_KEY",),
    ProviderType.OPENAI.value: ("OPENAI_API_KEY",),
    ProviderType.GEMINI.value: ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
    ProviderType.GROK.value:   ("XAI_API_KEY",),
}


def _default_models() -> dict[str, str]:
    return {p.value: cfg.default_model for p, cfg in PROVIDER_CONFIGS.items()}


@dataclass(frozen=True)
class FeatureModelConfig:
    provider: str
    model: str

    def to_dict(self) -> dict:
        return {"provider": self.provider, "model": self.model}


@dataclass
class AISettings:
    provider: str = ProviderType.CLAUDE.value
    api_keys: dict[str, str] = field(default_factory=dict)
    models: dict[str, str] = field(default_factory=_default_models)
    feature_models: dict[str, FeatureModelConfig] = field(default_factory=dict)
    budget_limit: Optional[float] = None
    default_language: str = "auto"

    def __post_init__(self) -> None:
        if isinstance(self.provider, ProviderType):
            self.provider = self.provider.value
        self.feature_models = {
            (k.value if isinstance(k, Feature) else str(k)): v
            for k, v in self.feature_models.items()
        }

    def api_key_for(self, provider: str) -> Optional[str]:
        return self.api_keys.get(provider) or None

    def model_for(self, provider: str) -> Optional[str]:
        return self.models.get(provider)

    # ── Persisted shape ──────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "provider": self.provider,
            "apiKeys": dict(self.api_keys),
            "models": dict(self.models),
            "defaultLanguage": self.default_language,
        }
        if self.feature_models:
            data["featureModels"] = {k: v.to_dict() for k, v in self.feature_models.items()}
        if self.budget_limit is not None:
            data["budgetLimit"] = self.budget_limit
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AISettings":
        models = _default_models()
        models.update(data.get("models") or {})
        feature_models = {}
        for name, cfg in (data.get("featureModels") or {}).items():
            try:
                feature_models[name] = FeatureModelConfig(provider=cfg["provider"], model=cfg["model"])
            except (KeyError, TypeError) as exc:
                raise ConfigurationError(f"Invalid feature model entry for {name!r}: {cfg!r}") from exc
        return cls(
            provider=data.get("provider", ProviderType.CLAUDE.value),
            api_keys=dict(data.get("apiKeys") or {}),
            models=models,
            feature_models=feature_models,
            budget_limit=_parse_budget(data.get("budgetLimit")),
            default_language=data.get("defaultLanguage", "auto"),
        )

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True) -> "AISettings":
        """
        Build settings from environment variables.

        PKM_PROVIDER      — active provider id (default: claude)
        PKM_BUDGET_LIMIT  — spending cap in USD (unset/empty: unlimited)
        PKM_LANGUAGE      — default response language (default: auto)
        plus one API key variable per provider (see API_KEY_ENV_VARS).
        """
        if load_dotenv_file:
            from dotenv import load_dotenv
            load_dotenv(override=True)  # .env values win over empty system env vars

        api_keys: dict[str, str] = {}
        for provider, names in API_KEY_ENV_VARS.items():
            for name in names:
                value = os.environ.get(name)
                if value:
                    api_keys[provider] = value
                    break

        provider = os.environ.get("PKM_PROVIDER", ProviderType.CLAUDE.value)
        if provider not in API_KEY_ENV_VARS:
            raise ConfigurationError(f"Unknown provider in PKM_PROVIDER: {provider!r}")

        settings = cls(
            provider=provider,
            api_keys=api_keys,
            budget_limit=_parse_budget(os.environ.get("PKM_BUDGET_LIMIT")),
            default_language=os.environ.get("PKM_LANGUAGE") or "auto",
        )
        logger.debug("Loaded settings from env: provider=%s keys=%s",
                     settings.provider, sorted(api_keys))
        return settings


def _parse_budget(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid budget limit: {value!r}") from exc
