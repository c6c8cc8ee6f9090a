"""
PKM Companion — Core Models & Types
===================================
Jobs, provider request/response types, usage records, the model rate table
and the token/cost helpers everything else is built on.

All cost figures are USD per 1M tokens.
"""

from __future__ import annotations

import math
import random
import re
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, Enum):
    ANALYZE_CONTENT = "analyze-content"
    EMBED_NOTE = "embed-note"
    GENERATE_NOTE = "generate-note"
    SUGGEST_TOPICS = "suggest-topics"
    BATCH_PROCESS = "batch-process"


class ProviderType(str, Enum):
    CLAUDE = "claude"
    OPENAI = "openai"
    GEMINI = "gemini"
    GROK = "grok"


class Feature(str, Enum):
    CONTENT_ANALYSIS = "content-analysis"
    PERMANENT_NOTE = "permanent-note"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

DEFAULT_PRIORITY: int = 5
DEFAULT_MAX_RETRIES: int = 3


def _key(value: Any) -> str:
    """Enum members and plain strings are interchangeable as identifiers."""
    return value.value if isinstance(value, Enum) else str(value)


# ─────────────────────────────────────────────
# Jobs
# ─────────────────────────────────────────────

_ID_ALPHABET = string.digits + string.ascii_lowercase


def generate_job_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"job_{int(time.time() * 1000)}_{suffix}"


@dataclass(eq=False)
class Job:
    """
    A unit of asynchronous work owned by JobQueue.

    Only the queue mutates status/progress/retry fields; callers read them
    (or subscribe to events) to observe the outcome.
    """
    id: str
    type: str
    data: Any = None
    status: JobStatus = JobStatus.PENDING
    progress: float = 0
    result: Any = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    priority: int = DEFAULT_PRIORITY
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.completed_at or datetime.now()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "priority": self.priority,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def create_job(job_type: str | JobType, data: Any = None,
               priority: Optional[int] = None,
               max_retries: Optional[int] = None) -> Job:
    return Job(
        id=generate_job_id(),
        type=_key(job_type),
        data=data,
        priority=DEFAULT_PRIORITY if priority is None else priority,
        max_retries=DEFAULT_MAX_RETRIES if max_retries is None else max_retries,
    )


# ─────────────────────────────────────────────
# Provider request / response types
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class Message:
    role: str       # "system" | "user" | "assistant"
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class RequestOptions:
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderResponse:
    """Normalized response from any provider adapter."""
    success: bool
    content: str = ""
    tokens_used: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "ProviderResponse":
        return cls(success=False, content="", error=error)


@dataclass(frozen=True)
class UsageRecord:
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    feature: str
    timestamp: datetime = field(default_factory=datetime.now)


# ─────────────────────────────────────────────
# Rate table (per 1M tokens, USD)
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class ModelConfig:
    id: str
    display_name: str
    provider: ProviderType
    input_cost_per_1m: float
    output_cost_per_1m: float
    max_input_tokens: int
    max_output_tokens: int
    supports_vision: bool = True
    supports_streaming: bool = True


MODEL_CONFIGS: dict[str, ModelConfig] = {
    "claude-sonnet": ModelConfig(
        "claude-sonnet-4-20250514", "Claude Sonnet 4", ProviderType.CLAUDE,
        3.0, 15.0, 200_000, 8192),
    "claude-haiku": ModelConfig(
        "claude-3-5-haiku-20241022", "Claude 3.5 Haiku", ProviderType.CLAUDE,
        0.8, 4.0, 200_000, 8192),
    "gemini-flash": ModelConfig(
        "gemini-2.0-flash", "Gemini 2.0 Flash", ProviderType.GEMINI,
        0.075, 0.3, 1_000_000, 8192),
    "gemini-pro": ModelConfig(
        "gemini-1.5-pro", "Gemini 1.5 Pro", ProviderType.GEMINI,
        1.25, 5.0, 2_000_000, 8192),
    "gpt-4o": ModelConfig(
        "gpt-4o", "GPT-4o", ProviderType.OPENAI,
        2.5, 10.0, 128_000, 16384),
    "gpt-4o-mini": ModelConfig(
        "gpt-4o-mini", "GPT-4o Mini", ProviderType.OPENAI,
        0.15, 0.6, 128_000, 16384),
    "grok-3-mini": ModelConfig(
        "grok-3-mini", "Grok 3 Mini", ProviderType.GROK,
        0.3, 0.5, 131_072, 8192, supports_vision=False),
}


@dataclass(frozen=True)
class ProviderConfig:
    id: ProviderType
    name: str
    display_name: str
    endpoint: str
    default_model: str
    api_key_prefix: Optional[str] = None


PROVIDER_CONFIGS: dict[ProviderType, ProviderConfig] = {
    ProviderType.CLAUDE: ProviderConfig(
        ProviderType.CLAUDE, "Anthropic Claude", "Claude",
        "https://api.anthropic.com/v1", "claude-sonnet-4-20250514"),
    ProviderType.GEMINI: ProviderConfig(
        ProviderType.GEMINI, "Google Gemini", "Gemini",
        "https://generativelanguage.googleapis.com/v1beta", "gemini-2.0-flash",
        api_key_prefix="AIza"),
    ProviderType.OPENAI: ProviderConfig(
        ProviderType.OPENAI, "OpenAI", "OpenAI",
        "https://api.openai.com/v1", "gpt-4o-mini", api_key_prefix="sk-"),
    ProviderType.GROK: ProviderConfig(
        ProviderType.GROK, "xAI Grok", "Grok",
        "https://api.x.ai/v1", "grok-3-mini"),
}


def get_model_config(model: str,
                     rates: Optional[dict[str, ModelConfig]] = None) -> Optional[ModelConfig]:
    """Look a model up by table key first, then by its API model id."""
    table = MODEL_CONFIGS if rates is None else rates
    if model in table:
        return table[model]
    for cfg in table.values():
        if cfg.id == model:
            return cfg
    return None


def get_models_by_provider(provider: str | ProviderType,
                           rates: Optional[dict[str, ModelConfig]] = None) -> list[ModelConfig]:
    table = MODEL_CONFIGS if rates is None else rates
    key = _key(provider)
    return [cfg for cfg in table.values() if cfg.provider.value == key]


def calculate_cost(model: str, input_tokens: int, output_tokens: int,
                   rates: Optional[dict[str, ModelConfig]] = None) -> float:
    cfg = get_model_config(model, rates)
    if cfg is None:
        return 0.0
    input_cost = (input_tokens / 1_000_000) * cfg.input_cost_per_1m
    output_cost = (output_tokens / 1_000_000) * cfg.output_cost_per_1m
    return input_cost + output_cost


# ─────────────────────────────────────────────
# Token estimation
# ─────────────────────────────────────────────

_HANGUL = re.compile(r"[\uAC00-\uD7AF]")


def estimate_tokens(text: str) -> int:
    """~4 chars per token for most text, ~2 for Hangul syllables."""
    hangul = len(_HANGUL.findall(text))
    other = len(text) - hangul
    return math.ceil(hangul / 2 + other / 4)
