"""
PKM Companion
=============
Coordinates asynchronous, possibly failing LLM calls for a knowledge
management client: one job in flight at a time, bounded retries, cost
accounting and a spending cap.
Supports: Anthropic Claude, OpenAI GPT, Google Gemini, xAI Grok.

Basic usage:
    from pkm_companion import AISettings, AnalyzeContentRequest, create_context

    ctx = create_context(AISettings.from_env())
    job = ctx.submit_analysis(AnalyzeContentRequest(content="..."))
    await ctx.queue.join()
    print(job.status, job.result, ctx.ledger.get_current_spend())

Lower-level pieces can be wired by hand:
    bus = EventBus()
    ledger = CostLedger(bus, budget_limit=5.0)
    service = AIService(settings, ledger=ledger)
    queue = JobQueue(bus)
"""

from .models import (
    Job, JobStatus, JobType, Feature, ProviderType, Message, RequestOptions,
    ProviderResponse, UsageRecord, ModelConfig, MODEL_CONFIGS,
    calculate_cost, estimate_tokens,
)
from .errors import (
    AIError, BudgetExceededError, ConfigurationError, ContentTooLongError,
    InvalidResponseError,
)
from .events import EventBus, EventType
from .cost import CostLedger, CostSummary
from .settings import AISettings, FeatureModelConfig
from .api_clients import LLMProvider, create_all_providers, create_provider
from .ai_service import AIService
from .job_queue import (
    JobQueue, JobExecutor, ProgressReporter, RetryStrategy,
    ImmediateRequeue, PriorityRequeue, DelayedBackoff,
)
from .use_cases import AnalysisResult, AnalyzeContentRequest, UseCaseResult
from .context import AppContext, create_context

__all__ = [
    # ── Data model ───────────────────────────────────────────────────────────
    "Job", "JobStatus", "JobType", "Feature", "ProviderType", "Message",
    "RequestOptions", "ProviderResponse", "UsageRecord", "ModelConfig",
    "MODEL_CONFIGS", "calculate_cost", "estimate_tokens",
    # ── Errors ───────────────────────────────────────────────────────────────
    "AIError", "BudgetExceededError", "ConfigurationError",
    "ContentTooLongError", "InvalidResponseError",
    # ── Services ─────────────────────────────────────────────────────────────
    "EventBus", "EventType", "CostLedger", "CostSummary",
    "AISettings", "FeatureModelConfig", "LLMProvider",
    "create_all_providers", "create_provider", "AIService",
    "JobQueue", "JobExecutor", "ProgressReporter", "RetryStrategy",
    "ImmediateRequeue", "PriorityRequeue", "DelayedBackoff",
    "AnalysisResult", "AnalyzeContentRequest", "UseCaseResult",
    "AppContext", "create_context",
]
