"""
AppContext — the one place the core services are wired together.
=================================================================
Built once at process start and handed to whoever needs a service; nothing in
the package keeps module-level singletons.

    ctx = create_context(AISettings.from_env())
    job = ctx.submit_analysis(AnalyzeContentRequest(content=text))
    await ctx.queue.join()
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from .ai_service import AIService
from .api_clients import LLMProvider, create_all_providers
from .cost import CostLedger
from .errors import ContentTooLongError
from .events import AnalysisCompleted, EventBus, EventType, JobCompleted
from .job_queue import JobQueue, RetryStrategy
from .models import Job, JobType
from .settings import AISettings
from .use_cases import (
    AnalysisResult, AnalyzeContent, AnalyzeContentExecutor, AnalyzeContentRequest,
    GenerateNoteExecutor, GenerateNoteRequest, GeneratePermanentNote,
    SuggestNoteTopics, SuggestTopicsExecutor, SuggestTopicsRequest,
    UseCaseResult, check_content_length,
)

logger = logging.getLogger("pkm_companion.context")


@dataclass
class AppContext:
    settings: AISettings
    bus: EventBus
    ledger: CostLedger
    service: AIService
    queue: JobQueue

    def update_settings(self, settings: AISettings) -> None:
        """Apply new settings to the facade and the ledger's budget limit."""
        self.settings = settings
        self.service.update_settings(settings)
        self.ledger.set_budget_limit(settings.budget_limit)

    def submit_analysis(self, request: AnalyzeContentRequest,
                        priority: Optional[int] = None) -> Union[Job, UseCaseResult]:
        """
        Validate and enqueue an analysis job.

        Content over the token ceiling is rejected here, before any job or
        model interaction, as an unsuccessful UseCaseResult.
        """
        try:
            check_content_length(request.content)
        except ContentTooLongError as exc:
            logger.info("Rejected analysis request: %s", exc)
            return UseCaseResult.failure(str(exc))
        return self.queue.enqueue(JobType.ANALYZE_CONTENT, request, priority=priority)

    def submit_topic_suggestions(self, analysis: AnalysisResult, count: int = 4,
                                 priority: Optional[int] = None) -> Job:
        request = SuggestTopicsRequest(analysis, language=self.settings.default_language, count=count)
        return self.queue.enqueue(JobType.SUGGEST_TOPICS, request, priority=priority)

    def submit_permanent_note(self, analysis: AnalysisResult,
                              priority: Optional[int] = None) -> Job:
        request = GenerateNoteRequest(analysis, language=self.settings.default_language)
        return self.queue.enqueue(JobType.GENERATE_NOTE, request, priority=priority)


def create_context(
    settings: AISettings,
    providers: Optional[Union[dict[str, LLMProvider], list[LLMProvider]]] = None,
    retry_strategy: Optional[RetryStrategy] = None,
    non_retryable: tuple[type[BaseException], ...] = (ContentTooLongError,),
) -> AppContext:
    """
    Wire bus → ledger → facade → queue and register the built-in executors.

    providers defaults to every SDK adapter in api_clients.
    BudgetExceededError is not in non_retryable by default, so a spent budget
    consumes retries like any other executor failure.
    """
    bus = EventBus()
    ledger = CostLedger(bus, budget_limit=settings.budget_limit)
    service = AIService(settings, ledger=ledger)

    if providers is None:
        providers = create_all_providers()
    for provider in (providers.values() if isinstance(providers, dict) else providers):
        service.register_provider(provider)

    queue = JobQueue(bus, retry_strategy=retry_strategy, non_retryable=non_retryable)
    queue.register_executor(JobType.ANALYZE_CONTENT,
                            AnalyzeContentExecutor(AnalyzeContent(service, ledger)))
    queue.register_executor(JobType.SUGGEST_TOPICS,
                            SuggestTopicsExecutor(SuggestNoteTopics(service, ledger)))
    queue.register_executor(JobType.GENERATE_NOTE,
                            GenerateNoteExecutor(GeneratePermanentNote(service, ledger)))

    def _on_completed(event: JobCompleted) -> None:
        if event.job.type == JobType.ANALYZE_CONTENT.value and isinstance(event.job.result, AnalysisResult):
            bus.publish(AnalysisCompleted(job_id=event.job.id, result_id=event.job.result.id))

    bus.subscribe(EventType.JOB_COMPLETED, _on_completed)

    logger.info("Context ready: provider=%s, providers=%s, budget=%s",
                settings.provider, service.get_available_providers(),
                settings.budget_limit if settings.budget_limit else "unlimited")
    return AppContext(settings=settings, bus=bus, ledger=ledger, service=service, queue=queue)
