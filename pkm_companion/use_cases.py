"""
Feature use cases — content analysis, note-topic suggestions, permanent notes.
==============================================================================
Each use case builds prompts, calls AIService for its feature tier, parses the
model's JSON answer and records usage on the CostLedger. They return a
UseCaseResult; BudgetExceededError is the one failure they let propagate.

The *Executor classes adapt the use cases to JobQueue: an unsuccessful result
is raised as an AIError so the queue's retry path handles it.
"""
from __future__ import annotations

import json
import logging
import random
import re
import string
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Generic, Optional, TypeVar

from .errors import AIError, ContentTooLongError, InvalidResponseError
from .models import Feature, Job, ProviderResponse, RequestOptions, estimate_tokens

if TYPE_CHECKING:
    from .ai_service import AIService
    from .cost import CostLedger
    from .job_queue import ProgressReporter

logger = logging.getLogger("pkm_companion.use_cases")

MAX_CONTENT_TOKENS: int = 100_000
SOURCE_PREVIEW_CHARS: int = 1000
PARSE_FAILURE = "Failed to parse LLM response"

T = TypeVar("T")

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


# ─────────────────────────────────────────────────────────────────────────────
# Result types
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class UseCaseResult(Generic[T]):
    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    tokens_used: Optional[int] = None

    @classmethod
    def failure(cls, error: str) -> "UseCaseResult[T]":
        return cls(success=False, error=error)


def _analysis_id() -> str:
    suffix = "".join(random.choices(string.digits + string.ascii_lowercase, k=7))
    return f"analysis_{int(time.time() * 1000)}_{suffix}"


@dataclass(frozen=True)
class AnalysisResult:
    id: str
    source_type: str                # "url" | "text"
    source_content: str
    suggested_title: str
    summary: str
    key_insights: tuple[str, ...] = ()
    suggested_tags: tuple[str, ...] = ()
    related_topics: tuple[str, ...] = ()
    source_url: Optional[str] = None
    tokens_used: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def create(cls, source_type: str, source_content: str, summary: str,
               suggested_title: str = "", key_insights: Any = (), suggested_tags: Any = (),
               related_topics: Any = (), source_url: Optional[str] = None,
               tokens_used: Optional[int] = None) -> "AnalysisResult":
        return cls(
            id=_analysis_id(),
            source_type=source_type,
            source_content=source_content[:SOURCE_PREVIEW_CHARS],
            suggested_title=suggested_title,
            summary=summary,
            key_insights=tuple(key_insights),
            suggested_tags=tuple(suggested_tags),
            related_topics=tuple(related_topics),
            source_url=source_url,
            tokens_used=tokens_used,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["key_insights"] = list(self.key_insights)
        data["suggested_tags"] = list(self.suggested_tags)
        data["related_topics"] = list(self.related_topics)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AnalysisResult":
        return cls(
            id=data["id"],
            source_type=data.get("source_type", "text"),
            source_content=data.get("source_content", ""),
            suggested_title=data.get("suggested_title", ""),
            summary=data["summary"],
            key_insights=tuple(data.get("key_insights", ())),
            suggested_tags=tuple(data.get("suggested_tags", ())),
            related_topics=tuple(data.get("related_topics", ())),
            source_url=data.get("source_url"),
            tokens_used=data.get("tokens_used"),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.now(),
        )


@dataclass(frozen=True)
class NoteTopic:
    title: str
    rationale: str
    key_points: tuple[str, ...] = ()
    suggested_tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class ApplicationExample:
    title: str
    description: str


@dataclass(frozen=True)
class PermanentNote:
    title: str
    timestamp: str                  # YYYYMMDDHHMM, the note id
    key_ideas: tuple[str, ...]
    definition: str
    mechanism: str
    limitations: str
    related_concepts: tuple[str, ...] = ()
    parent_concepts: tuple[str, ...] = ()
    opposing_concepts: tuple[str, ...] = ()
    application_examples: tuple[ApplicationExample, ...] = ()
    suggested_tags: tuple[str, ...] = ()


# ─────────────────────────────────────────────────────────────────────────────
# Requests
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AnalyzeContentRequest:
    content: str
    source_type: str = "text"
    source_url: Optional[str] = None
    language: str = "auto"
    detail_level: str = "standard"  # brief | standard | detailed


@dataclass(frozen=True)
class SuggestTopicsRequest:
    analysis: AnalysisResult
    language: str = "auto"
    count: int = 4


@dataclass(frozen=True)
class GenerateNoteRequest:
    analysis: AnalysisResult
    language: str = "auto"


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def extract_json_object(text: str) -> Optional[dict]:
    """Parse the outermost {...} block of a model answer, or None."""
    match = _JSON_OBJECT.search(text)
    if not match:
        logger.warning("No JSON object found in model response")
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse model response JSON: %s", exc)
        return None
    return parsed if isinstance(parsed, dict) else None


def _list_field(data: dict, key: str, required: bool = False) -> list:
    """The list under `key`; absent or null reads as []. Any other shape raises ValueError."""
    value = data.get(key)
    if value is None and not required:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{key!r} should be a list, got {type(value).__name__}")
    return value


def check_content_length(content: str, limit: int = MAX_CONTENT_TOKENS) -> None:
    tokens = estimate_tokens(content)
    if tokens > limit:
        raise ContentTooLongError(tokens, limit)


def _language_instruction(language: str, default: str) -> str:
    return default if language == "auto" else f"Respond in {language}."


def _numbered(items: Any) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, start=1))


def _report(progress: Optional["ProgressReporter"], value: float, message: str) -> None:
    if progress is not None:
        progress.report(value, message)


class _FeatureUseCase:
    """Shared plumbing: feature call + usage tracking with an input/output split."""

    feature: Feature
    usage_label: str
    input_share: float

    def __init__(self, service: "AIService", ledger: Optional["CostLedger"] = None) -> None:
        self.service = service
        self.ledger = ledger

    async def _call(self, user_prompt: str, system_prompt: str,
                    temperature: float) -> ProviderResponse:
        return await self.service.simple_generate_for_feature(
            self.feature, user_prompt, system_prompt,
            RequestOptions(temperature=temperature),
        )

    def _track(self, tokens_used: Optional[int]) -> None:
        # providers report one combined count; split it by the typical prompt share
        if self.ledger is None or not tokens_used:
            return
        config = self.service.get_feature_config(self.feature)
        self.ledger.track_usage(
            config.provider,
            config.model,
            int(tokens_used * self.input_share),
            int(tokens_used * (1 - self.input_share)),
            self.usage_label,
        )


# ─────────────────────────────────────────────────────────────────────────────
# AnalyzeContent
# ─────────────────────────────────────────────────────────────────────────────

_DETAIL_INSTRUCTIONS = {
    "brief": "Keep the summary under 100 words. Provide 2-3 key insights.",
    "standard": "Provide a comprehensive summary (150-250 words). Provide 3-5 key insights.",
    "detailed": "Provide a detailed summary (300-400 words). Provide 5-7 key insights with examples.",
}


class AnalyzeContent(_FeatureUseCase):
    feature = Feature.CONTENT_ANALYSIS
    usage_label = "analyze-content"
    input_share = 0.7

    async def execute(self, request: AnalyzeContentRequest,
                      progress: Optional["ProgressReporter"] = None) -> UseCaseResult[AnalysisResult]:
        try:
            check_content_length(request.content)
        except ContentTooLongError as exc:
            return UseCaseResult.failure(str(exc))

        _report(progress, 10, "Building prompt")
        system_prompt = self.build_system_prompt(request.language, request.detail_level)
        user_prompt = self.build_user_prompt(request)

        _report(progress, 30, "Analyzing content")
        response = await self._call(user_prompt, system_prompt, temperature=0.3)
        if not response.success:
            return UseCaseResult.failure(response.error or "LLM generation failed")

        _report(progress, 90, "Parsing response")
        parsed = extract_json_object(response.content)
        if not parsed:
            return UseCaseResult.failure(PARSE_FAILURE)
        summary = parsed.get("summary")
        try:
            if not summary or not isinstance(summary, str):
                raise ValueError("'summary' should be a non-empty string")
            key_insights = _list_field(parsed, "keyInsights", required=True)
            suggested_tags = _list_field(parsed, "suggestedTags")
            related_topics = _list_field(parsed, "relatedTopics")
        except ValueError as exc:
            logger.warning("Analysis response has an unexpected shape: %s", exc)
            return UseCaseResult.failure(PARSE_FAILURE)

        self._track(response.tokens_used)
        title = parsed.get("suggestedTitle")
        result = AnalysisResult.create(
            source_type=request.source_type,
            source_content=request.content,
            source_url=request.source_url,
            suggested_title=title if title and isinstance(title, str) else summary[:60],
            summary=summary,
            key_insights=key_insights,
            suggested_tags=suggested_tags,
            related_topics=related_topics,
            tokens_used=response.tokens_used,
        )
        return UseCaseResult(success=True, value=result, tokens_used=response.tokens_used)

    @staticmethod
    def build_system_prompt(language: str, detail_level: str) -> str:
        lang = _language_instruction(language, "Respond in the same language as the input content.")
        detail = _DETAIL_INSTRUCTIONS.get(detail_level, _DETAIL_INSTRUCTIONS["standard"])
        return f"""You are an expert content analyst for a personal knowledge management system.
Analyze the provided content and extract structured insights.

{lang}
{detail}

Respond with this JSON object only, no additional text:
{{
  "suggestedTitle": "A short title for the content",
  "summary": "A clear, concise summary of the main points",
  "keyInsights": ["insight 1", "insight 2", "insight 3"],
  "suggestedTags": ["tag1", "tag2", "tag3"],
  "relatedTopics": ["related topic 1", "related topic 2"]
}}

- keyInsights: actionable or notable points worth remembering
- suggestedTags: 3-5 single words or short phrases, no # prefix
- relatedTopics: 2-4 related topics or concepts for further exploration"""

    @staticmethod
    def build_user_prompt(request: AnalyzeContentRequest) -> str:
        source = ""
        if request.source_type == "url" and request.source_url:
            source = f"Source URL: {request.source_url}\n\n"
        return f"""{source}Please analyze the following content:

---
{request.content}
---

Provide your analysis in the specified JSON format."""


# ─────────────────────────────────────────────────────────────────────────────
# SuggestNoteTopics
# ─────────────────────────────────────────────────────────────────────────────

class SuggestNoteTopics(_FeatureUseCase):
    feature = Feature.PERMANENT_NOTE
    usage_label = "suggest-topics"
    input_share = 0.6

    async def execute(self, request: SuggestTopicsRequest,
                      progress: Optional["ProgressReporter"] = None) -> UseCaseResult[list[NoteTopic]]:
        _report(progress, 10, "Building prompt")
        system_prompt = self.build_system_prompt(request.language, request.count)
        user_prompt = self.build_user_prompt(request.analysis)

        _report(progress, 30, "Suggesting topics")
        response = await self._call(user_prompt, system_prompt, temperature=0.5)
        if not response.success:
            return UseCaseResult.failure(response.error or "LLM generation failed")

        _report(progress, 90, "Parsing response")
        parsed = extract_json_object(response.content)
        if not parsed or not isinstance(parsed.get("topics"), list):
            return UseCaseResult.failure(PARSE_FAILURE)
        try:
            topics = [
                NoteTopic(
                    title=t.get("title", ""),
                    rationale=t.get("rationale", ""),
                    key_points=tuple(_list_field(t, "keyPoints")),
                    suggested_tags=tuple(_list_field(t, "suggestedTags")),
                )
                for t in parsed["topics"] if isinstance(t, dict)
            ]
        except ValueError as exc:
            logger.warning("Topic suggestions have an unexpected shape: %s", exc)
            return UseCaseResult.failure(PARSE_FAILURE)

        self._track(response.tokens_used)
        return UseCaseResult(success=True, value=topics, tokens_used=response.tokens_used)

    @staticmethod
    def build_system_prompt(language: str, count: int) -> str:
        lang = _language_instruction(
            language, "Respond in Korean by default, but match the input language if clearly different.")
        return f"""You are a personal knowledge management consultant specializing in the Zettelkasten method.

{lang}

Identify {count} distinct concepts from the content analysis that would make excellent permanent notes.
Each topic must be atomic (one focused concept), evergreen, connectable to other knowledge,
actionable and original.

Respond with this JSON object only:
{{
  "topics": [
    {{
      "title": "Concept title (3-8 words)",
      "rationale": "Why this is worth capturing (1-2 sentences)",
      "keyPoints": ["aspect 1", "aspect 2", "aspect 3"],
      "suggestedTags": ["tag1", "tag2", "tag3"]
    }}
  ]
}}"""

    @staticmethod
    def build_user_prompt(analysis: AnalysisResult) -> str:
        return f"""Based on this content analysis, suggest permanent note topics:

**Title**: {analysis.suggested_title}

**Summary**:
{analysis.summary}

**Key Insights**:
{_numbered(analysis.key_insights)}

**Related Topics**: {", ".join(analysis.related_topics)}

**Tags**: {", ".join(analysis.suggested_tags)}

Identify the most valuable concepts that deserve their own permanent notes."""


# ─────────────────────────────────────────────────────────────────────────────
# GeneratePermanentNote
# ─────────────────────────────────────────────────────────────────────────────

class GeneratePermanentNote(_FeatureUseCase):
    feature = Feature.PERMANENT_NOTE
    usage_label = "permanent-note"
    input_share = 0.6

    async def execute(self, request: GenerateNoteRequest,
                      progress: Optional["ProgressReporter"] = None) -> UseCaseResult[PermanentNote]:
        _report(progress, 10, "Building prompt")
        system_prompt = self.build_system_prompt(request.language)
        user_prompt = self.build_user_prompt(request.analysis)

        _report(progress, 30, "Writing note")
        response = await self._call(user_prompt, system_prompt, temperature=0.4)
        if not response.success:
            return UseCaseResult.failure(response.error or "LLM generation failed")

        _report(progress, 90, "Parsing response")
        note = self.parse_note(response.content)
        if note is None:
            return UseCaseResult.failure(PARSE_FAILURE)

        self._track(response.tokens_used)
        return UseCaseResult(success=True, value=note, tokens_used=response.tokens_used)

    @staticmethod
    def parse_note(content: str, now: Optional[datetime] = None) -> Optional[PermanentNote]:
        parsed = extract_json_object(content)
        if not parsed:
            return None
        description = parsed.get("detailedDescription")
        if not parsed.get("title") or not parsed.get("keyIdeas") or not isinstance(description, dict):
            logger.warning("Permanent note response is missing required fields")
            return None
        connected = parsed.get("connectedThoughts")
        if connected is None:
            connected = {}
        try:
            if not isinstance(connected, dict):
                raise ValueError(f"'connectedThoughts' should be an object, got {type(connected).__name__}")
            key_ideas = _list_field(parsed, "keyIdeas", required=True)
            related = _list_field(connected, "relatedConcepts")
            parents = _list_field(connected, "parentConcepts")
            opposing = _list_field(connected, "opposingConcepts")
            raw_examples = _list_field(parsed, "applicationExamples")
            tags = _list_field(parsed, "suggestedTags")
        except ValueError as exc:
            logger.warning("Permanent note response has an unexpected shape: %s", exc)
            return None
        examples = tuple(
            ApplicationExample(title=ex.get("title", ""), description=ex.get("description", ""))
            for ex in raw_examples if isinstance(ex, dict)
        )
        return PermanentNote(
            title=parsed["title"],
            timestamp=(now or datetime.now()).strftime("%Y%m%d%H%M"),
            key_ideas=tuple(key_ideas),
            definition=description.get("definition", ""),
            mechanism=description.get("mechanism", ""),
            limitations=description.get("limitations", ""),
            related_concepts=tuple(related),
            parent_concepts=tuple(parents),
            opposing_concepts=tuple(opposing),
            application_examples=examples,
            suggested_tags=tuple(tags),
        )

    @staticmethod
    def build_system_prompt(language: str) -> str:
        lang = _language_instruction(
            language, "Respond in Korean by default, but match the input language if clearly different.")
        return f"""You are a personal knowledge management assistant that writes Zettelkasten permanent notes.

{lang}

Rules:
1. Key ideas: 3-5 bullet points capturing the core insights
2. Detailed description: definition, mechanism and limitations, at least 350 characters in total
3. Connected thoughts: keywords only, no links or sentences
   - related concepts: 3-5, parent concepts: 2-3, opposing concepts: 1-2
4. Application examples: at least 3 real-world scenarios, not tool-focused
5. Tags: 6-10, without # prefix

Respond with this JSON object only:
{{
  "title": "A concise title capturing the main concept",
  "keyIdeas": ["idea 1", "idea 2", "idea 3"],
  "detailedDescription": {{
    "definition": "What it is",
    "mechanism": "How it works",
    "limitations": "Boundaries, weaknesses or caveats"
  }},
  "connectedThoughts": {{
    "relatedConcepts": ["keyword1", "keyword2", "keyword3"],
    "parentConcepts": ["parent1", "parent2"],
    "opposingConcepts": ["opposite1"]
  }},
  "applicationExamples": [
    {{"title": "Example 1", "description": "Real-world application scenario"}}
  ],
  "suggestedTags": ["tag1", "tag2", "tag3", "tag4", "tag5", "tag6"]
}}"""

    @staticmethod
    def build_user_prompt(analysis: AnalysisResult) -> str:
        return f"""Based on the following content analysis, create a permanent note:

**Title Suggestion**: {analysis.suggested_title}

**Summary**:
{analysis.summary}

**Key Insights**:
{_numbered(analysis.key_insights)}

**Suggested Tags**: {", ".join(analysis.suggested_tags)}

**Related Topics**: {", ".join(analysis.related_topics)}

Transform this into a comprehensive permanent note following the Zettelkasten format."""


# ─────────────────────────────────────────────────────────────────────────────
# JobQueue executors
# ─────────────────────────────────────────────────────────────────────────────

def _unwrap(result: UseCaseResult[T]) -> T:
    if result.success:
        return result.value  # type: ignore[return-value]
    error = result.error or "Unknown error occurred"
    if error == PARSE_FAILURE:
        raise InvalidResponseError(error)
    raise AIError(error)


class AnalyzeContentExecutor:
    def __init__(self, use_case: AnalyzeContent) -> None:
        self.use_case = use_case

    async def execute(self, job: Job, progress: "ProgressReporter") -> AnalysisResult:
        request: AnalyzeContentRequest = job.data
        # validation failures are permanent; raise the typed error before any model call
        check_content_length(request.content)
        return _unwrap(await self.use_case.execute(request, progress))


class SuggestTopicsExecutor:
    def __init__(self, use_case: SuggestNoteTopics) -> None:
        self.use_case = use_case

    async def execute(self, job: Job, progress: "ProgressReporter") -> list[NoteTopic]:
        return _unwrap(await self.use_case.execute(job.data, progress))


class GenerateNoteExecutor:
    def __init__(self, use_case: GeneratePermanentNote) -> None:
        self.use_case = use_case

    async def execute(self, job: Job, progress: "ProgressReporter") -> PermanentNote:
        return _unwrap(await self.use_case.execute(job.data, progress))
