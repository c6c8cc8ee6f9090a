"""
EventBus — typed publish/subscribe hub for job, queue and cost notifications.
=============================================================================
Every observable state change in the core is published here; producers never
hold references to their subscribers.

Each event kind is its own dataclass carrying a class-level ``type`` tag
(see EventType), and ``publish(event)`` is the single dispatch entry point.
Delivery is synchronous: by the time publish() returns, every subscriber of
that event type has run, in subscription order. A handler that raises is
logged and skipped; it never reaches the publisher or later handlers.

Handlers that need to do async work should schedule it themselves
(e.g. ``asyncio.create_task``).
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, Optional, Union

from .models import Job

logger = logging.getLogger("pkm_companion.events")


# ─────────────────────────────────────────────────────────────────────────────
# EventType
# ─────────────────────────────────────────────────────────────────────────────

class EventType(str, Enum):
    """
    Closed set of event names.

    Payload classes (all dataclasses):
      JOB_CREATED          — JobCreated(job)
      JOB_STARTED          — JobStarted(job)
      JOB_PROGRESS         — JobProgressed(job_id, progress, message)
      JOB_COMPLETED        — JobCompleted(job)
      JOB_FAILED           — JobFailed(job, error)
      JOB_CANCELLED        — JobCancelled(job)
      QUEUE_EMPTY          — QueueEmpty()
      QUEUE_PAUSED         — QueuePaused()
      QUEUE_RESUMED        — QueueResumed()
      COST_UPDATED         — CostUpdated(total_spend, budget_limit)
      BUDGET_WARNING       — BudgetWarning(total_spend, budget_limit, ratio)
      ANALYSIS_COMPLETED   — AnalysisCompleted(job_id, result_id)
    """
    JOB_CREATED        = "job:created"
    JOB_STARTED        = "job:started"
    JOB_PROGRESS       = "job:progress"
    JOB_COMPLETED      = "job:completed"
    JOB_FAILED         = "job:failed"
    JOB_CANCELLED      = "job:cancelled"
    QUEUE_EMPTY        = "queue:empty"
    QUEUE_PAUSED       = "queue:paused"
    QUEUE_RESUMED      = "queue:resumed"
    COST_UPDATED       = "cost:updated"
    BUDGET_WARNING     = "cost:budget_warning"
    ANALYSIS_COMPLETED = "analysis:completed"


# ── Event dataclasses ─────────────────────────────────────────────────────────

@dataclass
class JobCreated:
    type: ClassVar[EventType] = EventType.JOB_CREATED
    job: Job


@dataclass
class JobStarted:
    type: ClassVar[EventType] = EventType.JOB_STARTED
    job: Job


@dataclass
class JobProgressed:
    type: ClassVar[EventType] = EventType.JOB_PROGRESS
    job_id: str
    progress: float
    message: Optional[str] = None


@dataclass
class JobCompleted:
    type: ClassVar[EventType] = EventType.JOB_COMPLETED
    job: Job


@dataclass
class JobFailed:
    type: ClassVar[EventType] = EventType.JOB_FAILED
    job: Job
    error: str


@dataclass
class JobCancelled:
    type: ClassVar[EventType] = EventType.JOB_CANCELLED
    job: Job


@dataclass
class QueueEmpty:
    type: ClassVar[EventType] = EventType.QUEUE_EMPTY


@dataclass
class QueuePaused:
    type: ClassVar[EventType] = EventType.QUEUE_PAUSED


@dataclass
class QueueResumed:
    type: ClassVar[EventType] = EventType.QUEUE_RESUMED


@dataclass
class CostUpdated:
    type: ClassVar[EventType] = EventType.COST_UPDATED
    total_spend: float
    budget_limit: Optional[float] = None


@dataclass
class BudgetWarning:
    type: ClassVar[EventType] = EventType.BUDGET_WARNING
    total_spend: float
    budget_limit: float
    ratio: float


@dataclass
class AnalysisCompleted:
    type: ClassVar[EventType] = EventType.ANALYSIS_COMPLETED
    job_id: str
    result_id: str


Event = Union[
    JobCreated, JobStarted, JobProgressed, JobCompleted, JobFailed, JobCancelled,
    QueueEmpty, QueuePaused, QueueResumed,
    CostUpdated, BudgetWarning, AnalysisCompleted,
]

Handler = Callable[[Any], None]


def _event_key(event_type: str | EventType) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


# ─────────────────────────────────────────────────────────────────────────────
# EventBus
# ─────────────────────────────────────────────────────────────────────────────

class EventBus:
    """
    Maps event names to ordered lists of handlers.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(EventType.JOB_COMPLETED, lambda ev: print(ev.job.id))
        bus.publish(JobCompleted(job))
        unsubscribe()
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: str | EventType, handler: Handler) -> Callable[[], None]:
        """Register handler for event_type. Returns a function that removes it again."""
        key = _event_key(event_type)
        self._handlers[key].append(handler)
        return lambda: self.unsubscribe(key, handler)

    def subscribe_once(self, event_type: str | EventType, handler: Handler) -> Callable[[], None]:
        """Like subscribe(), but the handler is removed before its first delivery."""
        unsubscribe: Callable[[], None]

        def _once(event: Any) -> None:
            unsubscribe()
            handler(event)

        unsubscribe = self.subscribe(event_type, _once)
        return unsubscribe

    def unsubscribe(self, event_type: str | EventType, handler: Handler) -> None:
        key = _event_key(event_type)
        handlers = self._handlers.get(key)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[key]

    def publish(self, event: Event) -> None:
        """
        Deliver event to every current subscriber of event.type.

        The handler list is snapshotted first, so handlers may subscribe or
        unsubscribe while the event is being delivered.
        """
        key = event.type.value
        for handler in list(self._handlers.get(key, ())):
            try:
                handler(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Event handler %r raised for event %r: %s",
                    handler, key, exc,
                )

    def clear(self, event_type: Optional[str | EventType] = None) -> None:
        """Remove handlers for one event type, or for all of them when event_type is None."""
        if event_type is None:
            self._handlers.clear()
        else:
            self._handlers.pop(_event_key(event_type), None)

    def listener_count(self, event_type: str | EventType) -> int:
        return len(self._handlers.get(_event_key(event_type), ()))

    def registered_events(self) -> list[str]:
        """Return the event names that have at least one handler."""
        return [k for k, v in self._handlers.items() if v]

    def __len__(self) -> int:
        """Total number of handlers across all events."""
        return sum(len(v) for v in self._handlers.values())
