"""
JobQueue — priority job scheduler with a single running slot and bounded retries.
=================================================================================
Jobs wait in a pending list ordered by priority (lower number first, FIFO
among equals) and are dispatched one at a time to the executor registered for
their type. The running slot is a single reference, not a pool: at most one
executor is in flight at any moment.

All bookkeeping (list manipulation, state transitions, event publishing) is
synchronous and happens on the event loop thread between awaits, so no locks
are needed. The only suspension point is the executor itself.

Failure handling:
  * no executor for the job type  → failed immediately, never retried
  * executor raises               → retry_count += 1; while retry_count <= max_retries
                                    the job goes back to pending through the
                                    RetryStrategy (default: front of the list,
                                    ahead of everything else); afterwards failed
  * exceptions listed in non_retryable skip the retry path entirely

Executor exceptions never escape the queue: callers observe outcomes through
job status or the EventBus.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

from .events import (
    EventBus, JobCancelled, JobCompleted, JobCreated, JobFailed, JobProgressed,
    JobStarted, QueueEmpty, QueuePaused, QueueResumed,
)
from .models import Job, JobStatus, JobType, create_job

logger = logging.getLogger("pkm_companion.job_queue")


# ─────────────────────────────────────────────────────────────────────────────
# Executor / progress ports
# ─────────────────────────────────────────────────────────────────────────────

@runtime_checkable
class ProgressReporter(Protocol):
    def report(self, progress: float, message: Optional[str] = None) -> None:
        """Report progress in percent (0-100) with an optional status message."""


@runtime_checkable
class JobExecutor(Protocol):
    async def execute(self, job: Job, progress: ProgressReporter) -> Any:
        ...


ExecutorFn = Callable[[Job, ProgressReporter], Awaitable[Any]]
ExecutorLike = Union[JobExecutor, ExecutorFn]


class JobProgressReporter:
    """
    ProgressReporter bound to one running job.

    Values are clamped to 0-100 and never move backwards; reports arriving
    after the job left the running state are dropped.
    """

    def __init__(self, bus: EventBus, job: Job) -> None:
        self._bus = bus
        self._job = job

    def report(self, progress: float, message: Optional[str] = None) -> None:
        job = self._job
        if job.status is not JobStatus.RUNNING:
            logger.debug("Dropping progress for %s in state %s", job.id, job.status.value)
            return
        value = min(100.0, max(float(progress), float(job.progress), 0.0))
        job.progress = value
        self._bus.publish(JobProgressed(job_id=job.id, progress=value, message=message))


# ─────────────────────────────────────────────────────────────────────────────
# Retry strategies
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RetryPlan:
    """Where a failed job goes back in, and after how long."""
    at_front: bool = True
    delay: float = 0.0


class RetryStrategy(ABC):
    @abstractmethod
    def plan(self, job: Job) -> RetryPlan:
        """Called after job.retry_count was incremented for the failed attempt."""


class ImmediateRequeue(RetryStrategy):
    """Retry right away, ahead of all other pending work (may starve others)."""

    def plan(self, job: Job) -> RetryPlan:
        return RetryPlan(at_front=True)


class PriorityRequeue(RetryStrategy):
    """Retry right away, but behind pending jobs of equal or better priority."""

    def plan(self, job: Job) -> RetryPlan:
        return RetryPlan(at_front=False)


class DelayedBackoff(RetryStrategy):
    """
    Exponential backoff: base_delay * factor**(retry_count - 1), capped at
    max_delay. The job stays pending (and cancellable) while it waits.
    """

    def __init__(self, base_delay: float = 1.0, factor: float = 2.0,
                 max_delay: float = 60.0, at_front: bool = True) -> None:
        self.base_delay = base_delay
        self.factor = factor
        self.max_delay = max_delay
        self.at_front = at_front

    def plan(self, job: Job) -> RetryPlan:
        delay = self.base_delay * (self.factor ** max(0, job.retry_count - 1))
        return RetryPlan(at_front=self.at_front, delay=min(delay, self.max_delay))


# ─────────────────────────────────────────────────────────────────────────────
# QueueStatus
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class QueueStatus:
    pending: int
    running: bool
    paused: bool
    current_job: Optional[Job]


# ─────────────────────────────────────────────────────────────────────────────
# JobQueue
# ─────────────────────────────────────────────────────────────────────────────

class JobQueue:
    """
    Usage:
        queue = JobQueue(bus)
        queue.register_executor(JobType.ANALYZE_CONTENT, AnalyzeContentExecutor(...))
        job = queue.enqueue(JobType.ANALYZE_CONTENT, request, priority=1)
        await queue.join()
        print(job.status, job.result)

    Dispatch needs a running event loop. Jobs enqueued without one stay
    pending until the next state change inside a loop (resume(), join(),
    another enqueue()).
    """

    def __init__(
        self,
        bus: EventBus,
        retry_strategy: Optional[RetryStrategy] = None,
        non_retryable: tuple[type[BaseException], ...] = (),
    ) -> None:
        self._bus = bus
        self._retry_strategy = retry_strategy or ImmediateRequeue()
        self._non_retryable = tuple(non_retryable)
        self._executors: dict[str, ExecutorLike] = {}
        self._pending: list[Job] = []
        self._delayed: dict[str, tuple[Job, asyncio.TimerHandle]] = {}
        self._running: Optional[Job] = None
        self._task: Optional[asyncio.Task] = None
        self._paused = False
        self._idle_waiters: list[asyncio.Future] = []

    # ── Registration ─────────────────────────────────────────────────────────

    def register_executor(self, job_type: str | JobType, executor: ExecutorLike) -> None:
        key = job_type.value if isinstance(job_type, JobType) else str(job_type)
        if key in self._executors:
            logger.debug("Replacing executor for job type %r", key)
        self._executors[key] = executor

    # ── Admission ────────────────────────────────────────────────────────────

    def enqueue(self, job_type: str | JobType, data: Any = None,
                priority: Optional[int] = None,
                max_retries: Optional[int] = None) -> Job:
        job = create_job(job_type, data, priority=priority, max_retries=max_retries)
        self._insert_by_priority(job)
        logger.debug("Enqueued %s (%s, priority=%d)", job.id, job.type, job.priority)
        self._bus.publish(JobCreated(job=job))
        self._dispatch()
        return job

    def _insert_by_priority(self, job: Job) -> None:
        # first pending job with a strictly greater priority number; equals keep FIFO
        for index, other in enumerate(self._pending):
            if other.priority > job.priority:
                self._pending.insert(index, job)
                return
        self._pending.append(job)

    # ── Dispatch ─────────────────────────────────────────────────────────────

    def _dispatch(self) -> None:
        while True:
            if self._paused or self._running is not None or not self._pending:
                if not self._pending and self._running is None and not self._delayed:
                    self._bus.publish(QueueEmpty())
                    self._wake_idle_waiters()
                return

            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No running event loop; %d job(s) left pending", len(self._pending))
                return

            job = self._pending.pop(0)
            executor = self._executors.get(job.type)
            if executor is None:
                # configuration error, not transient: no retry
                job.status = JobStatus.FAILED
                job.error = f"No executor registered for job type: {job.type}"
                job.completed_at = datetime.now()
                logger.error("Job %s failed: %s", job.id, job.error)
                self._bus.publish(JobFailed(job=job, error=job.error))
                continue

            self._running = job
            job.status = JobStatus.RUNNING
            job.started_at = datetime.now()
            logger.info("Job %s (%s) started, attempt %d/%d",
                        job.id, job.type, job.retry_count + 1, job.max_retries + 1)
            self._bus.publish(JobStarted(job=job))
            self._task = loop.create_task(self._run(job, executor))
            return

    async def _run(self, job: Job, executor: ExecutorLike) -> None:
        reporter = JobProgressReporter(self._bus, job)
        try:
            result = await _invoke(executor, job, reporter)
        except asyncio.CancelledError:
            # loop shutdown / shutdown(): not a job failure, and nothing else may start
            job.status = JobStatus.CANCELLED
            job.completed_at = datetime.now()
            self._running = None
            self._task = None
            self._bus.publish(JobCancelled(job=job))
            raise
        except Exception as exc:  # noqa: BLE001
            self._handle_failure(job, exc)
        else:
            job.status = JobStatus.COMPLETED
            job.result = result
            job.progress = 100
            job.completed_at = datetime.now()
            logger.info("Job %s (%s) completed", job.id, job.type)
            self._bus.publish(JobCompleted(job=job))

        self._running = None
        self._task = None
        self._dispatch()

    def _handle_failure(self, job: Job, exc: Exception) -> None:
        job.retry_count += 1
        message = str(exc) or type(exc).__name__
        retryable = not isinstance(exc, self._non_retryable)

        if retryable and job.retry_count <= job.max_retries:
            plan = self._retry_strategy.plan(job)
            job.status = JobStatus.PENDING
            job.progress = 0
            logger.warning(
                "Job %s (%s) failed attempt %d/%d: %s; retrying%s",
                job.id, job.type, job.retry_count, job.max_retries + 1, message,
                f" in {plan.delay:.1f}s" if plan.delay > 0 else "",
            )
            if plan.delay > 0:
                self._schedule_retry(job, plan)
            else:
                self._requeue(job, plan.at_front)
            return

        job.status = JobStatus.FAILED
        job.error = message
        job.completed_at = datetime.now()
        logger.error("Job %s (%s) failed after %d attempt(s): %s",
                     job.id, job.type, job.retry_count, message)
        self._bus.publish(JobFailed(job=job, error=message))

    def _requeue(self, job: Job, at_front: bool) -> None:
        if at_front:
            self._pending.insert(0, job)
        else:
            self._insert_by_priority(job)

    def _schedule_retry(self, job: Job, plan: RetryPlan) -> None:
        loop = asyncio.get_running_loop()
        handle = loop.call_later(plan.delay, self._release_delayed, job.id, plan.at_front)
        self._delayed[job.id] = (job, handle)

    def _release_delayed(self, job_id: str, at_front: bool) -> None:
        entry = self._delayed.pop(job_id, None)
        if entry is None:
            return
        self._requeue(entry[0], at_front)
        self._dispatch()

    # ── Control ──────────────────────────────────────────────────────────────

    def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not started yet. Running or finished jobs are left alone."""
        for index, job in enumerate(self._pending):
            if job.id == job_id:
                del self._pending[index]
                self._mark_cancelled(job)
                self._wake_idle_waiters()
                return True

        entry = self._delayed.pop(job_id, None)
        if entry is not None:
            job, handle = entry
            handle.cancel()
            self._mark_cancelled(job)
            self._wake_idle_waiters()
            return True
        return False

    def _mark_cancelled(self, job: Job) -> None:
        job.status = JobStatus.CANCELLED
        job.completed_at = datetime.now()
        logger.info("Job %s (%s) cancelled", job.id, job.type)
        self._bus.publish(JobCancelled(job=job))

    def clear(self) -> None:
        """Cancel every pending job. The running job, if any, is not touched."""
        pending, self._pending = self._pending, []
        delayed, self._delayed = self._delayed, {}
        for job in pending:
            self._mark_cancelled(job)
        for job, handle in delayed.values():
            handle.cancel()
            self._mark_cancelled(job)
        self._wake_idle_waiters()

    def pause(self) -> None:
        self._paused = True
        logger.info("Queue paused")
        self._bus.publish(QueuePaused())

    def resume(self) -> None:
        self._paused = False
        logger.info("Queue resumed")
        self._bus.publish(QueueResumed())
        self._dispatch()

    async def shutdown(self) -> None:
        """Pause, cancel everything pending and interrupt the running executor."""
        self.pause()
        self.clear()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._wake_idle_waiters()

    # ── Inspection ───────────────────────────────────────────────────────────

    @property
    def paused(self) -> bool:
        return self._paused

    def get_status(self) -> QueueStatus:
        return QueueStatus(
            pending=len(self._pending) + len(self._delayed),
            running=self._running is not None,
            paused=self._paused,
            current_job=self._running,
        )

    def get_job(self, job_id: str) -> Optional[Job]:
        if self._running is not None and self._running.id == job_id:
            return self._running
        for job in self._pending:
            if job.id == job_id:
                return job
        entry = self._delayed.get(job_id)
        return entry[0] if entry else None

    def get_all_jobs(self) -> list[Job]:
        """Running job first, then pending jobs in dispatch order, then delayed retries."""
        jobs = [self._running] if self._running is not None else []
        jobs.extend(self._pending)
        jobs.extend(job for job, _ in self._delayed.values())
        return jobs

    def is_empty(self) -> bool:
        return not self._pending and not self._delayed and self._running is None

    async def join(self) -> None:
        """
        Wait until nothing is pending, waiting for a retry, or running.

        A paused queue with pending work never drains; resume() it first.
        """
        self._dispatch()
        while not self.is_empty():
            waiter = asyncio.get_running_loop().create_future()
            self._idle_waiters.append(waiter)
            await waiter

    def _wake_idle_waiters(self) -> None:
        if not self.is_empty():
            return
        waiters, self._idle_waiters = self._idle_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)


async def _invoke(executor: ExecutorLike, job: Job, reporter: ProgressReporter) -> Any:
    execute = getattr(executor, "execute", None)
    if execute is not None:
        return await execute(job, reporter)
    return await executor(job, reporter)
