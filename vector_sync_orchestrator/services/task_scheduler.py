"""
TaskScheduler service for Vector Sync Orchestrator

Orders submitted jobs by priority, bounds how many run at once and hands
them to the resource governor's worker tiers from a periodic dispatch loop.
"""

import asyncio
import heapq
import itertools
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..core.config import SchedulerSettings
from ..core.exceptions import DuplicateSubmissionError, SchedulerError
from ..models.job import SyncJob, JobStatus, utc_now
from ..models.worker import TierName
from ..utils.logger import get_logger, set_log_context
from ..utils.metrics import SyncMetrics
from .job_registry import JobRegistry, CancellationToken
from .resource_governor import ResourceGovernor

JobRunner = Callable[[SyncJob, CancellationToken], Awaitable[Any]]


@dataclass(order=True)
class ScheduledEntry:
    """Queue position of a job: higher priority first, then earlier enqueue time."""

    sort_key: Tuple[int, datetime, int] = field(init=False, repr=False)
    job_id: str = field(compare=False)
    priority: int = field(compare=False)
    enqueue_time: datetime = field(compare=False)
    sequence: int = field(compare=False, default=0)

    def __post_init__(self):
        self.sort_key = (-self.priority, self.enqueue_time, self.sequence)


class TaskScheduler:
    """
    Priority scheduler with bounded concurrency.

    Provides capabilities for:
    - Idempotent submission and cancellation of queued jobs
    - Pause/resume that keeps a job's original queue position
    - A dispatch loop honouring max concurrency and memory admission
    - Automatic submission of scheduled jobs when they fall due
    """

    def __init__(
        self,
        registry: JobRegistry,
        runner: JobRunner,
        governor: ResourceGovernor,
        settings: Optional[SchedulerSettings] = None,
        metrics: Optional[SyncMetrics] = None
    ):
        """
        Initialize TaskScheduler.

        Args:
            registry: Registry holding job definitions and tokens
            runner: Coroutine function executing one job run
            governor: Resource governor providing tiers and admission
            settings: Scheduler settings
            metrics: Optional metrics sink
        """
        self.registry = registry
        self._runner = runner
        self.governor = governor
        self.settings = settings or SchedulerSettings()
        self.metrics = metrics

        self._heap: List[ScheduledEntry] = []
        self._queued: Dict[str, ScheduledEntry] = {}
        self._paused: Dict[str, ScheduledEntry] = {}
        self._running: Dict[str, Optional[asyncio.Future]] = {}
        self._active = 0
        self._sequence = itertools.count()

        self._dispatch_task: Optional[asyncio.Task] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._closed = False

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="task_scheduler")

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queue_size(self) -> int:
        return len(self._queued)

    @property
    def is_running(self) -> bool:
        return self._dispatch_task is not None and not self._dispatch_task.done()

    async def start(self):
        """Start the dispatch loop."""
        if self.is_running:
            return
        self.logger.info("Starting TaskScheduler", extra={
            "max_concurrency": self.settings.max_concurrency,
            "tick_interval_seconds": self.settings.tick_interval_seconds
        })
        self._closed = False
        self._shutdown_event = asyncio.Event()
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())

    async def stop(self, cancel_running: bool = True):
        """
        Stop the dispatch loop and wait for running jobs.

        Args:
            cancel_running: Signal running jobs to stop at their next batch boundary
        """
        self.logger.info("Stopping TaskScheduler", extra={"active_jobs": self._active})
        self._closed = True
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        if self._dispatch_task is not None:
            await self._dispatch_task
            self._dispatch_task = None

        if cancel_running:
            for job_id in list(self._running):
                token = self.registry.token_for(job_id)
                if token:
                    token.cancel()

        pending = [f for f in self._running.values() if f is not None and not f.done()]
        if pending:
            done, still_pending = await asyncio.wait(pending, timeout=self.settings.shutdown_timeout_seconds)
            if still_pending:
                self.logger.warning("Jobs still running after shutdown timeout", extra={
                    "jobs": len(still_pending)
                })

    # Submission

    def _check_submittable(self, job: SyncJob):
        job_id = job.job_id
        if job_id in self._running:
            raise DuplicateSubmissionError(job_id, "running")
        if job_id in self._queued:
            raise DuplicateSubmissionError(job_id, "queued")
        if job_id in self._paused:
            raise DuplicateSubmissionError(job_id, "paused")
        registered = self.registry.find(job_id)
        if registered is not None and not registered.is_idle():
            raise DuplicateSubmissionError(job_id, registered.status.value)

    async def submit(self, job: SyncJob, priority: Optional[int] = None) -> bool:
        """
        Queue a job for execution.

        Args:
            job: Job to queue; registered if it is not yet known
            priority: Overrides ``job.priority`` when given

        Returns:
            False if the job is already queued, running or paused

        Raises:
            SchedulerError: If the scheduler has been stopped
        """
        if self._closed:
            raise SchedulerError("submit", "scheduler is stopped")
        try:
            self._check_submittable(job)
        except DuplicateSubmissionError as e:
            self.logger.warning("Rejected duplicate submission", extra={
                "job_id": job.job_id,
                "reason": e.message
            })
            return False

        if priority is not None:
            job.priority = priority
        self.registry.register(job)
        job.transition_to(JobStatus.QUEUED)

        entry = ScheduledEntry(
            job_id=job.job_id,
            priority=job.priority,
            enqueue_time=utc_now(),
            sequence=next(self._sequence)
        )
        heapq.heappush(self._heap, entry)
        self._queued[job.job_id] = entry
        self._update_gauges()

        self.logger.info("Job enqueued", extra={
            "job_id": job.job_id,
            "priority": job.priority,
            "queue_size": len(self._queued)
        })
        return True

    def _remove_from_heap(self, entry: ScheduledEntry):
        self._heap.remove(entry)
        heapq.heapify(self._heap)

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a job that has not started.

        A running job is only flagged for termination; the sync engine stops
        it at the next batch boundary and this method returns False.

        Returns:
            True if the job was removed from the queue
        """
        entry = self._queued.pop(job_id, None)
        if entry is not None:
            self._remove_from_heap(entry)
        else:
            entry = self._paused.pop(job_id, None)

        if entry is not None:
            self.registry.get(job_id).transition_to(JobStatus.PENDING)
            self._update_gauges()
            self.logger.info("Job cancelled before dispatch", extra={"job_id": job_id})
            return True

        token = self.registry.token_for(job_id)
        if job_id in self._running and token is not None:
            token.cancel()
            self.logger.info("Running job marked for termination", extra={"job_id": job_id})
        return False

    async def pause(self, job_id: str) -> bool:
        """
        Pause a pending, queued or running job.

        A queued job leaves the queue but keeps its entry. A running job
        suspends at its next batch boundary.
        """
        entry = self._queued.pop(job_id, None)
        if entry is not None:
            self._remove_from_heap(entry)
            self._paused[job_id] = entry
            self.registry.get(job_id).transition_to(JobStatus.PAUSED)
            self._update_gauges()
            self.logger.info("Queued job paused", extra={"job_id": job_id})
            return True

        if job_id in self._running:
            token = self.registry.token_for(job_id)
            if token is None or token.cancelled:
                return False
            token.pause()
            self.logger.info("Running job pause requested", extra={"job_id": job_id})
            return True

        job = self.registry.find(job_id)
        if job is not None and job.status is JobStatus.PENDING:
            job.transition_to(JobStatus.PAUSED)
            return True
        return False

    async def resume(self, job_id: str) -> bool:
        """
        Resume a paused job.

        A job paused while queued goes back with its original priority and
        enqueue time, ahead of anything queued after it.
        """
        entry = self._paused.pop(job_id, None)
        if entry is not None:
            heapq.heappush(self._heap, entry)
            self._queued[job_id] = entry
            self.registry.get(job_id).transition_to(JobStatus.QUEUED)
            self._update_gauges()
            self.logger.info("Job resumed into queue", extra={
                "job_id": job_id,
                "priority": entry.priority,
                "enqueue_time": entry.enqueue_time.isoformat()
            })
            return True

        if job_id in self._running:
            token = self.registry.token_for(job_id)
            if token is not None and token.paused:
                token.resume()
                self.logger.info("Running job resumed", extra={"job_id": job_id})
                return True
            return False

        job = self.registry.find(job_id)
        if job is not None and job.status is JobStatus.PAUSED and job.paused_from is JobStatus.PENDING:
            job.transition_to(JobStatus.PENDING)
            return True
        return False

    def queued_job_ids(self) -> List[str]:
        """Queued job ids in dispatch order."""
        return [entry.job_id for entry in sorted(self._heap)]

    # Dispatch

    def tier_for(self, job: SyncJob) -> TierName:
        if job.tier is not None:
            return job.tier
        if job.priority >= self.settings.core_priority_threshold:
            return TierName.CORE
        if job.priority >= self.settings.non_core_priority_threshold:
            return TierName.NON_CORE
        return TierName.LOW_PRIORITY

    async def dispatch_pending(self) -> int:
        """
        Run one dispatch tick.

        Pops jobs in priority order while slots are free and the governor
        admits new work.

        Returns:
            Number of jobs handed to workers
        """
        dispatched = 0
        while self._heap and self._active < self.settings.max_concurrency:
            if not self.governor.admit():
                self.logger.debug("Dispatch deferred by resource governor")
                break

            entry = heapq.heappop(self._heap)
            self._queued.pop(entry.job_id, None)
            job = self.registry.find(entry.job_id)
            if job is None or job.status is not JobStatus.QUEUED:
                continue

            # Claim the slot before the first await
            self._active += 1
            self._running[job.job_id] = None
            job.transition_to(JobStatus.RUNNING)
            token = self.registry.new_token(job.job_id, job.timeout_seconds)
            tier = self.tier_for(job)
            self._update_gauges()

            self.logger.info("Dispatching job", extra={
                "job_id": job.job_id,
                "priority": job.priority,
                "tier": tier.value,
                "active_jobs": self._active
            })

            future = await self.governor.tier(tier).submit(self._execute, job, token)
            if job.job_id in self._running:
                self._running[job.job_id] = future
            dispatched += 1

        return dispatched

    async def _execute(self, job: SyncJob, token: CancellationToken):
        """Run one job; failures stop here so the dispatch loop keeps going."""
        try:
            await self._runner(job, token)
            if job.status in (JobStatus.RUNNING, JobStatus.PAUSED):
                job.mark_failed("run ended without a final status")
        except Exception as e:
            self.logger.error("Job execution failed", extra={"job_id": job.job_id}, exc_info=True)
            if job.status in (JobStatus.RUNNING, JobStatus.PAUSED):
                job.mark_failed(f"execution error: {e}")
        finally:
            self._active -= 1
            self._running.pop(job.job_id, None)
            self.registry.discard_token(job.job_id)
            if job.schedule is not None:
                job.next_exec_time = job.schedule.next_fire_time(last_start=job.started_at, last_end=job.ended_at)
            self._update_gauges()
            self.logger.info("Job run completed", extra={
                "job_id": job.job_id,
                "status": job.status.value,
                "active_jobs": self._active
            })

    async def enqueue_due_jobs(self, now: Optional[datetime] = None) -> int:
        """Submit idle scheduled jobs whose next execution time has passed."""
        if self._closed:
            return 0
        now = now or utc_now()
        submitted = 0
        for job in self.registry.list_jobs():
            if job.schedule is None or not job.is_idle():
                continue
            if job.next_exec_time is None:
                job.next_exec_time = job.schedule.next_fire_time(now=now)
                continue
            if job.next_exec_time <= now and await self.submit(job):
                submitted += 1
        return submitted

    async def _dispatch_loop(self):
        """Tick until shutdown: submit due jobs, then dispatch."""
        while not self._shutdown_event.is_set():
            try:
                await self.enqueue_due_jobs()
                await self.dispatch_pending()
            except Exception:
                self.logger.error("Dispatch tick failed", exc_info=True)

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.settings.tick_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def _update_gauges(self):
        if self.metrics:
            self.metrics.queue_depth.set(len(self._queued))
            self.metrics.active_jobs.set(self._active)

    def statistics(self) -> Dict[str, Any]:
        """Get scheduler statistics."""
        return {
            "queue_size": len(self._queued),
            "paused_jobs": len(self._paused),
            "active_jobs": self._active,
            "max_concurrency": self.settings.max_concurrency,
            "running_job_ids": list(self._running),
            "dispatch_loop_running": self.is_running
        }
