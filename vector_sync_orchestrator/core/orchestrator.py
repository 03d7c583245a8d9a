"""
Main SyncOrchestrator class that coordinates all services

Provides the primary interface for registering sync jobs, triggering and
controlling their runs, and verifying or repairing target collections.
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..adapters.base import SourceAdapter, Vectorizer, VectorStoreAdapter
from ..models.job import SyncJob, JobStatus, can_transition_to, utc_now
from ..models.execution import BatchResult, ProcessStatus
from ..models.consistency import ConsistencyCheckResult, CompensationOutcome
from ..services.job_registry import JobRegistry, CancellationToken
from ..services.resource_governor import ResourceGovernor, MemoryProbe
from ..services.sync_engine import BatchSyncEngine
from ..services.consistency_service import ConsistencyService
from ..services.task_scheduler import TaskScheduler
from ..utils.logger import get_logger, set_log_context
from ..utils.metrics import SyncMetrics
from .config import OrchestratorConfig, load_job_definitions
from .exceptions import DuplicateSubmissionError, JobNotFoundError, VectorSyncError


class SyncOrchestrator:
    """
    Main orchestrator class that coordinates all services.

    Provides a unified interface for:
    - Job registration and triggering
    - Pause, resume and cancellation of queued or running jobs
    - Consistency checks, compensation and rollback
    - Selective retry of failed records
    - Health checks and system status
    """

    def __init__(
        self,
        source_adapter: SourceAdapter,
        vectorizer: Vectorizer,
        vector_store: VectorStoreAdapter,
        config: Optional[OrchestratorConfig] = None,
        memory_probe: Optional[MemoryProbe] = None,
        metrics: Optional[SyncMetrics] = None,
        sleep=asyncio.sleep
    ):
        """
        Initialize the SyncOrchestrator.

        Args:
            source_adapter: Relational source adapter
            vectorizer: Text to vector model
            vector_store: Target vector store adapter
            config: Orchestrator configuration (defaults apply when omitted)
            memory_probe: Callable returning (used_bytes, max_bytes)
            metrics: Metrics sink; a private registry is created when omitted
            sleep: Sleep coroutine used between retry attempts
        """
        self.config = config or OrchestratorConfig()
        self.source_adapter = source_adapter
        self.vectorizer = vectorizer
        self.vector_store = vector_store
        self.metrics = metrics or SyncMetrics()

        self.registry = JobRegistry()
        self.governor = ResourceGovernor(self.config.governor, memory_probe, self.metrics)
        self.sync_engine = BatchSyncEngine(
            source_adapter,
            vectorizer,
            vector_store,
            self.governor,
            self.registry,
            settings=self.config.sync,
            retry_settings=self.config.retry,
            metrics=self.metrics,
            sleep=sleep
        )
        self.consistency = ConsistencyService(
            source_adapter,
            vector_store,
            self.sync_engine,
            settings=self.config.consistency,
            vector_field=self.config.sync.vector_field,
            metrics=self.metrics
        )
        self.scheduler = TaskScheduler(
            self.registry,
            self._execute_job,
            self.governor,
            settings=self.config.scheduler,
            metrics=self.metrics
        )

        self._is_running = False
        self._started_at = None

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="orchestrator")

    async def start(self):
        """Start the dispatch loop."""
        self.logger.info("Starting SyncOrchestrator", extra={
            "max_concurrency": self.config.scheduler.max_concurrency,
            "registered_jobs": len(self.registry)
        })
        await self.scheduler.start()
        self._is_running = True
        self._started_at = utc_now()
        self.logger.info("SyncOrchestrator started successfully")

    async def stop(self):
        """Stop scheduling, wait for running jobs and close the adapters."""
        self.logger.info("Stopping SyncOrchestrator")
        await self.scheduler.stop()
        await self.governor.shutdown(self.config.scheduler.shutdown_timeout_seconds)

        for adapter in (self.source_adapter, self.vector_store):
            try:
                await adapter.close()
            except Exception:
                self.logger.error(f"Error closing adapter {adapter.__class__.__name__}", exc_info=True)

        self._is_running = False
        self.logger.info("SyncOrchestrator stopped")

    def is_running(self) -> bool:
        """Check if orchestrator is running."""
        return self._is_running

    # Job registration

    def register_job(self, job: SyncJob) -> SyncJob:
        """
        Register or replace a job definition.

        Raises:
            DuplicateSubmissionError: If a job with the same id is queued, running or paused
        """
        existing = self.registry.find(job.job_id)
        if existing is not None and not existing.is_idle():
            raise DuplicateSubmissionError(job.job_id, existing.status.value)
        if job.schedule is not None and job.next_exec_time is None:
            job.next_exec_time = job.schedule.next_fire_time()
        self.registry.register(job)
        self.logger.info("Job registered", extra={
            "job_id": job.job_id,
            "kind": job.kind.value,
            "collection": job.target_collection,
            "next_exec_time": job.next_exec_time.isoformat() if job.next_exec_time else None
        })
        return job

    def load_jobs(self, path: Union[str, Path]) -> List[SyncJob]:
        """Register every job defined in a YAML file."""
        return [self.register_job(job) for job in load_job_definitions(path)]

    def remove_job(self, job_id: str) -> bool:
        """Remove an idle job and everything recorded for it."""
        job = self.registry.find(job_id)
        if job is None or not job.is_idle():
            return False
        self.registry.remove(job_id)
        self.logger.info("Job removed", extra={"job_id": job_id})
        return True

    # Run control

    async def trigger(self, job_id: str) -> Dict[str, Any]:
        """
        Queue a run of a registered job.

        Returns:
            ``{"success": bool, "message": str}``
        """
        try:
            job = self.registry.get(job_id)
            if not await self.scheduler.submit(job):
                return {"success": False, "message": f"job {job_id} is already {job.status.value}"}
        except VectorSyncError as e:
            self.logger.warning("Trigger rejected", extra={"job_id": job_id, "error": e.message})
            return {"success": False, "message": e.message}
        except Exception as e:
            self.logger.error("Error triggering job", extra={"job_id": job_id}, exc_info=True)
            return {"success": False, "message": f"trigger failed: {e}"}

        return {"success": True, "message": f"job {job_id} queued at priority {job.priority}"}

    async def pause(self, job_id: str) -> bool:
        try:
            return await self.scheduler.pause(job_id)
        except Exception:
            self.logger.error("Error pausing job", extra={"job_id": job_id}, exc_info=True)
            return False

    async def resume(self, job_id: str) -> bool:
        try:
            return await self.scheduler.resume(job_id)
        except Exception:
            self.logger.error("Error resuming job", extra={"job_id": job_id}, exc_info=True)
            return False

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a queued job.

        A running job is signalled to stop at its next batch boundary, but
        False is returned because it was already dispatched.
        """
        try:
            return await self.scheduler.cancel(job_id)
        except Exception:
            self.logger.error("Error cancelling job", extra={"job_id": job_id}, exc_info=True)
            return False

    def progress(self, job_id: str) -> Dict[str, Any]:
        """Current status and progress percent of a job."""
        job = self.registry.find(job_id)
        if job is None:
            return {"status": "not_found", "percent": 0.0}
        return {"status": job.status.value, "percent": job.progress_percent}

    async def _execute_job(self, job: SyncJob, token: CancellationToken) -> BatchResult:
        result = await self.sync_engine.execute(job, token)
        if job.status is not JobStatus.SUCCESS or not self.config.sync.verify_after_sync:
            return result

        check = await self.consistency.check(job)
        if check.consistent:
            return result
        if self.config.sync.auto_compensate and not check.error_message:
            outcome = await self.consistency.compensate(job, check)
            if outcome.still_missing_count == 0 and not outcome.error_message:
                return result
        job.error_message = check.error_message or (
            f"post-sync check found {len(check.discrepancies)} discrepancies"
        )
        self.logger.warning("Post-sync verification failed", extra={
            "job_id": job.job_id,
            "discrepancies": len(check.discrepancies)
        })
        return result

    # Verification and repair

    async def check_consistency(self, job_id: str) -> ConsistencyCheckResult:
        job = self.registry.find(job_id)
        if job is None:
            return ConsistencyCheckResult(
                job_id=job_id,
                consistent=False,
                error_message=f"Check failed: {JobNotFoundError(job_id).message}"
            )
        return await self.consistency.check(job)

    async def compensate(self, job_id: str) -> CompensationOutcome:
        job = self.registry.find(job_id)
        if job is None:
            return CompensationOutcome(
                job_id=job_id,
                error_message=f"Compensation skipped: {JobNotFoundError(job_id).message}"
            )
        return await self.consistency.compensate(job)

    async def rollback(self, job_id: str) -> bool:
        """
        Undo the last run of a finished job.

        Returns:
            True if the job is now ROLLED_BACK
        """
        job = self.registry.find(job_id)
        if job is None or not can_transition_to(job.status, JobStatus.ROLLED_BACK):
            self.logger.warning("Rollback not possible", extra={
                "job_id": job_id,
                "status": job.status.value if job else None
            })
            return False
        try:
            return await self.sync_engine.rollback(job)
        except Exception:
            self.logger.error("Error rolling back job", extra={"job_id": job_id}, exc_info=True)
            return False

    async def retry_failed(self, job_id: str) -> BatchResult:
        """Selectively re-sync the records listed in a job's pending error records."""
        job = self.registry.find(job_id)
        if job is None:
            return BatchResult(error_message=JobNotFoundError(job_id).message)
        if not job.is_idle():
            return BatchResult(error_message=f"job {job_id} is {job.status.value}")
        try:
            return await self.sync_engine.retry_failed_records(job)
        except Exception as e:
            self.logger.error("Error retrying failed records", extra={"job_id": job_id}, exc_info=True)
            return BatchResult(error_message=f"retry failed: {e}")

    # Queries

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Get detailed status of a job.

        Returns:
            Job dictionary with error-record counts, or None if not found
        """
        job = self.registry.find(job_id)
        if job is None:
            return None
        status = job.to_dict()
        status["pending_error_records"] = len(self.registry.errors_for(job_id, ProcessStatus.PENDING))
        return status

    def list_jobs(self, status_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        status = JobStatus(status_filter) if status_filter else None
        return [job.to_dict() for job in self.registry.list_jobs(status)]

    def error_records(self, job_id: str, status: Optional[ProcessStatus] = None) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.registry.errors_for(job_id, status)]

    async def health_check(self) -> Dict[str, Any]:
        """
        Probe the vector store and every registered source.

        Returns:
            Dictionary with an overall ``healthy`` flag and per-connection results
        """
        health: Dict[str, Any] = {"healthy": True, "vector_store": False, "sources": {}}
        try:
            health["vector_store"] = bool(await self.vector_store.check_connection())
        except Exception as e:
            self.logger.warning("Vector store health check failed", extra={"error": str(e)})

        sources = {job.source.source_id: job.source for job in self.registry.list_jobs()}
        for source_id, source in sources.items():
            try:
                health["sources"][source_id] = bool(await self.source_adapter.test_connection(source))
            except Exception as e:
                self.logger.warning("Source health check failed", extra={"source_id": source_id, "error": str(e)})
                health["sources"][source_id] = False

        health["healthy"] = health["vector_store"] and all(health["sources"].values())
        return health

    def get_system_status(self) -> Dict[str, Any]:
        """Aggregate scheduler, governor and error statistics."""
        jobs_by_status: Dict[str, int] = {}
        for job in self.registry.list_jobs():
            jobs_by_status[job.status.value] = jobs_by_status.get(job.status.value, 0) + 1

        uptime = (utc_now() - self._started_at).total_seconds() if self._started_at else 0.0
        return {
            "running": self._is_running,
            "uptime_seconds": uptime,
            "total_jobs": len(self.registry),
            "jobs_by_status": jobs_by_status,
            "scheduler": self.scheduler.statistics(),
            "governor": self.governor.status(),
            "error_records": self.registry.error_summary(),
            "errors": self.sync_engine.error_registry.get_error_statistics()
        }
