"""
Job registry for Vector Sync Orchestrator

Holds registered jobs, their cancellation tokens, the error-record log and
the keys written by each job's last run. One registry is created per
orchestrator and passed to the services that need it.
"""

import asyncio
import time
from typing import Dict, List, Optional, Any

from ..core.exceptions import JobNotFoundError
from ..models.job import SyncJob, JobStatus
from ..models.execution import ErrorRecord, ProcessStatus


class CancellationToken:
    """
    Cooperative stop and pause signal for one job run.

    The sync engine checks the token between batches; a batch already in
    flight always finishes. An optional timeout turns into a deadline that is
    checked at the same points.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._cancelled = False
        self._resumed = asyncio.Event()
        self._resumed.set()
        self.timeout_seconds = timeout_seconds
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def timed_out(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def should_stop(self) -> bool:
        return self._cancelled or self.timed_out

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def cancel(self):
        self._cancelled = True
        # a paused run must wake up to notice the cancellation
        self._resumed.set()

    def pause(self):
        if not self._cancelled:
            self._resumed.clear()

    def resume(self):
        self._resumed.set()

    async def wait_if_paused(self):
        await self._resumed.wait()


class JobRegistry:
    """In-memory store of jobs and their run-time state."""

    def __init__(self):
        self._jobs: Dict[str, SyncJob] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._errors: Dict[str, List[ErrorRecord]] = {}
        self._run_keys: Dict[str, List[Any]] = {}

    def register(self, job: SyncJob) -> SyncJob:
        """Add or replace a job definition."""
        self._jobs[job.job_id] = job
        return job

    def get(self, job_id: str) -> SyncJob:
        """
        Get a registered job.

        Raises:
            JobNotFoundError: If no job has this id
        """
        try:
            return self._jobs[job_id]
        except KeyError:
            raise JobNotFoundError(job_id) from None

    def find(self, job_id: str) -> Optional[SyncJob]:
        return self._jobs.get(job_id)

    def remove(self, job_id: str) -> SyncJob:
        job = self.get(job_id)
        del self._jobs[job_id]
        self._tokens.pop(job_id, None)
        self._errors.pop(job_id, None)
        self._run_keys.pop(job_id, None)
        return job

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[SyncJob]:
        jobs = list(self._jobs.values())
        if status is not None:
            jobs = [job for job in jobs if job.status is status]
        return jobs

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    # Cancellation tokens

    def new_token(self, job_id: str, timeout_seconds: Optional[float] = None) -> CancellationToken:
        """Issue a fresh token for a new run of ``job_id``."""
        token = CancellationToken(timeout_seconds)
        self._tokens[job_id] = token
        return token

    def token_for(self, job_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(job_id)

    def discard_token(self, job_id: str):
        self._tokens.pop(job_id, None)

    # Error-record log

    def record_error(self, record: ErrorRecord):
        self._errors.setdefault(record.job_id, []).append(record)

    def errors_for(self, job_id: str, status: Optional[ProcessStatus] = None) -> List[ErrorRecord]:
        records = self._errors.get(job_id, [])
        if status is not None:
            records = [r for r in records if r.process_status is status]
        return list(records)

    def error_summary(self) -> Dict[str, int]:
        summary: Dict[str, int] = {}
        for records in self._errors.values():
            for record in records:
                key = record.process_status.value
                summary[key] = summary.get(key, 0) + 1
        return summary

    # Keys written by the last run, used for rollback

    def set_run_keys(self, job_id: str, keys: List[Any]):
        self._run_keys[job_id] = list(keys)

    def run_keys(self, job_id: str) -> List[Any]:
        return list(self._run_keys.get(job_id, []))

    def clear_run_keys(self, job_id: str):
        self._run_keys.pop(job_id, None)
