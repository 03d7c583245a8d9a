"""
Job-related data models for Vector Sync Orchestrator

Defines sync jobs, their schedules and the status lifecycle a job moves
through while the scheduler and the sync engine own it.
"""

from enum import Enum
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from croniter import croniter

from .source import SourceDescriptor
from .worker import TierName
from ..core.exceptions import InvalidStateTransitionError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(Enum):
    """Job lifecycle status."""
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class JobKind(Enum):
    """How much of the source a run reads."""
    FULL = "full"
    INCREMENTAL = "incremental"


class ScheduleType(Enum):
    """Recurrence model for scheduled jobs."""
    CRON = "cron"
    FIXED_INTERVAL = "fixed_interval"
    FIXED_RATE = "fixed_rate"


@dataclass
class ScheduleSpec:
    """
    Recurrence of a job.

    ``expression`` is a cron expression for CRON schedules and a number of
    seconds for the fixed schedules. Fixed-rate runs are spaced from the last
    start, fixed-interval runs from the last end.
    """

    schedule_type: ScheduleType
    expression: str

    def __post_init__(self):
        if isinstance(self.schedule_type, str):
            self.schedule_type = ScheduleType(self.schedule_type)
        self.expression = str(self.expression).strip()
        if self.schedule_type is ScheduleType.CRON:
            if not croniter.is_valid(self.expression):
                raise ValueError(f"invalid cron expression: {self.expression!r}")
        elif self.interval_seconds <= 0:
            raise ValueError(f"schedule interval must be positive: {self.expression!r}")

    @property
    def interval_seconds(self) -> float:
        if self.schedule_type is ScheduleType.CRON:
            raise ValueError("cron schedules have no fixed interval")
        try:
            return float(self.expression)
        except ValueError:
            raise ValueError(f"invalid schedule interval: {self.expression!r}") from None

    def next_fire_time(
        self,
        last_start: Optional[datetime] = None,
        last_end: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> datetime:
        """
        Compute the next time the job should run.

        Args:
            last_start: Start of the previous run, if any
            last_end: End of the previous run, if any
            now: Reference time (defaults to current UTC time)

        Returns:
            Next fire time as an aware UTC datetime
        """
        now = now or utc_now()
        if self.schedule_type is ScheduleType.CRON:
            return croniter(self.expression, now).get_next(datetime)

        interval = timedelta(seconds=self.interval_seconds)
        if self.schedule_type is ScheduleType.FIXED_RATE:
            anchor = last_start or now
        else:
            anchor = last_end or now
        return anchor + interval

    def to_dict(self) -> Dict[str, Any]:
        return {"schedule_type": self.schedule_type.value, "expression": self.expression}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleSpec":
        return cls(schedule_type=ScheduleType(data["schedule_type"]), expression=data["expression"])


JOB_STATUS_TRANSITIONS = {
    JobStatus.PENDING: [JobStatus.QUEUED, JobStatus.PAUSED],
    JobStatus.QUEUED: [JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.PENDING],
    JobStatus.RUNNING: [JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.PAUSED],
    JobStatus.PAUSED: [JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.PENDING, JobStatus.FAILED],
    JobStatus.SUCCESS: [JobStatus.QUEUED, JobStatus.ROLLED_BACK],
    JobStatus.FAILED: [JobStatus.QUEUED, JobStatus.ROLLED_BACK],
    JobStatus.ROLLED_BACK: [JobStatus.QUEUED]
}

IDLE_STATUSES = (JobStatus.PENDING, JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.ROLLED_BACK)


def can_transition_to(current_status: JobStatus, target_status: JobStatus) -> bool:
    """Check if a job can transition from current status to target status."""
    return target_status in JOB_STATUS_TRANSITIONS.get(current_status, [])


def get_valid_transitions(current_status: JobStatus) -> List[JobStatus]:
    """Get list of valid status transitions from current status."""
    return JOB_STATUS_TRANSITIONS.get(current_status, [])


@dataclass
class SyncJob:
    """A replication job from one source table into one vector collection."""

    # Primary identification
    job_id: str
    job_name: str
    kind: JobKind
    source: SourceDescriptor
    target_collection: str

    # Target and scheduling
    dimension: int = 128
    schedule: Optional[ScheduleSpec] = None
    priority: int = 5
    tier: Optional[TierName] = None

    # Execution limits
    batch_size: int = 1000
    error_threshold: int = 0
    timeout_seconds: Optional[float] = 3600.0
    config: Dict[str, Any] = field(default_factory=dict)

    # Status tracking
    status: JobStatus = JobStatus.PENDING
    progress_percent: float = 0.0
    exec_count: int = 0
    error_message: Optional[str] = None
    paused_from: Optional[JobStatus] = None

    # Timestamps
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    next_exec_time: Optional[datetime] = None

    # Incremental state
    high_watermark: Any = None
    rollback_watermark: Any = None

    # Last run counters
    records_total: int = 0
    records_synced: int = 0
    records_failed: int = 0

    def __post_init__(self):
        if self.kind is JobKind.INCREMENTAL and not self.source.increment_column:
            raise ValueError(f"incremental job {self.job_id} needs source.increment_column")
        if self.dimension <= 0:
            raise ValueError(f"job {self.job_id} dimension must be positive")
        if self.batch_size <= 0:
            raise ValueError(f"job {self.job_id} batch_size must be positive")

    def transition_to(self, target: JobStatus):
        """
        Move the job to ``target`` and stamp the matching timestamps.

        Raises:
            InvalidStateTransitionError: If the lifecycle forbids the move
        """
        current = self.status
        if not can_transition_to(current, target):
            raise InvalidStateTransitionError(self.job_id, current.value, target.value)

        now = utc_now()
        if target is JobStatus.RUNNING:
            # resuming a suspended run keeps its progress
            if current is not JobStatus.PAUSED:
                self.started_at = now
                self.ended_at = None
                self.exec_count += 1
                self.progress_percent = 0.0
                self.error_message = None
                self.records_total = self.records_synced = self.records_failed = 0
        elif target is JobStatus.PAUSED:
            self.paused_at = now
            self.paused_from = current
        elif target in (JobStatus.SUCCESS, JobStatus.FAILED):
            self.ended_at = now

        if current is JobStatus.PAUSED and target is not JobStatus.PAUSED:
            self.resumed_at = now
            self.paused_from = None

        self.status = target
        self.updated_at = now

    def mark_failed(self, message: str):
        """Finish the current run as FAILED with a readable message."""
        self.transition_to(JobStatus.FAILED)
        self.error_message = message

    def update_progress(self, processed: int, total: Optional[int] = None):
        """Update progress from processed/total record counts."""
        if total is not None:
            self.records_total = total
        if self.records_total > 0:
            self.progress_percent = min(100.0, (processed / self.records_total) * 100)
        self.updated_at = utc_now()

    def is_idle(self) -> bool:
        """True when the job is neither queued, running nor paused."""
        return self.status in IDLE_STATUSES

    def get_duration(self) -> Optional[float]:
        """Get duration of the last run in seconds if it ended."""
        if self.started_at and self.ended_at:
            return (self.ended_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for serialization."""
        return {
            "job_id": self.job_id,
            "job_name": self.job_name,
            "kind": self.kind.value,
            "source": self.source.to_dict(),
            "target_collection": self.target_collection,
            "dimension": self.dimension,
            "schedule": self.schedule.to_dict() if self.schedule else None,
            "priority": self.priority,
            "tier": self.tier.value if self.tier else None,
            "batch_size": self.batch_size,
            "error_threshold": self.error_threshold,
            "timeout_seconds": self.timeout_seconds,
            "config": self.config,
            "status": self.status.value,
            "progress_percent": self.progress_percent,
            "exec_count": self.exec_count,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
            "resumed_at": self.resumed_at.isoformat() if self.resumed_at else None,
            "next_exec_time": self.next_exec_time.isoformat() if self.next_exec_time else None,
            "high_watermark": self.high_watermark,
            "records_total": self.records_total,
            "records_synced": self.records_synced,
            "records_failed": self.records_failed,
            "duration_seconds": self.get_duration()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncJob":
        """Create a job from a definition or a dictionary produced by ``to_dict``."""
        data = dict(data)
        data.pop("duration_seconds", None)
        data.pop("paused_from", None)

        for field_name in ["created_at", "updated_at", "started_at", "ended_at",
                           "paused_at", "resumed_at", "next_exec_time"]:
            if isinstance(data.get(field_name), str):
                data[field_name] = datetime.fromisoformat(data[field_name])

        data["kind"] = JobKind(data["kind"])
        if not isinstance(data["source"], SourceDescriptor):
            data["source"] = SourceDescriptor.model_validate(data["source"])
        if data.get("schedule") and not isinstance(data["schedule"], ScheduleSpec):
            data["schedule"] = ScheduleSpec.from_dict(data["schedule"])
        if data.get("tier"):
            data["tier"] = TierName(data["tier"])
        if "status" in data:
            data["status"] = JobStatus(data["status"])

        return cls(**data)
