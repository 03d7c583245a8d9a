"""
Configuration for Vector Sync Orchestrator

Typed settings models loaded from YAML or plain dictionaries. Every section
has defaults, so an empty file is a valid configuration.
"""

from pathlib import Path
from typing import Optional, Dict, Any, List, Union

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

from ..models.job import SyncJob
from ..models.worker import TierName, Tier
from .exceptions import ConfigurationError


class SchedulerSettings(BaseModel):
    """Dispatch loop and job concurrency."""

    max_concurrency: int = Field(default=5, ge=1)
    tick_interval_seconds: float = Field(default=0.1, gt=0)
    core_priority_threshold: int = 8
    non_core_priority_threshold: int = 4
    shutdown_timeout_seconds: float = Field(default=30.0, ge=0)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "SchedulerSettings":
        if self.non_core_priority_threshold > self.core_priority_threshold:
            raise ValueError("non_core_priority_threshold must not exceed core_priority_threshold")
        return self


class RetrySettings(BaseModel):
    """Bounded retry with exponential backoff capped at max_delay_seconds."""

    max_retries: int = Field(default=3, ge=1, le=20)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=60.0, ge=0)
    max_record_retries: int = Field(default=5, ge=1)


class SyncSettings(BaseModel):
    """Batch sync engine behaviour."""

    batch_timeout_seconds: float = Field(default=60.0, gt=0)
    fetch_timeout_seconds: float = Field(default=300.0, gt=0)
    vectorize_timeout_seconds: float = Field(default=30.0, gt=0)
    vector_field: str = "vector"
    replace_existing: bool = True
    verify_after_sync: bool = False
    auto_compensate: bool = False
    text_separator: str = " "


class ConsistencySettings(BaseModel):
    """Consistency check and compensation limits."""

    sample_size: int = Field(default=100, ge=1, le=10000)
    # Start each sample window at a random offset; False always samples the lowest keys
    randomize_sample: bool = True
    lookup_timeout_seconds: float = Field(default=30.0, gt=0)
    rescan_page_size: int = Field(default=1000, ge=1)
    max_compensation_records: int = Field(default=10000, ge=1)


class TierSettings(BaseModel):
    core_workers: int = Field(ge=1)
    max_workers: int = Field(ge=1)
    queue_capacity: int = Field(ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "TierSettings":
        if self.max_workers < self.core_workers:
            raise ValueError("max_workers must be >= core_workers")
        return self


def _default_tiers() -> Dict[TierName, TierSettings]:
    return {
        TierName.CORE: TierSettings(core_workers=10, max_workers=20, queue_capacity=1000),
        TierName.NON_CORE: TierSettings(core_workers=5, max_workers=10, queue_capacity=500),
        TierName.LOW_PRIORITY: TierSettings(core_workers=2, max_workers=5, queue_capacity=200),
        TierName.BATCH: TierSettings(core_workers=15, max_workers=30, queue_capacity=2000),
    }


class GovernorSettings(BaseModel):
    """Memory admission and worker tier sizing."""

    memory_threshold: float = Field(default=0.8, gt=0, le=1)
    hard_batch_cap: int = Field(default=1000, ge=1)
    memory_limit_bytes: Optional[int] = Field(default=None, gt=0)
    gc_cooldown_seconds: float = Field(default=5.0, ge=0)
    tiers: Dict[TierName, TierSettings] = Field(default_factory=_default_tiers)

    @model_validator(mode="after")
    def _fill_missing_tiers(self) -> "GovernorSettings":
        defaults = _default_tiers()
        for name, settings in defaults.items():
            self.tiers.setdefault(name, settings)
        return self

    def build_tiers(self) -> Dict[TierName, Tier]:
        return {
            name: Tier(
                name=name,
                core_workers=settings.core_workers,
                max_workers=settings.max_workers,
                queue_capacity=settings.queue_capacity
            )
            for name, settings in self.tiers.items()
        }


class LoggingSettings(BaseModel):
    level: str = "INFO"
    structured: bool = True
    log_file: Optional[str] = None


class OrchestratorConfig(BaseModel):
    """Top-level configuration of a sync orchestrator."""

    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    consistency: ConsistencySettings = Field(default_factory=ConsistencySettings)
    governor: GovernorSettings = Field(default_factory=GovernorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OrchestratorConfig":
        """
        Build a configuration from a plain dictionary.

        Raises:
            ConfigurationError: If a value fails validation
        """
        try:
            return cls.model_validate(data or {})
        except PydanticValidationError as e:
            first = e.errors()[0]
            key = ".".join(str(part) for part in first.get("loc", ())) or "config"
            raise ConfigurationError(key, first.get("msg", str(e))) from e

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "OrchestratorConfig":
        """Load configuration from a YAML file."""
        return cls.from_dict(_read_yaml(path))

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def _read_yaml(path: Union[str, Path]) -> Any:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(str(path), "file not found") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(str(path), f"invalid YAML: {e}") from e


def load_job_definitions(path: Union[str, Path]) -> List[SyncJob]:
    """
    Load job definitions from a YAML file.

    The file holds either a list of job mappings or a mapping with a ``jobs``
    key. Each mapping follows ``SyncJob.from_dict``.

    Args:
        path: YAML file path

    Returns:
        Parsed jobs in file order
    """
    data = _read_yaml(path) or []
    if isinstance(data, dict):
        data = data.get("jobs", [])
    if not isinstance(data, list):
        raise ConfigurationError(str(path), "expected a list of jobs")

    jobs = []
    seen = set()
    for index, entry in enumerate(data):
        try:
            job = SyncJob.from_dict(entry)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"jobs[{index}]", str(e)) from e
        if job.job_id in seen:
            raise ConfigurationError(f"jobs[{index}]", f"duplicate job_id {job.job_id}")
        seen.add(job.job_id)
        jobs.append(job)
    return jobs
