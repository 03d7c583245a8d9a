"""
Consistency check and compensation results for Vector Sync Orchestrator
"""

from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field

from .job import utc_now


class DiscrepancyType(Enum):
    """Kinds of difference between source and target."""
    COUNT_MISMATCH = "count-mismatch"
    MISSING_IN_TARGET = "missing-in-target"
    EXTRA_IN_TARGET = "extra-in-target"
    FIELD_MISMATCH = "field-mismatch"
    DUPLICATE_IN_TARGET = "duplicate-in-target"


def format_discrepancy(kind: DiscrepancyType, detail: str) -> str:
    return f"{kind.value}: {detail}"


@dataclass
class ConsistencyCheckResult:
    """Read-only comparison of a job's source table and target collection."""

    job_id: str
    source_count: int = 0
    target_count: int = 0
    sample_check_passed: int = 0
    sample_check_total: int = 0
    consistent: bool = False
    discrepancies: List[str] = field(default_factory=list)
    missing_ids: List[Any] = field(default_factory=list)
    error_message: Optional[str] = None
    duration_seconds: float = 0.0
    checked_at: datetime = field(default_factory=utc_now)

    def add(self, kind: DiscrepancyType, detail: str):
        self.discrepancies.append(format_discrepancy(kind, detail))

    def discrepancies_of(self, kind: DiscrepancyType) -> List[str]:
        prefix = kind.value + ":"
        return [d for d in self.discrepancies if d.startswith(prefix)]

    @property
    def count_gap(self) -> int:
        """Rows the target is short of the source (negative if it has more)."""
        return self.source_count - self.target_count

    def report(self) -> str:
        """Render a human-readable report of the check."""
        lines = [
            f"Consistency report for job {self.job_id}",
            f"  checked at:    {self.checked_at.isoformat()}",
            f"  consistent:    {'yes' if self.consistent else 'no'}",
            f"  source count:  {self.source_count}",
            f"  target count:  {self.target_count}",
            f"  sample check:  {self.sample_check_passed}/{self.sample_check_total} passed",
            f"  duration:      {self.duration_seconds * 1000:.0f} ms",
        ]
        if self.error_message:
            lines.append(f"  error:         {self.error_message}")
        if self.discrepancies:
            lines.append(f"  discrepancies ({len(self.discrepancies)}):")
            lines.extend(f"    - {d}" for d in self.discrepancies)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "source_count": self.source_count,
            "target_count": self.target_count,
            "sample_check_passed": self.sample_check_passed,
            "sample_check_total": self.sample_check_total,
            "consistent": self.consistent,
            "discrepancies": list(self.discrepancies),
            "error_message": self.error_message,
            "duration_seconds": round(self.duration_seconds, 4),
            "checked_at": self.checked_at.isoformat()
        }


@dataclass
class CompensationOutcome:
    """Result of re-writing records missing from the target."""

    job_id: str
    compensated_ids: List[Any] = field(default_factory=list)
    still_missing_ids: List[Any] = field(default_factory=list)
    skipped_ids: List[Any] = field(default_factory=list)
    error_message: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def compensated_count(self) -> int:
        return len(self.compensated_ids)

    @property
    def still_missing_count(self) -> int:
        return len(self.still_missing_ids)

    @property
    def attempted(self) -> int:
        return self.compensated_count + self.still_missing_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "compensated_count": self.compensated_count,
            "still_missing_count": self.still_missing_count,
            "compensated_ids": list(self.compensated_ids),
            "still_missing_ids": list(self.still_missing_ids),
            "skipped_ids": list(self.skipped_ids),
            "error_message": self.error_message,
            "duration_seconds": round(self.duration_seconds, 4)
        }
