"""
Worker tier and memory models for Vector Sync Orchestrator

Describes the named worker tiers that isolate workloads by priority and the
memory budget used to size batches.
"""

from enum import Enum
from typing import Dict, Any
from dataclasses import dataclass


class TierName(Enum):
    """Worker tiers, from most to least latency sensitive."""
    CORE = "core"
    NON_CORE = "non_core"
    LOW_PRIORITY = "low_priority"
    BATCH = "batch"


class SaturationPolicy(Enum):
    """What a tier does with work once workers and queue are full."""
    CALLER_RUNS = "caller_runs"


@dataclass(frozen=True)
class Tier:
    """Sizing of one worker tier."""

    name: TierName
    core_workers: int
    max_workers: int
    queue_capacity: int
    saturation_policy: SaturationPolicy = SaturationPolicy.CALLER_RUNS

    def __post_init__(self):
        if self.core_workers < 1:
            raise ValueError(f"tier {self.name.value} needs at least one core worker")
        if self.max_workers < self.core_workers:
            raise ValueError(f"tier {self.name.value} max_workers below core_workers")
        if self.queue_capacity < 0:
            raise ValueError(f"tier {self.name.value} queue_capacity must not be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name.value,
            "core_workers": self.core_workers,
            "max_workers": self.max_workers,
            "queue_capacity": self.queue_capacity,
            "saturation_policy": self.saturation_policy.value
        }


def format_bytes(size: float) -> str:
    """Render a byte count as B/KB/MB/GB."""
    for unit in ("B", "KB", "MB"):
        if abs(size) < 1024:
            return f"{size:.2f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.2f} GB"


@dataclass
class MemoryBudget:
    """Point-in-time memory usage against the configured threshold."""

    used_bytes: int
    max_bytes: int
    threshold: float = 0.8

    @property
    def available_bytes(self) -> int:
        return max(0, self.max_bytes - self.used_bytes)

    @property
    def usage_ratio(self) -> float:
        if self.max_bytes <= 0:
            return 1.0
        return self.used_bytes / self.max_bytes

    @property
    def over_threshold(self) -> bool:
        return self.usage_ratio > self.threshold

    def batch_size_for(self, item_size: int, max_items: int, hard_cap: int) -> int:
        """
        Derive a batch size from the current headroom.

        Half of the available memory is reserved; the remainder is divided by
        the per-item size, clamped to [1, max_items] and then to ``hard_cap``.

        Args:
            item_size: Estimated bytes per record
            max_items: Upper bound requested by the caller
            hard_cap: Absolute upper bound

        Returns:
            Number of records per batch (at least 1)
        """
        item_size = max(1, item_size)
        size = (self.available_bytes // 2) // item_size
        size = max(1, min(size, max_items))
        return max(1, min(size, hard_cap))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "used_bytes": self.used_bytes,
            "max_bytes": self.max_bytes,
            "available_bytes": self.available_bytes,
            "usage_ratio": round(self.usage_ratio, 4),
            "threshold": self.threshold,
            "over_threshold": self.over_threshold,
            "used": format_bytes(self.used_bytes),
            "max": format_bytes(self.max_bytes),
            "available": format_bytes(self.available_bytes)
        }
