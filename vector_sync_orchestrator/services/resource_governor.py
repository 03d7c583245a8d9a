"""
Resource governor for Vector Sync Orchestrator

Isolates workloads into worker tiers and derives batch sizes and admission
decisions from memory headroom.
"""

import asyncio
import gc
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Tuple, Union

import psutil

from ..core.config import GovernorSettings
from ..core.exceptions import ConfigurationError
from ..models.worker import Tier, TierName, MemoryBudget, format_bytes
from ..utils.logger import get_logger, set_log_context
from ..utils.metrics import SyncMetrics

MemoryProbe = Callable[[], Tuple[int, int]]


def system_memory_probe(limit_bytes: Optional[int] = None) -> MemoryProbe:
    """
    Build a probe returning ``(used_bytes, max_bytes)``.

    With ``limit_bytes`` the process resident set is measured against that
    limit; otherwise system-wide memory is used.
    """
    process = psutil.Process()

    def probe() -> Tuple[int, int]:
        if limit_bytes:
            return process.memory_info().rss, limit_bytes
        vm = psutil.virtual_memory()
        return vm.total - vm.available, vm.total

    return probe


class WorkerPool:
    """
    Bounded pool of concurrently running coroutines for one tier.

    Work starts immediately while fewer than ``core_workers`` run, then waits
    in a FIFO queue of ``queue_capacity``. Once the queue is full the pool
    grows up to ``max_workers``. Past that, ``submit`` runs the work inline in
    the caller, which slows the caller down instead of dropping work.

    Counters are only touched on the event loop thread between awaits.
    """

    def __init__(self, tier: Tier):
        self.tier = tier
        self._running = 0
        self._waiting = 0
        self._waiters: Deque[asyncio.Future] = deque()
        self._tasks: Set[asyncio.Task] = set()
        self.submitted = 0
        self.completed = 0
        self.failed = 0
        self.caller_runs = 0
        self.logger = get_logger(__name__)

    @property
    def name(self) -> TierName:
        return self.tier.name

    @property
    def running(self) -> int:
        return self._running

    @property
    def queued(self) -> int:
        return self._waiting

    async def submit(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> "asyncio.Future":
        """
        Schedule ``func(*args, **kwargs)`` on this tier.

        Returns:
            A future for the result. When the tier is saturated the work has
            already run inline and the future is done.
        """
        loop = asyncio.get_running_loop()
        self.submitted += 1
        queue_full = self._waiting >= self.tier.queue_capacity

        if self._running < self.tier.core_workers or (queue_full and self._running < self.tier.max_workers):
            self._running += 1
            return self._track(loop.create_task(self._run(func, args, kwargs)))

        if not queue_full:
            waiter = loop.create_future()
            self._waiters.append(waiter)
            self._waiting += 1
            return self._track(loop.create_task(self._run_queued(waiter, func, args, kwargs)))

        # saturated: run in the caller
        self.caller_runs += 1
        self.logger.debug("Tier saturated, running in caller", extra={
            "tier": self.tier.name.value,
            "running": self._running,
            "queued": self._waiting
        })
        future = loop.create_future()
        try:
            future.set_result(await func(*args, **kwargs))
            self.completed += 1
        except Exception as e:
            self.failed += 1
            future.set_exception(e)
        return future

    async def run(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Submit and wait for the result."""
        return await (await self.submit(func, *args, **kwargs))

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, func, args, kwargs):
        try:
            result = await func(*args, **kwargs)
            self.completed += 1
            return result
        except Exception:
            self.failed += 1
            raise
        finally:
            self._release()

    async def _run_queued(self, waiter: asyncio.Future, func, args, kwargs):
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.cancelled():
                self._waiting -= 1
            else:
                # the slot was already handed to us
                self._release()
            raise
        return await self._run(func, args, kwargs)

    def _release(self):
        """Hand the finished slot to the next waiter, or free it."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._waiting -= 1
                waiter.set_result(None)
                return
        self._running -= 1

    def status(self) -> Dict[str, Any]:
        return {
            **self.tier.to_dict(),
            "running": self._running,
            "queued": self._waiting,
            "submitted": self.submitted,
            "completed": self.completed,
            "failed": self.failed,
            "caller_runs": self.caller_runs
        }

    async def shutdown(self, timeout: float = 30.0):
        """Wait up to ``timeout`` seconds for in-flight work, then cancel the rest."""
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            self.logger.warning("Cancelled unfinished tier work on shutdown", extra={
                "tier": self.tier.name.value,
                "cancelled": len(still_pending)
            })
            await asyncio.gather(*still_pending, return_exceptions=True)


class ResourceGovernor:
    """
    Owns the worker tiers and answers memory questions.

    Provides:
    - ``tier(name)`` pools for CORE, NON_CORE, LOW_PRIORITY and BATCH work
    - ``calculate_batch_size`` from current memory headroom
    - ``admit`` deferral while memory usage is over the threshold
    """

    def __init__(
        self,
        settings: Optional[GovernorSettings] = None,
        memory_probe: Optional[MemoryProbe] = None,
        metrics: Optional[SyncMetrics] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.settings = settings or GovernorSettings()
        self.memory_probe = memory_probe or system_memory_probe(self.settings.memory_limit_bytes)
        self.metrics = metrics
        self._clock = clock
        self._last_gc: Optional[float] = None
        self._pools: Dict[TierName, WorkerPool] = {
            name: WorkerPool(tier) for name, tier in self.settings.build_tiers().items()
        }

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="resource_governor")

    def tier(self, name: Union[TierName, str]) -> WorkerPool:
        """
        Get the worker pool of a tier.

        Raises:
            ConfigurationError: If the tier name is unknown
        """
        try:
            return self._pools[TierName(name)]
        except (KeyError, ValueError):
            raise ConfigurationError("tier", f"unknown tier {name!r}") from None

    def memory_snapshot(self) -> MemoryBudget:
        used, maximum = self.memory_probe()
        budget = MemoryBudget(used_bytes=int(used), max_bytes=int(maximum), threshold=self.settings.memory_threshold)
        if self.metrics:
            self.metrics.memory_usage_ratio.set(budget.usage_ratio)
        return budget

    def calculate_batch_size(self, item_size: int, max_items: int) -> int:
        """
        Compute a batch size that fits in half the available memory.

        Args:
            item_size: Estimated bytes per record
            max_items: Caller's upper bound on records per batch

        Returns:
            Batch size in [1, min(max_items, hard_batch_cap)]
        """
        budget = self.memory_snapshot()
        size = budget.batch_size_for(item_size, max_items, self.settings.hard_batch_cap)
        self.logger.debug("Calculated batch size", extra={
            "batch_size": size,
            "item_size": item_size,
            "max_items": max_items,
            "available": format_bytes(budget.available_bytes)
        })
        return size

    def check_batch_memory(self, estimated_bytes: int) -> bool:
        """True when a batch of ``estimated_bytes`` fits in half the headroom."""
        return estimated_bytes <= self.memory_snapshot().available_bytes // 2

    def admit(self) -> bool:
        """
        Decide whether new work may be dispatched now.

        Over the threshold a garbage collection is attempted (at most once per
        cooldown) before refusing. A refusal is a deferral; callers retry on
        their next tick.
        """
        budget = self.memory_snapshot()
        if not budget.over_threshold:
            return True

        now = self._clock()
        if self._last_gc is None or now - self._last_gc >= self.settings.gc_cooldown_seconds:
            self._last_gc = now
            gc.collect()
            budget = self.memory_snapshot()
            if not budget.over_threshold:
                self.logger.info("Memory pressure relieved by garbage collection", extra={
                    "usage_ratio": round(budget.usage_ratio, 4)
                })
                return True

        self.logger.warning("Deferring dispatch under memory pressure", extra={
            "usage_ratio": round(budget.usage_ratio, 4),
            "threshold": budget.threshold
        })
        if self.metrics:
            self.metrics.admission_deferrals.inc()
        return False

    def status(self) -> Dict[str, Any]:
        return {
            "memory": self.memory_snapshot().to_dict(),
            "tiers": {name.value: pool.status() for name, pool in self._pools.items()}
        }

    async def shutdown(self, timeout: float = 30.0):
        self.logger.info("Shutting down worker tiers")
        await asyncio.gather(*(pool.shutdown(timeout) for pool in self._pools.values()))
