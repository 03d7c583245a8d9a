"""
Prometheus metrics for Vector Sync Orchestrator

Each ``SyncMetrics`` owns its own registry so several orchestrators (or test
cases) can live in one process.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class SyncMetrics:
    """Counters and gauges updated by the scheduler, sync engine and consistency service."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "vector_sync"):
        self.registry = registry or CollectorRegistry()

        self.queue_depth = Gauge(
            "queue_depth", "Jobs waiting in the dispatch queue",
            namespace=namespace, registry=self.registry
        )
        self.active_jobs = Gauge(
            "active_jobs", "Jobs currently running",
            namespace=namespace, registry=self.registry
        )
        self.jobs_finished = Counter(
            "jobs_finished_total", "Job runs by terminal status",
            ["status"], namespace=namespace, registry=self.registry
        )
        self.batches = Counter(
            "batches_total", "Written batches by outcome",
            ["outcome"], namespace=namespace, registry=self.registry
        )
        self.records = Counter(
            "records_total", "Synced records by outcome",
            ["outcome"], namespace=namespace, registry=self.registry
        )
        self.batch_latency = Histogram(
            "batch_latency_seconds", "Time to vectorize and write one batch",
            namespace=namespace, registry=self.registry,
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60)
        )
        self.write_retries = Counter(
            "write_retries_total", "Retried adapter operations",
            ["operation"], namespace=namespace, registry=self.registry
        )
        self.consistency_checks = Counter(
            "consistency_checks_total", "Consistency checks by result",
            ["result"], namespace=namespace, registry=self.registry
        )
        self.compensated_records = Counter(
            "compensated_records_total", "Records re-written by compensation",
            ["outcome"], namespace=namespace, registry=self.registry
        )
        self.admission_deferrals = Counter(
            "admission_deferrals_total", "Dispatch ticks deferred for memory pressure",
            namespace=namespace, registry=self.registry
        )
        self.memory_usage_ratio = Gauge(
            "memory_usage_ratio", "Last sampled memory usage ratio",
            namespace=namespace, registry=self.registry
        )

    def exposition(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)
