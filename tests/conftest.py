"""Shared fixtures: in-memory adapters and services wired without delays."""

import pytest

from vector_sync_orchestrator.core.config import (
    ConsistencySettings,
    GovernorSettings,
    RetrySettings,
    SyncSettings,
)
from vector_sync_orchestrator.services.consistency_service import ConsistencyService
from vector_sync_orchestrator.services.job_registry import JobRegistry
from vector_sync_orchestrator.services.resource_governor import ResourceGovernor
from vector_sync_orchestrator.services.sync_engine import BatchSyncEngine
from vector_sync_orchestrator.utils.metrics import SyncMetrics

from fakes import FakeSourceAdapter, FakeVectorizer, InMemoryVectorStore, make_rows

MiB = 1024 * 1024


def fixed_probe(used: int = 0, maximum: int = 1024 * MiB):
    return lambda: (used, maximum)


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def metrics():
    return SyncMetrics()


@pytest.fixture
def source_adapter():
    return FakeSourceAdapter(make_rows(range(1, 26)))


@pytest.fixture
def vector_store():
    return InMemoryVectorStore()


@pytest.fixture
def vectorizer():
    return FakeVectorizer(dimension=8)


@pytest.fixture
def registry():
    return JobRegistry()


@pytest.fixture
def governor(metrics):
    return ResourceGovernor(GovernorSettings(), memory_probe=fixed_probe(), metrics=metrics)


@pytest.fixture
def retry_settings():
    return RetrySettings(max_retries=3, base_delay_seconds=0)


@pytest.fixture
def engine(source_adapter, vectorizer, vector_store, governor, registry, metrics, retry_settings):
    return BatchSyncEngine(
        source_adapter,
        vectorizer,
        vector_store,
        governor,
        registry,
        settings=SyncSettings(),
        retry_settings=retry_settings,
        metrics=metrics,
        sleep=no_sleep,
    )


@pytest.fixture
def consistency(source_adapter, vector_store, engine, metrics):
    return ConsistencyService(
        source_adapter,
        vector_store,
        engine,
        settings=ConsistencySettings(sample_size=100, randomize_sample=False),
        metrics=metrics,
    )
