"""Tests for batch sync, retry, error records and rollback."""

import asyncio

import pytest

from vector_sync_orchestrator.core.config import RetrySettings, SyncSettings
from vector_sync_orchestrator.models.execution import ErrorType, ProcessStatus, SyncStage
from vector_sync_orchestrator.models.job import JobKind, JobStatus
from vector_sync_orchestrator.services.job_registry import CancellationToken
from vector_sync_orchestrator.services.sync_engine import BatchSyncEngine

from conftest import no_sleep
from fakes import FakeSourceAdapter, make_job, make_rows, wait_until


def make_engine(source_adapter, vectorizer, vector_store, governor, registry, metrics=None, **retry):
    retry.setdefault("base_delay_seconds", 0)
    return BatchSyncEngine(
        source_adapter,
        vectorizer,
        vector_store,
        governor,
        registry,
        settings=SyncSettings(),
        retry_settings=RetrySettings(**retry),
        metrics=metrics,
        sleep=no_sleep,
    )


class TestFullSync:
    """Test full-snapshot runs."""

    @pytest.mark.asyncio()
    async def test_full_sync_writes_every_row(self, engine, vector_store, metrics):
        job = make_job("articles", batch_size=10)
        result = await engine.execute(job)

        assert result.succeeded == 25
        assert result.failed == 0
        assert result.batches_succeeded == 3
        assert job.status is JobStatus.SUCCESS
        assert job.progress_percent == 100.0
        assert job.records_synced == 25

        rows = vector_store.rows("articles_vectors")
        assert sorted(row["id"] for row in rows) == list(range(1, 26))
        assert all(len(row["vector"]) == 8 for row in rows)
        assert vector_store.collections["articles_vectors"]["dimension"] == 8
        assert metrics.registry.get_sample_value(
            "vector_sync_records_total", {"outcome": "succeeded"}
        ) == 25
        assert metrics.registry.get_sample_value(
            "vector_sync_jobs_finished_total", {"status": "success"}
        ) == 1

    @pytest.mark.asyncio()
    async def test_rerun_replaces_rows(self, engine, vector_store):
        job = make_job("articles")
        await engine.execute(job)
        await engine.execute(job)

        assert len(vector_store.rows("articles_vectors")) == 25
        assert job.exec_count == 2

    @pytest.mark.asyncio()
    async def test_empty_source_succeeds(self, vectorizer, vector_store, governor, registry):
        engine = make_engine(FakeSourceAdapter([]), vectorizer, vector_store, governor, registry)
        job = make_job("empty")
        result = await engine.execute(job)

        assert result.processed == 0
        assert job.status is JobStatus.SUCCESS
        assert vector_store.rows("empty_vectors") == []

    @pytest.mark.asyncio()
    async def test_partition(self, engine):
        job = make_job("articles")
        batches = engine.partition(job, make_rows(range(7)), 3)
        assert [b.batch_number for b in batches] == [1, 2, 3]
        assert [b.size for b in batches] == [3, 3, 1]


class TestIncrementalSync:
    """Test watermark-driven runs."""

    @pytest.mark.asyncio()
    async def test_only_newer_rows_are_synced(self, engine, vector_store):
        job = make_job("articles", kind=JobKind.INCREMENTAL, high_watermark=20)
        result = await engine.execute(job)

        assert result.succeeded == 5
        assert sorted(row["id"] for row in vector_store.rows("articles_vectors")) == [21, 22, 23, 24, 25]
        assert job.high_watermark == 25

    @pytest.mark.asyncio()
    async def test_watermark_kept_when_run_fails(self, engine, vector_store):
        job = make_job("articles", kind=JobKind.INCREMENTAL, high_watermark=20)
        vector_store.reject_batch_inserts = True
        await engine.execute(job)

        assert job.status is JobStatus.FAILED
        assert job.high_watermark == 20

    @pytest.mark.asyncio()
    async def test_nothing_new(self, engine):
        job = make_job("articles", kind=JobKind.INCREMENTAL, high_watermark=25)
        result = await engine.execute(job)

        assert result.processed == 0
        assert job.status is JobStatus.SUCCESS
        assert job.high_watermark == 25


class TestFailures:
    """Test retry exhaustion, thresholds and error records."""

    @pytest.mark.asyncio()
    async def test_batch_fails_after_three_attempts(self, engine, vector_store, registry):
        job = make_job("articles")
        await vector_store.create_collection("articles_vectors", 8)
        vector_store.fail_batch_inserts = 3

        result = await engine.execute(job)

        assert vector_store.batch_insert_calls == 3
        assert result.batches_failed == 1
        assert result.failed == 25
        assert job.status is JobStatus.FAILED
        assert job.error_message == "partial failure: 1 of 1 batches failed (25 of 25 records)"

        errors = registry.errors_for("articles")
        assert len(errors) == 1
        assert errors[0].record_ids == list(range(1, 26))
        assert errors[0].retry_count == 3
        assert errors[0].error_type is ErrorType.CONNECTION
        assert errors[0].sync_stage is SyncStage.WRITE
        assert errors[0].batch_number == 1

    @pytest.mark.asyncio()
    async def test_transient_write_failure_recovers(self, engine, vector_store):
        job = make_job("articles")
        await vector_store.create_collection("articles_vectors", 8)
        vector_store.fail_batch_inserts = 2

        result = await engine.execute(job)

        assert vector_store.batch_insert_calls == 3
        assert result.all_succeeded
        assert job.status is JobStatus.SUCCESS

    @pytest.mark.asyncio()
    async def test_failed_rerun_keeps_synced_rows(self, source_adapter, engine, vector_store):
        job = make_job("articles")
        await engine.execute(job)
        source_adapter.rows.append(make_rows([26])[0])
        source_adapter.rows[0]["title"] = "edited title"
        vector_store.reject_batch_inserts = True

        await engine.execute(job)

        assert job.status is JobStatus.FAILED
        rows = vector_store.rows("articles_vectors")
        assert sorted(row["id"] for row in rows) == list(range(1, 26))
        assert [row["title"] for row in rows if row["id"] == 1] == ["edited title"]

    @pytest.mark.asyncio()
    async def test_rerun_updates_existing_rows_in_place(self, source_adapter, engine, vector_store):
        job = make_job("articles")
        await engine.execute(job)
        inserts = vector_store.batch_insert_calls
        source_adapter.rows[4]["title"] = "new title"

        await engine.execute(job)

        assert job.status is JobStatus.SUCCESS
        assert vector_store.batch_insert_calls == inserts
        rows = vector_store.rows("articles_vectors")
        assert len(rows) == 25
        assert [row["title"] for row in rows if row["id"] == 5] == ["new title"]

    @pytest.mark.asyncio()
    async def test_retry_after_partial_write_does_not_duplicate(self, engine, vector_store):
        job = make_job("articles")
        await vector_store.create_collection("articles_vectors", 8)
        written = vector_store.batch_insert

        async def land_then_fail(name, records):
            await written(name, records[:10])
            vector_store.batch_insert = written
            return False

        vector_store.batch_insert = land_then_fail

        await engine.execute(job)

        assert job.status is JobStatus.SUCCESS
        assert sorted(row["id"] for row in vector_store.rows("articles_vectors")) == list(range(1, 26))

    @pytest.mark.asyncio()
    async def test_failures_within_threshold(self, source_adapter, engine, registry):
        source_adapter.rows.append({"id": 26, "title": None, "body": None, "updated_at": 26})
        job = make_job("articles", error_threshold=1)

        result = await engine.execute(job)

        assert result.succeeded == 25
        assert result.failed == 1
        assert job.status is JobStatus.SUCCESS
        assert job.error_message == "1 records failed within error threshold 1"
        [error] = registry.errors_for("articles")
        assert error.record_ids == [26]
        assert error.error_type is ErrorType.VALIDATION
        assert error.sync_stage is SyncStage.VECTORIZE

    @pytest.mark.asyncio()
    async def test_any_failure_over_threshold_fails_job(self, source_adapter, engine):
        source_adapter.rows.append({"id": 26, "title": None, "body": None, "updated_at": 26})
        job = make_job("articles")

        await engine.execute(job)

        assert job.status is JobStatus.FAILED
        assert job.error_message == "partial failure: 1 of 1 batches failed (1 of 26 records)"
        assert job.records_synced == 25

    @pytest.mark.asyncio()
    async def test_extract_failure_aborts_run(self, source_adapter, engine, registry):
        source_adapter.fail_queries = 3
        job = make_job("articles")

        result = await engine.execute(job)

        assert job.status is JobStatus.FAILED
        assert job.error_message.startswith("sync aborted:")
        assert result.error_message == job.error_message
        [error] = registry.errors_for("articles")
        assert error.sync_stage is SyncStage.EXTRACT

    @pytest.mark.asyncio()
    async def test_dimension_mismatch_is_revectorized(self, vectorizer, vector_store, governor, registry):
        engine = make_engine(FakeSourceAdapter(make_rows([1])), vectorizer, vector_store, governor, registry)
        vectorizer.wrong_dimension_calls = 1
        job = make_job("one")

        await engine.execute(job)

        assert job.status is JobStatus.SUCCESS
        assert len(vector_store.rows("one_vectors")[0]["vector"]) == 8

    @pytest.mark.asyncio()
    async def test_persistent_dimension_mismatch_is_a_validation_error(
        self, vectorizer, vector_store, governor, registry
    ):
        engine = make_engine(FakeSourceAdapter(make_rows([1])), vectorizer, vector_store, governor, registry)
        vectorizer.wrong_dimension_calls = 2
        job = make_job("one")

        await engine.execute(job)

        assert job.status is JobStatus.FAILED
        [error] = registry.errors_for("one")
        assert error.error_type is ErrorType.VALIDATION
        assert vector_store.rows("one_vectors") == []


class TestWriteRecord:
    """Test the single-record upsert."""

    @pytest.mark.asyncio()
    async def test_write_record_is_idempotent(self, engine, vector_store):
        job = make_job("articles")
        record = make_rows([7])[0]

        assert await engine.write_record(job, record)
        assert await engine.write_record(job, record)

        rows = vector_store.rows("articles_vectors")
        assert len(rows) == 1
        assert rows[0]["id"] == 7
        assert rows[0]["title"] == "title 7"

    @pytest.mark.asyncio()
    async def test_write_record_failure_is_recorded(self, engine, registry):
        job = make_job("articles")
        record = {"id": 7, "title": "", "body": None}

        assert not await engine.write_record(job, record, stage=SyncStage.COMPENSATE)
        [error] = registry.errors_for("articles")
        assert error.record_ids == [7]
        assert error.sync_stage is SyncStage.COMPENSATE


class TestSelectiveRetry:
    """Test retrying records from the error-record log."""

    @pytest.mark.asyncio()
    async def test_failed_records_are_resolved(self, engine, vector_store, registry):
        job = make_job("articles")
        await vector_store.create_collection("articles_vectors", 8)
        vector_store.fail_batch_inserts = 3
        await engine.execute(job)

        result = await engine.retry_failed_records(job)

        assert result.succeeded == 25
        assert len(vector_store.rows("articles_vectors")) == 25
        [error] = registry.errors_for("articles")
        assert error.process_status is ProcessStatus.RESOLVED
        assert error.last_retry_time is not None

    @pytest.mark.asyncio()
    async def test_records_abandoned_after_max_retries(self, source_adapter, vectorizer, vector_store, governor, registry):
        engine = make_engine(source_adapter, vectorizer, vector_store, governor, registry, max_record_retries=1)
        job = make_job("articles")
        vector_store.reject_batch_inserts = True
        await engine.execute(job)

        result = await engine.retry_failed_records(job)

        assert result.failed == 25
        assert registry.errors_for("articles", ProcessStatus.PENDING) == []
        assert len(registry.errors_for("articles", ProcessStatus.ABANDONED)) == 1
        # nothing left to retry
        assert (await engine.retry_failed_records(job)).processed == 0


class TestRollback:
    """Test undoing the last run."""

    @pytest.mark.asyncio()
    async def test_rollback_removes_written_rows(self, engine, vector_store, registry):
        await vector_store.create_collection("articles_vectors", 8)
        vector_store.rows("articles_vectors").append({"id": 999, "vector": [0.0] * 8})
        job = make_job("articles")
        await engine.execute(job)

        assert await engine.rollback(job)

        assert job.status is JobStatus.ROLLED_BACK
        assert [row["id"] for row in vector_store.rows("articles_vectors")] == [999]
        assert registry.run_keys("articles") == []

    @pytest.mark.asyncio()
    async def test_rollback_restores_watermark(self, engine):
        job = make_job("articles", kind=JobKind.INCREMENTAL, high_watermark=10)
        await engine.execute(job)
        assert job.high_watermark == 25

        await engine.rollback(job)
        assert job.high_watermark == 10


class TestCancellation:
    """Test cooperative cancellation, timeout and pause."""

    @pytest.mark.asyncio()
    async def test_cancelled_before_first_batch(self, engine, vector_store):
        job = make_job("articles")
        token = CancellationToken()
        token.cancel()

        result = await engine.execute(job, token)

        assert result.cancelled
        assert job.status is JobStatus.FAILED
        assert job.error_message == "cancelled by request"
        assert vector_store.rows("articles_vectors") == []

    @pytest.mark.asyncio()
    async def test_timeout(self, engine):
        job = make_job("articles")
        token = CancellationToken(timeout_seconds=1e-6)
        await asyncio.sleep(0.001)

        await engine.execute(job, token)

        assert job.status is JobStatus.FAILED
        assert job.error_message.startswith("timed out after")

    @pytest.mark.asyncio()
    async def test_pause_keeps_the_run(self, engine, vector_store):
        job = make_job("articles")
        job.transition_to(JobStatus.QUEUED)
        job.transition_to(JobStatus.RUNNING)
        started_at = job.started_at
        token = CancellationToken()
        token.pause()

        task = asyncio.create_task(engine.execute(job, token))
        await wait_until(lambda: job.status is JobStatus.PAUSED)
        assert job.paused_at is not None

        token.resume()
        await task

        assert job.status is JobStatus.SUCCESS
        assert job.started_at == started_at
        assert job.exec_count == 1
        assert len(vector_store.rows("articles_vectors")) == 25

    @pytest.mark.asyncio()
    async def test_cancel_while_paused(self, engine):
        job = make_job("articles")
        token = CancellationToken()
        token.pause()

        task = asyncio.create_task(engine.execute(job, token))
        await wait_until(lambda: job.status is JobStatus.PAUSED)
        token.cancel()
        await task

        assert job.status is JobStatus.FAILED
        assert job.error_message == "cancelled by request"
