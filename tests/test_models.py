"""Unit tests for jobs, schedules, results and memory models."""

from datetime import datetime, timedelta, timezone

import pytest

from vector_sync_orchestrator.adapters.base import key_expr, keys_expr
from vector_sync_orchestrator.adapters.sql import SqlBuilder
from vector_sync_orchestrator.core.exceptions import InvalidStateTransitionError
from vector_sync_orchestrator.models.consistency import (
    CompensationOutcome,
    ConsistencyCheckResult,
    DiscrepancyType,
)
from vector_sync_orchestrator.models.execution import BatchResult, ErrorRecord, ErrorType, SyncStage
from vector_sync_orchestrator.models.job import (
    JobKind,
    JobStatus,
    ScheduleSpec,
    ScheduleType,
    SyncJob,
    can_transition_to,
)
from vector_sync_orchestrator.models.source import SourceType
from vector_sync_orchestrator.models.worker import MemoryBudget, Tier, TierName, format_bytes

from fakes import make_job, make_source

MiB = 1024 * 1024


class TestJobLifecycle:
    """Test job status transitions."""

    def test_new_job_is_pending(self):
        job = make_job()
        assert job.status is JobStatus.PENDING
        assert job.exec_count == 0
        assert job.is_idle()

    def test_run_increments_exec_count(self):
        job = make_job()
        job.transition_to(JobStatus.QUEUED)
        job.transition_to(JobStatus.RUNNING)
        job.transition_to(JobStatus.SUCCESS)
        job.transition_to(JobStatus.QUEUED)
        job.transition_to(JobStatus.RUNNING)

        assert job.exec_count == 2
        assert job.started_at is not None
        assert job.ended_at is None

    def test_invalid_transition_raises(self):
        job = make_job()
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            job.transition_to(JobStatus.SUCCESS)
        assert exc_info.value.error_code == "INVALID_STATE_TRANSITION"

    def test_pause_resume_keeps_progress(self):
        job = make_job()
        job.transition_to(JobStatus.QUEUED)
        job.transition_to(JobStatus.RUNNING)
        job.update_progress(40, 100)

        job.transition_to(JobStatus.PAUSED)
        assert job.paused_from is JobStatus.RUNNING
        job.transition_to(JobStatus.RUNNING)

        assert job.progress_percent == 40.0
        assert job.exec_count == 1
        assert job.resumed_at is not None

    def test_rollback_only_from_finished(self):
        assert can_transition_to(JobStatus.SUCCESS, JobStatus.ROLLED_BACK)
        assert can_transition_to(JobStatus.FAILED, JobStatus.ROLLED_BACK)
        assert not can_transition_to(JobStatus.RUNNING, JobStatus.ROLLED_BACK)

    def test_mark_failed_sets_message(self):
        job = make_job()
        job.transition_to(JobStatus.QUEUED)
        job.transition_to(JobStatus.RUNNING)
        job.mark_failed("boom")
        assert job.status is JobStatus.FAILED
        assert job.error_message == "boom"
        assert job.get_duration() is not None


class TestSyncJobDefinition:
    """Test job validation and serialization."""

    def test_incremental_requires_increment_column(self):
        with pytest.raises(ValueError):
            make_job(kind=JobKind.INCREMENTAL, source=make_source(increment_column=None))

    def test_dimension_must_be_positive(self):
        with pytest.raises(ValueError):
            make_job(dimension=0)

    def test_from_dict_parses_nested_values(self):
        job = SyncJob.from_dict({
            "job_id": "docs",
            "job_name": "Docs",
            "kind": "incremental",
            "source": {"source_id": "cms", "database": "cms", "table": "docs", "increment_column": "updated_at"},
            "target_collection": "docs",
            "schedule": {"schedule_type": "fixed_rate", "expression": "60"},
            "tier": "core",
            "priority": 9,
        })
        assert job.kind is JobKind.INCREMENTAL
        assert job.schedule.schedule_type is ScheduleType.FIXED_RATE
        assert job.tier is TierName.CORE
        assert job.to_dict()["source"]["table"] == "docs"


class TestScheduleSpec:
    """Test next fire time computation."""

    def test_cron_next_fire_time(self):
        schedule = ScheduleSpec(ScheduleType.CRON, "*/5 * * * *")
        now = datetime(2024, 1, 1, 12, 1, tzinfo=timezone.utc)
        assert schedule.next_fire_time(now=now) == datetime(2024, 1, 1, 12, 5, tzinfo=timezone.utc)

    def test_fixed_rate_anchors_on_last_start(self):
        schedule = ScheduleSpec(ScheduleType.FIXED_RATE, "30")
        start = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        end = start + timedelta(seconds=20)
        assert schedule.next_fire_time(last_start=start, last_end=end) == start + timedelta(seconds=30)

    def test_fixed_interval_anchors_on_last_end(self):
        schedule = ScheduleSpec(ScheduleType.FIXED_INTERVAL, "30")
        start = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        end = start + timedelta(seconds=20)
        assert schedule.next_fire_time(last_start=start, last_end=end) == end + timedelta(seconds=30)

    def test_invalid_expressions_rejected(self):
        with pytest.raises(ValueError):
            ScheduleSpec(ScheduleType.CRON, "not a cron")
        with pytest.raises(ValueError):
            ScheduleSpec(ScheduleType.FIXED_RATE, "-5")


class TestBatchResult:
    """Test result aggregation."""

    def test_results_add_up(self):
        total = BatchResult(succeeded=10, batches_succeeded=1, written_keys=[1, 2]) + \
            BatchResult(succeeded=3, failed=7, batches_failed=1, written_keys=[3])

        assert total.processed == total.succeeded + total.failed == 20
        assert total.batches_total == 2
        assert total.written_keys == [1, 2, 3]
        assert not total.all_succeeded

    def test_throughput_without_latency(self):
        assert BatchResult(succeeded=5).throughput == 0.0

    def test_error_record_dict(self):
        record = ErrorRecord("job", [1, 2], ErrorType.TIMEOUT, SyncStage.WRITE, "slow")
        record.mark_retrying()
        data = record.to_dict()
        assert data["error_type"] == "timeout"
        assert data["process_status"] == "retrying"
        assert data["last_retry_time"] is not None


class TestMemoryBudget:
    """Test memory-based batch sizing."""

    def test_batch_size_from_available_memory(self):
        budget = MemoryBudget(used_bytes=924 * MiB, max_bytes=1024 * MiB)
        assert budget.available_bytes == 100 * MiB
        assert budget.batch_size_for(1 * MiB, 500, 1000) == 50

    def test_batch_size_is_clamped(self):
        budget = MemoryBudget(used_bytes=0, max_bytes=1024 * MiB)
        assert budget.batch_size_for(1, 500, 1000) == 500
        assert budget.batch_size_for(1, 5000, 1000) == 1000
        assert MemoryBudget(used_bytes=10, max_bytes=10).batch_size_for(1 * MiB, 500, 1000) == 1

    def test_over_threshold(self):
        assert MemoryBudget(used_bytes=90, max_bytes=100, threshold=0.8).over_threshold
        assert not MemoryBudget(used_bytes=50, max_bytes=100, threshold=0.8).over_threshold

    def test_tier_validation(self):
        with pytest.raises(ValueError):
            Tier(TierName.CORE, core_workers=4, max_workers=2, queue_capacity=10)

    def test_format_bytes(self):
        assert format_bytes(512) == "512 B"
        assert format_bytes(100 * MiB) == "100.00 MB"


class TestConsistencyModels:
    """Test consistency results."""

    def test_report_lists_discrepancies(self):
        result = ConsistencyCheckResult(job_id="articles", source_count=10, target_count=9)
        result.add(DiscrepancyType.MISSING_IN_TARGET, "id=4")

        assert result.discrepancies == ["missing-in-target: id=4"]
        assert result.count_gap == 1
        report = result.report()
        assert "Consistency report for job articles" in report
        assert "missing-in-target: id=4" in report

    def test_compensation_counts(self):
        outcome = CompensationOutcome("articles", compensated_ids=[1, 2], still_missing_ids=[3])
        assert outcome.attempted == 3
        assert outcome.to_dict()["compensated_count"] == 2


class TestSourceDescriptor:
    """Test typed source configuration."""

    def test_rejects_unsafe_identifiers(self):
        with pytest.raises(ValueError):
            make_source(table="articles; DROP TABLE x")

    def test_mysql_default_port(self):
        source = make_source(source_type=SourceType.MYSQL)
        assert source.port == 3306

    def test_password_hidden(self):
        source = make_source(username="sync", password="secret")
        assert "password" not in source.to_dict()
        assert "secret" not in repr(source)
        assert "secret" not in source.dsn()


class TestStatements:
    """Test SQL and filter expression rendering."""

    def test_postgres_statements(self):
        builder = SqlBuilder(make_source())
        assert builder.select_all() == ('SELECT * FROM "articles" ORDER BY "id"', [])
        assert builder.sample(100)[0] == 'SELECT * FROM "articles" ORDER BY "id" LIMIT 100'
        assert builder.sample(100, offset=250)[0] == 'SELECT * FROM "articles" ORDER BY "id" LIMIT 100 OFFSET 250'
        assert builder.select_by_keys([1, 2]) == ('SELECT * FROM "articles" WHERE "id" IN ($1, $2)', [1, 2])
        sql, params = builder.select_since(42)
        assert 'WHERE "updated_at" > $1' in sql
        assert params == [42]

    def test_mysql_statements(self):
        builder = SqlBuilder(make_source(source_type=SourceType.MYSQL, db_schema="cms"))
        sql, _ = builder.select_by_keys([1])
        assert sql == "SELECT * FROM `cms`.`articles` WHERE `id` IN (%s)"

    def test_select_by_keys_requires_keys(self):
        with pytest.raises(ValueError):
            SqlBuilder(make_source()).select_by_keys([])

    def test_filter_expressions(self):
        assert key_expr("id", 17) == "id == 17"
        assert key_expr("id", "a") == 'id == "a"'
        assert keys_expr("id", [1, 2]) == "id in [1, 2]"
