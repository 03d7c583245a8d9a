"""Tests for configuration models and job definition loading."""

from pathlib import Path

import pytest

from vector_sync_orchestrator.core.config import (
    GovernorSettings,
    OrchestratorConfig,
    load_job_definitions,
)
from vector_sync_orchestrator.core.exceptions import ConfigurationError
from vector_sync_orchestrator.models.job import JobKind
from vector_sync_orchestrator.models.worker import TierName

JOBS_YAML = """
jobs:
  - job_id: articles
    job_name: Articles
    kind: incremental
    priority: 9
    target_collection: articles
    dimension: 384
    source:
      source_id: cms
      database: cms
      table: articles
      increment_column: updated_at
      text_fields: [title, body]
    schedule:
      schedule_type: cron
      expression: "0 * * * *"
  - job_id: authors
    job_name: Authors
    kind: full
    target_collection: authors
    source:
      source_id: cms
      database: cms
      table: authors
"""


class TestOrchestratorConfig:
    """Test typed configuration loading."""

    def test_defaults(self):
        config = OrchestratorConfig()
        assert config.scheduler.max_concurrency == 5
        assert config.retry.max_retries == 3
        assert config.consistency.sample_size == 100
        assert config.governor.memory_threshold == 0.8
        assert set(config.governor.tiers) == set(TierName)

    def test_from_yaml(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "scheduler:\n  max_concurrency: 2\n"
            "governor:\n  tiers:\n    core: {core_workers: 1, max_workers: 2, queue_capacity: 4}\n"
        )
        config = OrchestratorConfig.from_yaml(path)

        assert config.scheduler.max_concurrency == 2
        assert config.governor.tiers[TierName.CORE].queue_capacity == 4
        # tiers left out keep their defaults
        assert config.governor.tiers[TierName.BATCH].core_workers == 15

    def test_empty_file_is_valid(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert OrchestratorConfig.from_yaml(path).scheduler.max_concurrency == 5

    def test_invalid_value_raises_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            OrchestratorConfig.from_dict({"scheduler": {"max_concurrency": 0}})
        assert "scheduler.max_concurrency" in exc_info.value.message

    def test_invalid_tier_bounds(self):
        with pytest.raises(ConfigurationError):
            OrchestratorConfig.from_dict({
                "governor": {"tiers": {"core": {"core_workers": 5, "max_workers": 1, "queue_capacity": 0}}}
            })

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError):
            OrchestratorConfig.from_yaml(tmp_path / "missing.yaml")

    def test_build_tiers(self):
        tiers = GovernorSettings().build_tiers()
        assert tiers[TierName.LOW_PRIORITY].max_workers == 5

    def test_to_dict_is_serializable(self):
        data = OrchestratorConfig().to_dict()
        assert data["governor"]["tiers"]["core"]["core_workers"] == 10


class TestJobDefinitions:
    """Test YAML job definition loading."""

    def test_load_jobs(self, tmp_path: Path):
        path = tmp_path / "jobs.yaml"
        path.write_text(JOBS_YAML)
        jobs = load_job_definitions(path)

        assert [job.job_id for job in jobs] == ["articles", "authors"]
        assert jobs[0].kind is JobKind.INCREMENTAL
        assert jobs[0].source.text_fields == ["title", "body"]
        assert jobs[0].schedule is not None
        assert jobs[1].schedule is None

    def test_duplicate_ids_rejected(self, tmp_path: Path):
        path = tmp_path / "jobs.yaml"
        path.write_text(
            "- {job_id: a, job_name: A, kind: full, target_collection: a,"
            " source: {source_id: s, database: d, table: t}}\n"
            "- {job_id: a, job_name: A, kind: full, target_collection: a,"
            " source: {source_id: s, database: d, table: t}}\n"
        )
        with pytest.raises(ConfigurationError) as exc_info:
            load_job_definitions(path)
        assert "duplicate job_id a" in exc_info.value.message

    def test_invalid_job_rejected(self, tmp_path: Path):
        path = tmp_path / "jobs.yaml"
        path.write_text(
            "- {job_id: a, job_name: A, kind: incremental, target_collection: a,"
            " source: {source_id: s, database: d, table: t}}\n"
        )
        with pytest.raises(ConfigurationError):
            load_job_definitions(path)

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "jobs.yaml"
        path.write_text("jobs: [unclosed")
        with pytest.raises(ConfigurationError):
            load_job_definitions(path)
