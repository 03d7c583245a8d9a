"""Tests for the command-line interface."""

import json
import logging
from pathlib import Path

import pytest
from click.testing import CliRunner

from vector_sync_orchestrator.cli.main import cli

JOBS_YAML = """
jobs:
  - job_id: articles
    job_name: Articles
    kind: full
    priority: 9
    target_collection: articles
    source: {source_id: cms, database: cms, table: articles}
    schedule: {schedule_type: fixed_rate, expression: "600"}
  - job_id: authors
    job_name: Authors
    kind: full
    target_collection: authors
    source: {source_id: cms, database: cms, table: authors}
"""


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logger = logging.getLogger("vector_sync_orchestrator")
    for handler in list(logger.handlers):
        if getattr(handler, "_vso_handler", False):
            logger.removeHandler(handler)


@pytest.fixture
def runner():
    return CliRunner()


def invoke(runner, *args):
    return runner.invoke(cli, ["--log-level", "ERROR", *args])


class TestConfigCommands:
    """Test config show and validate."""

    def test_show_json(self, runner):
        result = invoke(runner, "config", "show", "--format", "json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["scheduler"]["max_concurrency"] == 5

    def test_show_uses_config_file(self, runner, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("scheduler:\n  max_concurrency: 2\n")

        result = runner.invoke(cli, ["-c", str(path), "-l", "ERROR", "config", "show"])

        assert result.exit_code == 0
        assert "max_concurrency: 2" in result.output

    def test_validate(self, runner, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("retry:\n  max_retries: 4\n")

        result = invoke(runner, "config", "validate", str(path))

        assert result.exit_code == 0
        assert f"Configuration OK: {path}" in result.output
        assert "Max retries: 4" in result.output

    def test_invalid_config(self, runner, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("scheduler:\n  max_concurrency: 0\n")

        result = invoke(runner, "config", "validate", str(path))

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_invalid_global_config(self, runner, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("consistency:\n  sample_size: -1\n")

        result = runner.invoke(cli, ["-c", str(path), "config", "show"])

        assert result.exit_code == 1


class TestJobCommands:
    """Test job definition validation."""

    def test_validate_jobs(self, runner, tmp_path: Path):
        path = tmp_path / "jobs.yaml"
        path.write_text(JOBS_YAML)

        result = invoke(runner, "jobs", "validate", str(path))

        assert result.exit_code == 0
        assert "2 job(s) OK" in result.output
        assert "articles" in result.output
        assert "authors" in result.output

    def test_invalid_jobs(self, runner, tmp_path: Path):
        path = tmp_path / "jobs.yaml"
        path.write_text("jobs:\n  - {job_id: a}\n")

        result = invoke(runner, "jobs", "validate", str(path))

        assert result.exit_code == 1
        assert "Invalid job definitions" in result.output

    def test_missing_file(self, runner):
        result = invoke(runner, "jobs", "validate", "does-not-exist.yaml")
        assert result.exit_code == 2


class TestGovernorCommands:
    """Test governor inspection."""

    def test_status_json(self, runner):
        result = invoke(runner, "governor", "status", "--json")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert set(data["tiers"]) == {"core", "non_core", "low_priority", "batch"}
        assert data["memory"]["max_bytes"] > 0

    def test_status_table(self, runner):
        result = invoke(runner, "governor", "status")

        assert result.exit_code == 0
        assert "Memory:" in result.output
        assert "low_priority" in result.output

    def test_batch_size(self, runner):
        result = invoke(runner, "governor", "batch-size", "--item-size", "1024", "--max-items", "50")

        assert result.exit_code == 0
        size = int(result.output.strip().split(": ")[1])
        assert 1 <= size <= 50

    def test_batch_size_verbose(self, runner):
        result = runner.invoke(cli, ["-l", "ERROR", "-v", "governor", "batch-size", "--item-size", "1024"])

        assert result.exit_code == 0
        assert "Available memory:" in result.output
        assert "Hard cap: 1000" in result.output

    def test_batch_size_requires_item_size(self, runner):
        result = invoke(runner, "governor", "batch-size")
        assert result.exit_code == 2
