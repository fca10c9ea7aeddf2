"""Tests for taskbeat.cli."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from taskbeat import __version__
from taskbeat.cli.commands import app
from taskbeat.core.clock import utcnow
from taskbeat.core.config import Config
from taskbeat.db.store import JobStore

runner = CliRunner()

_PATCH_CONFIG = "taskbeat.core.config.loader.load_config"


@pytest.fixture
def cfg(tmp_path):
    return Config(database={"path": str(tmp_path / "test.db")})


@pytest.fixture
def store(cfg):
    return JobStore(cfg.database.path)


def _invoke(cfg, *args):
    with patch(_PATCH_CONFIG, return_value=cfg):
        return runner.invoke(app, list(args))


def test_cli_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for name in ("tick", "serve", "status", "handlers", "jobs"):
        assert name in result.output


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_status(cfg, store):
    store.add_job("j1", "cleanup_job_runs", interval_sec=60)
    result = _invoke(cfg, "status")
    assert result.exit_code == 0
    assert "DB Path" in result.output
    assert "1 (1 enabled)" in result.output
    assert "cleanup_job_runs" in result.output


def test_handlers(cfg):
    result = _invoke(cfg, "handlers")
    assert result.exit_code == 0
    assert "cleanup_job_runs" in result.output
    assert "shell_command" not in result.output


def test_jobs_list_empty(cfg):
    result = _invoke(cfg, "jobs", "list")
    assert result.exit_code == 0
    assert "No scheduled jobs" in result.output


def test_jobs_add_list_remove(cfg, store):
    result = _invoke(cfg, "jobs", "add", "cleanup_job_runs", "--id", "prune", "--every", "3600")
    assert result.exit_code == 0
    assert "Job created" in result.output
    assert store.get_job("prune")["interval_sec"] == 3600

    result = _invoke(cfg, "jobs", "list")
    assert result.exit_code == 0
    assert "prune" in result.output

    result = _invoke(cfg, "jobs", "remove", "prune")
    assert result.exit_code == 0
    assert store.get_job("prune") is None

    result = _invoke(cfg, "jobs", "remove", "prune")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_jobs_add_requires_one_schedule(cfg):
    result = _invoke(cfg, "jobs", "add", "cleanup_job_runs")
    assert result.exit_code == 1
    result = _invoke(cfg, "jobs", "add", "cleanup_job_runs", "--every", "60", "--cron", "* * * * *")
    assert result.exit_code == 1


def test_jobs_add_invalid_cron(cfg):
    result = _invoke(cfg, "jobs", "add", "cleanup_job_runs", "--cron", "nope")
    assert result.exit_code == 1
    assert "Invalid cron_expression" in result.output


def test_jobs_enable_disable(cfg, store):
    _invoke(cfg, "jobs", "add", "cleanup_job_runs", "--id", "p", "--every", "60")

    result = _invoke(cfg, "jobs", "disable", "p")
    assert result.exit_code == 0
    assert store.get_job("p")["enabled"] == 0

    result = _invoke(cfg, "jobs", "enable", "p")
    assert result.exit_code == 0
    assert store.get_job("p")["enabled"] == 1


def test_jobs_run_and_runs(cfg, store):
    _invoke(cfg, "jobs", "add", "cleanup_job_runs", "--id", "p", "--every", "60")

    result = _invoke(cfg, "jobs", "run", "p")
    assert result.exit_code == 0
    assert "success" in result.output

    result = _invoke(cfg, "jobs", "runs", "p")
    assert result.exit_code == 0
    assert store.list_runs("p")[0]["trigger_type"] == "manual"


def test_tick(cfg, store):
    store.add_job(
        "p", "cleanup_job_runs", interval_sec=60,
        next_run_after=utcnow() - timedelta(seconds=5),
    )
    result = _invoke(cfg, "tick")
    assert result.exit_code == 0
    assert "executed_count" in result.output
    assert store.get_job("p")["run_count"] == 1
