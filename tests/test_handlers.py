"""Tests for built-in handlers (cleanup_job_runs, shell_command)."""

import sys
from datetime import datetime, timedelta, timezone

import pytest

from taskbeat.core.handlers.cleanup import CleanupJobRunsHandler
from taskbeat.core.handlers.shell import CommandError, ShellCommandHandler, check_command
from taskbeat.core.scheduler.registry import HandlerContext, HandlerRegistry
from taskbeat.db.store import JobStore

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return JobStore(str(tmp_path / "test.db"))


def _ctx(**config):
    return HandlerContext(task_id="t", now=NOW, config=config)


# ── cleanup_job_runs ──────────────────────────────────────


def test_cleanup_prunes_old_runs(store):
    store.insert_run("j", "success", NOW - timedelta(days=40))
    store.insert_run("j", "success", NOW - timedelta(days=10))
    store.insert_run("j", "success", NOW)

    result = CleanupJobRunsHandler(store, keep_days=30).run(_ctx())

    assert result["deleted"] == 1
    assert result["keep_days"] == 30
    assert "deleted 1" in result["summary"]
    assert store.count_runs() == 2


def test_cleanup_config_overrides_and_clamps(store):
    store.insert_run("j", "success", NOW - timedelta(days=2))
    handler = CleanupJobRunsHandler(store, keep_days=30)

    assert handler.run(_ctx(keep_days=0))["keep_days"] == 1
    assert store.count_runs() == 0
    assert handler.run(_ctx(keep_days=9999))["keep_days"] == 365
    assert handler.run(_ctx(keep_days="oops"))["keep_days"] == 30


def test_cleanup_metadata(store):
    meta = HandlerRegistry([CleanupJobRunsHandler(store)]).handler_type("cleanup_job_runs")
    assert meta["category"] == "maintenance"
    assert meta["config_schema"][0]["name"] == "keep_days"
    assert meta["config_schema"][0]["max"] == 365


# ── shell_command ─────────────────────────────────────────


@pytest.mark.parametrize(
    "command",
    ["rm -rf /", "sudo shutdown now", "dd if=/dev/zero of=/dev/sda", "mkfs.ext4 /dev/sdb1"],
)
def test_deny_patterns(command):
    with pytest.raises(CommandError, match="blocked"):
        check_command(command)


def test_safe_command_passes():
    check_command("echo hello")


@pytest.mark.asyncio
async def test_shell_success():
    result = await ShellCommandHandler().run(_ctx(command=f'"{sys.executable}" -c "print(42)"'))
    assert result["exit_code"] == 0
    assert result["stdout"].strip() == "42"


@pytest.mark.asyncio
async def test_shell_nonzero_exit_raises():
    with pytest.raises(CommandError, match="exit code 3"):
        await ShellCommandHandler().run(
            _ctx(command=f'"{sys.executable}" -c "import sys; sys.exit(3)"')
        )


@pytest.mark.asyncio
async def test_shell_timeout():
    with pytest.raises(CommandError, match="timed out"):
        await ShellCommandHandler().run(
            _ctx(command=f'"{sys.executable}" -c "import time; time.sleep(5)"', timeout=0.2)
        )


@pytest.mark.asyncio
async def test_shell_requires_command():
    with pytest.raises(CommandError, match="required"):
        await ShellCommandHandler().run(_ctx())
