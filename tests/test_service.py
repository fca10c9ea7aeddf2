"""Tests for taskbeat.core.scheduler.service (JobService)."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from taskbeat.core.clock import from_iso
from taskbeat.core.scheduler.errors import InvalidJobError, JobConflictError, JobNotFoundError
from taskbeat.core.scheduler.registry import HandlerRegistry
from taskbeat.core.scheduler.service import JobService, runtime_state
from taskbeat.core.scheduler.types import IntervalSchedule, Job
from taskbeat.db.store import JobStore

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class Handler:
    id = "report.daily"
    name = "Daily report"
    description = ""
    category = "business"
    config_schema = []

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = 0

    async def run(self, ctx):
        self.calls += 1
        if self.fail:
            raise RuntimeError("report failed")
        return {"summary": f"sent to {ctx.config.get('to', '-')}"}


@pytest.fixture
def store(tmp_path):
    return JobStore(str(tmp_path / "test.db"))


@pytest.fixture
def handler():
    return Handler()


@pytest.fixture
def service(store, handler):
    return JobService(store, HandlerRegistry([handler]))


# ── create ────────────────────────────────────────────────


def test_create_interval_job(service):
    job = service.create_job(
        "report.daily", interval_sec=600, config={"to": "ops"}, name="Report", now=NOW,
    )
    assert job["task_id"].startswith("report_daily_")
    assert len(job["task_id"]) == len("report_daily_") + 8
    assert job["schedule_type"] == "interval"
    assert job["next_run_after"] == NOW + timedelta(minutes=10)
    assert job["config"] == {"to": "ops"}
    assert job["handler_exists"] is True
    assert job["runtime_state"] == "scheduled"
    assert len(job["preview_next_runs"]) == 5


def test_create_cron_job(service):
    job = service.create_job(
        "report.daily", task_id="nightly", schedule_type="cron",
        cron_expression="0 2 * * *", now=NOW,
    )
    assert job["task_id"] == "nightly"
    assert job["next_run_after"] == datetime(2025, 1, 2, 2, 0, tzinfo=timezone.utc)
    assert job["interval_sec"] is None


def test_create_disabled_job_has_no_next_run(service):
    job = service.create_job("report.daily", interval_sec=60, enabled=False, now=NOW)
    assert job["next_run_after"] is None
    assert job["runtime_state"] == "disabled"
    assert job["preview_next_runs"] == []


@pytest.mark.parametrize(
    "kwargs",
    [
        {"handler_id": "", "interval_sec": 60},
        {"handler_id": "h", "interval_sec": 0},
        {"handler_id": "h", "interval_sec": None},
        {"handler_id": "h", "schedule_type": "weekly", "interval_sec": 60},
        {"handler_id": "h", "schedule_type": "cron"},
        {"handler_id": "h", "schedule_type": "cron", "cron_expression": "bad"},
        {"handler_id": "h", "interval_sec": 60, "config": ["not", "a", "dict"]},
    ],
)
def test_create_validation(service, kwargs):
    handler_id = kwargs.pop("handler_id")
    with pytest.raises(InvalidJobError):
        service.create_job(handler_id, **kwargs)


def test_create_duplicate(service):
    service.create_job("report.daily", task_id="dup", interval_sec=60)
    with pytest.raises(JobConflictError):
        service.create_job("report.daily", task_id="dup", interval_sec=60)


def test_create_for_unregistered_handler(service):
    job = service.create_job("not.here", interval_sec=60)
    assert job["handler_exists"] is False


# ── read / update / delete ────────────────────────────────


def test_get_and_list(service):
    service.create_job("report.daily", task_id="a", interval_sec=60)
    service.create_job("report.daily", task_id="b", interval_sec=60, enabled=False)

    assert service.get_job("a")["task_id"] == "a"
    assert [j["task_id"] for j in service.list_jobs()] == ["a", "b"]
    assert [j["task_id"] for j in service.list_jobs(enabled=True)] == ["a"]
    with pytest.raises(JobNotFoundError):
        service.get_job("missing")


def test_runtime_state():
    base = {"task_id": "j", "schedule": IntervalSchedule(interval_sec=60)}
    assert runtime_state(Job(**base, enabled=False), NOW) == "disabled"
    assert runtime_state(Job(**base, lock_until=NOW + timedelta(seconds=1)), NOW) == "running"
    assert runtime_state(Job(**base), NOW) == "idle"
    assert runtime_state(Job(**base, next_run_after=NOW + timedelta(seconds=1)), NOW) == "scheduled"
    assert runtime_state(Job(**base, next_run_after=NOW), NOW) == "pending"


def test_update_schedule_reseeds(service):
    service.create_job("report.daily", task_id="j", interval_sec=60, now=NOW)
    later = NOW + timedelta(hours=1)
    job = service.update_job("j", now=later, interval_sec=120)
    assert job["interval_sec"] == 120
    assert job["next_run_after"] == later + timedelta(minutes=2)

    job = service.update_job("j", now=later, schedule_type="cron", cron_expression="30 * * * *")
    assert job["schedule_type"] == "cron"
    assert job["interval_sec"] is None
    assert job["next_run_after"] == later + timedelta(minutes=30)


def test_update_disable_and_reenable(service):
    service.create_job("report.daily", task_id="j", interval_sec=60, now=NOW)
    job = service.update_job("j", now=NOW, enabled=False)
    assert job["enabled"] is False
    assert job["next_run_after"] is None

    later = NOW + timedelta(days=1)
    job = service.update_job("j", now=later, enabled=True)
    assert job["enabled"] is True
    assert job["next_run_after"] == later + timedelta(minutes=1)


def test_update_metadata_keeps_schedule(service):
    service.create_job("report.daily", task_id="j", interval_sec=60, now=NOW)
    job = service.update_job("j", now=NOW + timedelta(hours=5), name="New", config={"to": "x"})
    assert job["name"] == "New"
    assert job["config"] == {"to": "x"}
    assert job["next_run_after"] == NOW + timedelta(minutes=1)


def test_update_validation(service):
    service.create_job("report.daily", task_id="j", interval_sec=60)
    with pytest.raises(InvalidJobError):
        service.update_job("j", interval_sec=-1)
    with pytest.raises(InvalidJobError):
        service.update_job("j", run_count=10)
    with pytest.raises(JobNotFoundError):
        service.update_job("missing", name="x")


def test_delete(service, store):
    service.create_job("report.daily", task_id="j", interval_sec=60)
    store.insert_run("j", "success", NOW)
    service.delete_job("j")
    assert store.get_job("j") is None
    assert store.count_runs() == 0
    with pytest.raises(JobNotFoundError):
        service.delete_job("j")


# ── run_now ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_run_now(service, store, handler):
    service.create_job(
        "report.daily", task_id="j", interval_sec=60, config={"to": "ops"}, now=NOW,
    )
    result = await service.run_now("j", now=NOW)

    assert result["status"] == "success"
    assert result["summary"] == "sent to ops"
    assert handler.calls == 1

    row = store.get_job("j")
    assert row["run_count"] == 1
    assert row["lock_until"] is None
    assert from_iso(row["next_run_after"]) == NOW + timedelta(minutes=1)
    (run,) = store.list_runs("j")
    assert run["trigger_type"] == "manual"


@pytest.mark.asyncio
async def test_run_now_disabled_job_and_failure(store):
    service = JobService(store, HandlerRegistry([Handler(fail=True)]))
    service.create_job("report.daily", task_id="j", interval_sec=60, enabled=False)

    result = await service.run_now("j", now=NOW)

    assert result["status"] == "failure"
    assert result["error_message"] == "report failed"
    row = store.get_job("j")
    assert row["enabled"] == 0
    assert row["failure_count"] == 1


@pytest.mark.asyncio
async def test_run_now_conflicts_with_lease(service, store, handler):
    service.create_job("report.daily", task_id="j", interval_sec=60)
    store.try_acquire_lease("j", NOW, NOW + timedelta(minutes=5))
    with pytest.raises(JobConflictError):
        await service.run_now("j", now=NOW)
    assert handler.calls == 0


@pytest.mark.asyncio
async def test_run_now_errors(service):
    with pytest.raises(JobNotFoundError):
        await service.run_now("missing")
    service.create_job("not.here", task_id="orphan", interval_sec=60)
    with pytest.raises(InvalidJobError):
        await service.run_now("orphan")


@pytest.mark.asyncio
async def test_run_now_survives_broken_recorder(store):
    recorder = MagicMock()
    recorder.record.side_effect = KeyError("x")
    service = JobService(store, HandlerRegistry([Handler()]), recorder=recorder)
    service.create_job("report.daily", task_id="j", interval_sec=60)

    result = await service.run_now("j", now=NOW)

    assert result["status"] == "success"
    recorder.record.assert_called_once()
    row = store.get_job("j")
    assert row["run_count"] == 1
    assert row["lock_until"] is None


# ── history / analytics ───────────────────────────────────


def test_list_runs_clamps_limit(service, store):
    service.create_job("report.daily", task_id="j", interval_sec=60)
    for i in range(3):
        store.insert_run("j", "success", NOW + timedelta(seconds=i), details={"i": i})

    runs = service.list_runs("j", limit=0)
    assert len(runs) == 1
    assert runs[0]["details"] == {"i": 2}
    assert "details_json" not in runs[0]
    assert len(service.list_runs("j", limit=10_000)) == 3


def test_hourly_analytics(service, store):
    now = NOW + timedelta(minutes=30)
    store.insert_run("j", "success", NOW + timedelta(minutes=5))
    store.insert_run("j", "failure", NOW + timedelta(minutes=10))
    store.insert_run("j", "skipped", NOW - timedelta(minutes=30))
    store.insert_run("j", "success", NOW - timedelta(hours=5))

    data = service.hourly_analytics(window_hours=3, now=now)

    assert data["window_hours"] == 3
    buckets = data["buckets"]
    assert [b["hour"] for b in buckets] == [
        NOW - timedelta(hours=2), NOW - timedelta(hours=1), NOW,
    ]
    assert buckets[2] == {"hour": NOW, "total": 2, "success": 1, "failure": 1, "skipped": 0}
    assert buckets[1]["skipped"] == 1
    assert buckets[0]["total"] == 0


def test_hourly_analytics_clamps_window(service):
    assert service.hourly_analytics(window_hours=1000, now=NOW)["window_hours"] == 168
    assert service.hourly_analytics(window_hours=0, now=NOW)["window_hours"] == 24
