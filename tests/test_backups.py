from datetime import datetime, timedelta, timezone
from threading import Event

from slc import db
from slc.backups import BackupScheduler
from slc.config import parse_config

from conftest import FakeOrchestrator, three_tier

T0 = datetime(2026, 10, 18, 2, 0, tzinfo=timezone.utc)


def _scheduler(fake=None, schedule="0 3 * * *", timeout_s=1800.0, store=None):
    raw = three_tier(backups=[{"name": "nightly", "target": "db", "schedule": schedule, "image": "snap", "timeout_s": timeout_s}])
    cfg = parse_config(raw)
    fake = fake or FakeOrchestrator({"db": "16"})
    sched = BackupScheduler(fake, cfg.backups, store=store, poll_interval_s=0.01, now=T0)
    return sched, fake


def test_not_due_before_schedule():
    sched, fake = _scheduler()
    assert sched.tick(T0 + timedelta(minutes=59)) == []
    assert fake.jobs == []


def test_due_job_runs_and_records_success():
    sched, fake = _scheduler()

    assert sched.tick(T0 + timedelta(hours=1)) == ["nightly"]
    job = sched.wait("nightly", timeout=2)

    assert job.last_outcome == "success"
    assert job.last_run == T0 + timedelta(hours=1)
    assert fake.jobs[0].target == "db"
    # Next fire is tomorrow.
    assert sched.tick(T0 + timedelta(hours=2)) == []


def test_pending_job_is_not_started_twice():
    fake = FakeOrchestrator({"db": "16"})
    fake.job_gate = Event()
    sched, _ = _scheduler(fake, schedule="* * * * *")

    assert sched.tick(T0 + timedelta(minutes=1)) == ["nightly"]
    assert sched.jobs["nightly"].last_outcome == "pending"
    # Next minute's tick lands while the first run is still going.
    assert sched.tick(T0 + timedelta(minutes=2)) == []
    assert sched.run_now("nightly").outcome == "rejected"
    assert len(fake.jobs) == 1

    fake.job_gate.set()
    assert sched.wait("nightly", timeout=2).last_outcome == "success"
    assert sched.tick(T0 + timedelta(minutes=3)) == ["nightly"]
    sched.wait("nightly", timeout=2)
    assert len(fake.jobs) == 2


def test_failure_is_recorded_and_schedule_continues():
    fake = FakeOrchestrator({"db": "16"})
    fake.job_outcome = "failed"
    sched, _ = _scheduler(fake, schedule="* * * * *")

    sched.tick(T0 + timedelta(minutes=1))
    assert sched.wait("nightly", timeout=2).last_outcome == "failure"

    fake.job_outcome = "succeeded"
    assert sched.tick(T0 + timedelta(minutes=2)) == ["nightly"]
    assert sched.wait("nightly", timeout=2).last_outcome == "success"


def test_timeout_cancels_job():
    fake = FakeOrchestrator({"db": "16"})
    fake.job_gate = Event()  # never released
    sched, _ = _scheduler(fake, timeout_s=0.1)

    sched.run_now("nightly")
    job = sched.wait("nightly", timeout=2)

    assert job.last_outcome == "failure"
    assert "did not finish" in job.last_message
    assert fake.handles[0].cancelled


def test_trigger_error_is_a_failure():
    fake = FakeOrchestrator({"db": "16"})
    fake.fail_on.add("trigger_job")
    sched, _ = _scheduler(fake)

    sched.run_now("nightly")
    job = sched.wait("nightly", timeout=2)

    assert job.last_outcome == "failure"
    assert "injected" in job.last_message


def test_unknown_job_is_rejected():
    sched, _ = _scheduler()
    assert sched.run_now("weekly").outcome == "rejected"


def test_state_survives_restart():
    store = db.SqliteJobStore()
    sched, _ = _scheduler(store=store)
    sched.tick(T0 + timedelta(hours=1))
    sched.wait("nightly", timeout=2)

    restarted, _ = _scheduler(store=store)
    job = restarted.jobs["nightly"]
    assert job.last_outcome == "success"
    assert job.last_run == T0 + timedelta(hours=1)
    # Already ran today: the next due time is tomorrow 03:00.
    assert restarted.tick(T0 + timedelta(hours=5)) == []
    assert restarted.tick(T0 + timedelta(days=1, hours=1)) == ["nightly"]
    restarted.wait("nightly", timeout=2)


def test_pending_left_by_crash_becomes_failure():
    store = db.SqliteJobStore()
    store.save("nightly", "db", "0 3 * * *", "2026-10-18T03:00:00Z", "pending", "Started by schedule")

    sched, _ = _scheduler(store=store)

    job = sched.jobs["nightly"]
    assert job.last_outcome == "failure"
    assert store.load("nightly").last_outcome == "failure"
