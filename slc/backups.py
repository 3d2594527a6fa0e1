from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Iterable, Protocol

from croniter import croniter

from . import alerts, db
from .config import BackupConfig
from .errors import ControllerError
from .orchestrator import JobSpec, Orchestrator
from .settings import settings

SUCCESS = "success"
FAILURE = "failure"
PENDING = "pending"

_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _fmt(ts: datetime | None) -> str | None:
    return ts.astimezone(timezone.utc).strftime(_TS_FORMAT) if ts else None


def _parse(raw: str | None) -> datetime | None:
    if not raw:
        return None
    return datetime.strptime(raw, _TS_FORMAT).replace(tzinfo=timezone.utc)


class JobStore(Protocol):
    def load(self, name: str): ...

    def save(
        self,
        name: str,
        target: str,
        schedule: str,
        last_run: str | None,
        last_outcome: str | None,
        last_message: str | None,
    ) -> None: ...


@dataclass
class BackupJob:
    name: str
    target: str
    schedule: str
    spec: JobSpec
    timeout_s: float = 1800.0
    last_run: datetime | None = None
    last_outcome: str | None = None  # success|failure|pending
    last_message: str = ""
    runs: int = 0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "target": self.target,
            "schedule": self.schedule,
            "timeout_s": self.timeout_s,
            "last_run": _fmt(self.last_run),
            "last_outcome": self.last_outcome,
            "last_message": self.last_message,
            "runs": self.runs,
        }


@dataclass
class BackupResult:
    ok: bool
    outcome: str  # started|rejected|success|failure
    job: str
    message: str = ""
    details: dict = field(default_factory=dict)


class BackupScheduler:
    """Fires snapshot jobs on their cron schedule and records the outcome.

    A job whose previous run is still pending is skipped, so one target
    never has two snapshots in flight. Failures are recorded and the next
    tick runs as usual.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        backups: Iterable[BackupConfig],
        store: JobStore | None = None,
        tick_s: float | None = None,
        poll_interval_s: float | None = None,
        now: datetime | None = None,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.tick_s = tick_s if tick_s is not None else settings.backup_tick_s
        self.poll_interval_s = poll_interval_s if poll_interval_s is not None else settings.job_poll_interval_s
        self.started_at = now or datetime.now(timezone.utc)
        self._lock = Lock()
        self._stop = Event()
        self._thr: Thread | None = None
        self._workers: dict[str, Thread] = {}
        self.jobs: dict[str, BackupJob] = {}
        for cfg in backups:
            self.jobs[cfg.name] = self._load(cfg)

    def _load(self, cfg: BackupConfig) -> BackupJob:
        job = BackupJob(
            name=cfg.name,
            target=cfg.target,
            schedule=cfg.schedule,
            timeout_s=cfg.timeout_s,
            spec=JobSpec(name=cfg.name, target=cfg.target, image=cfg.image, command=tuple(cfg.command), env=dict(cfg.env)),
        )
        row = self.store.load(cfg.name) if self.store else None
        if row is not None:
            job.last_run = _parse(row.last_run)
            job.last_outcome = row.last_outcome
            job.last_message = row.last_message or ""
            if job.last_outcome == PENDING:
                # The previous controller died mid-run; nobody is awaiting that job anymore.
                job.last_outcome = FAILURE
                job.last_message = "Interrupted by controller restart"
                self._persist(job)
        return job

    def _persist(self, job: BackupJob) -> None:
        if self.store is None:
            return
        self.store.save(job.name, job.target, job.schedule, _fmt(job.last_run), job.last_outcome, job.last_message)

    def next_run(self, job: BackupJob) -> datetime:
        base = job.last_run or self.started_at
        return croniter(job.schedule, base).get_next(datetime)

    def is_due(self, job: BackupJob, now: datetime) -> bool:
        return self.next_run(job) <= now

    def tick(self, now: datetime | None = None) -> list[str]:
        """Start every due job; returns the names actually started."""
        now = now or datetime.now(timezone.utc)
        started: list[str] = []
        for job in list(self.jobs.values()):
            if not self.is_due(job, now):
                continue
            if self._launch(job, now, reason="schedule"):
                started.append(job.name)
        return started

    def run_now(self, name: str) -> BackupResult:
        job = self.jobs.get(name)
        if job is None:
            return BackupResult(ok=False, outcome="rejected", job=name, message=f"Unknown backup job '{name}'.")
        if not self._launch(job, datetime.now(timezone.utc), reason="operator"):
            return BackupResult(ok=False, outcome="rejected", job=name, message="A run of this job is still pending.")
        return BackupResult(ok=True, outcome="started", job=name, message=f"Backup '{name}' started", details=job.to_dict())

    def wait(self, name: str, timeout: float | None = None) -> BackupJob:
        """Block until the current run of ``name`` (if any) finishes."""
        with self._lock:
            worker = self._workers.get(name)
        if worker is not None:
            worker.join(timeout)
        return self.jobs[name]

    def status(self) -> list[dict]:
        with self._lock:
            out = []
            for job in self.jobs.values():
                d = job.to_dict()
                d["next_run"] = _fmt(self.next_run(job))
                out.append(d)
            return out

    def _launch(self, job: BackupJob, now: datetime, reason: str) -> bool:
        with self._lock:
            if job.last_outcome == PENDING:
                db.log_event("WARN", f"Backup '{job.name}' skipped ({reason}): previous run still pending", service_name=job.target)
                return False
            job.last_outcome = PENDING
            job.last_run = now
            job.last_message = f"Started by {reason}"
            job.runs += 1
            self._persist(job)
            worker = Thread(target=self._run, args=(job,), name=f"slc-backup-{job.name}", daemon=True)
            self._workers[job.name] = worker
        db.log_event("INFO", f"Backup '{job.name}' started by {reason}", service_name=job.target)
        worker.start()
        return True

    def _run(self, job: BackupJob) -> None:
        ok = False
        try:
            handle = self.orchestrator.trigger_job(job.spec)
            deadline = time.monotonic() + job.timeout_s
            state = handle.poll()
            while state == "running" and time.monotonic() < deadline:
                if self._stop.wait(min(self.poll_interval_s, max(0.0, deadline - time.monotonic()))):
                    break
                state = handle.poll()
            if state == "succeeded":
                ok, message = True, "Snapshot completed"
            elif state == "running":
                message = "Stopped while snapshot was running" if self._stop.is_set() else f"Snapshot did not finish within {job.timeout_s:g}s"
                try:
                    handle.cancel()
                except ControllerError as e:
                    message += f"; cancel failed: {e}"
            else:
                message = "Snapshot job failed"
        except Exception as e:  # noqa: BLE001 - the run must always end in a recorded outcome
            message = f"Could not run snapshot: {type(e).__name__}: {e}"

        with self._lock:
            job.last_outcome = SUCCESS if ok else FAILURE
            job.last_message = message
            self._persist(job)
        db.log_event("INFO" if ok else "ERROR", f"Backup '{job.name}': {message}", service_name=job.target)
        if not ok:
            alerts.alert_backup_failed(job.name, job.target, message)

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="slc-backups", daemon=True)
        self._thr.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thr:
            self._thr.join(timeout)

    def _loop(self) -> None:
        db.log_event("INFO", f"Backup scheduler started with {len(self.jobs)} job(s)")
        while not self._stop.is_set():
            try:
                self.tick()
            except ControllerError as e:
                db.log_event("ERROR", f"Backup tick failed: {e}")
            self._stop.wait(max(0.01, self.tick_s))
