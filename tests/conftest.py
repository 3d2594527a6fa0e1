from __future__ import annotations

import os
import sys
from threading import Event, Lock

import pytest

# Ensure project root is importable (so `import slc` and `import cli` work without installing).
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from slc import db  # noqa: E402
from slc.config import parse_config  # noqa: E402
from slc.controller import Controller  # noqa: E402
from slc.errors import OrchestratorError  # noqa: E402
from slc.orchestrator import JobSpec, ReplicaStatus  # noqa: E402
from slc.settings import Settings  # noqa: E402


class FakeJobHandle:
    def __init__(self, outcome: str, gate: Event | None):
        self.outcome = outcome
        self.gate = gate
        self.cancelled = False

    def poll(self) -> str:
        if self.gate is not None and not self.gate.is_set():
            return "running"
        return self.outcome

    def cancel(self) -> None:
        self.cancelled = True


class FakeOrchestrator:
    """In-memory orchestrator: replicas are ids with a version, readiness is scripted."""

    def __init__(self, versions: dict[str, str]):
        self._lock = Lock()
        self.versions = dict(versions)
        self.replicas: dict[str, list[tuple[str, str]]] = {name: [] for name in versions}  # (id, version), oldest first
        self._n = 0
        self.calls: list[tuple] = []
        self.unhealthy_services: set[str] = set()
        self.unhealthy_versions: set[tuple[str, str]] = set()
        self.unhealthy_ids: set[str] = set()
        self.fail_on: set[str] = set()
        self.jobs: list[JobSpec] = []
        self.handles: list[FakeJobHandle] = []
        self.job_outcome = "succeeded"
        self.job_gate: Event | None = None

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_on:
            raise OrchestratorError(f"{op} failed (injected)")

    def set_replicas(self, service: str, count: int) -> None:
        with self._lock:
            self.calls.append(("set_replicas", service, count))
            self._maybe_fail("set_replicas")
            reps = self.replicas[service]
            while len(reps) > count:
                reps.pop()
            while len(reps) < count:
                self._n += 1
                reps.append((f"{service}-{self._n}", self.versions[service]))

    def set_image_version(self, service: str, version: str) -> None:
        with self._lock:
            self.calls.append(("set_image_version", service, version))
            self._maybe_fail("set_image_version")
            self.versions[service] = version

    def remove_replica(self, service: str, replica_id: str) -> None:
        with self._lock:
            self.calls.append(("remove_replica", service, replica_id))
            self._maybe_fail("remove_replica")
            self.replicas[service] = [r for r in self.replicas[service] if r[0] != replica_id]

    def get_replica_status(self, service: str) -> list[ReplicaStatus]:
        with self._lock:
            self._maybe_fail("get_replica_status")
            return [ReplicaStatus(replica_id=rid, service=service, version=ver, running=True) for rid, ver in self.replicas[service]]

    def trigger_job(self, spec: JobSpec) -> FakeJobHandle:
        with self._lock:
            self.calls.append(("trigger_job", spec.name))
            self._maybe_fail("trigger_job")
            self.jobs.append(spec)
            handle = FakeJobHandle(self.job_outcome, self.job_gate)
            self.handles.append(handle)
            return handle

    def ready(self, service: str, replica: ReplicaStatus) -> bool:
        return (
            service not in self.unhealthy_services
            and (service, replica.version) not in self.unhealthy_versions
            and replica.replica_id not in self.unhealthy_ids
        )

    def versions_of(self, service: str) -> list[str]:
        with self._lock:
            return [ver for _, ver in self.replicas[service]]

    def ids_of(self, service: str) -> list[str]:
        with self._lock:
            return [rid for rid, _ in self.replicas[service]]

    def touched(self, service: str) -> bool:
        return any(len(c) > 1 and c[1] == service for c in self.calls)


def three_tier(
    startup_timeout_s: float = 2.0,
    batch_timeout_s: float = 2.0,
    backend_replicas: int = 3,
    backups: list[dict] | None = None,
) -> dict:
    def svc(version: str, deps: list[str], replicas: int, min_r: int = 1, max_r: int = 6) -> dict:
        return {
            "image": "registry.local/app",
            "version": version,
            "depends_on": deps,
            "replicas": replicas,
            "min_replicas": min_r,
            "max_replicas": max_r,
            "startup_timeout_s": startup_timeout_s,
            "rollout": {"batch_size": 1, "batch_timeout_s": batch_timeout_s},
        }

    return {
        "services": {
            "db": svc("16", [], 1, 1, 1),
            "backend": svc("v1", ["db"], backend_replicas),
            "frontend": svc("v1", ["backend"], 1, 0),
        },
        "backups": backups
        or [{"name": "nightly", "target": "db", "schedule": "0 3 * * *", "image": "registry.local/pg-snapshot"}],
    }


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "slc.db")))
    db.init_db()
    yield


@pytest.fixture
def make_controller():
    built: list[Controller] = []

    def _make(raw: dict | None = None, start_prober: bool = True) -> tuple[Controller, FakeOrchestrator]:
        config = parse_config(raw or three_tier())
        fake = FakeOrchestrator({name: svc.version for name, svc in config.services.items()})
        ctl = Controller(
            config,
            fake,
            store=db.SqliteJobStore(),
            check=fake.ready,
            probe_interval_s=0.005,
            job_poll_interval_s=0.01,
        )
        if start_prober:
            ctl.prober.start()
        built.append(ctl)
        return ctl, fake

    yield _make
    for ctl in built:
        ctl.shutdown()


@pytest.fixture
def started(make_controller):
    """A controller whose three tiers are up and healthy."""
    ctl, fake = make_controller()
    result = ctl.start()
    assert result.ok, result.message
    return ctl, fake
