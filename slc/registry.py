from __future__ import annotations

import copy
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from threading import Condition, RLock
from typing import Any, Callable, Iterator

from .db import utc_now
from .errors import OperationInProgress, UnknownService
from .orchestrator import ReplicaStatus


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class RolloutState(str, Enum):
    STABLE = "stable"
    ROLLING_OUT = "rolling_out"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


@dataclass
class Replica:
    id: str
    service: str
    version: str
    seq: int
    health: HealthStatus = HealthStatus.UNKNOWN
    successes: int = 0  # consecutive
    failures: int = 0  # consecutive
    last_message: str = ""
    created_at: str = field(default_factory=utc_now)


@dataclass
class ServiceRecord:
    name: str
    depends_on: frozenset[str]
    version: str
    desired_replicas: int
    min_replicas: int
    max_replicas: int
    health: HealthStatus = HealthStatus.UNKNOWN
    rollout_state: RolloutState = RolloutState.STABLE
    previous_version: str | None = None
    target_version: str | None = None
    replicas: list[Replica] = field(default_factory=list)
    operation: str | None = None  # in-flight structural change: scale|rollout|rollback|start
    message: str = ""
    updated_at: str = field(default_factory=utc_now)

    @property
    def current_replicas(self) -> int:
        return len(self.replicas)

    @property
    def available_replicas(self) -> int:
        return sum(1 for r in self.replicas if r.health is HealthStatus.HEALTHY)

    def replica(self, replica_id: str) -> Replica | None:
        for r in self.replicas:
            if r.id == replica_id:
                return r
        return None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["depends_on"] = sorted(self.depends_on)
        d["health"] = self.health.value
        d["rollout_state"] = self.rollout_state.value
        d["current_replicas"] = self.current_replicas
        d["available_replicas"] = self.available_replicas
        d["replicas"] = [
            {"id": r.id, "version": r.version, "health": r.health.value, "seq": r.seq, "created_at": r.created_at}
            for r in self.replicas
        ]
        return d


def aggregate_health(replicas: list[Replica]) -> HealthStatus:
    if not replicas:
        return HealthStatus.UNKNOWN
    states = {r.health for r in replicas}
    if states == {HealthStatus.HEALTHY}:
        return HealthStatus.HEALTHY
    if HealthStatus.UNHEALTHY in states:
        return HealthStatus.UNHEALTHY
    return HealthStatus.UNKNOWN


class ServiceRegistry:
    """Single source of mutable state for every managed service.

    Mutations go through one lock and wake every waiter; readers get copies.
    At most one structural operation (scale, rollout, ...) may hold a service
    at a time.
    """

    def __init__(self) -> None:
        self.lock = RLock()
        self._changed = Condition(self.lock)
        self._services: dict[str, ServiceRecord] = {}
        self._seq = 0
        self._epochs: dict[str, int] = {}

    def add(self, record: ServiceRecord) -> None:
        with self.lock:
            self._services[record.name] = record
            self._changed.notify_all()

    def names(self) -> list[str]:
        with self.lock:
            return sorted(self._services)

    def __contains__(self, name: str) -> bool:
        with self.lock:
            return name in self._services

    def get(self, name: str) -> ServiceRecord:
        with self.lock:
            return copy.deepcopy(self._record(name))

    def snapshot(self) -> list[dict[str, Any]]:
        with self.lock:
            return [self._services[n].to_dict() for n in sorted(self._services)]

    def update(self, name: str, **fields: Any) -> ServiceRecord:
        with self.lock:
            rec = self._record(name)
            for key, value in fields.items():
                if not hasattr(rec, key):
                    raise AttributeError(f"ServiceRecord has no field {key!r}")
                setattr(rec, key, value)
            return self._touch(rec)

    def mutate(self, name: str, fn: Callable[[ServiceRecord], Any]) -> Any:
        """Run ``fn`` on the live record under the registry lock."""
        with self.lock:
            rec = self._record(name)
            out = fn(rec)
            rec.health = aggregate_health(rec.replicas)
            self._touch(rec)
            return out

    def epoch(self, name: str) -> int:
        """Counter bumped whenever an operation claims or releases ``name``."""
        with self.lock:
            self._record(name)
            return self._epochs.get(name, 0)

    def sync_replicas(
        self, name: str, statuses: list[ReplicaStatus], skip_if_busy: bool = False, epoch: int | None = None
    ) -> list[str]:
        """Align the replica list with what the orchestrator reports.

        New replicas get the next sequence number (creation order); vanished
        ones are dropped. Returns the ids that were new. With ``skip_if_busy``
        nothing changes while a structural operation holds the service, since
        that operation keeps the list current itself. A list read at an older
        ``epoch`` is stale and is ignored too.
        """
        with self.lock:
            rec = self._record(name)
            if skip_if_busy and rec.operation is not None:
                return []
            if epoch is not None and epoch != self._epochs.get(name, 0):
                return []
            known = {r.id: r for r in rec.replicas}
            seen: set[str] = set()
            added: list[str] = []
            for st in statuses:
                seen.add(st.replica_id)
                r = known.get(st.replica_id)
                if r is None:
                    self._seq += 1
                    rec.replicas.append(Replica(id=st.replica_id, service=name, version=st.version, seq=self._seq))
                    added.append(st.replica_id)
                else:
                    r.version = st.version
            rec.replicas = sorted((r for r in rec.replicas if r.id in seen), key=lambda r: r.seq)
            rec.health = aggregate_health(rec.replicas)
            self._touch(rec)
            return added

    def wait_for(self, predicate: Callable[[], bool], timeout: float) -> bool:
        """Block until ``predicate()`` holds or ``timeout`` seconds pass.

        The lock is released while waiting, so other services keep moving.
        """
        with self._changed:
            return self._changed.wait_for(predicate, timeout=max(0.0, timeout))

    def wait_healthy(self, name: str, replica_ids: list[str], timeout: float) -> bool:
        wanted = set(replica_ids)

        def ready() -> bool:
            rec = self._record(name)
            healthy = {r.id for r in rec.replicas if r.health is HealthStatus.HEALTHY}
            return wanted <= healthy

        return self.wait_for(ready, timeout)

    def begin_operation(self, name: str, operation: str) -> None:
        with self.lock:
            rec = self._record(name)
            if rec.operation is not None:
                raise OperationInProgress(name, rec.operation)
            rec.operation = operation
            self._epochs[name] = self._epochs.get(name, 0) + 1
            self._touch(rec)

    def end_operation(self, name: str) -> None:
        with self.lock:
            rec = self._record(name)
            rec.operation = None
            self._epochs[name] = self._epochs.get(name, 0) + 1
            self._touch(rec)

    @contextmanager
    def operation(self, name: str, operation: str) -> Iterator[None]:
        self.begin_operation(name, operation)
        try:
            yield
        finally:
            self.end_operation(name)

    def _record(self, name: str) -> ServiceRecord:
        rec = self._services.get(name)
        if rec is None:
            raise UnknownService(name)
        return rec

    def _touch(self, rec: ServiceRecord) -> ServiceRecord:
        rec.updated_at = utc_now()
        self._changed.notify_all()
        return rec
