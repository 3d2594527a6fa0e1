from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from threading import Event, Lock, Thread
from typing import Mapping

from . import db
from .errors import ControllerError, ProbeTimeout
from .graph import DependencyGraph
from .orchestrator import Orchestrator
from .registry import HealthStatus, ServiceRegistry


class StartupState(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    WAITING_HEALTHY = "waiting_healthy"
    READY = "ready"
    FAILED = "failed"
    SKIPPED = "skipped"  # a dependency failed; never attempted


@dataclass
class ServiceStartup:
    service: str
    state: StartupState = StartupState.PENDING
    message: str = ""


@dataclass
class StartupResult:
    ok: bool
    order: list[str]
    services: dict[str, ServiceStartup] = field(default_factory=dict)

    def state_of(self, service: str) -> StartupState:
        return self.services[service].state

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "order": list(self.order),
            "services": {n: {"state": s.state.value, "message": s.message} for n, s in self.services.items()},
        }


class StartupSequencer:
    """Brings services up in dependency order, gated on health.

    Each service gets a worker that waits for its dependencies to finish.
    When a dependency does not reach Ready, the worker gives up without
    touching the orchestrator; unrelated branches keep going.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        graph: DependencyGraph,
        orchestrator: Orchestrator,
        timeouts: Mapping[str, float] | None = None,
        default_timeout_s: float = 120.0,
    ):
        self.registry = registry
        self.graph = graph
        self.orchestrator = orchestrator
        self.timeouts = dict(timeouts or {})
        self.default_timeout_s = default_timeout_s
        self._lock = Lock()
        self._last: StartupResult | None = None

    @property
    def last_result(self) -> StartupResult | None:
        with self._lock:
            return self._last

    def run(self) -> StartupResult:
        order = self.graph.topological_order()
        result = StartupResult(ok=False, order=order, services={name: ServiceStartup(name) for name in order})
        done = {name: Event() for name in order}
        with self._lock:
            self._last = result

        def worker(name: str) -> None:
            try:
                for dep in self.graph.dependencies_of(name):
                    done[dep].wait()
                failed_deps = sorted(d for d in self.graph.dependencies_of(name) if result.services[d].state is not StartupState.READY)
                if failed_deps:
                    self._set(result, name, StartupState.SKIPPED, f"Dependency not ready: {', '.join(failed_deps)}")
                    db.log_event("WARN", result.services[name].message, service_name=name)
                    return
                self._start_one(result, name)
            finally:
                done[name].set()

        threads = [Thread(target=worker, args=(name,), name=f"slc-start-{name}", daemon=True) for name in order]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        result.ok = all(s.state is StartupState.READY for s in result.services.values())
        db.log_event("INFO" if result.ok else "ERROR", "Startup completed" if result.ok else "Startup finished with failures")
        return result

    def _start_one(self, result: StartupResult, name: str) -> None:
        rec = self.registry.get(name)
        timeout = self.timeouts.get(name, self.default_timeout_s)
        self._set(result, name, StartupState.STARTING, f"Starting {rec.desired_replicas} replica(s) at {rec.version}")
        db.log_event("INFO", result.services[name].message, service_name=name, version=rec.version)
        try:
            with self.registry.operation(name, "start"):
                self.orchestrator.set_image_version(name, rec.version)
                self.orchestrator.set_replicas(name, rec.desired_replicas)
                self.registry.sync_replicas(name, self.orchestrator.get_replica_status(name))
                if rec.desired_replicas == 0:
                    self._set(result, name, StartupState.READY, "No replicas requested")
                    return

                self._set(result, name, StartupState.WAITING_HEALTHY, f"Waiting up to {timeout:g}s for health")

                def healthy() -> bool:
                    cur = self.registry.get(name)
                    return cur.health is HealthStatus.HEALTHY and cur.current_replicas >= rec.desired_replicas

                if not self.registry.wait_for(healthy, timeout):
                    raise ProbeTimeout(f"Not healthy within {timeout:g}s")
        except ControllerError as e:
            self._set(result, name, StartupState.FAILED, str(e))
            db.log_event("ERROR", f"Startup failed: {e}", service_name=name, version=rec.version)
            return

        self._set(result, name, StartupState.READY, "Healthy")
        db.log_event("INFO", "Service ready", service_name=name, version=rec.version)

    def _set(self, result: StartupResult, name: str, state: StartupState, message: str) -> None:
        with self._lock:
            result.services[name].state = state
            result.services[name].message = message
        self.registry.update(name, message=f"startup: {message}")
