from __future__ import annotations

from dataclasses import asdict, dataclass
from threading import Event
from typing import Mapping

from . import db
from .config import RolloutConfig
from .errors import BoundsError, ControllerError, OrchestratorError
from .graph import DependencyGraph
from .orchestrator import Orchestrator
from .registry import ServiceRegistry


@dataclass
class ScaleResult:
    ok: bool
    outcome: str  # success|rejected|failed
    service: str
    replicas: int
    message: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class Scaler:
    """Moves a service's replica count within its configured bounds.

    New replicas only count once healthy; removal is newest first.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        graph: DependencyGraph,
        orchestrator: Orchestrator,
        configs: Mapping[str, RolloutConfig] | None = None,
    ):
        self.registry = registry
        self.graph = graph
        self.orchestrator = orchestrator
        self.configs = dict(configs or {})

    def check_bounds(self, service: str, target: int) -> None:
        rec = self.registry.get(service)
        if not (rec.min_replicas <= target <= rec.max_replicas):
            raise BoundsError(service, target, rec.min_replicas, rec.max_replicas)
        if target < 1:
            running = sorted(d for d in self.graph.all_dependents_of(service) if self.registry.get(d).current_replicas > 0)
            if running:
                raise BoundsError(
                    service, target, 1, rec.max_replicas,
                    reason=f"Cannot scale '{service}' to 0 while {', '.join(running)} still run(s) on it.",
                )
        elif rec.current_replicas == 0:
            # Nothing may come up on top of a dependency that is scaled to zero.
            down = sorted(d for d in self.graph.all_dependencies_of(service) if self.registry.get(d).current_replicas == 0)
            if down:
                raise BoundsError(
                    service, target, 0, 0,
                    reason=f"Cannot start '{service}' while dependency {', '.join(down)} has no replicas.",
                )

    def scale(self, service: str, target: int, cancel: Event | None = None) -> ScaleResult:
        """Raises BoundsError (nothing changed) when ``target`` is not allowed."""
        self.check_bounds(service, target)
        self.registry.begin_operation(service, "scale")
        try:
            return self._scale(service, int(target), cancel or Event())
        finally:
            self.registry.end_operation(service)

    def _scale(self, service: str, target: int, cancel: Event) -> ScaleResult:
        timeout = (self.configs.get(service) or RolloutConfig()).batch_timeout_s
        try:
            rec = self._refresh(service)
            start = rec.current_replicas
            self.registry.update(service, desired_replicas=target, message=f"scaling {start} -> {target}")
            db.log_event("INFO", f"Scaling {start} -> {target}", service_name=service, version=rec.version)

            if target < start:
                # LIFO: the most recently added replicas go first.
                for r in sorted(rec.replicas, key=lambda r: r.seq, reverse=True)[: start - target]:
                    if cancel.is_set():
                        return self._finish(service, False, "Cancelled")
                    self.orchestrator.remove_replica(service, r.id)
                    self._refresh(service)
                return self._finish(service, True, f"Scaled down to {target}")

            self.orchestrator.set_image_version(service, rec.version)
            while self.registry.get(service).current_replicas < target:
                if cancel.is_set():
                    return self._finish(service, False, "Cancelled")
                cur = self.registry.get(service)
                before = {r.id for r in cur.replicas}
                self.orchestrator.set_replicas(service, cur.current_replicas + 1)
                added = [r.id for r in self._refresh(service).replicas if r.id not in before]
                if not added or not self.registry.wait_healthy(service, added, timeout):
                    for rid in added:
                        self.orchestrator.remove_replica(service, rid)
                    self._refresh(service)
                    return self._finish(service, False, f"New replica not healthy within {timeout:g}s")
            return self._finish(service, True, f"Scaled up to {target}")
        except OrchestratorError as e:
            return self._finish(service, False, f"Orchestrator error: {e}")

    def _finish(self, service: str, ok: bool, message: str) -> ScaleResult:
        try:
            rec = self._refresh(service)
        except ControllerError:
            rec = self.registry.get(service)
        if not ok:
            # Desired count follows what actually came up healthy.
            self.registry.update(service, desired_replicas=rec.current_replicas)
        self.registry.update(service, message=message)
        db.log_event("INFO" if ok else "ERROR", message, service_name=service, version=rec.version)
        return ScaleResult(
            ok=ok,
            outcome="success" if ok else "failed",
            service=service,
            replicas=rec.current_replicas,
            message=message,
        )

    def _refresh(self, service: str):
        self.registry.sync_replicas(service, self.orchestrator.get_replica_status(service))
        return self.registry.get(service)
