from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass, field
from threading import Event, Lock, Thread
from typing import Mapping

from . import alerts, db
from .config import RolloutConfig, validate_version
from .errors import ControllerError, OrchestratorError
from .orchestrator import Orchestrator
from .registry import HealthStatus, RolloutState, ServiceRegistry

SUCCESS = "success"
ROLLED_BACK = "rolled_back"
REJECTED = "rejected"
FAILED = "failed"


@dataclass
class RolloutPlan:
    id: str
    service: str
    from_version: str
    to_version: str
    batch_size: int
    batch_timeout_s: float
    batches: list[list[str]]
    original_replicas: int
    operation: str = "rollout"
    batches_completed: int = 0
    cancel: Event = field(default_factory=Event)


@dataclass
class RolloutResult:
    ok: bool
    outcome: str  # success|rolled_back|rejected|failed
    service: str
    version: str | None = None
    batches_completed: int = 0
    batches_total: int = 0
    message: str = ""
    rollout_id: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RolloutStatus:
    id: str
    service: str
    from_version: str
    to_version: str
    state: str  # running|done|rolled_back|failed
    message: str
    batches_completed: int = 0
    batches_total: int = 0
    started_at: str = field(default_factory=db.utc_now)
    updated_at: str = field(default_factory=db.utc_now)


def partition(replica_ids: list[str], batch_size: int) -> list[list[str]]:
    return [replica_ids[i:i + batch_size] for i in range(0, len(replica_ids), batch_size)]


class RolloutManager:
    """Replaces a service's replicas with a new version, batch by batch.

    Each batch must turn healthy before the next one starts. A batch that
    times out, an orchestrator failure, or a cancellation seen between
    batches sends the service back to the version it started from.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        orchestrator: Orchestrator,
        configs: Mapping[str, RolloutConfig] | None = None,
    ):
        self.registry = registry
        self.orchestrator = orchestrator
        self.configs = dict(configs or {})
        self._lock = Lock()
        self._plans: dict[str, RolloutPlan] = {}  # service -> in-flight plan
        self._history: dict[str, RolloutStatus] = {}

    # -- public surface -------------------------------------------------

    def rollout(
        self,
        service: str,
        new_version: str,
        batch_size: int | None = None,
        batch_timeout_s: float | None = None,
        cancel: Event | None = None,
    ) -> RolloutResult:
        """Run a rollout to completion in the calling thread."""
        plan = self._prepare(service, new_version, batch_size, batch_timeout_s, cancel)
        if isinstance(plan, RolloutResult):
            return plan
        return self._execute(plan)

    def start_rollout(
        self,
        service: str,
        new_version: str,
        batch_size: int | None = None,
        batch_timeout_s: float | None = None,
    ) -> RolloutResult:
        """Validate and claim the service now, then run the batches in a thread."""
        plan = self._prepare(service, new_version, batch_size, batch_timeout_s, None)
        if isinstance(plan, RolloutResult):
            return plan
        Thread(target=self._execute, args=(plan,), name=f"slc-rollout-{service}", daemon=True).start()
        return RolloutResult(
            ok=True,
            outcome="accepted",
            service=service,
            version=plan.to_version,
            batches_total=len(plan.batches),
            message=f"Rollout {plan.id} started",
            rollout_id=plan.id,
        )

    def cancel(self, service: str) -> bool:
        """Signal the in-flight rollout; it stops before its next batch."""
        with self._lock:
            plan = self._plans.get(service)
        if plan is None:
            return False
        plan.cancel.set()
        db.log_event("WARN", "Rollout cancellation requested", service_name=service, version=plan.to_version)
        return True

    def rollback(self, service: str) -> RolloutResult:
        """Operator rollback.

        After a failed rollout the service already runs its last stable
        version, so this only clears the Failed state. Otherwise it rolls the
        service out to the version it ran before its last successful rollout.
        """
        try:
            rec = self.registry.get(service)
        except ControllerError as e:
            return RolloutResult(ok=False, outcome=REJECTED, service=service, message=str(e))
        if rec.operation is not None:
            return RolloutResult(ok=False, outcome=REJECTED, service=service, version=rec.version, message=f"Service is busy with '{rec.operation}'.")
        if rec.rollout_state is RolloutState.FAILED:
            self.registry.update(service, rollout_state=RolloutState.STABLE, message="Failed rollout acknowledged")
            db.log_event("INFO", "Cleared failed rollout state", service_name=service, version=rec.version)
            return RolloutResult(ok=True, outcome=SUCCESS, service=service, version=rec.version, message=f"Already running {rec.version}; rollout state reset to stable.")
        if not rec.previous_version:
            return RolloutResult(ok=False, outcome=REJECTED, service=service, version=rec.version, message="No previous version to roll back to.")
        plan = self._prepare(service, rec.previous_version, None, None, None, operation="rollback")
        if isinstance(plan, RolloutResult):
            return plan
        return self._execute(plan)

    def get_rollout(self, rollout_id: str) -> RolloutStatus | None:
        with self._lock:
            return self._history.get(rollout_id)

    def list_rollouts(self) -> list[RolloutStatus]:
        with self._lock:
            return sorted(self._history.values(), key=lambda s: s.started_at, reverse=True)

    # -- internals -----------------------------------------------------

    def _prepare(
        self,
        service: str,
        new_version: str,
        batch_size: int | None,
        batch_timeout_s: float | None,
        cancel: Event | None,
        operation: str = "rollout",
    ) -> RolloutPlan | RolloutResult:
        cfg = self.configs.get(service) or RolloutConfig()
        batch_size = cfg.batch_size if batch_size is None else int(batch_size)
        batch_timeout_s = cfg.batch_timeout_s if batch_timeout_s is None else float(batch_timeout_s)
        try:
            validate_version(new_version)
        except ValueError as e:
            return RolloutResult(ok=False, outcome=REJECTED, service=service, version=new_version, message=str(e))
        if batch_size < 1:
            return RolloutResult(ok=False, outcome=REJECTED, service=service, version=new_version, message="batch_size must be >= 1")

        try:
            self.registry.begin_operation(service, operation)
        except ControllerError as e:
            return RolloutResult(ok=False, outcome=REJECTED, service=service, version=new_version, message=str(e))

        try:
            self._refresh(service)
            rec = self.registry.get(service)
        except ControllerError as e:
            self.registry.end_operation(service)
            return RolloutResult(ok=False, outcome=FAILED, service=service, version=new_version, message=str(e))

        if new_version == rec.version:
            self.registry.end_operation(service)
            return RolloutResult(ok=True, outcome=SUCCESS, service=service, version=rec.version, message=f"Already running {rec.version}.")

        plan = RolloutPlan(
            id=secrets.token_hex(6),
            service=service,
            from_version=rec.version,
            to_version=new_version,
            batch_size=batch_size,
            batch_timeout_s=batch_timeout_s,
            batches=partition([r.id for r in rec.replicas], batch_size),
            original_replicas=rec.current_replicas,
            operation=operation,
        )
        if cancel is not None:
            plan.cancel = cancel
        with self._lock:
            self._plans[service] = plan
            self._history[plan.id] = RolloutStatus(
                id=plan.id,
                service=service,
                from_version=plan.from_version,
                to_version=new_version,
                state="running",
                message=f"Planned {len(plan.batches)} batch(es) of up to {batch_size}",
                batches_total=len(plan.batches),
            )
        self.registry.update(service, rollout_state=RolloutState.ROLLING_OUT, target_version=new_version, message=f"{operation} to {new_version}")
        db.log_event("INFO", f"{operation.capitalize()} {plan.from_version} -> {new_version} in {len(plan.batches)} batch(es)", service_name=service, version=new_version)
        return plan

    def _execute(self, plan: RolloutPlan) -> RolloutResult:
        try:
            return self._run_batches(plan)
        finally:
            with self._lock:
                self._plans.pop(plan.service, None)
            self.registry.end_operation(plan.service)

    def _run_batches(self, plan: RolloutPlan) -> RolloutResult:
        total = len(plan.batches)
        try:
            self.orchestrator.set_image_version(plan.service, plan.to_version)
            for idx, batch in enumerate(plan.batches):
                if plan.cancel.is_set():
                    return self._rollback(plan, f"Cancelled before batch {idx + 1}/{total}")
                if not self._replace_batch(plan, batch):
                    return self._rollback(plan, f"Batch {idx + 1}/{total} not healthy within {plan.batch_timeout_s:g}s")
                plan.batches_completed += 1
                self._status(plan, "running", f"Batch {idx + 1}/{total} healthy")
                db.log_event("INFO", f"Batch {idx + 1}/{total} healthy", service_name=plan.service, version=plan.to_version)
        except OrchestratorError as e:
            return self._rollback(plan, f"Orchestrator error: {e}")

        self.registry.update(
            plan.service,
            version=plan.to_version,
            previous_version=plan.from_version,
            target_version=None,
            rollout_state=RolloutState.STABLE,
            message=f"{plan.operation} to {plan.to_version} completed",
        )
        self._status(plan, "done", "Rollout completed.")
        db.log_event("INFO", f"{plan.operation.capitalize()} completed", service_name=plan.service, version=plan.to_version)
        return RolloutResult(
            ok=True,
            outcome=SUCCESS,
            service=plan.service,
            version=plan.to_version,
            batches_completed=plan.batches_completed,
            batches_total=total,
            message=f"{plan.service} now running {plan.to_version}",
            rollout_id=plan.id,
        )

    def _replace_batch(self, plan: RolloutPlan, batch: list[str]) -> bool:
        rec = self.registry.get(plan.service)
        before = {r.id for r in rec.replicas}
        healthy_elsewhere = [r for r in rec.replicas if r.health is HealthStatus.HEALTHY and r.id not in batch]
        # Stopping the batch first would leave nothing serving: surge instead.
        surge = not healthy_elsewhere
        if not surge:
            for rid in batch:
                self.orchestrator.remove_replica(plan.service, rid)
            self._refresh(plan.service)
            target = self.registry.get(plan.service).current_replicas + len(batch)
        else:
            target = rec.current_replicas + len(batch)

        self.orchestrator.set_replicas(plan.service, target)
        self._refresh(plan.service)
        new_ids = [r.id for r in self.registry.get(plan.service).replicas if r.id not in before]
        if not new_ids:
            return False
        if not self.registry.wait_healthy(plan.service, new_ids, plan.batch_timeout_s):
            return False

        if surge:
            for rid in batch:
                self.orchestrator.remove_replica(plan.service, rid)
            self._refresh(plan.service)
        return True

    def _rollback(self, plan: RolloutPlan, reason: str) -> RolloutResult:
        service = plan.service
        self.registry.update(service, rollout_state=RolloutState.ROLLING_BACK, message=reason)
        self._status(plan, "rolling_back", reason)
        db.log_event("WARN", f"Rolling back to {plan.from_version}: {reason}", service_name=service, version=plan.to_version)

        restored = False
        detail = ""
        try:
            self.orchestrator.set_image_version(service, plan.from_version)
            rec = self._refresh(service)

            # Replicas of the new version that never turned healthy serve nobody.
            for r in rec.replicas:
                if r.version != plan.from_version and r.health is not HealthStatus.HEALTHY:
                    self.orchestrator.remove_replica(service, r.id)
            rec = self._refresh(service)

            old_count = sum(1 for r in rec.replicas if r.version == plan.from_version)
            missing = plan.original_replicas - old_count
            restored = True
            if missing > 0:
                before = {r.id for r in rec.replicas}
                self.orchestrator.set_replicas(service, rec.current_replicas + missing)
                rec = self._refresh(service)
                started = [r.id for r in rec.replicas if r.id not in before]
                restored = bool(started) and self.registry.wait_healthy(service, started, plan.batch_timeout_s)

            # Healthy new-version replicas go last so something keeps serving.
            for r in self._refresh(service).replicas:
                if r.version != plan.from_version:
                    self.orchestrator.remove_replica(service, r.id)
            rec = self._refresh(service)
            if rec.current_replicas != plan.original_replicas:
                self.orchestrator.set_replicas(service, plan.original_replicas)
                self._refresh(service)
            if not restored:
                detail = f"; {plan.from_version} replicas not healthy within {plan.batch_timeout_s:g}s"
        except OrchestratorError as e:
            restored = False
            detail = f"; rollback incomplete: {e}"

        message = f"{reason}. Rolled back to {plan.from_version} after {plan.batches_completed} batch(es){detail}"
        self.registry.update(service, rollout_state=RolloutState.FAILED, target_version=None, message=message)
        self._status(plan, "rolled_back" if restored else "failed", message)
        db.log_event("ERROR", message, service_name=service, version=plan.to_version)
        alerts.alert_rollback(service, plan.from_version, plan.to_version, message)
        return RolloutResult(
            ok=False,
            outcome=ROLLED_BACK if restored else FAILED,
            service=service,
            version=plan.from_version,
            batches_completed=plan.batches_completed,
            batches_total=len(plan.batches),
            message=message,
            rollout_id=plan.id,
        )

    def _refresh(self, service: str):
        self.registry.sync_replicas(service, self.orchestrator.get_replica_status(service))
        return self.registry.get(service)

    def _status(self, plan: RolloutPlan, state: str, message: str) -> None:
        with self._lock:
            st = self._history.get(plan.id)
            if st is None:
                return
            st.state = state
            st.message = message
            st.batches_completed = plan.batches_completed
            st.updated_at = db.utc_now()
