from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from . import db
from .backups import BackupScheduler, JobStore
from .config import AppConfig, load_config
from .errors import ControllerError, UnknownService
from .health import HealthProber, ReadinessCheck
from .orchestrator import DockerOrchestrator, Orchestrator
from .registry import ServiceRecord, ServiceRegistry
from .rollouts import RolloutManager
from .scaler import Scaler
from .settings import settings
from .startup import StartupSequencer


@dataclass
class CommandResult:
    ok: bool
    outcome: str  # success|failed|rolled_back|rejected|accepted|started
    message: str
    error: str | None = None  # error kind when rejected
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _rejected(e: ControllerError) -> CommandResult:
    return CommandResult(ok=False, outcome="rejected", message=str(e), error=type(e).__name__)


class Controller:
    """Wires the components for one application and exposes operator commands.

    Every command returns a CommandResult; controller errors never escape.
    """

    def __init__(
        self,
        config: AppConfig,
        orchestrator: Orchestrator,
        store: JobStore | None = None,
        check: ReadinessCheck | None = None,
        probe_interval_s: float | None = None,
        backup_tick_s: float | None = None,
        job_poll_interval_s: float | None = None,
    ):
        self.config = config
        self.orchestrator = orchestrator
        self.graph = config.graph()
        self.registry = ServiceRegistry()
        for name, svc in config.services.items():
            self.registry.add(
                ServiceRecord(
                    name=name,
                    depends_on=frozenset(svc.depends_on),
                    version=svc.version,
                    desired_replicas=svc.replicas,
                    min_replicas=svc.min_replicas,
                    max_replicas=svc.max_replicas,
                )
            )
        rollout_cfgs = {name: svc.rollout for name, svc in config.services.items()}
        self.prober = HealthProber(
            self.registry,
            orchestrator,
            checks={name: svc.health for name, svc in config.services.items()},
            check=check,
            interval_s=probe_interval_s,
        )
        self.sequencer = StartupSequencer(
            self.registry,
            self.graph,
            orchestrator,
            timeouts={name: svc.startup_timeout_s for name, svc in config.services.items()},
        )
        self.rollouts = RolloutManager(self.registry, orchestrator, rollout_cfgs)
        self.scaler = Scaler(self.registry, self.graph, orchestrator, rollout_cfgs)
        self.backups = BackupScheduler(
            orchestrator,
            config.backups,
            store=store,
            tick_s=backup_tick_s,
            poll_interval_s=job_poll_interval_s,
        )

    @classmethod
    def from_settings(cls) -> "Controller":
        db.init_db()
        config = load_config(settings.config_path)
        return cls(config, DockerOrchestrator(config), store=db.SqliteJobStore())

    # -- lifecycle -----------------------------------------------------

    def run_background(self) -> None:
        self.prober.start()
        self.backups.start()

    def shutdown(self) -> None:
        self.backups.stop()
        self.prober.stop()

    # -- commands ------------------------------------------------------

    def start(self) -> CommandResult:
        result = self.sequencer.run()
        failed = [n for n, s in result.services.items() if s.state.value != "ready"]
        message = "All services ready" if result.ok else f"Not ready: {', '.join(failed)}"
        return CommandResult(ok=result.ok, outcome="success" if result.ok else "failed", message=message, data=result.to_dict())

    def scale(self, service: str, replicas: int) -> CommandResult:
        try:
            self._require(service)
            result = self.scaler.scale(service, replicas)
        except ControllerError as e:
            return _rejected(e)
        return CommandResult(ok=result.ok, outcome=result.outcome, message=result.message, data=result.to_dict())

    def rollout(self, service: str, version: str, batch_size: int | None = None, wait: bool = True) -> CommandResult:
        try:
            self._require(service)
        except ControllerError as e:
            return _rejected(e)
        if wait:
            result = self.rollouts.rollout(service, version, batch_size=batch_size)
        else:
            result = self.rollouts.start_rollout(service, version, batch_size=batch_size)
        return CommandResult(
            ok=result.ok,
            outcome=result.outcome,
            message=result.message,
            error="OperationRejected" if result.outcome == "rejected" else None,
            data=result.to_dict(),
        )

    def cancel_rollout(self, service: str) -> CommandResult:
        try:
            self._require(service)
        except ControllerError as e:
            return _rejected(e)
        if not self.rollouts.cancel(service):
            return CommandResult(ok=False, outcome="rejected", message=f"No rollout in progress for '{service}'.", error="NoRollout")
        return CommandResult(ok=True, outcome="accepted", message="Cancellation requested; the rollout stops before its next batch.")

    def rollback(self, service: str) -> CommandResult:
        try:
            self._require(service)
        except ControllerError as e:
            return _rejected(e)
        result = self.rollouts.rollback(service)
        return CommandResult(
            ok=result.ok,
            outcome=result.outcome,
            message=result.message,
            error="OperationRejected" if result.outcome == "rejected" else None,
            data=result.to_dict(),
        )

    def backup_now(self, job: str) -> CommandResult:
        result = self.backups.run_now(job)
        error = None
        if not result.ok:
            error = "UnknownJob" if job not in self.backups.jobs else "JobPending"
        return CommandResult(ok=result.ok, outcome=result.outcome, message=result.message, error=error, data=result.details)

    # -- queries -------------------------------------------------------

    def status(self) -> list[dict[str, Any]]:
        return self.registry.snapshot()

    def service_status(self, service: str) -> dict[str, Any]:
        return self.registry.get(service).to_dict()

    def backup_status(self) -> list[dict[str, Any]]:
        return self.backups.status()

    def rollout_history(self) -> list[dict[str, Any]]:
        return [asdict(st) for st in self.rollouts.list_rollouts()]

    def _require(self, service: str) -> None:
        if service not in self.registry:
            raise UnknownService(service)
