from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import TYPE_CHECKING, Any, Protocol

import docker
from docker.errors import DockerException, NotFound

from .errors import OrchestratorError, UnknownService
from .settings import settings

if TYPE_CHECKING:
    from .config import AppConfig


@dataclass(frozen=True)
class ReplicaStatus:
    replica_id: str
    service: str
    version: str
    running: bool
    endpoint: str | None = None  # base URL for readiness checks


@dataclass(frozen=True)
class JobSpec:
    name: str
    target: str
    image: str
    command: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)


class JobHandle(Protocol):
    def poll(self) -> str:
        """Return "running", "succeeded" or "failed"."""

    def cancel(self) -> None:
        ...


class Orchestrator(Protocol):
    """What the controller needs from the container runtime."""

    def set_replicas(self, service: str, count: int) -> None:
        """Converge to ``count`` replicas: new ones use the current image
        version, surplus ones are removed newest first."""

    def set_image_version(self, service: str, version: str) -> None:
        ...

    def remove_replica(self, service: str, replica_id: str) -> None:
        ...

    def get_replica_status(self, service: str) -> list[ReplicaStatus]:
        ...

    def trigger_job(self, spec: JobSpec) -> JobHandle:
        ...


class DockerJobHandle:
    def __init__(self, client: docker.DockerClient, container_id: str):
        self._client = client
        self.container_id = container_id

    def poll(self) -> str:
        try:
            cont = self._client.containers.get(self.container_id)
            cont.reload()
        except NotFound:
            return "failed"
        except DockerException as e:
            raise OrchestratorError(f"Cannot inspect job container: {e}") from e
        if cont.status in {"created", "running", "restarting"}:
            return "running"
        exit_code = cont.attrs.get("State", {}).get("ExitCode")
        return "succeeded" if exit_code == 0 else "failed"

    def cancel(self) -> None:
        try:
            self._client.containers.get(self.container_id).remove(force=True)
        except NotFound:
            return
        except DockerException as e:
            raise OrchestratorError(f"Cannot remove job container: {e}") from e


class DockerOrchestrator:
    """Orchestrator backed by the local Docker daemon.

    Containers are labeled so they can be re-discovered after a controller
    restart; the ``slc.seq`` label records creation order.
    """

    def __init__(self, config: "AppConfig", network: str | None = None):
        self.config = config
        self.network = network or settings.docker_network
        self._lock = Lock()
        self._versions: dict[str, str] = {name: svc.version for name, svc in config.services.items()}
        self._client: docker.DockerClient | None = None

    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise OrchestratorError(f"Docker is not available: {e}") from e
        return self._client

    def ensure_network(self) -> None:
        c = self.client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")
        except DockerException as e:
            raise OrchestratorError(f"Cannot prepare docker network: {e}") from e

    def set_image_version(self, service: str, version: str) -> None:
        self._service(service)
        with self._lock:
            self._versions[service] = version

    def set_replicas(self, service: str, count: int) -> None:
        svc = self._service(service)
        with self._lock:
            version = self._versions[service]
        running = self._containers(service)
        try:
            self._prune_exited(service)
            extra = len(running) - count
            if extra > 0:
                for cont in list(reversed(running))[:extra]:
                    cont.remove(force=True)
                return
            for _ in range(-extra):
                self._run_replica(service, version, svc.image, svc.env)
        except DockerException as e:
            raise OrchestratorError(f"set_replicas({service}, {count}) failed: {e}") from e

    def remove_replica(self, service: str, replica_id: str) -> None:
        self._service(service)
        try:
            cont = self.client().containers.get(replica_id)
            if cont.labels.get("slc.service") != service:
                raise OrchestratorError(f"Container {replica_id} does not belong to '{service}'.")
            cont.remove(force=True)
        except NotFound:
            return
        except DockerException as e:
            raise OrchestratorError(f"remove_replica({service}, {replica_id}) failed: {e}") from e

    def get_replica_status(self, service: str) -> list[ReplicaStatus]:
        svc = self._service(service)
        out: list[ReplicaStatus] = []
        for cont in self._containers(service):
            out.append(
                ReplicaStatus(
                    replica_id=cont.name,
                    service=service,
                    version=cont.labels.get("slc.version", ""),
                    running=cont.status == "running",
                    endpoint=f"http://{cont.name}:{int(svc.port)}",
                )
            )
        return out

    def trigger_job(self, spec: JobSpec) -> DockerJobHandle:
        self._service(spec.target)
        self.ensure_network()
        name = f"slc-job-{spec.name}-{secrets.token_hex(3)}"
        try:
            cont = self.client().containers.run(
                spec.image,
                command=list(spec.command) or None,
                detach=True,
                name=name,
                environment={"SLC_BACKUP_TARGET": spec.target, **spec.env},
                network=self.network,
                labels={"slc.job": spec.name, "slc.target": spec.target},
            )
        except DockerException as e:
            raise OrchestratorError(f"Cannot start backup job '{spec.name}': {e}") from e
        return DockerJobHandle(self.client(), cont.id)

    def _run_replica(self, service: str, version: str, image: str, env: dict[str, str]) -> None:
        self.ensure_network()
        name = f"slc-{service}-{version}-{secrets.token_hex(3)}".replace(".", "-")
        self.client().containers.run(
            f"{image}:{version}",
            detach=True,
            name=name,
            environment=dict(env),
            network=self.network,
            labels={"slc.service": service, "slc.version": version, "slc.seq": str(time.time_ns())},
            # Replacement is the controller's job; keep Docker's restart policy out of it.
            restart_policy={"Name": "no"},
        )

    def _prune_exited(self, service: str) -> None:
        # Replicas never restart, so a stopped one is gone for good.
        for cont in self._containers(service, include_stopped=True):
            if cont.status != "running":
                cont.remove(force=True)

    def _containers(self, service: str, include_stopped: bool = False) -> list[Any]:
        try:
            found = self.client().containers.list(all=include_stopped, filters={"label": [f"slc.service={service}"]})
        except DockerException as e:
            raise OrchestratorError(f"Cannot list containers for '{service}': {e}") from e
        return sorted(found, key=lambda c: int(c.labels.get("slc.seq", "0")))

    def _service(self, service: str):
        svc = self.config.services.get(service)
        if svc is None:
            raise UnknownService(service)
        return svc
