from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from threading import Event, Thread
from typing import Callable, Mapping

import httpx

from . import alerts, db
from .config import HealthCheckConfig
from .errors import OrchestratorError, UnknownService
from .orchestrator import Orchestrator, ReplicaStatus
from .registry import HealthStatus, Replica, ServiceRecord, ServiceRegistry
from .settings import settings

ReadinessCheck = Callable[[str, ReplicaStatus], bool]


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call a service health endpoint.

    Expected JSON: {"status": "healthy"}.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return False, "Invalid JSON", latency_ms
        if isinstance(data, dict) and data.get("status") == "healthy":
            return True, "Healthy", latency_ms
        return False, f"Unhealthy payload: {data!r}", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


def debounce(replica: Replica, ok: bool, healthy_threshold: int, unhealthy_threshold: int) -> bool:
    """Feed one probe result into a replica; returns True if its health changed."""
    if ok:
        replica.successes += 1
        replica.failures = 0
        if replica.health is not HealthStatus.HEALTHY and replica.successes >= healthy_threshold:
            replica.health = HealthStatus.HEALTHY
            return True
        return False
    replica.failures += 1
    replica.successes = 0
    if replica.health is not HealthStatus.UNHEALTHY and replica.failures >= unhealthy_threshold:
        replica.health = HealthStatus.UNHEALTHY
        return True
    return False


class HealthProber:
    """Polls every replica's readiness endpoint and keeps registry health current.

    A failed probe is a failed probe: timeouts, refused connections, bad
    status codes and stopped containers all count the same. The prober only
    writes health; it never starts or stops anything.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        orchestrator: Orchestrator,
        checks: Mapping[str, HealthCheckConfig] | None = None,
        check: ReadinessCheck | None = None,
        interval_s: float | None = None,
    ):
        self.registry = registry
        self.orchestrator = orchestrator
        self.checks = dict(checks or {})
        self.check = check or self._http_check
        self.interval_s = interval_s if interval_s is not None else settings.probe_interval_s
        self._stop = Event()
        self._thr: Thread | None = None

    def config_for(self, service: str) -> HealthCheckConfig:
        return self.checks.get(service) or HealthCheckConfig()

    def _http_check(self, service: str, replica: ReplicaStatus) -> bool:
        if not replica.running or not replica.endpoint:
            return False
        cfg = self.config_for(service)
        ok, _, _ = check_health(f"{replica.endpoint}{cfg.path}", timeout_s=cfg.timeout_s)
        return ok

    def probe(self, service: str) -> HealthStatus:
        cfg = self.config_for(service)
        before = self.registry.get(service)
        epoch = self.registry.epoch(service)

        try:
            statuses = self.orchestrator.get_replica_status(service)
        except OrchestratorError as e:
            # Cannot see the replicas: every known one failed this round.
            results = {r.id: False for r in before.replicas}
            db.log_event("WARN", f"Probe could not list replicas: {e}", service_name=service)
        else:
            self.registry.sync_replicas(service, statuses, skip_if_busy=True, epoch=epoch)
            results = {}
            for st in statuses:
                try:
                    results[st.replica_id] = bool(self.check(service, st))
                except Exception as e:  # noqa: BLE001 - any failure is just a failed probe
                    db.log_event("WARN", f"Readiness check error on {st.replica_id}: {type(e).__name__}: {e}", service_name=service)
                    results[st.replica_id] = False

        def apply(rec: ServiceRecord) -> None:
            for r in rec.replicas:
                if r.id in results:
                    debounce(r, results[r.id], cfg.healthy_threshold, cfg.unhealthy_threshold)

        self.registry.mutate(service, apply)
        after = self.registry.get(service)
        self._report_transition(before, after)
        return after.health

    def _report_transition(self, before: ServiceRecord, after: ServiceRecord) -> None:
        if before.health == after.health or after.health is HealthStatus.UNKNOWN:
            return
        healthy = after.health is HealthStatus.HEALTHY
        if healthy:
            db.log_event("INFO", "Service became healthy", service_name=after.name, version=after.version)
        else:
            db.log_event(
                "WARN",
                f"Service became unhealthy ({after.available_replicas}/{after.current_replicas} replicas healthy)",
                service_name=after.name,
                version=after.version,
            )
        # First settle from unknown is not worth an email.
        if before.health is not HealthStatus.UNKNOWN:
            alerts.alert_health(after.name, after.version, healthy, f"{after.available_replicas}/{after.current_replicas} replicas healthy")

    def probe_all(self) -> dict[str, HealthStatus]:
        names = self.registry.names()
        if not names:
            return {}
        with ThreadPoolExecutor(max_workers=len(names)) as pool:
            futures = {name: pool.submit(self.probe, name) for name in names}
        out: dict[str, HealthStatus] = {}
        for name, fut in futures.items():
            try:
                out[name] = fut.result()
            except UnknownService:
                continue
            except Exception as e:  # noqa: BLE001 - one service must not stop the loop
                db.log_event("ERROR", f"Probe failed: {type(e).__name__}: {e}", service_name=name)
        return out

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="slc-prober", daemon=True)
        self._thr.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thr:
            self._thr.join(timeout)

    def _loop(self) -> None:
        db.log_event("INFO", "Health prober started")
        while not self._stop.is_set():
            self.probe_all()
            self._stop.wait(max(0.01, self.interval_s))
