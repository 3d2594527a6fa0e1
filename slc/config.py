"""Declarative topology configuration.

Loaded once at startup from YAML and frozen for the controller's lifetime::

    services:
      db:
        image: postgres
        version: "16"
        port: 5432
        replicas: 1
        min_replicas: 1
        max_replicas: 1
      backend:
        image: registry.local/backend
        version: v1
        port: 8000
        depends_on: [db]
        replicas: 3
        max_replicas: 6
    backups:
      - name: nightly
        target: db
        schedule: "0 3 * * *"
        image: registry.local/pg-snapshot:latest
"""
from __future__ import annotations

import re
from typing import Any

import yaml
from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .graph import DependencyGraph
from .settings import settings

SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
VERSION_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-\._]{0,63}$")


def validate_service_name(name: str) -> str:
    if not SERVICE_NAME_RE.match(name):
        raise ValueError(
            "Invalid service name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )
    return name


def validate_version(version: str) -> str:
    if not VERSION_RE.match(version):
        raise ValueError("Invalid version string. Use letters/numbers and -._ (max 64 chars).")
    return version


def validate_health_path(path: str) -> str:
    # Keep it a path, not a URL, so probes only ever hit the service itself.
    if not path.startswith("/"):
        raise ValueError("health_path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health_path must be a simple absolute path (no scheme, no '..').")
    return path


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class HealthCheckConfig(_Frozen):
    path: str = "/health"
    healthy_threshold: int = Field(3, ge=1, le=100, description="Consecutive successes before Healthy")
    unhealthy_threshold: int = Field(2, ge=1, le=100, description="Consecutive failures before Unhealthy")
    timeout_s: float = Field(default_factory=lambda: settings.probe_timeout_s, gt=0, le=60)

    @field_validator("path")
    @classmethod
    def _path(cls, v: str) -> str:
        return validate_health_path(v)


class RolloutConfig(_Frozen):
    batch_size: int = Field(1, ge=1, le=100)
    batch_timeout_s: float = Field(60.0, gt=0, le=3600)


class ServiceConfig(_Frozen):
    image: str
    version: str
    port: int = Field(80, ge=1, le=65535)
    depends_on: tuple[str, ...] = ()
    replicas: int = Field(1, ge=0, le=100)
    min_replicas: int = Field(1, ge=0, le=100)
    max_replicas: int = Field(10, ge=1, le=100)
    startup_timeout_s: float = Field(120.0, gt=0, le=3600)
    env: dict[str, str] = Field(default_factory=dict)
    health: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    rollout: RolloutConfig = Field(default_factory=RolloutConfig)

    @field_validator("version")
    @classmethod
    def _version(cls, v: str) -> str:
        return validate_version(v)

    @model_validator(mode="after")
    def _bounds(self) -> "ServiceConfig":
        if not (self.min_replicas <= self.replicas <= self.max_replicas):
            raise ValueError(
                f"replicas must satisfy min_replicas <= replicas <= max_replicas "
                f"(got {self.min_replicas} <= {self.replicas} <= {self.max_replicas})"
            )
        return self


class BackupConfig(_Frozen):
    name: str
    target: str
    schedule: str = Field(..., description="5-field cron expression")
    image: str
    command: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)
    timeout_s: float = Field(1800.0, gt=0, le=24 * 3600)

    @field_validator("schedule")
    @classmethod
    def _schedule(cls, v: str) -> str:
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v!r}")
        return v


class AppConfig(_Frozen):
    services: dict[str, ServiceConfig]
    backups: tuple[BackupConfig, ...] = ()

    @model_validator(mode="after")
    def _references(self) -> "AppConfig":
        for name, svc in self.services.items():
            validate_service_name(name)
            for dep in svc.depends_on:
                if dep not in self.services:
                    raise ValueError(f"Service '{name}' depends on unknown service '{dep}'.")
                if dep == name:
                    raise ValueError(f"Service '{name}' depends on itself.")
        seen: set[str] = set()
        for job in self.backups:
            if job.target not in self.services:
                raise ValueError(f"Backup '{job.name}' targets unknown service '{job.target}'.")
            if job.name in seen:
                raise ValueError(f"Duplicate backup job name '{job.name}'.")
            seen.add(job.name)
        return self

    def graph(self) -> DependencyGraph:
        return DependencyGraph({name: svc.depends_on for name, svc in self.services.items()})


def parse_config(data: dict[str, Any]) -> AppConfig:
    """Validate a config mapping; raises ConfigError (or CycleError)."""
    try:
        cfg = AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
    # Build the graph once so a cycle fails the load, not the first start.
    cfg.graph()
    return cfg


def load_config(path: str) -> AppConfig:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path!r}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path!r}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path!r} must contain a mapping at the top level.")
    return parse_config(data)
