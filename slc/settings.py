from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("SLC_DB_PATH", "slc.db")
    config_path: str = os.getenv("SLC_CONFIG_PATH", "slc.yaml")
    docker_network: str = os.getenv("SLC_DOCKER_NETWORK", "slc")

    # Loops
    probe_interval_s: float = _env_float("SLC_PROBE_INTERVAL_S", 2.0)
    probe_timeout_s: float = _env_float("SLC_PROBE_TIMEOUT_S", 2.0)
    backup_tick_s: int = _env_int("SLC_BACKUP_TICK_S", 30)
    job_poll_interval_s: float = _env_float("SLC_JOB_POLL_INTERVAL_S", 5.0)

    # Email alerting (optional)
    enable_email: bool = _env_bool("SLC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("SLC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("SLC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("SLC_SMTP_USER")
    smtp_password: str | None = os.getenv("SLC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("SLC_EMAIL_FROM")
    email_to: str | None = os.getenv("SLC_EMAIL_TO")


settings = Settings()
