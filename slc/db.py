from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist on the host shows up as a
    directory inside the container; in that case the DB file goes inside it.
    """
    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "slc.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              version TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS backup_jobs (
              name TEXT PRIMARY KEY,
              target TEXT NOT NULL,
              schedule TEXT NOT NULL,
              last_run TEXT,
              last_outcome TEXT, -- success|failure|pending
              last_message TEXT,
              updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None, version: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, version, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, version, message),
        )


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_name=? ORDER BY id DESC LIMIT ?",
                (service_name, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


@dataclass(frozen=True)
class BackupJobRow:
    name: str
    target: str
    schedule: str
    last_run: str | None
    last_outcome: str | None
    last_message: str | None
    updated_at: str


class SqliteJobStore:
    """Backup job state that survives controller restarts."""

    def load(self, name: str) -> BackupJobRow | None:
        with connect() as conn:
            row = conn.execute("SELECT * FROM backup_jobs WHERE name=?", (name,)).fetchone()
            return BackupJobRow(**dict(row)) if row else None

    def save(
        self,
        name: str,
        target: str,
        schedule: str,
        last_run: str | None,
        last_outcome: str | None,
        last_message: str | None,
    ) -> None:
        with connect() as conn:
            conn.execute(
                """
                INSERT INTO backup_jobs (name, target, schedule, last_run, last_outcome, last_message, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                  target=excluded.target,
                  schedule=excluded.schedule,
                  last_run=excluded.last_run,
                  last_outcome=excluded.last_outcome,
                  last_message=excluded.last_message,
                  updated_at=excluded.updated_at
                """,
                (name, target, schedule, last_run, last_outcome, last_message, utc_now()),
            )
