from __future__ import annotations

import os
import sqlite3
from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any

from .models import utc_now


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If a bind-mounted *file* path does not exist, Docker creates a *directory*
    at that location and sqlite then fails with "unable to open database
    file". When the configured path is a directory, the DB lives inside it.
    """
    p = os.path.abspath(path)

    if os.path.isdir(p):
        p = os.path.join(p, "events.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


@dataclass(frozen=True)
class EventRow:
    id: int
    ts: str
    level: str
    domain: str | None
    container: str | None
    message: str


class EventJournal:
    """Append-only record of what the reconciler did and why."""

    def __init__(self, path: str, keep: int = 1000):
        self.path = _resolve_db_path(path)
        self.keep = max(1, int(keep))
        self._lock = Lock()

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def init(self) -> None:
        """Create tables if they do not exist."""
        with self._lock, self.connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  level TEXT NOT NULL,
                  domain TEXT,
                  container TEXT,
                  message TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
                CREATE INDEX IF NOT EXISTS idx_events_domain ON events(domain);
                """
            )

    def record(self, level: str, message: str, domain: str | None = None, container: str | None = None) -> None:
        with self._lock, self.connect() as conn:
            cur = conn.execute(
                "INSERT INTO events (ts, level, domain, container, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level.upper(), domain, container, message),
            )
            # Trim old rows so a long-running dev box doesn't grow the file forever.
            conn.execute("DELETE FROM events WHERE id <= ?", (cur.lastrowid - self.keep,))

    def latest(self, limit: int = 100, domain: str | None = None) -> list[EventRow]:
        with self.connect() as conn:
            if domain:
                rows = conn.execute(
                    "SELECT * FROM events WHERE domain=? ORDER BY id DESC LIMIT ?",
                    (domain.lower(), limit),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [EventRow(**dict(r)) for r in rows]

    def latest_dicts(self, limit: int = 100, domain: str | None = None) -> list[dict[str, Any]]:
        return [asdict(r) for r in self.latest(limit, domain)]
