"""SQLite backed storage for the Telegram session."""

from __future__ import annotations

import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path

DEFAULT_SESSION_PATH = Path("first.session")

_DB_PRAGMA = "PRAGMA journal_mode=WAL;" "PRAGMA synchronous=NORMAL;"
_SESSION_KEY = "state.session"
_SAVED_AT_KEY = "state.session.saved_at"


class SessionStore:
    """Persisted session blob plus a few bookkeeping settings."""

    def __init__(self, path: Path):
        self._path = path
        self._conn = sqlite3.connect(self._path)
        self._conn.row_factory = sqlite3.Row
        self._setup()

    # ------------------------------------------------------------------
    # Schema initialisation
    # ------------------------------------------------------------------
    def _setup(self) -> None:
        with closing(self._conn.cursor()) as cur:
            for statement in _DB_PRAGMA.split(";"):
                if statement.strip():
                    cur.execute(statement)
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Basic settings
    # ------------------------------------------------------------------
    def set_setting(self, key: str, value: str) -> None:
        with closing(self._conn.cursor()) as cur:
            cur.execute(
                "INSERT INTO settings(key, value) VALUES(?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )
            self._conn.commit()

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        with closing(self._conn.cursor()) as cur:
            cur.execute("SELECT value FROM settings WHERE key=?", (key,))
            row = cur.fetchone()
        return row["value"] if row else default

    # ------------------------------------------------------------------
    # Session blob
    # ------------------------------------------------------------------
    def load_session(self) -> str | None:
        value = self.get_setting(_SESSION_KEY)
        return value or None

    def save_session(self, blob: str) -> None:
        self.set_setting(_SESSION_KEY, blob)
        self.set_setting(_SAVED_AT_KEY, datetime.now(timezone.utc).isoformat())

    def session_saved_at(self) -> datetime | None:
        value = self.get_setting(_SAVED_AT_KEY)
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None

    def close(self) -> None:
        self._conn.close()
