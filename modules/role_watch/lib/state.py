from __future__ import annotations

import contextlib
import os
import sqlite3

from .errors import StateReadError, StateWriteError
from .models import MarkerState
from .utils import now_iso

DEFAULT_STATE_KEY = "last_sent_data"

# ---- Public API -------------------------------------------------------------


def init_db(sqlite_path: str) -> None:
    """
    Ensure the SQLite database and schema exist.
    Safe to call multiple times.
    """
    _ensure_dir(sqlite_path)
    with contextlib.closing(_connect(sqlite_path)) as conn:
        _apply_pragmas(conn)
        _ensure_schema(conn)


def get_state(sqlite_path: str, key: str = DEFAULT_STATE_KEY) -> MarkerState | None:
    """
    Return the stored marker for `key`, or None if nothing was stored yet.

    Raises:
        StateReadError if the database cannot be read or the stored value is corrupt.
    """
    if not os.path.exists(sqlite_path):
        return None
    try:
        with contextlib.closing(_connect(sqlite_path)) as conn:
            _apply_pragmas(conn)
            _ensure_schema(conn)
            row = conn.execute("SELECT value FROM marker_state WHERE key = ?", (key,)).fetchone()
    except sqlite3.Error as e:
        raise StateReadError(f"Failed to read state {key!r} from {sqlite_path}: {e}") from e

    if row is None:
        return None
    try:
        return MarkerState.from_json(row[0])
    except (ValueError, TypeError) as e:
        raise StateReadError(f"Stored state {key!r} is not valid: {e}") from e


def put_state(sqlite_path: str, key: str, state: MarkerState) -> None:
    """
    Insert or overwrite the marker for `key`.

    Raises:
        StateWriteError on any database failure.
    """
    try:
        init_db(sqlite_path)
        with contextlib.closing(_connect(sqlite_path)) as conn:
            _apply_pragmas(conn)
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute(
                """
                INSERT INTO marker_state (key, value, updated_utc)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_utc = excluded.updated_utc
                """,
                (key, state.to_json(), now_iso()),
            )
            conn.commit()
    except (sqlite3.Error, OSError) as e:
        raise StateWriteError(f"Failed to store state {key!r} in {sqlite_path}: {e}") from e


# ---- Nice-to-have helpers for tests & diagnostics --------------------------


def list_keys(sqlite_path: str) -> list[str]:
    """Return all stored keys; [] if DB missing/empty."""
    if not os.path.exists(sqlite_path):
        return []
    with contextlib.closing(_connect(sqlite_path)) as conn:
        _apply_pragmas(conn)
        _ensure_schema(conn)
        rows = conn.execute("SELECT key FROM marker_state ORDER BY key").fetchall()
    return [r[0] for r in rows]


def reset_db(sqlite_path: str) -> None:
    """
    Remove the DB file entirely (for pytest fixtures).
    Safe if it doesn't exist.
    """
    for suffix in ("", "-wal", "-shm"):
        with contextlib.suppress(FileNotFoundError):
            os.remove(sqlite_path + suffix)


# ---- Internal utilities -----------------------------------------------------


def _ensure_dir(sqlite_path: str) -> None:
    d = os.path.dirname(os.path.abspath(sqlite_path)) or "."
    os.makedirs(d, exist_ok=True)


def _connect(sqlite_path: str) -> sqlite3.Connection:
    # isolation_level=None gives autocommit mode; we'll manage transactions explicitly.
    return sqlite3.connect(sqlite_path, timeout=30.0, isolation_level=None)


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS marker_state (
          key   TEXT PRIMARY KEY,
          value TEXT NOT NULL,
          updated_utc TEXT NOT NULL
        );
        """
    )
