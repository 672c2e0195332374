"""SQLite helpers for the persistence layer."""
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from engine.clock import as_utc


@contextmanager
def connect(db_path: str, *, isolation_level: Optional[str] = "DEFERRED") -> Iterator[sqlite3.Connection]:
    """Yield a SQLite connection, ensuring the data directory exists.

    Commits on a clean exit and rolls back when the block raises.
    ``isolation_level=None`` hands transaction control to the caller.
    """

    directory = os.path.dirname(db_path) or "."
    os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=isolation_level)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except BaseException:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """UTC ISO-8601 text with a fixed width so stored timestamps sort lexically."""

    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


__all__ = ["connect", "to_iso"]
