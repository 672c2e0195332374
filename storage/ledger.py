"""Append-only credit ledger persistence."""
from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import List, Optional

from engine.types import LedgerEntry

from .sqlite import connect, to_iso

_INSERT = """
INSERT INTO credit_ledger
  (id, user_id, transaction_type, credits, balance_after, description,
   source_ref, interview_session_id, expires_at, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        user_id=row["user_id"],
        transaction_type=row["transaction_type"],
        credits=row["credits"],
        balance_after=row["balance_after"],
        description=row["description"],
        source_ref=row["source_ref"],
        interview_session_id=row["interview_session_id"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


def _params(entry: LedgerEntry) -> tuple:
    return (
        entry.id,
        entry.user_id,
        entry.transaction_type,
        entry.credits,
        entry.balance_after,
        entry.description,
        entry.source_ref,
        entry.interview_session_id,
        to_iso(entry.expires_at),
        to_iso(entry.created_at),
    )


class LedgerStore:  # Rows are only ever inserted
    def __init__(self, db_path: str) -> None:
        self._path = db_path

    @staticmethod
    def _sum(conn: sqlite3.Connection, user_id: str, now: datetime) -> int:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(credits), 0) AS total
            FROM credit_ledger
            WHERE user_id = ? AND (expires_at IS NULL OR expires_at > ?)
            """,
            (user_id, to_iso(now)),
        ).fetchone()
        return int(row["total"])

    def entries(self, user_id: str) -> List[LedgerEntry]:  # Newest first
        with connect(self._path) as conn:
            rows = conn.execute(
                "SELECT * FROM credit_ledger WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        return [_entry(row) for row in rows]

    def get(self, entry_id: str) -> Optional[LedgerEntry]:
        with connect(self._path) as conn:
            row = conn.execute("SELECT * FROM credit_ledger WHERE id = ?", (entry_id,)).fetchone()
        return _entry(row) if row else None

    def available_sum(self, user_id: str, now: datetime) -> int:
        """Raw sum of non-expired credits; may be negative."""

        with connect(self._path) as conn:
            return self._sum(conn, user_id, now)

    def _locked_balance(self, conn: sqlite3.Connection, user_id: str, now: datetime) -> int:
        conn.execute("BEGIN IMMEDIATE")
        return max(0, self._sum(conn, user_id, now))

    def append(self, entry: LedgerEntry, now: datetime) -> LedgerEntry:
        """Insert a credit with ``balance_after`` read inside the same write transaction."""

        with connect(self._path, isolation_level=None) as conn:
            available = self._locked_balance(conn, entry.user_id, now)
            stored = entry.model_copy(update={"balance_after": available + entry.credits})
            conn.execute(_INSERT, _params(stored))
            conn.execute("COMMIT")
        return stored

    def append_debit(self, entry: LedgerEntry, now: datetime) -> Optional[LedgerEntry]:
        """Insert a negative entry only if the balance covers it.

        The read and the insert share one ``BEGIN IMMEDIATE`` transaction, so a
        second writer waits on the database lock and then sees this debit.
        Returns ``None`` when the balance is too low.
        """

        with connect(self._path, isolation_level=None) as conn:
            available = self._locked_balance(conn, entry.user_id, now)
            if available + entry.credits < 0:
                conn.execute("ROLLBACK")
                return None
            stored = entry.model_copy(update={"balance_after": available + entry.credits})
            conn.execute(_INSERT, _params(stored))
            conn.execute("COMMIT")
        return stored


__all__ = ["LedgerStore"]
