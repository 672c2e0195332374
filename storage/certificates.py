"""Certificate-eligibility signals, at most one per session."""
from __future__ import annotations

from typing import Optional

from engine.types import CertificateSignal

from .sqlite import connect, to_iso


class CertificateStore:  # Records signals for an external certificate issuer
    def __init__(self, db_path: str) -> None:
        self._path = db_path

    def signal(self, signal: CertificateSignal) -> None:
        with connect(self._path) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO certificate_signals
                  (session_id, user_id, assignment_id, score, max_score, signaled_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    signal.session_id,
                    signal.user_id,
                    signal.assignment_id,
                    signal.score,
                    signal.max_score,
                    to_iso(signal.signaled_at),
                ),
            )

    def get(self, session_id: str) -> Optional[CertificateSignal]:
        with connect(self._path) as conn:
            row = conn.execute("SELECT * FROM certificate_signals WHERE session_id = ?", (session_id,)).fetchone()
        if row is None:
            return None
        return CertificateSignal(
            session_id=row["session_id"],
            user_id=row["user_id"],
            assignment_id=row["assignment_id"],
            score=row["score"],
            max_score=row["max_score"],
            signaled_at=row["signaled_at"],
        )


__all__ = ["CertificateStore"]
