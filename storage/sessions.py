"""Session and answer persistence with optimistic versioning."""
from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from engine.errors import AnswerAlreadyRecorded, StaleSubmission
from engine.interfaces import ActiveSessionConflict
from engine.types import Answer, AttemptHistory, SelectionCriteria, Session, SessionKind, SessionRules

from .sqlite import connect, to_iso

_MUTABLE_COLUMNS = (
    "status",
    "current_question_index",
    "paused_at",
    "submitted_at",
    "finished_at",
    "active_since",
    "total_time_sec",
    "question_started_sec",
    "total_score",
    "max_score",
    "completion_reason",
    "certificate_signaled",
)


def _row_values(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "assignment_id": session.assignment_id,
        "template_id": session.template_id,
        "kind": session.kind,
        "status": session.status,
        "rules_json": session.rules.model_dump_json(),
        "selection_json": session.selection.model_dump_json(),
        "question_ids_json": json.dumps(session.question_ids),
        "current_question_index": session.current_question_index,
        "shortfall_json": json.dumps(session.shortfall),
        "started_at": to_iso(session.started_at),
        "paused_at": to_iso(session.paused_at),
        "submitted_at": to_iso(session.submitted_at),
        "finished_at": to_iso(session.finished_at),
        "active_since": to_iso(session.active_since),
        "total_time_sec": session.total_time_sec,
        "question_started_sec": session.question_started_sec,
        "total_score": session.total_score,
        "max_score": session.max_score,
        "completion_reason": session.completion_reason,
        "attempt_number": session.attempt_number,
        "parent_session_id": session.parent_session_id,
        "credit_entry_id": session.credit_entry_id,
        "certificate_signaled": int(session.certificate_signaled),
        "version": session.version,
    }


def _answer(row: sqlite3.Row) -> Answer:
    return Answer(
        id=row["id"],
        session_id=row["session_id"],
        question_id=row["question_id"],
        question_type=row["question_type"],
        selected_option_ids=json.loads(row["selected_option_ids"]),
        given_text=row["given_text"],
        is_correct=None if row["is_correct"] is None else bool(row["is_correct"]),
        score=row["score"],
        match_percent=row["match_percent"],
        time_spent_sec=row["time_spent_sec"],
        answered_at=row["answered_at"],
    )


def _session(row: sqlite3.Row, answers: List[Answer]) -> Session:
    return Session(
        id=row["id"],
        user_id=row["user_id"],
        assignment_id=row["assignment_id"],
        template_id=row["template_id"],
        kind=row["kind"],
        status=row["status"],
        rules=SessionRules.model_validate_json(row["rules_json"]),
        selection=SelectionCriteria.model_validate_json(row["selection_json"]),
        question_ids=json.loads(row["question_ids_json"]),
        current_question_index=row["current_question_index"],
        shortfall=json.loads(row["shortfall_json"]),
        started_at=row["started_at"],
        paused_at=row["paused_at"],
        submitted_at=row["submitted_at"],
        finished_at=row["finished_at"],
        active_since=row["active_since"],
        total_time_sec=row["total_time_sec"],
        question_started_sec=row["question_started_sec"],
        total_score=row["total_score"],
        max_score=row["max_score"],
        completion_reason=row["completion_reason"],
        attempt_number=row["attempt_number"],
        parent_session_id=row["parent_session_id"],
        credit_entry_id=row["credit_entry_id"],
        certificate_signaled=bool(row["certificate_signaled"]),
        version=row["version"],
        answers=answers,
    )


class SessionStore:  # SQLite-backed sessions and answers
    def __init__(self, db_path: str) -> None:
        self._path = db_path

    def _answers(self, conn: sqlite3.Connection, session_ids: List[str]) -> Dict[str, List[Answer]]:
        grouped: Dict[str, List[Answer]] = {session_id: [] for session_id in session_ids}
        if not session_ids:
            return grouped
        marks = ",".join("?" for _ in session_ids)
        rows = conn.execute(
            f"SELECT * FROM answers WHERE session_id IN ({marks}) ORDER BY answered_at, rowid",
            session_ids,
        ).fetchall()
        for row in rows:
            grouped[row["session_id"]].append(_answer(row))
        return grouped

    def _load_many(self, conn: sqlite3.Connection, sql: str, params: Tuple[Any, ...]) -> List[Session]:
        rows = conn.execute(sql, params).fetchall()
        answers = self._answers(conn, [row["id"] for row in rows])
        return [_session(row, answers[row["id"]]) for row in rows]

    def create(self, session: Session) -> Session:
        values = _row_values(session)
        columns = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        try:
            with connect(self._path) as conn:
                conn.execute(f"INSERT INTO sessions ({columns}) VALUES ({marks})", list(values.values()))
        except sqlite3.IntegrityError as exc:
            if "sessions.user_id" in str(exc) or "ux_sessions_one_active" in str(exc):
                raise ActiveSessionConflict(f"user {session.user_id} already has an active session") from exc
            raise
        return session

    def get(self, session_id: str) -> Optional[Session]:
        with connect(self._path) as conn:
            found = self._load_many(conn, "SELECT * FROM sessions WHERE id = ?", (session_id,))
        return found[0] if found else None

    def _write(self, conn: sqlite3.Connection, session: Session) -> None:
        values = _row_values(session)
        assignments = ", ".join(f"{column} = ?" for column in _MUTABLE_COLUMNS)
        cur = conn.execute(
            f"UPDATE sessions SET {assignments}, version = version + 1 WHERE id = ? AND version = ?",
            [values[column] for column in _MUTABLE_COLUMNS] + [session.id, session.version],
        )
        if cur.rowcount != 1:
            raise StaleSubmission(
                "session was modified concurrently",
                session_id=session.id,
                version=session.version,
            )

    def update(self, session: Session) -> Session:
        """Write mutable fields if ``session.version`` is still current."""

        with connect(self._path) as conn:
            self._write(conn, session)
        return session.model_copy(update={"version": session.version + 1})

    def save_answer(self, session: Session, answer: Answer, *, overwrite: bool = False) -> Session:
        """Persist an answer and the session cursor in one transaction."""

        params = (
            answer.id,
            answer.session_id,
            answer.question_id,
            answer.question_type,
            json.dumps(answer.selected_option_ids),
            answer.given_text,
            None if answer.is_correct is None else int(answer.is_correct),
            answer.score,
            answer.match_percent,
            answer.time_spent_sec,
            to_iso(answer.answered_at),
        )
        insert = """
            INSERT INTO answers
              (id, session_id, question_id, question_type, selected_option_ids, given_text,
               is_correct, score, match_percent, time_spent_sec, answered_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        if overwrite:
            insert += """
            ON CONFLICT(session_id, question_id) DO UPDATE SET
              selected_option_ids = excluded.selected_option_ids,
              given_text = excluded.given_text,
              is_correct = excluded.is_correct,
              score = excluded.score,
              match_percent = excluded.match_percent,
              time_spent_sec = excluded.time_spent_sec,
              answered_at = excluded.answered_at
            """
        try:
            with connect(self._path) as conn:
                conn.execute(insert, params)
                self._write(conn, session)
        except sqlite3.IntegrityError as exc:
            raise AnswerAlreadyRecorded(
                "question was already answered",
                question_id=answer.question_id,
            ) from exc
        stored = self.get(session.id)
        if stored is None:
            raise StaleSubmission("session was removed while saving the answer", session_id=session.id)
        return stored

    def find_active(self, user_id: str, assignment_id: int) -> Optional[Session]:
        with connect(self._path) as conn:
            found = self._load_many(
                conn,
                """
                SELECT * FROM sessions
                WHERE user_id = ? AND assignment_id = ? AND status IN ('in_progress', 'paused')
                """,
                (user_id, assignment_id),
            )
        return found[0] if found else None

    def attempt_history(self, user_id: str, assignment_id: int) -> AttemptHistory:
        with connect(self._path) as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS completed, MAX(finished_at) AS last_finished
                FROM sessions
                WHERE user_id = ? AND assignment_id = ? AND status = 'completed'
                """,
                (user_id, assignment_id),
            ).fetchone()
        return AttemptHistory(completed_count=row["completed"], last_finished_at=row["last_finished"])

    def answered_question_ids(self, user_id: str, kind: SessionKind, since: datetime) -> Set[str]:
        with connect(self._path) as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT a.question_id
                FROM answers a JOIN sessions s ON s.id = a.session_id
                WHERE s.user_id = ? AND s.kind = ? AND a.answered_at >= ?
                """,
                (user_id, kind, to_iso(since)),
            ).fetchall()
        return {row["question_id"] for row in rows}

    def list_for_user(self, user_id: str) -> List[Session]:  # Newest first
        with connect(self._path) as conn:
            return self._load_many(
                conn,
                "SELECT * FROM sessions WHERE user_id = ? ORDER BY started_at DESC, rowid DESC",
                (user_id,),
            )


__all__ = ["SessionStore"]
