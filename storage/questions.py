"""Question bank read access for the selector plus a seeding helper."""
from __future__ import annotations

import sqlite3
from typing import Dict, Iterable, List, Optional, Sequence

from engine.types import Level, Question, QuestionOption, QuestionType, SessionKind

from .sqlite import connect


class QuestionPoolStore:  # SQLite-backed question pool
    def __init__(self, db_path: str) -> None:
        self._path = db_path

    def _options(self, conn: sqlite3.Connection, ids: Sequence[str]) -> Dict[str, List[QuestionOption]]:
        grouped: Dict[str, List[QuestionOption]] = {}
        if not ids:
            return grouped
        marks = ",".join("?" for _ in ids)
        rows = conn.execute(
            f"""
            SELECT question_id, id, text, is_correct
            FROM question_options
            WHERE question_id IN ({marks})
            ORDER BY question_id, position
            """,
            list(ids),
        ).fetchall()
        for row in rows:
            grouped.setdefault(row["question_id"], []).append(
                QuestionOption(id=row["id"], text=row["text"], is_correct=bool(row["is_correct"]))
            )
        return grouped

    def _hydrate(self, conn: sqlite3.Connection, rows: Sequence[sqlite3.Row]) -> List[Question]:
        options = self._options(conn, [row["id"] for row in rows])
        return [
            Question(
                id=row["id"],
                topic_id=row["topic_id"],
                type=row["type"],
                level=row["level"],
                text=row["text"],
                official_answer=row["official_answer"],
                options=tuple(options.get(row["id"], [])),
                usable_in_practice=bool(row["usable_in_practice"]),
                usable_in_interview=bool(row["usable_in_interview"]),
            )
            for row in rows
        ]

    def get_eligible_questions(
        self,
        topics: Sequence[int],
        levels: Sequence[Level],
        qtype: QuestionType,
        exclude_ids: Iterable[str] = (),
        *,
        usage: Optional[SessionKind] = None,
    ) -> List[Question]:  # Filter by type/topic/level/usage, minus excluded ids
        clauses = ["type = ?"]
        params: List[object] = [qtype]
        if topics:
            clauses.append(f"topic_id IN ({','.join('?' for _ in topics)})")
            params.extend(topics)
        if levels:
            clauses.append(f"level IN ({','.join('?' for _ in levels)})")
            params.extend(levels)
        if usage == "interview":
            clauses.append("usable_in_interview = 1")
        elif usage == "practice":
            clauses.append("usable_in_practice = 1")
        excluded = set(exclude_ids)

        with connect(self._path) as conn:
            rows = conn.execute(
                f"SELECT * FROM questions WHERE {' AND '.join(clauses)} ORDER BY id",
                params,
            ).fetchall()
            # Exclusions can outnumber SQLite's bind variable limit
            return self._hydrate(conn, [row for row in rows if row["id"] not in excluded])

    def get_questions(self, ids: Sequence[str]) -> List[Question]:  # Preserves the order of ``ids``
        if not ids:
            return []
        marks = ",".join("?" for _ in ids)
        with connect(self._path) as conn:
            rows = conn.execute(f"SELECT * FROM questions WHERE id IN ({marks})", list(ids)).fetchall()
            by_id = {question.id: question for question in self._hydrate(conn, rows)}
        return [by_id[qid] for qid in ids if qid in by_id]

    def upsert(self, question: Question) -> Question:  # Insert or replace a question and its options
        with connect(self._path) as conn:
            conn.execute(
                """
                INSERT INTO questions
                  (id, topic_id, type, level, text, official_answer, usable_in_practice, usable_in_interview)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  topic_id = excluded.topic_id,
                  type = excluded.type,
                  level = excluded.level,
                  text = excluded.text,
                  official_answer = excluded.official_answer,
                  usable_in_practice = excluded.usable_in_practice,
                  usable_in_interview = excluded.usable_in_interview
                """,
                (
                    question.id,
                    question.topic_id,
                    question.type,
                    question.level,
                    question.text,
                    question.official_answer,
                    int(question.usable_in_practice),
                    int(question.usable_in_interview),
                ),
            )
            conn.execute("DELETE FROM question_options WHERE question_id = ?", (question.id,))
            conn.executemany(
                """
                INSERT INTO question_options (question_id, id, position, text, is_correct)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (question.id, option.id, position, option.text, int(option.is_correct))
                    for position, option in enumerate(question.options)
                ],
            )
        return question


__all__ = ["QuestionPoolStore"]
