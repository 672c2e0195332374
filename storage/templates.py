"""Template and assignment persistence.

Selection criteria are stored as a JSON blob and parsed into
``SelectionCriteria`` here, so the engine only ever sees structured values.
"""
from __future__ import annotations

import json
import sqlite3
from typing import List, Optional

from engine.types import SelectionCriteria, SessionAssignment, Template, interview_policy_violations

from .sqlite import connect, to_iso

_TEMPLATE_COLUMNS = {"id", "name", "description", "kind", "visibility_default", "selection"}


class AssignmentStore:  # SQLite-backed templates and assignments
    def __init__(self, db_path: str) -> None:
        self._path = db_path

    @staticmethod
    def _template(row: sqlite3.Row) -> Template:
        return Template(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            kind=row["kind"],
            visibility_default=row["visibility_default"],
            selection=SelectionCriteria.model_validate_json(row["selection_json"]),
            **json.loads(row["settings_json"]),
        )

    @staticmethod
    def _assignment(row: sqlite3.Row) -> SessionAssignment:
        return SessionAssignment(
            id=row["id"],
            template_id=row["template_id"],
            visibility=row["visibility"],
            group_id=row["group_id"],
            user_id=row["user_id"],
            window_start=row["window_start"],
            window_end=row["window_end"],
            max_attempts=row["max_attempts"],
            cooldown_hours_between_attempts=row["cooldown_hours"],
            certification_enabled=bool(row["certification_enabled"]),
        )

    def save_template(self, template: Template) -> Template:
        """Insert or update a template; interview templates must satisfy the interview policy."""

        problems = interview_policy_violations(template)
        if template.selection.total_requested == 0:
            problems.append("templates must request at least one question")
        if problems:
            raise ValueError("; ".join(problems))
        selection_json = template.selection.model_dump_json()
        settings_json = template.model_dump_json(exclude=_TEMPLATE_COLUMNS)
        with connect(self._path) as conn:
            if template.id is None:
                cur = conn.execute(
                    """
                    INSERT INTO templates (name, description, kind, visibility_default, selection_json, settings_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        template.name,
                        template.description,
                        template.kind,
                        template.visibility_default,
                        selection_json,
                        settings_json,
                    ),
                )
                return template.model_copy(update={"id": int(cur.lastrowid)})
            conn.execute(
                """
                UPDATE templates
                SET name = ?, description = ?, kind = ?, visibility_default = ?, selection_json = ?, settings_json = ?
                WHERE id = ?
                """,
                (
                    template.name,
                    template.description,
                    template.kind,
                    template.visibility_default,
                    selection_json,
                    settings_json,
                    template.id,
                ),
            )
        return template

    def get_template(self, template_id: int) -> Optional[Template]:
        with connect(self._path) as conn:
            row = conn.execute("SELECT * FROM templates WHERE id = ?", (template_id,)).fetchone()
        return self._template(row) if row else None

    def save_assignment(self, assignment: SessionAssignment) -> SessionAssignment:
        if self.get_template(assignment.template_id) is None:
            raise ValueError(f"template {assignment.template_id} does not exist")
        with connect(self._path) as conn:
            cur = conn.execute(
                """
                INSERT INTO assignments
                  (template_id, visibility, group_id, user_id, window_start, window_end,
                   max_attempts, cooldown_hours, certification_enabled)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    assignment.template_id,
                    assignment.visibility,
                    assignment.group_id,
                    assignment.user_id,
                    to_iso(assignment.window_start),
                    to_iso(assignment.window_end),
                    assignment.max_attempts,
                    assignment.cooldown_hours_between_attempts,
                    int(assignment.certification_enabled),
                ),
            )
            return assignment.model_copy(update={"id": int(cur.lastrowid)})

    def get_assignment(self, assignment_id: int) -> Optional[SessionAssignment]:
        with connect(self._path) as conn:
            row = conn.execute("SELECT * FROM assignments WHERE id = ?", (assignment_id,)).fetchone()
        return self._assignment(row) if row else None

    def list_assignments(self) -> List[SessionAssignment]:
        with connect(self._path) as conn:
            rows = conn.execute("SELECT * FROM assignments ORDER BY id").fetchall()
        return [self._assignment(row) for row in rows]


__all__ = ["AssignmentStore"]
