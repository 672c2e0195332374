"""Group membership lookups for group-scoped assignments."""
from __future__ import annotations

from typing import List

from .sqlite import connect


class GroupStore:  # SQLite-backed group membership
    def __init__(self, db_path: str) -> None:
        self._path = db_path

    def add_member(self, group_id: int, user_id: str) -> None:
        with connect(self._path) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO group_members (group_id, user_id) VALUES (?, ?)",
                (group_id, user_id),
            )

    def remove_member(self, group_id: int, user_id: str) -> None:
        with connect(self._path) as conn:
            conn.execute("DELETE FROM group_members WHERE group_id = ? AND user_id = ?", (group_id, user_id))

    def is_member(self, group_id: int, user_id: str) -> bool:
        with connect(self._path) as conn:
            row = conn.execute(
                "SELECT 1 FROM group_members WHERE group_id = ? AND user_id = ?",
                (group_id, user_id),
            ).fetchone()
        return row is not None

    def members(self, group_id: int) -> List[str]:
        with connect(self._path) as conn:
            rows = conn.execute(
                "SELECT user_id FROM group_members WHERE group_id = ? ORDER BY user_id",
                (group_id,),
            ).fetchall()
        return [row["user_id"] for row in rows]


__all__ = ["GroupStore"]
