"""Persistence helpers for session integrity events."""
from __future__ import annotations

import datetime as dt
import json
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from engine.types import AuditEventType

from .sqlite import connect


class AuditEventPayload(BaseModel):
    session_id: str
    user_id: str
    event_type: AuditEventType
    metadata: Dict[str, Any] = Field(default_factory=dict)


def insert_audit_event(db_path: str, **data: Any) -> int:
    """Insert an audit event row and return its primary key."""

    payload = AuditEventPayload(**data)
    timestamp = dt.datetime.now(dt.timezone.utc).isoformat()
    with connect(db_path) as conn:
        cur = conn.cursor()
        cur.execute(
            """INSERT INTO session_audit_events
               (timestamp, session_id, user_id, event_type, metadata)
               VALUES (?, ?, ?, ?, ?)""",
            (
                timestamp,
                payload.session_id,
                payload.user_id,
                payload.event_type,
                json.dumps(payload.metadata),
            ),
        )
        return int(cur.lastrowid)


def list_audit_events(db_path: str, session_id: str) -> List[Dict[str, Any]]:
    with connect(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM session_audit_events WHERE session_id = ? ORDER BY id",
            (session_id,),
        ).fetchall()
    return [
        {
            "id": row["id"],
            "timestamp": row["timestamp"],
            "session_id": row["session_id"],
            "user_id": row["user_id"],
            "event_type": row["event_type"],
            "metadata": json.loads(row["metadata"] or "{}"),
        }
        for row in rows
    ]
