"""Structured session event logging.

Every engine transition is one ``SessionEvent``: when it happened, its kind,
the session and user it concerns, the session status it left behind and a
``details`` mapping for the rest (scores, credit deltas, denial reasons). The
console gets a one-line summary; when ``LOG_FILE`` is set the same event is
appended to a rotating file as a JSON line.
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")
LOG_MAX_BYTES = int(os.getenv("LOG_MAX_BYTES", "5242880"))
LOG_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "5"))

_logger = logging.getLogger("sessions")
_logger.setLevel(LOG_LEVEL)
_logger.propagate = False


class SessionEvent(BaseModel):
    ts: datetime
    kind: str
    session_id: str
    user_id: Optional[str] = None
    status: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    def summary(self) -> str:
        parts = [f"session={self.session_id}", f"kind={self.kind}"]
        if self.user_id is not None:
            parts.append(f"user={self.user_id}")
        if self.status is not None:
            parts.append(f"status={self.status}")
        parts.extend(f"{key}={value}" for key, value in self.details.items())
        return " ".join(parts)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(), ensure_ascii=False, default=str)


class JsonEventFormatter(logging.Formatter):
    """Render the ``SessionEvent`` attached to a record as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        event = getattr(record, "session_event", None)
        if event is None:
            return json.dumps({"message": record.getMessage()}, ensure_ascii=False)
        return event.to_json()


def json_file_handler(path: str) -> logging.Handler:
    log_dir = os.path.dirname(path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT)
    handler.setFormatter(JsonEventFormatter())
    return handler


def _ensure_handlers() -> None:
    if _logger.handlers:
        return

    console = logging.StreamHandler(stream=sys.stdout)
    console.setFormatter(
        logging.Formatter(
            "[%(asctime)s] %(levelname)s %(name)s :: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    _logger.addHandler(console)
    if LOG_FILE:
        _logger.addHandler(json_file_handler(LOG_FILE))


def log_event(
    kind: str,
    session_id: str,
    *,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    **fields: Any,
) -> SessionEvent:
    """Record one engine event; ``session_id`` is ``"-"`` when none applies."""

    _ensure_handlers()
    event = SessionEvent(
        ts=datetime.now(timezone.utc),
        kind=kind,
        session_id=session_id,
        user_id=user_id,
        status=status,
        details=fields,
    )
    _logger.info(event.summary(), extra={"session_event": event})
    return event


__all__ = ["JsonEventFormatter", "SessionEvent", "json_file_handler", "log_event"]
