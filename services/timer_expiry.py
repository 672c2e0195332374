"""Lazy timer checks for practice and interview sessions."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from engine.clock import as_utc
from engine.types import Session


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now else datetime.now(timezone.utc)


def expired_timer(session: Session, now: Optional[datetime] = None) -> Optional[str]:
    """Name the timer that ran out (``total`` or ``per_question``), if any.

    Only running sessions can expire; a paused session has its clock frozen.
    """

    if session.status != "in_progress":
        return None
    timers = session.rules.timers
    current = _now(now)
    elapsed = session.active_seconds(current)

    if timers.total_sec and elapsed >= timers.total_sec:
        return "total"
    if timers.per_question_sec and session.current_question_id is not None:
        if elapsed - session.question_started_sec >= timers.per_question_sec:
            return "per_question"
    return None


def remaining_seconds(session: Session, now: Optional[datetime] = None) -> Optional[int]:
    """Seconds left before the nearest deadline, or ``None`` when untimed."""

    timers = session.rules.timers
    current = _now(now)
    elapsed = session.active_seconds(current)
    budgets: List[int] = []
    if timers.total_sec:
        budgets.append(timers.total_sec - elapsed)
    if timers.per_question_sec and session.current_question_id is not None:
        budgets.append(timers.per_question_sec - (elapsed - session.question_started_sec))
    if not budgets:
        return None
    return max(0, min(budgets))


__all__ = ["expired_timer", "remaining_seconds"]
