"""Decide whether a user may see or start an assignment."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from observability.logger import log_event

from .clock import Clock, as_utc, utcnow
from .interfaces import GroupMembership, SessionRepository
from .types import AttemptHistory, Eligibility, SessionAssignment, Template


class AssignmentVisibilityResolver:
    """Scope, window, attempt and cooldown checks, first failure wins."""

    def __init__(
        self,
        groups: GroupMembership,
        sessions: SessionRepository,
        clock: Optional[Clock] = None,
    ) -> None:
        self._groups = groups
        self._sessions = sessions
        self._clock = clock or utcnow

    def _scope(self, user_id: str, assignment: SessionAssignment) -> Optional[Eligibility]:
        if assignment.visibility == "group":
            if assignment.group_id is None or not self._groups.is_member(assignment.group_id, user_id):
                return Eligibility(
                    eligible=False,
                    reason="not_group_member",
                    detail="assignment is limited to members of its group",
                )
        elif assignment.visibility == "private" and assignment.user_id != user_id:
            return Eligibility(
                eligible=False,
                reason="not_assigned_user",
                detail="assignment is private to another user",
            )
        return None

    @staticmethod
    def _window(assignment: SessionAssignment, now: datetime) -> Optional[Eligibility]:
        if assignment.window_start is not None and now < assignment.window_start:
            return Eligibility(
                eligible=False,
                reason="window_not_open",
                detail="assignment window has not opened yet",
                retry_after=assignment.window_start,
            )
        if assignment.window_end is not None and now >= assignment.window_end:
            return Eligibility(eligible=False, reason="window_closed", detail="assignment window has closed")
        return None

    @staticmethod
    def _attempt_limit(assignment: SessionAssignment, template: Optional[Template]) -> int:
        if assignment.max_attempts is not None:
            return assignment.max_attempts
        return template.max_attempts if template is not None else 0

    @staticmethod
    def _cooldown_hours(assignment: SessionAssignment, template: Optional[Template]) -> int:
        if assignment.cooldown_hours_between_attempts is not None:
            return assignment.cooldown_hours_between_attempts
        return template.cooldown_hours if template is not None else 0

    def _attempts(self, assignment: SessionAssignment, template: Optional[Template], history: AttemptHistory) -> Optional[Eligibility]:
        limit = self._attempt_limit(assignment, template)
        # 0 means unlimited
        if limit and history.completed_count >= limit:
            return Eligibility(
                eligible=False,
                reason="max_attempts_reached",
                detail=f"{history.completed_count} of {limit} attempts used",
            )
        return None

    def _cooldown(
        self,
        assignment: SessionAssignment,
        template: Optional[Template],
        history: AttemptHistory,
        now: datetime,
    ) -> Optional[Eligibility]:
        hours = self._cooldown_hours(assignment, template)
        if not hours or history.last_finished_at is None:
            return None
        ready_at = as_utc(history.last_finished_at) + timedelta(hours=hours)
        if now < ready_at:
            return Eligibility(
                eligible=False,
                reason="cooldown_active",
                detail=f"next attempt allowed {hours}h after the previous one",
                retry_after=ready_at,
            )
        return None

    def resolve(
        self,
        user_id: str,
        assignment: SessionAssignment,
        template: Optional[Template] = None,
    ) -> Eligibility:
        """Return eligibility with the first failing reason, in a fixed order."""

        now = as_utc(self._clock())
        verdict = self._scope(user_id, assignment) or self._window(assignment, now)
        if verdict is None and assignment.id is not None:
            history = self._sessions.attempt_history(user_id, assignment.id)
            verdict = self._attempts(assignment, template, history) or self._cooldown(
                assignment, template, history, now
            )
        if verdict is not None:
            log_event(
                "not_eligible",
                "-",
                user_id=user_id,
                assignment_id=assignment.id,
                reason=verdict.reason,
            )
            return verdict
        return Eligibility(eligible=True)


__all__ = ["AssignmentVisibilityResolver"]
