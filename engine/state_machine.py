"""Session lifecycle: start, answer, pause/resume, finalize, retake."""
from __future__ import annotations

import functools
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Set, Tuple
from uuid import uuid4

from observability.logger import log_event
from services.scoring import score_totals, summarize
from services.timer_expiry import expired_timer

from .clock import Clock, utcnow
from .errors import (
    AnswerAlreadyRecorded,
    EngineError,
    InsufficientQuestionPool,
    InvalidStateTransition,
    NotEligible,
    Outcome,
    QuestionNotAllowed,
    SessionExpired,
    SessionNotFound,
    StaleSubmission,
)
from .evaluator import evaluate_answer
from .interfaces import (
    ActiveSessionConflict,
    AssignmentSource,
    CertificateIssuer,
    QuestionPool,
    SessionRepository,
)
from .ledger import CreditLedger
from .selector import QuestionSelector
from .types import (
    Answer,
    AnswerPayload,
    AuditEventType,
    CertificateSignal,
    CompletionReason,
    Eligibility,
    LedgerEntry,
    Page,
    SelectionCriteria,
    SelectionPreview,
    Session,
    SessionAssignment,
    SessionKind,
    SessionRules,
    SessionStatus,
    SessionSummary,
    Template,
)
from .visibility import AssignmentVisibilityResolver

logger = logging.getLogger(__name__)

AuditSink = Callable[..., int]

_TRANSITIONS: Dict[SessionStatus, Set[SessionStatus]] = {
    "not_started": {"in_progress"},
    "in_progress": {"paused", "completed", "expired", "abandoned"},
    "paused": {"in_progress"},
}


def _outcome(method: Callable[..., Any]) -> Callable[..., Outcome]:
    """Turn raised ``EngineError``s into failed outcomes; storage errors still propagate."""

    @functools.wraps(method)
    def wrapper(self: "SessionStateMachine", *args: Any, **kwargs: Any) -> Outcome:
        try:
            value = method(self, *args, **kwargs)
        except EngineError as exc:
            return Outcome.failure(exc)
        if isinstance(value, Outcome):
            return value
        return Outcome.success(value)

    return wrapper


def check_transition(session: Session, target: SessionStatus) -> None:
    if target not in _TRANSITIONS.get(session.status, set()):
        raise InvalidStateTransition(
            f"cannot move session from {session.status} to {target}",
            session_id=session.id,
            status=session.status,
            target=target,
        )


class SessionStateMachine:
    """Orchestrates practice and interview sessions over injected collaborators."""

    def __init__(
        self,
        *,
        assignments: AssignmentSource,
        questions: QuestionPool,
        sessions: SessionRepository,
        ledger: CreditLedger,
        resolver: AssignmentVisibilityResolver,
        selector: Optional[QuestionSelector] = None,
        certificates: Optional[CertificateIssuer] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
        default_threshold: float = 80.0,
        reuse_cooldown_days: int = 30,
        allow_short_sessions: bool = True,
        refund_on_abandon: bool = False,
    ) -> None:
        self._assignments = assignments
        self._questions = questions
        self._sessions = sessions
        self._ledger = ledger
        self._resolver = resolver
        self._selector = selector or QuestionSelector(questions)
        self._certificates = certificates
        self._audit = audit
        self._clock = clock or utcnow
        self._default_threshold = default_threshold
        self._reuse_cooldown_days = reuse_cooldown_days
        self._allow_short = allow_short_sessions
        self._refund_on_abandon = refund_on_abandon

    # ------------------------------------------------------------------
    # Loading and lazy expiry

    def _assignment_and_template(self, assignment_id: int) -> Tuple[SessionAssignment, Template]:
        assignment = self._assignments.get_assignment(assignment_id)
        if assignment is None:
            raise SessionNotFound(f"assignment {assignment_id} not found", assignment_id=assignment_id)
        template = self._assignments.get_template(assignment.template_id)
        if template is None:
            raise SessionNotFound(
                f"template {assignment.template_id} not found",
                template_id=assignment.template_id,
            )
        return assignment, template

    def _expire_if_due(self, session: Session, now: datetime) -> Tuple[Session, Optional[str]]:
        timer = expired_timer(session, now)
        if timer is None:
            return session, None
        return self._finalize(session, "timer", now, timer=timer), timer

    def _load(self, session_id: str, user_id: Optional[str]) -> Tuple[Session, datetime]:
        session = self._sessions.get(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise SessionNotFound(f"session {session_id} not found", session_id=session_id)
        now = self._clock()
        session, timer = self._expire_if_due(session, now)
        if timer is not None:
            raise SessionExpired("session time limit reached", session=session, timer=timer)
        return session, now

    # ------------------------------------------------------------------
    # Start

    def _recently_answered(self, user_id: str, now: datetime) -> Set[str]:
        if not self._reuse_cooldown_days:
            return set()
        since = now - timedelta(days=self._reuse_cooldown_days)
        return self._sessions.answered_question_ids(user_id, "interview", since)

    def _refund(self, debit: Optional[LedgerEntry], description: str) -> None:
        if debit is not None:
            self._ledger.refund(debit, description)

    def _open(
        self,
        *,
        user_id: str,
        kind: SessionKind,
        rules: SessionRules,
        criteria: SelectionCriteria,
        assignment_id: Optional[int] = None,
        template_id: Optional[int] = None,
        cost: int = 0,
        attempt_number: int = 1,
        parent_session_id: Optional[str] = None,
    ) -> Outcome[Session]:
        now = self._clock()
        session_id = uuid4().hex
        debit: Optional[LedgerEntry] = None
        if kind == "interview":
            debit = self._ledger.consume(user_id, cost, session_id, f"Interview session {session_id}")

        try:
            exclude = self._recently_answered(user_id, now) if kind == "interview" else set()
            picked = self._selector.select(criteria, kind=kind, exclude_ids=exclude)
            if picked.is_short and not self._allow_short:
                raise InsufficientQuestionPool(
                    "not enough eligible questions to fill the session",
                    requested=picked.requested,
                    shortfall=picked.shortfall,
                )
            draft = Session(
                id=session_id,
                user_id=user_id,
                assignment_id=assignment_id,
                template_id=template_id,
                kind=kind,
                status="in_progress",
                rules=rules,
                selection=criteria,
                question_ids=picked.question_ids,
                current_question_index=0,
                shortfall=picked.shortfall,
                started_at=now,
                active_since=now,
                attempt_number=attempt_number,
                parent_session_id=parent_session_id,
                credit_entry_id=debit.id if debit else None,
            )
            try:
                session = self._sessions.create(draft)
            except ActiveSessionConflict:
                # Lost a concurrent start for the same assignment.
                existing = self._sessions.find_active(user_id, assignment_id) if assignment_id else None
                if existing is None:
                    raise
                self._refund(debit, f"Refund: duplicate start for session {existing.id}")
                log_event("session_resumed_existing", existing.id, user_id=user_id, status=existing.status)
                return Outcome.success(existing, message="resumed existing session")
        except Exception:
            self._refund(debit, f"Refund: session {session_id} could not be created")
            raise

        log_event(
            "session_started",
            session.id,
            user_id=user_id,
            status=session.status,
            action=kind,
            assignment_id=assignment_id,
            questions=len(session.question_ids),
            shortfall=session.shortfall,
        )
        return Outcome.success(session)

    @_outcome
    def start(self, user_id: str, assignment_id: int, *, kind: Optional[SessionKind] = None) -> Outcome[Session]:
        """Start (or resume) the user's session for an assignment."""

        assignment, template = self._assignment_and_template(assignment_id)
        if kind is not None and template.kind != kind:
            raise NotEligible(
                f"assignment {assignment_id} is not a {kind} assignment",
                reason="wrong_kind",
            )

        existing = self._sessions.find_active(user_id, assignment_id)
        if existing is not None:
            existing, timer = self._expire_if_due(existing, self._clock())
            if timer is None:
                log_event("session_resumed_existing", existing.id, user_id=user_id, status=existing.status)
                return Outcome.success(existing, message="resumed existing session")

        eligibility = self._resolver.resolve(user_id, assignment, template)
        if not eligibility.eligible:
            raise NotEligible(
                eligibility.detail or "not eligible for this assignment",
                reason=eligibility.reason,
                retry_after=eligibility.retry_after,
            )

        return self._open(
            user_id=user_id,
            kind=template.kind,
            rules=template.rules(
                certification_enabled=assignment.certification_enabled,
                default_threshold=self._default_threshold,
            ),
            criteria=template.selection,
            assignment_id=assignment_id,
            template_id=template.id,
            cost=template.interview_cost,
        )

    @_outcome
    def start_practice(
        self,
        user_id: str,
        criteria: SelectionCriteria,
        rules: Optional[SessionRules] = None,
    ) -> Outcome[Session]:
        """Ad-hoc practice outside any assignment."""

        return self._open(
            user_id=user_id,
            kind="practice",
            rules=rules or SessionRules(written_threshold=self._default_threshold),
            criteria=criteria,
        )

    # ------------------------------------------------------------------
    # Answers

    @_outcome
    def submit_answer(
        self,
        session_id: str,
        user_id: str,
        question_id: str,
        payload: AnswerPayload,
        time_spent_sec: int = 0,
        *,
        expected_index: Optional[int] = None,
    ) -> Outcome[Session]:
        """Evaluate and record one answer, then advance the cursor."""

        session, now = self._load(session_id, user_id)
        if session.status != "in_progress":
            raise InvalidStateTransition(
                f"answers are only accepted while in progress, session is {session.status}",
                session_id=session.id,
                status=session.status,
            )
        if expected_index is not None and expected_index != session.current_question_index:
            raise StaleSubmission(
                "submission is based on an outdated question index",
                expected=expected_index,
                current=session.current_question_index,
            )
        if question_id not in session.question_ids:
            raise QuestionNotAllowed("question is not part of this session", question_id=question_id)

        rules = session.rules
        previous = session.answer_for(question_id)
        if previous is not None:
            if rules.resubmission == "reject":
                raise AnswerAlreadyRecorded("question was already answered", question_id=question_id)
            if rules.navigation == "linear":
                raise QuestionNotAllowed("linear sessions cannot revisit answered questions", question_id=question_id)
        elif rules.navigation == "linear" and question_id != session.current_question_id:
            raise QuestionNotAllowed(
                "linear sessions must answer the current question",
                question_id=question_id,
                current_question_id=session.current_question_id,
            )

        found = self._questions.get_questions([question_id])
        if not found:
            raise QuestionNotAllowed("question is no longer available", question_id=question_id)
        question = found[0]
        if question.type == "written" and not question.official_answer:
            logger.warning("written question %s has no official answer, scoring 0", question_id)

        evaluation = evaluate_answer(question, payload, rules)
        answer = Answer(
            id=previous.id if previous else uuid4().hex,
            session_id=session.id,
            question_id=question_id,
            question_type=question.type,
            selected_option_ids=list(payload.selected_option_ids),
            given_text=payload.given_text,
            is_correct=evaluation.is_correct,
            score=evaluation.score,
            match_percent=evaluation.match_percent,
            time_spent_sec=max(0, time_spent_sec),
            answered_at=now,
        )

        answered = session.answered_ids() | {question_id}
        if rules.navigation == "linear":
            next_index = session.current_question_index + 1
        else:
            next_index = next(
                (i for i, qid in enumerate(session.question_ids) if qid not in answered),
                len(session.question_ids),
            )
        changes: Dict[str, Any] = {"current_question_index": next_index}
        if next_index != session.current_question_index:
            changes["question_started_sec"] = session.active_seconds(now)

        stored = self._sessions.save_answer(
            session.model_copy(update=changes),
            answer,
            overwrite=previous is not None,
        )
        log_event(
            "answer_recorded",
            session.id,
            user_id=user_id,
            question_id=question_id,
            score=answer.score,
            outcome="correct" if answer.is_correct else "incorrect",
            overwrite=previous is not None,
        )
        return stored

    # ------------------------------------------------------------------
    # Pause / resume

    @_outcome
    def pause(self, session_id: str, user_id: str) -> Outcome[Session]:
        session, now = self._load(session_id, user_id)
        if not session.rules.allow_pause:
            raise InvalidStateTransition("pausing is disabled for this session", session_id=session.id)
        check_transition(session, "paused")
        paused = session.model_copy(
            update={
                "status": "paused",
                "paused_at": now,
                "total_time_sec": session.active_seconds(now),
                "active_since": None,
            }
        )
        stored = self._sessions.update(paused)
        log_event("session_paused", stored.id, user_id=user_id, status=stored.status)
        return stored

    @_outcome
    def resume(self, session_id: str, user_id: str) -> Outcome[Session]:
        session, now = self._load(session_id, user_id)
        if not session.rules.allow_pause:
            raise InvalidStateTransition("pausing is disabled for this session", session_id=session.id)
        check_transition(session, "in_progress")
        resumed = session.model_copy(update={"status": "in_progress", "paused_at": None, "active_since": now})
        stored = self._sessions.update(resumed)
        log_event("session_resumed", stored.id, user_id=user_id, status=stored.status)
        return stored

    # ------------------------------------------------------------------
    # Finalization

    def _finalize(
        self,
        session: Session,
        reason: CompletionReason,
        now: datetime,
        *,
        timer: Optional[str] = None,
    ) -> Session:
        questions = {question.id: question for question in self._questions.get_questions(session.question_ids)}
        total, maximum = score_totals(session, questions)
        done = session.model_copy(
            update={
                "status": "completed",
                "submitted_at": now,
                "finished_at": now,
                "paused_at": None,
                "total_time_sec": session.active_seconds(now),
                "active_since": None,
                "total_score": total,
                "max_score": maximum,
                "completion_reason": reason,
            }
        )
        stored = self._sessions.update(done)
        log_event(
            "session_expired" if reason == "timer" else "session_completed",
            stored.id,
            user_id=stored.user_id,
            status=stored.status,
            reason=timer or reason,
            score=stored.total_score,
        )

        if stored.kind == "interview" and stored.rules.certification_enabled and self._certificates is not None:
            self._certificates.signal(
                CertificateSignal(
                    session_id=stored.id,
                    user_id=stored.user_id,
                    assignment_id=stored.assignment_id,
                    score=stored.total_score,
                    max_score=stored.max_score,
                    signaled_at=now,
                )
            )
            stored = self._sessions.update(stored.model_copy(update={"certificate_signaled": True}))
            log_event("certificate_signaled", stored.id, user_id=stored.user_id, score=stored.total_score)
        return stored

    @_outcome
    def submit(self, session_id: str, user_id: str) -> Outcome[Session]:
        """Hand the session in; only legal while in progress."""

        session, now = self._load(session_id, user_id)
        check_transition(session, "completed")
        return self._finalize(session, "submitted", now)

    @_outcome
    def finish(self, session_id: str, user_id: str) -> Outcome[Session]:
        """Like ``submit`` but a no-op on an already completed session."""

        session, now = self._load(session_id, user_id)
        if session.status == "completed":
            return session
        check_transition(session, "completed")
        return self._finalize(session, "finished", now)

    @_outcome
    def abandon(self, session_id: str, user_id: Optional[str] = None) -> Outcome[Session]:
        session, now = self._load(session_id, user_id)
        check_transition(session, "abandoned")
        abandoned = session.model_copy(
            update={
                "status": "abandoned",
                "finished_at": now,
                "total_time_sec": session.active_seconds(now),
                "active_since": None,
            }
        )
        stored = self._sessions.update(abandoned)
        log_event("session_abandoned", stored.id, user_id=stored.user_id, status=stored.status)
        if self._refund_on_abandon and stored.credit_entry_id:
            debit = self._ledger.find(stored.credit_entry_id)
            self._refund(debit, f"Refund: abandoned session {stored.id}")
        return stored

    # ------------------------------------------------------------------
    # Retake

    @_outcome
    def retake(self, session_id: str, user_id: str) -> Outcome[Session]:
        """Start a fresh attempt linked to the original session."""

        session = self._sessions.get(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFound(f"session {session_id} not found", session_id=session_id)
        session, _ = self._expire_if_due(session, self._clock())
        if not session.is_terminal:
            raise InvalidStateTransition(
                "only finished sessions can be retaken",
                session_id=session.id,
                status=session.status,
            )

        root = session.parent_session_id or session.id
        attempts = [
            other.attempt_number
            for other in self._sessions.list_for_user(user_id)
            if (other.parent_session_id or other.id) == root
        ]
        attempt_number = max(attempts or [session.attempt_number]) + 1

        if session.assignment_id is None:
            return self._open(
                user_id=user_id,
                kind="practice",
                rules=session.rules,
                criteria=session.selection,
                attempt_number=attempt_number,
                parent_session_id=root,
            )

        assignment, template = self._assignment_and_template(session.assignment_id)
        eligibility = self._resolver.resolve(user_id, assignment, template)
        if not eligibility.eligible:
            raise NotEligible(
                eligibility.detail or "not eligible for this assignment",
                reason=eligibility.reason,
                retry_after=eligibility.retry_after,
            )
        active = self._sessions.find_active(user_id, session.assignment_id)
        if active is not None:
            raise InvalidStateTransition(
                "another attempt is already in progress",
                session_id=active.id,
                status=active.status,
            )
        return self._open(
            user_id=user_id,
            kind=template.kind,
            rules=template.rules(
                certification_enabled=assignment.certification_enabled,
                default_threshold=self._default_threshold,
            ),
            criteria=template.selection,
            assignment_id=session.assignment_id,
            template_id=template.id,
            cost=template.interview_cost,
            attempt_number=attempt_number,
            parent_session_id=root,
        )

    # ------------------------------------------------------------------
    # Reads

    @_outcome
    def get_session(self, session_id: str, user_id: Optional[str] = None) -> Outcome[Session]:
        session, _ = self._load(session_id, user_id)
        return session

    @_outcome
    def list_sessions(self, user_id: str, page: int = 1, page_size: int = 10) -> Outcome[Page[Session]]:
        now = self._clock()
        rows = [self._expire_if_due(session, now)[0] for session in self._sessions.list_for_user(user_id)]
        return Page[Session].build(rows, page, page_size)

    @_outcome
    def summary(self, session_id: str, user_id: Optional[str] = None) -> Outcome[SessionSummary]:
        session, _ = self._load(session_id, user_id)
        questions = {question.id: question for question in self._questions.get_questions(session.question_ids)}
        return summarize(session, questions)

    @_outcome
    def eligibility(self, user_id: str, assignment_id: int) -> Outcome[Eligibility]:
        assignment, template = self._assignment_and_template(assignment_id)
        return self._resolver.resolve(user_id, assignment, template)

    @_outcome
    def preview(self, assignment_id: int, user_id: Optional[str] = None) -> Outcome[SelectionPreview]:
        """How many questions a start would draw right now, per type."""

        _, template = self._assignment_and_template(assignment_id)
        exclude: Set[str] = set()
        if user_id is not None and template.kind == "interview":
            exclude = self._recently_answered(user_id, self._clock())
        return self._selector.preview(template.selection, kind=template.kind, exclude_ids=exclude)

    # ------------------------------------------------------------------
    # Integrity events

    @_outcome
    def record_audit_event(
        self,
        session_id: str,
        user_id: str,
        event_type: AuditEventType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Outcome[int]:
        """Store a client integrity event against a live session."""

        session, _ = self._load(session_id, user_id)
        if session.is_terminal:
            raise InvalidStateTransition(
                "audit events are only accepted for live sessions",
                session_id=session.id,
                status=session.status,
            )
        if self._audit is None:
            raise RuntimeError("no audit sink configured")
        return self._audit(
            session_id=session.id,
            user_id=user_id,
            event_type=event_type,
            metadata=metadata or {},
        )


__all__ = ["AuditSink", "SessionStateMachine", "check_transition"]
