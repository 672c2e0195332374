"""Collaborator interfaces consumed by the engine."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Sequence, Set

from .types import (
    Answer,
    AttemptHistory,
    CertificateSignal,
    LedgerEntry,
    Level,
    Question,
    QuestionType,
    Session,
    SessionAssignment,
    SessionKind,
    Template,
)


class ActiveSessionConflict(Exception):
    """Raised by ``SessionRepository.create`` when the user already has an active session for the assignment."""


class QuestionPool(Protocol):  # Question bank read access
    def get_eligible_questions(
        self,
        topics: Sequence[int],
        levels: Sequence[Level],
        qtype: QuestionType,
        exclude_ids: Iterable[str] = (),
        *,
        usage: Optional[SessionKind] = None,
    ) -> List[Question]: ...

    def get_questions(self, ids: Sequence[str]) -> List[Question]: ...


class AssignmentSource(Protocol):  # Template/assignment read access
    def get_assignment(self, assignment_id: int) -> Optional[SessionAssignment]: ...

    def get_template(self, template_id: int) -> Optional[Template]: ...


class GroupMembership(Protocol):
    def is_member(self, group_id: int, user_id: str) -> bool: ...


class SessionRepository(Protocol):  # Session and answer persistence
    def create(self, session: Session) -> Session: ...

    def get(self, session_id: str) -> Optional[Session]: ...

    def update(self, session: Session) -> Session: ...

    def save_answer(self, session: Session, answer: Answer, *, overwrite: bool = False) -> Session: ...

    def find_active(self, user_id: str, assignment_id: int) -> Optional[Session]: ...

    def attempt_history(self, user_id: str, assignment_id: int) -> AttemptHistory: ...

    def answered_question_ids(self, user_id: str, kind: SessionKind, since: datetime) -> Set[str]: ...

    def list_for_user(self, user_id: str) -> List[Session]: ...


class LedgerRepository(Protocol):  # Append-only credit ledger persistence
    def entries(self, user_id: str) -> List[LedgerEntry]: ...

    def available_sum(self, user_id: str, now: datetime) -> int: ...

    def append(self, entry: LedgerEntry, now: datetime) -> LedgerEntry: ...

    def append_debit(self, entry: LedgerEntry, now: datetime) -> Optional[LedgerEntry]: ...

    def get(self, entry_id: str) -> Optional[LedgerEntry]: ...


class CertificateIssuer(Protocol):  # One-way certificate eligibility sink
    def signal(self, signal: CertificateSignal) -> None: ...


__all__ = [
    "ActiveSessionConflict",
    "AssignmentSource",
    "CertificateIssuer",
    "GroupMembership",
    "LedgerRepository",
    "QuestionPool",
    "SessionRepository",
]
