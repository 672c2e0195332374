"""Wire stores and engine components for the HTTP layer."""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache, partial

from config.settings import settings
from engine.clock import Clock, utcnow
from engine.ledger import CreditLedger
from engine.selector import QuestionSelector
from engine.state_machine import SessionStateMachine
from engine.visibility import AssignmentVisibilityResolver
from storage.audit import insert_audit_event
from storage.certificates import CertificateStore
from storage.groups import GroupStore
from storage.ledger import LedgerStore
from storage.questions import QuestionPoolStore
from storage.sessions import SessionStore
from storage.templates import AssignmentStore


@dataclass(frozen=True)
class Engine:
    """Everything a request handler needs, bound to one database."""

    machine: SessionStateMachine
    ledger: CreditLedger
    questions: QuestionPoolStore
    assignments: AssignmentStore
    clock: Clock = utcnow


@lru_cache(maxsize=8)
def build_engine(db_path: str) -> Engine:
    questions = QuestionPoolStore(db_path)
    assignments = AssignmentStore(db_path)
    sessions = SessionStore(db_path)
    ledger = CreditLedger(LedgerStore(db_path))
    resolver = AssignmentVisibilityResolver(GroupStore(db_path), sessions)
    machine = SessionStateMachine(
        assignments=assignments,
        questions=questions,
        sessions=sessions,
        ledger=ledger,
        resolver=resolver,
        selector=QuestionSelector(questions),
        certificates=CertificateStore(db_path),
        audit=partial(insert_audit_event, db_path),
        default_threshold=settings.WRITTEN_MATCH_THRESHOLD,
        reuse_cooldown_days=settings.QUESTION_REUSE_COOLDOWN_DAYS,
        allow_short_sessions=settings.ALLOW_SHORT_SESSIONS,
        refund_on_abandon=settings.REFUND_ON_ABANDON,
    )
    return Engine(machine=machine, ledger=ledger, questions=questions, assignments=assignments)


def get_engine() -> Engine:
    """FastAPI dependency resolving the engine for the configured database."""

    return build_engine(settings.DB_PATH)


__all__ = ["Engine", "build_engine", "get_engine"]
