"""Typed error kinds and the outcome envelope returned by engine operations."""
from __future__ import annotations

from typing import Any, Dict, Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, Field

ErrorKind = Literal[
    "not_eligible",
    "insufficient_credits",
    "insufficient_question_pool",
    "invalid_state_transition",
    "answer_already_recorded",
    "session_expired",
    "session_not_found",
    "question_not_allowed",
    "stale_submission",
]

T = TypeVar("T")


class EngineError(Exception):
    """Expected, caller-recoverable condition raised inside the engine."""

    kind: ErrorKind = "invalid_state_transition"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotEligible(EngineError):
    kind = "not_eligible"


class InsufficientCredits(EngineError):
    kind = "insufficient_credits"


class InsufficientQuestionPool(EngineError):
    kind = "insufficient_question_pool"


class InvalidStateTransition(EngineError):
    kind = "invalid_state_transition"


class AnswerAlreadyRecorded(EngineError):
    kind = "answer_already_recorded"


class SessionExpired(EngineError):
    """Lazy timer expiry fired; ``session`` holds the finalized session."""

    kind = "session_expired"

    def __init__(self, message: str, session: Any = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.session = session


class SessionNotFound(EngineError):
    kind = "session_not_found"


class QuestionNotAllowed(EngineError):
    kind = "question_not_allowed"


class StaleSubmission(EngineError):
    kind = "stale_submission"


class ErrorInfo(BaseModel):
    kind: ErrorKind
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class Outcome(BaseModel, Generic[T]):
    """Tagged success/error result handed back to callers."""

    ok: bool
    value: Optional[T] = None
    error: Optional[ErrorInfo] = None
    message: str = ""

    @classmethod
    def success(cls, value: T, message: str = "") -> "Outcome[T]":
        return cls(ok=True, value=value, message=message)

    @classmethod
    def failure(cls, exc: EngineError, value: Optional[T] = None) -> "Outcome[T]":
        if value is None and isinstance(exc, SessionExpired):
            value = exc.session
        return cls(
            ok=False,
            value=value,
            error=ErrorInfo(kind=exc.kind, message=exc.message, details=dict(exc.details)),
            message=exc.message,
        )


__all__ = [
    "AnswerAlreadyRecorded",
    "EngineError",
    "ErrorInfo",
    "ErrorKind",
    "InsufficientCredits",
    "InsufficientQuestionPool",
    "InvalidStateTransition",
    "NotEligible",
    "Outcome",
    "QuestionNotAllowed",
    "SessionExpired",
    "SessionNotFound",
    "StaleSubmission",
]
