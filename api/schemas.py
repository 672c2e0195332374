"""Pydantic schemas for the session API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from engine.types import (
    AuditEventType,
    CompletionReason,
    FeedbackMode,
    LedgerEntry,
    Level,
    NavigationMode,
    QuestionType,
    SelectionCriteria,
    SessionKind,
    SessionStatus,
)


class StartInterviewReq(BaseModel):
    assignment_id: int


class StartPracticeReq(BaseModel):
    assignment_id: Optional[int] = None
    criteria: Optional[SelectionCriteria] = None

    @model_validator(mode="after")
    def check_source(self) -> "StartPracticeReq":
        if (self.assignment_id is None) == (self.criteria is None):
            raise ValueError("provide exactly one of assignment_id or criteria")
        return self


class AnswerReq(BaseModel):
    question_id: str
    selected_option_ids: List[str] = Field(default_factory=list)
    given_text: Optional[str] = None
    time_spent_sec: int = Field(default=0, ge=0)
    expected_index: Optional[int] = None


class TopUpReq(BaseModel):
    credits: int = Field(gt=0)
    bonus: bool = False
    expires_at: Optional[datetime] = None
    source_ref: Optional[str] = None
    description: Optional[str] = None


class AuditEventReq(BaseModel):
    event_type: AuditEventType
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OptionView(BaseModel):
    id: str
    text: str


class QuestionView(BaseModel):
    """Question as shown to the user, without the answer key."""

    id: str
    topic_id: int
    type: QuestionType
    level: Level
    text: str
    options: List[OptionView] = Field(default_factory=list)


class AnswerView(BaseModel):
    question_id: str
    question_type: QuestionType
    selected_option_ids: List[str] = Field(default_factory=list)
    given_text: Optional[str] = None
    time_spent_sec: int = 0
    answered_at: datetime
    # Hidden (None) while feedback is deferred to the end.
    is_correct: Optional[bool] = None
    score: Optional[float] = None
    match_percent: Optional[float] = None


class SessionView(BaseModel):
    id: str
    kind: SessionKind
    status: SessionStatus
    assignment_id: Optional[int] = None
    navigation: NavigationMode
    feedback: FeedbackMode
    allow_pause: bool
    question_ids: List[str]
    current_question_index: int
    current_question: Optional[QuestionView] = None
    shortfall: Dict[str, int] = Field(default_factory=dict)
    answers: List[AnswerView] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    total_time_sec: int = 0
    remaining_time_sec: Optional[int] = None
    total_score: Optional[float] = None
    max_score: Optional[float] = None
    completion_reason: Optional[CompletionReason] = None
    attempt_number: int = 1
    parent_session_id: Optional[str] = None
    certificate_signaled: bool = False


class SessionResp(BaseModel):
    session: SessionView
    message: str = ""


class SessionPageResp(BaseModel):
    items: List[SessionView]
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next: bool
    has_previous: bool


class CreditsResp(BaseModel):
    user_id: str
    available: int
    next_expiration: Optional[datetime] = None
    recent_transactions: List[LedgerEntry] = Field(default_factory=list)


class AuditEventResp(BaseModel):
    id: int
    session_id: str
    event_type: AuditEventType
