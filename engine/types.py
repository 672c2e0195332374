"""Shared type definitions for the session engine."""
from __future__ import annotations

import math
from datetime import datetime
from typing import Dict, Generic, List, Literal, Optional, Sequence, Set, Tuple, TypeVar

from pydantic import BaseModel, Field, field_validator, model_validator

from .clock import as_utc

QuestionType = Literal["single_choice", "multi_choice", "written"]
QUESTION_TYPES: Tuple[QuestionType, ...] = ("single_choice", "multi_choice", "written")

Level = Literal["basic", "intermediate", "advanced"]
Visibility = Literal["public", "group", "private"]
SessionKind = Literal["practice", "interview"]
SessionStatus = Literal["not_started", "in_progress", "paused", "completed", "expired", "abandoned"]
TransactionType = Literal["purchase", "consumption", "refund", "bonus"]
NavigationMode = Literal["free", "linear"]
FeedbackMode = Literal["immediate", "end"]
ResubmitPolicy = Literal["overwrite", "reject"]
WrittenScoring = Literal["binary", "proportional"]
CompletionReason = Literal["submitted", "finished", "timer"]
AuditEventType = Literal[
    "focus_lost",
    "focus_gained",
    "fullscreen_exit",
    "fullscreen_enter",
    "copy_attempt",
    "paste_attempt",
    "tab_switch",
    "window_resize",
    "network_disconnect",
    "network_reconnect",
]
IneligibleReason = Literal[
    "not_group_member",
    "not_assigned_user",
    "window_not_open",
    "window_closed",
    "max_attempts_reached",
    "cooldown_active",
    "wrong_kind",
]

ACTIVE_STATUSES = frozenset({"in_progress", "paused"})
TERMINAL_STATUSES = frozenset({"completed", "expired", "abandoned"})

T = TypeVar("T")


class QuestionOption(BaseModel):
    id: str
    text: str = ""
    is_correct: bool = False

    model_config = {"frozen": True}


class Question(BaseModel):
    """Question as handed over by the question bank; never mutated by the engine."""

    id: str
    topic_id: int
    type: QuestionType
    level: Level
    text: str = ""
    official_answer: Optional[str] = None
    options: Tuple[QuestionOption, ...] = ()
    usable_in_practice: bool = True
    usable_in_interview: bool = True

    model_config = {"frozen": True}

    def correct_option_ids(self) -> Set[str]:
        return {option.id for option in self.options if option.is_correct}


class SelectionCriteria(BaseModel):
    topic_ids: List[int] = Field(default_factory=list)
    levels: List[Level] = Field(default_factory=list)
    count_single: int = Field(default=0, ge=0)
    count_multi: int = Field(default=0, ge=0)
    count_written: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_topics(self) -> "SelectionCriteria":
        if self.total_requested > 0 and not self.topic_ids:
            raise ValueError("topic_ids must not be empty when question counts are set")
        return self

    @property
    def total_requested(self) -> int:
        return self.count_single + self.count_multi + self.count_written

    def count_for(self, qtype: QuestionType) -> int:
        return {
            "single_choice": self.count_single,
            "multi_choice": self.count_multi,
            "written": self.count_written,
        }[qtype]


class Timers(BaseModel):
    total_sec: Optional[int] = Field(default=None, gt=0)
    per_question_sec: Optional[int] = Field(default=None, gt=0)


class SessionRules(BaseModel):
    """Effective rules snapshotted into a session when it is created."""

    timers: Timers = Field(default_factory=Timers)
    navigation: NavigationMode = "free"
    allow_pause: bool = True
    feedback: FeedbackMode = "immediate"
    resubmission: ResubmitPolicy = "overwrite"
    written_threshold: float = Field(default=80.0, ge=0.0, le=100.0)
    written_scoring: WrittenScoring = "proportional"
    written_weight: float = Field(default=1.0, gt=0.0)
    certification_enabled: bool = False


class Template(BaseModel):
    """Admin-authored configuration for a family of sessions."""

    id: Optional[int] = None
    name: str
    description: Optional[str] = None
    kind: SessionKind
    visibility_default: Visibility = "public"

    selection: SelectionCriteria = Field(default_factory=SelectionCriteria)
    timers: Timers = Field(default_factory=Timers)

    navigation: NavigationMode = "free"
    allow_pause: bool = True
    feedback: FeedbackMode = "immediate"
    resubmission: Optional[ResubmitPolicy] = None

    written_threshold: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    written_scoring: WrittenScoring = "proportional"
    written_weight: float = Field(default=1.0, gt=0.0)

    show_hints: bool = True
    show_sources: bool = True
    show_glossary: bool = True

    max_attempts: int = Field(default=0, ge=0)  # 0 = unlimited
    cooldown_hours: int = Field(default=0, ge=0)

    certification_enabled: bool = False
    interview_cost: int = Field(default=1, ge=0)

    def rules(self, *, certification_enabled: bool = False, default_threshold: float = 80.0) -> SessionRules:
        resubmission = self.resubmission
        if resubmission is None:
            resubmission = "reject" if self.kind == "interview" else "overwrite"
        threshold = self.written_threshold if self.written_threshold is not None else default_threshold
        return SessionRules(
            timers=self.timers,
            navigation=self.navigation,
            allow_pause=self.allow_pause,
            feedback=self.feedback,
            resubmission=resubmission,
            written_threshold=threshold,
            written_scoring=self.written_scoring,
            written_weight=self.written_weight,
            certification_enabled=self.certification_enabled or certification_enabled,
        )


def interview_policy_violations(template: Template) -> List[str]:
    """List the interview restrictions a template breaks (empty for practice)."""

    if template.kind != "interview":
        return []
    problems: List[str] = []
    if template.show_hints or template.show_sources or template.show_glossary:
        problems.append("interview templates cannot have aids enabled")
    if template.feedback != "end":
        problems.append("interview templates must have feedback mode set to 'end'")
    if template.allow_pause:
        problems.append("interview templates cannot allow pause")
    if template.visibility_default == "public":
        problems.append("interview templates cannot be public by default")
    return problems


class SessionAssignment(BaseModel):
    """A scoped offer of a template to the public, a group or a single user."""

    id: Optional[int] = None
    template_id: int
    visibility: Visibility
    group_id: Optional[int] = None
    user_id: Optional[str] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    max_attempts: Optional[int] = Field(default=None, ge=0)
    cooldown_hours_between_attempts: Optional[int] = Field(default=None, ge=0)
    certification_enabled: bool = False

    @field_validator("window_start", "window_end")
    @classmethod
    def normalize_window(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    @model_validator(mode="after")
    def check_scope_targets(self) -> "SessionAssignment":
        if self.visibility == "group" and self.group_id is None:
            raise ValueError("group visibility requires group_id")
        if self.visibility == "private" and not self.user_id:
            raise ValueError("private visibility requires user_id")
        if self.window_start and self.window_end and self.window_end <= self.window_start:
            raise ValueError("window_end must be after window_start")
        return self


class AnswerPayload(BaseModel):
    selected_option_ids: List[str] = Field(default_factory=list)
    given_text: Optional[str] = None


class Answer(BaseModel):
    id: str
    session_id: str
    question_id: str
    question_type: QuestionType
    selected_option_ids: List[str] = Field(default_factory=list)
    given_text: Optional[str] = None
    is_correct: Optional[bool] = None
    score: float = 0.0
    match_percent: Optional[float] = None
    time_spent_sec: int = Field(default=0, ge=0)
    answered_at: datetime


class Session(BaseModel):
    """One user's run through a generated question set."""

    id: str
    user_id: str
    assignment_id: Optional[int] = None
    template_id: Optional[int] = None
    kind: SessionKind
    status: SessionStatus = "not_started"
    rules: SessionRules = Field(default_factory=SessionRules)
    selection: SelectionCriteria = Field(default_factory=SelectionCriteria)

    question_ids: List[str] = Field(default_factory=list)
    current_question_index: int = 0
    shortfall: Dict[str, int] = Field(default_factory=dict)

    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    active_since: Optional[datetime] = None
    total_time_sec: int = 0
    question_started_sec: int = 0

    total_score: float = 0.0
    max_score: float = 0.0
    completion_reason: Optional[CompletionReason] = None

    attempt_number: int = 1
    parent_session_id: Optional[str] = None
    credit_entry_id: Optional[str] = None
    certificate_signaled: bool = False

    version: int = 0
    answers: List[Answer] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_question_id(self) -> Optional[str]:
        if 0 <= self.current_question_index < len(self.question_ids):
            return self.question_ids[self.current_question_index]
        return None

    def answer_for(self, question_id: str) -> Optional[Answer]:
        for answer in self.answers:
            if answer.question_id == question_id:
                return answer
        return None

    def answered_ids(self) -> Set[str]:
        return {answer.question_id for answer in self.answers}

    def active_seconds(self, now: datetime) -> int:
        """Seconds spent in progress, excluding paused stretches."""

        running = 0
        if self.active_since is not None:
            running = max(0, int((as_utc(now) - as_utc(self.active_since)).total_seconds()))
        return self.total_time_sec + running


class LedgerEntry(BaseModel):
    """One immutable credit transaction."""

    id: str
    user_id: str
    transaction_type: TransactionType
    credits: int
    balance_after: int
    description: Optional[str] = None
    source_ref: Optional[str] = None
    interview_session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"frozen": True}


class CreditSummary(BaseModel):
    available: int
    next_expiration: Optional[datetime] = None
    recent_transactions: List[LedgerEntry] = Field(default_factory=list)


class Eligibility(BaseModel):
    eligible: bool
    reason: Optional[IneligibleReason] = None
    detail: str = ""
    retry_after: Optional[datetime] = None


class AttemptHistory(BaseModel):
    completed_count: int = 0
    last_finished_at: Optional[datetime] = None


class SelectionResult(BaseModel):
    question_ids: List[str]
    requested: Dict[str, int]
    selected: Dict[str, int]
    shortfall: Dict[str, int] = Field(default_factory=dict)

    @property
    def is_short(self) -> bool:
        return any(self.shortfall.values())


class SelectionPreview(BaseModel):
    available: Dict[str, int]
    eligible: Dict[str, int]
    total: int


class CertificateSignal(BaseModel):
    session_id: str
    user_id: str
    assignment_id: Optional[int] = None
    score: float
    max_score: float
    signaled_at: datetime


class SummarySlice(BaseModel):
    key: str
    total: int
    correct: int


class SessionSummary(BaseModel):
    session_id: str
    status: SessionStatus
    total_items: int
    answered: int
    correct: int
    incorrect: int
    unanswered: int
    total_score: float
    max_score: float
    total_time_sec: int
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    by_topic: List[SummarySlice] = Field(default_factory=list)
    by_type: List[SummarySlice] = Field(default_factory=list)
    by_level: List[SummarySlice] = Field(default_factory=list)


class Page(BaseModel, Generic[T]):
    items: List[T]
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(cls, rows: Sequence[T], page: int, page_size: int) -> "Page[T]":
        page = max(1, page)
        page_size = max(1, page_size)
        total = len(rows)
        total_pages = math.ceil(total / page_size) if total else 0
        start = (page - 1) * page_size
        return cls(
            items=list(rows[start : start + page_size]),
            page=page,
            page_size=page_size,
            total_items=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        )
