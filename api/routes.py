"""FastAPI routes for practice/interview sessions, credits and assignments."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.encoders import jsonable_encoder

from api.deps import Engine, get_engine
from api.schemas import (
    AnswerReq,
    AnswerView,
    AuditEventReq,
    AuditEventResp,
    CreditsResp,
    OptionView,
    QuestionView,
    SessionPageResp,
    SessionResp,
    SessionView,
    StartInterviewReq,
    StartPracticeReq,
    TopUpReq,
)
from config.settings import settings
from engine.errors import ErrorKind, Outcome
from engine.types import (
    AnswerPayload,
    Eligibility,
    LedgerEntry,
    Page,
    SelectionPreview,
    Session,
    SessionSummary,
)
from services.timer_expiry import remaining_seconds


router = APIRouter(prefix="/api")

_STATUS_BY_KIND: Dict[ErrorKind, int] = {
    "not_eligible": 403,
    "insufficient_credits": 402,
    "insufficient_question_pool": 409,
    "invalid_state_transition": 409,
    "answer_already_recorded": 409,
    "stale_submission": 409,
    "question_not_allowed": 422,
    "session_not_found": 404,
    "session_expired": 410,
}


def _session_view(engine: Engine, session: Session) -> SessionView:
    reveal = session.rules.feedback == "immediate" or session.is_terminal
    answers = [
        AnswerView(
            question_id=answer.question_id,
            question_type=answer.question_type,
            selected_option_ids=answer.selected_option_ids,
            given_text=answer.given_text,
            time_spent_sec=answer.time_spent_sec,
            answered_at=answer.answered_at,
            is_correct=answer.is_correct if reveal else None,
            score=answer.score if reveal else None,
            match_percent=answer.match_percent if reveal else None,
        )
        for answer in session.answers
    ]

    current = None
    if not session.is_terminal and session.current_question_id:
        found = engine.questions.get_questions([session.current_question_id])
        if found:
            question = found[0]
            current = QuestionView(
                id=question.id,
                topic_id=question.topic_id,
                type=question.type,
                level=question.level,
                text=question.text,
                options=[OptionView(id=option.id, text=option.text) for option in question.options],
            )

    return SessionView(
        id=session.id,
        kind=session.kind,
        status=session.status,
        assignment_id=session.assignment_id,
        navigation=session.rules.navigation,
        feedback=session.rules.feedback,
        allow_pause=session.rules.allow_pause,
        question_ids=session.question_ids,
        current_question_index=session.current_question_index,
        current_question=current,
        shortfall=session.shortfall,
        answers=answers,
        started_at=session.started_at,
        paused_at=session.paused_at,
        finished_at=session.finished_at,
        total_time_sec=session.total_time_sec,
        remaining_time_sec=None if session.is_terminal else remaining_seconds(session, engine.clock()),
        total_score=session.total_score if session.is_terminal else None,
        max_score=session.max_score if session.is_terminal else None,
        completion_reason=session.completion_reason,
        attempt_number=session.attempt_number,
        parent_session_id=session.parent_session_id,
        certificate_signaled=session.certificate_signaled,
    )


def _unwrap(engine: Engine, outcome: Outcome) -> Any:
    if outcome.ok:
        return outcome.value
    error = outcome.error
    detail: Dict[str, Any] = {"kind": error.kind, "message": error.message, **error.details}
    if error.kind == "session_expired" and isinstance(outcome.value, Session):
        detail["session"] = _session_view(engine, outcome.value)
    raise HTTPException(status_code=_STATUS_BY_KIND[error.kind], detail=jsonable_encoder(detail))


def _session_resp(engine: Engine, outcome: Outcome) -> SessionResp:
    session = _unwrap(engine, outcome)
    return SessionResp(session=_session_view(engine, session), message=outcome.message)


# ----------------------------------------------------------------------
# Sessions


@router.post("/sessions/practice", response_model=SessionResp, status_code=201)
def start_practice(
    req: StartPracticeReq,
    x_user_id: str = Header(...),
    engine: Engine = Depends(get_engine),
) -> SessionResp:
    if req.assignment_id is not None:
        outcome = engine.machine.start(x_user_id, req.assignment_id, kind="practice")
    else:
        outcome = engine.machine.start_practice(x_user_id, req.criteria)
    return _session_resp(engine, outcome)


@router.post("/sessions/interview", response_model=SessionResp, status_code=201)
def start_interview(
    req: StartInterviewReq,
    x_user_id: str = Header(...),
    engine: Engine = Depends(get_engine),
) -> SessionResp:
    return _session_resp(engine, engine.machine.start(x_user_id, req.assignment_id, kind="interview"))


@router.get("/sessions", response_model=SessionPageResp)
def list_sessions(
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1, le=100),
    x_user_id: str = Header(...),
    engine: Engine = Depends(get_engine),
) -> SessionPageResp:
    result: Page[Session] = _unwrap(
        engine,
        engine.machine.list_sessions(x_user_id, page, page_size or settings.HISTORY_PAGE_SIZE),
    )
    return SessionPageResp(
        items=[_session_view(engine, session) for session in result.items],
        page=result.page,
        page_size=result.page_size,
        total_items=result.total_items,
        total_pages=result.total_pages,
        has_next=result.has_next,
        has_previous=result.has_previous,
    )


@router.get("/sessions/{session_id}", response_model=SessionResp)
def get_session(session_id: str, x_user_id: str = Header(...), engine: Engine = Depends(get_engine)) -> SessionResp:
    return _session_resp(engine, engine.machine.get_session(session_id, x_user_id))


@router.post("/sessions/{session_id}/answers", response_model=SessionResp)
def submit_answer(
    session_id: str,
    req: AnswerReq,
    x_user_id: str = Header(...),
    engine: Engine = Depends(get_engine),
) -> SessionResp:
    outcome = engine.machine.submit_answer(
        session_id,
        x_user_id,
        req.question_id,
        AnswerPayload(selected_option_ids=req.selected_option_ids, given_text=req.given_text),
        req.time_spent_sec,
        expected_index=req.expected_index,
    )
    return _session_resp(engine, outcome)


@router.post("/sessions/{session_id}/pause", response_model=SessionResp)
def pause(session_id: str, x_user_id: str = Header(...), engine: Engine = Depends(get_engine)) -> SessionResp:
    return _session_resp(engine, engine.machine.pause(session_id, x_user_id))


@router.post("/sessions/{session_id}/resume", response_model=SessionResp)
def resume(session_id: str, x_user_id: str = Header(...), engine: Engine = Depends(get_engine)) -> SessionResp:
    return _session_resp(engine, engine.machine.resume(session_id, x_user_id))


@router.post("/sessions/{session_id}/submit", response_model=SessionResp)
def submit(session_id: str, x_user_id: str = Header(...), engine: Engine = Depends(get_engine)) -> SessionResp:
    return _session_resp(engine, engine.machine.submit(session_id, x_user_id))


@router.post("/sessions/{session_id}/finish", response_model=SessionResp)
def finish(session_id: str, x_user_id: str = Header(...), engine: Engine = Depends(get_engine)) -> SessionResp:
    return _session_resp(engine, engine.machine.finish(session_id, x_user_id))


@router.post("/sessions/{session_id}/retake", response_model=SessionResp, status_code=201)
def retake(session_id: str, x_user_id: str = Header(...), engine: Engine = Depends(get_engine)) -> SessionResp:
    return _session_resp(engine, engine.machine.retake(session_id, x_user_id))


@router.get("/sessions/{session_id}/summary", response_model=SessionSummary)
def summary(session_id: str, x_user_id: str = Header(...), engine: Engine = Depends(get_engine)) -> SessionSummary:
    return _unwrap(engine, engine.machine.summary(session_id, x_user_id))


@router.post("/sessions/{session_id}/audit-events", response_model=AuditEventResp, status_code=201)
def record_audit_event(
    session_id: str,
    req: AuditEventReq,
    x_user_id: str = Header(...),
    engine: Engine = Depends(get_engine),
) -> AuditEventResp:
    event_id = _unwrap(
        engine,
        engine.machine.record_audit_event(session_id, x_user_id, req.event_type, req.metadata),
    )
    return AuditEventResp(id=event_id, session_id=session_id, event_type=req.event_type)


# ----------------------------------------------------------------------
# Credits


@router.get("/credits", response_model=CreditsResp)
def get_credits(x_user_id: str = Header(...), engine: Engine = Depends(get_engine)) -> CreditsResp:
    snapshot = engine.ledger.summary(x_user_id)
    return CreditsResp(user_id=x_user_id, **snapshot.model_dump())


@router.get("/credits/history", response_model=Page[LedgerEntry])
def credit_history(
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1, le=100),
    x_user_id: str = Header(...),
    engine: Engine = Depends(get_engine),
) -> Page[LedgerEntry]:
    return engine.ledger.history(x_user_id, page, page_size or settings.HISTORY_PAGE_SIZE)


@router.post("/credits/top-up", response_model=LedgerEntry, status_code=201)
def top_up(req: TopUpReq, x_user_id: str = Header(...), engine: Engine = Depends(get_engine)) -> LedgerEntry:
    return engine.ledger.add_credits(
        x_user_id,
        req.credits,
        bonus=req.bonus,
        expires_at=req.expires_at,
        source_ref=req.source_ref,
        description=req.description,
    )


# ----------------------------------------------------------------------
# Assignments


@router.get("/assignments/{assignment_id}/eligibility", response_model=Eligibility)
def eligibility(assignment_id: int, x_user_id: str = Header(...), engine: Engine = Depends(get_engine)) -> Eligibility:
    return _unwrap(engine, engine.machine.eligibility(x_user_id, assignment_id))


@router.get("/assignments/{assignment_id}/preview", response_model=SelectionPreview)
def preview(
    assignment_id: int,
    x_user_id: str = Header(...),
    engine: Engine = Depends(get_engine),
) -> SelectionPreview:
    return _unwrap(engine, engine.machine.preview(assignment_id, x_user_id))
