"""Score aggregation and per-session summaries."""
from __future__ import annotations

from collections import OrderedDict
from typing import Dict, List, Mapping, Tuple

from engine.evaluator import max_points
from engine.types import Question, Session, SessionSummary, SummarySlice


def _round2(value: float) -> float:
    """Round a float to two decimal places with stable formatting."""
    return float(f"{value:.2f}")


def score_totals(session: Session, questions: Mapping[str, Question]) -> Tuple[float, float]:
    """Return ``(total_score, max_score)`` for the session's question set.

    Unanswered questions add nothing to the total but still count toward the
    maximum.
    """

    total = sum(answer.score for answer in session.answers)
    maximum = 0.0
    for question_id in session.question_ids:
        question = questions.get(question_id)
        if question is not None:
            maximum += max_points(question.type, session.rules)
            continue
        answer = session.answer_for(question_id)
        maximum += max_points(answer.question_type, session.rules) if answer else 1.0
    return _round2(total), _round2(maximum)


def _slices(buckets: Dict[str, List[int]]) -> List[SummarySlice]:
    return [SummarySlice(key=key, total=counts[0], correct=counts[1]) for key, counts in buckets.items()]


def summarize(session: Session, questions: Mapping[str, Question]) -> SessionSummary:
    """Counts plus topic/type/level breakdowns for a session."""

    by_topic: Dict[str, List[int]] = OrderedDict()
    by_type: Dict[str, List[int]] = OrderedDict()
    by_level: Dict[str, List[int]] = OrderedDict()

    answered = correct = 0
    for question_id in session.question_ids:
        answer = session.answer_for(question_id)
        question = questions.get(question_id)
        is_correct = bool(answer and answer.is_correct)
        if answer is not None:
            answered += 1
            correct += int(is_correct)
        if question is None:
            continue
        for buckets, key in (
            (by_topic, str(question.topic_id)),
            (by_type, question.type),
            (by_level, question.level),
        ):
            counts = buckets.setdefault(key, [0, 0])
            counts[0] += 1
            counts[1] += int(is_correct)

    total_score, max_score = score_totals(session, questions)
    if session.is_terminal:
        total_score, max_score = session.total_score, session.max_score
    total_items = len(session.question_ids)
    return SessionSummary(
        session_id=session.id,
        status=session.status,
        total_items=total_items,
        answered=answered,
        correct=correct,
        incorrect=answered - correct,
        unanswered=total_items - answered,
        total_score=total_score,
        max_score=max_score,
        total_time_sec=session.total_time_sec,
        started_at=session.started_at,
        finished_at=session.finished_at,
        by_topic=_slices(by_topic),
        by_type=_slices(by_type),
        by_level=_slices(by_level),
    )


__all__ = ["score_totals", "summarize"]
