"""Tests for the SQLite schema and the store classes."""
from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone

import pytest

from engine.errors import StaleSubmission
from engine.interfaces import ActiveSessionConflict
from engine.types import (
    Answer,
    CertificateSignal,
    SelectionCriteria,
    Session,
    SessionAssignment,
    Template,
    Timers,
)
from storage.audit import insert_audit_event, list_audit_events
from storage.migrate import migrate

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _tables(db_path: str):
    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'index')").fetchall()
    finally:
        conn.close()
    return {row[0] for row in rows}


def test_migrate_is_idempotent(tmp_db: str):
    migrate(tmp_db)
    assert os.path.exists(tmp_db)
    names = _tables(tmp_db)
    for expected in (
        "questions",
        "question_options",
        "templates",
        "assignments",
        "group_members",
        "sessions",
        "answers",
        "credit_ledger",
        "certificate_signals",
        "session_audit_events",
        "ux_sessions_one_active",
    ):
        assert expected in names


def test_question_round_trip(stores, questions):
    stores.questions.upsert(questions.multi("m1", correct=("b", "d"), usable_in_interview=False))
    stores.questions.upsert(questions.single("s1", level="advanced"))
    found = stores.questions.get_questions(["s1", "m1", "missing"])
    assert [q.id for q in found] == ["s1", "m1"]
    assert found[1].correct_option_ids() == {"b", "d"}
    assert [o.id for o in found[1].options] == ["a", "b", "c", "d"]

    interview = stores.questions.get_eligible_questions([1], [], "multi_choice", usage="interview")
    assert interview == []
    advanced = stores.questions.get_eligible_questions([1], ["advanced"], "single_choice")
    assert [q.id for q in advanced] == ["s1"]
    assert stores.questions.get_eligible_questions([1], [], "single_choice", exclude_ids=["s1"]) == []


def test_large_exclusion_lists_are_accepted(stores, questions):
    stores.questions.upsert(questions.single("s1"))
    stores.questions.upsert(questions.single("s2"))
    excluded = [f"old-{index}" for index in range(40000)] + ["s2"]
    found = stores.questions.get_eligible_questions([1], [], "single_choice", exclude_ids=excluded)
    assert [q.id for q in found] == ["s1"]


def test_question_upsert_replaces_options(stores, questions):
    stores.questions.upsert(questions.single("s1", correct="a"))
    stores.questions.upsert(questions.single("s1", correct="c"))
    (question,) = stores.questions.get_questions(["s1"])
    assert question.correct_option_ids() == {"c"}
    assert len(question.options) == 3


def test_template_round_trip(stores):
    template = stores.assignments.save_template(
        Template(
            name="Backend basics",
            kind="practice",
            selection=SelectionCriteria(topic_ids=[3, 4], levels=["basic"], count_single=5),
            timers=Timers(total_sec=900),
            navigation="linear",
            max_attempts=2,
            written_threshold=70.0,
        )
    )
    loaded = stores.assignments.get_template(template.id)
    assert loaded == template


def test_interview_template_policy_enforced(stores):
    with pytest.raises(ValueError) as excinfo:
        stores.assignments.save_template(
            Template(
                name="Leaky interview",
                kind="interview",
                selection=SelectionCriteria(topic_ids=[1], count_single=1),
            )
        )
    message = str(excinfo.value)
    assert "aids" in message and "feedback" in message and "pause" in message


def test_template_without_questions_rejected(stores):
    with pytest.raises(ValueError):
        stores.assignments.save_template(Template(name="Empty", kind="practice"))


def test_assignment_requires_template(stores):
    with pytest.raises(ValueError):
        stores.assignments.save_assignment(SessionAssignment(template_id=42, visibility="public"))


def test_assignment_round_trip(make_assignment, stores):
    created = make_assignment(
        visibility="group",
        assignment={
            "group_id": 7,
            "window_start": NOW,
            "window_end": datetime(2026, 3, 9, tzinfo=timezone.utc),
            "cooldown_hours_between_attempts": 12,
        },
    )
    loaded = stores.assignments.get_assignment(created.id)
    assert loaded == created
    assert [a.id for a in stores.assignments.list_assignments()] == [created.id]


def test_group_membership(stores):
    stores.groups.add_member(7, "u1")
    stores.groups.add_member(7, "u1")
    stores.groups.add_member(7, "u2")
    assert stores.groups.is_member(7, "u1")
    assert sorted(stores.groups.members(7)) == ["u1", "u2"]
    stores.groups.remove_member(7, "u1")
    assert not stores.groups.is_member(7, "u1")


def _session(session_id: str, **fields) -> Session:
    values = dict(
        id=session_id,
        user_id="u1",
        kind="practice",
        status="in_progress",
        question_ids=["q1"],
        started_at=NOW,
        active_since=NOW,
    )
    values.update(fields)
    return Session(**values)


def test_one_active_session_per_assignment(make_assignment, stores):
    assignment = make_assignment()
    stores.sessions.create(_session("a", assignment_id=assignment.id))
    with pytest.raises(ActiveSessionConflict):
        stores.sessions.create(_session("b", assignment_id=assignment.id, status="paused"))

    # Finished attempts and ad-hoc sessions do not count.
    stores.sessions.create(_session("c", assignment_id=assignment.id, status="completed"))
    stores.sessions.create(_session("d"))
    stores.sessions.create(_session("e"))
    assert stores.sessions.find_active("u1", assignment.id).id == "a"


def test_stale_version_is_rejected(stores):
    created = stores.sessions.create(_session("a"))
    first = stores.sessions.update(created.model_copy(update={"current_question_index": 1}))
    assert first.version == 1
    with pytest.raises(StaleSubmission):
        stores.sessions.update(created.model_copy(update={"current_question_index": 2}))
    assert stores.sessions.get("a").current_question_index == 1


def test_save_answer_raises_when_session_vanishes(stores, monkeypatch):
    created = stores.sessions.create(_session("a"))
    answer = Answer(id="ans-1", session_id="a", question_id="q1", question_type="single_choice", answered_at=NOW)
    monkeypatch.setattr(stores.sessions, "get", lambda session_id: None)
    with pytest.raises(StaleSubmission):
        stores.sessions.save_answer(created.model_copy(update={"current_question_index": 1}), answer)


def test_session_round_trip(stores):
    created = stores.sessions.create(
        _session(
            "a",
            shortfall={"written": 2},
            selection=SelectionCriteria(topic_ids=[1], count_single=1, count_written=2),
            credit_entry_id="debit-1",
        )
    )
    loaded = stores.sessions.get("a")
    assert loaded == created
    assert loaded.started_at.tzinfo is not None


def test_attempt_history(make_assignment, stores):
    assignment = make_assignment()
    stores.sessions.create(_session("a", assignment_id=assignment.id, status="completed", finished_at=NOW))
    later = datetime(2026, 3, 3, tzinfo=timezone.utc)
    stores.sessions.create(_session("b", assignment_id=assignment.id, status="completed", finished_at=later))
    stores.sessions.create(_session("c", assignment_id=assignment.id, status="abandoned", finished_at=later))
    history = stores.sessions.attempt_history("u1", assignment.id)
    assert history.completed_count == 2
    assert history.last_finished_at == later


def test_certificate_signal_recorded_once(stores):
    signal = CertificateSignal(session_id="a", user_id="u1", score=4.0, max_score=5.0, signaled_at=NOW)
    stores.certificates.signal(signal)
    stores.certificates.signal(signal.model_copy(update={"score": 1.0}))
    assert stores.certificates.get("a") == signal
    assert stores.certificates.get("missing") is None


def test_audit_events_round_trip(tmp_db: str):
    first = insert_audit_event(tmp_db, session_id="a", user_id="u1", event_type="copy_attempt")
    second = insert_audit_event(
        tmp_db,
        session_id="a",
        user_id="u1",
        event_type="window_resize",
        metadata={"width": 800},
    )
    assert second > first
    events = list_audit_events(tmp_db, "a")
    assert [e["event_type"] for e in events] == ["copy_attempt", "window_resize"]
    assert events[1]["metadata"] == {"width": 800}
    assert list_audit_events(tmp_db, "b") == []


def test_audit_event_type_is_validated(tmp_db: str):
    with pytest.raises(ValueError):
        insert_audit_event(tmp_db, session_id="a", user_id="u1", event_type="teleport")
