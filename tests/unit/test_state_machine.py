import threading

from engine.types import AnswerPayload, SelectionCriteria, Session, Timers
from services.timer_expiry import remaining_seconds
from storage.audit import list_audit_events


def _interview(make_assignment, user_id="u1", assignment=None, **template_fields):
    fields = {"user_id": user_id}
    fields.update(assignment or {})
    return make_assignment(kind="interview", visibility="private", assignment=fields, **template_fields)


def _choose(option):
    return AnswerPayload(selected_option_ids=[option])


CLOSURE = AnswerPayload(given_text="A closure captures variables from its enclosing scope")
RIGHT = {"s1": _choose("a"), "s2": _choose("b"), "w1": CLOSURE}


# ----------------------------------------------------------------------
# start


def test_start_practice_session(machine, make_assignment, seed_pool, clock):
    assignment = make_assignment()
    outcome = machine.start("u1", assignment.id)
    assert outcome.ok, outcome.error
    session = outcome.value
    assert session.status == "in_progress"
    assert session.current_question_index == 0
    assert session.started_at == clock()
    assert sorted(session.question_ids) == sorted(seed_pool)
    assert session.shortfall == {}
    assert session.rules.resubmission == "overwrite"


def test_start_resumes_existing_active_session(machine, make_assignment, seed_pool, stores):
    assignment = make_assignment()
    first = machine.start("u1", assignment.id).value
    again = machine.start("u1", assignment.id)
    assert again.ok
    assert again.value.id == first.id
    assert again.message == "resumed existing session"
    assert len(stores.sessions.list_for_user("u1")) == 1


def test_unknown_assignment(machine):
    outcome = machine.start("u1", 999)
    assert not outcome.ok
    assert outcome.error.kind == "session_not_found"


def test_wrong_kind_is_not_eligible(machine, make_assignment, seed_pool):
    assignment = make_assignment()
    outcome = machine.start("u1", assignment.id, kind="interview")
    assert outcome.error.kind == "not_eligible"
    assert outcome.error.details["reason"] == "wrong_kind"


def test_private_assignment_for_someone_else(machine, make_assignment, seed_pool, ledger, stores):
    assignment = _interview(make_assignment, user_id="U2")
    ledger.add_credits("U1", 5)
    outcome = machine.start("U1", assignment.id)
    assert outcome.error.kind == "not_eligible"
    assert outcome.error.details["reason"] == "not_assigned_user"
    assert ledger.available_credits("U1") == 5
    assert stores.sessions.list_for_user("U1") == []


def test_interview_without_credits_creates_nothing(machine, make_assignment, seed_pool, stores):
    assignment = _interview(make_assignment)
    outcome = machine.start("u1", assignment.id)
    assert outcome.error.kind == "insufficient_credits"
    assert stores.sessions.list_for_user("u1") == []
    assert stores.ledger.entries("u1") == []


def test_interview_debits_once(machine, make_assignment, seed_pool, ledger):
    assignment = _interview(make_assignment, interview_cost=2)
    ledger.add_credits("u1", 3)
    session = machine.start("u1", assignment.id).value
    assert ledger.available_credits("u1") == 1
    debit = ledger.find(session.credit_entry_id)
    assert debit.transaction_type == "consumption"
    assert debit.interview_session_id == session.id

    assert machine.start("u1", assignment.id).value.id == session.id
    assert ledger.available_credits("u1") == 1


def test_empty_pool_refunds_debit(machine, make_assignment, ledger, stores):
    assignment = _interview(make_assignment)
    ledger.add_credits("u1", 1)
    outcome = machine.start("u1", assignment.id)
    assert outcome.error.kind == "insufficient_question_pool"
    assert outcome.error.details["shortfall"] == {"single_choice": 2, "written": 1}
    assert ledger.available_credits("u1") == 1
    kinds = [entry.transaction_type for entry in stores.ledger.entries("u1")]
    assert kinds == ["refund", "consumption", "purchase"]
    assert stores.sessions.list_for_user("u1") == []


def test_short_sessions_can_be_refused(machine_factory, make_assignment, stores, questions):
    stores.questions.upsert(questions.single("s1"))
    assignment = make_assignment()
    outcome = machine_factory(allow_short_sessions=False).start("u1", assignment.id)
    assert outcome.error.kind == "insufficient_question_pool"

    allowed = machine_factory().start("u1", assignment.id).value
    assert allowed.question_ids == ["s1"]
    assert allowed.shortfall == {"single_choice": 1, "written": 1}


def test_interview_questions_are_not_reused(machine, make_assignment, seed_pool, ledger):
    assignment = _interview(make_assignment)
    ledger.add_credits("u1", 2)
    first = machine.start("u1", assignment.id).value
    machine.submit_answer(first.id, "u1", "s1", _choose("a"))
    machine.submit(first.id, "u1")

    second = machine.start("u1", assignment.id).value
    assert "s1" not in second.question_ids
    assert second.shortfall == {"single_choice": 1}


def test_concurrent_interview_start_yields_one_session(machine_factory, make_assignment, seed_pool, ledger, stores):
    assignment = _interview(make_assignment)
    ledger.add_credits("u1", 2)
    machines = [machine_factory(), machine_factory()]
    barrier = threading.Barrier(2)
    outcomes = []

    def worker(index):
        barrier.wait()
        outcomes.append(machines[index].start("u1", assignment.id))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert all(outcome.ok for outcome in outcomes)
    assert outcomes[0].value.id == outcomes[1].value.id
    assert len(stores.sessions.list_for_user("u1")) == 1
    assert ledger.available_credits("u1") == 1


# ----------------------------------------------------------------------
# answers and navigation


def test_not_started_session_only_accepts_start(machine, stores, seed_pool):
    stores.sessions.create(Session(id="ns", user_id="u1", kind="practice", question_ids=["s1"]))
    for outcome in (
        machine.submit_answer("ns", "u1", "s1", _choose("a")),
        machine.pause("ns", "u1"),
        machine.submit("ns", "u1"),
        machine.finish("ns", "u1"),
        machine.abandon("ns", "u1"),
    ):
        assert outcome.error.kind == "invalid_state_transition"


def test_completed_session_rejects_answers(machine, make_assignment, seed_pool):
    session = machine.start("u1", make_assignment().id).value
    machine.submit(session.id, "u1")
    outcome = machine.submit_answer(session.id, "u1", "s1", _choose("a"))
    assert outcome.error.kind == "invalid_state_transition"


def test_free_navigation_accepts_any_unanswered(machine, make_assignment, seed_pool):
    session = machine.start("u1", make_assignment().id).value
    first, middle, _ = session.question_ids
    updated = machine.submit_answer(session.id, "u1", middle, RIGHT[middle], 12).value
    assert updated.current_question_index == 0
    answer = updated.answer_for(middle)
    assert answer.is_correct is True and answer.time_spent_sec == 12

    updated = machine.submit_answer(session.id, "u1", first, RIGHT[first]).value
    assert updated.current_question_index == 2


def test_linear_navigation_enforces_order(machine, make_assignment, seed_pool):
    session = machine.start("u1", make_assignment(navigation="linear").id).value
    current, following = session.question_ids[0], session.question_ids[1]
    outcome = machine.submit_answer(session.id, "u1", following, _choose("a"))
    assert outcome.error.kind == "question_not_allowed"

    updated = machine.submit_answer(session.id, "u1", current, _choose("a")).value
    assert updated.current_question_index == 1
    assert updated.current_question_id == following


def test_question_outside_session(machine, make_assignment, seed_pool):
    session = machine.start("u1", make_assignment().id).value
    outcome = machine.submit_answer(session.id, "u1", "nope", _choose("a"))
    assert outcome.error.kind == "question_not_allowed"


def test_stale_expected_index(machine, make_assignment, seed_pool):
    session = machine.start("u1", make_assignment(navigation="linear").id).value
    machine.submit_answer(session.id, "u1", session.question_ids[0], _choose("a"), expected_index=0)
    outcome = machine.submit_answer(session.id, "u1", session.question_ids[1], _choose("a"), expected_index=0)
    assert outcome.error.kind == "stale_submission"


def test_practice_resubmission_overwrites(machine, make_assignment, seed_pool):
    session = machine.start("u1", make_assignment().id).value
    machine.submit_answer(session.id, "u1", "s1", _choose("b"))
    updated = machine.submit_answer(session.id, "u1", "s1", _choose("a")).value
    assert len(updated.answers) == 1
    assert updated.answer_for("s1").is_correct is True


def test_interview_resubmission_rejected(machine, make_assignment, seed_pool, ledger):
    ledger.add_credits("u1", 1)
    session = machine.start("u1", _interview(make_assignment).id).value
    machine.submit_answer(session.id, "u1", "s1", _choose("b"))
    outcome = machine.submit_answer(session.id, "u1", "s1", _choose("a"))
    assert outcome.error.kind == "answer_already_recorded"
    stored = machine.get_session(session.id, "u1").value
    assert stored.answer_for("s1").selected_option_ids == ["b"]


def test_other_users_cannot_touch_session(machine, make_assignment, seed_pool):
    session = machine.start("u1", make_assignment().id).value
    assert machine.get_session(session.id, "intruder").error.kind == "session_not_found"
    assert machine.submit_answer(session.id, "intruder", "s1", _choose("a")).error.kind == "session_not_found"


# ----------------------------------------------------------------------
# pause / resume and timers


def test_pause_freezes_time(machine, make_assignment, seed_pool, clock):
    session = machine.start("u1", make_assignment(timers=Timers(total_sec=100)).id).value
    clock.advance(seconds=50)
    paused = machine.pause(session.id, "u1").value
    assert paused.status == "paused" and paused.total_time_sec == 50

    clock.advance(seconds=1000)
    assert machine.get_session(session.id, "u1").ok
    assert machine.submit_answer(session.id, "u1", "s1", _choose("a")).error.kind == "invalid_state_transition"
    assert machine.pause(session.id, "u1").error.kind == "invalid_state_transition"

    resumed = machine.resume(session.id, "u1").value
    assert resumed.status == "in_progress"
    assert remaining_seconds(resumed, clock()) == 50

    clock.advance(seconds=49)
    assert machine.get_session(session.id, "u1").ok
    clock.advance(seconds=1)
    assert machine.get_session(session.id, "u1").error.kind == "session_expired"


def test_resume_requires_paused(machine, make_assignment, seed_pool):
    session = machine.start("u1", make_assignment().id).value
    assert machine.resume(session.id, "u1").error.kind == "invalid_state_transition"


def test_interview_cannot_pause(machine, make_assignment, seed_pool, ledger):
    ledger.add_credits("u1", 1)
    session = machine.start("u1", _interview(make_assignment).id).value
    assert machine.pause(session.id, "u1").error.kind == "invalid_state_transition"


def test_total_timer_expiry_finalizes_on_access(machine, make_assignment, seed_pool, clock):
    session = machine.start("u1", make_assignment(timers=Timers(total_sec=600)).id).value
    machine.submit_answer(session.id, "u1", "s1", _choose("a"))
    clock.advance(seconds=601)

    outcome = machine.submit_answer(session.id, "u1", "s2", _choose("b"))
    assert outcome.error.kind == "session_expired"
    finalized = outcome.value
    assert finalized.status == "completed"
    assert finalized.completion_reason == "timer"
    assert finalized.total_score == 1.0
    assert finalized.answer_for("s2") is None
    assert finalized.total_time_sec == 601

    after = machine.submit_answer(session.id, "u1", "s2", _choose("b"))
    assert after.error.kind == "invalid_state_transition"


def test_per_question_timer(machine, make_assignment, seed_pool, clock):
    session = machine.start("u1", make_assignment(timers=Timers(per_question_sec=60)).id).value
    clock.advance(seconds=30)
    machine.submit_answer(session.id, "u1", session.question_ids[0], _choose("a"))
    clock.advance(seconds=45)
    assert machine.get_session(session.id, "u1").ok
    clock.advance(seconds=20)
    outcome = machine.get_session(session.id, "u1")
    assert outcome.error.kind == "session_expired"
    assert outcome.error.details["timer"] == "per_question"


def test_expired_active_session_is_replaced_on_start(machine, make_assignment, seed_pool, clock):
    assignment = make_assignment(timers=Timers(total_sec=60))
    first = machine.start("u1", assignment.id).value
    clock.advance(minutes=5)
    second = machine.start("u1", assignment.id).value
    assert second.id != first.id
    assert machine.get_session(first.id, "u1").value.completion_reason == "timer"


# ----------------------------------------------------------------------
# finalization


def test_submit_scores_and_finish_is_idempotent(machine, make_assignment, seed_pool):
    session = machine.start("u1", make_assignment().id).value
    machine.submit_answer(session.id, "u1", "s1", _choose("a"))
    machine.submit_answer(session.id, "u1", "s2", _choose("a"))
    machine.submit_answer(session.id, "u1", "w1", CLOSURE)

    done = machine.submit(session.id, "u1").value
    assert done.status == "completed"
    assert done.completion_reason == "submitted"
    assert (done.total_score, done.max_score) == (2.0, 3.0)

    assert machine.submit(session.id, "u1").error.kind == "invalid_state_transition"
    again = machine.finish(session.id, "u1")
    assert again.ok and again.value.version == done.version


def test_finish_from_in_progress(machine, make_assignment, seed_pool):
    session = machine.start("u1", make_assignment().id).value
    done = machine.finish(session.id, "u1").value
    assert done.completion_reason == "finished"
    assert done.total_score == 0.0 and done.max_score == 3.0


def test_certificate_signal_for_certified_interview(machine, make_assignment, seed_pool, ledger, stores):
    ledger.add_credits("u1", 1)
    assignment = _interview(make_assignment, assignment={"certification_enabled": True})
    session = machine.start("u1", assignment.id).value
    machine.submit_answer(session.id, "u1", "s1", _choose("a"))
    done = machine.submit(session.id, "u1").value
    assert done.certificate_signaled is True
    signal = stores.certificates.get(session.id)
    assert signal.score == 1.0 and signal.max_score == 3.0


def test_no_certificate_for_practice(machine, make_assignment, seed_pool, stores):
    session = machine.start("u1", make_assignment(certification_enabled=True).id).value
    done = machine.submit(session.id, "u1").value
    assert done.certificate_signaled is False
    assert stores.certificates.get(session.id) is None


def test_abandon_keeps_credits_by_default(machine, make_assignment, seed_pool, ledger):
    ledger.add_credits("u1", 1)
    session = machine.start("u1", _interview(make_assignment).id).value
    abandoned = machine.abandon(session.id).value
    assert abandoned.status == "abandoned"
    assert ledger.available_credits("u1") == 0
    assert machine.abandon(session.id).error.kind == "invalid_state_transition"


def test_abandon_refund_policy(machine_factory, make_assignment, seed_pool, ledger):
    machine = machine_factory(refund_on_abandon=True)
    ledger.add_credits("u1", 1)
    session = machine.start("u1", _interview(make_assignment).id).value
    machine.abandon(session.id, "u1")
    assert ledger.available_credits("u1") == 1


# ----------------------------------------------------------------------
# retake, listing, summary, audit


def test_retake_builds_lineage(machine, make_assignment, seed_pool):
    assignment = make_assignment()
    first = machine.start("u1", assignment.id).value
    assert machine.retake(first.id, "u1").error.kind == "invalid_state_transition"

    machine.submit(first.id, "u1")
    second = machine.retake(first.id, "u1").value
    assert second.id != first.id
    assert (second.attempt_number, second.parent_session_id) == (2, first.id)

    machine.submit(second.id, "u1")
    third = machine.retake(second.id, "u1").value
    assert (third.attempt_number, third.parent_session_id) == (3, first.id)


def test_retake_respects_attempt_limit(machine, make_assignment, seed_pool):
    assignment = make_assignment(assignment={"max_attempts": 1})
    first = machine.start("u1", assignment.id).value
    machine.submit(first.id, "u1")
    outcome = machine.retake(first.id, "u1")
    assert outcome.error.kind == "not_eligible"
    assert outcome.error.details["reason"] == "max_attempts_reached"


def test_ad_hoc_practice_and_retake(machine, seed_pool):
    criteria = SelectionCriteria(topic_ids=[1], count_single=1)
    session = machine.start_practice("u1", criteria).value
    assert session.assignment_id is None and len(session.question_ids) == 1
    machine.finish(session.id, "u1")
    again = machine.retake(session.id, "u1").value
    assert again.kind == "practice"
    assert again.selection == criteria
    assert again.parent_session_id == session.id


def test_list_sessions_paginates(machine, seed_pool):
    criteria = SelectionCriteria(topic_ids=[1], count_single=1)
    ids = [machine.start_practice("u1", criteria).value.id for _ in range(3)]
    page = machine.list_sessions("u1", page=1, page_size=2).value
    assert page.total_items == 3 and page.has_next
    assert [s.id for s in page.items] == [ids[2], ids[1]]
    assert machine.list_sessions("u1", page=2, page_size=2).value.items[0].id == ids[0]


def test_summary_breakdown(machine, make_assignment, seed_pool):
    session = machine.start("u1", make_assignment().id).value
    machine.submit_answer(session.id, "u1", "s1", _choose("a"))
    machine.submit_answer(session.id, "u1", "w1", CLOSURE)
    summary = machine.summary(session.id, "u1").value
    assert (summary.answered, summary.correct, summary.unanswered) == (2, 2, 1)
    assert (summary.total_score, summary.max_score) == (2.0, 3.0)
    by_type = {item.key: (item.total, item.correct) for item in summary.by_type}
    assert by_type == {"single_choice": (2, 1), "written": (1, 1)}
    assert [(item.key, item.total) for item in summary.by_topic] == [("1", 3)]


def test_audit_events_only_while_live(machine, make_assignment, seed_pool, tmp_db):
    session = machine.start("u1", make_assignment().id).value
    recorded = machine.record_audit_event(session.id, "u1", "tab_switch", {"count": 1})
    assert recorded.ok and recorded.value > 0
    machine.submit(session.id, "u1")
    assert machine.record_audit_event(session.id, "u1", "focus_lost").error.kind == "invalid_state_transition"
    events = list_audit_events(tmp_db, session.id)
    assert [(e["event_type"], e["metadata"]) for e in events] == [("tab_switch", {"count": 1})]


def test_outcome_serializes(machine, make_assignment, seed_pool):
    outcome = machine.start("u1", make_assignment().id)
    payload = outcome.model_dump(mode="json")
    assert payload["ok"] is True
    assert payload["value"]["status"] == "in_progress"
