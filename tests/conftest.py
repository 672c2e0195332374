import os
import random
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from api.deps import build_engine
from config.settings import settings
from engine.ledger import CreditLedger
from engine.selector import QuestionSelector
from engine.state_machine import SessionStateMachine
from engine.types import Question, QuestionOption, SelectionCriteria, SessionAssignment, Template
from engine.visibility import AssignmentVisibilityResolver
from storage.audit import insert_audit_event
from storage.certificates import CertificateStore
from storage.groups import GroupStore
from storage.ledger import LedgerStore
from storage.migrate import migrate
from storage.questions import QuestionPoolStore
from storage.sessions import SessionStore
from storage.templates import AssignmentStore


class FixedClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture(autouse=True)
def tmp_db(monkeypatch):
    td = tempfile.TemporaryDirectory()
    db_path = os.path.join(td.name, "test.db")
    monkeypatch.setattr(settings, "DB_PATH", db_path, raising=False)
    migrate(db_path)
    build_engine.cache_clear()
    try:
        yield db_path
    finally:
        build_engine.cache_clear()
        td.cleanup()


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def stores(tmp_db):
    return SimpleNamespace(
        questions=QuestionPoolStore(tmp_db),
        assignments=AssignmentStore(tmp_db),
        groups=GroupStore(tmp_db),
        sessions=SessionStore(tmp_db),
        ledger=LedgerStore(tmp_db),
        certificates=CertificateStore(tmp_db),
    )


@pytest.fixture
def ledger(stores, clock):
    return CreditLedger(stores.ledger, clock=clock)


@pytest.fixture
def machine_factory(stores, ledger, clock, tmp_db):
    def _build(**overrides):
        options = dict(
            assignments=stores.assignments,
            questions=stores.questions,
            sessions=stores.sessions,
            ledger=ledger,
            resolver=AssignmentVisibilityResolver(stores.groups, stores.sessions, clock=clock),
            selector=QuestionSelector(stores.questions, rng=random.Random(7)),
            certificates=stores.certificates,
            audit=lambda **data: insert_audit_event(tmp_db, **data),
            clock=clock,
        )
        options.update(overrides)
        return SessionStateMachine(**options)

    return _build


@pytest.fixture
def machine(machine_factory):
    return machine_factory()


def single(qid, topic=1, level="basic", correct="a", **extra):
    return Question(
        id=qid,
        topic_id=topic,
        type="single_choice",
        level=level,
        text=f"Question {qid}",
        options=(
            QuestionOption(id="a", text="first", is_correct=correct == "a"),
            QuestionOption(id="b", text="second", is_correct=correct == "b"),
            QuestionOption(id="c", text="third", is_correct=correct == "c"),
        ),
        **extra,
    )


def multi(qid, topic=1, level="basic", correct=("a", "b"), **extra):
    return Question(
        id=qid,
        topic_id=topic,
        type="multi_choice",
        level=level,
        text=f"Question {qid}",
        options=tuple(
            QuestionOption(id=oid, text=f"option {oid}", is_correct=oid in correct) for oid in ("a", "b", "c", "d")
        ),
        **extra,
    )


def written(qid, answer="A closure captures variables from its enclosing scope", topic=1, level="basic", **extra):
    return Question(
        id=qid,
        topic_id=topic,
        type="written",
        level=level,
        text=f"Question {qid}",
        official_answer=answer,
        **extra,
    )


@pytest.fixture
def questions():
    return SimpleNamespace(single=single, multi=multi, written=written)


@pytest.fixture
def seed_pool(stores):
    """Two single-choice questions and one written question on topic 1."""

    for question in (single("s1"), single("s2", correct="b"), written("w1")):
        stores.questions.upsert(question)
    return ["s1", "s2", "w1"]


@pytest.fixture
def make_assignment(stores):
    def _make(kind="practice", visibility="public", selection=None, assignment=None, **template_fields):
        if kind == "interview":
            defaults = dict(
                show_hints=False,
                show_sources=False,
                show_glossary=False,
                feedback="end",
                allow_pause=False,
                visibility_default="private",
            )
            defaults.update(template_fields)
            template_fields = defaults
        template = stores.assignments.save_template(
            Template(
                name=f"{kind} template",
                kind=kind,
                selection=selection or SelectionCriteria(topic_ids=[1], count_single=2, count_written=1),
                **template_fields,
            )
        )
        fields = dict(template_id=template.id, visibility=visibility)
        fields.update(assignment or {})
        return stores.assignments.save_assignment(SessionAssignment(**fields))

    return _make
