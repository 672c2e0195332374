import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.deps import Engine, get_engine
from api.routes import router


@pytest.fixture
def engine(machine, ledger, stores, clock):
    return Engine(
        machine=machine,
        ledger=ledger,
        questions=stores.questions,
        assignments=stores.assignments,
        clock=clock,
    )


@pytest.fixture
def client(engine):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_engine] = lambda: engine
    return TestClient(app)


@pytest.fixture
def as_user():
    def _headers(user_id="u1"):
        return {"X-User-Id": user_id}

    return _headers
