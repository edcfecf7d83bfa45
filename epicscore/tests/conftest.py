from __future__ import annotations

import uuid
from dataclasses import dataclass

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from epicscore import services
from epicscore.config import DEFAULT_ROLES
from epicscore.db import enable_foreign_keys, seed_roles
from epicscore.models import Base
from epicscore.repository import Repository

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_db():
    """In-memory database shared by every session through StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_foreign_keys(engine)
    Base.metadata.create_all(engine)
    seed_roles(engine, DEFAULT_ROLES)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    yield engine, TestSession
    engine.dispose()


@pytest.fixture()
def session(test_db):
    _, TestSession = test_db
    sess = TestSession()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def repo(session: Session) -> Repository:
    return Repository(session)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Fixtures: one team of three
# ---------------------------------------------------------------------------


@dataclass
class Crew:
    team_id: uuid.UUID
    alice_id: uuid.UUID
    bob_id: uuid.UUID
    carol_id: uuid.UUID
    backend_role_id: uuid.UUID
    qa_role_id: uuid.UUID


@pytest.fixture()
def crew(test_db) -> Crew:
    """Team "Core": Alice and Bob are backend developers, Carol is QA. All weigh 100."""
    _, TestSession = test_db
    sess = TestSession()
    repo = Repository(sess)
    team = services.create_team(repo, "Core", "Core platform team")
    backend = repo.find_role_by_name("Backend developer")
    qa = repo.find_role_by_name("QA engineer")
    people = {}
    for handle, first, last, role in (
        ("alice", "Alice", "Anders", backend),
        ("bob", "Bob", "Brown", backend),
        ("carol", "Carol", "Clark", qa),
    ):
        p = services.add_participant(repo, handle, first, last, 100)
        services.assign_role(repo, p.id, role.id)
        services.add_to_team(repo, p.id, team.id)
        people[handle] = p.id
    result = Crew(team.id, people["alice"], people["bob"], people["carol"], backend.id, qa.id)
    sess.close()
    return result


@pytest.fixture()
def open_epic(test_db, crew: Crew):
    """Factory: create an epic with the given risks and open it for scoring."""
    _, TestSession = test_db

    def make(number: str = "EP-1", risks: tuple[str, ...] = (), start: bool = True) -> tuple[uuid.UUID, list[uuid.UUID]]:
        sess = TestSession()
        try:
            repo = Repository(sess)
            epic = services.add_epic(repo, crew.team_id, number, f"Epic {number}", "")
            risk_ids = [services.add_risk(repo, epic.id, text).id for text in risks]
            if start:
                services.start_scoring(repo, epic.id)
            return epic.id, risk_ids
        finally:
            sess.close()

    return make
