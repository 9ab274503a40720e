"""
Test configuration: in-memory database, a small seeded organization and
logged-in clients per role.

The app's module engine is swapped for an in-memory SQLite engine per test,
so no test touches a file database.
"""

from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from planbar import db
from planbar.main import app
from planbar.models import Organization, User, Team, TeamMember, Ticket, SubTask
from planbar.security import hash_password

PASSWORD = "geheim123"

# Wednesday; every API test pins ``ref`` to it.
REF_DATE = date(2026, 3, 4)


@pytest.fixture
def engine():
    """Fresh in-memory database installed as the app engine."""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(test_engine)
    original = db.engine
    db.use_engine(test_engine)
    yield test_engine
    db.use_engine(original)
    test_engine.dispose()


@pytest.fixture
def seeded(engine):
    """
    One organization with three roles plus a user from a second organization.

    - anna (admin): 40h / 100%, no tasks
    - ben (koordinator): memberships 20h@100% (Entwicklung) + 10h@50% (Betrieb) = 25h
    - clara (member): 40h / 80% = 32h, two open subtasks (8h, 100h)
    - olga: other organization
    """
    pw = hash_password(PASSWORD)
    with db.get_session() as session:
        org = Organization(name="Test GmbH")
        other = Organization(name="Andere AG")
        session.add_all([org, other])
        session.commit()
        session.refresh(org)
        session.refresh(other)

        dev = Team(organization_id=org.id, name="Entwicklung")
        ops = Team(organization_id=org.id, name="Betrieb", color="#f97316")
        session.add_all([dev, ops])
        session.commit()
        session.refresh(dev)
        session.refresh(ops)

        anna = User(organization_id=org.id, email="anna@example.com", name="Anna", role="admin",
                    password_hash=pw, weekly_hours=40, workload_percent=100)
        ben = User(organization_id=org.id, email="ben@example.com", name="Ben", role="koordinator",
                   password_hash=pw, weekly_hours=40, workload_percent=100, team_id=dev.id)
        clara = User(organization_id=org.id, email="clara@example.com", name="Clara", role="member",
                     password_hash=pw, weekly_hours=40, workload_percent=80, team_id=dev.id)
        olga = User(organization_id=other.id, email="olga@example.com", name="Olga", role="admin",
                    password_hash=pw, weekly_hours=40, workload_percent=100)
        session.add_all([anna, ben, clara, olga])
        session.commit()
        for u in (anna, ben, clara, olga):
            session.refresh(u)

        session.add_all([
            TeamMember(team_id=dev.id, user_id=ben.id, weekly_hours=20, workload_percent=100),
            TeamMember(team_id=ops.id, user_id=ben.id, weekly_hours=10, workload_percent=50),
        ])

        ticket = Ticket(organization_id=org.id, title="Relaunch", created_by_id=anna.id,
                        assigned_to_id=ben.id, team_id=dev.id)
        session.add(ticket)
        session.commit()
        session.refresh(ticket)

        small = SubTask(ticket_id=ticket.id, title="Konzept", estimated_hours=8,
                        due_date=date(2026, 3, 10), assignee_id=clara.id, position=0)
        big = SubTask(ticket_id=ticket.id, title="Umsetzung", estimated_hours=100,
                      due_date=date(2026, 3, 12), assignee_id=clara.id, position=1)
        session.add_all([small, big])
        session.commit()
        session.refresh(small)
        session.refresh(big)

        return {
            "org": org.id,
            "other_org": other.id,
            "dev": dev.id,
            "ops": ops.id,
            "anna": anna.id,
            "ben": ben.id,
            "clara": clara.id,
            "olga": olga.id,
            "ticket": ticket.id,
            "small_task": small.id,
            "big_task": big.id,
        }


@pytest.fixture
def client(engine):
    """Anonymous client."""
    return TestClient(app)


@pytest.fixture
def login(seeded):
    """Factory returning a TestClient logged in as the given e-mail."""

    def _login(email: str, password: str = PASSWORD) -> TestClient:
        c = TestClient(app)
        resp = c.post("/login", data={"email": email, "password": password}, follow_redirects=False)
        assert resp.status_code == 302
        assert "err" not in resp.headers["location"]
        return c

    return _login


@pytest.fixture
def admin_client(login):
    return login("anna@example.com")


@pytest.fixture
def koordinator_client(login):
    return login("ben@example.com")


@pytest.fixture
def member_client(login):
    return login("clara@example.com")
