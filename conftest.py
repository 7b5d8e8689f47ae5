import os

# Must be set before config/core.db are imported.
os.environ["TESTING"] = "true"
os.environ["REDIS_ENABLED"] = "false"
os.environ["REALTIME_BACKEND"] = "memory"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from contextlib import ExitStack, contextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import create_access_token
from core.db import get_db
from core.rate_limit import default_rate_limiter
from models import Base, User
from routers.dependencies import get_current_user
from routers.messaging import fanout, realtime
from routers.messaging.api import router as messaging_router

TEST_USERS = [
    {"account_id": 1000000001, "username": "alice", "full_name": "Alice Ferreira"},
    {"account_id": 1000000002, "username": "bruno", "full_name": "Bruno Costa"},
    {"account_id": 1000000003, "username": "chen", "full_name": "Chen Wei"},
    {"account_id": 1000000004, "username": "dara", "full_name": "Dara Okafor"},
    {"account_id": 1000000009, "username": "moderator", "full_name": "Trust & Safety", "is_admin": True},
]


@pytest.fixture(scope="session")
def test_engine():
    """Single shared in-memory SQLite database"""
    return create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture(scope="function")
def test_db(test_engine):
    """Create all tables before each test and drop them after"""
    Base.metadata.drop_all(bind=test_engine)
    Base.metadata.create_all(bind=test_engine)

    TestingSessionLocal = sessionmaker(bind=test_engine, autoflush=False)
    db = TestingSessionLocal()
    try:
        db.add_all(
            [
                User(
                    account_id=row["account_id"],
                    email=f"{row['username']}@travelconnect.test",
                    username=row["username"],
                    full_name=row["full_name"],
                    is_admin=row.get("is_admin", False),
                )
                for row in TEST_USERS
            ]
        )
        db.commit()
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def users(test_db):
    rows = test_db.query(User).order_by(User.account_id).all()
    return {user.username: user for user in rows}


@pytest.fixture(autouse=True)
def _reset_shared_state():
    default_rate_limiter.reset()
    fanout.manager.reset()
    yield
    default_rate_limiter.reset()
    fanout.manager.reset()


def _bearer_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.account_id)}"}


@pytest.fixture
def auth_headers():
    """Build Authorization headers carrying a freshly signed token for a user."""
    return _bearer_headers


@pytest.fixture
def client_for(test_db):
    """
    Factory returning a TestClient authenticated as the given user through a
    get_current_user override, like the per-user clients in the endpoint tests.
    """
    stack = ExitStack()
    apps = []

    def override_get_db():
        yield test_db

    def _make(user):
        app = FastAPI()
        app.include_router(messaging_router)
        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_user] = lambda: user
        apps.append(app)
        return stack.enter_context(TestClient(app))

    with stack:
        yield _make

    for app in apps:
        app.dependency_overrides = {}


@pytest.fixture
def app(test_db, monkeypatch):
    """Full application with real bearer-token auth; only the database is swapped."""
    from main import app as main_app

    def override_get_db():
        yield test_db

    @contextmanager
    def test_db_context():
        yield test_db

    main_app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(realtime, "get_db_context", test_db_context)
    yield main_app
    main_app.dependency_overrides = {}


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client
