import os
import sys
import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine
from sqlalchemy.pool import StaticPool

ROOT_DIR = os.path.dirname(os.path.dirname(__file__))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

# keep the app's own engine off the developer database
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_CONNECT_RETRIES", "1")

from main import app, get_session  # noqa: E402


test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
DBSession = Session

DEFAULT_PASSWORD = "SuperSecret123!"


@pytest.fixture(scope="function")
def client():
    """Return a TestClient wired to a fresh in-memory database for each test."""
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)

    def override_get_session():
        with DBSession(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_helpers(client):
    """
    Common auth utilities shared across test modules.
    Provides register/login helpers and a token helper.
    """

    def session_factory():
        """Yield a Session on the test database (use as `for session in ...`)."""
        with DBSession(test_engine) as session:
            yield session

    def register_user(email: str, password: str = DEFAULT_PASSWORD, name: str = "Tester"):
        return client.post(
            "/auth/register",
            json={"email": email, "password": password, "name": name},
        )

    def login_user(email: str, password: str = DEFAULT_PASSWORD):
        return client.post("/auth/login", json={"email": email, "password": password})

    def get_token(email: str, password: str = DEFAULT_PASSWORD) -> str:
        res_reg = register_user(email, password)
        assert res_reg.status_code in (201, 409)
        res_login = login_user(email, password)
        assert res_login.status_code == 200
        data = res_login.json()
        assert "access_token" in data
        return data["access_token"]

    def auth_headers(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    return {
        "register_user": register_user,
        "login_user": login_user,
        "get_token": get_token,
        "auth_headers": auth_headers,
        "session_factory": session_factory,
    }


@pytest.fixture
def headers(auth_helpers):
    """Bearer headers for a freshly registered user."""
    token = auth_helpers["get_token"]("ana@example.com")
    return auth_helpers["auth_headers"](token)


@pytest.fixture
def other_headers(auth_helpers):
    """Bearer headers for a second, unrelated user."""
    token = auth_helpers["get_token"]("bruno@example.com")
    return auth_helpers["auth_headers"](token)
