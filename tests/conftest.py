"""
Gatekeeper - Test Configuration

Pytest fixtures for authentication testing.
Provides an in-memory database, a controllable clock, a recording
message dispatcher, the service itself and an HTTP client.
"""

from datetime import timedelta
from typing import Generator, Optional

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session as DBSession, SQLModel

from gatekeeper.app import create_app
from gatekeeper.auth.database import get_engine, get_session_factory, init_db
from gatekeeper.auth.delivery import DispatchRequest, MessagePurpose
from gatekeeper.auth.models import Account, AccountStatus, Role
from gatekeeper.auth.password import hash_password
from gatekeeper.auth.service import AuthService
from gatekeeper.auth.tokens import TokenIssuer
from gatekeeper.clock import utcnow
from gatekeeper.config import AuthPolicy, Settings


TEST_DATABASE_URL = "sqlite:///:memory:"
TEST_PASSWORD = "P@ssw0rd!"


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class RecordingDispatcher:
    """Keeps every dispatched message; can be told to fail."""

    def __init__(self):
        self.sent: list[DispatchRequest] = []
        self.fail = False

    async def dispatch(self, request: DispatchRequest) -> None:
        if self.fail:
            raise ConnectionError("mail relay unavailable")
        self.sent.append(request)

    def last_code(self, email: str, purpose: MessagePurpose) -> Optional[str]:
        for message in reversed(self.sent):
            if message.to_email == email and message.purpose == purpose:
                return message.code
        return None


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        ACCESS_TOKEN_SECRET="test-access-secret",
        REFRESH_TOKEN_SECRET="test-refresh-secret",
        DATABASE_URL=TEST_DATABASE_URL,
    )


@pytest.fixture
def policy() -> AuthPolicy:
    # Minimum bcrypt cost keeps the suite fast
    return AuthPolicy(bcrypt_rounds=4)


@pytest.fixture
def test_engine():
    """Create a fresh in-memory database for each test."""
    engine = get_engine(TEST_DATABASE_URL)
    init_db(engine)

    yield engine

    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(test_engine) -> Generator[DBSession, None, None]:
    with DBSession(test_engine) as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def issuer(test_settings, policy) -> TokenIssuer:
    return TokenIssuer.from_settings(test_settings, policy)


@pytest.fixture
def service(test_engine, policy, issuer, dispatcher, clock) -> AuthService:
    return AuthService(
        session_factory=get_session_factory(test_engine),
        policy=policy,
        issuer=issuer,
        dispatcher=dispatcher,
        clock=clock,
    )


@pytest.fixture
def client(test_settings, test_engine, policy, dispatcher, clock) -> Generator[TestClient, None, None]:
    """Create a test client backed by the test database."""
    app = create_app(
        settings=test_settings,
        engine=test_engine,
        policy=policy,
        dispatcher=dispatcher,
        clock=clock,
        sweep_interval=0,
    )
    with TestClient(app) as c:
        yield c


def make_account(
    db: DBSession,
    email: str = "teacher@example.com",
    password: str = TEST_PASSWORD,
    role: Role = Role.TEACHER,
    verified: bool = True,
    two_factor: bool = False,
    **fields,
) -> Account:
    """Insert an account directly, bypassing signup."""
    now = utcnow()
    account = Account(
        email=email,
        password_hash=hash_password(password, rounds=4),
        first_name="Test",
        last_name="User",
        role=role,
        status=fields.pop("status", AccountStatus.PENDING),
        is_email_verified=verified,
        is_two_factor_enabled=two_factor,
        created_at=now,
        updated_at=now,
        **fields,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture
def verified_account(db_session) -> Account:
    """Verified teacher account without 2FA."""
    return make_account(db_session)


@pytest.fixture
def two_factor_account(db_session) -> Account:
    """Verified teacher account with email 2FA."""
    return make_account(db_session, email="secure@example.com", two_factor=True)


def login_user(client: TestClient, email: str, password: str = TEST_PASSWORD) -> Optional[dict]:
    """Helper function to login and return the response body."""
    response = client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password},
    )
    return response.json() if response.status_code == 200 else None


def auth_headers(access_token: str) -> dict:
    """Create authorization headers for authenticated requests."""
    return {"Authorization": f"Bearer {access_token}"}
