import os
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

# Keep app.core.database from pointing at a file before tests swap in their own engine.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core import config as app_config
from app.core.base import Base
from app.core.clock import FixedClock
from app.core.database import get_db
from app.dependencies import verification as verification_deps
from app.services.credential_store import InMemoryCredentialStore, SqlCredentialStore
from app.services.notifier import DeliveryResult
from app.services.rate_limiter import reset_rate_limiter

# Import models so they register with SQLAlchemy metadata.
from app.models.user import User

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeNotifier:
    """
    Records every delivery attempt. Flip `fail` to simulate a provider outage.
    """

    def __init__(self) -> None:
        self.verifications: list[dict] = []
        self.two_factor_codes: list[dict] = []
        self.fail = False

    def _result(self) -> DeliveryResult:
        if self.fail:
            return DeliveryResult(success=False, error="provider down")
        return DeliveryResult(success=True, message_id="msg_test_123")

    def send_verification(self, email: str, name: str, verification_url: str, code: str) -> DeliveryResult:
        self.verifications.append({"email": email, "name": name, "url": verification_url, "code": code})
        return self._result()

    def send_two_factor_code(self, email: str, name: str, code: str) -> DeliveryResult:
        self.two_factor_codes.append({"email": email, "name": name, "code": code})
        return self._result()

    @property
    def last_token(self) -> str:
        url = self.verifications[-1]["url"]
        return parse_qs(urlparse(url).query)["token"][0]

    @property
    def last_verification_code(self) -> str:
        return self.verifications[-1]["code"]

    @property
    def last_two_factor_code(self) -> str:
        return self.two_factor_codes[-1]["code"]


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # Important: because we use an in-memory SQLite DB with StaticPool, the DB
    # persists across tests. Reset schema per test to avoid cross-test coupling.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests sometimes tweak global settings (app_config.settings.*). Because that object is
    process-global, we must restore values after each test to avoid cross-test coupling.
    """
    keys = [
        "EMAIL_ENABLED",
        "EMAIL_PROVIDER",
        "FROM_EMAIL",
        "SECURITY_FROM_EMAIL",
        "RESEND_API_KEY",
        "CREDENTIAL_STORE_BACKEND",
        "RATE_LIMIT_ENABLED",
        "DDB_RATE_LIMIT_TABLE",
        "TRUSTED_PROXY_IPS",
        "AWS_REGION",
        "ENV",
        "FRONTEND_BASE_URL",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)
        reset_rate_limiter()


@pytest.fixture()
def clock():
    return FixedClock(T0)


@pytest.fixture()
def notifier():
    return FakeNotifier()


@pytest.fixture(params=["memory", "sql"])
def store(request, db_session):
    """Runs the test once per store backend."""
    if request.param == "memory":
        return InMemoryCredentialStore()
    return SqlCredentialStore(db_session)


@pytest.fixture()
def add_user(store, db_session):
    """
    Create a user in whichever backend `store` is. Returns the user id.

    Usage:
        user_id = add_user("a@example.com", name="A")
    """

    def _add_user(email: str, *, name: str | None = "Test User", user_id: str | None = None, is_active: bool = True):
        if isinstance(store, InMemoryCredentialStore):
            return store.add_user(email, name=name, user_id=user_id, is_active=is_active).id
        user = User(email=email.strip().lower(), name=name, is_active=is_active)
        if user_id:
            user.id = user_id
        db_session.add(user)
        db_session.commit()
        return user.id

    return _add_user


@pytest.fixture()
def app(db_session, notifier, clock):
    import app.main as main

    fastapi_app = main.app
    app_config.settings.CREDENTIAL_STORE_BACKEND = "sql"
    app_config.settings.RATE_LIMIT_ENABLED = False

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[verification_deps.get_notifier] = lambda: notifier
    fastapi_app.dependency_overrides[verification_deps.get_clock] = lambda: clock
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def users(db_session):
    """
    Two distinct active, unverified users.
    """
    user_a = User(email="test@example.com", name="Test User", is_active=True)
    user_b = User(email="other@example.com", name="Other User", is_active=True)
    db_session.add_all([user_a, user_b])
    db_session.commit()
    db_session.refresh(user_a)
    db_session.refresh(user_b)
    return user_a, user_b


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c
