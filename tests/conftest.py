"""Pytest configuration and fixtures.

The app engine is pointed at a shared in-memory SQLite database before any
signflow module is imported; tables are created and dropped around each test.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SIGNATURE_SWEEP_ENABLED"] = "false"
os.environ["BASE_URL"] = "https://sign.example.test/"
os.environ["MAILGUN_API_KEY"] = ""
os.environ["SENDGRID_API_KEY"] = ""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from signflow.config import get_settings
from signflow.database import Base, SessionLocal, engine
import signflow.models  # noqa: F401
from signflow.services.request_locks import RequestLocks
from signflow.services.signature_workflow import DocumentInfo, SignatureWorkflow, SignerInput

T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeNotifier:
    """Records webhooks and reminders instead of sending them."""

    def __init__(self):
        self.webhooks: list[tuple[str, dict]] = []
        self.reminders: list[tuple] = []

    def send_webhook(self, url, payload):
        self.webhooks.append((url, payload))

    def send_reminder(self, *args):
        self.reminders.append(args)

    def shutdown(self):
        pass

    def events(self) -> list[str]:
        return [payload["event"] for _, payload in self.webhooks]


@pytest.fixture(scope="function")
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def workflow(db, clock, notifier, settings) -> SignatureWorkflow:
    return SignatureWorkflow(db, clock=clock, notifier=notifier, locks=RequestLocks(), settings=settings)


@pytest.fixture
def document() -> DocumentInfo:
    return DocumentInfo(document_id="doc-42", title="Lease Agreement", url="https://files.example.test/doc-42.pdf")


@pytest.fixture
def two_signers() -> list[SignerInput]:
    return [
        SignerInput(email="Alice@Example.com", name="Alice", user_id="user-a"),
        SignerInput(email="bob@example.com", name="Bob", user_id="user-b"),
    ]


@pytest.fixture
def client(db, clock, notifier, settings):
    """TestClient whose workflow shares the test session, clock and notifier."""
    from signflow.dependencies import get_signature_workflow
    from signflow.main import app

    def _workflow():
        return SignatureWorkflow(db, clock=clock, notifier=notifier, locks=RequestLocks(), settings=settings)

    app.dependency_overrides[get_signature_workflow] = _workflow
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
