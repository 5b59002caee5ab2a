"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database with savepoint (rollback after each test)
- Inline task runner and session scope so automation finishes before assertions
- Fake messaging provider that records every send
- Factories for subjects, rules, sequences and intake keys
- HTTPX AsyncClient bound to the app
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TESTING"] = "1"
os.environ["ENV"] = "test"
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["BULK_SEND_DELAY_SECONDS"] = "0"
os.environ["BULK_RATE_LIMIT_BACKOFF_SECONDS"] = "0"

import uuid
from contextlib import contextmanager
from typing import AsyncGenerator, Generator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from carepipeline.core import task_runner
from carepipeline.core.deps import get_db
from carepipeline.core.errors import DeliveryError
from carepipeline.db import session as db_session
from carepipeline.db.base import Base
from carepipeline.db.models import AutomationRule, IntakeApiKey, Sequence, Subject
from carepipeline.main import app
from carepipeline.services import messaging_provider
from carepipeline.services.phase_service import default_phase, now_ms


# =============================================================================
# Database Fixtures (Savepoint pattern)
# =============================================================================

test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# pysqlite defers BEGIN; take over so SAVEPOINTs nest inside a real transaction
@event.listens_for(test_engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(test_engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


Base.metadata.create_all(test_engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Session bound to an outer transaction that is rolled back after the test.

    App code can commit() and rollback() freely; each only touches a savepoint.
    """
    connection = test_engine.connect()
    transaction = connection.begin()
    session = Session(
        bind=connection,
        autoflush=False,
        join_transaction_mode="create_savepoint",
    )

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(autouse=True)
def inline_automation(db: Session, monkeypatch):
    """Automation runs synchronously on the test session."""

    @contextmanager
    def scope():
        yield db

    monkeypatch.setattr(task_runner, "runner", task_runner.InlineTaskRunner())
    monkeypatch.setattr(db_session, "session_scope", scope)


# =============================================================================
# Messaging
# =============================================================================

class FakeMessagingProvider:
    """Records sends instead of delivering them."""

    def __init__(self):
        self.texts: list[tuple[str, str]] = []
        self.emails: list[tuple[str, str, str]] = []
        self.history = []
        self.fail_with: DeliveryError | None = None
        self.fail_for: dict[str, DeliveryError] = {}
        self.history_error: DeliveryError | None = None

    def send_text(self, to_phone: str, text: str) -> None:
        if to_phone in self.fail_for:
            raise self.fail_for[to_phone]
        if self.fail_with:
            raise self.fail_with
        self.texts.append((to_phone, text))

    def send_email(self, to_address: str, subject: str, body: str) -> None:
        if self.fail_with:
            raise self.fail_with
        self.emails.append((to_address, subject, body))

    def fetch_history(self, phone: str, days_back: int = 30):
        if self.history_error:
            raise self.history_error
        return list(self.history)


@pytest.fixture(autouse=True)
def provider(monkeypatch) -> FakeMessagingProvider:
    fake = FakeMessagingProvider()
    monkeypatch.setattr(messaging_provider, "provider", fake)
    return fake


# =============================================================================
# Factories
# =============================================================================

@pytest.fixture
def make_subject(db: Session):
    def _make(
        entity_type: str = "caregiver",
        phase: str | None = None,
        first_name: str = "Maria",
        last_name: str = "Lopez",
        phone: str = "(555) 123-4567",
        email: str = "",
        **kwargs,
    ) -> Subject:
        phase = phase or default_phase(entity_type)
        subject = Subject(
            entity_type=entity_type,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            email=email,
            phase_override=phase,
            phase_timestamps={phase: now_ms()},
            tasks=kwargs.pop("tasks", {}),
            notes=kwargs.pop("notes", []),
            details=kwargs.pop("details", {}),
            **kwargs,
        )
        db.add(subject)
        db.commit()
        db.refresh(subject)
        return subject

    return _make


@pytest.fixture
def make_rule(db: Session):
    def _make(
        trigger_type: str,
        action_type: str = "send_sms",
        message_template: str = "Hi {{first_name}}",
        conditions: dict | None = None,
        entity_type: str | None = None,
        name: str | None = None,
        **kwargs,
    ) -> AutomationRule:
        rule = AutomationRule(
            name=name or f"Rule {uuid.uuid4().hex[:6]}",
            trigger_type=trigger_type,
            entity_type=entity_type,
            conditions=conditions or {},
            action_type=action_type,
            message_template=message_template,
            action_config=kwargs.pop("action_config", {}),
            **kwargs,
        )
        db.add(rule)
        db.commit()
        db.refresh(rule)
        return rule

    return _make


@pytest.fixture
def make_sequence(db: Session):
    def _make(
        steps: list[dict],
        name: str | None = None,
        trigger_phase: str | None = None,
        entity_type: str | None = None,
        stop_on_response: bool = True,
        **kwargs,
    ) -> Sequence:
        sequence = Sequence(
            name=name or f"Sequence {uuid.uuid4().hex[:6]}",
            steps=steps,
            trigger_phase=trigger_phase,
            entity_type=entity_type,
            stop_on_response=stop_on_response,
            **kwargs,
        )
        db.add(sequence)
        db.commit()
        db.refresh(sequence)
        return sequence

    return _make


@pytest.fixture
def intake_key(db: Session) -> IntakeApiKey:
    key = IntakeApiKey(
        key=f"key-{uuid.uuid4().hex}",
        source="wordpress",
        label="Contact form",
        entity_type="client",
    )
    db.add(key)
    db.commit()
    db.refresh(key)
    return key


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient whose requests share the test session."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()
