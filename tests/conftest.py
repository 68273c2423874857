import os

# Configure the app before any app module reads the environment
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["PREPAID_INSUFFICIENT_BALANCE_POLICY"] = "cap"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"
for var in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER", "RESEND_API_KEY"):
    os.environ.pop(var, None)

from datetime import datetime, timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app import models_google_calendar, models_notification  # noqa: E402, F401
from app.auth import create_access_token  # noqa: E402
from app.database import Base, get_db, get_session_factory  # noqa: E402
from app.main import app  # noqa: E402
from app.models import (  # noqa: E402
    Appointment,
    AppointmentStatus,
    BillingFrequency,
    ClientProfile,
    TrainerSettings,
    User,
    UserRole,
    Workspace,
)
from app.services.twilio_service import SendResult  # noqa: E402
from app.shared.errors import TransientProviderError  # noqa: E402


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


class Factory:
    """Creates committed rows with sensible defaults"""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def workspace(self, name="Studio"):
        return self._save(Workspace(name=name))

    def trainer(self, workspace, full_name="Taylor Trainer", **settings):
        n = self._next()
        trainer = self._save(
            User(
                workspace_id=workspace.id,
                email=f"trainer{n}@example.com",
                full_name=full_name,
                role=UserRole.TRAINER,
            )
        )
        self._save(TrainerSettings(trainer_id=trainer.id, workspace_id=workspace.id, **settings))
        return trainer

    def client(
        self,
        workspace,
        full_name=None,
        billing_frequency=BillingFrequency.PER_SESSION,
        session_rate="80.00",
        group_session_rate=None,
        prepaid_balance="0",
        prepaid_target_balance=None,
        auto_invoice_enabled=True,
        phone=None,
        with_profile=True,
    ):
        n = self._next()
        client = self._save(
            User(
                workspace_id=workspace.id,
                email=f"client{n}@example.com",
                full_name=full_name or f"Client {n:02d}",
                phone=phone,
                role=UserRole.CLIENT,
            )
        )
        if with_profile:
            self._save(
                ClientProfile(
                    user_id=client.id,
                    billing_frequency=billing_frequency,
                    session_rate=Decimal(session_rate),
                    group_session_rate=Decimal(group_session_rate) if group_session_rate else None,
                    prepaid_balance=Decimal(prepaid_balance),
                    prepaid_target_balance=Decimal(prepaid_target_balance) if prepaid_target_balance else None,
                    auto_invoice_enabled=auto_invoice_enabled,
                )
            )
            self.db.refresh(client)
        return client

    def appointment(
        self,
        trainer,
        client,
        start,
        minutes=60,
        status=AppointmentStatus.SCHEDULED,
        end=None,
        google_event_id=None,
    ):
        return self._save(
            Appointment(
                workspace_id=trainer.workspace_id,
                trainer_id=trainer.id,
                client_id=client.id,
                start_time=start,
                end_time=end or start + timedelta(minutes=minutes),
                status=status,
                google_event_id=google_event_id,
            )
        )


@pytest.fixture
def make(db):
    return Factory(db)


class FakeSender:
    """SMS sender double; outcomes are consumed in order: "ok", "fail", "transient" or "crash" """

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.sent = []

    async def send(self, recipient, content):
        self.sent.append((recipient, content))
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if outcome == "crash":
            raise RuntimeError("sender crashed")
        if outcome == "transient":
            raise TransientProviderError("Twilio unavailable (HTTP 503)", provider="twilio")
        if outcome == "fail":
            return SendResult(success=False, error="[21610] Attempt to send to unsubscribed recipient")
        return SendResult(success=True, external_id=f"SM{len(self.sent):04d}")


class FakeEmail:
    """Async stand-in for send_invoice_email"""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def __call__(self, invoice):
        if self.fail:
            raise TransientProviderError("Failed to send email: timeout", provider="resend")
        self.sent.append(invoice.id)
        return {"id": f"email-{invoice.id}"}


class FakeMailer:
    """Async stand-in for email_service.send_email"""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def __call__(self, to, subject, html_content):
        if self.fail:
            raise TransientProviderError("Failed to send email: timeout", provider="resend")
        self.sent.append((to, subject))
        return {"id": f"email_{len(self.sent)}"}


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest.fixture
def fake_email():
    return FakeEmail()


@pytest.fixture
def fake_mailer():
    return FakeMailer()


@pytest.fixture
def api(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def june_15():
    return datetime(2025, 6, 15, 12, 0)


@pytest.fixture
def auth():
    return auth_headers


@pytest.fixture
def sender_with():
    """Build a FakeSender with scripted outcomes"""
    return FakeSender


@pytest.fixture
def failing_email():
    return FakeEmail(fail=True)


@pytest.fixture
def failing_mailer():
    return FakeMailer(fail=True)
