# SPDX-License-Identifier: BUSL-1.1
# Copyright (c) 2026 pyoneerC. All rights reserved.
import os

# Keep the module-level engine and SDK clients away from real services
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RESEND_API_KEY"] = ""
os.environ["POSTHOG_API_KEY"] = ""
os.environ["CRON_SECRET"] = ""

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from lastsignal import lifecycle, recovery  # noqa: E402
from lastsignal.checkins import CheckinService  # noqa: E402
from lastsignal.config import Settings  # noqa: E402
from lastsignal.database import init_db  # noqa: E402
from lastsignal.delivery import SqlMessageDirectory  # noqa: E402
from lastsignal.models import (  # noqa: E402
    Message,
    MessageRecipient,
    Recipient,
    RecipientState,
    TrustedContact,
    User,
)
from lastsignal.scheduler import CheckinScheduler  # noqa: E402

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = T0):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send_mail(self, kind, to, params):
        self.sent.append((kind, to, params))

    def to(self, address):
        return [(kind, params) for kind, to, params in self.sent if to == address]

    def kinds(self, address=None):
        return [kind for kind, to, _ in self.sent if address is None or to == address]

    def clear(self):
        self.sent.clear()


class RecordingAuditSink:
    def __init__(self):
        self.events = []

    def log_event(self, action, actor_type, user_id, metadata):
        self.events.append((action, actor_type, user_id, metadata))

    @property
    def actions(self):
        return [event[0] for event in self.events]


class RecordingDispatcher:
    def __init__(self):
        self.dispatched = []

    def dispatch_delivery(self, user_id):
        self.dispatched.append(user_id)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        app_base_url="https://lastsignal.test",
        mail_from_email="noreply@lastsignal.test",
        mail_from_name="LastSignal",
        resend_api_key=None,
        posthog_api_key=None,
        posthog_host="https://us.i.posthog.com",
        cron_secret="cron-secret",
        log_level="INFO",
    )


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def scheduler(session_factory, mailer, audit, dispatcher, clock, settings):
    return CheckinScheduler(
        session_factory,
        mailer=mailer,
        audit=audit,
        dispatcher=dispatcher,
        directory=SqlMessageDirectory(),
        clock=clock,
        settings=settings,
    )


@pytest.fixture
def service(session_factory, mailer, audit, clock, settings):
    return CheckinService(session_factory, mailer, audit, clock=clock, settings=settings)


def add_deliverable_message(session, user, email="heir@example.com", public_key="age1pubkey"):
    recipient = Recipient(
        user=user,
        email=email,
        name="Heir",
        state=RecipientState.ACCEPTED,
        public_key=public_key,
        accepted_at=T0,
    )
    message = Message(user=user, ciphertext="opaque-ciphertext")
    session.add_all([recipient, message])
    session.add(MessageRecipient(message=message, recipient=recipient, key_envelope="wrapped-key"))
    return recipient


@pytest.fixture
def make_user(session_factory, clock):
    """Create a persisted user with the first check-in scheduled."""
    counter = {"n": 0}

    def _make(email=None, with_messages=True, trusted_contact=None, **fields):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        state_fields = {
            k: fields.pop(k)
            for k in list(fields)
            if k not in ("checkin_interval_hours", "checkin_attempts", "checkin_attempt_interval_hours")
        }
        with session_factory() as session, session.begin():
            user = User(email=email, **fields)
            lifecycle.schedule_first_checkin(user, clock.now())
            recovery.generate(user)
            for key, value in state_fields.items():
                setattr(user, key, value)
            session.add(user)
            if with_messages:
                add_deliverable_message(session, user)
            if trusted_contact is not None:
                session.add(TrustedContact(user=user, **trusted_contact))
            session.flush()
            return user.id

    return _make


def fetch(session_factory, model, **filters):
    """Load a detached row for assertions."""
    with session_factory() as session:
        obj = session.query(model).filter_by(**filters).one_or_none()
        if obj is not None:
            session.expunge(obj)
        return obj


def fetch_user(session_factory, user_id):
    return fetch(session_factory, User, id=user_id)


def fetch_contact(session_factory, user_id):
    return fetch(session_factory, TrustedContact, user_id=user_id)
