import os
import tempfile
from datetime import datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_INIT_MODE", "create_all")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-entropy-0123456789")
os.environ.setdefault("ADMIN_EMAIL", "admin@example.com")
os.environ.setdefault("LOG_FILE", os.path.join(tempfile.gettempdir(), "sessionguard-tests.log"))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from sessionguard.config import settings
from sessionguard.core.context import NetworkContext
from sessionguard.core.database import Base, engine_options
from sessionguard.services.auth_service import AuthService
from sessionguard.services.email_service import EmailResult
from sessionguard.services.user_service import user_service

PASSWORD = "Correct1!"


class FrozenClock:
    """Manually advanced naive-UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmailSender:
    def __init__(self, fail=False, retryable=True):
        self.sent = []
        self.fail = fail
        self.retryable = retryable

    def send(self, to, subject, html):
        if self.fail:
            return EmailResult(success=False, retryable=self.retryable, error="send failed")
        self.sent.append({"to": to, "subject": subject, "html": html})
        return EmailResult(success=True, message_id=f"msg-{len(self.sent)}")


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def db_engine():
    url = "sqlite://"
    test_engine = create_engine(url, **engine_options(url))
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def db(db_engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def ctx():
    return NetworkContext(ip_address="203.0.113.10", user_agent="pytest-agent")


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def auth(db, clock, email_sender):
    return AuthService.build(db, cfg=settings, clock=clock, email_sender=email_sender)


@pytest.fixture
def user(db, clock):
    return user_service.create_user(db, "alice@example.com", PASSWORD, email_verified=True, now=clock())
