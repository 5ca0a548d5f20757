"""
Shared fixtures for the symposium registration tests.
Uses a throwaway SQLite file so threaded tests see one database.
"""
import os
import tempfile

import pytest

# Set testing environment before importing app
_fd, TEST_DB_PATH = tempfile.mkstemp(prefix="symposium_test_", suffix=".sqlite3")
os.close(_fd)
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["WTF_CSRF_ENABLED"] = "False"
os.environ["MAIL_SUPPRESS_SEND"] = "True"

from app import app as flask_app, db  # noqa: E402
from registration import create_account  # noqa: E402


@pytest.fixture
def app():
    flask_app.config.update(
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        EVENT_ID_PREFIX="Sympo",
        EVENT_ID_WIDTH=2,
        EVENT_ID_MAX_RETRIES=5,
        LOGIN_RATE_LIMIT=10,
        SIGNUP_RATE_LIMIT=5,
        DISTINGUISH_LOGIN_ERRORS=True,
        REGISTRATION_ENABLED=True,
        CONFIRMATION_EMAIL_ENABLED=False,
    )
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_account(app):
    """Create accounts with distinct email/phone pairs."""
    counter = {"n": 0}

    def _make(email=None, phone=None, name=None):
        counter["n"] += 1
        n = counter["n"]
        return create_account(
            email or f"student{n}@example.com",
            phone or f"98765{n:05d}",
            name or f"Student {n}",
        )
    return _make


def login_as(client, account):
    with client.session_transaction() as sess:
        sess["account_id"] = account.id


def registration_data(**overrides):
    data = {
        "college": "PSG College of Technology",
        "technical_event": "Paper Presentation",
        "non_technical_event": "Connexions",
        "transaction_id": "UPI123456789",
    }
    data.update(overrides)
    return data


def pytest_sessionfinish(session, exitstatus):
    try:
        if os.path.exists(TEST_DB_PATH):
            os.remove(TEST_DB_PATH)
    except OSError:
        pass
