from datetime import datetime, timezone
import secrets

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Marks event_id / transaction_id values that have not been finalized yet.
PLACEHOLDER_PREFIX = "PENDING_"


def utcnow():
    return datetime.now(timezone.utc)


def make_placeholder():
    """Unique sentinel so unfinalized rows still satisfy the unique constraints."""
    return f"{PLACEHOLDER_PREFIX}{secrets.token_hex(8)}"


def make_ticket_token():
    return secrets.token_urlsafe(24)


# ==========================
# MODELS
# ==========================

class Account(db.Model):
    """
    One record per symposium participant.
    - event_id starts as a PENDING_ placeholder and is finalized exactly once.
    - transaction_id stays a placeholder until a payment reference is submitted.
    """
    __tablename__ = "accounts"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)  # Index for login lookups
    phone = db.Column(db.String(20), unique=True, nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    college = db.Column(db.String(255), nullable=True)
    technical_event = db.Column(db.String(120), nullable=True)
    non_technical_event = db.Column(db.String(120), nullable=True)
    event_id = db.Column(db.String(32), unique=True, nullable=False, default=make_placeholder)
    transaction_id = db.Column(db.String(64), unique=True, nullable=False, default=make_placeholder)
    ticket_token = db.Column(db.String(64), unique=True, nullable=False, default=make_ticket_token)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    registered_at = db.Column(db.DateTime, nullable=True)

    @staticmethod
    def is_placeholder(value):
        return not value or value.startswith(PLACEHOLDER_PREFIX)

    @property
    def is_finalized(self):
        return not self.is_placeholder(self.event_id)

    @property
    def has_payment_reference(self):
        return not self.is_placeholder(self.transaction_id)

    @property
    def status(self):
        return "submitted" if self.is_finalized else "created"

    def __repr__(self):
        return f"<Account {self.id} {self.email} {self.event_id}>"


class LoginEvent(db.Model):
    """
    Append-only audit trail of login/signup attempts.
    Also the source for per-address rate limiting.
    """
    __tablename__ = "login_events"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=True, index=True)
    phone = db.Column(db.String(20), nullable=True)
    action = db.Column(db.String(50), nullable=False, index=True)  # Index for action filtering
    ip_address = db.Column(db.String(45), nullable=True, index=True)  # Index for IP tracking
    user_agent = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)  # Index for time-based queries
