"""
Registration service: sign-up, login lookup, registration submission and
confirmation lookup for symposium participants.

Every operation takes the account reference explicitly; resolving it from
the session is the caller's job (see app.py).
"""
import re
from dataclasses import dataclass
from datetime import timedelta

from email_validator import validate_email, EmailNotValidError
from flask import current_app, has_request_context, request
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db, Account, LoginEvent, PLACEHOLDER_PREFIX, utcnow

PHONE_DIGITS = 10
# What a phone field may contain before normalization: ten ASCII digits with
# optional spaces, dashes or zero-width characters around them.
PHONE_INPUT_RE = re.compile(r"^[\s\-\u200b\u200c\u200d\ufeff]*(?:[0-9][\s\-\u200b\u200c\u200d\ufeff]*){10}$")
TRANSACTION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{3,63}$")

GENERIC_SYSTEM_MESSAGE = "Something went wrong on our side. Please try again in a few minutes."


# ==========================
# ERRORS
# ==========================

class RegistrationError(Exception):
    """Base class; `message` is safe to show to the participant."""

    def __init__(self, message, field=None):
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(RegistrationError):
    pass


class ConflictError(RegistrationError):
    pass


class NotFoundError(RegistrationError):
    pass


class RegistrationSystemError(RegistrationError):
    def __init__(self, message=GENERIC_SYSTEM_MESSAGE, field=None):
        super().__init__(message, field)


@dataclass(frozen=True)
class SubmissionResult:
    name: str
    event_id: str
    newly_finalized: bool


FIELD_LABELS = {
    "email": "email address",
    "phone": "phone number",
    "transaction_id": "transaction ID",
    "event_id": "event ID",
}


def conflict_message(field):
    return f"An account with that {FIELD_LABELS.get(field, field)} already exists."


# ==========================
# INPUT NORMALIZATION
# ==========================

def _strip_zero_width(s):
    # Invisible characters introduced by mobile keyboards / copy-paste.
    return (
        (s or "")
        .replace("\u200b", "")
        .replace("\u200c", "")
        .replace("\u200d", "")
        .replace("\ufeff", "")
    )


def normalize_email(raw):
    email = _strip_zero_width(raw).strip().lower()
    if not email:
        raise ValidationError("Email is required.", field="email")
    try:
        return validate_email(email, check_deliverability=False).normalized
    except EmailNotValidError:
        raise ValidationError("Please enter a valid email address.", field="email")


def normalize_phone(raw):
    phone = re.sub(r"[\s\-]", "", _strip_zero_width(raw))
    if not phone:
        raise ValidationError("Phone number is required.", field="phone")
    if len(phone) != PHONE_DIGITS or not phone.isascii() or not phone.isdigit():
        raise ValidationError(f"Phone number must be exactly {PHONE_DIGITS} digits.", field="phone")
    return phone


def normalize_transaction_id(raw):
    txn = _strip_zero_width(raw).strip()
    if not txn:
        raise ValidationError("Transaction ID is required.", field="transaction_id")
    if txn.upper().startswith(PLACEHOLDER_PREFIX) or not TRANSACTION_ID_RE.match(txn):
        raise ValidationError(
            "Transaction ID must be 4-64 letters, digits, dashes or underscores.",
            field="transaction_id",
        )
    return txn


def _required_text(raw, field, label, max_length):
    value = (raw or "").strip()
    if not value:
        raise ValidationError(f"{label} is required.", field=field)
    if len(value) > max_length:
        raise ValidationError(f"{label} must be at most {max_length} characters.", field=field)
    return value


def _event_choice(raw, field, choices, label):
    value = (raw or "").strip()
    if value not in choices:
        raise ValidationError(f"Please choose a valid {label}.", field=field)
    return value


# ==========================
# EVENT ID NUMBERING
# ==========================

def format_event_id(sequence, prefix="Sympo", width=2):
    return f"{prefix}{sequence:0{width}d}"


def parse_event_sequence(event_id, prefix="Sympo"):
    """Numeric suffix of a finalized ID, or None if it is not ours."""
    if not event_id or not event_id.startswith(prefix):
        return None
    suffix = event_id[len(prefix):]
    if not suffix.isascii() or not suffix.isdigit():
        return None
    return int(suffix)


def next_event_sequence(prefix=None):
    """Highest finalized sequence + 1, or 1 when nothing is finalized yet."""
    prefix = prefix or current_app.config.get("EVENT_ID_PREFIX", "Sympo")
    # Suffix widths can differ (Sympo050 vs Sympo51), so compare parsed integers.
    rows = (
        db.session.query(Account.event_id)
        .filter(Account.event_id.like(f"{prefix}%"))
        .all()
    )
    sequences = [parse_event_sequence(event_id, prefix) for (event_id,) in rows]
    return max((s for s in sequences if s is not None), default=0) + 1


def _conflicting_field(error):
    """Work out which unique column an IntegrityError is about."""
    text = str(getattr(error, "orig", error)).lower()
    for field in ("event_id", "transaction_id", "ticket_token", "email", "phone"):
        if field in text:
            return field
    return None


# ==========================
# OPERATIONS
# ==========================

def get_account(account_id):
    account = db.session.get(Account, account_id) if account_id else None
    if account is None:
        raise NotFoundError("Account not found, please sign up.")
    return account


def authenticate(email, phone):
    """Return the account matching both email and phone."""
    email = normalize_email(email)
    phone = normalize_phone(phone)
    try:
        account = Account.query.filter_by(email=email, phone=phone).first()
    except SQLAlchemyError as e:
        current_app.logger.error(f"Database error during login lookup: {e}")
        raise RegistrationSystemError() from e
    if account is None:
        raise NotFoundError("Account not found, please sign up.")
    return account


def create_account(email, phone, name):
    email = normalize_email(email)
    phone = normalize_phone(phone)
    name = _required_text(name, "name", "Name", 120)

    try:
        existing = Account.query.filter(or_(Account.email == email, Account.phone == phone)).first()
    except SQLAlchemyError as e:
        current_app.logger.error(f"Database error checking existing account: {e}")
        raise RegistrationSystemError() from e
    if existing:
        field = "email" if existing.email == email else "phone"
        raise ConflictError(conflict_message(field), field=field)

    account = Account(email=email, phone=phone, name=name)
    try:
        db.session.add(account)
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        field = _conflicting_field(e)
        if field in ("email", "phone"):
            current_app.logger.warning(f"Duplicate {field} on signup: {email}")
            raise ConflictError(conflict_message(field), field=field) from e
        current_app.logger.error(f"Integrity error saving account {email}: {e}")
        raise RegistrationSystemError() from e
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Database error saving account {email}: {e}")
        raise RegistrationSystemError() from e

    current_app.logger.info(f"New account created: {account.email} (ID: {account.id})")
    return account


def submit_registration(account_id, college, technical_event, non_technical_event, transaction_id):
    """
    Save the registration details and finalize the event ID on first submission.

    The next ID is max(finalized) + 1; the unique constraint on event_id turns
    a lost race into an IntegrityError, which rolls back and recomputes.
    """
    config = current_app.config
    college = _required_text(college, "college", "College", 255)
    technical_event = _event_choice(
        technical_event, "technical_event", config.get("TECHNICAL_EVENTS", []), "technical event"
    )
    non_technical_event = _event_choice(
        non_technical_event, "non_technical_event", config.get("NON_TECHNICAL_EVENTS", []), "non-technical event"
    )
    transaction_id = normalize_transaction_id(transaction_id)

    prefix = config.get("EVENT_ID_PREFIX", "Sympo")
    width = config.get("EVENT_ID_WIDTH", 2)
    max_attempts = max(1, int(config.get("EVENT_ID_MAX_RETRIES", 5)))

    for attempt in range(1, max_attempts + 1):
        try:
            account = get_account(account_id)

            taken = Account.query.filter(
                Account.transaction_id == transaction_id,
                Account.id != account.id,
            ).first()
            if taken:
                current_app.logger.warning(
                    f"Transaction ID conflict for account {account.id}: already used by account {taken.id}"
                )
                raise ConflictError(conflict_message("transaction_id"), field="transaction_id")

            newly_finalized = not account.is_finalized
            new_event_id = format_event_id(next_event_sequence(prefix), prefix, width) if newly_finalized else None

            account.college = college
            account.technical_event = technical_event
            account.non_technical_event = non_technical_event
            account.transaction_id = transaction_id
            if newly_finalized:
                account.event_id = new_event_id
                account.registered_at = utcnow()
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            field = _conflicting_field(e)
            if field == "event_id":
                current_app.logger.warning(
                    f"Event ID collision for account {account_id} (attempt {attempt}/{max_attempts}), retrying"
                )
                continue
            if field == "transaction_id":
                raise ConflictError(conflict_message("transaction_id"), field="transaction_id") from e
            current_app.logger.error(f"Integrity error saving registration for account {account_id}: {e}")
            raise RegistrationSystemError() from e
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Database error saving registration for account {account_id}: {e}")
            raise RegistrationSystemError() from e

        if newly_finalized:
            current_app.logger.info(f"Account {account.id} finalized as {account.event_id}")
        return SubmissionResult(name=account.name, event_id=account.event_id, newly_finalized=newly_finalized)

    current_app.logger.error(f"Gave up assigning an event ID to account {account_id} after {max_attempts} attempts")
    raise RegistrationSystemError()


def fetch_confirmation(account_id=None, event_id=None, ticket_token=None):
    """Finalized account by exactly one of: account id, event id, ticket token."""
    selectors = [s for s in (account_id, event_id, ticket_token) if s]
    if len(selectors) != 1:
        raise ValueError("fetch_confirmation needs exactly one of account_id, event_id, ticket_token")

    try:
        if account_id:
            account = db.session.get(Account, account_id)
        elif event_id:
            account = Account.query.filter_by(event_id=event_id.strip()).first()
        else:
            account = Account.query.filter_by(ticket_token=ticket_token).first()
    except SQLAlchemyError as e:
        current_app.logger.error(f"Database error loading confirmation: {e}")
        raise RegistrationSystemError() from e

    if account is None or not account.is_finalized:
        raise NotFoundError("No completed registration found.")
    return account


# ==========================
# AUDIT / RATE LIMITING
# ==========================

def client_address():
    # X-Forwarded-For is only honoured through ProxyFix (PROXY_FIX_X_FOR hops).
    if not has_request_context():
        return None
    return request.remote_addr


def record_login_event(action, email=None, phone=None):
    """Append an audit row; a failure here never blocks the login itself."""
    user_agent = None
    if has_request_context():
        user_agent = (request.headers.get("User-Agent") or "")[:255]
    try:
        db.session.add(LoginEvent(
            email=(email or "")[:255] or None,
            phone=(phone or "")[:20] or None,
            action=action,
            ip_address=client_address(),
            user_agent=user_agent,
        ))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to record login event {action}: {e}")


def check_rate_limit(actions, ip_address, limit, window_minutes=15):
    """True while the address has fewer than `limit` matching events in the window."""
    if limit <= 0 or not ip_address:
        return True
    cutoff = utcnow() - timedelta(minutes=window_minutes)
    recent = LoginEvent.query.filter(
        LoginEvent.ip_address == ip_address,
        LoginEvent.action.in_(list(actions)),
        LoginEvent.created_at > cutoff,
    ).count()
    return recent < limit
