"""
Registration service: account creation, login lookup, submission and
confirmation lookup, exercised directly without HTTP.
"""
from unittest import mock

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

import registration
from models import db, Account, LoginEvent
from registration import (
    ValidationError, ConflictError, NotFoundError, RegistrationSystemError,
    authenticate, create_account, submit_registration, fetch_confirmation,
    normalize_email, normalize_phone, normalize_transaction_id,
    record_login_event, check_rate_limit,
)


def submit(account, **overrides):
    data = {
        "college": "PSG College of Technology",
        "technical_event": "Paper Presentation",
        "non_technical_event": "Connexions",
        "transaction_id": "UPI123456789",
    }
    data.update(overrides)
    return submit_registration(account.id, **data)


# --- input normalization ---

def test_normalize_email_lowercases_and_strips():
    assert normalize_email("  Asha.K@Example.COM\u200b ") == "asha.k@example.com"


@pytest.mark.parametrize("raw", ["", "not-an-email", "a@", "@example.com"])
def test_normalize_email_rejects_bad_syntax(raw):
    with pytest.raises(ValidationError) as exc:
        normalize_email(raw)
    assert exc.value.field == "email"


def test_normalize_phone_accepts_spaced_digits():
    assert normalize_phone("98765 43210") == "9876543210"
    assert normalize_phone("98765-43210") == "9876543210"


@pytest.mark.parametrize("raw", ["", "12345", "98765432101", "98765abcde", "٩٨٧٦٥٤٣٢١٠"])
def test_normalize_phone_requires_ten_ascii_digits(raw):
    with pytest.raises(ValidationError):
        normalize_phone(raw)


@pytest.mark.parametrize("raw", ["", "ab", "PENDING_abc123", "pending_abc123", "has space1", "x" * 65])
def test_transaction_id_rejects_bad_values(raw):
    with pytest.raises(ValidationError):
        normalize_transaction_id(raw)


# --- create_account ---

def test_create_account_starts_with_placeholders(app):
    account = create_account("asha@example.com", "9876543210", "Asha")

    assert account.id is not None
    assert account.event_id.startswith("PENDING_")
    assert account.transaction_id.startswith("PENDING_")
    assert not account.is_finalized
    assert not account.has_payment_reference
    assert account.status == "created"
    assert account.ticket_token
    assert account.created_at is not None


def test_create_account_rejects_duplicate_email(app, make_account):
    make_account(email="asha@example.com", phone="9876543210")

    with pytest.raises(ConflictError) as exc:
        create_account("ASHA@example.com", "9000000000", "Someone Else")
    assert exc.value.field == "email"
    assert "email" in exc.value.message
    assert Account.query.count() == 1


def test_create_account_rejects_duplicate_phone(app, make_account):
    make_account(email="asha@example.com", phone="9876543210")

    with pytest.raises(ConflictError) as exc:
        create_account("other@example.com", "9876543210", "Someone Else")
    assert exc.value.field == "phone"
    assert Account.query.count() == 1


def test_create_account_requires_name(app):
    with pytest.raises(ValidationError) as exc:
        create_account("asha@example.com", "9876543210", "   ")
    assert exc.value.field == "name"


def test_create_account_storage_failure_is_system_error(app):
    with mock.patch.object(db.session, "commit", side_effect=OperationalError("INSERT", {}, Exception("db down"))):
        with pytest.raises(RegistrationSystemError):
            create_account("asha@example.com", "9876543210", "Asha")
    assert Account.query.count() == 0


# --- authenticate ---

def test_authenticate_matches_email_and_phone_pair(app, make_account):
    account = make_account(email="asha@example.com", phone="9876543210")

    assert authenticate(" Asha@Example.com ", "9876543210").id == account.id


def test_authenticate_unknown_pair_is_not_found_without_mutation(app, make_account):
    make_account(email="asha@example.com", phone="9876543210")
    make_account(email="ravi@example.com", phone="9123456780")
    before = [(a.id, a.event_id, a.transaction_id, a.updated_at) for a in Account.query.order_by(Account.id)]

    # Each field exists, but not together on one account.
    with pytest.raises(NotFoundError):
        authenticate("asha@example.com", "9123456780")
    with pytest.raises(NotFoundError):
        authenticate("nobody@example.com", "9000000000")

    after = [(a.id, a.event_id, a.transaction_id, a.updated_at) for a in Account.query.order_by(Account.id)]
    assert before == after
    assert Account.query.count() == 2


def test_authenticate_invalid_format_is_validation_error(app):
    with pytest.raises(ValidationError):
        authenticate("asha@example.com", "12345")
    with pytest.raises(ValidationError):
        authenticate("not-an-email", "9876543210")


# --- submit_registration ---

def test_first_submission_assigns_first_sequence(app, make_account):
    account = make_account()

    result = submit(account)

    assert result.event_id == "Sympo01"
    assert result.newly_finalized is True
    assert result.name == account.name
    stored = db.session.get(Account, account.id)
    assert stored.event_id == "Sympo01"
    assert stored.college == "PSG College of Technology"
    assert stored.technical_event == "Paper Presentation"
    assert stored.non_technical_event == "Connexions"
    assert stored.transaction_id == "UPI123456789"
    assert stored.registered_at is not None
    assert stored.status == "submitted"


def test_resubmission_keeps_event_id_and_updates_fields(app, make_account):
    account = make_account()
    first = submit(account)
    make_account()  # someone else signs up in between
    second = submit(account, college="Anna University", technical_event="Code Debugging")

    assert second.event_id == first.event_id
    assert second.newly_finalized is False
    stored = db.session.get(Account, account.id)
    assert stored.college == "Anna University"
    assert stored.technical_event == "Code Debugging"


def test_resubmitting_own_transaction_id_is_not_a_conflict(app, make_account):
    account = make_account()
    submit(account, transaction_id="UPI555")

    result = submit(account, transaction_id="UPI555", college="Changed College")

    assert result.event_id == "Sympo01"
    assert db.session.get(Account, account.id).college == "Changed College"


def test_transaction_id_used_by_other_account_is_conflict(app, make_account):
    first = make_account()
    second = make_account()
    submit(first, transaction_id="UPI777")
    first_state = (first.college, first.technical_event, first.transaction_id, first.event_id)

    with pytest.raises(ConflictError) as exc:
        submit(second, transaction_id="UPI777", college="Other College")
    assert exc.value.field == "transaction_id"
    assert "transaction ID" in exc.value.message

    db.session.expire_all()
    first = db.session.get(Account, first.id)
    second = db.session.get(Account, second.id)
    assert (first.college, first.technical_event, first.transaction_id, first.event_id) == first_state
    assert second.college is None
    assert second.technical_event is None
    assert second.transaction_id.startswith("PENDING_")
    assert second.event_id.startswith("PENDING_")


def test_transaction_id_claimed_after_precheck_is_conflict(app, make_account):
    winner_id = make_account().id
    loser = make_account()
    next_sequence = registration.next_event_sequence

    def competing_submission(prefix=None):
        # Another request commits the same payment reference between our check and our commit.
        with db.engine.begin() as conn:
            conn.execute(
                update(Account)
                .where(Account.id == winner_id)
                .values(transaction_id="UPI777", event_id="Sympo01")
            )
        return next_sequence(prefix)

    with mock.patch.object(registration, "next_event_sequence", side_effect=competing_submission):
        with pytest.raises(ConflictError) as exc:
            submit(loser, transaction_id="UPI777")
    assert exc.value.field == "transaction_id"

    db.session.expire_all()
    winner = db.session.get(Account, winner_id)
    loser = db.session.get(Account, loser.id)
    assert (winner.transaction_id, winner.event_id) == ("UPI777", "Sympo01")
    assert loser.transaction_id.startswith("PENDING_")
    assert loser.event_id.startswith("PENDING_")
    assert loser.college is None


def test_submission_rejects_unknown_event_choice(app, make_account):
    account = make_account()

    with pytest.raises(ValidationError) as exc:
        submit(account, technical_event="Underwater Welding")
    assert exc.value.field == "technical_event"
    assert db.session.get(Account, account.id).event_id.startswith("PENDING_")


def test_submission_rejects_placeholder_transaction_id(app, make_account):
    account = make_account()

    with pytest.raises(ValidationError):
        submit(account, transaction_id=account.transaction_id)


def test_submission_for_missing_account_is_not_found(app):
    with pytest.raises(NotFoundError):
        submit_registration(
            12345, "PSG College of Technology", "Paper Presentation", "Connexions", "UPI123456789"
        )


def test_storage_failure_leaves_account_unchanged(app, make_account):
    account = make_account()
    failure = OperationalError("UPDATE", {}, Exception("disk I/O error"))

    with mock.patch.object(db.session, "commit", side_effect=failure):
        with pytest.raises(RegistrationSystemError):
            submit(account)

    db.session.expire_all()
    stored = db.session.get(Account, account.id)
    assert stored.event_id.startswith("PENDING_")
    assert stored.transaction_id.startswith("PENDING_")
    assert stored.college is None


# --- fetch_confirmation ---

def test_fetch_confirmation_by_each_selector(app, make_account):
    account = make_account()
    submit(account)

    assert fetch_confirmation(account_id=account.id).id == account.id
    assert fetch_confirmation(event_id="Sympo01").id == account.id
    assert fetch_confirmation(ticket_token=account.ticket_token).id == account.id


def test_fetch_confirmation_ignores_unfinalized_accounts(app, make_account):
    account = make_account()

    with pytest.raises(NotFoundError):
        fetch_confirmation(account_id=account.id)
    with pytest.raises(NotFoundError):
        fetch_confirmation(ticket_token=account.ticket_token)
    with pytest.raises(NotFoundError):
        fetch_confirmation(event_id=account.event_id)


def test_fetch_confirmation_needs_exactly_one_selector(app):
    with pytest.raises(ValueError):
        fetch_confirmation()
    with pytest.raises(ValueError):
        fetch_confirmation(account_id=1, event_id="Sympo01")


# --- audit / rate limiting ---

def test_login_events_are_appended(app):
    with app.test_request_context("/login", environ_base={"REMOTE_ADDR": "10.0.0.7"}):
        record_login_event("login_not_found", "asha@example.com", "9876543210")
        record_login_event("login_success", "asha@example.com", "9876543210")

    events = LoginEvent.query.order_by(LoginEvent.id).all()
    assert [e.action for e in events] == ["login_not_found", "login_success"]
    assert all(e.ip_address == "10.0.0.7" for e in events)
    assert events[0].created_at is not None


def test_rate_limit_counts_only_listed_actions_from_address(app):
    with app.test_request_context("/login", environ_base={"REMOTE_ADDR": "10.0.0.8"}):
        for _ in range(3):
            record_login_event("login_not_found", "x@example.com", "9000000000")
        record_login_event("login_success", "x@example.com", "9000000000")

    assert check_rate_limit(["login_not_found"], "10.0.0.8", limit=4) is True
    assert check_rate_limit(["login_not_found"], "10.0.0.8", limit=3) is False
    assert check_rate_limit(["login_not_found"], "10.0.0.9", limit=3) is True
    assert check_rate_limit(["login_not_found"], "10.0.0.8", limit=0) is True
