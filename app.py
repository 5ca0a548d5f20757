from datetime import datetime
from functools import wraps
from urllib.parse import urlparse

import click
from flask import (
    Flask, render_template, redirect, url_for,
    request, flash, session, abort, g
)
from flask_mail import Mail, Message
from flask_wtf import FlaskForm
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.middleware.proxy_fix import ProxyFix
from wtforms import StringField, SelectField, SubmitField, TelField
from wtforms.validators import DataRequired, Email, Length, Regexp
from dotenv import load_dotenv

# Load environment variables from .env file BEFORE importing Config so it can read envs
load_dotenv()

from config import Config
from models import db, Account, LoginEvent
from registration import (
    ValidationError, ConflictError, NotFoundError, RegistrationSystemError,
    authenticate, create_account, submit_registration, fetch_confirmation,
    record_login_event, check_rate_limit, client_address, PHONE_INPUT_RE,
)

app = Flask(__name__)
app.config.from_object(Config)
db.init_app(app)
mail = Mail(app)

# Behind a reverse proxy, trust exactly PROXY_FIX_X_FOR hops of X-Forwarded-For
if app.config.get("PROXY_FIX_X_FOR", 0) > 0:
    hops = app.config["PROXY_FIX_X_FOR"]
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops)

LOGIN_FAILURE_ACTIONS = ("login_not_found", "login_invalid")
SIGNUP_ACTIONS = ("signup", "signup_conflict")

LOGIN_INVALID_MESSAGE = "Please enter a valid email and 10-digit phone number."
LOGIN_NOT_FOUND_MESSAGE = "Account not found, please sign up."
LOGIN_GENERIC_MESSAGE = "We couldn't log you in with those details. Check them or sign up."


@app.after_request
def after_request(response):
    # Security headers
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['Referrer-Policy'] = 'same-origin'
    if 'Set-Cookie' in response.headers:
        response.headers['Cache-Control'] = 'no-cache, no-store, must-revalidate, private'
    return response


# ==========================
# FORMS
# ==========================

class LoginForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    phone = TelField(
        "Phone",
        validators=[DataRequired(), Regexp(PHONE_INPUT_RE, message="Enter your 10-digit phone number.")]
    )
    submit = SubmitField("Log In")


class SignupForm(FlaskForm):
    name = StringField("Full name", validators=[DataRequired(), Length(max=120)])
    email = StringField("Email", validators=[DataRequired(), Email(), Length(max=255)])
    phone = TelField(
        "Phone",
        validators=[DataRequired(), Regexp(PHONE_INPUT_RE, message="Enter your 10-digit phone number.")]
    )
    submit = SubmitField("Create Account")


class RegistrationForm(FlaskForm):
    college = StringField("College", validators=[DataRequired(), Length(max=255)])
    technical_event = SelectField("Technical event", validators=[DataRequired()])
    non_technical_event = SelectField("Non-technical event", validators=[DataRequired()])
    transaction_id = StringField(
        "Payment transaction ID",
        validators=[DataRequired(), Length(min=4, max=64)]
    )
    submit = SubmitField("Submit Registration")

    def load_event_choices(self, config):
        self.technical_event.choices = [(e, e) for e in config.get("TECHNICAL_EVENTS", [])]
        self.non_technical_event.choices = [(e, e) for e in config.get("NON_TECHNICAL_EVENTS", [])]


# ==========================
# AUTH HELPERS
# ==========================

def get_current_account():
    account_id = session.get("account_id")
    if not account_id:
        return None
    try:
        return db.session.get(Account, account_id)
    except SQLAlchemyError:
        # If database is unavailable, nobody is logged in
        return None


def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        account = get_current_account()
        if not account:
            session.pop("account_id", None)
            flash("Please log in to continue.", "warning")
            return redirect(url_for("login", next=request.path))
        g.account = account
        return view_func(*args, **kwargs)
    return wrapper


def start_session(account):
    session.clear()
    session.permanent = True  # Use PERMANENT_SESSION_LIFETIME from config
    session["account_id"] = account.id


def safe_next_url(default):
    next_url = request.args.get("next")
    if next_url:
        parsed = urlparse(next_url)
        if not parsed.scheme and not parsed.netloc and next_url.startswith("/"):
            return next_url
    return default


def landing_url(account):
    return url_for("confirmation") if account.is_finalized else url_for("register")


@app.context_processor
def inject_globals():
    return {
        "current_account": get_current_account(),
        "current_year": datetime.now().year,
    }


# ==========================
# EMAIL FUNCTIONS
# ==========================

def send_email(to, subject, body):
    """Send an email using Flask-Mail."""
    msg = Message(subject, recipients=[to], body=body)
    try:
        mail.send(msg)
        return True
    except Exception as e:
        app.logger.error(f"Email send failed for {to}: {e}")
        return False


def send_confirmation_email(account):
    """Mail the ticket details once the event ID is finalized."""
    subject = f"Your symposium ID: {account.event_id}"
    body = f"""Hi {account.name},

Your registration is confirmed.

Event ID:            {account.event_id}
College:             {account.college}
Technical event:     {account.technical_event}
Non-technical event: {account.non_technical_event}
Transaction ID:      {account.transaction_id}

Show this ticket at the registration desk:
{url_for('ticket', token=account.ticket_token, _external=True)}

See you at the symposium!
"""
    return send_email(account.email, subject, body)


# ==========================
# PUBLIC ROUTES
# ==========================

@app.route("/")
def index():
    """Home page; doubles as the dashboard once logged in."""
    return render_template("home.html")


@app.route("/signup", methods=["GET", "POST"])
def signup():
    if get_current_account():
        flash("You are already logged in.", "info")
        return redirect(url_for("index"))

    form = SignupForm()
    if request.method == "POST":
        limit = app.config.get("SIGNUP_RATE_LIMIT", 5)
        window = app.config.get("RATE_LIMIT_WINDOW_MINUTES", 15)
        if not check_rate_limit(SIGNUP_ACTIONS, client_address(), limit, window):
            app.logger.warning(f"Signup rate limit hit from {client_address()}")
            flash("Too many sign-up attempts. Please wait a few minutes and try again.", "danger")
            return render_template("signup.html", form=form), 429

    if form.validate_on_submit():
        try:
            account = create_account(form.email.data, form.phone.data, form.name.data)
        except ConflictError as e:
            record_login_event("signup_conflict", form.email.data, form.phone.data)
            flash(e.message, "danger")
            return render_template("signup.html", form=form)
        except (ValidationError, RegistrationSystemError) as e:
            flash(e.message, "danger")
            return render_template("signup.html", form=form)

        record_login_event("signup", account.email, account.phone)
        start_session(account)
        flash("Account created. Complete your registration below.", "success")
        return redirect(url_for("register"))

    return render_template("signup.html", form=form)


@app.route("/login", methods=["GET", "POST"])
def login():
    if get_current_account():
        flash("You are already logged in.", "info")
        return redirect(url_for("index"))

    distinguish = bool(app.config.get("DISTINGUISH_LOGIN_ERRORS", True))
    form = LoginForm()
    if request.method == "POST":
        limit = app.config.get("LOGIN_RATE_LIMIT", 10)
        window = app.config.get("RATE_LIMIT_WINDOW_MINUTES", 15)
        if not check_rate_limit(LOGIN_FAILURE_ACTIONS, client_address(), limit, window):
            app.logger.warning(f"Login rate limit hit from {client_address()}")
            flash("Too many login attempts. Please wait a few minutes and try again.", "danger")
            return render_template("login.html", form=form), 429

        if not form.validate_on_submit():
            record_login_event("login_invalid", form.email.data, form.phone.data)
            flash(LOGIN_INVALID_MESSAGE if distinguish else LOGIN_GENERIC_MESSAGE, "danger")
            return render_template("login.html", form=form)

        try:
            account = authenticate(form.email.data, form.phone.data)
        except ValidationError:
            record_login_event("login_invalid", form.email.data, form.phone.data)
            flash(LOGIN_INVALID_MESSAGE if distinguish else LOGIN_GENERIC_MESSAGE, "danger")
            return render_template("login.html", form=form)
        except NotFoundError:
            record_login_event("login_not_found", form.email.data, form.phone.data)
            flash(LOGIN_NOT_FOUND_MESSAGE if distinguish else LOGIN_GENERIC_MESSAGE, "danger")
            return render_template("login.html", form=form)
        except RegistrationSystemError as e:
            flash(e.message, "danger")
            return render_template("login.html", form=form)

        start_session(account)
        record_login_event("login_success", account.email, account.phone)
        app.logger.info(f"Login: {account.email} (ID: {account.id})")
        flash("Logged in successfully.", "success")
        return redirect(safe_next_url(landing_url(account)))

    return render_template("login.html", form=form)


@app.route("/logout")
def logout():
    account = get_current_account()
    if account:
        record_login_event("logout", account.email, account.phone)
    session.clear()
    flash("Logged out.", "info")
    return redirect(url_for("index"))


@app.route("/register", methods=["GET", "POST"])
@login_required
def register():
    account = g.account
    if not app.config.get("REGISTRATION_ENABLED", True) and not account.is_finalized:
        flash("Registration is currently closed.", "warning")
        return redirect(url_for("index"))

    form = RegistrationForm()
    form.load_event_choices(app.config)
    if request.method == "GET":
        form.college.data = account.college
        form.technical_event.data = account.technical_event
        form.non_technical_event.data = account.non_technical_event
        if account.has_payment_reference:
            form.transaction_id.data = account.transaction_id

    if form.validate_on_submit():
        try:
            result = submit_registration(
                account.id,
                form.college.data,
                form.technical_event.data,
                form.non_technical_event.data,
                form.transaction_id.data,
            )
        except (ValidationError, ConflictError, RegistrationSystemError) as e:
            flash(e.message, "danger")
            return render_template("register.html", form=form, account=account)
        except NotFoundError as e:
            session.clear()
            flash(e.message, "danger")
            return redirect(url_for("signup"))

        if result.newly_finalized:
            if app.config.get("CONFIRMATION_EMAIL_ENABLED"):
                send_confirmation_email(account)
            flash(f"Registration complete, {result.name}! Your ID is {result.event_id}.", "success")
        else:
            flash("Registration details updated.", "success")
        return redirect(url_for("confirmation"))

    return render_template("register.html", form=form, account=account)


@app.route("/confirmation")
@login_required
def confirmation():
    try:
        account = fetch_confirmation(account_id=g.account.id)
    except NotFoundError:
        flash("Please complete your registration first.", "warning")
        return redirect(url_for("register"))
    except RegistrationSystemError as e:
        flash(e.message, "danger")
        return redirect(url_for("index"))
    return render_template("confirmation.html", account=account)


@app.route("/ticket/<token>")
def ticket(token):
    """Shareable ticket page addressed by an unguessable token."""
    try:
        account = fetch_confirmation(ticket_token=token)
    except NotFoundError:
        abort(404)
    return render_template("confirmation.html", account=account, shared=True)


@app.errorhandler(404)
def not_found(error):
    return render_template("error.html", code=404, message="Page not found."), 404


@app.errorhandler(500)
def server_error(error):
    db.session.rollback()
    return render_template("error.html", code=500, message="Something went wrong. Please try again later."), 500


# ==========================
# CLI COMMANDS
# ==========================

@app.cli.command("init-db")
def init_db_command():
    """
    Create the accounts and login_events tables.
    Run with: flask --app app.py init-db
    """
    db.create_all()
    print("Database initialized.")


@app.cli.command("show-ticket")
@click.argument("event_id")
def show_ticket_command(event_id):
    """Print the registration behind a finalized event ID.
    Run with: flask --app app.py show-ticket Sympo01
    """
    try:
        account = fetch_confirmation(event_id=event_id)
    except NotFoundError:
        print(f"No completed registration with ID {event_id}.")
        return
    print(f"{account.event_id}: {account.name} <{account.email}> {account.phone}")
    print(f"  College:             {account.college}")
    print(f"  Technical event:     {account.technical_event}")
    print(f"  Non-technical event: {account.non_technical_event}")
    print(f"  Transaction ID:      {account.transaction_id}")
    print(f"  Registered at:       {account.registered_at}")


@app.cli.command("login-history")
@click.option("--limit", default=20, show_default=True)
def login_history_command(limit):
    """Show the most recent login/signup audit rows."""
    events = LoginEvent.query.order_by(LoginEvent.created_at.desc()).limit(limit).all()
    for e in events:
        print(f"{e.created_at:%Y-%m-%d %H:%M:%S} {e.action:<16} {e.email or '-'} {e.phone or '-'} {e.ip_address or '-'}")


if __name__ == "__main__":
    with app.app_context():
        db.create_all()
    app.run(debug=True)
