import os
from datetime import timedelta


def _env_bool(name, default):
    return os.environ.get(name, default).lower() == "true"


def _env_list(name, default):
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "change-this-in-production")
    # Database configuration
    # Use DATABASE_URL if provided (Heroku), otherwise construct from individual vars
    if os.getenv('DATABASE_URL'):
        raw_url = os.environ.get("DATABASE_URL")
        # Heroku may provide postgres://; SQLAlchemy expects postgresql+psycopg2://
        if raw_url.startswith("postgres://"):
            raw_url = raw_url.replace("postgres://", "postgresql+psycopg2://", 1)
        elif raw_url.startswith("postgresql://"):
            raw_url = raw_url.replace("postgresql://", "postgresql+psycopg2://", 1)
        SQLALCHEMY_DATABASE_URI = raw_url
    elif os.environ.get("DB_HOST"):
        DB_HOST = os.environ.get("DB_HOST")
        DB_PORT = os.environ.get("DB_PORT", "3306")
        DB_NAME = os.environ.get("DB_NAME", "symposium")
        DB_USER = os.environ.get("DB_USER", "symposium")
        # Do not hard-code passwords; require via environment
        DB_PASSWORD = os.environ.get("DB_PASSWORD", "")

        # URL-encode user and password to safely handle special characters (e.g., ! @ : / ? #)
        from urllib.parse import quote_plus
        enc_user = quote_plus(DB_USER)
        enc_password = quote_plus(DB_PASSWORD)

        SQLALCHEMY_DATABASE_URI = (
            f"mysql+pymysql://{enc_user}:{enc_password}@{DB_HOST}:{DB_PORT}/{DB_NAME}?charset=utf8mb4"
        )
    else:
        # Local SQLite database for development
        basedir = os.path.abspath(os.path.dirname(__file__))
        os.makedirs(os.path.join(basedir, 'instance'), exist_ok=True)
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{os.path.join(basedir, 'instance', 'symposium.sqlite3')}"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # SQLite serializes writers; give concurrent finalizations room to wait for the lock
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30}}
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # CSRF configuration
    WTF_CSRF_ENABLED = _env_bool("WTF_CSRF_ENABLED", "True")
    WTF_CSRF_TIME_LIMIT = int(os.environ.get("WTF_CSRF_TIME_LIMIT", 3600))  # 1 hour

    # Sessions
    PERMANENT_SESSION_LIFETIME = timedelta(minutes=int(os.environ.get("SESSION_LIFETIME_MINUTES", "60")))
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.environ.get("SESSION_COOKIE_SAMESITE", "Lax")
    SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", "False")

    # Registration gating
    REGISTRATION_ENABLED = _env_bool("REGISTRATION_ENABLED", "True")

    # ==========================
    # Event ID numbering
    # ==========================
    # Final IDs look like Sympo01, Sympo02, ... Sympo100.
    EVENT_ID_PREFIX = os.environ.get("EVENT_ID_PREFIX", "Sympo")
    EVENT_ID_WIDTH = int(os.environ.get("EVENT_ID_WIDTH", "2"))
    # Attempts before giving up when two submissions race for the same number
    EVENT_ID_MAX_RETRIES = int(os.environ.get("EVENT_ID_MAX_RETRIES", "5"))

    # Event catalogues (comma-separated in env)
    TECHNICAL_EVENTS = _env_list(
        "TECHNICAL_EVENTS",
        "Paper Presentation,Code Debugging,Web Design,Technical Quiz",
    )
    NON_TECHNICAL_EVENTS = _env_list(
        "NON_TECHNICAL_EVENTS",
        "Connexions,Photography,Treasure Hunt,Meme Contest",
    )

    # ==========================
    # Login security / UX tuning
    # ==========================
    # Attempts per client address inside the window before the form refuses
    LOGIN_RATE_LIMIT = int(os.environ.get("LOGIN_RATE_LIMIT", "10"))
    SIGNUP_RATE_LIMIT = int(os.environ.get("SIGNUP_RATE_LIMIT", "5"))
    RATE_LIMIT_WINDOW_MINUTES = int(os.environ.get("RATE_LIMIT_WINDOW_MINUTES", "15"))
    # Number of trusted reverse proxies in front of the app; 0 ignores X-Forwarded-* headers
    PROXY_FIX_X_FOR = int(os.environ.get("PROXY_FIX_X_FOR", "0"))

    # When disabled, bad input and unknown accounts share one login error message.
    DISTINGUISH_LOGIN_ERRORS = _env_bool("DISTINGUISH_LOGIN_ERRORS", "True")

    # Email configuration
    CONFIRMATION_EMAIL_ENABLED = _env_bool("CONFIRMATION_EMAIL_ENABLED", "False")
    MAIL_SERVER = os.environ.get("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", 465))
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", "False")
    MAIL_USE_SSL = _env_bool("MAIL_USE_SSL", "True")
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER", "noreply@symposium.local")
    # Flask-Mail reads this once at startup; tests set it through the environment
    MAIL_SUPPRESS_SEND = _env_bool("MAIL_SUPPRESS_SEND", "False")
