"""
Runtime settings, read from the environment on every call.

Values are functions rather than module constants so tests can monkeypatch
the environment without reloading anything.
"""

from __future__ import annotations

import os

from dotenv import load_dotenv

# A local `.env` never overrides variables the process was started with.
load_dotenv(override=False)

_DEV_JWT_SECRET = "dev-secret-change-me"


def _env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or "").strip() or default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name) or default)
    except ValueError:
        return int(default)


def _env_list(name: str) -> list[str]:
    return [x.strip() for x in _env(name).split(",") if x.strip()]


# -----------------------
# Core
# -----------------------
def database_url() -> str:
    url = _env("DATABASE_URL", "sqlite:///./local.db")
    # Heroku-style URLs use a scheme SQLAlchemy 2 no longer accepts.
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def is_local_dev() -> bool:
    """No DATABASE_URL means the sqlite fallback, i.e. a developer machine."""
    return not _env("DATABASE_URL")


def app_env() -> str:
    """local | staging | prod. Defaults from `is_local_dev()` when APP_ENV is unset."""
    return _env("APP_ENV").lower() or ("local" if is_local_dev() else "prod")


def jwt_secret() -> str:
    return _env("JWT_SECRET", _DEV_JWT_SECRET)


def access_token_ttl_minutes() -> int:
    # 7 days by default; never less than a minute.
    return max(1, _env_int("ACCESS_TOKEN_TTL_MINUTES", 7 * 24 * 60))


def enforce_secure_secrets() -> None:
    """Refuses to start a production app that still signs tokens with the dev secret."""
    if app_env() in {"prod", "production"} and jwt_secret() == _DEV_JWT_SECRET:
        raise RuntimeError("JWT_SECRET must be set in production")


def allowed_hosts() -> list[str]:
    """TrustedHost allow-list, e.g. ALLOWED_HOSTS=api.keyrent.ng,keyrent.ng"""
    return _env_list("ALLOWED_HOSTS") or ["*"]


def cors_origins() -> list[str]:
    return _env_list("CORS_ORIGINS") or [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


def admin_email() -> str:
    return _env("ADMIN_EMAIL").lower()


def admin_password() -> str:
    return _env("ADMIN_PASSWORD")


# -----------------------
# Fees (all amounts in kobo)
# -----------------------
def contact_fee_base() -> int:
    """Base contact fee before verification discounts. Default: NGN 5,000."""
    return max(1, _env_int("CONTACT_FEE_BASE", 500_000))


def listing_fee() -> int:
    return max(1, _env_int("LISTING_FEE", 500_000))


def featured_listing_fee() -> int:
    return max(1, _env_int("FEATURED_LISTING_FEE", 1_500_000))


def payment_currency() -> str:
    return _env("PAYMENT_CURRENCY", "NGN").upper()


# -----------------------
# Paystack
# -----------------------
def paystack_base_url() -> str:
    return _env("PAYSTACK_BASE_URL", "https://api.paystack.co").rstrip("/")


def paystack_secret_key() -> str:
    return _env("PAYSTACK_SECRET_KEY")


def paystack_public_key() -> str:
    return _env("PAYSTACK_PUBLIC_KEY")


def paystack_webhook_secret() -> str:
    # Paystack signs webhooks with the account secret key unless told otherwise.
    return _env("PAYSTACK_WEBHOOK_SECRET") or paystack_secret_key()


# -----------------------
# Email / SMS
# -----------------------
def email_backend() -> str:
    """
    auto (default) | brevo | smtp | console

    `auto` picks Brevo when BREVO_API_KEY is set, then SMTP when SMTP_HOST is
    set, then the console logger in local dev.
    """
    return _env("EMAIL_BACKEND", "auto").lower()


def brevo_api_key() -> str:
    return _env("BREVO_API_KEY")


def brevo_sender_name() -> str:
    return _env("BREVO_SENDER_NAME", "KeyRent")


def smtp_host() -> str:
    return _env("SMTP_HOST")


def smtp_port() -> int:
    return _env_int("SMTP_PORT", 587)


def smtp_credentials() -> tuple[str, str]:
    return _env("SMTP_USER"), _env("SMTP_PASS")


def sender_email() -> str:
    # One sender for both transports; SMTP_USER is the last resort.
    return _env("SMTP_FROM") or _env("BREVO_FROM") or _env("SMTP_USER")


def sms_backend() -> str:
    """console (default) logs the text; disabled drops it."""
    return _env("SMS_BACKEND", "console").lower()
