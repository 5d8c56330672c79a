"""
config.py
Environment configuration, loaded once at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from urllib.parse import urlparse

from dotenv import load_dotenv

from errors import ConfigError

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

_PLACEHOLDER_HOSTS = {'example.com', 'www.example.com', 'changeme', 'your-domain.com', 'yourdomain.com'}


def _flag(value: str | None, default: bool = False) -> bool:
    if value is None or value == '':
        return default
    return value.strip().lower() not in ('0', 'false', 'no', 'off')


def _int(name: str, value: str | None, default: int) -> int:
    if value in (None, ''):
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def normalize_database_url(db_url: str | None, sqlite_path: str) -> str:
    # Postgres providers still hand out postgres:// which SQLAlchemy rejects
    if not db_url:
        return f"sqlite:///{sqlite_path}"
    if db_url.startswith('postgres://'):
        db_url = db_url.replace('postgres://', 'postgresql://', 1)
    if 'render.com' in db_url and 'sslmode=' not in db_url:
        sep = '&' if '?' in db_url else '?'
        db_url = f"{db_url}{sep}sslmode=require"
    return db_url


def validate_base_url(name: str, value: str | None) -> str | None:
    """Return the URL without a trailing slash, or None when unset.

    Rejects anything that is not an absolute http(s) URL with a real host.
    """
    if value is None or not value.strip():
        return None
    url = value.strip().rstrip('/')
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ConfigError(f"{name} must be an absolute http(s) URL, got {value!r}")
    host = (parsed.hostname or '').lower()
    if not host or host in _PLACEHOLDER_HOSTS or '<' in url or '{' in url:
        raise ConfigError(f"{name} looks like a placeholder: {value!r}")
    return url


@dataclass(frozen=True)
class Settings:
    secret_key: str = 'dev-secret-change-me'
    database_url: str = f"sqlite:///{os.path.join(BASE_DIR, 'gym.db')}"
    gym_name: str = 'StarGym'

    upi_vpa: str = ''
    upi_payee_name: str = 'StarGym'
    currency: str = 'INR'
    webhook_secret: str = ''
    order_ttl_minutes: int = 15

    renewal_token_secret: str = 'dev-secret-change-me'
    renewal_token_days: int = 7

    plan_cache_seconds: int = 300

    public_base_url: str | None = None
    frontend_url: str | None = None

    smtp_host: str = ''
    smtp_port: int = 587
    smtp_username: str = ''
    smtp_password: str = ''
    mail_from: str = ''

    whatsapp_token: str = ''
    whatsapp_phone_number_id: str = ''
    twilio_sid: str = ''
    twilio_auth: str = ''
    twilio_whatsapp_from: str = 'whatsapp:+14155238886'
    default_country_code: str = '91'

    expiry_sweep_enabled: bool = False
    expiry_sweep_hour: int = 0
    expiry_sweep_minute: int = 0

    login_rate_limit: int = 5
    login_rate_window_seconds: int = 15 * 60
    public_rate_limit: int = 100
    public_rate_window_seconds: int = 15 * 60

    secure_cookies: bool = True

    @classmethod
    def from_env(cls, env: dict | None = None, dotenv_path: str | None = None) -> "Settings":
        if env is None:
            load_dotenv(dotenv_path or os.path.join(BASE_DIR, '.env'))
            env = dict(os.environ)
        secret_key = env.get('SECRET_KEY') or 'dev-secret-change-me'
        return cls(
            secret_key=secret_key,
            database_url=normalize_database_url(env.get('DATABASE_URL'), os.path.join(BASE_DIR, 'gym.db')),
            gym_name=env.get('GYM_NAME') or 'StarGym',
            upi_vpa=(env.get('UPI_VPA') or env.get('GPAY_VPA') or '').strip(),
            upi_payee_name=(env.get('UPI_PAYEE_NAME') or 'StarGym').strip(),
            currency=(env.get('PAYMENT_CURRENCY') or 'INR').strip().upper(),
            webhook_secret=env.get('PAYMENT_WEBHOOK_SECRET') or '',
            order_ttl_minutes=_int('PAYMENT_ORDER_TTL_MINUTES', env.get('PAYMENT_ORDER_TTL_MINUTES'), 15),
            renewal_token_secret=env.get('RENEWAL_TOKEN_SECRET') or env.get('JWT_SECRET') or secret_key,
            renewal_token_days=_int('RENEWAL_TOKEN_DAYS', env.get('RENEWAL_TOKEN_DAYS'), 7),
            plan_cache_seconds=_int('PLAN_PRICE_CACHE_SECONDS', env.get('PLAN_PRICE_CACHE_SECONDS'), 300),
            public_base_url=validate_base_url('PUBLIC_BASE_URL', env.get('PUBLIC_BASE_URL')),
            frontend_url=validate_base_url('FRONTEND_URL', env.get('FRONTEND_URL')),
            smtp_host=env.get('SMTP_HOST') or '',
            smtp_port=_int('SMTP_PORT', env.get('SMTP_PORT'), 587),
            smtp_username=env.get('SMTP_USERNAME') or env.get('GMAIL_EMAIL') or '',
            smtp_password=env.get('SMTP_PASSWORD') or env.get('GMAIL_PASSWORD') or '',
            mail_from=env.get('MAIL_FROM') or env.get('SMTP_USERNAME') or env.get('GMAIL_EMAIL') or '',
            whatsapp_token=env.get('WHATSAPP_TOKEN') or '',
            whatsapp_phone_number_id=env.get('WHATSAPP_PHONE_NUMBER_ID') or '',
            twilio_sid=env.get('TWILIO_SID') or '',
            twilio_auth=env.get('TWILIO_AUTH') or '',
            twilio_whatsapp_from=env.get('TWILIO_WHATSAPP') or 'whatsapp:+14155238886',
            default_country_code=(env.get('WHATSAPP_DEFAULT_COUNTRY_CODE') or '91').lstrip('+'),
            expiry_sweep_enabled=_flag(env.get('EXPIRY_SWEEP_ENABLED')),
            expiry_sweep_hour=_int('EXPIRY_SWEEP_HH', env.get('EXPIRY_SWEEP_HH'), 0),
            expiry_sweep_minute=_int('EXPIRY_SWEEP_MM', env.get('EXPIRY_SWEEP_MM'), 0),
            login_rate_limit=_int('LOGIN_RATE_LIMIT', env.get('LOGIN_RATE_LIMIT'), 5),
            login_rate_window_seconds=_int('LOGIN_RATE_WINDOW_SECONDS', env.get('LOGIN_RATE_WINDOW_SECONDS'), 15 * 60),
            public_rate_limit=_int('PUBLIC_RATE_LIMIT', env.get('PUBLIC_RATE_LIMIT'), 100),
            public_rate_window_seconds=_int('PUBLIC_RATE_WINDOW_SECONDS', env.get('PUBLIC_RATE_WINDOW_SECONDS'), 15 * 60),
            secure_cookies=_flag(env.get('FLASK_SECURE_COOKIES'), default=True),
        )
