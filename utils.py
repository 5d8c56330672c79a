"""
utils.py
Dates, phone numbers, masking.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone

from errors import ValidationError

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
PHONE_RE = re.compile(r'^[0-9]{10}$')


def utcnow() -> datetime:
    # Naive UTC: SQLite drops tzinfo on the way back anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today() -> date:
    return utcnow().date()


def parse_iso(value, field: str = 'date') -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value or not isinstance(value, str):
        raise ValidationError(f"{field} is required", field=field)
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        raise ValidationError(f"{field} must be a valid ISO date (YYYY-MM-DD)", field=field)


def add_months(start: date, months: int) -> date:
    """
    Add months while keeping day in valid range (e.g., Jan 31 + 1 month => Feb 28/29).
    """
    y = start.year + (start.month - 1 + months) // 12
    m = (start.month - 1 + months) % 12 + 1
    if m == 12:
        next_month = date(y + 1, 1, 1)
    else:
        next_month = date(y, m + 1, 1)
    last_day = next_month - timedelta(days=1)
    return date(y, m, min(start.day, last_day.day))


def validate_window(start_date, end_date) -> tuple[date, date]:
    start = parse_iso(start_date, 'start_date')
    end = parse_iso(end_date, 'end_date')
    if end < start:
        raise ValidationError('end_date must not be before start_date', field='end_date')
    return start, end


def normalize_phone(phone: str | None, default_cc: str = '91') -> str:
    """Normalize phone number to E.164 digits (no plus sign)."""
    digits = re.sub(r'\D', '', phone or '')
    if not digits:
        return ''
    if digits.startswith(default_cc) and len(digits) == len(default_cc) + 10:
        return digits
    if digits.startswith('0') and len(digits) == 11:
        return default_cc + digits[1:]
    if len(digits) == 10:
        return default_cc + digits
    return digits


def mask_email(email: str | None) -> str:
    if not email or '@' not in email:
        return ''
    local, domain = email.split('@', 1)
    if len(local) <= 2:
        shown = local[:1]
    else:
        shown = local[:2]
    return f"{shown}{'*' * max(3, len(local) - len(shown))}@{domain}"


def iso(value) -> str | None:
    return value.isoformat() if value else None
