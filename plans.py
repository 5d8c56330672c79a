"""
plans.py
Plan catalog: plan code -> price and duration.

Prices are stored in the settings table and read through a short-lived
cache so admin edits show up without a restart. If the database cannot be
read, the last good table (or the built-in defaults) is used instead.
"""

from __future__ import annotations

import logging
import threading
import time

from sqlalchemy.exc import SQLAlchemyError

from errors import UnknownPlan, ValidationError
from models import PLAN_CODES, db, get_setting_json, set_setting_json

logger = logging.getLogger(__name__)

PRICING_KEY = 'plan_pricing'

PLAN_MONTHS = {
    '1month': 1,
    '2month': 2,
    '3month': 3,
    '6month': 6,
    'yearly': 12,
}

DEFAULT_PRICES = {
    '1month': 1500,
    '2month': 2500,
    '3month': 3500,
    '6month': 5000,
    'yearly': 8000,
}

PLAN_NAMES = {
    '1month': '1 Month',
    '2month': '2 Months',
    '3month': '3 Months',
    '6month': '6 Months',
    'yearly': '1 Year',
}


def _check_code(plan_code) -> str:
    if plan_code not in PLAN_MONTHS:
        raise UnknownPlan(plan_code)
    return plan_code


class PlanCatalog:
    def __init__(self, ttl_seconds: int = 300, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict[str, int] | None = None
        self._loaded_at: float | None = None

    def _load(self) -> dict[str, int]:
        stored = get_setting_json(PRICING_KEY, default={}) or {}
        if not isinstance(stored, dict):
            raise ValueError(f"{PRICING_KEY} must be a JSON object")
        prices = dict(DEFAULT_PRICES)
        for code, value in stored.items():
            if code in PLAN_MONTHS:
                prices[code] = int(value)
        return prices

    def prices(self) -> dict[str, int]:
        now = self._clock()
        with self._lock:
            fresh = self._loaded_at is not None and (now - self._loaded_at) <= self.ttl_seconds
            if self._cache is not None and fresh:
                return dict(self._cache)
            try:
                self._cache = self._load()
                self._loaded_at = now
            except (SQLAlchemyError, ValueError, TypeError) as exc:
                if isinstance(exc, SQLAlchemyError):
                    db.session.rollback()
                logger.warning('plan pricing unavailable, using %s prices',
                               'cached' if self._cache else 'default', exc_info=True)
                if self._cache is None:
                    return dict(DEFAULT_PRICES)
            return dict(self._cache)

    def resolve_price(self, plan_code) -> int:
        _check_code(plan_code)
        return int(self.prices().get(plan_code) or 0)

    def resolve_duration(self, plan_code) -> int:
        return PLAN_MONTHS[_check_code(plan_code)]

    def display_name(self, plan_code) -> str:
        return PLAN_NAMES.get(plan_code, plan_code)

    def update_prices(self, changes: dict) -> dict[str, int]:
        if not isinstance(changes, dict) or not changes:
            raise ValidationError('plan prices must be a non-empty object', field='plan_pricing')
        current = self.prices()
        for code, value in changes.items():
            _check_code(code)
            try:
                amount = int(value)
            except (TypeError, ValueError):
                raise ValidationError(f"price for {code} must be a whole number", field=code)
            if amount <= 0:
                raise ValidationError(f"price for {code} must be positive", field=code)
            current[code] = amount
        set_setting_json(PRICING_KEY, {code: current[code] for code in PLAN_CODES})
        self.invalidate()
        logger.info('plan pricing updated: %s', current)
        return current

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None
            self._loaded_at = None
