"""
errors.py
Error taxonomy shared by the services and the HTTP layer.
"""

from __future__ import annotations


class GymError(Exception):
    """Base class. `status_code` is what the JSON layer answers with."""

    status_code = 500
    default_message = 'Internal error'

    def __init__(self, message: str | None = None, **context):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.context = context

    def to_dict(self) -> dict:
        data = {'ok': False, 'error': self.message}
        data.update({k: v for k, v in self.context.items() if v is not None})
        return data


class ConfigError(GymError):
    default_message = 'Invalid configuration'


# --- not found ---

class NotFound(GymError):
    status_code = 404
    default_message = 'Not found'


class MemberNotFound(NotFound):
    default_message = 'Member not found'

    def __init__(self, member_id=None):
        super().__init__(f"Member {member_id} not found" if member_id is not None else None, member_id=member_id)


class OrderNotFound(NotFound):
    default_message = 'Payment not found'

    def __init__(self, order_id=None):
        super().__init__(f"Payment order {order_id} not found" if order_id else None, order_id=order_id)


class NothingPending(NotFound):
    default_message = 'Nothing pending for this member'


# --- validation ---

class ValidationError(GymError):
    status_code = 400
    default_message = 'Invalid request'

    def __init__(self, message: str | None = None, field: str | None = None):
        super().__init__(message, field=field)
        self.field = field


class UnknownPlan(ValidationError):
    def __init__(self, plan_code=None):
        super().__init__(f"Unknown plan {plan_code!r}", field='plan')
        self.plan_code = plan_code


class PlanResolutionError(ValidationError):
    default_message = 'Unable to resolve amount for plan'


# --- auth ---

class Unauthorized(GymError):
    status_code = 401
    default_message = 'Unauthorized'


class UnauthorizedWebhook(Unauthorized):
    default_message = 'Invalid webhook secret'


class InvalidOrExpiredToken(Unauthorized):
    default_message = 'Invalid or expired token'


class AdminRequired(GymError):
    status_code = 403
    default_message = 'Admin only'


class RateLimited(GymError):
    status_code = 429
    default_message = 'Too many requests, please try again later.'


# --- upstream / configuration ---

class PayeeNotConfigured(GymError):
    status_code = 503
    default_message = 'UPI_VPA is not configured'


class UpstreamUnavailable(GymError):
    status_code = 503
    default_message = 'Upstream service unavailable'


class LedgerImmutableError(GymError):
    status_code = 409
    default_message = 'Membership history entries cannot be modified'
