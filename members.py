"""
members.py
Member records: registration, lookup, soft delete and the membership ledger.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, time, timedelta

from sqlalchemy.exc import IntegrityError

from errors import MemberNotFound, ValidationError
from models import (
    ENTRY_TYPES, GENDERS, PAYMENT_METHODS, PAYMENT_STATUSES, Member, MembershipEntry,
    append_audit, db,
)
from notifications import notify
from utils import EMAIL_RE, PHONE_RE, add_months, parse_iso, utcnow, validate_window

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ('name', 'email', 'phone', 'gender', 'plan', 'start_date', 'end_date', 'payment_method')


def get_member(member_id, include_deleted: bool = False) -> Member:
    try:
        member = db.session.get(Member, int(member_id))
    except (TypeError, ValueError):
        member = None
    if member is None or (member.is_deleted and not include_deleted):
        raise MemberNotFound(member_id)
    return member


def list_members(include_deleted: bool = False) -> list[Member]:
    q = Member.query
    if not include_deleted:
        q = q.filter(Member.is_deleted.is_(False))
    return q.order_by(Member.end_date.asc()).all()


def check_payment_method(value) -> str:
    if value not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}", field='payment_method')
    return value


def check_gender(value) -> str:
    if value not in GENDERS:
        raise ValidationError(f"gender must be one of {', '.join(GENDERS)}", field='gender')
    return value


def register_member(data: dict, catalog, notifier) -> Member:
    missing = [f for f in REQUIRED_FIELDS if not data.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", field=missing[0])
    email = str(data['email']).strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationError('Invalid email format', field='email')
    phone = str(data['phone']).strip()
    if not PHONE_RE.match(phone):
        raise ValidationError('Phone number must be 10 digits', field='phone')
    plan = data['plan']
    amount = catalog.resolve_price(plan)
    start, end = validate_window(data['start_date'], data['end_date'])
    method = check_payment_method(data['payment_method'])
    gender = check_gender(data['gender'])

    member = Member(
        name=str(data['name']).strip(),
        email=email,
        phone=phone,
        gender=gender,
        plan=plan,
        start_date=start,
        end_date=end,
        original_join_date=start,
        payment_method=method,
        payment_status='pending',
        subscription_status='pending',
    )
    db.session.add(member)
    try:
        db.session.flush()
        append_audit('member.register', {'member_id': member.id, 'plan': plan, 'payment_method': method})
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError('email already exists', field='email')
    logger.info('registered member %s on plan %s (%s)', member.id, plan, method)

    notify(notifier, member, 'registration', {
        'plan_name': catalog.display_name(plan),
        'start_date': start.isoformat(),
        'end_date': end.isoformat(),
        'amount': amount,
    })
    return member


EDITABLE_FIELDS = ('name', 'email', 'phone', 'gender', 'plan', 'start_date', 'end_date')


def update_member(member_id, data: dict, catalog, admin_id=None) -> Member:
    """Admin edit of contact details and the current plan window.

    Unknown keys are ignored. Payment state and the ledger are never changed here.
    """
    member = get_member(member_id)
    changes = {k: data[k] for k in EDITABLE_FIELDS if data.get(k) not in (None, '')}
    if not changes:
        raise ValidationError(f"Nothing to update; editable fields: {', '.join(EDITABLE_FIELDS)}")

    values = {}
    if 'name' in changes:
        values['name'] = str(changes['name']).strip()
    if 'email' in changes:
        values['email'] = str(changes['email']).strip().lower()
        if not EMAIL_RE.match(values['email']):
            raise ValidationError('Invalid email format', field='email')
    if 'phone' in changes:
        values['phone'] = str(changes['phone']).strip()
        if not PHONE_RE.match(values['phone']):
            raise ValidationError('Phone number must be 10 digits', field='phone')
    if 'gender' in changes:
        values['gender'] = check_gender(changes['gender'])
    if 'plan' in changes:
        catalog.resolve_duration(changes['plan'])
        values['plan'] = changes['plan']
    if 'start_date' in changes or 'end_date' in changes:
        values['start_date'], values['end_date'] = validate_window(
            changes.get('start_date', member.start_date), changes.get('end_date', member.end_date),
        )

    for key, value in values.items():
        setattr(member, key, value)
    audit = {k: (v.isoformat() if hasattr(v, 'isoformat') else v) for k, v in values.items()}
    append_audit('member.update', {'member_id': member.id, 'fields': audit, 'admin_id': admin_id})
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError('email already exists', field='email')
    logger.info('member %s updated by admin %s: %s', member.id, admin_id, ', '.join(sorted(changes)))
    return member


def soft_delete_member(member_id) -> Member:
    """Anonymise the member; the ledger stays for revenue reporting."""
    member = get_member(member_id)
    now = utcnow()
    tag = secrets.token_hex(6)
    member.is_deleted = True
    member.deleted_at = now
    member.name = '[DELETED]'
    member.email = f"deleted-{member.id}-{tag}@deleted.invalid"
    member.phone = ''
    member.subscription_status = 'expired'
    append_audit('member.delete', {'member_id': member.id})
    db.session.commit()
    logger.info('soft deleted member %s (ledger preserved)', member.id)
    return member


def record_manual_entry(member_id, data: dict, catalog) -> MembershipEntry:
    """Back-fill a ledger entry by hand (e.g. a payment taken before the system existed)."""
    member = get_member(member_id)
    entry_type = data.get('type')
    if entry_type not in ENTRY_TYPES:
        raise ValidationError(f"type must be one of {', '.join(ENTRY_TYPES)}", field='type')
    plan = data.get('plan')
    duration = catalog.resolve_duration(plan)
    when = parse_iso(data.get('date'), 'date')
    try:
        amount = int(data.get('amount'))
    except (TypeError, ValueError):
        raise ValidationError('amount must be a whole number', field='amount')
    if amount <= 0:
        raise ValidationError('amount must be positive', field='amount')
    mode = data.get('payment_mode')
    if mode not in PAYMENT_METHODS:
        raise ValidationError(f"payment_mode must be one of {', '.join(PAYMENT_METHODS)}", field='payment_mode')
    status = data.get('payment_status') or 'pending'
    if status not in PAYMENT_STATUSES:
        raise ValidationError(f"payment_status must be one of {', '.join(PAYMENT_STATUSES)}", field='payment_status')

    entry = MembershipEntry(
        member_id=member.id,
        type=entry_type,
        date=datetime.combine(when, time.min),
        duration=str(duration),
        amount=amount,
        payment_mode=mode,
        plan=plan,
        payment_status=status,
        transaction_id=data.get('transaction_id') or None,
        notes=data.get('notes') or None,
    )
    db.session.add(entry)

    member.plan = plan
    member.start_date = when
    member.end_date = add_months(when, duration)
    member.payment_method = mode
    member.payment_status = status
    if status == 'confirmed':
        member.subscription_status = 'active'
    append_audit('ledger.manual', {'member_id': member.id, 'type': entry_type, 'amount': amount, 'plan': plan})
    db.session.commit()
    logger.info('manual %s entry of %s recorded for member %s', entry_type, amount, member.id)
    return entry


def membership_history(member_id, start=None, end=None, entry_type=None) -> list[MembershipEntry]:
    member = get_member(member_id, include_deleted=True)
    q = MembershipEntry.query.filter_by(member_id=member.id)
    if start and end:
        start_d, end_d = parse_iso(start, 'start_date'), parse_iso(end, 'end_date')
        q = q.filter(MembershipEntry.date >= datetime.combine(start_d, time.min),
                     MembershipEntry.date < datetime.combine(end_d + timedelta(days=1), time.min))
    if entry_type:
        q = q.filter_by(type=entry_type)
    return q.order_by(MembershipEntry.id.asc()).all()
