"""
models.py
Flask-SQLAlchemy models: members and their ledger, payment orders, renewal
proposals, settings, admin users and the audit chain.
"""

from __future__ import annotations

import hashlib
import json

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event

from errors import LedgerImmutableError
from utils import iso, utcnow

db = SQLAlchemy()

PLAN_CODES = ('1month', '2month', '3month', '6month', 'yearly')
PAYMENT_METHODS = ('cash', 'online')
PAYMENT_STATUSES = ('pending', 'confirmed')
ENTRY_TYPES = ('join', 'renewal')
GENDERS = ('Male', 'Female', 'Other')


class Member(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    phone = db.Column(db.String(50), index=True)
    gender = db.Column(db.String(10), nullable=True)
    plan = db.Column(db.String(20), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False, index=True)
    original_join_date = db.Column(db.Date, nullable=True)
    payment_method = db.Column(db.String(20), nullable=False, default='cash')
    payment_status = db.Column(db.String(20), nullable=False, default='pending')
    subscription_status = db.Column(db.String(20), nullable=False, default='pending', index=True)
    renewal_count = db.Column(db.Integer, nullable=False, default=0)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    deleted_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    history = db.relationship(
        'MembershipEntry', backref='member', order_by='MembershipEntry.id',
        cascade='save-update, merge',
    )
    renewals = db.relationship(
        'RenewalAudit', backref='member', order_by='RenewalAudit.id',
        cascade='save-update, merge',
    )

    __table_args__ = (
        db.CheckConstraint('end_date >= start_date', name='ck_member_window'),
    )

    def to_dict(self, with_history: bool = False):
        data = {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'gender': self.gender,
            'plan': self.plan,
            'start_date': iso(self.start_date),
            'end_date': iso(self.end_date),
            'original_join_date': iso(self.original_join_date),
            'payment_method': self.payment_method,
            'payment_status': self.payment_status,
            'subscription_status': self.subscription_status,
            'renewal_count': self.renewal_count or 0,
            'is_deleted': bool(self.is_deleted),
            'deleted_at': iso(self.deleted_at),
            'created_at': iso(self.created_at),
        }
        if with_history:
            data['membership_history'] = [e.to_dict() for e in self.history]
            data['renewals'] = [r.to_dict() for r in self.renewals]
        return data


class MembershipEntry(db.Model):
    """One row of the revenue ledger. Append-only."""

    __tablename__ = 'membership_entry'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('member.id'), nullable=False, index=True)
    type = db.Column(db.String(20), nullable=False)
    date = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    duration = db.Column(db.String(4), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    payment_mode = db.Column(db.String(20), nullable=False)
    plan = db.Column(db.String(20), nullable=False)
    payment_status = db.Column(db.String(20), nullable=False, default='pending')
    transaction_id = db.Column(db.String(120), nullable=True)
    notes = db.Column(db.String(500), nullable=True)
    # One ledger entry per paid order, enforced by the database
    order_id = db.Column(db.String(64), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'type': self.type,
            'date': iso(self.date),
            'duration': self.duration,
            'amount': self.amount,
            'payment_mode': self.payment_mode,
            'plan': self.plan,
            'payment_status': self.payment_status,
            'transaction_id': self.transaction_id,
            'notes': self.notes,
            'order_id': self.order_id,
        }


@event.listens_for(MembershipEntry, 'before_update')
def _ledger_no_update(mapper, connection, target):
    raise LedgerImmutableError()


@event.listens_for(MembershipEntry, 'before_delete')
def _ledger_no_delete(mapper, connection, target):
    raise LedgerImmutableError()


class RenewalAudit(db.Model):
    """Informational trail of renewal submissions (not revenue)."""

    __tablename__ = 'renewal_audit'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('member.id'), nullable=False, index=True)
    plan = db.Column(db.String(20), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    payment_method = db.Column(db.String(20), nullable=False)
    renewed_at = db.Column(db.DateTime, default=utcnow)
    previous_plan = db.Column(db.String(20), nullable=True)
    previous_amount = db.Column(db.Integer, nullable=True)
    new_amount = db.Column(db.Integer, nullable=True)

    def to_dict(self):
        return {
            'plan': self.plan,
            'start_date': iso(self.start_date),
            'end_date': iso(self.end_date),
            'payment_method': self.payment_method,
            'renewed_at': iso(self.renewed_at),
            'previous_plan': self.previous_plan,
            'previous_amount': self.previous_amount,
            'new_amount': self.new_amount,
        }


class RenewalProposal(db.Model):
    """A requested plan change waiting on admin approval or payment.

    Both the token link flow and the legacy in-office form create these.
    """

    __tablename__ = 'renewal_proposal'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('member.id'), nullable=False, index=True)
    source = db.Column(db.String(10), nullable=False)
    plan = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(20), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending', index=True)
    order_id = db.Column(db.String(64), nullable=True)
    requested_at = db.Column(db.DateTime, default=utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)
    processed_by = db.Column(db.Integer, nullable=True)

    member = db.relationship('Member', backref=db.backref('proposals', order_by='RenewalProposal.id'))

    @classmethod
    def pending_for(cls, member_id):
        return (
            cls.query.filter_by(member_id=member_id, status='pending')
            .order_by(cls.id.desc())
            .first()
        )

    def to_dict(self):
        return {
            'id': self.id,
            'member_id': self.member_id,
            'source': self.source,
            'plan': self.plan,
            'amount': self.amount,
            'payment_method': self.payment_method,
            'start_date': iso(self.start_date),
            'end_date': iso(self.end_date),
            'status': self.status,
            'order_id': self.order_id,
            'requested_at': iso(self.requested_at),
            'processed_at': iso(self.processed_at),
        }


class PaymentOrder(db.Model):
    __tablename__ = 'payment_order'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(64), unique=True, nullable=False)
    member_id = db.Column(db.Integer, db.ForeignKey('member.id'), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default='INR')
    status = db.Column(db.String(20), nullable=False, default='created', index=True)
    upi_intent = db.Column(db.Text, nullable=True)
    qr_image = db.Column(db.Text, nullable=True)
    external_ref = db.Column(db.String(120), nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    meta = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    member = db.relationship('Member')

    def is_renewal(self) -> bool:
        return bool((self.meta or {}).get('renewal'))

    def to_dict(self):
        return {
            'order_id': self.order_id,
            'payment_id': self.id,
            'member_id': self.member_id,
            'upi_intent': self.upi_intent,
            'qr_image': self.qr_image,
            'amount': self.amount,
            'currency': self.currency,
            'expires_at': iso(self.expires_at),
            'status': self.status,
        }


class Setting(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False)
    value = db.Column(db.String(4000), nullable=True)


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    role = db.Column(db.String(20), default='staff')  # admin or staff


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    action = db.Column(db.String(100), nullable=False)
    data_json = db.Column(db.Text, nullable=False)
    prev_hash = db.Column(db.String(64), nullable=True)
    hash = db.Column(db.String(64), nullable=False)


def get_setting(key: str, default: str | None = None) -> str | None:
    s = Setting.query.filter_by(key=key).first()
    return s.value if s else default


def set_setting(key: str, value: str) -> None:
    s = Setting.query.filter_by(key=key).first()
    if not s:
        s = Setting(key=key, value=value)
        db.session.add(s)
    else:
        s.value = value
    db.session.commit()


def get_setting_json(key: str, default=None):
    raw = get_setting(key)
    if not raw:
        return default
    return json.loads(raw)


def set_setting_json(key: str, value_obj) -> None:
    set_setting(key, json.dumps(value_obj, sort_keys=True))


def _audit_hash(prev: str | None, ts: str, action: str, data_json: str) -> str:
    h = hashlib.sha256()
    h.update((prev or '').encode('utf-8'))
    h.update(ts.encode('utf-8'))
    h.update(action.encode('utf-8'))
    h.update(data_json.encode('utf-8'))
    return h.hexdigest()


def append_audit(action: str, data: dict) -> AuditLog:
    """Add a chained audit row to the current session; the caller commits."""
    now = utcnow()
    prev = AuditLog.query.order_by(AuditLog.id.desc()).first()
    prev_hash = prev.hash if prev else None
    data_json = json.dumps(data, separators=(',', ':'), sort_keys=True, default=str)
    digest = _audit_hash(prev_hash, now.isoformat(), action, data_json)
    rec = AuditLog(created_at=now, action=action, data_json=data_json, prev_hash=prev_hash, hash=digest)
    db.session.add(rec)
    return rec


def verify_audit_chain() -> bool:
    prev_hash = None
    for rec in AuditLog.query.order_by(AuditLog.id.asc()).all():
        if rec.prev_hash != prev_hash:
            return False
        if _audit_hash(prev_hash, rec.created_at.isoformat(), rec.action, rec.data_json) != rec.hash:
            return False
        prev_hash = rec.hash
    return True


def ensure_schema() -> None:
    db.create_all()
