"""
payments.py
UPI payment orders and their reconciliation against member records.

Flow: create_order() hands the member a UPI intent + QR code; the payment is
later confirmed either by the provider webhook (handle_webhook -> mark_paid)
or by an admin at the desk (approve_payment). Both paths end in the same
transaction: order paid, member confirmed/active, one confirmed ledger row.
"""

from __future__ import annotations

import hmac
import logging
import uuid
from datetime import timedelta
from urllib.parse import quote

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from documents import render_qr_data_url
from errors import (
    NothingPending, OrderNotFound, PayeeNotConfigured, PlanResolutionError,
    UnauthorizedWebhook, UnknownPlan, ValidationError,
)
from members import get_member
from models import Member, MembershipEntry, PaymentOrder, RenewalProposal, append_audit, db
from notifications import notify
from utils import utcnow

logger = logging.getLogger(__name__)

OPEN_STATUSES = ('created',)


def generate_order_id() -> str:
    return f"ORD-{uuid.uuid4()}"


def build_upi_intent(vpa: str, payee_name: str, amount: int, currency: str, order_id: str,
                     note: str | None = None) -> str:
    """upi://pay?pa=<vpa>&pn=<name>&am=<amount>&cu=<currency>&tn=<note>&tr=<order id>"""
    if not vpa or not vpa.strip():
        raise PayeeNotConfigured()
    params = [
        ('pa', vpa.strip()),
        ('pn', (payee_name or '').strip()),
        ('am', f"{amount:.2f}"),
        ('cu', currency),
        ('tn', note or f"Gym subscription {order_id}"),
        ('tr', order_id),
    ]
    query = '&'.join(f"{key}={quote(str(value), safe='')}" for key, value in params)
    return f"upi://pay?{query}"


class PaymentOrchestrator:
    def __init__(self, settings, catalog, notifier, clock=utcnow):
        self.settings = settings
        self.catalog = catalog
        self.notifier = notifier
        self.clock = clock

    # ---------- orders ----------

    def _get_order(self, order_id) -> PaymentOrder:
        order = PaymentOrder.query.filter_by(order_id=order_id).first() if order_id else None
        if order is None:
            logger.warning('payment order %s not found', order_id)
            raise OrderNotFound(order_id)
        return order

    def _resolve_amount(self, plan, amount) -> int:
        if amount not in (None, '', 0):
            try:
                amount = int(amount)
            except (TypeError, ValueError):
                raise PlanResolutionError('amount must be a whole number', field='amount')
            if amount <= 0:
                raise PlanResolutionError('amount must be positive', field='amount')
            return amount
        try:
            resolved = self.catalog.resolve_price(plan)
        except UnknownPlan:
            raise PlanResolutionError(f"Unable to resolve amount for plan {plan!r}", field='plan')
        if not resolved:
            raise PlanResolutionError(f"Unable to resolve amount for plan {plan!r}", field='plan')
        return resolved

    def create_order(self, member_id, plan_code=None, amount=None, renewal: bool = False,
                     proposal_id=None, commit: bool = True) -> PaymentOrder:
        if not self.settings.upi_vpa:
            raise PayeeNotConfigured()
        member = get_member(member_id)
        plan = plan_code or member.plan
        if plan_code and plan_code not in self.catalog.prices():
            raise PlanResolutionError(f"Unknown plan {plan_code!r}", field='plan')
        resolved_amount = self._resolve_amount(plan, amount)

        now = self.clock()
        order_id = generate_order_id()
        intent = build_upi_intent(
            self.settings.upi_vpa, self.settings.upi_payee_name, resolved_amount,
            self.settings.currency, order_id, note=f"Subscription {plan}",
        )
        order = PaymentOrder(
            order_id=order_id,
            member_id=member.id,
            amount=resolved_amount,
            currency=self.settings.currency,
            status='created',
            upi_intent=intent,
            qr_image=render_qr_data_url(intent),
            expires_at=now + timedelta(minutes=self.settings.order_ttl_minutes),
            meta={'plan': plan, 'renewal': bool(renewal), 'proposal_id': proposal_id},
            created_at=now,
        )
        db.session.add(order)
        if commit:
            db.session.commit()
        logger.info('created order %s for member %s: %s %s (%s)',
                    order_id, member.id, resolved_amount, self.settings.currency, plan)
        return order

    def order_details(self, order_id) -> dict:
        return self._get_order(order_id).to_dict()

    def check_status(self, order_id) -> dict:
        """Polling view. Safe to expose to unauthenticated callers."""
        order = self._get_order(order_id)
        status = order.status
        if status in OPEN_STATUSES and order.expires_at and order.expires_at < self.clock():
            status = 'expired'
        return {
            'order_id': order.order_id,
            'status': status,
            'paid_at': order.paid_at.isoformat() if order.paid_at else None,
            'external_ref': order.external_ref,
            'expires_at': order.expires_at.isoformat() if order.expires_at else None,
        }

    def recent_orders(self, limit: int = 20) -> list[PaymentOrder]:
        return PaymentOrder.query.order_by(PaymentOrder.id.desc()).limit(limit).all()

    # ---------- confirmation ----------

    def _append_confirmed_entry(self, member: Member, amount: int, payment_mode: str, entry_type: str,
                                transaction_id=None, order_id=None, notes=None) -> MembershipEntry:
        now = self.clock()
        member.payment_status = 'confirmed'
        member.subscription_status = 'active'
        entry = MembershipEntry(
            member_id=member.id,
            type=entry_type,
            date=now,
            duration=str(self.catalog.resolve_duration(member.plan)),
            amount=amount,
            payment_mode=payment_mode,
            plan=member.plan,
            payment_status='confirmed',
            transaction_id=transaction_id,
            order_id=order_id,
            notes=notes,
            created_at=now,
        )
        db.session.add(entry)
        return entry

    def _close_proposal(self, proposal: RenewalProposal | None, status: str, admin_id=None,
                        reopen: bool = False) -> None:
        # a paid order may belong to a proposal that was superseded meanwhile
        closable = ('pending', 'superseded') if reopen else ('pending',)
        if proposal is None or proposal.status not in closable:
            return
        proposal.status = status
        proposal.processed_at = self.clock()
        proposal.processed_by = admin_id

    def _settle_newer_proposal(self, member, order, proposal, confirmed_by=None) -> None:
        """A late payment wins over whatever was submitted after its order.

        The newer pending proposal is superseded and its order failed, and the
        member's plan window goes back to what this order paid for.
        """
        current = RenewalProposal.pending_for(member.id)
        if current is None or (proposal is not None and current.id == proposal.id):
            return
        self._close_proposal(current, 'superseded', confirmed_by)
        if current.order_id and current.order_id != order.order_id:
            stale = PaymentOrder.query.filter_by(order_id=current.order_id, status='created').first()
            if stale is not None:
                stale.status = 'failed'
                stale.meta = {**(stale.meta or {}), 'reason': 'superseded'}
        if proposal is not None:
            member.plan = proposal.plan
            member.start_date = proposal.start_date
            member.end_date = proposal.end_date
            member.payment_method = proposal.payment_method
        elif (order.meta or {}).get('plan'):
            member.plan = order.meta['plan']
        logger.warning('late payment on order %s for member %s superseded proposal %s',
                       order.order_id, member.id, current.id)

    def _receipt_url(self, member, entry) -> str | None:
        base = self.settings.public_base_url
        if not base:
            return None
        return f"{base}/receipts/{member.id}/{entry.id}.pdf"

    def _notify_confirmed(self, member, entry) -> None:
        receipt_url = self._receipt_url(member, entry)
        notify(self.notifier, member, 'payment_confirmed', {
            'amount': entry.amount,
            'currency': self.settings.currency,
            'plan_name': self.catalog.display_name(member.plan),
            'start_date': member.start_date.isoformat(),
            'end_date': member.end_date.isoformat(),
            'receipt_url': receipt_url,
            'receipt_line': f"Receipt: {receipt_url}" if receipt_url else '',
        })

    def mark_paid(self, order_id, external_ref=None, confirmed_by=None) -> PaymentOrder:
        """Mark an order paid and confirm its member. Idempotent.

        The status flip is a conditional UPDATE so two racing confirmations
        cannot both succeed; the loser sees rowcount 0 and returns the
        already-paid order. The member update and the ledger row are written
        in the same transaction as the flip.
        """
        order = self._get_order(order_id)
        if order.status == 'paid':
            logger.info('order %s already paid; nothing to do', order.order_id)
            return order

        now = self.clock()
        ref = external_ref or order.external_ref or order.order_id
        meta = dict(order.meta or {})
        if confirmed_by is not None:
            meta['confirmed_by'] = confirmed_by
        claimed = db.session.execute(
            db.update(PaymentOrder)
            .where(PaymentOrder.id == order.id, PaymentOrder.status != 'paid')
            .values(status='paid', paid_at=now, external_ref=ref, meta=meta, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            db.session.rollback()
            logger.info('order %s was confirmed concurrently', order.order_id)
            return self._get_order(order_id)

        member = db.session.get(Member, order.member_id)
        proposal = None
        if meta.get('proposal_id'):
            proposal = db.session.get(RenewalProposal, meta['proposal_id'])
        self._settle_newer_proposal(member, order, proposal, confirmed_by)
        entry_type = 'renewal' if order.is_renewal() else 'join'
        entry = self._append_confirmed_entry(
            member, order.amount, 'online', entry_type,
            transaction_id=ref, order_id=order.order_id,
        )
        self._close_proposal(proposal, 'approved', confirmed_by, reopen=True)
        append_audit('payment.paid', {
            'order_id': order.order_id, 'member_id': member.id, 'amount': order.amount,
            'external_ref': ref, 'confirmed_by': confirmed_by,
        })
        try:
            db.session.commit()
        except IntegrityError:
            # the ledger's unique order_id caught a duplicate confirmation
            db.session.rollback()
            current = self._get_order(order_id)
            if current.status == 'paid':
                return current
            raise
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception('confirming order %s failed; rolled back', order.order_id)
            raise

        order = self._get_order(order_id)
        logger.info('order %s paid (%s %s), member %s confirmed as %s',
                    order.order_id, order.amount, order.currency, member.id, entry_type)
        self._notify_confirmed(member, entry)
        return order

    def mark_failed(self, order_id, reason: str) -> PaymentOrder:
        order = self._get_order(order_id)
        if order.status == 'paid':
            logger.warning('refusing to fail paid order %s (reason=%s)', order.order_id, reason)
            return order
        order.status = 'failed'
        order.meta = {**(order.meta or {}), 'reason': reason}
        append_audit('payment.failed', {'order_id': order.order_id, 'reason': reason})
        db.session.commit()
        logger.info('order %s marked failed: %s', order.order_id, reason)
        return order

    # ---------- webhook ----------

    def verify_webhook_authenticity(self, supplied_secret) -> bool:
        expected = self.settings.webhook_secret or ''
        if not expected or not supplied_secret or not isinstance(supplied_secret, str):
            return False
        return hmac.compare_digest(supplied_secret.encode('utf-8'), expected.encode('utf-8'))

    def handle_webhook(self, supplied_secret, order_id, status=None, external_ref=None) -> PaymentOrder:
        if not self.verify_webhook_authenticity(supplied_secret):
            logger.warning('webhook rejected: invalid secret (order_id=%s)', order_id)
            raise UnauthorizedWebhook()
        if not order_id:
            raise ValidationError('orderId required', field='order_id')
        if status == 'failed':
            return self.mark_failed(order_id, 'webhook_failed')
        return self.mark_paid(order_id, external_ref)

    # ---------- admin ----------

    def _open_order_for(self, member_id, proposal: RenewalProposal | None) -> PaymentOrder | None:
        if proposal is not None:
            if not proposal.order_id:
                return None
            order = PaymentOrder.query.filter_by(order_id=proposal.order_id).first()
            return order if order is not None and order.status in OPEN_STATUSES else None
        return (
            PaymentOrder.query.filter(PaymentOrder.member_id == member_id,
                                      PaymentOrder.status.in_(OPEN_STATUSES))
            .order_by(PaymentOrder.id.desc())
            .first()
        )

    def approve_payment(self, member_id, admin_id=None) -> Member:
        """Desk confirmation (cash or manual check of an online transfer)."""
        member = get_member(member_id)
        if member.payment_status == 'confirmed':
            logger.info('member %s already confirmed; approval is a no-op', member.id)
            return member
        proposal = RenewalProposal.pending_for(member.id)

        open_order = self._open_order_for(member.id, proposal)
        if open_order is not None:
            self.mark_paid(open_order.order_id, confirmed_by=admin_id)
            return get_member(member_id)
        if proposal is None and member.subscription_status == 'expired':
            # rejected or lapsed; only a fresh submission reopens it
            raise NothingPending()

        amount = proposal.amount if proposal else self.catalog.resolve_price(member.plan)
        if not amount:
            raise PlanResolutionError(f"Unable to resolve amount for plan {member.plan!r}", field='plan')
        now = self.clock()
        claimed = db.session.execute(
            db.update(Member)
            .where(Member.id == member.id, Member.payment_status == 'pending')
            .values(payment_status='confirmed', subscription_status='active', updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            db.session.rollback()
            logger.info('member %s was confirmed concurrently', member.id)
            return get_member(member_id)

        entry_type = 'renewal' if (member.renewal_count or 0) > 0 else 'join'
        entry = self._append_confirmed_entry(
            member, amount, member.payment_method, entry_type,
            notes=f"approved by admin {admin_id}" if admin_id else None,
        )
        self._close_proposal(proposal, 'approved', admin_id)
        append_audit('payment.approved', {
            'member_id': member.id, 'amount': amount, 'type': entry_type, 'admin_id': admin_id,
        })
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception('approving payment for member %s failed; rolled back', member.id)
            raise
        logger.info('admin %s approved %s payment of %s for member %s', admin_id, entry_type, amount, member.id)
        self._notify_confirmed(member, entry)
        return member

    def reject_payment(self, member_id, admin_id=None, reason: str = 'admin_rejected',
                       kind: str = 'payment_rejected') -> Member:
        """Turn down whatever the member has pending. Never touches the ledger."""
        member = get_member(member_id)
        proposal = RenewalProposal.pending_for(member.id)
        open_order = self._open_order_for(member.id, proposal)
        awaiting = member.payment_status == 'pending' and member.subscription_status != 'expired'
        if proposal is None and open_order is None and not awaiting:
            raise NothingPending()
        if open_order is not None:
            open_order.status = 'failed'
            open_order.meta = {**(open_order.meta or {}), 'reason': reason}
        self._close_proposal(proposal, 'rejected', admin_id)
        member.subscription_status = 'expired'
        action = 'renewal.rejected' if kind == 'renewal_rejected' else 'payment.rejected'
        append_audit(action, {'member_id': member.id, 'reason': reason, 'admin_id': admin_id})
        db.session.commit()
        logger.info('admin %s rejected pending payment for member %s (%s)', admin_id, member.id, reason)
        notify(self.notifier, member, kind, {'plan_name': self.catalog.display_name(member.plan)})
        return member

    # ---------- housekeeping ----------

    def expire_lapsed_orders(self, now=None) -> int:
        now = now or self.clock()
        result = db.session.execute(
            db.update(PaymentOrder)
            .where(PaymentOrder.status == 'created', PaymentOrder.expires_at < now)
            .values(status='expired', updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if result.rowcount:
            logger.info('expired %s lapsed payment orders', result.rowcount)
        return result.rowcount
