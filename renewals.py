"""
renewals.py
Membership renewals: signed renewal links and renewal proposals.

A member reaches the renewal form either through the link sent when their
membership expires (a signed token) or at the front desk (the legacy form).
Both create a RenewalProposal and move the member to pending; payment or an
admin approval finishes the job through PaymentOrchestrator.
"""

from __future__ import annotations

import logging
from datetime import timedelta, timezone

import jwt
from sqlalchemy.exc import SQLAlchemyError

from errors import GymError, InvalidOrExpiredToken, MemberNotFound, NothingPending, ValidationError
from members import check_payment_method, get_member
from models import PaymentOrder, RenewalAudit, RenewalProposal, append_audit, db
from notifications import notify
from utils import add_months, mask_email, parse_iso, utcnow, validate_window

logger = logging.getLogger(__name__)

TOKEN_PURPOSE = 'renewal'
TOKEN_ALGORITHM = 'HS256'


class RenewalWorkflow:
    def __init__(self, settings, catalog, payments, notifier, clock=utcnow):
        self.settings = settings
        self.catalog = catalog
        self.payments = payments
        self.notifier = notifier
        self.clock = clock

    # ---------- tokens ----------

    def issue_renewal_token(self, member_id) -> str:
        member = get_member(member_id)
        now = self.clock().replace(tzinfo=timezone.utc)
        claims = {
            'member_id': member.id,
            'purpose': TOKEN_PURPOSE,
            'iat': now,
            'exp': now + timedelta(days=self.settings.renewal_token_days),
        }
        return jwt.encode(claims, self.settings.renewal_token_secret, algorithm=TOKEN_ALGORITHM)

    def renewal_link(self, token: str) -> str:
        base = self.settings.frontend_url or self.settings.public_base_url or ''
        return f"{base}/renew-membership/{token}"

    def _decode(self, token):
        if not token or not isinstance(token, str):
            raise InvalidOrExpiredToken()
        try:
            claims = jwt.decode(token, self.settings.renewal_token_secret, algorithms=[TOKEN_ALGORITHM])
        except jwt.InvalidTokenError as exc:
            logger.info('renewal token rejected: %s', exc.__class__.__name__)
            raise InvalidOrExpiredToken()
        if claims.get('purpose') != TOKEN_PURPOSE or not claims.get('member_id'):
            raise InvalidOrExpiredToken()
        try:
            return get_member(claims['member_id'])
        except MemberNotFound:
            raise InvalidOrExpiredToken()

    def verify_renewal_token(self, token) -> dict:
        member = self._decode(token)
        return {
            'member_id': member.id,
            'name': member.name,
            'email': mask_email(member.email),
            'current_plan': member.plan,
            'end_date': member.end_date.isoformat(),
        }

    # ---------- proposals ----------

    def _supersede_pending(self, member_id) -> None:
        previous = RenewalProposal.pending_for(member_id)
        if previous is None:
            return
        previous.status = 'superseded'
        previous.processed_at = self.clock()
        if previous.order_id:
            order = PaymentOrder.query.filter_by(order_id=previous.order_id, status='created').first()
            if order is not None:
                order.status = 'failed'
                order.meta = {**(order.meta or {}), 'reason': 'superseded'}
        logger.info('renewal proposal %s for member %s superseded', previous.id, member_id)

    def _propose(self, member, plan, start, end, method, source) -> dict:
        amount = self.catalog.resolve_price(plan)
        previous_plan = member.plan
        previous_amount = self.catalog.resolve_price(previous_plan) if previous_plan in self.catalog.prices() else None

        self._supersede_pending(member.id)
        if member.original_join_date is None:
            member.original_join_date = member.start_date
        member.plan = plan
        member.start_date = start
        member.end_date = end
        member.payment_method = method
        member.payment_status = 'pending'
        member.subscription_status = 'pending'
        member.renewal_count = (member.renewal_count or 0) + 1
        db.session.add(RenewalAudit(
            member_id=member.id, plan=plan, start_date=start, end_date=end,
            payment_method=method, renewed_at=self.clock(),
            previous_plan=previous_plan, previous_amount=previous_amount, new_amount=amount,
        ))
        proposal = RenewalProposal(
            member_id=member.id, source=source, plan=plan, amount=amount,
            payment_method=method, start_date=start, end_date=end,
            status='pending', requested_at=self.clock(),
        )
        db.session.add(proposal)
        db.session.flush()

        order = None
        if method == 'online':
            try:
                order = self.payments.create_order(
                    member.id, plan_code=plan, amount=amount, renewal=True,
                    proposal_id=proposal.id, commit=False,
                )
            except GymError:
                db.session.rollback()
                raise
            proposal.order_id = order.order_id
        append_audit('renewal.submitted', {
            'member_id': member.id, 'proposal_id': proposal.id, 'source': source,
            'plan': plan, 'amount': amount, 'payment_method': method,
        })
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        logger.info('renewal %s (%s) submitted for member %s: %s, %s', proposal.id, source, member.id, plan, method)
        payment = order.to_dict() if order is not None else None

        notify(self.notifier, member, 'renewal_received', {
            'plan_name': self.catalog.display_name(plan),
            'start_date': start.isoformat(),
            'end_date': end.isoformat(),
            'amount': amount,
        })
        return {'status': 'pending', 'proposal': proposal.to_dict(), 'payment': payment}

    def submit_renewal(self, token, plan_code, start_date, end_date, payment_method) -> dict:
        member = self._decode(token)
        if not plan_code:
            raise ValidationError('plan is required', field='plan')
        self.catalog.resolve_duration(plan_code)
        start, end = validate_window(start_date, end_date)
        method = check_payment_method(payment_method)
        return self._propose(member, plan_code, start, end, method, 'token')

    def request_renewal(self, member_id, plan_code, payment_method, start_date=None) -> dict:
        """Front-desk renewal; the window follows from the plan length."""
        member = get_member(member_id)
        months = self.catalog.resolve_duration(plan_code)
        method = check_payment_method(payment_method)
        if start_date:
            start = parse_iso(start_date, 'start_date')
        else:
            today = self.clock().date()
            start = member.end_date + timedelta(days=1) if member.end_date >= today else today
        return self._propose(member, plan_code, start, add_months(start, months), method, 'legacy')

    def approve_renewal(self, member_id, admin_id=None):
        member = get_member(member_id)
        if RenewalProposal.pending_for(member.id) is None and member.payment_status != 'pending':
            if member.payment_status == 'confirmed':
                return member
            raise NothingPending()
        return self.payments.approve_payment(member.id, admin_id=admin_id)

    def reject_renewal(self, member_id, admin_id=None):
        member = self.payments.reject_payment(
            member_id, admin_id=admin_id, reason='renewal_rejected', kind='renewal_rejected',
        )
        logger.info('renewal for member %s rejected by admin %s', member.id, admin_id)
        return member

    def pending_renewals(self) -> list[RenewalProposal]:
        return (
            RenewalProposal.query.filter_by(status='pending')
            .order_by(RenewalProposal.requested_at.asc())
            .all()
        )

    def send_renewal_link(self, member_id) -> dict:
        """Email/WhatsApp a fresh renewal link to one member."""
        member = get_member(member_id)
        link = self.renewal_link(self.issue_renewal_token(member.id))
        result = notify(self.notifier, member, 'membership_expired', {
            'end_date': member.end_date.isoformat(),
            'renewal_url': link,
        })
        logger.info('renewal link sent to member %s: %s', member.id, result)
        return {'renewal_url': link, 'result': result}
