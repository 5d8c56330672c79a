"""
expiry.py
Nightly sweep: lapse memberships past their end date, warn the ones about
to lapse, and close payment orders nobody paid.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from models import Member, db
from notifications import notify
from utils import utcnow

logger = logging.getLogger(__name__)

EXPIRING_WINDOW_DAYS = 7


def run_expiry_sweep(renewals, notifier, payments=None, now=None) -> dict:
    """One pass of the sweep. Running it twice on the same day changes nothing."""
    now = now or utcnow()
    today = now.date()

    lapsed = (
        Member.query.filter(
            Member.end_date < today,
            Member.subscription_status != 'expired',
            Member.is_deleted.is_(False),
        )
        .order_by(Member.id.asc())
        .all()
    )
    for member in lapsed:
        member.subscription_status = 'expired'
    db.session.commit()
    if lapsed:
        logger.info('expiry sweep: %s memberships expired', len(lapsed))

    for member in lapsed:
        link = renewals.renewal_link(renewals.issue_renewal_token(member.id))
        notify(notifier, member, 'membership_expired', {
            'end_date': member.end_date.isoformat(),
            'renewal_url': link,
        })

    expiring = (
        Member.query.filter(
            Member.subscription_status == 'active',
            Member.is_deleted.is_(False),
            Member.end_date >= today,
            Member.end_date < today + timedelta(days=EXPIRING_WINDOW_DAYS),
        )
        .order_by(Member.end_date.asc())
        .all()
    )
    for member in expiring:
        notify(notifier, member, 'membership_expiring', {
            'end_date': member.end_date.isoformat(),
            'days_left': (member.end_date - today).days,
        })

    orders_expired = payments.expire_lapsed_orders(now) if payments is not None else 0
    return {'expired': len(lapsed), 'expiring': len(expiring), 'orders_expired': orders_expired}


def start_scheduler(app, job, hour: int = 0, minute: int = 0):
    """Run `job` daily inside `app`'s context. Returns the scheduler, or None if already running."""
    if app.config.get('SCHEDULER_STARTED'):
        return None

    def _run():
        with app.app_context():
            try:
                job()
            except Exception:
                db.session.rollback()
                logger.exception('scheduled expiry sweep failed')

    scheduler = BackgroundScheduler()
    scheduler.add_job(_run, CronTrigger(hour=hour, minute=minute), id='expiry_sweep', replace_existing=True)
    scheduler.start()
    app.config['SCHEDULER_STARTED'] = True
    logger.info('expiry sweep scheduled daily at %02d:%02d', hour, minute)
    return scheduler
