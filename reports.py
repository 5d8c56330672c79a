"""
reports.py
Revenue figures from the membership ledger.

Only confirmed entries count. Entries of soft-deleted members are kept in
every figure since the money was still received.
"""

from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime, time, timedelta

import pandas as pd

from models import Member, MembershipEntry, db
from utils import validate_window

LEDGER_COLUMNS = [
    'entry_id', 'member_id', 'member_name', 'member_deleted', 'type', 'date',
    'plan', 'duration', 'amount', 'payment_mode', 'transaction_id', 'order_id',
]


def _ledger_frame(start: date | None = None, end: date | None = None) -> pd.DataFrame:
    q = (
        db.session.query(MembershipEntry, Member)
        .join(Member, Member.id == MembershipEntry.member_id)
        .filter(MembershipEntry.payment_status == 'confirmed')
    )
    if start is not None:
        q = q.filter(MembershipEntry.date >= datetime.combine(start, time.min))
    if end is not None:
        q = q.filter(MembershipEntry.date < datetime.combine(end + timedelta(days=1), time.min))
    rows = [
        {
            'entry_id': e.id,
            'member_id': m.id,
            'member_name': m.name,
            'member_deleted': bool(m.is_deleted),
            'type': e.type,
            'date': e.date,
            'plan': e.plan,
            'duration': e.duration,
            'amount': e.amount,
            'payment_mode': e.payment_mode,
            'transaction_id': e.transaction_id,
            'order_id': e.order_id,
        }
        for e, m in q.order_by(MembershipEntry.date.asc(), MembershipEntry.id.asc()).all()
    ]
    return pd.DataFrame(rows, columns=LEDGER_COLUMNS)


def _summary(df: pd.DataFrame) -> dict:
    if df.empty:
        return {'total': 0, 'entries': 0, 'cash': 0, 'online': 0, 'joins': 0, 'renewals': 0}
    by_mode = df.groupby('payment_mode')['amount'].sum()
    by_type = df['type'].value_counts()
    return {
        'total': int(df['amount'].sum()),
        'entries': int(len(df)),
        'cash': int(by_mode.get('cash', 0)),
        'online': int(by_mode.get('online', 0)),
        'joins': int(by_type.get('join', 0)),
        'renewals': int(by_type.get('renewal', 0)),
    }


def monthly_revenue(year: int, month: int) -> dict:
    start = date(year, month, 1)
    end = date(year, month, monthrange(year, month)[1])
    return {'year': year, 'month': month, **_summary(_ledger_frame(start, end))}


def yearly_revenue(year: int) -> dict:
    df = _ledger_frame(date(year, 1, 1), date(year, 12, 31))
    totals = {}
    if not df.empty:
        totals = df.groupby(pd.to_datetime(df['date']).dt.month)['amount'].sum().to_dict()
    months = [{'month': m, 'total': int(totals.get(m, 0))} for m in range(1, 13)]
    return {'year': year, **_summary(df), 'months': months}


def revenue_by_plan() -> list[dict]:
    df = _ledger_frame()
    if df.empty:
        return []
    grouped = df.groupby('plan')['amount'].agg(['sum', 'count']).sort_values('sum', ascending=False)
    return [
        {'plan': plan, 'total': int(row['sum']), 'entries': int(row['count'])}
        for plan, row in grouped.iterrows()
    ]


def revenue_for_range(start, end) -> dict:
    start_d, end_d = validate_window(start, end)
    return {'start_date': start_d.isoformat(), 'end_date': end_d.isoformat(),
            **_summary(_ledger_frame(start_d, end_d))}


def ledger_csv_bytes(start=None, end=None) -> bytes:
    if start and end:
        start, end = validate_window(start, end)
    else:
        start = end = None
    return _ledger_frame(start, end).to_csv(index=False).encode('utf-8')
