import csv
import io
from datetime import date

import pytest

from errors import ValidationError
from members import record_manual_entry, soft_delete_member
from reports import ledger_csv_bytes, monthly_revenue, revenue_by_plan, revenue_for_range, yearly_revenue


@pytest.fixture()
def ledger(make_member, catalog):
    """Three confirmed entries in 2024 plus one pending one."""
    a = make_member(name='Anil')
    b = make_member(name='Bina')
    rows = [
        (a, {'type': 'join', 'date': '2024-01-10', 'amount': 1500, 'payment_mode': 'cash',
             'plan': '1month', 'payment_status': 'confirmed'}),
        (a, {'type': 'renewal', 'date': '2024-02-12', 'amount': 3500, 'payment_mode': 'online',
             'plan': '3month', 'payment_status': 'confirmed'}),
        (b, {'type': 'join', 'date': '2024-02-20', 'amount': 8000, 'payment_mode': 'online',
             'plan': 'yearly', 'payment_status': 'confirmed'}),
        (b, {'type': 'renewal', 'date': '2024-02-25', 'amount': 999, 'payment_mode': 'cash',
             'plan': '1month', 'payment_status': 'pending'}),
    ]
    for member, data in rows:
        record_manual_entry(member.id, data, catalog)
    return a, b


def test_monthly_revenue(ledger):
    feb = monthly_revenue(2024, 2)
    assert feb['total'] == 11500
    assert feb['entries'] == 2
    assert (feb['cash'], feb['online']) == (0, 11500)
    assert (feb['joins'], feb['renewals']) == (1, 1)


def test_empty_month(ledger):
    assert monthly_revenue(2023, 7)['total'] == 0


def test_yearly_revenue(ledger):
    year = yearly_revenue(2024)
    assert year['total'] == 13000
    assert year['months'][0] == {'month': 1, 'total': 1500}
    assert year['months'][1] == {'month': 2, 'total': 11500}
    assert len(year['months']) == 12


def test_deleted_members_still_count(ledger):
    a, _ = ledger
    soft_delete_member(a.id)
    assert yearly_revenue(2024)['total'] == 13000


def test_revenue_by_plan(ledger):
    by_plan = revenue_by_plan()
    assert by_plan[0] == {'plan': 'yearly', 'total': 8000, 'entries': 1}
    assert {p['plan'] for p in by_plan} == {'yearly', '3month', '1month'}


def test_revenue_for_range(ledger):
    result = revenue_for_range('2024-02-01', '2024-02-15')
    assert result['total'] == 3500
    with pytest.raises(ValidationError):
        revenue_for_range(date(2024, 3, 1), date(2024, 2, 1))


def test_ledger_csv(ledger):
    rows = list(csv.DictReader(io.StringIO(ledger_csv_bytes().decode('utf-8'))))
    assert len(rows) == 3
    assert rows[0]['member_name'] == 'Anil'
    assert {r['amount'] for r in rows} == {'1500', '3500', '8000'}
