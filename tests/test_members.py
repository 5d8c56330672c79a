from datetime import timedelta

import pytest

from errors import LedgerImmutableError, MemberNotFound, UnknownPlan, ValidationError
from members import (
    get_member, list_members, membership_history, record_manual_entry, register_member, soft_delete_member,
    update_member,
)
from models import AuditLog, MembershipEntry, db
from utils import today


def _payload(**overrides):
    start = today()
    data = {
        'name': 'Meera Shah',
        'email': 'Meera@Example.org',
        'phone': '9876543210',
        'gender': 'Female',
        'plan': '1month',
        'start_date': start.isoformat(),
        'end_date': (start + timedelta(days=30)).isoformat(),
        'payment_method': 'cash',
    }
    data.update(overrides)
    return data


def test_register_member(catalog, sink):
    member = register_member(_payload(), catalog, sink)

    assert member.email == 'meera@example.org'
    assert (member.payment_status, member.subscription_status) == ('pending', 'pending')
    assert member.original_join_date == member.start_date
    assert member.renewal_count == 0
    assert sink.kinds() == ['registration']
    assert sink.sent[0][2]['amount'] == 1500
    assert AuditLog.query.filter_by(action='member.register').count() == 1


@pytest.mark.parametrize('overrides,field', [
    ({'name': ''}, 'name'),
    ({'email': 'not-an-email'}, 'email'),
    ({'phone': '12345'}, 'phone'),
    ({'payment_method': 'cheque'}, 'payment_method'),
    ({'gender': 'unknown'}, 'gender'),
    ({'gender': ''}, 'gender'),
    ({'end_date': '2000-01-01'}, 'end_date'),
    ({'start_date': '31-12-2024'}, 'start_date'),
])
def test_register_validation(catalog, sink, overrides, field):
    with pytest.raises(ValidationError) as exc:
        register_member(_payload(**overrides), catalog, sink)
    assert exc.value.field == field


def test_register_unknown_plan(catalog, sink):
    with pytest.raises(UnknownPlan):
        register_member(_payload(plan='weekly'), catalog, sink)


def test_register_duplicate_email(catalog, sink):
    register_member(_payload(), catalog, sink)
    with pytest.raises(ValidationError) as exc:
        register_member(_payload(email='meera@example.org', phone='9876500000'), catalog, sink)
    assert exc.value.field == 'email'


def test_soft_delete_keeps_ledger(payments, make_member, refresh):
    member = make_member()
    payments.approve_payment(member.id)

    soft_delete_member(member.id)

    member = refresh(member)
    assert member.is_deleted
    assert member.name == '[DELETED]'
    assert member.email.endswith('@deleted.invalid')
    assert member.subscription_status == 'expired'
    assert MembershipEntry.query.filter_by(member_id=member.id).count() == 1
    with pytest.raises(MemberNotFound):
        get_member(member.id)
    assert get_member(member.id, include_deleted=True).id == member.id
    assert member not in list_members()
    assert member in list_members(include_deleted=True)


def test_deleted_member_email_can_register_again(payments, make_member, catalog, sink):
    member = make_member()
    email = member.email
    soft_delete_member(member.id)
    again = register_member(_payload(email=email, phone='9000000001'), catalog, sink)
    assert again.id != member.id


def test_ledger_entries_cannot_be_changed(payments, make_member):
    member = make_member()
    payments.approve_payment(member.id)
    entry = MembershipEntry.query.filter_by(member_id=member.id).one()

    entry.amount = 1
    with pytest.raises(LedgerImmutableError):
        db.session.commit()
    db.session.rollback()

    db.session.delete(db.session.get(MembershipEntry, entry.id))
    with pytest.raises(LedgerImmutableError):
        db.session.commit()
    db.session.rollback()
    assert db.session.get(MembershipEntry, entry.id).amount == 1500


def test_manual_entry_updates_member(make_member, catalog, refresh):
    member = make_member()
    when = today() - timedelta(days=3)

    entry = record_manual_entry(member.id, {
        'type': 'renewal', 'date': when.isoformat(), 'amount': 3400, 'payment_mode': 'cash',
        'plan': '3month', 'payment_status': 'confirmed', 'notes': 'paid at desk',
    }, catalog)

    assert entry.duration == '3'
    member = refresh(member)
    assert member.plan == '3month'
    assert member.start_date == when
    assert member.subscription_status == 'active'


def test_manual_entry_validation(make_member, catalog):
    member = make_member()
    base = {'type': 'join', 'date': today().isoformat(), 'amount': 100, 'payment_mode': 'cash', 'plan': '1month'}
    for bad in ({'type': 'refund'}, {'amount': 'x'}, {'amount': 0}, {'payment_mode': 'card'}):
        with pytest.raises(ValidationError):
            record_manual_entry(member.id, {**base, **bad}, catalog)


def test_history_filters(payments, make_member, catalog):
    member = make_member()
    payments.approve_payment(member.id)
    old = today() - timedelta(days=400)
    record_manual_entry(member.id, {
        'type': 'join', 'date': old.isoformat(), 'amount': 900, 'payment_mode': 'cash',
        'plan': '1month', 'payment_status': 'confirmed',
    }, catalog)

    assert len(membership_history(member.id)) == 2
    recent = membership_history(member.id, start=(today() - timedelta(days=1)).isoformat(),
                                end=today().isoformat())
    assert [e.amount for e in recent] == [1500]
    assert len(membership_history(member.id, entry_type='renewal')) == 0


def test_update_member_edits_allowed_fields_only(payments, make_member, catalog, refresh):
    member = make_member()
    payments.approve_payment(member.id)
    new_start = today() + timedelta(days=1)

    update_member(member.id, {
        'name': 'Asha R.', 'gender': 'Other', 'plan': '3month',
        'start_date': new_start.isoformat(), 'end_date': (new_start + timedelta(days=90)).isoformat(),
        'payment_status': 'pending', 'renewal_count': 9,
    }, catalog, admin_id=1)

    member = refresh(member)
    assert (member.name, member.gender, member.plan) == ('Asha R.', 'Other', '3month')
    assert member.start_date == new_start
    assert member.payment_status == 'confirmed'
    assert member.renewal_count == 0
    assert MembershipEntry.query.filter_by(member_id=member.id).one().plan == '1month'
    assert AuditLog.query.filter_by(action='member.update').count() == 1


@pytest.mark.parametrize('changes,field', [
    ({'email': 'nope'}, 'email'),
    ({'phone': '123'}, 'phone'),
    ({'gender': 'x'}, 'gender'),
    ({'plan': 'weekly'}, 'plan'),
    ({'end_date': '2000-01-01'}, 'end_date'),
])
def test_update_member_validation(make_member, catalog, changes, field):
    member = make_member()
    with pytest.raises(ValidationError) as exc:
        update_member(member.id, changes, catalog)
    assert exc.value.field == field


def test_update_member_needs_a_change(make_member, catalog):
    member = make_member()
    with pytest.raises(ValidationError):
        update_member(member.id, {'payment_status': 'confirmed'}, catalog)
