from datetime import timedelta

from models import Member, MembershipEntry, db
from utils import add_months, today


def register(client, **overrides):
    start = today()
    payload = {
        'name': 'Kiran Patel',
        'email': 'kiran@example.org',
        'phone': '9812345678',
        'gender': 'Male',
        'plan': '1month',
        'start_date': start.isoformat(),
        'end_date': add_months(start, 1).isoformat(),
        'payment_method': 'online',
    }
    payload.update(overrides)
    res = client.post('/api/members/register', json=payload)
    assert res.status_code == 201, res.data
    return res.get_json()['member']


def test_security_headers(client):
    res = client.get('/api/settings/plans')
    assert res.headers['X-Frame-Options'] == 'DENY'
    assert res.headers['X-Content-Type-Options'] == 'nosniff'


def test_plans_listing(client):
    data = client.get('/api/settings/plans').get_json()
    assert data['currency'] == 'INR'
    assert {p['code']: p['price'] for p in data['plans']}['yearly'] == 8000


def test_admin_endpoints_require_login(client):
    assert client.get('/api/members').status_code == 401
    assert client.put('/api/settings/plans', json={'1month': 1}).status_code == 401


def test_staff_cannot_use_admin_endpoints(app, client):
    from auth import create_user

    create_user('desk', 'desk-pass', role='staff')
    client.post('/api/auth/login', json={'username': 'desk', 'password': 'desk-pass'})
    res = client.get('/api/members')
    assert res.status_code == 403
    assert res.get_json() == {'ok': False, 'error': 'Admin only'}


def test_login_rate_limit(client):
    codes = [
        client.post('/api/auth/login', json={'username': 'admin', 'password': 'nope'}).status_code
        for _ in range(6)
    ]
    assert codes == [401] * 5 + [429]


def test_online_join_paid_through_webhook(client, admin_client, sink):
    member = register(client)
    assert member['payment_status'] == 'pending'

    res = client.post('/api/payments/create', json={'member_id': member['id']})
    assert res.status_code == 201
    order = res.get_json()
    assert order['amount'] == 1500
    assert order['status'] == 'created'
    assert order['upi_intent'].startswith('upi://pay?pa=stargym%40okaxis')

    status = client.get(f"/api/payments/status/{order['order_id']}").get_json()
    assert status['status'] == 'created'
    details = client.get(f"/api/payments/details/{order['order_id']}").get_json()
    assert details['qr_image'].startswith('data:image/png')

    bad = client.post('/api/payments/webhook', json={'orderId': order['order_id'], 'status': 'success'},
                      headers={'X-Webhook-Secret': 'guess'})
    assert bad.status_code == 401

    body = {'orderId': order['order_id'], 'status': 'success', 'externalRef': 'UTR42'}
    for _ in range(2):
        ok = client.post('/api/payments/webhook', json=body, headers={'X-Webhook-Secret': 'whsec-test'})
        assert ok.status_code == 200
        assert ok.get_json()['status'] == 'paid'

    status = client.get(f"/api/payments/status/{order['order_id']}").get_json()
    assert status['status'] == 'paid'
    assert status['external_ref'] == 'UTR42'

    history = admin_client.get(f"/api/members/{member['id']}/membership-history").get_json()
    assert len(history['membership_history']) == 1
    assert history['membership_history'][0]['transaction_id'] == 'UTR42'

    members = admin_client.get('/api/members').get_json()['members']
    assert members[0]['subscription_status'] == 'active'
    assert sink.kinds() == ['registration', 'payment_confirmed']


def test_unknown_order_is_404(client):
    res = client.get('/api/payments/status/ORD-nope')
    assert res.status_code == 404
    assert res.get_json()['ok'] is False


def test_register_validation_error_shape(client):
    res = client.post('/api/members/register', json={'name': 'x'})
    assert res.status_code == 400
    body = res.get_json()
    assert body['ok'] is False
    assert 'field' in body


def test_cash_join_approved_by_admin_then_receipt(client, admin_client):
    member = register(client, payment_method='cash')

    res = admin_client.patch(f"/api/members/{member['id']}/approve")
    assert res.status_code == 200
    assert res.get_json()['member']['payment_status'] == 'confirmed'

    entry = MembershipEntry.query.filter_by(member_id=member['id']).one()
    pdf = admin_client.get(f"/receipts/{member['id']}/{entry.id}.pdf")
    assert pdf.status_code == 200
    assert pdf.mimetype == 'application/pdf'
    assert admin_client.get(f"/receipts/{member['id']}/{entry.id + 99}.pdf").status_code == 404


def test_reject_payment_endpoint(client, admin_client, sink):
    member = register(client, payment_method='cash')
    res = admin_client.patch(f"/api/members/{member['id']}/reject-payment")
    assert res.status_code == 200
    assert res.get_json()['member']['subscription_status'] == 'expired'
    assert admin_client.patch(f"/api/members/{member['id']}/reject-payment").status_code == 404


def test_renewal_by_link(client, admin_client, sink):
    start = today() - timedelta(days=40)
    member = register(client, payment_method='cash', start_date=start.isoformat(),
                      end_date=(start + timedelta(days=30)).isoformat())
    admin_client.patch(f"/api/members/{member['id']}/approve")

    sent = admin_client.post(f"/api/members/{member['id']}/notify-expired").get_json()
    token = sent['renewal_url'].rsplit('/', 1)[1]

    summary = client.get(f'/api/renewals/verify/{token}').get_json()['member']
    assert summary['name'] == 'Kiran Patel'
    assert summary['email'] != 'kiran@example.org'

    new_start = today()
    res = client.post(f'/api/renewals/{token}', json={
        'plan': '3month',
        'start_date': new_start.isoformat(),
        'end_date': add_months(new_start, 3).isoformat(),
        'payment_method': 'online',
    })
    assert res.status_code == 201
    payment = res.get_json()['payment']
    assert payment['amount'] == 3500

    pending = admin_client.get('/api/renewals/pending').get_json()['renewals']
    assert [p['member_id'] for p in pending] == [member['id']]

    res = admin_client.patch(f"/api/renewals/{member['id']}/approve")
    assert res.status_code == 200
    db.session.expire_all()
    renewed = db.session.get(Member, member['id'])
    assert renewed.original_join_date == start
    assert renewed.subscription_status == 'active'
    types = [e.type for e in MembershipEntry.query.filter_by(member_id=member['id']).order_by(MembershipEntry.id)]
    assert types == ['join', 'renewal']


def test_invalid_renewal_token(client):
    res = client.get('/api/renewals/verify/garbage')
    assert res.status_code == 401
    assert res.get_json()['error'] == 'Invalid or expired token'


def test_legacy_renewal_and_reject(client, admin_client, sink):
    member = register(client, payment_method='cash')
    admin_client.patch(f"/api/members/{member['id']}/approve")

    res = admin_client.post(f"/api/members/{member['id']}/renewal-requests",
                            json={'plan': '2month', 'payment_method': 'cash'})
    assert res.status_code == 201
    assert res.get_json()['proposal']['source'] == 'legacy'

    res = admin_client.patch(f"/api/renewals/{member['id']}/reject")
    assert res.status_code == 200
    assert res.get_json()['member']['subscription_status'] == 'expired'
    assert sink.kinds()[-1] == 'renewal_rejected'


def test_delete_member_keeps_revenue(client, admin_client):
    member = register(client, payment_method='cash')
    admin_client.patch(f"/api/members/{member['id']}/approve")
    year = today().year

    assert admin_client.delete(f"/api/members/{member['id']}").status_code == 200
    assert admin_client.get('/api/members').get_json()['members'] == []
    revenue = admin_client.get(f'/api/reports/revenue?year={year}').get_json()
    assert revenue['total'] == 1500

    csv_res = admin_client.get('/api/reports/ledger.csv')
    assert csv_res.status_code == 200
    assert b'[DELETED]' in csv_res.data


def test_update_plan_prices(admin_client, client):
    res = admin_client.put('/api/settings/plans', json={'prices': {'1month': 1600}})
    assert res.status_code == 200
    prices = {p['code']: p['price'] for p in client.get('/api/settings/plans').get_json()['plans']}
    assert prices['1month'] == 1600
    assert admin_client.put('/api/settings/plans', json={'prices': {'1month': -1}}).status_code == 400


def test_revenue_report_variants(admin_client):
    assert admin_client.get('/api/reports/revenue?by=plan').get_json()['plans'] == []
    assert admin_client.get('/api/reports/revenue?year=2024&month=13').status_code == 400
    res = admin_client.get('/api/reports/revenue?start_date=2024-01-01&end_date=2024-01-31')
    assert res.get_json()['total'] == 0


def test_manual_history_entry(client, admin_client):
    member = register(client, payment_method='cash')
    res = admin_client.post(f"/api/members/{member['id']}/membership-history", json={
        'type': 'join', 'date': today().isoformat(), 'amount': 1500, 'payment_mode': 'cash',
        'plan': '1month', 'payment_status': 'confirmed',
    })
    assert res.status_code == 201
    assert res.get_json()['member']['payment_status'] == 'confirmed'


def test_public_order_ignores_caller_amount(client, admin_client):
    member = register(client)
    res = client.post('/api/payments/create', json={'member_id': member['id'], 'amount': 1})
    assert res.status_code == 201
    assert res.get_json()['amount'] == 1500

    res = admin_client.post('/api/payments/create', json={'member_id': member['id'], 'amount': 1200})
    assert res.get_json()['amount'] == 1200


def test_admin_edits_member(client, admin_client):
    member = register(client, payment_method='cash')
    res = admin_client.patch(f"/api/members/{member['id']}", json={'phone': '9000000000', 'gender': 'Other',
                                                                     'payment_status': 'confirmed'})
    assert res.status_code == 200
    body = res.get_json()['member']
    assert (body['phone'], body['gender'], body['payment_status']) == ('9000000000', 'Other', 'pending')

    bad = admin_client.patch(f"/api/members/{member['id']}", json={'plan': 'weekly'})
    assert bad.status_code == 400
    assert client.patch(f"/api/members/{member['id']}", json={'name': 'x'}).status_code == 401


def test_current_user_endpoint(client, admin_client):
    assert client.get('/api/auth/me').status_code == 401
    assert admin_client.get('/api/auth/me').get_json()['user']['role'] == 'admin'


def test_register_requires_valid_gender(client):
    res = client.post('/api/members/register', json={
        'name': 'Kiran Patel', 'email': 'k2@example.org', 'phone': '9812345670', 'gender': 'robot',
        'plan': '1month', 'start_date': today().isoformat(),
        'end_date': add_months(today(), 1).isoformat(), 'payment_method': 'cash',
    })
    assert res.status_code == 400
    assert res.get_json()['field'] == 'gender'
