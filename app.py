import logging
import os
from functools import wraps
from io import BytesIO

from flask import Flask, jsonify, request, send_file
from flask_migrate import Migrate
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

import auth
from config import Settings
from documents import build_receipt_pdf
from errors import GymError, NotFound, RateLimited, ValidationError
from expiry import run_expiry_sweep, start_scheduler
from members import (
    get_member, list_members, membership_history, record_manual_entry,
    register_member, soft_delete_member, update_member,
)
from models import MembershipEntry, db, ensure_schema
from notifications import build_notifier
from payments import PaymentOrchestrator
from plans import PLAN_MONTHS, PlanCatalog
from ratelimit import RateLimiter
from renewals import RenewalWorkflow
from reports import ledger_csv_bytes, monthly_revenue, revenue_by_plan, revenue_for_range, yearly_revenue
from utils import today

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

settings = Settings.from_env()

app = Flask(__name__)
app.config['SQLALCHEMY_DATABASE_URI'] = settings.database_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = settings.secret_key
# Cookie security settings
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['SESSION_COOKIE_SECURE'] = settings.secure_cookies
db.init_app(app)
Migrate(app, db)

catalog = PlanCatalog(ttl_seconds=settings.plan_cache_seconds)
payments_service = PaymentOrchestrator(settings, catalog, build_notifier(settings))
renewal_service = RenewalWorkflow(settings, catalog, payments_service, payments_service.notifier)

login_limiter = RateLimiter(settings.login_rate_limit, settings.login_rate_window_seconds)
public_limiter = RateLimiter(settings.public_rate_limit, settings.public_rate_window_seconds)


def use_notifier(sink) -> None:
    payments_service.notifier = sink
    renewal_service.notifier = sink


def run_sweep(now=None) -> dict:
    return run_expiry_sweep(renewal_service, renewal_service.notifier, payments_service, now=now)


# Basic security headers
@app.after_request
def set_security_headers(resp):
    resp.headers['Content-Security-Policy'] = "default-src 'self'; img-src 'self' data:; frame-ancestors 'none'"
    resp.headers['X-Content-Type-Options'] = 'nosniff'
    resp.headers['X-Frame-Options'] = 'DENY'
    resp.headers['Referrer-Policy'] = 'no-referrer'
    resp.headers['Permissions-Policy'] = 'geolocation=(), microphone=()'
    if os.getenv('ENABLE_HSTS', '0') in ('1', 'true', 'True'):
        resp.headers['Strict-Transport-Security'] = 'max-age=63072000; includeSubDomains; preload'
    return resp


@app.errorhandler(GymError)
def handle_gym_error(exc):
    if exc.status_code >= 500:
        logger.error('%s on %s %s: %s', exc.__class__.__name__, request.method, request.path, exc.message)
    return jsonify(exc.to_dict()), exc.status_code


@app.errorhandler(SQLAlchemyError)
def handle_db_error(exc):
    db.session.rollback()
    logger.exception('database error on %s %s', request.method, request.path)
    return jsonify({'ok': False, 'error': 'Database error'}), 500


@app.errorhandler(HTTPException)
def handle_http_error(exc):
    return jsonify({'ok': False, 'error': exc.description}), exc.code


def rate_limited(limiter, scope):
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(*args, **kwargs):
            key = f"{scope}:{request.remote_addr or 'unknown'}"
            if not limiter.allow(key):
                logger.warning('rate limit hit for %s', key)
                raise RateLimited(retry_after=limiter.retry_after())
            return view_func(*args, **kwargs)
        return wrapper
    return decorator


def _json() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _int_arg(name, default=None):
    value = request.args.get(name)
    if value in (None, ''):
        return default
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be a number", field=name)


def _admin_id():
    user = auth.current_user()
    return user.id if user else None


# ---------- auth ----------

@app.route('/api/auth/login', methods=['POST'])
@rate_limited(login_limiter, 'login')
def api_login():
    data = _json()
    user = auth.login(data.get('username'), data.get('password'))
    return jsonify({'ok': True, 'user': {'id': user.id, 'username': user.username, 'role': user.role}})


@app.route('/api/auth/logout', methods=['POST'])
def api_logout():
    auth.logout()
    return jsonify({'ok': True})


@app.route('/api/auth/me', methods=['GET'])
@auth.login_required
def api_me():
    user = auth.current_user()
    return jsonify({'ok': True, 'user': {'id': user.id, 'username': user.username, 'role': user.role}})


# ---------- members ----------

@app.route('/api/members/register', methods=['POST'])
@rate_limited(public_limiter, 'public')
def api_register():
    member = register_member(_json(), catalog, payments_service.notifier)
    return jsonify({'ok': True, 'member': member.to_dict()}), 201


@app.route('/api/members', methods=['GET'])
@auth.admin_required
def api_list_members():
    include_deleted = request.args.get('include_deleted') in ('1', 'true')
    with_history = request.args.get('with_history') in ('1', 'true')
    members = list_members(include_deleted=include_deleted)
    return jsonify({'ok': True, 'members': [m.to_dict(with_history=with_history) for m in members]})


@app.route('/api/members/<int:member_id>', methods=['GET'])
@auth.admin_required
def api_get_member(member_id):
    member = get_member(member_id, include_deleted=True)
    return jsonify({'ok': True, 'member': member.to_dict(with_history=True)})


@app.route('/api/members/<int:member_id>', methods=['PATCH'])
@auth.admin_required
def api_update_member(member_id):
    member = update_member(member_id, _json(), catalog, admin_id=_admin_id())
    return jsonify({'ok': True, 'member': member.to_dict()})


@app.route('/api/members/<int:member_id>', methods=['DELETE'])
@auth.admin_required
def api_delete_member(member_id):
    soft_delete_member(member_id)
    return jsonify({'ok': True, 'message': 'Member deleted. Revenue data preserved.'})


@app.route('/api/members/<int:member_id>/approve', methods=['PATCH'])
@auth.admin_required
def api_approve_payment(member_id):
    member = payments_service.approve_payment(member_id, admin_id=_admin_id())
    return jsonify({'ok': True, 'member': member.to_dict()})


@app.route('/api/members/<int:member_id>/reject-payment', methods=['PATCH'])
@auth.admin_required
def api_reject_payment(member_id):
    member = payments_service.reject_payment(member_id, admin_id=_admin_id())
    return jsonify({'ok': True, 'member': member.to_dict()})


@app.route('/api/members/<int:member_id>/membership-history', methods=['GET'])
@auth.admin_required
def api_membership_history(member_id):
    entries = membership_history(
        member_id,
        start=request.args.get('start_date'),
        end=request.args.get('end_date'),
        entry_type=request.args.get('type'),
    )
    return jsonify({'ok': True, 'membership_history': [e.to_dict() for e in entries]})


@app.route('/api/members/<int:member_id>/membership-history', methods=['POST'])
@auth.admin_required
def api_add_membership_history(member_id):
    entry = record_manual_entry(member_id, _json(), catalog)
    member = get_member(member_id)
    return jsonify({'ok': True, 'entry': entry.to_dict(), 'member': member.to_dict()}), 201


@app.route('/api/members/<int:member_id>/notify-expired', methods=['POST'])
@auth.admin_required
def api_notify_expired(member_id):
    sent = renewal_service.send_renewal_link(member_id)
    return jsonify({'ok': True, **sent})


# ---------- payments ----------

@app.route('/api/payments/create', methods=['POST'])
@rate_limited(public_limiter, 'public')
def api_create_payment():
    data = _json()
    member_id = data.get('member_id') or data.get('userId')
    if not member_id:
        raise ValidationError('member_id is required', field='member_id')
    # only the desk may override the catalogue price
    amount = data.get('amount') if auth.is_admin() else None
    order = payments_service.create_order(
        member_id,
        plan_code=data.get('plan') or data.get('planType'),
        amount=amount,
    )
    return jsonify({'ok': True, **order.to_dict()}), 201


@app.route('/api/payments/status/<order_id>', methods=['GET'])
@rate_limited(public_limiter, 'public')
def api_payment_status(order_id):
    return jsonify({'ok': True, **payments_service.check_status(order_id)})


@app.route('/api/payments/details/<order_id>', methods=['GET'])
@rate_limited(public_limiter, 'public')
def api_payment_details(order_id):
    return jsonify({'ok': True, **payments_service.order_details(order_id)})


@app.route('/api/payments/webhook', methods=['POST'])
def api_payment_webhook():
    data = _json()
    order = payments_service.handle_webhook(
        request.headers.get('X-Webhook-Secret'),
        data.get('orderId') or data.get('order_id'),
        status=data.get('status'),
        external_ref=data.get('externalRef') or data.get('external_ref'),
    )
    return jsonify({'ok': True, 'order_id': order.order_id, 'status': order.status})


@app.route('/api/payments/recent', methods=['GET'])
@auth.admin_required
def api_recent_payments():
    orders = payments_service.recent_orders(limit=_int_arg('limit', 20))
    return jsonify({'ok': True, 'payments': [
        {**o.to_dict(), 'paid_at': o.paid_at.isoformat() if o.paid_at else None,
         'external_ref': o.external_ref, 'member_name': o.member.name if o.member else None}
        for o in orders
    ]})


# ---------- renewals ----------

@app.route('/api/renewals/verify/<token>', methods=['GET'])
@rate_limited(public_limiter, 'public')
def api_verify_renewal(token):
    return jsonify({'ok': True, 'member': renewal_service.verify_renewal_token(token)})


@app.route('/api/renewals/<token>', methods=['POST'])
@rate_limited(public_limiter, 'public')
def api_submit_renewal(token):
    data = _json()
    result = renewal_service.submit_renewal(
        token,
        data.get('plan'),
        data.get('start_date'),
        data.get('end_date'),
        data.get('payment_method'),
    )
    return jsonify({'ok': True, **result}), 201


@app.route('/api/members/<int:member_id>/renewal-requests', methods=['POST'])
@auth.admin_required
def api_request_renewal(member_id):
    data = _json()
    result = renewal_service.request_renewal(
        member_id, data.get('plan'), data.get('payment_method'), start_date=data.get('start_date'),
    )
    return jsonify({'ok': True, **result}), 201


@app.route('/api/renewals/pending', methods=['GET'])
@auth.admin_required
def api_pending_renewals():
    pending = renewal_service.pending_renewals()
    return jsonify({'ok': True, 'renewals': [
        {**p.to_dict(), 'member_name': p.member.name} for p in pending
    ]})


@app.route('/api/renewals/<int:member_id>/approve', methods=['PATCH'])
@auth.admin_required
def api_approve_renewal(member_id):
    member = renewal_service.approve_renewal(member_id, admin_id=_admin_id())
    return jsonify({'ok': True, 'member': member.to_dict()})


@app.route('/api/renewals/<int:member_id>/reject', methods=['PATCH'])
@auth.admin_required
def api_reject_renewal(member_id):
    member = renewal_service.reject_renewal(member_id, admin_id=_admin_id())
    return jsonify({'ok': True, 'member': member.to_dict()})


# ---------- settings ----------

def _plans_payload(prices):
    return [
        {'code': code, 'name': catalog.display_name(code), 'months': months, 'price': prices.get(code)}
        for code, months in PLAN_MONTHS.items()
    ]


@app.route('/api/settings/plans', methods=['GET'])
def api_get_plans():
    return jsonify({'ok': True, 'currency': settings.currency, 'plans': _plans_payload(catalog.prices())})


@app.route('/api/settings/plans', methods=['PUT'])
@auth.admin_required
def api_update_plans():
    data = _json()
    prices = catalog.update_prices(data.get('prices', data))
    return jsonify({'ok': True, 'currency': settings.currency, 'plans': _plans_payload(prices)})


# ---------- reports ----------

@app.route('/api/reports/revenue', methods=['GET'])
@auth.admin_required
def api_revenue():
    if request.args.get('by') == 'plan':
        return jsonify({'ok': True, 'plans': revenue_by_plan()})
    start, end = request.args.get('start_date'), request.args.get('end_date')
    if start or end:
        return jsonify({'ok': True, **revenue_for_range(start, end)})
    year = _int_arg('year', today().year)
    month = _int_arg('month')
    if month is not None:
        if not 1 <= month <= 12:
            raise ValidationError('month must be between 1 and 12', field='month')
        return jsonify({'ok': True, **monthly_revenue(year, month)})
    return jsonify({'ok': True, **yearly_revenue(year)})


@app.route('/api/reports/ledger.csv', methods=['GET'])
@auth.admin_required
def api_ledger_csv():
    data = ledger_csv_bytes(request.args.get('start_date'), request.args.get('end_date'))
    return send_file(BytesIO(data), mimetype='text/csv', as_attachment=True, download_name='membership_ledger.csv')


@app.route('/receipts/<int:member_id>/<int:entry_id>.pdf', methods=['GET'])
@auth.admin_required
def receipt_pdf(member_id, entry_id):
    member = get_member(member_id, include_deleted=True)
    entry = db.session.get(MembershipEntry, entry_id)
    if entry is None or entry.member_id != member.id:
        raise NotFound('Receipt not found')
    pdf, filename = build_receipt_pdf(
        member, entry, settings.gym_name, currency=settings.currency,
        plan_name=catalog.display_name(entry.plan),
    )
    return send_file(BytesIO(pdf), mimetype='application/pdf', as_attachment=False, download_name=filename)


# ---------- startup ----------

def init_db():
    with app.app_context():
        ensure_schema()
        # Seed an admin user if none exists
        auth.ensure_admin(os.getenv('ADMIN_USERNAME', 'admin'), os.getenv('ADMIN_PASSWORD', 'admin123'))


def start_background_jobs():
    if not settings.expiry_sweep_enabled:
        return None
    # Avoid duplicate on Flask reloader
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true' or not app.debug:
        return start_scheduler(app, run_sweep, settings.expiry_sweep_hour, settings.expiry_sweep_minute)
    return None


init_db()
start_background_jobs()

if __name__ == '__main__':
    debug_mode = os.getenv('FLASK_DEBUG', '0') == '1'
    app.run(debug=debug_mode, host='0.0.0.0', port=int(os.getenv('PORT', '5000')))
