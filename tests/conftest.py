import itertools
import os
import sys
from datetime import timedelta

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# Configure before the app module builds its settings
os.environ.update({
    'DATABASE_URL': 'sqlite://',
    'SECRET_KEY': 'test-secret',
    'PAYMENT_WEBHOOK_SECRET': 'whsec-test',
    'UPI_VPA': 'stargym@okaxis',
    'UPI_PAYEE_NAME': 'Star Gym',
    'PUBLIC_BASE_URL': 'https://gym.test',
    'FRONTEND_URL': 'https://members.gym.test',
    'FLASK_SECURE_COOKIES': '0',
    'EXPIRY_SWEEP_ENABLED': '0',
    'ADMIN_USERNAME': 'admin',
    'ADMIN_PASSWORD': 'admin123',
    'SMTP_HOST': '',
    'WHATSAPP_TOKEN': '',
    'TWILIO_SID': '',
    'LOG_LEVEL': 'WARNING',
})

import app as app_module  # noqa: E402
from auth import ensure_admin  # noqa: E402
from members import register_member  # noqa: E402
from models import db  # noqa: E402
from utils import today  # noqa: E402


class RecordingSink:
    def __init__(self):
        self.sent = []

    def send(self, contact, kind, data):
        self.sent.append((contact, kind, dict(data)))
        return 'ok'

    def kinds(self):
        return [kind for _, kind, _ in self.sent]


@pytest.fixture(scope='session')
def app():
    app_module.app.config['TESTING'] = True
    return app_module.app


@pytest.fixture()
def sink():
    return RecordingSink()


@pytest.fixture(autouse=True)
def app_ctx(app, sink):
    with app.app_context():
        db.drop_all()
        db.create_all()
        ensure_admin('admin', 'admin123')
        app_module.catalog.invalidate()
        app_module.login_limiter.store.reset()
        app_module.public_limiter.store.reset()
        app_module.use_notifier(sink)
        yield
        db.session.remove()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def admin_client(app):
    c = app.test_client()
    res = c.post('/api/auth/login', json={'username': 'admin', 'password': 'admin123'})
    assert res.status_code == 200, res.data
    return c


@pytest.fixture()
def catalog():
    return app_module.catalog


@pytest.fixture()
def payments():
    return app_module.payments_service


@pytest.fixture()
def renewals():
    return app_module.renewal_service


_emails = itertools.count(1)


@pytest.fixture()
def make_member(catalog, sink):
    def _make(plan='1month', payment_method='cash', start=None, end=None, name='Asha Rao'):
        start = start or today()
        end = end or start + timedelta(days=30)
        n = next(_emails)
        return register_member({
            'name': name,
            'email': f'member{n}@example.org',
            'phone': f'98{n:08d}',
            'gender': 'Female',
            'plan': plan,
            'start_date': start.isoformat(),
            'end_date': end.isoformat(),
            'payment_method': payment_method,
        }, catalog, sink)
    return _make


@pytest.fixture()
def refresh():
    def _refresh(obj):
        db.session.expire_all()
        return db.session.get(type(obj), obj.id)
    return _refresh
