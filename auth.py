"""
auth.py
Staff accounts and session-based access control.
"""

from __future__ import annotations

import logging
from functools import wraps

from flask import session
from werkzeug.security import check_password_hash, generate_password_hash

from errors import AdminRequired, Unauthorized, ValidationError
from models import User, append_audit, db

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def create_user(username: str, password: str, role: str = 'staff') -> User:
    username = (username or '').strip()
    if not username or not password:
        raise ValidationError('Username and password are required', field='username')
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters', field='password')
    if role not in ('admin', 'staff'):
        raise ValidationError('role must be admin or staff', field='role')
    if User.query.filter_by(username=username).first():
        raise ValidationError('Username is already taken', field='username')
    user = User(username=username, password_hash=generate_password_hash(password), role=role)
    db.session.add(user)
    db.session.commit()
    logger.info('created %s account %s', role, username)
    return user


def ensure_admin(username: str, password: str) -> User | None:
    """Seed the first admin account; does nothing once one exists."""
    if User.query.filter_by(username=username).first():
        return None
    return create_user(username, password, role='admin')


def authenticate(username: str, password: str) -> User:
    username = (username or '').strip()
    if not username or not password:
        raise ValidationError('Username and password are required', field='username')
    user = User.query.filter_by(username=username).first()
    if not user or not check_password_hash(user.password_hash or '', password):
        logger.warning('failed login for %r', username)
        raise Unauthorized('Invalid credentials')
    return user


def login(username: str, password: str) -> User:
    user = authenticate(username, password)
    session.clear()
    session['user_id'] = user.id
    session['username'] = user.username
    session['role'] = user.role or 'staff'
    append_audit('auth.login', {'user_id': user.id})
    db.session.commit()
    return user


def logout() -> None:
    session.clear()


def current_user() -> User | None:
    uid = session.get('user_id')
    return db.session.get(User, uid) if uid else None


def is_admin(user=None) -> bool:
    user = user or current_user()
    return user is not None and (user.role or 'staff') == 'admin'


def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if current_user() is None:
            raise Unauthorized('Login required')
        return view_func(*args, **kwargs)
    return wrapper


def admin_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        user = current_user()
        if user is None:
            raise Unauthorized('Login required')
        if not is_admin(user):
            raise AdminRequired()
        return view_func(*args, **kwargs)
    return wrapper
