"""
Login with a per-account lockout.

Failed attempts are counted on a LoginAttempt row per account, so the
lockout holds across workers and restarts. Counting restarts after the
attempt window; a lock lifts on its own at locked_until.
"""

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from extensions import bcrypt, db
from models import LoginAttempt, User
from services.activity_log import record_activity
from services.results import AccountLocked, Unauthenticated, ValidationError, service_operation


def account_key(account_number):
    return (account_number or '').strip().lower()


def locked_until(key, now=None):
    """Lock expiry for the account, or None when it may log in"""
    now = now or datetime.utcnow()
    attempt = LoginAttempt.query.filter_by(account_key=key).first()
    if attempt and attempt.locked_until and attempt.locked_until > now:
        return attempt.locked_until
    return None


def record_failure(key, now=None):
    """
    Count one failed login. Returns the lock expiry when this failure
    locked the account, else None.
    """
    config = current_app.config
    now = now or datetime.utcnow()
    window_start = now - timedelta(minutes=config['LOGIN_ATTEMPT_WINDOW_MINUTES'])

    if LoginAttempt.query.filter_by(account_key=key).first() is None:
        db.session.add(LoginAttempt(account_key=key, failed_count=0, window_started_at=now))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()

    # Stale window (or an expired lock): start counting again
    db.session.execute(
        update(LoginAttempt)
        .where(LoginAttempt.account_key == key,
               or_(LoginAttempt.window_started_at.is_(None),
                   LoginAttempt.window_started_at < window_start,
                   LoginAttempt.locked_until < now))
        .values(failed_count=0, window_started_at=now, locked_until=None)
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        update(LoginAttempt)
        .where(LoginAttempt.account_key == key)
        .values(failed_count=LoginAttempt.failed_count + 1, last_failed_at=now)
        .execution_options(synchronize_session=False)
    )

    until = now + timedelta(minutes=config['LOGIN_LOCKOUT_MINUTES'])
    locked = db.session.execute(
        update(LoginAttempt)
        .where(LoginAttempt.account_key == key,
               LoginAttempt.failed_count >= config['LOGIN_MAX_ATTEMPTS'],
               LoginAttempt.locked_until.is_(None))
        .values(locked_until=until)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.session.commit()

    if locked:
        current_app.logger.warning(f"Account {key} locked until {until.isoformat()}")
        return until
    return None


def clear_failures(key):
    LoginAttempt.query.filter_by(account_key=key).delete(synchronize_session=False)
    db.session.commit()


def _locked_error(until):
    return AccountLocked(
        f"Too many failed login attempts. Try again after {until.strftime('%H:%M')} UTC.",
        fields={'locked_until': until.isoformat()},
    )


@service_operation
def authenticate(account_number, password):
    """Check credentials; returns the user on success"""
    errors = {}
    if not account_number:
        errors['account_number'] = 'Account number is required'
    if not password:
        errors['password'] = 'Password is required'
    if errors:
        raise ValidationError('Please enter both account number and password', fields=errors)

    key = account_key(account_number)
    until = locked_until(key)
    if until:
        raise _locked_error(until)

    user = User.query.filter_by(account_number=account_number.strip()).first()
    if user is None or not user.is_active or not bcrypt.check_password_hash(user.password, password):
        until = record_failure(key)
        if until:
            raise _locked_error(until)
        raise Unauthenticated()

    clear_failures(key)
    record_activity('user_login', {'account_number': user.account_number}, user)
    return user
