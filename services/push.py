"""
Web Push transport and subscription management.

WebPushTransport.send(user_id, message) -> {'sent': n, 'failed': n}
is the only thing the notification fan-out knows about push.
"""

import json
import logging
import time
from datetime import datetime

from pywebpush import WebPushException, webpush
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import PushSubscription
from services.results import ValidationError, service_operation

logger = logging.getLogger(__name__)

# Push services answer these for subscriptions that will never work again
GONE_STATUS_CODES = (404, 410)


def build_push_message(title, body, tag='notification', data=None):
    """
    Push payload. The tag always carries a millisecond timestamp so clients
    never collapse two notifications of the same kind into one.
    """
    return {
        'title': title,
        'body': body,
        'tag': f"{tag}-{int(time.time() * 1000)}",
        'data': data or {'url': '/'},
    }


class WebPushTransport:
    """VAPID web push over pywebpush, one request per active subscription"""

    def __init__(self, app):
        self.private_key = app.config.get('VAPID_PRIVATE_KEY')
        self.public_key = app.config.get('VAPID_PUBLIC_KEY')
        self.email = app.config.get('VAPID_EMAIL')
        self.ttl = app.config.get('PUSH_TTL', 86400)

    @property
    def configured(self):
        return bool(self.private_key and self.public_key)

    def send(self, user_id, message):
        if not self.configured:
            logger.warning("VAPID keys not configured, push to user %s skipped", user_id)
            return {'sent': 0, 'failed': 0}

        subscriptions = PushSubscription.query.filter_by(user_id=user_id, is_active=True).all()
        if not subscriptions:
            logger.info("No push subscriptions for user %s", user_id)
            return {'sent': 0, 'failed': 0}

        payload = json.dumps(message)
        sent = failed = 0
        now = datetime.utcnow()

        for subscription in subscriptions:
            try:
                webpush(
                    subscription_info=subscription.subscription_info(),
                    data=payload,
                    vapid_private_key=self.private_key,
                    vapid_claims={'sub': f"mailto:{self.email}"},
                    ttl=self.ttl,
                )
            except WebPushException as e:
                failed += 1
                status = getattr(e.response, 'status_code', None)
                if status in GONE_STATUS_CODES:
                    subscription.is_active = False
                    subscription.deactivated_at = now
                logger.error("Push to user %s failed (%s): %s", user_id, status, e)
                continue

            sent += 1
            subscription.last_used = now

        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Could not update push subscriptions for user %s: %s", user_id, e)

        return {'sent': sent, 'failed': failed}


@service_operation
def subscribe(user, subscription, user_agent=None):
    """Register (or re-activate) a browser subscription for the user"""
    subscription = subscription or {}
    endpoint = subscription.get('endpoint')
    keys = subscription.get('keys') or {}

    errors = {}
    if not endpoint:
        errors['endpoint'] = 'Endpoint is required'
    if not keys.get('p256dh') or not keys.get('auth'):
        errors['keys'] = 'p256dh and auth keys are required'
    if errors:
        raise ValidationError('Invalid subscription', fields=errors)

    fields = {
        'user_id': user.id,
        'p256dh': keys['p256dh'],
        'auth': keys['auth'],
        'user_agent': user_agent,
        'is_active': True,
        'deactivated_at': None,
    }

    row = PushSubscription.query.filter_by(endpoint=endpoint).first()
    if row is None:
        db.session.add(PushSubscription(endpoint=endpoint, **fields))
    else:
        # A browser endpoint belongs to whoever subscribed it last
        for name, value in fields.items():
            setattr(row, name, value)
    db.session.commit()

    return {'subscribed': True, 'endpoint': endpoint}


@service_operation
def unsubscribe(user, endpoint):
    if not endpoint:
        raise ValidationError('Endpoint is required', fields={'endpoint': 'Endpoint is required'})

    row = PushSubscription.query.filter_by(endpoint=endpoint, user_id=user.id).first()
    if row is not None and row.is_active:
        row.is_active = False
        row.deactivated_at = datetime.utcnow()
        db.session.commit()

    return {'subscribed': False, 'endpoint': endpoint}
