"""
extensions.py - Flask Extensions
Initialize Flask extensions here to avoid circular imports.
Extensions are created here but initialized in app.py with init_app().
"""

import logging
from concurrent.futures import ThreadPoolExecutor

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_bcrypt import Bcrypt

logger = logging.getLogger(__name__)

# Database ORM (Object-Relational Mapping)
db = SQLAlchemy()

# Database Migration Tool
# Usage: flask db init, flask db migrate, flask db upgrade
migrate = Migrate()

# User Session Management
login_manager = LoginManager()

# Password Hashing
bcrypt = Bcrypt()


class PushDispatcher:
    """
    Hands push messages to the push transport without blocking the request.

    With PUSH_ASYNC enabled, jobs run on a small thread pool inside a fresh
    application context; otherwise they run inline (tests). Either way a
    failing transport is logged and never re-raised.
    """

    def __init__(self):
        self.app = None
        self.transport = None
        self._executor = None

    def init_app(self, app, transport):
        self.app = app
        self.transport = transport
        self._executor = None
        if app.config.get('PUSH_ASYNC'):
            self._executor = ThreadPoolExecutor(
                max_workers=app.config.get('PUSH_MAX_WORKERS', 4),
                thread_name_prefix='push'
            )
        app.extensions['push'] = self

    def dispatch(self, user_id, message):
        """Queue a push message for one user. Returns immediately when async."""
        if self.transport is None or not self.app.config.get('PUSH_ENABLED', True):
            return None

        if self._executor is None:
            return self._deliver(user_id, message)

        self._executor.submit(self._deliver_in_context, user_id, message)
        return None

    def _deliver_in_context(self, user_id, message):
        with self.app.app_context():
            self._deliver(user_id, message)

    def _deliver(self, user_id, message):
        try:
            result = self.transport.send(user_id, message)
        except Exception:
            # Push is best-effort; the notification row is already committed
            logger.exception("Push delivery to user %s failed", user_id)
            return {'sent': 0, 'failed': 0}
        logger.info("Push to user %s: %s", user_id, result)
        return result

    def shutdown(self, wait=True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


# Best-effort Web Push fan-out
push = PushDispatcher()
