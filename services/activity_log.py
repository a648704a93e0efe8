"""
Activity logging for auditing.
"""

from flask import current_app, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import ActivityLog
from services.results import service_operation


def _client_ip():
    if not has_request_context():
        return None
    return request.headers.get('X-Forwarded-For', request.remote_addr)


def record_activity(activity_type, payload=None, actor=None):
    """
    Log one activity entry. Fire-and-forget: a failed write is logged and
    never breaks the operation being audited.

    Call after the audited change has been committed.
    """
    try:
        db.session.add(ActivityLog(
            activity_type=activity_type,
            user_id=getattr(actor, 'id', None),
            account_type=getattr(actor, 'role', None),
            payload=payload or {},
            ip_address=_client_ip(),
        ))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Failed to log activity {activity_type}: {e}")


@service_operation
def list_activity(activity_type=None, user_id=None, limit=100):
    """Retrieve activity log entries with optional filters."""
    query = ActivityLog.query
    if activity_type:
        query = query.filter_by(activity_type=activity_type)
    if user_id:
        query = query.filter_by(user_id=user_id)
    entries = query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit).all()
    return {'activity': [entry.to_dict() for entry in entries]}
