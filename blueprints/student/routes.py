"""
blueprints/student/routes.py - Student Blueprint
Verified grades, document requests, notifications and push subscriptions.
"""

from functools import wraps

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from services import document_requests, grade_ledger, notifications, push
from services.results import ServiceResult, ValidationError

# Create blueprint
student_bp = Blueprint('student', __name__)


def student_required(f):
    """
    Decorator to ensure only students can access the route
    """
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if current_user.role != 'student':
            return jsonify({
                'success': False,
                'error': 'FORBIDDEN',
                'message': 'Access denied. Students only.',
            }), 403
        return f(*args, **kwargs)
    return decorated_function


def _respond(result):
    return jsonify(result.to_dict()), result.status_code


def _payload():
    return request.get_json(silent=True) or {}


def _student_id(source):
    """Target student; defaults to the logged-in one"""
    value = source.get('student_id', current_user.id)
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _bool_arg(value):
    if value is None:
        return None
    return value.lower() in ('true', '1', 'yes')


# ========================================
# GRADES
# ========================================

@student_bp.route('/grades')
@student_required
def verified_grades():
    """Only grades released (verified) by the adviser are visible"""
    return _respond(grade_ledger.student_verified_grades(
        current_user, current_user.id,
        school_year=request.args.get('school_year'),
        quarter=request.args.get('quarter', type=int)))


# ========================================
# DOCUMENT REQUESTS
# ========================================

@student_bp.route('/document-requests', methods=['GET'])
@student_required
def my_requests():
    return _respond(document_requests.student_requests(current_user, current_user.id))


@student_bp.route('/document-requests', methods=['POST'])
@student_required
def create_request():
    """
    Submit a document request
    Body: document_type, purpose, [is_urgent]
    """
    data = _payload()
    return _respond(document_requests.create(current_user, data.get('document_type'),
                                             data.get('purpose'), data.get('is_urgent', False)))


# ========================================
# NOTIFICATIONS
# ========================================

@student_bp.route('/notifications', methods=['GET'])
@student_required
def list_notifications():
    args = request.args
    student_id = _student_id(args)
    if student_id is None:
        return _respond(ServiceResult.from_error(ValidationError('Invalid student_id')))

    return _respond(notifications.list_notifications(
        current_user, student_id,
        type=args.get('type'),
        is_read=_bool_arg(args.get('is_read')),
        limit=args.get('limit', type=int),
        offset=args.get('offset', 0, type=int)))


@student_bp.route('/notifications', methods=['PATCH'])
@student_required
def update_notifications():
    """
    Read-state changes
    Body: action ('mark_read' | 'mark_unread' | 'mark_all_read' | 'bulk_mark_read'),
          notification_id or notification_ids
    """
    data = _payload()
    action = data.get('action')
    student_id = _student_id(data)
    if student_id is None:
        return _respond(ServiceResult.from_error(ValidationError('Invalid student_id')))

    if action == 'mark_read':
        result = notifications.mark_read(current_user, student_id, data.get('notification_id'))
    elif action == 'mark_unread':
        result = notifications.mark_unread(current_user, student_id, data.get('notification_id'))
    elif action == 'mark_all_read':
        result = notifications.mark_all_read(current_user, student_id)
    elif action == 'bulk_mark_read':
        result = notifications.bulk_mark_read(current_user, student_id,
                                              data.get('notification_ids'))
    else:
        result = ServiceResult.from_error(ValidationError(
            'Invalid action', fields={'action': 'Unknown action'}))
    return _respond(result)


@student_bp.route('/notifications', methods=['DELETE'])
@student_required
def delete_notifications():
    """
    Body: action ('delete' | 'bulk_delete' | 'clear_read'), notification_id or notification_ids
    """
    data = _payload()
    action = data.get('action')
    student_id = _student_id(data)
    if student_id is None:
        return _respond(ServiceResult.from_error(ValidationError('Invalid student_id')))

    if action == 'delete':
        result = notifications.delete_notification(current_user, student_id,
                                                   data.get('notification_id'))
    elif action == 'bulk_delete':
        result = notifications.bulk_delete(current_user, student_id, data.get('notification_ids'))
    elif action == 'clear_read':
        result = notifications.clear_read(current_user, student_id)
    else:
        result = ServiceResult.from_error(ValidationError(
            'Invalid action', fields={'action': 'Unknown action'}))
    return _respond(result)


# ========================================
# PUSH SUBSCRIPTIONS
# ========================================

@student_bp.route('/push/subscribe', methods=['POST'])
@student_required
def push_subscribe():
    data = _payload()
    return _respond(push.subscribe(current_user, data.get('subscription'),
                                   request.headers.get('User-Agent')))


@student_bp.route('/push/unsubscribe', methods=['POST'])
@student_required
def push_unsubscribe():
    data = _payload()
    return _respond(push.unsubscribe(current_user, data.get('endpoint')))
