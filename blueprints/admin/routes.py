"""
blueprints/admin/routes.py - Admin Blueprint
Document request processing and student announcements (admins and teachers),
system settings and the activity log (admins only).
"""

from functools import wraps

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from services import activity_log, document_requests, notifications, settings

admin_bp = Blueprint('admin', __name__)


def admin_required(f):
    """Ensure only admins can access the route"""
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if current_user.role != 'admin':
            return jsonify({
                'success': False,
                'error': 'FORBIDDEN',
                'message': 'Access denied. Admins only.',
            }), 403
        return f(*args, **kwargs)
    return decorated_function


def staff_required(f):
    """Admins and teachers (registrar staff)"""
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if current_user.role not in ('admin', 'teacher'):
            return jsonify({
                'success': False,
                'error': 'FORBIDDEN',
                'message': 'Permission denied',
            }), 403
        return f(*args, **kwargs)
    return decorated_function


def _respond(result):
    return jsonify(result.to_dict()), result.status_code


# ========================================
# DOCUMENT REQUESTS
# ========================================

@admin_bp.route('/document-requests')
@staff_required
def list_document_requests():
    args = request.args
    return _respond(document_requests.list_requests(
        status=args.get('status'),
        document_type=args.get('document_type'),
        search=args.get('search')))


@admin_bp.route('/document-requests/stats')
@staff_required
def document_request_stats():
    return _respond(document_requests.status_counts())


@admin_bp.route('/document-requests/<request_id>')
@staff_required
def get_document_request(request_id):
    return _respond(document_requests.get_request(request_id))


@admin_bp.route('/document-requests/<request_id>/update', methods=['POST'])
@staff_required
def update_document_request(request_id):
    """
    Move a request forward and/or set payment status
    Body: [status], [tentative_date: YYYY-MM-DD], [payment_status]
    """
    data = request.get_json(silent=True) or {}
    return _respond(document_requests.transition(
        request_id, current_user,
        new_status=data.get('status'),
        tentative_date=data.get('tentative_date'),
        payment_status=data.get('payment_status')))


@admin_bp.route('/document-requests/<request_id>/reject', methods=['POST'])
@staff_required
def reject_document_request(request_id):
    data = request.get_json(silent=True) or {}
    return _respond(document_requests.reject(request_id, current_user, data.get('reason')))


# ========================================
# NOTIFICATIONS
# ========================================

@admin_bp.route('/notifications', methods=['POST'])
@staff_required
def send_notification():
    """
    Announce something to students
    Body: title, message, [type], [priority], and one of student_id, section_id, send_to_all
    """
    data = request.get_json(silent=True) or {}
    return _respond(notifications.broadcast(
        current_user, data.get('title'), data.get('message'),
        student_id=data.get('student_id'),
        section_id=data.get('section_id'),
        send_to_all=data.get('send_to_all', False),
        type=data.get('type', 'general'),
        priority=data.get('priority', 'normal')))


# ========================================
# SETTINGS
# ========================================

@admin_bp.route('/settings', methods=['GET'])
@admin_required
def get_settings():
    return _respond(settings.read_settings())


@admin_bp.route('/settings', methods=['PUT'])
@admin_required
def update_settings():
    """Body: {setting_key: value, ...}"""
    return _respond(settings.update_settings(request.get_json(silent=True), current_user))


@admin_bp.route('/settings/<key>', methods=['DELETE'])
@admin_required
def reset_setting(key):
    """Revert one setting to its default / auto-calculated value"""
    return _respond(settings.reset_setting(key))


# ========================================
# ACTIVITY LOG
# ========================================

@admin_bp.route('/activity-logs')
@admin_required
def activity_logs():
    args = request.args
    return _respond(activity_log.list_activity(
        activity_type=args.get('activity_type'),
        user_id=args.get('user_id', type=int),
        limit=min(args.get('limit', 100, type=int), 500)))
