"""
blueprints/teacher/routes.py - Teacher Blueprint
Grade item setup, score entry and verification for teachers (and admins).
"""

from functools import wraps

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from config import Config
from services import grade_config, grade_ledger, verification
from services.results import ServiceError, ServiceResult, ValidationError

# Initialize the blueprint for teacher-related routes
teacher_bp = Blueprint('teacher', __name__)


def teacher_required(f):
    """
    Decorator to ensure only teachers (or admins) can access the route
    """
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if current_user.role not in ('teacher', 'admin'):
            return jsonify({
                'success': False,
                'error': 'FORBIDDEN',
                'message': 'Access denied. Teachers only.',
            }), 403
        return f(*args, **kwargs)
    return decorated_function


def _respond(result):
    return jsonify(result.to_dict()), result.status_code


def _error(error):
    return _respond(ServiceResult.from_error(error))


def _payload():
    return request.get_json(silent=True) or {}


def _config_key(source):
    return grade_config.config_key(source.get('section_id'), source.get('subject_id'),
                                   source.get('quarter'), current_user.id)


def _record_key(source):
    return grade_ledger.record_key(source.get('student_id'), source.get('section_id'),
                                   source.get('subject_id'), source.get('quarter'),
                                   source.get('school_year'))


# ========================================
# GRADE ITEM CONFIGURATION
# ========================================

@teacher_bp.route('/grade-config', methods=['GET'])
@teacher_required
def get_grade_config():
    """Item setup for a section/subject/quarter, created empty on first access"""
    args = request.args
    return _respond(grade_config.get_or_create_configuration(
        args.get('section_id'), args.get('subject_id'), args.get('quarter'), current_user.id))


@teacher_bp.route('/grade-config', methods=['PUT'])
@teacher_required
def replace_grade_config():
    """Replace every item of the configuration"""
    data = _payload()
    try:
        key = _config_key(data)
    except ServiceError as e:
        return _error(e)
    return _respond(grade_config.replace_items(key, data.get('grade_items')))


@teacher_bp.route('/grade-config', methods=['DELETE'])
@teacher_required
def delete_grade_config():
    data = _payload() or request.args
    try:
        key = _config_key(data)
    except ServiceError as e:
        return _error(e)
    return _respond(grade_config.delete_configuration(key))


@teacher_bp.route('/grade-config/items', methods=['POST'])
@teacher_required
def add_grade_item():
    data = _payload()
    try:
        key = _config_key(data)
    except ServiceError as e:
        return _error(e)
    return _respond(grade_config.add_item(key, data.get('category'), data.get('name'),
                                          data.get('max_score')))


@teacher_bp.route('/grade-config/<int:configuration_id>/items/<item_id>', methods=['PATCH'])
@teacher_required
def update_grade_item(configuration_id, item_id):
    data = _payload()
    return _respond(grade_config.update_item(configuration_id, item_id,
                                             name=data.get('name'),
                                             max_score=data.get('max_score'),
                                             actor=current_user))


@teacher_bp.route('/grade-config/<int:configuration_id>/items/<item_id>', methods=['DELETE'])
@teacher_required
def remove_grade_item(configuration_id, item_id):
    return _respond(grade_config.remove_item(configuration_id, item_id, current_user))


# ========================================
# SCORES
# ========================================

@teacher_bp.route('/grades/score', methods=['POST'])
@teacher_required
def set_score():
    """
    Save one raw score
    Body: student_id, section_id, subject_id, quarter, [school_year], category, item_index, score
    """
    data = _payload()
    try:
        key = _record_key(data)
    except ServiceError as e:
        return _error(e)
    return _respond(grade_ledger.set_score(key, data.get('category'), data.get('item_index'),
                                           data.get('score'), current_user))


@teacher_bp.route('/grades/score', methods=['DELETE'])
@teacher_required
def delete_score():
    data = _payload()
    try:
        key = _record_key(data)
    except ServiceError as e:
        return _error(e)
    return _respond(grade_ledger.delete_score(key, data.get('category'), data.get('item_index'),
                                              current_user))


@teacher_bp.route('/grades/sheet', methods=['POST'])
@teacher_required
def save_sheet():
    """
    Save whole score sheets for a section
    Body: section_id, subject_id, quarter, [school_year], grades: [{student_id, written_work, ...}]
    """
    data = _payload()
    return _respond(grade_ledger.save_scores(
        data.get('section_id'), data.get('subject_id'), data.get('quarter'),
        data.get('school_year'), data.get('grades'), current_user))


@teacher_bp.route('/grades/section', methods=['GET'])
@teacher_required
def section_grades():
    args = request.args
    if not args.get('section_id') or not args.get('subject_id') or not args.get('quarter', type=int):
        return _error(ValidationError('section_id, subject_id and quarter are required'))
    return _respond(grade_ledger.section_grades(args['section_id'], args['subject_id'],
                                                args.get('quarter', type=int),
                                                args.get('school_year')))


@teacher_bp.route('/grades/advisory', methods=['GET'])
@teacher_required
def advisory_grades():
    """All subjects of the adviser's section"""
    args = request.args
    if not args.get('section_id') or not args.get('quarter', type=int):
        return _error(ValidationError('section_id and quarter are required'))
    return _respond(grade_ledger.advisory_grades(args['section_id'], args.get('quarter', type=int),
                                                 args.get('school_year')))


# ========================================
# VERIFICATION
# ========================================

@teacher_bp.route('/grades/verify', methods=['POST'])
@teacher_required
def verify_grade():
    """Lock one grade record and release it to the student"""
    data = _payload()
    try:
        key = _record_key(data)
    except ServiceError as e:
        return _error(e)
    return _respond(verification.verify(key, current_user, data.get('subject_name')))


@teacher_bp.route('/grades/verify-section', methods=['POST'])
@teacher_required
def verify_section():
    data = _payload()
    try:
        scope = _config_key(data)
    except ServiceError as e:
        return _error(e)
    school_year = data.get('school_year') or Config.get_current_school_year()
    return _respond(verification.verify_section(scope.section_id, scope.subject_id, school_year,
                                                scope.quarter, current_user,
                                                data.get('subject_name')))
