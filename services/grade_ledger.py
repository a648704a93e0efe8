"""
Grade record aggregator.

Raw scores live on the Grade row as JSON arrays; averages are derived from
them on every write. Writes are compare-and-set updates on the row version
with the verification check inside the same statement, so a concurrent
edit or verification can never be overwritten with stale data.
"""

from collections import namedtuple
from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from config import Config
from extensions import db
from models import GRADE_CATEGORIES, Grade, GradeConfiguration, User
from services.grade_calculation import compute_averages, overall_average, validate_score
from services.results import (Conflict, Forbidden, NotFound, ServiceResult, ValidationError,
                              VerificationLocked, service_operation)
from services.settings import get_setting


RecordKey = namedtuple('RecordKey', 'student_id section_id subject_id school_year quarter')


def record_key(student_id, section_id, subject_id, quarter, school_year=None):
    """Build and validate a grade record key; school year defaults to the current one"""
    errors = {}
    try:
        student_id = int(student_id)
    except (TypeError, ValueError):
        errors['student_id'] = 'Student ID is required'
    try:
        quarter = int(quarter)
    except (TypeError, ValueError):
        quarter = None
    if quarter not in Config.QUARTERS:
        errors['quarter'] = 'Quarter must be 1 to 4'
    if not section_id:
        errors['section_id'] = 'Section ID is required'
    if not subject_id:
        errors['subject_id'] = 'Subject ID is required'
    if errors:
        raise ValidationError('Invalid grade record key', fields=errors)

    return RecordKey(student_id, str(section_id), str(subject_id),
                     school_year or Config.get_current_school_year(), quarter)


def _check_grader(actor):
    if not (actor.is_teacher() or actor.is_admin()):
        raise Forbidden('Only teachers and admins can record grades')


def _check_category(category):
    if category not in GRADE_CATEGORIES:
        raise ValidationError(f'Unknown category: {category}',
                              fields={'category': f"Must be one of {', '.join(GRADE_CATEGORIES)}"})


def find_configuration(section_id, subject_id, quarter, teacher_id=None):
    """Item configuration for a scope, preferring the given teacher's"""
    query = GradeConfiguration.query.filter_by(section_id=section_id, subject_id=subject_id,
                                               quarter=quarter)
    if teacher_id is not None:
        own = query.filter_by(teacher_id=teacher_id).first()
        if own is not None:
            return own
    return query.order_by(GradeConfiguration.id).first()


def max_scores_for(section_id, subject_id, quarter, teacher_id=None):
    configuration = find_configuration(section_id, subject_id, quarter, teacher_id)
    return configuration.max_scores() if configuration else {}


def _load(key):
    return Grade.query.filter_by(**key._asdict()).populate_existing().first()


def _empty_scores():
    return {category: [] for category in GRADE_CATEGORIES}


def _score_values(scores, averages, actor):
    values = dict(scores)
    values.update(
        avg_written_work=averages['written_work'],
        avg_performance_tasks=averages['performance_tasks'],
        avg_quarterly_assessment=averages['quarterly_assessment'],
        final_grade=averages['final_grade'],
        updated_at=datetime.utcnow(),
        updated_by=actor.id,
    )
    if actor.is_teacher():
        values['teacher_id'] = actor.id
    return values


def compare_and_set(record, scores, actor, max_scores, mode):
    """
    Write new scores and their averages only if the row is still at the
    version we read and still unverified. Returns True when the row changed.
    """
    averages = compute_averages(scores, max_scores, mode)
    statement = (
        update(Grade)
        .where(Grade.id == record.id,
               Grade.version == record.version,
               Grade.verified.is_(False))
        .values(version=Grade.version + 1, **_score_values(scores, averages, actor))
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(statement).rowcount == 1


def _insert(key, scores, actor, max_scores, mode):
    averages = compute_averages(scores, max_scores, mode)
    record = Grade(version=1, verified=False, **key._asdict(),
                   **_score_values(scores, averages, actor))
    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError:
        # Created concurrently under the same key; caller retries as an update
        db.session.rollback()
        return None
    return record


def write_scores(key, mutate, actor, create=True, teacher_id=None):
    """
    Read-modify-write loop for one grade record.

    `mutate(scores)` edits the raw score dict in place. Lost races are
    retried from a fresh read; a record verified in the meantime raises
    VerificationLocked, exhausting the retries raises Conflict.
    """
    mode = get_setting('score_normalization')
    max_scores = max_scores_for(key.section_id, key.subject_id, key.quarter,
                                teacher_id or actor.id)
    retries = current_app.config['GRADE_WRITE_RETRIES']

    for attempt in range(1, retries + 1):
        record = _load(key)
        if record is None:
            if not create:
                raise NotFound('Grade record not found')
            scores = _empty_scores()
            mutate(scores)
            inserted = _insert(key, scores, actor, max_scores, mode)
            if inserted is not None:
                return inserted, True
        else:
            if record.verified:
                raise VerificationLocked()
            scores = record.get_scores()
            mutate(scores)
            if compare_and_set(record, scores, actor, max_scores, mode):
                db.session.commit()
                return record, False

        db.session.rollback()
        current_app.logger.warning(
            f"Concurrent write on grade {tuple(key)}, retrying ({attempt}/{retries})")

    raise Conflict()


def _check_index(item_index):
    if not isinstance(item_index, int) or isinstance(item_index, bool) or item_index < 0:
        raise ValidationError('Item index must be a non-negative integer',
                              fields={'item_index': 'Must be a non-negative integer'})


def _pad(values, length):
    values.extend([None] * (length - len(values)))


@service_operation
def set_score(key, category, item_index, score, actor):
    """Set one raw score and recompute the record's averages"""
    _check_grader(actor)
    _check_category(category)
    _check_index(item_index)

    item_max = max_scores_for(key.section_id, key.subject_id, key.quarter, actor.id).get(category, [])
    error = validate_score(score, item_max[item_index] if item_index < len(item_max) else None)
    if error:
        raise ValidationError(error, fields={'score': error})

    def place(scores):
        values = scores[category]
        _pad(values, item_index + 1)
        values[item_index] = score

    record, created = write_scores(key, place, actor)
    current_app.logger.info(
        f"Score {category}[{item_index}]={score} saved for student {key.student_id} by {actor.account_number}")
    return {'record': record.to_dict(), 'created': created}


@service_operation
def delete_score(key, category, item_index, actor):
    """Remove one score column from a record, shifting later items left"""
    _check_grader(actor)
    _check_category(category)
    _check_index(item_index)

    def drop(scores):
        values = scores[category]
        if item_index >= len(values):
            raise ValidationError('No score at that index', fields={'item_index': 'Out of range'})
        del values[item_index]

    record, _ = write_scores(key, drop, actor, create=False)
    return {'record': record.to_dict()}


def _sheet_scores(row, max_scores):
    """Validated {category: [scores]} from one bulk sheet row"""
    sheet = {}
    errors = {}
    for category in GRADE_CATEGORIES:
        if category not in row:
            continue
        values = row[category]
        if not isinstance(values, list):
            errors[category] = 'Must be a list of scores'
            continue
        maxima = max_scores.get(category, [])
        for index, score in enumerate(values):
            error = validate_score(score, maxima[index] if index < len(maxima) else None)
            if error:
                errors[f'{category}[{index}]'] = error
        sheet[category] = list(values)
    if errors:
        raise ValidationError(f"Invalid scores for student {row.get('student_id')}", fields=errors)
    return sheet


@service_operation
def save_scores(section_id, subject_id, quarter, school_year, rows, actor):
    """
    Save whole score sheets for a section. Categories present in a row
    replace the stored arrays; verified records are skipped and reported.
    """
    _check_grader(actor)
    if not isinstance(rows, list) or not rows:
        raise ValidationError('Grades array is required', fields={'grades': 'Provide a non-empty list'})

    keys = [record_key(row.get('student_id'), section_id, subject_id, quarter, school_year)
            for row in rows]
    max_scores = max_scores_for(keys[0].section_id, keys[0].subject_id, keys[0].quarter, actor.id)
    sheets = [_sheet_scores(row, max_scores) for row in rows]

    saved, skipped = [], []
    for key, sheet in zip(keys, sheets):
        def replace(scores, sheet=sheet):
            scores.update(sheet)

        try:
            record, _ = write_scores(key, replace, actor)
        except VerificationLocked:
            skipped.append({'student_id': key.student_id, 'reason': 'verified'})
            continue
        saved.append(record.to_dict())

    current_app.logger.info(
        f"Saved {len(saved)} grade sheet(s) for {section_id}/{subject_id} Q{quarter}, "
        f"skipped {len(skipped)} verified")
    message = None
    if skipped:
        message = f"{len(skipped)} verified record(s) were not changed"
    return ServiceResult.ok({'saved': saved, 'skipped': skipped}, detail=message)


@service_operation
def get_record(key):
    record = _load(key)
    if record is None:
        raise NotFound('Grade record not found')
    return {'record': record.to_dict()}


def _with_student(record):
    data = record.to_dict()
    student = record.student
    data['student_name'] = student.get_full_name() if student else None
    data['account_number'] = student.account_number if student else None
    return data


@service_operation
def section_grades(section_id, subject_id, quarter, school_year=None):
    """Every grade record of a section for one subject and quarter, with item setup"""
    school_year = school_year or Config.get_current_school_year()
    records = (Grade.query
               .filter_by(section_id=section_id, subject_id=subject_id,
                          school_year=school_year, quarter=quarter)
               .join(User, Grade.student_id == User.id)
               .order_by(User.last_name, User.first_name)
               .all())
    configuration = find_configuration(section_id, subject_id, quarter)
    return {
        'school_year': school_year,
        'quarter': quarter,
        'configuration': configuration.to_dict() if configuration else None,
        'records': [_with_student(record) for record in records],
    }


@service_operation
def advisory_grades(section_id, quarter, school_year=None):
    """Per-student summary of every subject in a section (adviser view)"""
    school_year = school_year or Config.get_current_school_year()
    records = (Grade.query
               .filter_by(section_id=section_id, school_year=school_year, quarter=quarter)
               .order_by(Grade.student_id, Grade.subject_id)
               .all())

    students = {}
    for record in records:
        entry = students.setdefault(record.student_id, {
            'student_id': record.student_id,
            'student_name': record.student.get_full_name() if record.student else None,
            'subjects': {},
        })
        entry['subjects'][record.subject_id] = {
            'final_grade': record.final_grade,
            'verified': record.verified,
        }

    for entry in students.values():
        entry['overall_average'] = overall_average(
            [subject['final_grade'] for subject in entry['subjects'].values()])
        entry['all_verified'] = all(subject['verified'] for subject in entry['subjects'].values())

    return {
        'school_year': school_year,
        'quarter': quarter,
        'students': sorted(students.values(), key=lambda entry: entry['student_name'] or ''),
    }


@service_operation
def student_verified_grades(actor, student_id, school_year=None, quarter=None):
    """Student view: only verified records are visible"""
    if not actor.is_admin() and actor.id != student_id:
        raise Forbidden('You can only view your own grades')

    school_year = school_year or Config.get_current_school_year()
    query = Grade.query.filter_by(student_id=student_id, school_year=school_year, verified=True)
    if quarter is not None:
        query = query.filter_by(quarter=quarter)
    records = query.order_by(Grade.quarter, Grade.subject_id).all()

    grades = []
    for record in records:
        data = record.to_dict()
        # Raw scores stay with the teacher until the report card
        for category in GRADE_CATEGORIES:
            data.pop(category, None)
        grades.append(data)

    return {
        'school_year': school_year,
        'quarter': quarter,
        'grades': grades,
        'overall_average': overall_average([record.final_grade for record in records]),
    }
