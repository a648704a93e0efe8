"""
Verification gate: the one-way unverified -> verified switch on grade records.

The switch is a conditional UPDATE ... WHERE verified = false, so only the
request that actually flips the flag stamps it and notifies the student.
"""

from datetime import datetime

from flask import current_app
from sqlalchemy import update

from extensions import db
from models import Grade, User
from services.activity_log import record_activity
from services.notifications import (add_notification, format_teacher_name,
                                    grade_release_message, send_push)
from services.results import Forbidden, NotFound, service_operation


def _check_verifier(verifier):
    if not (verifier.is_teacher() or verifier.is_admin()):
        raise Forbidden('Only advisers and admins can verify grades')


def _flip(record_ids, verifier, now):
    """Set verified on the given ids that are still unverified; returns the ids that changed"""
    changed = []
    for record_id in record_ids:
        result = db.session.execute(
            update(Grade)
            .where(Grade.id == record_id, Grade.verified.is_(False))
            .values(verified=True, verified_by=verifier.id, verified_at=now,
                    version=Grade.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            changed.append(record_id)
    return changed


def _teacher_name(record, verifier):
    teacher = db.session.get(User, record.teacher_id) if record.teacher_id else None
    teacher = teacher or verifier
    return format_teacher_name(teacher.get_full_name(), teacher.gender)


def _release_notice(record, verifier, subject_name):
    """Stage the grade-release notification; returns the push to send after commit"""
    subject = subject_name or record.subject_id
    text = grade_release_message(subject, _teacher_name(record, verifier))
    add_notification(record.student_id, text['title'], text['message'], type='grade',
                     related_id=record.id, created_by=verifier.id)
    return {
        'student_id': record.student_id,
        'title': text['push_title'],
        'body': text['push_body'],
        'tag': f"grade-{subject}",
        'data': {'url': '/?section=grades', 'type': 'grade_release', 'subject': subject},
    }


@service_operation
def verify(key, verifier, subject_name=None):
    """
    Verify one grade record. Verifying an already verified record succeeds
    with changed=False and sends nothing.
    """
    _check_verifier(verifier)
    record = Grade.query.filter_by(**key._asdict()).first()
    if record is None:
        raise NotFound('Grade record not found')

    if not _flip([record.id], verifier, datetime.utcnow()):
        db.session.rollback()
        return {'record': record.to_dict(), 'changed': False}

    db.session.refresh(record)
    notice = _release_notice(record, verifier, subject_name)
    db.session.commit()

    send_push(notice['student_id'], notice['title'], notice['body'], notice['tag'], notice['data'])
    record_activity('grade_verified', {'grade_id': record.id, 'student_id': record.student_id,
                                       'subject_id': record.subject_id, 'quarter': record.quarter},
                    verifier)
    current_app.logger.info(f"Grade {record.id} verified by {verifier.account_number}")
    return {'record': record.to_dict(), 'changed': True}


@service_operation
def verify_section(section_id, subject_id, school_year, quarter, verifier, subject_name=None):
    """Verify every unverified record of a section/subject/quarter; one notice per student"""
    _check_verifier(verifier)
    pending = (Grade.query
               .filter_by(section_id=section_id, subject_id=subject_id,
                          school_year=school_year, quarter=quarter, verified=False)
               .all())
    changed = set(_flip([record.id for record in pending], verifier, datetime.utcnow()))

    notices = []
    for record in pending:
        if record.id in changed:
            notices.append(_release_notice(record, verifier, subject_name))
    db.session.commit()

    for notice in notices:
        send_push(notice['student_id'], notice['title'], notice['body'], notice['tag'], notice['data'])

    if changed:
        record_activity('grades_verified', {'section_id': section_id, 'subject_id': subject_id,
                                            'quarter': quarter, 'count': len(changed)}, verifier)
    current_app.logger.info(
        f"Verified {len(changed)} grade(s) in {section_id}/{subject_id} Q{quarter}")
    return {'verified': len(changed), 'student_ids': sorted(r.student_id for r in pending
                                                            if r.id in changed)}
