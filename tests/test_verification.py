from extensions import db
from models import ActivityLog, Grade, Notification
from services import grade_ledger, verification
from services.grade_ledger import record_key
from services.results import ErrorCode

SCHOOL_YEAR = '2025-2026'


def _key(student_id, subject='sub1'):
    return record_key(student_id, 'sec1', subject, 1, SCHOOL_YEAR)


def _graded(teacher, student_id, subject='sub1'):
    grade_ledger.set_score(_key(student_id, subject), 'written_work', 0, 90, teacher)
    return _key(student_id, subject)


def test_verify_flips_flag_and_notifies_once(teacher, adviser, student, pushes):
    key = _graded(teacher, student.id)

    first = verification.verify(key, adviser, subject_name='Mathematics')
    assert first.success
    assert first.data['changed'] is True
    verification_info = first.data['record']['verification']
    assert verification_info['verified'] is True
    assert verification_info['verified_by'] == adviser.id
    stamped_at = verification_info['verified_at']

    second = verification.verify(key, adviser, subject_name='Mathematics')
    assert second.success
    assert second.data['changed'] is False
    assert second.data['record']['verification']['verified_at'] == stamped_at

    notifications = Notification.query.filter_by(student_id=student.id).all()
    assert len(notifications) == 1
    assert notifications[0].type == 'grade'
    assert notifications[0].title == 'Your grade in Mathematics is now available'
    assert 'Ms. Santos' in notifications[0].message
    assert len(pushes.to(student.id)) == 1


def test_release_push_payload(teacher, adviser, student, pushes):
    verification.verify(_graded(teacher, student.id), adviser, subject_name='Science')

    message = pushes.to(student.id)[0]
    assert message['title'] == 'Grade Released: Science'
    assert message['tag'].startswith('grade-Science-')
    assert message['data'] == {'url': '/?section=grades', 'type': 'grade_release',
                               'subject': 'Science'}


def test_subject_id_used_when_name_missing(teacher, adviser, student):
    verification.verify(_graded(teacher, student.id, 'math-10'), adviser)
    notification = Notification.query.filter_by(student_id=student.id).one()
    assert notification.title == 'Your grade in math-10 is now available'


def test_verify_missing_record(adviser, student):
    result = verification.verify(_key(student.id), adviser)
    assert result.error == ErrorCode.NOT_FOUND
    assert result.status_code == 404


def test_students_cannot_verify(teacher, student, pushes):
    key = _graded(teacher, student.id)
    result = verification.verify(key, student)

    assert result.error == ErrorCode.FORBIDDEN
    assert Grade.query.one().verified is False
    assert pushes.sent == []


def test_push_failure_does_not_undo_verification(teacher, adviser, student, pushes):
    pushes.fail = True
    result = verification.verify(_graded(teacher, student.id), adviser)

    assert result.success
    db.session.expire_all()
    assert Grade.query.one().verified is True
    assert Notification.query.count() == 1


def test_verify_writes_activity_log(teacher, adviser, student):
    verification.verify(_graded(teacher, student.id), adviser)

    entry = ActivityLog.query.filter_by(activity_type='grade_verified').one()
    assert entry.user_id == adviser.id
    assert entry.account_type == 'teacher'
    assert entry.payload['student_id'] == student.id


def test_verify_section_notifies_each_student_once(teacher, adviser, student, other_student,
                                                   pushes):
    _graded(teacher, student.id)
    _graded(teacher, other_student.id)
    verification.verify(_key(other_student.id), adviser)
    pushes.sent.clear()

    result = verification.verify_section('sec1', 'sub1', SCHOOL_YEAR, 1, adviser, 'English')

    assert result.data == {'verified': 1, 'student_ids': [student.id]}
    assert len(pushes.to(student.id)) == 1
    assert pushes.to(other_student.id) == []
    assert Notification.query.filter_by(student_id=other_student.id).count() == 1
    assert Grade.query.filter_by(verified=False).count() == 0

    again = verification.verify_section('sec1', 'sub1', SCHOOL_YEAR, 1, adviser, 'English')
    assert again.data == {'verified': 0, 'student_ids': []}
