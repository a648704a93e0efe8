import threading
from datetime import date, datetime

import pytest

from app import create_app
from config import TestingConfig
from extensions import bcrypt, db, push
from models import ActivityLog, DocumentRequest, Notification, User
from services import document_requests, settings
from services.document_requests import format_request_id, next_sequence
from services.results import ErrorCode

YEAR = datetime.now().year


def _create(student, document_type='transcript', purpose='College application', **kwargs):
    result = document_requests.create(student, document_type, purpose, **kwargs)
    assert result.success, result
    return result.data['request']


def test_request_ids_start_at_one_each_year(student):
    first = _create(student)
    second = _create(student, 'diploma', 'Employment')

    assert first['request_id'] == f'REQ-{YEAR}-0001'
    assert second['request_id'] == f'REQ-{YEAR}-0002'
    assert first['status'] == 'on_hold'
    assert first['payment_status'] == 'pending'


def test_request_ids_are_distinct(student, other_student):
    ids = [_create(student if i % 2 else other_student)['request_id'] for i in range(12)]
    assert len(set(ids)) == 12
    assert ids[-1] == f'REQ-{YEAR}-0012'


def test_sequence_continues_after_existing_requests(student):
    db.session.add(DocumentRequest(request_id=format_request_id(YEAR, 41), student_id=student.id,
                                   document_type='transcript', purpose='Old request'))
    db.session.commit()

    assert _create(student)['request_id'] == f'REQ-{YEAR}-0042'


def test_sequences_are_per_year(ctx):
    assert next_sequence(2031) == 1
    assert next_sequence(2031) == 2
    assert next_sequence(2032) == 1


def test_fee_defaults_to_setting(student, admin):
    assert _create(student)['payment_amount'] == 120.0

    settings.update_settings({'document_fee': '75'}, admin)
    assert _create(student)['payment_amount'] == 75.0
    assert _create(student, payment_amount=0)['payment_amount'] == 0.0


def test_create_validation(student):
    result = document_requests.create(student, '', '   ')
    assert result.error == ErrorCode.VALIDATION_ERROR
    assert set(result.fields) == {'document_type', 'purpose'}

    result = document_requests.create(student, 'transcript', 'Scholarship', payment_amount=-5)
    assert 'payment_amount' in result.fields
    assert DocumentRequest.query.count() == 0


@pytest.mark.parametrize('value, urgent', [
    (True, True),
    ('true', True),
    ('yes', True),
    (False, False),
    ('false', False),
    ('0', False),
    (None, False),
])
def test_urgency_flag_is_parsed(student, value, urgent):
    assert _create(student, is_urgent=value)['is_urgent'] is urgent


def test_unreadable_urgency_flag_rejected(student):
    result = document_requests.create(student, 'transcript', 'Scholarship', is_urgent='maybe')
    assert result.error == ErrorCode.VALIDATION_ERROR
    assert set(result.fields) == {'is_urgent'}
    assert DocumentRequest.query.count() == 0


def test_only_students_create_requests(teacher):
    result = document_requests.create(teacher, 'transcript', 'For myself')
    assert result.error == ErrorCode.FORBIDDEN


def test_create_is_logged(student):
    request = _create(student)
    entry = ActivityLog.query.filter_by(activity_type='document_request_created').one()
    assert entry.payload['request_id'] == request['request_id']
    assert entry.user_id == student.id


def test_tentative_date_cleared_after_processing(admin, student):
    request_id = _create(student)['request_id']

    processing = document_requests.transition(request_id, admin, 'processing',
                                              tentative_date='2026-03-15')
    assert processing.data['request']['tentative_date'] == '2026-03-15'

    pickup = document_requests.transition(request_id, admin, 'for_pickup')
    assert pickup.data['request']['status'] == 'for_pickup'
    assert pickup.data['request']['tentative_date'] is None


def test_tentative_date_ignored_outside_processing(admin, student):
    request_id = _create(student)['request_id']
    result = document_requests.transition(request_id, admin, 'verifying', tentative_date='2026-03-15')
    assert result.data['request']['tentative_date'] is None


def test_invalid_tentative_date(admin, student):
    request_id = _create(student)['request_id']
    result = document_requests.transition(request_id, admin, 'processing', tentative_date='15/03/2026')
    assert result.error == ErrorCode.VALIDATION_ERROR
    assert 'tentative_date' in result.fields
    assert DocumentRequest.query.one().status == 'on_hold'


def test_first_staff_member_stays_processor(admin, teacher, student):
    request_id = _create(student)['request_id']

    document_requests.transition(request_id, teacher, 'verifying')
    result = document_requests.transition(request_id, admin, 'processing')

    assert result.data['request']['processed_by_id'] == teacher.id
    assert result.data['request']['processed_by'] == 'Santos, Maria'


def test_status_change_notifies_student(admin, student, pushes):
    request_id = _create(student)['request_id']

    document_requests.transition(request_id, admin, 'processing', tentative_date=date(2026, 3, 15))

    notification = Notification.query.filter_by(student_id=student.id).one()
    assert notification.type == 'document_request'
    assert notification.title == 'Document request approved - Now processing'
    assert '03/15/2026' in notification.message
    assert notification.priority == 'normal'
    assert notification.related_id == request_id

    message = pushes.to(student.id)[0]
    assert message['tag'].startswith(f'doc-request-{request_id}-')
    assert message['data']['status'] == 'processing'


def test_payment_only_update_does_not_notify(admin, student, pushes):
    request_id = _create(student)['request_id']

    result = document_requests.transition(request_id, admin, payment_status='paid')

    assert result.data['changed'] is False
    assert result.data['request']['payment_status'] == 'paid'
    assert Notification.query.count() == 0
    assert pushes.sent == []


def test_for_pickup_is_high_priority(admin, student):
    request_id = _create(student)['request_id']
    document_requests.transition(request_id, admin, 'for_pickup')
    assert Notification.query.one().priority == 'high'


def test_requests_never_move_backwards(admin, student):
    request_id = _create(student)['request_id']
    document_requests.transition(request_id, admin, 'processing')

    result = document_requests.transition(request_id, admin, 'verifying')
    assert result.error == ErrorCode.VALIDATION_ERROR
    assert DocumentRequest.query.one().status == 'processing'


@pytest.mark.parametrize('final', ['released', 'rejected'])
def test_final_states_do_not_change(admin, student, final):
    request_id = _create(student)['request_id']
    document_requests.transition(request_id, admin, final)

    assert document_requests.transition(request_id, admin, 'processing').error == \
        ErrorCode.VALIDATION_ERROR
    assert document_requests.reject(request_id, admin, 'Too late').error == \
        ErrorCode.VALIDATION_ERROR
    assert DocumentRequest.query.one().status == final


def test_reject_with_reason(admin, student, pushes):
    request_id = _create(student)['request_id']
    document_requests.transition(request_id, admin, 'processing', tentative_date='2026-03-15')

    result = document_requests.reject(request_id, admin, '  Unpaid balance  ')

    request = result.data['request']
    assert request['status'] == 'rejected'
    assert request['rejection_reason'] == 'Unpaid balance'
    assert request['tentative_date'] is None

    notification = Notification.query.filter_by(title='Document request rejected').one()
    assert notification.priority == 'high'
    assert notification.message.endswith('Reason: Unpaid balance')
    assert ActivityLog.query.filter_by(activity_type='document_request_rejected').count() == 1


def test_unknown_request(admin):
    result = document_requests.transition('REQ-1999-0001', admin, 'processing')
    assert result.error == ErrorCode.NOT_FOUND
    assert result.detail == 'Request not found'
    assert document_requests.get_request('REQ-1999-0001').error == ErrorCode.NOT_FOUND


def test_students_cannot_update_requests(student):
    request_id = _create(student)['request_id']
    assert document_requests.transition(request_id, student, 'released').error == \
        ErrorCode.FORBIDDEN
    assert document_requests.reject(request_id, student).error == ErrorCode.FORBIDDEN


def test_unknown_status_rejected(admin, student):
    request_id = _create(student)['request_id']
    result = document_requests.transition(request_id, admin, 'archived')
    assert result.error == ErrorCode.VALIDATION_ERROR


def test_status_counts(admin, student):
    first = _create(student)['request_id']
    second = _create(student)['request_id']
    _create(student)
    document_requests.transition(first, admin, 'processing')
    document_requests.reject(second, admin)

    counts = document_requests.status_counts().data['counts']
    assert counts['on_hold'] == 1
    assert counts['processing'] == 1
    assert counts['rejected'] == 1
    assert counts['released'] == 0
    assert counts['total'] == 3


def test_list_filters(student, other_student):
    _create(student, 'transcript', 'Scholarship')
    _create(other_student, 'diploma', 'Employment abroad')

    assert len(document_requests.list_requests().data['requests']) == 2
    by_type = document_requests.list_requests(document_type='diploma').data['requests']
    assert [r['account_number'] for r in by_type] == ['STU-002']
    by_name = document_requests.list_requests(search='lopez').data['requests']
    assert [r['student_id'] for r in by_name] == [student.id]
    by_purpose = document_requests.list_requests(search='abroad').data['requests']
    assert [r['document_type'] for r in by_purpose] == ['diploma']
    assert document_requests.list_requests(status='on_hold').success
    assert document_requests.list_requests(status='lost').error == ErrorCode.VALIDATION_ERROR


def test_student_sees_only_own_requests(student, other_student):
    _create(student)
    _create(other_student)

    own = document_requests.student_requests(student, student.id)
    assert [r['student_id'] for r in own.data['requests']] == [student.id]
    assert document_requests.student_requests(student, other_student.id).error == \
        ErrorCode.FORBIDDEN


@pytest.fixture
def file_app(monkeypatch, tmp_path, pushes):
    """App on a SQLite file so each thread gets its own connection"""
    monkeypatch.setattr(TestingConfig, 'SQLALCHEMY_DATABASE_URI',
                        f"sqlite:///{tmp_path / 'registrar.db'}")
    monkeypatch.setattr(TestingConfig, 'SQLALCHEMY_ENGINE_OPTIONS',
                        {'connect_args': {'timeout': 30}}, raising=False)
    app = create_app('testing')
    push.transport = pushes
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def test_concurrent_requests_get_distinct_ids(file_app):
    with file_app.app_context():
        hashed = bcrypt.generate_password_hash('secret123').decode('utf-8')
        students = [User(role='student', account_number=f'STU-{n:03d}', password=hashed,
                         first_name='Student', last_name=str(n)) for n in range(1, 5)]
        db.session.add_all(students)
        db.session.commit()
        student_ids = [s.id for s in students]

    submitters = 12
    barrier = threading.Barrier(submitters)
    request_ids = []
    failures = []

    def submit(student_id):
        with file_app.app_context():
            student = db.session.get(User, student_id)
            barrier.wait()
            result = document_requests.create(student, 'transcript', 'Scholarship')
            if result.success:
                request_ids.append(result.data['request']['request_id'])
            else:
                failures.append(result.to_dict())

    threads = [threading.Thread(target=submit, args=(student_ids[n % len(student_ids)],))
               for n in range(submitters)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert failures == []
    assert sorted(request_ids) == [format_request_id(YEAR, n) for n in range(1, submitters + 1)]
    with file_app.app_context():
        assert DocumentRequest.query.count() == submitters
