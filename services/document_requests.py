"""
Document request workflow.

    on_hold -> verifying -> processing -> for_pickup -> released
       |           |            |             |
       +-----------+------------+-------------+------> rejected

Requests only move forward. released and rejected are final. A tentative
release date exists only while a request is processing, and the first
staff member to act on a request stays recorded as its processor.
"""

from datetime import date, datetime

from flask import current_app
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import PAYMENT_STATUSES, REQUEST_STATUSES, DocumentRequest, RequestSequence, User
from services.activity_log import record_activity
from services.notifications import add_notification, document_status_message, send_push
from services.results import Conflict, Forbidden, NotFound, ValidationError, service_operation
from services.settings import get_setting, parse_boolean


FLOW = ('on_hold', 'verifying', 'processing', 'for_pickup', 'released')
TERMINAL_STATUSES = ('released', 'rejected')

# Statuses the student has to act on
HIGH_PRIORITY_STATUSES = ('for_pickup', 'rejected')


def _check_staff(actor):
    if not (actor.is_admin() or actor.is_teacher()):
        raise Forbidden('Permission denied')


def _get(request_id):
    document_request = DocumentRequest.query.filter_by(request_id=request_id).first()
    if document_request is None:
        raise NotFound('Request not found')
    return document_request


def _parse_date(value):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError('Invalid tentative date',
                              fields={'tentative_date': 'Use YYYY-MM-DD'})


def _highest_issued(year):
    """Largest sequence already used for the year (for requests made before the counter existed)"""
    prefix = f"REQ-{year}-"
    last = (db.session.query(func.max(DocumentRequest.request_id))
            .filter(DocumentRequest.request_id.like(f"{prefix}%"))
            .scalar())
    if not last:
        return 0
    try:
        return int(last[len(prefix):])
    except ValueError:
        return 0


def next_sequence(year):
    """
    Take the next number from the year's counter row. The increment is a
    single UPDATE, so two requests can never read the same value. The
    number is committed right away; a request that then fails leaves a gap.
    """
    for _ in range(current_app.config['REQUEST_ID_RETRIES']):
        bumped = db.session.execute(
            update(RequestSequence)
            .where(RequestSequence.year == year)
            .values(last_value=RequestSequence.last_value + 1)
            .execution_options(synchronize_session=False)
        ).rowcount
        if bumped:
            value = db.session.execute(
                select(RequestSequence.last_value).where(RequestSequence.year == year)
            ).scalar_one()
            db.session.commit()
            return value

        first = _highest_issued(year) + 1
        db.session.add(RequestSequence(year=year, last_value=first))
        try:
            db.session.commit()
        except IntegrityError:
            # Another request created the year's row first
            db.session.rollback()
            continue
        return first

    raise Conflict('Could not allocate a request number, please retry')


def format_request_id(year, sequence):
    return f"REQ-{year}-{sequence:04d}"


@service_operation
def create(student, document_type, purpose, is_urgent=False, payment_amount=None):
    """Submit a new request as the logged-in student"""
    if not student.is_student():
        raise Forbidden('Only students can create requests')

    errors = {}
    document_type = document_type.strip() if isinstance(document_type, str) else ''
    purpose = purpose.strip() if isinstance(purpose, str) else ''
    if not document_type:
        errors['document_type'] = 'Document type is required'
    if not purpose:
        errors['purpose'] = 'Purpose is required'
    if payment_amount is not None:
        if isinstance(payment_amount, bool) or not isinstance(payment_amount, (int, float)) \
                or payment_amount < 0:
            errors['payment_amount'] = 'Payment amount must be a non-negative number'
    try:
        is_urgent = parse_boolean(False if is_urgent is None else is_urgent)
    except ValueError as e:
        errors['is_urgent'] = str(e)
    if errors:
        raise ValidationError('Missing or invalid fields', fields=errors)

    amount = float(payment_amount) if payment_amount is not None else get_setting('document_fee')
    year = datetime.now().year

    for _ in range(current_app.config['REQUEST_ID_RETRIES']):
        request_id = format_request_id(year, next_sequence(year))
        document_request = DocumentRequest(
            request_id=request_id,
            student_id=student.id,
            document_type=document_type,
            purpose=purpose,
            is_urgent=is_urgent,
            payment_amount=amount,
            payment_status='pending',
            status='on_hold',
        )
        db.session.add(document_request)
        try:
            db.session.commit()
        except IntegrityError:
            # request_id already taken; the unique index is the last guard
            db.session.rollback()
            current_app.logger.warning(f"Request id {request_id} already taken, retrying")
            continue

        record_activity('document_request_created',
                        {'request_id': request_id, 'document_type': document_type}, student)
        current_app.logger.info(f"Document request {request_id} created by {student.account_number}")
        return {'request': document_request.to_dict()}

    raise Conflict('Could not allocate a request number, please retry')


def _claim(document_request, actor):
    """Record the actor as processor unless someone already claimed the request"""
    db.session.execute(
        update(DocumentRequest)
        .where(DocumentRequest.id == document_request.id,
               DocumentRequest.processed_by_id.is_(None))
        .values(processed_by=actor.get_full_name(), processed_by_id=actor.id)
        .execution_options(synchronize_session=False)
    )


def _move(document_request, expected_status, values):
    """Apply values only if the status is still the one we validated against"""
    moved = db.session.execute(
        update(DocumentRequest)
        .where(DocumentRequest.id == document_request.id,
               DocumentRequest.status == expected_status)
        .values(updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not moved:
        raise Conflict('The request was updated by someone else, please reload')


def _status_notice(document_request, status, actor, tentative_date=None, reason=None):
    title, message = document_status_message(document_request.document_type, status,
                                              tentative_date, reason)
    add_notification(document_request.student_id, title, message, type='document_request',
                     related_id=document_request.request_id,
                     priority='high' if status in HIGH_PRIORITY_STATUSES else 'normal',
                     created_by=actor.id)
    return {
        'student_id': document_request.student_id,
        'title': title,
        'body': message,
        'tag': f"doc-request-{document_request.request_id}",
        'data': {'url': '/?section=documents', 'type': 'document_request',
                 'requestId': document_request.request_id, 'status': status},
    }


def _push(notice):
    if notice:
        send_push(notice['student_id'], notice['title'], notice['body'], notice['tag'], notice['data'])


def _reject(document_request, actor, reason):
    current = document_request.status
    if current in TERMINAL_STATUSES:
        raise ValidationError(f'Request is already {current}',
                              fields={'status': f'A {current} request can no longer change'})

    reason = reason.strip() if isinstance(reason, str) and reason.strip() else None
    _move(document_request, current, {'status': 'rejected', 'tentative_date': None,
                                       'rejection_reason': reason})
    _claim(document_request, actor)
    notice = _status_notice(document_request, 'rejected', actor, reason=reason)
    db.session.commit()

    _push(notice)
    record_activity('document_request_rejected',
                    {'request_id': document_request.request_id, 'from': current, 'reason': reason},
                    actor)
    current_app.logger.info(
        f"Document request {document_request.request_id} rejected by {actor.account_number}")
    return {'request': document_request.to_dict(), 'changed': True}


@service_operation
def transition(request_id, actor, new_status=None, tentative_date=None, payment_status=None):
    """
    Staff update of status, tentative date and/or payment status.
    Moving to 'rejected' is the same as reject().
    """
    _check_staff(actor)
    if not request_id:
        raise ValidationError('Request ID is required', fields={'request_id': 'Required'})
    if new_status is None and payment_status is None and tentative_date is None:
        raise ValidationError('Nothing to update',
                              fields={'status': 'Provide status, tentative_date or payment_status'})
    if new_status is not None and new_status not in REQUEST_STATUSES:
        raise ValidationError(f'Unknown status: {new_status}',
                              fields={'status': f"Must be one of {', '.join(REQUEST_STATUSES)}"})
    if payment_status is not None and payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f'Unknown payment status: {payment_status}',
                              fields={'payment_status': f"Must be one of {', '.join(PAYMENT_STATUSES)}"})

    document_request = _get(request_id)
    if new_status == 'rejected':
        return _reject(document_request, actor, None)

    current = document_request.status
    if current in TERMINAL_STATUSES:
        raise ValidationError(f'Request is already {current}',
                              fields={'status': f'A {current} request can no longer change'})

    resulting = new_status or current
    if FLOW.index(resulting) < FLOW.index(current):
        raise ValidationError(f'Cannot move a request back from {current} to {resulting}',
                              fields={'status': 'Requests only move forward'})

    values = {'status': resulting}
    if payment_status is not None:
        values['payment_status'] = payment_status
    if resulting != 'processing':
        values['tentative_date'] = None
    elif tentative_date is not None:
        values['tentative_date'] = _parse_date(tentative_date)
    elif current != 'processing':
        values['tentative_date'] = None

    _move(document_request, current, values)
    _claim(document_request, actor)

    notice = None
    if resulting != current:
        notice = _status_notice(document_request, resulting, actor,
                                tentative_date=values.get('tentative_date'))
    db.session.commit()

    _push(notice)
    record_activity('document_request_updated',
                    {'request_id': request_id, 'from': current, 'to': resulting,
                     'payment_status': payment_status}, actor)
    current_app.logger.info(
        f"Document request {request_id} {current} -> {resulting} by {actor.account_number}")
    return {'request': document_request.to_dict(), 'changed': resulting != current}


@service_operation
def reject(request_id, actor, reason=None):
    _check_staff(actor)
    if not request_id:
        raise ValidationError('Request ID is required', fields={'request_id': 'Required'})
    return _reject(_get(request_id), actor, reason)


@service_operation
def list_requests(status=None, document_type=None, search=None):
    """All requests for the staff list, newest first"""
    query = DocumentRequest.query.join(User, DocumentRequest.student_id == User.id)
    if status and status != 'all':
        if status not in REQUEST_STATUSES:
            raise ValidationError(f'Unknown status: {status}', fields={'status': 'Unknown status'})
        query = query.filter(DocumentRequest.status == status)
    if document_type:
        query = query.filter(DocumentRequest.document_type == document_type)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            DocumentRequest.request_id.ilike(pattern),
            DocumentRequest.purpose.ilike(pattern),
            User.account_number.ilike(pattern),
            User.first_name.ilike(pattern),
            User.last_name.ilike(pattern),
        ))
    rows = query.order_by(DocumentRequest.submitted_date.desc(), DocumentRequest.id.desc()).all()
    return {'requests': [row.to_dict() for row in rows]}


@service_operation
def get_request(request_id):
    return {'request': _get(request_id).to_dict()}


@service_operation
def status_counts():
    """Number of requests per status, plus the total"""
    rows = (db.session.query(DocumentRequest.status, func.count(DocumentRequest.id))
            .group_by(DocumentRequest.status).all())
    counts = {status: 0 for status in REQUEST_STATUSES}
    counts.update({status: count for status, count in rows})
    counts['total'] = sum(count for _, count in rows)
    return {'counts': counts}


@service_operation
def student_requests(actor, student_id):
    if actor.is_student() and actor.id != student_id:
        raise Forbidden('You can only view your own requests')
    rows = (DocumentRequest.query.filter_by(student_id=student_id)
            .order_by(DocumentRequest.submitted_date.desc(), DocumentRequest.id.desc()).all())
    return {'requests': [row.to_dict() for row in rows]}
