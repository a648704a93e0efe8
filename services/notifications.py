"""
Student notifications: persisted record plus best-effort push (fan-out).

The notification row is the durable part; push is handed to the dispatcher
after the commit and its failures never reach the caller.
"""

from datetime import datetime

from flask import current_app

from extensions import db, push
from models import Grade, Notification, User
from services.activity_log import record_activity
from services.push import build_push_message
from services.results import Forbidden, NotFound, ValidationError, service_operation
from services.settings import get_setting, parse_boolean


NOTIFICATION_TYPES = ('grade', 'document_request', 'general')
PRIORITIES = ('low', 'normal', 'high')

DOCUMENT_TYPE_LABELS = {
    'transcript': 'Transcript',
    'enrollment': 'Enrollment Certificate',
    'grade-report': 'Grade Report',
    'diploma': 'Diploma',
    'certificate': 'Certificate',
}


def format_teacher_name(full_name, gender=None):
    """
    "Ms./Mr. LastName" from a "LastName, FirstName" full name.
    Falls back to "Teacher LastName" when gender is unknown.
    """
    if not full_name:
        return 'Your teacher'

    if ',' in full_name:
        last_name = full_name.split(',')[0].strip()
    else:
        last_name = full_name.strip().split(' ')[-1]

    title = {'female': 'Ms.', 'male': 'Mr.'}.get((gender or '').lower(), 'Teacher')
    return f"{title} {last_name}"


def grade_release_message(subject_name, teacher_name):
    """Title/message for the notification row and the push shown on grade release"""
    return {
        'title': f"Your grade in {subject_name} is now available",
        'message': (f"Your grade in {subject_name} has been released by {teacher_name}. "
                    f"Check your grade report to see your performance."),
        'push_title': f"Grade Released: {subject_name}",
        'push_body': (f"Your grade in {subject_name} has been released by {teacher_name}. "
                      f"Check your grade report."),
    }


def document_status_message(document_type, status, tentative_date=None, reason=None):
    label = DOCUMENT_TYPE_LABELS.get(document_type, document_type)

    if status == 'verifying':
        return ('Document request under verification',
                f"Your {label} request is being verified by the registrar.")
    if status == 'processing':
        message = f"Your {label} request has been approved and is now being processed."
        if tentative_date:
            message += f" Tentative release date: {tentative_date.strftime('%m/%d/%Y')}."
        return 'Document request approved - Now processing', message
    if status == 'for_pickup':
        return ('Document ready for pickup',
                f"Your {label} is ready for pickup at the registrar's office.")
    if status == 'released':
        return ('Document request completed',
                f"Your {label} request has been completed and released.")
    if status == 'rejected':
        message = f"Your {label} request has been rejected."
        if reason:
            message += f" Reason: {reason}"
        return 'Document request rejected', message
    if status == 'on_hold':
        return ('Document request on hold',
                f"Your {label} request is on hold. Please check its payment status.")
    return 'Document request updated', f"Your {label} request has been updated."


def add_notification(student_id, title, message, type='general', related_id=None,
                     priority='normal', created_by=None):
    """Stage a notification row in the current session (caller commits)"""
    if type not in NOTIFICATION_TYPES:
        raise ValidationError(f'Unknown notification type: {type}', fields={'type': 'Unknown type'})
    if priority not in PRIORITIES:
        raise ValidationError(f'Unknown priority: {priority}', fields={'priority': 'Unknown priority'})
    if not title or not message:
        raise ValidationError('Title and message are required',
                              fields={'title': 'Required', 'message': 'Required'})

    notification = Notification(
        student_id=student_id,
        type=type,
        title=title,
        message=message,
        priority=priority,
        is_read=False,
        related_id=str(related_id) if related_id is not None else None,
        created_by=created_by,
    )
    db.session.add(notification)
    return notification


def send_push(student_id, title, body, tag='notification', data=None):
    """Hand a push message to the dispatcher; only call after the commit"""
    if not get_setting('push_enabled'):
        current_app.logger.info(f"Push disabled in settings, skipped for student {student_id}")
        return None
    return push.dispatch(student_id, build_push_message(title, body, tag, data))


def _fan_out(student_ids, title, message, type, related_id, priority, push_tag, push_data,
             created_by):
    """Commit one notification per student, then push each of them"""
    notifications = [add_notification(student_id, title, message, type, related_id,
                                      priority, created_by)
                     for student_id in student_ids]
    db.session.commit()
    for notification in notifications:
        send_push(notification.student_id, title, message, push_tag or type, push_data)
    return notifications


@service_operation
def notify(student_id, title, message, type='general', related_id=None, priority='normal',
           push_tag=None, push_data=None, created_by=None):
    """
    Persist one unread notification, then push it. A failed commit fails the
    operation; a failed push is only logged by the dispatcher.
    """
    notification, = _fan_out([student_id], title, message, type, related_id, priority,
                             push_tag, push_data, created_by)
    current_app.logger.info(f"Notification {notification.id} created for student {student_id}")
    return {'notification': notification.to_dict()}


def _broadcast_targets(student_id, section_id, send_to_all):
    students = User.query.filter(User.role == 'student', User.status != 'archived')
    if send_to_all:
        return [s.id for s in students.order_by(User.id)]
    if section_id:
        enrolled = (db.session.query(Grade.student_id)
                    .filter(Grade.section_id == str(section_id))
                    .distinct())
        return [s.id for s in students.filter(User.id.in_(enrolled)).order_by(User.id)]
    if student_id is not None:
        try:
            student = students.filter(User.id == int(student_id)).first()
        except (TypeError, ValueError):
            raise ValidationError('Invalid student ID', fields={'student_id': 'Must be a number'})
        if student is None:
            raise NotFound('Student not found')
        return [student.id]
    raise ValidationError('Must specify student_id, section_id, or send_to_all',
                          fields={'student_id': 'Choose a target',
                                  'section_id': 'Choose a target',
                                  'send_to_all': 'Choose a target'})


@service_operation
def broadcast(actor, title, message, student_id=None, section_id=None, send_to_all=False,
              type='general', priority='normal'):
    """
    Staff announcement to one student, every student with grades in a
    section, or every active student. All rows commit together before any
    push goes out.
    """
    if not (actor.is_admin() or actor.is_teacher()):
        raise Forbidden('Only staff can send notifications')
    title = title.strip() if isinstance(title, str) else ''
    message = message.strip() if isinstance(message, str) else ''
    errors = {}
    if not title:
        errors['title'] = 'Title is required'
    if not message:
        errors['message'] = 'Message is required'
    try:
        send_to_all = parse_boolean(False if send_to_all is None else send_to_all)
    except ValueError as e:
        errors['send_to_all'] = str(e)
    if errors:
        raise ValidationError('Missing or invalid fields', fields=errors)

    targets = _broadcast_targets(student_id, section_id, send_to_all)
    if not targets:
        raise ValidationError('No target students found')

    _fan_out(targets, title, message, type, None, priority, None, None, actor.id)
    record_activity('notification_create', {
        'title': title,
        'type': type,
        'target_count': len(targets),
        'send_to_all': send_to_all,
        'section_id': section_id,
        'student_id': student_id,
    }, actor)
    current_app.logger.info(f"{actor.account_number} sent '{title}' to {len(targets)} student(s)")
    return {'notification_count': len(targets), 'target_students': targets}


def _check_owner(actor, student_id):
    if actor.is_admin():
        return
    if not actor.is_student() or actor.id != student_id:
        raise Forbidden('You can only access your own notifications')


def _owned(student_id, notification_id):
    notification = Notification.query.filter_by(id=notification_id, student_id=student_id).first()
    if notification is None:
        raise NotFound('Notification not found')
    return notification


def _id_list(ids):
    if not isinstance(ids, (list, tuple)) or not ids:
        raise ValidationError('Notification IDs array is required',
                              fields={'notification_ids': 'Provide a non-empty list'})
    try:
        return [int(i) for i in ids]
    except (TypeError, ValueError):
        raise ValidationError('Notification IDs must be integers',
                              fields={'notification_ids': 'Integers only'})


@service_operation
def list_notifications(actor, student_id, type=None, is_read=None, limit=None, offset=0):
    _check_owner(actor, student_id)

    limit = limit or current_app.config['NOTIFICATIONS_PER_PAGE']
    if limit < 1 or offset < 0:
        raise ValidationError('limit must be positive and offset non-negative')

    query = Notification.query.filter_by(student_id=student_id)
    if type:
        query = query.filter_by(type=type)
    if is_read is not None:
        query = query.filter_by(is_read=is_read)

    total = query.count()
    rows = (query.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all())
    unread = Notification.query.filter_by(student_id=student_id, is_read=False).count()

    return {
        'notifications': [row.to_dict() for row in rows],
        'unread_count': unread,
        'pagination': {
            'total': total,
            'limit': limit,
            'offset': offset,
            'has_more': offset + len(rows) < total,
        },
    }


def _set_read(actor, student_id, notification_id, is_read):
    _check_owner(actor, student_id)
    notification = _owned(student_id, notification_id)
    if notification.is_read != is_read:
        notification.is_read = is_read
        notification.updated_at = datetime.utcnow()
        db.session.commit()
    return {'notification': notification.to_dict()}


@service_operation
def mark_read(actor, student_id, notification_id):
    return _set_read(actor, student_id, notification_id, True)


@service_operation
def mark_unread(actor, student_id, notification_id):
    return _set_read(actor, student_id, notification_id, False)


def _bulk_update_read(student_id, ids=None):
    query = Notification.query.filter_by(student_id=student_id, is_read=False)
    if ids is not None:
        query = query.filter(Notification.id.in_(ids))
    updated = query.update({'is_read': True, 'updated_at': datetime.utcnow()},
                           synchronize_session=False)
    db.session.commit()
    return updated


@service_operation
def mark_all_read(actor, student_id):
    _check_owner(actor, student_id)
    updated = _bulk_update_read(student_id)
    record_activity('notifications_marked_read', {'student_id': student_id, 'count': updated}, actor)
    return {'updated': updated}


@service_operation
def bulk_mark_read(actor, student_id, notification_ids):
    """Ids belonging to other students are silently outside the scope"""
    _check_owner(actor, student_id)
    ids = _id_list(notification_ids)
    updated = _bulk_update_read(student_id, ids)
    record_activity('notifications_marked_read', {'student_id': student_id, 'count': updated}, actor)
    return {'updated': updated}


@service_operation
def delete_notification(actor, student_id, notification_id):
    _check_owner(actor, student_id)
    notification = _owned(student_id, notification_id)
    db.session.delete(notification)
    db.session.commit()
    return {'deleted': 1}


@service_operation
def bulk_delete(actor, student_id, notification_ids):
    _check_owner(actor, student_id)
    ids = _id_list(notification_ids)
    deleted = (Notification.query
               .filter(Notification.student_id == student_id, Notification.id.in_(ids))
               .delete(synchronize_session=False))
    db.session.commit()
    record_activity('notifications_deleted', {'student_id': student_id, 'count': deleted}, actor)
    return {'deleted': deleted}


@service_operation
def clear_read(actor, student_id):
    """Delete every notification the student has already read"""
    _check_owner(actor, student_id)
    deleted = (Notification.query.filter_by(student_id=student_id, is_read=True)
               .delete(synchronize_session=False))
    db.session.commit()
    record_activity('notifications_deleted', {'student_id': student_id, 'count': deleted}, actor)
    return {'deleted': deleted}
