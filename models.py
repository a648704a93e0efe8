"""
models.py - Database Models for Registrar
Grade ledger, adviser verification, document requests and student notifications
"""

import uuid
from datetime import datetime

from flask_login import UserMixin

from extensions import db


GRADE_CATEGORIES = ('written_work', 'performance_tasks', 'quarterly_assessment')

REQUEST_STATUSES = ('on_hold', 'verifying', 'processing', 'for_pickup', 'released', 'rejected')
PAYMENT_STATUSES = ('pending', 'paid', 'waived')


def _new_item_id():
    return uuid.uuid4().hex


def _iso(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    """
    Base User Model - Authentication for all users
    """
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    account_number = db.Column(db.String(50), unique=True, nullable=False, index=True)
    email = db.Column(db.String(120), unique=True, nullable=True)
    password = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False)  # 'admin', 'teacher', 'student'
    status = db.Column(db.String(20), nullable=False, default='active')  # 'active', 'archived'

    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    gender = db.Column(db.String(20), nullable=True)
    grade_level = db.Column(db.String(20), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<User {self.account_number} ({self.role})>'

    def is_admin(self):
        return self.role == 'admin'

    def is_teacher(self):
        return self.role == 'teacher'

    def is_student(self):
        return self.role == 'student'

    @property
    def is_active(self):
        return self.status != 'archived'

    def get_full_name(self):
        """Return full name in "LastName, FirstName" form"""
        if self.last_name and self.first_name:
            return f"{self.last_name}, {self.first_name}"
        return self.last_name or self.first_name or self.account_number

    def to_dict(self):
        return {
            'id': self.id,
            'account_number': self.account_number,
            'email': self.email,
            'role': self.role,
            'full_name': self.get_full_name(),
            'gender': self.gender,
            'grade_level': self.grade_level,
        }


class GradeConfiguration(db.Model):
    """
    Grade item setup for one (section, subject, quarter, teacher)
    Items are grouped into the three fixed categories.
    """
    __tablename__ = 'grade_configurations'
    __table_args__ = (
        db.UniqueConstraint('section_id', 'subject_id', 'quarter', 'teacher_id',
                            name='uq_grade_configuration_key'),
    )

    id = db.Column(db.Integer, primary_key=True)
    section_id = db.Column(db.String(64), nullable=False, index=True)
    subject_id = db.Column(db.String(64), nullable=False, index=True)
    quarter = db.Column(db.Integer, nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    status = db.Column(db.String(20), default='active')

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = db.relationship(
        'GradeItem',
        backref='configuration',
        cascade='all, delete-orphan',
        order_by='GradeItem.position'
    )

    def __repr__(self):
        return (f'<GradeConfiguration {self.section_id}/{self.subject_id} '
                f'Q{self.quarter} teacher:{self.teacher_id}>')

    def items_in(self, category):
        """Items of one category in position order"""
        return sorted(
            (item for item in self.items if item.category == category),
            key=lambda item: item.position
        )

    def max_scores(self):
        """Max score per category, index-aligned with score arrays"""
        return {
            category: [item.max_score for item in self.items_in(category)]
            for category in GRADE_CATEGORIES
        }

    def to_dict(self):
        return {
            'id': self.id,
            'section_id': self.section_id,
            'subject_id': self.subject_id,
            'quarter': self.quarter,
            'teacher_id': self.teacher_id,
            'grade_items': {
                category: [item.to_dict() for item in self.items_in(category)]
                for category in GRADE_CATEGORIES
            },
            'updated_at': _iso(self.updated_at),
        }


class GradeItem(db.Model):
    """
    One scored item (quiz, task, exam) in a grade configuration
    The id is a globally unique hex string.
    """
    __tablename__ = 'grade_items'

    id = db.Column(db.String(32), primary_key=True, default=_new_item_id)
    configuration_id = db.Column(db.Integer, db.ForeignKey('grade_configurations.id'),
                                 nullable=False, index=True)
    category = db.Column(db.String(30), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    max_score = db.Column(db.Float, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<GradeItem {self.name} /{self.max_score} ({self.category})>'

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'max_score': self.max_score,
            'category': self.category,
        }


class Grade(db.Model):
    """
    Grade record - raw scores and derived averages for one student,
    section, subject, school year and quarter.

    Score arrays are index-aligned with the configuration's items
    (None = not yet scored). Averages are derived, never edited directly.
    """
    __tablename__ = 'grades'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'section_id', 'subject_id', 'school_year', 'quarter',
                            name='uq_grade_record_key'),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    section_id = db.Column(db.String(64), nullable=False, index=True)
    subject_id = db.Column(db.String(64), nullable=False, index=True)
    school_year = db.Column(db.String(20), nullable=False)
    quarter = db.Column(db.Integer, nullable=False)
    teacher_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    # Raw scores (JSON lists)
    written_work = db.Column(db.JSON, nullable=False, default=list)
    performance_tasks = db.Column(db.JSON, nullable=False, default=list)
    quarterly_assessment = db.Column(db.JSON, nullable=False, default=list)

    # Derived averages (0-100)
    avg_written_work = db.Column(db.Float, nullable=False, default=0.0)
    avg_performance_tasks = db.Column(db.Float, nullable=False, default=0.0)
    avg_quarterly_assessment = db.Column(db.Float, nullable=False, default=0.0)
    final_grade = db.Column(db.Float, nullable=False, default=0.0)

    # Verification gate
    verified = db.Column(db.Boolean, nullable=False, default=False)
    verified_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    verified_at = db.Column(db.DateTime, nullable=True)

    # Compare-and-set counter
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    student = db.relationship('User', foreign_keys=[student_id])

    def __repr__(self):
        return (f'<Grade Student:{self.student_id} {self.subject_id} '
                f'{self.school_year} Q{self.quarter} Final:{self.final_grade}>')

    def get_scores(self):
        """Raw score arrays keyed by category (copies)"""
        return {category: list(getattr(self, category) or []) for category in GRADE_CATEGORIES}

    def get_averages(self):
        return {
            'written_work': self.avg_written_work,
            'performance_tasks': self.avg_performance_tasks,
            'quarterly_assessment': self.avg_quarterly_assessment,
            'final_grade': self.final_grade,
        }

    def to_dict(self):
        data = {
            'id': self.id,
            'student_id': self.student_id,
            'section_id': self.section_id,
            'subject_id': self.subject_id,
            'school_year': self.school_year,
            'quarter': self.quarter,
            'averages': self.get_averages(),
            'verification': {
                'verified': self.verified,
                'verified_by': self.verified_by,
                'verified_at': _iso(self.verified_at),
            },
            'updated_at': _iso(self.updated_at),
        }
        data.update(self.get_scores())
        return data


class DocumentRequest(db.Model):
    """
    Document request submitted by a student and processed by staff
    """
    __tablename__ = 'document_requests'

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(db.String(20), unique=True, nullable=False, index=True)  # REQ-2025-0001
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    document_type = db.Column(db.String(50), nullable=False)
    purpose = db.Column(db.Text, nullable=False)
    submitted_date = db.Column(db.DateTime, default=datetime.utcnow)
    is_urgent = db.Column(db.Boolean, default=False)

    payment_amount = db.Column(db.Float, nullable=False, default=0.0)
    payment_status = db.Column(db.String(20), nullable=False, default='pending')

    status = db.Column(db.String(20), nullable=False, default='on_hold', index=True)
    tentative_date = db.Column(db.Date, nullable=True)  # only while processing
    rejection_reason = db.Column(db.Text, nullable=True)

    # First staff member to act on the request
    processed_by = db.Column(db.String(200), nullable=True)
    processed_by_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    student = db.relationship('User', foreign_keys=[student_id])

    def __repr__(self):
        return f'<DocumentRequest {self.request_id} {self.document_type} ({self.status})>'

    def to_dict(self):
        student = self.student
        return {
            'id': self.id,
            'request_id': self.request_id,
            'student_id': self.student_id,
            'student_name': student.get_full_name() if student else None,
            'account_number': student.account_number if student else None,
            'document_type': self.document_type,
            'purpose': self.purpose,
            'submitted_date': _iso(self.submitted_date),
            'payment_amount': self.payment_amount,
            'payment_status': self.payment_status,
            'status': self.status,
            'tentative_date': _iso(self.tentative_date),
            'is_urgent': self.is_urgent,
            'rejection_reason': self.rejection_reason,
            'processed_by': self.processed_by,
            'processed_by_id': self.processed_by_id,
        }


class RequestSequence(db.Model):
    """
    Per-year counter backing document request ids
    """
    __tablename__ = 'request_sequences'

    year = db.Column(db.Integer, primary_key=True, autoincrement=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)

    def __repr__(self):
        return f'<RequestSequence {self.year}={self.last_value}>'


class Notification(db.Model):
    """
    In-app notification for a student
    Content is immutable once created; only the read flag changes.
    """
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    type = db.Column(db.String(30), nullable=False)  # 'grade', 'document_request', 'general'
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    priority = db.Column(db.String(10), nullable=False, default='normal')  # 'low', 'normal', 'high'
    is_read = db.Column(db.Boolean, nullable=False, default=False, index=True)
    related_id = db.Column(db.String(64), nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Notification {self.type} Student:{self.student_id} read:{self.is_read}>'

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'priority': self.priority,
            'is_read': self.is_read,
            'related_id': self.related_id,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class PushSubscription(db.Model):
    """
    Browser push subscription for a user
    """
    __tablename__ = 'push_subscriptions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    endpoint = db.Column(db.String(500), unique=True, nullable=False)
    p256dh = db.Column(db.String(200), nullable=False)
    auth = db.Column(db.String(100), nullable=False)
    user_agent = db.Column(db.String(300), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_used = db.Column(db.DateTime, nullable=True)
    deactivated_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<PushSubscription User:{self.user_id} active:{self.is_active}>'

    def subscription_info(self):
        """Shape expected by pywebpush"""
        return {
            'endpoint': self.endpoint,
            'keys': {'p256dh': self.p256dh, 'auth': self.auth},
        }


class ActivityLog(db.Model):
    """
    Audit trail entry
    """
    __tablename__ = 'activity_logs'

    id = db.Column(db.Integer, primary_key=True)
    activity_type = db.Column(db.String(50), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    account_type = db.Column(db.String(20), nullable=True)
    payload = db.Column(db.JSON, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f'<ActivityLog {self.activity_type} User:{self.user_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'activity_type': self.activity_type,
            'user_id': self.user_id,
            'account_type': self.account_type,
            'payload': self.payload or {},
            'ip_address': self.ip_address,
            'created_at': _iso(self.created_at),
        }


class LoginAttempt(db.Model):
    """
    Failed-login counter for one account (lockout state survives restarts)
    """
    __tablename__ = 'login_attempts'

    id = db.Column(db.Integer, primary_key=True)
    account_key = db.Column(db.String(120), unique=True, nullable=False, index=True)
    failed_count = db.Column(db.Integer, nullable=False, default=0)
    window_started_at = db.Column(db.DateTime, nullable=True)
    locked_until = db.Column(db.DateTime, nullable=True)
    last_failed_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<LoginAttempt {self.account_key} failed:{self.failed_count}>'


class SystemSettings(db.Model):
    """
    System-wide settings stored in database
    Values are stored as text and typed through services.settings.SETTINGS_SCHEMA
    """
    __tablename__ = 'system_settings'

    id = db.Column(db.Integer, primary_key=True)
    setting_key = db.Column(db.String(100), unique=True, nullable=False, index=True)
    setting_value = db.Column(db.String(200), nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    updated_by = db.Column(db.String(100), nullable=True)  # Account of admin who updated

    def __repr__(self):
        return f'<SystemSettings {self.setting_key}={self.setting_value}>'
