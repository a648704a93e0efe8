"""
Typed results for service operations.

Services raise ServiceError subclasses internally; the service_operation
decorator turns them (and database failures) into a ServiceResult so nothing
is thrown across the service/blueprint seam. Blueprints map results to HTTP.
"""

import functools
from enum import Enum

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from extensions import db


class ErrorCode(Enum):
    # missing or malformed input, user-correctable
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # unknown key
    NOT_FOUND = "NOT_FOUND"

    # role or ownership violation
    FORBIDDEN = "FORBIDDEN"

    # mutation attempted on a verified grade record
    VERIFICATION_LOCKED = "VERIFICATION_LOCKED"

    # unique-key violation or lost compare-and-set race
    CONFLICT = "CONFLICT"

    # store or push transport failure
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"

    # bad account number or password
    UNAUTHENTICATED = "UNAUTHENTICATED"

    # account temporarily locked after repeated failed logins
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"


HTTP_STATUS = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.VERIFICATION_LOCKED: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.UPSTREAM_UNAVAILABLE: 503,
    ErrorCode.UNAUTHENTICATED: 401,
    ErrorCode.ACCOUNT_LOCKED: 429,
}


class ServiceError(Exception):
    code = ErrorCode.VALIDATION_ERROR
    default_detail = 'Invalid request'

    def __init__(self, detail=None, fields=None):
        self.detail = detail or self.default_detail
        self.fields = fields or {}
        super().__init__(self.detail)


class ValidationError(ServiceError):
    code = ErrorCode.VALIDATION_ERROR
    default_detail = 'Invalid input'


class NotFound(ServiceError):
    code = ErrorCode.NOT_FOUND
    default_detail = 'Not found'


class Forbidden(ServiceError):
    code = ErrorCode.FORBIDDEN
    default_detail = 'Permission denied'


class VerificationLocked(ServiceError):
    code = ErrorCode.VERIFICATION_LOCKED
    default_detail = 'Grade already verified; it can no longer be edited'


class Conflict(ServiceError):
    code = ErrorCode.CONFLICT
    default_detail = 'The record was changed by another request, please retry'


class UpstreamUnavailable(ServiceError):
    code = ErrorCode.UPSTREAM_UNAVAILABLE
    default_detail = 'Storage is temporarily unavailable'


class Unauthenticated(ServiceError):
    code = ErrorCode.UNAUTHENTICATED
    default_detail = 'Invalid account number or password'


class AccountLocked(ServiceError):
    code = ErrorCode.ACCOUNT_LOCKED
    default_detail = 'Too many failed login attempts, try again later'


class ServiceResult:
    """
    Outcome of a service operation.

    Attributes:
        success (bool): whether the operation succeeded.
        data (dict): payload, varies by operation.
        error (ErrorCode | None): machine-readable error.
        detail (str | None): human-readable explanation.
        fields (dict): field-level validation messages.
    """

    def __init__(self, success, data=None, error=None, detail=None, fields=None):
        self.success = success
        self.data = data if data is not None else {}
        self.error = error
        self.detail = detail
        self.fields = fields or {}

    @classmethod
    def ok(cls, data=None, detail=None):
        return cls(True, data=data, detail=detail)

    @classmethod
    def fail(cls, error, detail=None, fields=None):
        return cls(False, error=error, detail=detail, fields=fields)

    @classmethod
    def from_error(cls, error):
        return cls.fail(error.code, error.detail, error.fields)

    @property
    def status_code(self):
        if self.success:
            return 200
        return HTTP_STATUS.get(self.error, 500)

    def to_dict(self):
        if self.success:
            body = {'success': True, 'data': self.data}
            if self.detail:
                body['message'] = self.detail
            return body

        body = {
            'success': False,
            'error': self.error.value if isinstance(self.error, Enum) else self.error,
            'message': self.detail,
        }
        if self.fields:
            body['fields'] = self.fields
        return body

    def __repr__(self):
        if self.success:
            return '<ServiceResult ok>'
        return f'<ServiceResult {self.error.value}: {self.detail}>'


def service_operation(func):
    """
    Run a service function and wrap its outcome in a ServiceResult.

    Returned values become ServiceResult.ok(data); ServiceError becomes a
    failed result; database errors roll back and become UPSTREAM_UNAVAILABLE.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            outcome = func(*args, **kwargs)
        except ServiceError as e:
            db.session.rollback()
            return ServiceResult.from_error(e)
        except SQLAlchemyError as e:
            db.session.rollback()
            current_app.logger.error(f"Database error in {func.__name__}: {e}")
            return ServiceResult.fail(ErrorCode.UPSTREAM_UNAVAILABLE,
                                      UpstreamUnavailable.default_detail)

        if isinstance(outcome, ServiceResult):
            return outcome
        return ServiceResult.ok(outcome)
    return wrapper
