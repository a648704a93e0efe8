"""
Typed admin settings.

SystemSettings rows hold text values; SETTINGS_SCHEMA declares the type,
default and validation for each key so callers always get typed values.
"""

import re

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from config import Config
from extensions import db
from models import SystemSettings
from services.results import ValidationError, service_operation


def _school_year(value):
    value = str(value).strip()
    if not re.match(r'^\d{4}-\d{4}$', value):
        raise ValueError('Use YYYY-YYYY (e.g., 2025-2026)')
    start_year, end_year = map(int, value.split('-'))
    if end_year != start_year + 1:
        raise ValueError('School year must be consecutive (e.g., 2025-2026)')
    return value


def _quarter(value):
    quarter = int(value)
    if quarter not in (1, 2, 3, 4):
        raise ValueError('Quarter must be 1 to 4')
    return quarter


def _normalization(value):
    value = str(value).strip().lower()
    if value not in ('percentage', 'raw'):
        raise ValueError("Must be 'percentage' or 'raw'")
    return value


def _fee(value):
    fee = float(value)
    if fee < 0:
        raise ValueError('Fee cannot be negative')
    return fee


def parse_boolean(value):
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ('true', '1', 'on', 'yes'):
        return True
    if text in ('false', '0', 'off', 'no'):
        return False
    raise ValueError('Must be true or false')


# key -> (parser, default); a None default means "auto-calculate"
SETTINGS_SCHEMA = {
    'current_school_year': (_school_year, None),
    'current_quarter': (_quarter, None),
    'score_normalization': (_normalization, 'percentage'),
    'document_fee': (_fee, None),
    'push_enabled': (parse_boolean, True),
}


def _default(key):
    if key == 'document_fee':
        return current_app.config['DEFAULT_DOCUMENT_FEE']
    return SETTINGS_SCHEMA[key][1]


def get_setting(key):
    """Typed value of a setting, or its schema default"""
    if key not in SETTINGS_SCHEMA:
        raise KeyError(key)

    try:
        row = SystemSettings.query.filter_by(setting_key=key).first()
    except SQLAlchemyError as e:
        # Table may not exist yet during initial setup/migration
        current_app.logger.warning(f"Settings lookup for {key} failed: {e}")
        db.session.rollback()
        return _default(key)

    if row is None:
        return _default(key)

    parser = SETTINGS_SCHEMA[key][0]
    try:
        return parser(row.setting_value)
    except ValueError:
        current_app.logger.warning(f"Stored setting {key}={row.setting_value!r} is invalid")
        return _default(key)


def coerce_setting(key, value):
    """Validate one incoming value; raises ValidationError with field detail"""
    if key not in SETTINGS_SCHEMA:
        raise ValidationError(f'Unknown setting: {key}', fields={key: 'Unknown setting'})
    parser = SETTINGS_SCHEMA[key][0]
    try:
        return parser(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f'Invalid value for {key}', fields={key: str(e)})


def set_setting(key, value, updated_by=None):
    """
    Set a setting value in database
    Creates new setting if doesn't exist
    """
    typed = coerce_setting(key, value)
    stored = str(typed).lower() if isinstance(typed, bool) else str(typed)

    setting = SystemSettings.query.filter_by(setting_key=key).first()
    if setting:
        setting.setting_value = stored
        setting.updated_by = updated_by
    else:
        setting = SystemSettings(setting_key=key, setting_value=stored, updated_by=updated_by)
        db.session.add(setting)
    return typed


@service_operation
def read_settings():
    """All settings with their effective values"""
    settings = {key: get_setting(key) for key in SETTINGS_SCHEMA}
    overridden = {row.setting_key for row in SystemSettings.query.all()}

    settings['current_school_year'] = settings['current_school_year'] or Config._auto_calculate_school_year()
    settings['current_quarter'] = settings['current_quarter'] or Config._auto_calculate_quarter()

    return {
        'settings': settings,
        'overridden': sorted(overridden),
    }


@service_operation
def update_settings(values, actor):
    """Validate every value first, then write them in one commit"""
    if not isinstance(values, dict) or not values:
        raise ValidationError('Settings payload must be a non-empty object')

    errors = {}
    for key, value in values.items():
        try:
            coerce_setting(key, value)
        except ValidationError as e:
            errors.update(e.fields)
    if errors:
        raise ValidationError('Invalid settings', fields=errors)

    updated = {key: set_setting(key, value, actor.account_number) for key, value in values.items()}
    db.session.commit()

    current_app.logger.info(f"Settings updated by {actor.account_number}: {sorted(updated)}")
    return {'updated': updated}


@service_operation
def reset_setting(key):
    """Delete a setting (revert to default / auto-calculation)"""
    if key not in SETTINGS_SCHEMA:
        raise ValidationError(f'Unknown setting: {key}', fields={key: 'Unknown setting'})

    setting = SystemSettings.query.filter_by(setting_key=key).first()
    if setting:
        db.session.delete(setting)
        db.session.commit()
    return {'key': key, 'value': get_setting(key)}
