"""
Grade item configuration store.

One configuration per (section, subject, quarter, teacher) holding the scored
items of the three categories. Item ids are globally unique, and every item
lookup is still scoped by (configuration_id, item_id).
"""

from collections import namedtuple

from flask import current_app
from sqlalchemy.exc import IntegrityError

from config import Config
from extensions import db
from models import GRADE_CATEGORIES, Grade, GradeConfiguration, GradeItem
from services.grade_ledger import compare_and_set, find_configuration
from services.results import Conflict, Forbidden, NotFound, ValidationError, service_operation
from services.settings import get_setting


ConfigKey = namedtuple('ConfigKey', 'section_id subject_id quarter teacher_id')


def config_key(section_id, subject_id, quarter, teacher_id):
    errors = {}
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
        raise ValidationError('Invalid configuration key', fields=errors)
    return ConfigKey(str(section_id), str(subject_id), quarter, teacher_id)


def _find(key):
    return GradeConfiguration.query.filter_by(**key._asdict()).first()


def _require(key):
    configuration = _find(key)
    if configuration is None:
        raise NotFound('Configuration not found')
    return configuration


def _owned(configuration_id, actor=None):
    configuration = db.session.get(GradeConfiguration, configuration_id)
    if configuration is None:
        raise NotFound('Configuration not found')
    if actor is not None and not actor.is_admin() and configuration.teacher_id != actor.id:
        raise Forbidden('You can only change your own grade items')
    return configuration


def _item(configuration, item_id):
    item = GradeItem.query.filter_by(configuration_id=configuration.id, id=item_id).first()
    if item is None:
        raise NotFound('Grade item not found')
    return item


def _item_fields(name, max_score, partial=False):
    """Validated (name, max_score); None stays None when partial"""
    errors = {}
    if name is not None or not partial:
        name = name.strip() if isinstance(name, str) else ''
        if not name:
            errors['name'] = 'Item name is required'
    if max_score is not None or not partial:
        if isinstance(max_score, bool) or not isinstance(max_score, (int, float)) or max_score <= 0:
            errors['max_score'] = 'Max score must be a positive number'
        else:
            max_score = float(max_score)
    if errors:
        raise ValidationError('Invalid grade item', fields=errors)
    return name, max_score


def _check_category(category):
    if category not in GRADE_CATEGORIES:
        raise ValidationError(f'Unknown category: {category}',
                              fields={'category': f"Must be one of {', '.join(GRADE_CATEGORIES)}"})


def _get_or_create(key):
    configuration = _find(key)
    if configuration is not None:
        return configuration, False

    db.session.add(GradeConfiguration(**key._asdict()))
    try:
        db.session.commit()
    except IntegrityError:
        # Another request created it first; the unique key guarantees one row
        db.session.rollback()
        return _require(key), False
    return _require(key), True


@service_operation
def get_or_create_configuration(section_id, subject_id, quarter, teacher_id):
    """Existing configuration for the key, or a new empty one"""
    key = config_key(section_id, subject_id, quarter, teacher_id)
    configuration, created = _get_or_create(key)
    if created:
        current_app.logger.info(f"Created grade configuration {configuration.id} for {tuple(key)}")
    return {'configuration': configuration.to_dict(), 'created': created}


@service_operation
def add_item(key, category, name, max_score):
    """Append an item to the end of one category"""
    _check_category(category)
    name, max_score = _item_fields(name, max_score)
    configuration = _require(key)

    position = len(configuration.items_in(category))
    item = GradeItem(configuration_id=configuration.id, category=category,
                     position=position, name=name, max_score=max_score)
    db.session.add(item)
    db.session.commit()

    current_app.logger.info(f"Added {category} item '{name}' to configuration {configuration.id}")
    return {'item': item.to_dict(), 'configuration': configuration.to_dict()}


@service_operation
def update_item(configuration_id, item_id, name=None, max_score=None, actor=None):
    """Rename and/or resize an item; averages pick up the new max score on the next write"""
    if name is None and max_score is None:
        raise ValidationError('Nothing to update', fields={'name': 'Provide name or max_score'})
    name, max_score = _item_fields(name, max_score, partial=True)

    configuration = _owned(configuration_id, actor)
    item = _item(configuration, item_id)
    if name is not None:
        item.name = name
    if max_score is not None:
        item.max_score = max_score
    db.session.commit()
    return {'item': item.to_dict()}


def _in_scope(record, configuration):
    """Records are scored against the configuration max_scores_for picks for their teacher"""
    owner = find_configuration(record.section_id, record.subject_id, record.quarter,
                               record.teacher_id)
    return owner is not None and owner.id == configuration.id


def _drop_score_column(configuration, category, position, actor):
    """
    Remove the score at `position` from every unverified record scored
    against this configuration and recompute it. Verified records keep their
    scores. Returns the number of records changed, or None when a record
    changed underneath (the caller rolls back and starts over).
    """
    mode = get_setting('score_normalization')
    max_scores = configuration.max_scores()
    records = (Grade.query
               .filter_by(section_id=configuration.section_id,
                          subject_id=configuration.subject_id,
                          quarter=configuration.quarter,
                          verified=False)
               .populate_existing()
               .all())
    updated = 0
    for record in records:
        if not _in_scope(record, configuration):
            continue
        scores = record.get_scores()
        if position >= len(scores[category]):
            continue
        del scores[category][position]
        if not compare_and_set(record, scores, actor, max_scores, mode):
            return None
        updated += 1
    return updated


@service_operation
def remove_item(configuration_id, item_id, actor):
    """
    Remove an item, re-pack its category, and drop its score column.
    Item removal and every column drop commit together or not at all.
    """
    retries = current_app.config['GRADE_WRITE_RETRIES']

    for attempt in range(1, retries + 1):
        configuration = _owned(configuration_id, actor)
        item = _item(configuration, item_id)
        category, position = item.category, item.position

        configuration.items.remove(item)
        for index, remaining in enumerate(configuration.items_in(category)):
            remaining.position = index
        db.session.flush()

        updated = _drop_score_column(configuration, category, position, actor)
        if updated is not None:
            db.session.commit()
            current_app.logger.info(f"Removed item {item_id} from configuration {configuration_id}, "
                                    f"updated {updated} record(s)")
            return {'removed': item_id, 'records_updated': updated,
                    'configuration': configuration.to_dict()}

        db.session.rollback()
        current_app.logger.warning(
            f"Grade records changed while removing item {item_id}, retrying ({attempt}/{retries})")

    raise Conflict('Grade records kept changing while the item was removed, please retry')


@service_operation
def replace_items(key, grade_items):
    """
    Replace all items of a configuration (creating it if needed).
    `grade_items` is {category: [{name, max_score, id?}, ...]}; items keep
    their id when one is given and it belongs to this configuration.
    """
    if not isinstance(grade_items, dict):
        raise ValidationError('grade_items must be an object keyed by category')
    unknown = set(grade_items) - set(GRADE_CATEGORIES)
    if unknown:
        raise ValidationError(f"Unknown categories: {', '.join(sorted(unknown))}")

    parsed = {}
    for category in GRADE_CATEGORIES:
        entries = grade_items.get(category) or []
        if not isinstance(entries, list):
            raise ValidationError(f'{category} must be a list', fields={category: 'Must be a list'})
        parsed[category] = []
        for entry in entries:
            if not isinstance(entry, dict):
                raise ValidationError('Each item must be an object', fields={category: 'Invalid item'})
            name, max_score = _item_fields(entry.get('name'), entry.get('max_score'))
            parsed[category].append((entry.get('id'), name, max_score))

    configuration, _ = _get_or_create(key)
    existing = {item.id: item for item in configuration.items}
    kept = set()

    for category, entries in parsed.items():
        for position, (item_id, name, max_score) in enumerate(entries):
            item = existing.get(item_id)
            if item is None or item_id in kept:
                configuration.items.append(GradeItem(
                    configuration_id=configuration.id, category=category,
                    position=position, name=name, max_score=max_score))
                continue
            kept.add(item_id)
            item.category = category
            item.position = position
            item.name = name
            item.max_score = max_score

    for item_id, item in existing.items():
        if item_id not in kept:
            configuration.items.remove(item)

    db.session.commit()
    return {'configuration': configuration.to_dict()}


@service_operation
def delete_configuration(key):
    """Delete a configuration and its items; grade records are left alone"""
    configuration = _require(key)
    configuration_id = configuration.id
    db.session.delete(configuration)
    db.session.commit()
    current_app.logger.info(f"Deleted grade configuration {configuration_id}")
    return {'deleted': configuration_id}
