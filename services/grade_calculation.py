"""
Quarterly grade calculation.

Pure functions over raw score arrays: the same scores (and max scores)
always give the same averages, so stored averages can be rebuilt at any time.
"""

from config import Config
from models import GRADE_CATEGORIES

NORMALIZATION_MODES = ('percentage', 'raw')


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def category_average(scores, max_scores=None, mode='percentage'):
    """
    Mean of the scored items of one category, 0 when nothing is scored.

    In 'percentage' mode each score is turned into score / max_score * 100
    using the item at the same index; items without a known max score are
    used as-is.
    """
    max_scores = max_scores or []
    values = []
    for index, score in enumerate(scores or []):
        if score is None:
            continue
        max_score = max_scores[index] if index < len(max_scores) else None
        if mode == 'percentage' and max_score:
            values.append(score / max_score * 100)
        else:
            values.append(float(score))

    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


def final_grade(averages):
    """Weighted sum of the three category averages (0.30 / 0.50 / 0.20)"""
    total = sum(averages[category] * weight for category, weight in Config.GRADE_WEIGHTS.items())
    return round(total, 2)


def compute_averages(scores, max_scores=None, mode='percentage'):
    """
    Category averages and final grade for one grade record.

    Args:
        scores: {category: [score or None, ...]}
        max_scores: {category: [max_score, ...]} index-aligned with scores
        mode: 'percentage' or 'raw'

    Returns:
        {'written_work', 'performance_tasks', 'quarterly_assessment', 'final_grade'}
    """
    if mode not in NORMALIZATION_MODES:
        raise ValueError(f"Unknown normalization mode: {mode}")

    max_scores = max_scores or {}
    averages = {
        category: category_average(scores.get(category), max_scores.get(category), mode)
        for category in GRADE_CATEGORIES
    }
    averages['final_grade'] = final_grade(averages)
    return averages


def validate_score(score, max_score=None):
    """
    Returns an error message for an unusable score, or None.
    None (not yet scored) is always acceptable.
    """
    if score is None:
        return None
    if not _is_number(score):
        return 'Score must be a number'
    if score < 0:
        return 'Score cannot be negative'
    if max_score and score > max_score:
        return f'Score cannot exceed the item max score ({max_score:g})'
    return None


def overall_average(final_grades):
    """Mean of a list of final grades, None when the list is empty"""
    grades = [grade for grade in final_grades if grade is not None]
    if not grades:
        return None
    return round(sum(grades) / len(grades), 2)
