from __future__ import annotations

import math

from .models.card import Grade

# Lower bounds (inclusive) of each grade band on the 0..100 accuracy scale.
# Existing review data was graded with these exact cut-offs.
HARD_THRESHOLD = 55.0
GOOD_THRESHOLD = 78.0
EASY_THRESHOLD = 92.0


def map_to_grade(accuracy_score: float) -> Grade:
    """Map a continuous accuracy score (0..100) to a discrete grade.

    Raises ValueError (a RangeError: caller bug) for scores outside [0, 100].
    """

    if isinstance(accuracy_score, bool) or not isinstance(accuracy_score, (int, float)):
        raise ValueError(f"accuracy score must be a number, got {accuracy_score!r}")
    if math.isnan(accuracy_score) or not 0.0 <= accuracy_score <= 100.0:
        raise ValueError(f"accuracy score out of range [0, 100]: {accuracy_score!r}")
    if accuracy_score < HARD_THRESHOLD:
        return Grade.again
    if accuracy_score < GOOD_THRESHOLD:
        return Grade.hard
    if accuracy_score < EASY_THRESHOLD:
        return Grade.good
    return Grade.easy
