"""Completion roll-ups for milestones and learning plans."""

import math
from typing import Any, Iterable, Mapping, Optional


def percent(part: float, whole: float) -> int:
    """``part / whole`` as a whole percentage rounded half up; 0 when ``whole`` is 0."""
    if whole <= 0:
        return 0
    return int(math.floor(part / whole * 100 + 0.5))


def calculate_progress(milestones: Iterable[Mapping[str, Any]]) -> int:
    """Percentage of completed milestones; 0 for an empty plan."""
    items = list(milestones)
    completed = sum(1 for milestone in items if milestone.get("is_completed"))
    return percent(completed, len(items))


def derived_milestone_completion(courses: Iterable[Mapping[str, Any]]) -> Optional[bool]:
    """Completion implied by a milestone's courses, or None when it has none."""
    items = list(courses)
    if not items:
        return None
    return all(course.get("is_completed") for course in items)
