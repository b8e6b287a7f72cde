"""
Flexible course name matching.

Course names reach the system from several sources (CSV imports, tutor
login, manual entry) and rarely agree on spelling: "8vo A", "Octavo A",
"1ro Bach A", "Primero de Bachillerato A". These helpers compare them on a
normalized form plus a few grade/section patterns.

All functions are pure.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import NamedTuple

_ORDINALS = (
    ("primero", "1ro"),
    ("segundo", "2do"),
    ("tercero", "3ro"),
    ("cuarto", "4to"),
    ("quinto", "5to"),
    ("sexto", "6to"),
    ("septimo", "7mo"),
    ("octavo", "8vo"),
    ("noveno", "9no"),
    ("decimo", "10mo"),
)

_ARTICLES = re.compile(r"\b(?:de|la|el)\b")
_WHITESPACE = re.compile(r"\s+")

# (pattern, grade group, section group)
_PATTERNS = (
    (re.compile(r"^(\d+)(ro|do|to|vo|mo|no)\s+(bach|bachillerato)\s+([ab])$"), 1, 4),
    (re.compile(r"^(\d+)(ro|do|to|vo|mo|no)\s+([ab])$"), 1, 3),
    (re.compile(r"^(\d+)(ero|ro)\s+([ab])$"), 1, 3),
)


class CourseSuggestion(NamedTuple):
    course: str
    score: int


def normalize_course(name: str | None) -> str:
    """Canonical comparison form of a course name.

    Lower-cases, collapses whitespace, maps spelled-out ordinals to their
    abbreviations, shortens "bachillerato"/"bach." to "bach" and drops
    the articles de/la/el.

    Example:
        >>> normalize_course("  Primero de Bachillerato  A ")
        '1ro bach a'
    """
    if not name:
        return ""
    value = _WHITESPACE.sub(" ", name.lower().strip())
    for word, short in _ORDINALS:
        value = re.sub(rf"\b{word}\b", short, value)
    value = re.sub(r"\bbachillerato\b", "bach", value)
    value = re.sub(r"\bbach\.", "bach", value)
    value = _ARTICLES.sub("", value)
    return _WHITESPACE.sub(" ", value).strip()


def courses_match(first: str | None, second: str | None) -> bool:
    """Whether two course names designate the same course."""
    if not first or not second:
        return False

    left = normalize_course(first)
    right = normalize_course(second)
    if left == right:
        return True

    for pattern, grade, section in _PATTERNS:
        left_match = pattern.match(left)
        right_match = pattern.match(right)
        if left_match and right_match:
            return (
                left_match.group(grade) == right_match.group(grade)
                and left_match.group(section) == right_match.group(section)
            )
    return False


def find_matching_course(target: str | None, candidates: Iterable[str] | None) -> str | None:
    """First case-insensitive exact match, else first flexible match."""
    if not target or candidates is None:
        return None
    candidates = [c for c in candidates if c]

    wanted = target.lower().strip()
    for course in candidates:
        if course.lower().strip() == wanted:
            return course

    for course in candidates:
        if courses_match(course, target):
            return course
    return None


def suggest_courses(target: str | None, candidates: Iterable[str] | None) -> list[CourseSuggestion]:
    """Rank candidate courses by similarity to target (best first).

    Scores: 100 same normalized name, 80 candidate contains target,
    70 target contains candidate, 90 flexible pattern match. Candidates
    scoring zero are dropped.
    """
    if not target or candidates is None:
        return []

    normalized = normalize_course(target)
    suggestions = []
    for course in candidates:
        if not course:
            continue
        course_normalized = normalize_course(course)
        if course_normalized == normalized:
            score = 100
        elif normalized and normalized in course_normalized:
            score = 80
        elif course_normalized and course_normalized in normalized:
            score = 70
        elif courses_match(course, target):
            score = 90
        else:
            continue
        suggestions.append(CourseSuggestion(course, score))

    return sorted(suggestions, key=lambda s: -s.score)
