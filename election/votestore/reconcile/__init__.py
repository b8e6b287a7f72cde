"""
Reconcile module for VoteStore - per-course student status.

This module handles:
- Course roster loading with flexible course name matching
- Cross-referencing student documents with the vote log
- The optimistic per-course status cache (own SQLite file)
- Tutor mutations (voted, absent, present) applied cache-first
- Background revalidation that repairs cache drift

Invariants:
    - Absent students are never flipped to voted by a vote record
    - Store-derived records win over cached ones; cache-only records and
      records waiting on a pending write stay
    - Reconciliation is idempotent

How to change safely:
    - Keep merge and repair free of side effects on other courses
    - Add new status sources as extra steps in ReconciliationEngine
"""

from .course_matching import (
    CourseSuggestion,
    courses_match,
    find_matching_course,
    normalize_course,
    suggest_courses,
)
from .engine import CourseLoadResult, MutationResult, ReconciliationEngine
from .models import SessionContext, StudentStatus, StudentStatusRecord, VoteRecord
from .session_cache import Correction, CourseSessionCache, OptimisticCacheStore, PendingWrite

__all__ = [
    "CourseSuggestion",
    "courses_match",
    "find_matching_course",
    "normalize_course",
    "suggest_courses",
    "CourseLoadResult",
    "MutationResult",
    "ReconciliationEngine",
    "SessionContext",
    "StudentStatus",
    "StudentStatusRecord",
    "VoteRecord",
    "Correction",
    "CourseSessionCache",
    "OptimisticCacheStore",
    "PendingWrite",
]
