"""
Unit tests for flexible course matching.
"""

import pytest

from election.votestore.reconcile.course_matching import (
    courses_match,
    find_matching_course,
    normalize_course,
    suggest_courses,
)


class TestNormalizeCourse:
    """Tests for normalize_course."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("8vo A", "8vo a"),
            ("  Octavo   A ", "8vo a"),
            ("Primero de Bachillerato A", "1ro bach a"),
            ("Primero Bach. A", "1ro bach a"),
            ("Decimo B", "10mo b"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize(self, name, expected):
        assert normalize_course(name) == expected


class TestCoursesMatch:
    """Tests for courses_match."""

    def test_spelled_out_ordinal(self):
        assert courses_match("8vo A", "Octavo A")

    def test_bachillerato_variants(self):
        assert courses_match("1ro Bach A", "Primero de Bachillerato A")

    def test_ero_suffix(self):
        assert courses_match("1ero A", "1ro A")

    def test_different_section(self):
        assert not courses_match("8vo A", "8vo B")

    def test_different_grade(self):
        assert not courses_match("1ro Bach A", "2do Bach A")

    def test_empty(self):
        assert not courses_match("", "8vo A")
        assert not courses_match(None, None)


class TestFindMatchingCourse:
    """Tests for find_matching_course."""

    def test_exact_match_preferred(self):
        candidates = ["Octavo A", "8vo A"]

        assert find_matching_course("8VO a", candidates) == "8vo A"

    def test_flexible_match(self):
        assert find_matching_course("Primero Bach A", ["1ro Bach B", "1ro Bach A"]) == "1ro Bach A"

    def test_no_match(self):
        assert find_matching_course("9no C", ["8vo A", "1ro Bach A"]) is None
        assert find_matching_course("", ["8vo A"]) is None
        assert find_matching_course("8vo A", None) is None


class TestSuggestCourses:
    """Tests for suggest_courses."""

    def test_ranking(self):
        suggestions = suggest_courses("8vo A", ["Octavo A", "8vo A", "8vo A Matutina", "8vo", "5to C"])

        assert [s.course for s in suggestions] == ["Octavo A", "8vo A", "8vo A Matutina", "8vo"]
        assert [s.score for s in suggestions] == [100, 100, 80, 70]

    def test_flexible_only_match_scores_90(self):
        suggestions = suggest_courses("1ero A", ["1ro A"])

        assert suggestions[0].score == 90
