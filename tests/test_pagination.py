"""
tests/test_pagination.py — Paging, Leveling and Text Cleaning Helpers
======================================================================
"""

from __future__ import annotations

import pytest

from huddle.constants import (
    MAX_PAGE_SIZE,
    clean_text,
    level_for_points,
    points_for_level,
)
from huddle.engine.pagination import PageRequest, page_request, ranked
from huddle.errors import ServiceError


class TestPageRequest:
    def test_offset_and_meta(self):
        req = PageRequest(page=3, page_size=10)
        assert req.offset == 20
        assert req.meta(45) == {"total": 45, "page": 3, "page_size": 10, "total_pages": 5}

    def test_empty_total_has_zero_pages(self):
        assert PageRequest(1, 20).meta(0)["total_pages"] == 0

    def test_clamps_raw_values(self):
        assert page_request(0, 0) == PageRequest(1, 20)
        assert page_request(-5, 10_000) == PageRequest(1, MAX_PAGE_SIZE)
        assert page_request(None, None) == PageRequest(1, 20)

    def test_ranked_continues_from_offset(self):
        rows = ranked([{"user_id": 7}, {"user_id": 8}], PageRequest(2, 10))
        assert [r["rank"] for r in rows] == [11, 12]
        assert rows[0]["user_id"] == 7


class TestLevelFormula:
    def test_points_per_level(self):
        assert points_for_level(1) == 100
        assert points_for_level(2) == 150
        assert points_for_level(3) == 225

    @pytest.mark.parametrize(
        "points, level",
        [(0, 1), (99, 1), (100, 2), (249, 2), (250, 3), (475, 4), (-10, 1)],
    )
    def test_level_for_points(self, points, level):
        assert level_for_points(points) == level


class TestCleanText:
    def test_strips_markup_and_whitespace(self):
        assert clean_text("  <b>Hello</b> world \x07", 50) == "Hello world"

    def test_required_empty_rejected(self):
        with pytest.raises(ServiceError) as exc_info:
            clean_text("<p></p>", 10, field="title")
        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "title is required"

    def test_optional_empty_is_none(self):
        assert clean_text("   ", 10, required=False) is None
        assert clean_text(None, 10, required=False) is None

    def test_too_long_rejected(self):
        with pytest.raises(ServiceError, match="at most 5 characters"):
            clean_text("abcdefg", 5, field="name")
