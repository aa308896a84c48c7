"""
huddle.engine.pagination — Page maths shared by list endpoints
===============================================================
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from huddle.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE


@dataclass(frozen=True, slots=True)
class PageRequest:
    page: int
    page_size: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def meta(self, total: int) -> dict:
        return {
            "total": total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": math.ceil(total / self.page_size) if total else 0,
        }


def page_request(page: int | None = 1, page_size: int | None = DEFAULT_PAGE_SIZE) -> PageRequest:
    """Clamp raw query values into a valid :class:`PageRequest`."""
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    return PageRequest(page=page, page_size=page_size)


def ranked(rows: list[dict], req: PageRequest) -> list[dict]:
    """Attach a 1-based ``rank`` continuing from the page offset."""
    return [{"rank": req.offset + i + 1, **row} for i, row in enumerate(rows)]
