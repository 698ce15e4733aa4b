"""Standardized API response helpers.

Index endpoints return ``{"items": [...], "total": <int>}`` plus ``page``,
``per_page`` and ``last_page``.

Auth endpoints use the ``{"success", "message", "data"}`` envelope produced
by ``success_response``.
"""

import math
from typing import Any


def page_response(items: list, total: int, page: int, per_page: int) -> dict:
    """Wrap one page of results.

    Args:
        items: The page of serialized items.
        total: Total count across all pages.
        page: 1-based page number that was requested.
        per_page: Page size requested.
    """
    return {
        "items": items,
        "total": total,
        "page": page,
        "per_page": per_page,
        "last_page": max(1, math.ceil(total / per_page)) if per_page else 1,
    }


def paginate(query, page: int, per_page: int):
    """Apply page/per_page to a SQLAlchemy query; returns (items, total)."""
    total = query.count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return items, total


def success_response(message: str, data: Any = None) -> dict:
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return body
