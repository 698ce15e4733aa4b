"""Reusable parameter validators for path and query parameters."""

from typing import Annotated, Optional

from fastapi import Path, Query

from foodhub.core.config import settings

# Positive integer ID validator for path parameters
PositiveIntId = Annotated[int, Path(gt=0, description="Resource ID (must be positive)")]

# Optional positive int filter, e.g. ?restaurant_id=3
OptionalIdQuery = Annotated[Optional[int], Query(gt=0)]

PageNumber = Annotated[int, Query(ge=1, description="Page number, starting at 1")]
PerPage = Annotated[
    int,
    Query(ge=1, le=settings.order_per_page_max, description="Items per page"),
]
