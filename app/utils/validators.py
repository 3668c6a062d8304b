from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, status


MAX_PAGE_SIZE = 1000


def normalize_start_position(value: Optional[int]) -> int:
    if value is None or value < 1:
        return 1
    return value


def normalize_max_results(value: Optional[int], *, default: int = 100, limit: int = MAX_PAGE_SIZE) -> int:
    if value is None:
        return default
    if value < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="maxResults must be >= 1",
        )
    if value > limit:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"maxResults cannot exceed {limit}",
        )
    return value

