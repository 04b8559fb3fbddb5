"""Page arithmetic over an ordered investor list.

The core never enumerates investors itself; callers use these helpers to cut
their list into pages and to decide which page closes the day.
"""

from __future__ import annotations

from typing import Sequence, Tuple, TypeVar

from .errors import InvalidPage

T = TypeVar("T")


def _validate(page: int, page_size: int) -> None:
    if page < 1:
        raise InvalidPage(page=page)
    if page_size < 1:
        raise InvalidPage(f"Page size must be positive, got {page_size}", page_size=page_size)


def page_bounds(page: int, page_size: int) -> Tuple[int, int]:
    """Half-open ``(start, end)`` indices of a 1-indexed page."""

    _validate(page, page_size)
    start = (page - 1) * page_size
    return start, start + page_size


def is_last_page(page: int, page_size: int, total_accounts: int) -> bool:
    _, end = page_bounds(page, page_size)
    return end >= total_accounts


def page_length(page: int, page_size: int, total_accounts: int) -> int:
    """Number of records that fall on ``page``."""

    start, end = page_bounds(page, page_size)
    if start >= total_accounts:
        return 0
    return min(end, total_accounts) - start


def page_count(total_accounts: int, page_size: int) -> int:
    if page_size < 1:
        raise InvalidPage(f"Page size must be positive, got {page_size}", page_size=page_size)
    if total_accounts <= 0:
        return 0
    return (total_accounts + page_size - 1) // page_size


def slice_page(items: Sequence[T], page: int, page_size: int) -> Sequence[T]:
    start, end = page_bounds(page, page_size)
    return items[start:end]


__all__ = ["page_bounds", "is_last_page", "page_length", "page_count", "slice_page"]
