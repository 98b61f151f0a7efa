"""Filtering, sorting and pagination over positions, orders or trade records.

All functions here are pure: they never modify their input and always
return new lists.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Iterable, List, Optional, Sequence, TypeVar

from .models import Side

T = TypeVar('T')

# Attributes tried, in order, when filtering on a date range
DATE_FIELDS = ('open_time', 'created_at', 'close_time')


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class Filters:
    """Conjunction of optional predicates; ``None`` disables a predicate."""
    symbol: Optional[str] = None
    side: Optional[Side] = None
    min_volume: Optional[float] = None
    max_volume: Optional[float] = None
    min_pnl: Optional[float] = None
    max_pnl: Optional[float] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


@dataclass(frozen=True)
class SortOrder:
    key: str = 'open_time'
    direction: SortDirection = SortDirection.DESC


@dataclass(frozen=True)
class PageRequest:
    page: int = 1
    page_size: int = 10


@dataclass(frozen=True)
class QueryResult(Generic[T]):
    items: List[T] = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = 10
    total_pages: int = 0


def _date_of(item: Any) -> Optional[datetime]:
    for name in DATE_FIELDS:
        value = getattr(item, name, None)
        if value is not None:
            return value
    return None


def matches(item: Any, filters: Filters) -> bool:
    """Check a single item against every set filter."""
    if filters.symbol is not None:
        if filters.symbol.lower() not in item.symbol.lower():
            return False

    if filters.side is not None and item.side != filters.side:
        return False

    if filters.min_volume is not None and item.volume < filters.min_volume:
        return False
    if filters.max_volume is not None and item.volume > filters.max_volume:
        return False

    if filters.min_pnl is not None or filters.max_pnl is not None:
        pnl = getattr(item, 'pnl', None)
        if pnl is None:
            return False
        if filters.min_pnl is not None and pnl < filters.min_pnl:
            return False
        if filters.max_pnl is not None and pnl > filters.max_pnl:
            return False

    if filters.date_from is not None or filters.date_to is not None:
        when = _date_of(item)
        if when is None:
            return False
        if filters.date_from is not None and when < filters.date_from:
            return False
        if filters.date_to is not None and when > filters.date_to:
            return False

    return True


def filter_items(items: Iterable[T], filters: Optional[Filters]) -> List[T]:
    if filters is None:
        return list(items)
    return [item for item in items if matches(item, filters)]


def _id_of(item: Any) -> str:
    return str(getattr(item, 'id', None) or getattr(item, 'position_id', ''))


def sort_items(items: Sequence[T], sort: Optional[SortOrder]) -> List[T]:
    """
    Sort items by a named attribute.

    Ties are broken by id (ascending) so that repeated calls paginate
    identically. Items whose sort value is ``None`` always come last.

    Raises:
        ValueError: If the items have no attribute named ``sort.key``
    """
    ordered = sorted(items, key=_id_of)
    if sort is None:
        return ordered

    if ordered and not hasattr(ordered[0], sort.key):
        raise ValueError(f"Unknown sort field: {sort.key}")

    present = [item for item in ordered if getattr(item, sort.key) is not None]
    missing = [item for item in ordered if getattr(item, sort.key) is None]

    # sorted() is stable for reverse=True as well, so the id order survives
    present = sorted(
        present,
        key=lambda item: getattr(item, sort.key),
        reverse=sort.direction is SortDirection.DESC
    )
    return present + missing


def paginate(items: Sequence[T], page: Optional[PageRequest]) -> QueryResult[T]:
    """
    Slice one page out of already filtered and sorted items.

    The requested page is clamped to [1, total_pages].

    Raises:
        ValueError: If page_size is not positive
    """
    page = page or PageRequest()
    if page.page_size < 1:
        raise ValueError(f"page_size must be at least 1, got {page.page_size}")

    total_count = len(items)
    total_pages = math.ceil(total_count / page.page_size)
    current = min(max(page.page, 1), max(total_pages, 1))

    start = (current - 1) * page.page_size
    return QueryResult(
        items=list(items[start:start + page.page_size]),
        total_count=total_count,
        page=current,
        page_size=page.page_size,
        total_pages=total_pages
    )


def apply(
    items: Iterable[T],
    filters: Optional[Filters] = None,
    sort: Optional[SortOrder] = None,
    page: Optional[PageRequest] = None
) -> QueryResult[T]:
    """
    Filter, sort and paginate in one call.

    Args:
        items: Positions, orders or trade records
        filters: Predicates to AND together (None for all items)
        sort: Sort field and direction (None for id order)
        page: Page number and size (default first page of 10)

    Returns:
        QueryResult with the page slice and the filtered total count
    """
    filtered = filter_items(items, filters)
    return paginate(sort_items(filtered, sort), page)
