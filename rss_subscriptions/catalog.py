"""Offset-cursor pagination over the external feed catalog search."""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence, Tuple, Union

from .models import (
    FeedCatalogEntry,
    FeedEdge,
    FeedsError,
    FeedsErrorCode,
    FeedsSuccess,
    PageInfo,
    SortBy,
    SortOrder,
    Sort,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


class FeedSearch(Protocol):
    def search_feeds(
        self,
        query: str,
        limit: int,
        offset: int,
        sort_by: Optional[SortBy] = None,
        sort_order: Optional[SortOrder] = None,
    ) -> Tuple[Sequence[FeedCatalogEntry], int]:
        """Return one window of matching feeds and the total match count."""


def decode_cursor(cursor: Optional[str]) -> int:
    """Cursors are the decimal offset of the first unseen entry."""
    if cursor and cursor.isdigit():
        return int(cursor)
    return 0


def clamp_page_size(first: Optional[int]) -> int:
    if first is None:
        return DEFAULT_PAGE_SIZE
    return max(0, min(first, MAX_PAGE_SIZE))


def paginate_feeds(
    search: FeedSearch,
    query: str = "",
    first: Optional[int] = None,
    after: Optional[str] = None,
    sort: Optional[Sort] = None,
) -> Union[FeedsSuccess, FeedsError]:
    """Return one page of catalog feeds starting at the ``after`` cursor."""
    start_cursor = after or ""
    start = decode_cursor(start_cursor)
    page_size = clamp_page_size(first)

    try:
        # One extra entry tells us whether a next page exists.
        entries, total_count = search.search_feeds(
            query or "",
            page_size + 1,
            start,
            sort.by if sort else None,
            sort.order if sort else None,
        )
    except Exception:
        logger.exception("Error fetching feeds for query %r", query)
        return FeedsError([FeedsErrorCode.BAD_REQUEST])

    entries = list(entries)
    has_next_page = len(entries) > page_size
    end_cursor = str(start + len(entries) - (1 if has_next_page else 0))
    if has_next_page:
        entries.pop()

    # Edges share the page's end cursor; resuming is only possible at page boundaries.
    edges = [FeedEdge(node=entry, cursor=end_cursor) for entry in entries]
    logger.debug(
        "Feed page at offset %d: %d entries, next page %s", start, len(edges), has_next_page
    )

    return FeedsSuccess(
        edges=edges,
        page_info=PageInfo(
            has_previous_page=start > 0,
            has_next_page=has_next_page,
            start_cursor=start_cursor,
            end_cursor=end_cursor,
            total_count=total_count,
        ),
    )
