"""
Page assembly for platform list endpoints.

Two modes, both routed through the ApiExecutionQueue:
- offset paging for plain list endpoints (offset/limit)
- cursor paging for the search API (sorted by id, "search after" the last id)
"""

import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from fusion.core.api_queue import ApiExecutionQueue, QueuePriority

logger = logging.getLogger(__name__)

PLATFORM_MAX_PAGE_SIZE = 250

OffsetFetch = Callable[[int, int], Awaitable[Optional[List[Dict[str, Any]]]]]
SearchFetch = Callable[
    [int, Optional[List[str]], bool], Awaitable[Optional[List[Dict[str, Any]]]]
]


class Paginator:
    """
    Collects every page of a list or search endpoint.

    A page whose request ultimately fails is treated as empty, which ends
    pagination; the failure is logged and whatever was collected so far is
    returned.
    """

    def __init__(
        self,
        queue: Optional[ApiExecutionQueue] = None,
        page_size: int = PLATFORM_MAX_PAGE_SIZE,
        priority: QueuePriority = QueuePriority.NORMAL,
    ):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.queue = queue
        self.page_size = min(page_size, PLATFORM_MAX_PAGE_SIZE)
        self.priority = priority

    async def _fetch(self, call: Callable[[], Awaitable[Any]], context: str) -> List[Dict[str, Any]]:
        try:
            if self.queue is not None:
                page = await self.queue.enqueue(call, priority=self.priority, context=context)
            else:
                page = await call()
        except Exception as e:
            logger.error(f"Failed to fetch page for {context}: {e}")
            return []
        return list(page or [])

    # =========================================================================
    # Offset mode
    # =========================================================================

    async def iter_pages(
        self,
        fetch_page: OffsetFetch,
        limit: Optional[int] = None,
        context: str = "paginate",
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Yield successive offset pages.

        Args:
            fetch_page: Coroutine function taking (offset, limit)
            limit: Total number of items wanted; None for everything
            context: Operation name for logs

        Yields:
            Lists of items, trimmed so the total never exceeds limit
        """
        offset = 0
        collected = 0

        while True:
            request_size = self.page_size
            if limit is not None:
                remaining = limit - collected
                if remaining <= 0:
                    return
                request_size = min(request_size, remaining)

            page = await self._fetch(
                lambda o=offset, n=request_size: fetch_page(o, n), f"{context}[offset={offset}]"
            )
            if not page:
                return

            if limit is not None and collected + len(page) > limit:
                page = page[: limit - collected]

            collected += len(page)
            yield page

            if len(page) < request_size:
                return
            offset += len(page)

    async def paginate(
        self,
        fetch_page: OffsetFetch,
        limit: Optional[int] = None,
        context: str = "paginate",
    ) -> List[Dict[str, Any]]:
        """Collect all offset pages into one list."""
        items: List[Dict[str, Any]] = []
        async for page in self.iter_pages(fetch_page, limit=limit, context=context):
            items.extend(page)
        logger.debug(f"{context}: fetched {len(items)} items")
        return items

    # =========================================================================
    # Cursor ("search after") mode
    # =========================================================================

    async def paginate_search(
        self,
        search: SearchFetch,
        context: str = "search",
        id_field: str = "id",
    ) -> List[Dict[str, Any]]:
        """
        Collect every page of a search sorted by a stable id field.

        Args:
            search: Coroutine function taking (limit, search_after, count).
                The first call passes search_after=None and count=True.
            context: Operation name for logs
            id_field: Field used as the cursor

        Returns:
            All items in cursor order
        """
        items: List[Dict[str, Any]] = []
        search_after: Optional[List[str]] = None
        first = True

        while True:
            page = await self._fetch(
                lambda after=search_after, count=first: search(self.page_size, after, count),
                f"{context}[after={search_after[0] if search_after else '-'}]",
            )
            first = False
            items.extend(page)

            if len(page) < self.page_size:
                break
            last_id = page[-1].get(id_field) if isinstance(page[-1], dict) else None
            if not last_id:
                logger.warning(f"{context}: last item has no '{id_field}', stopping")
                break
            search_after = [last_id]

        logger.debug(f"{context}: fetched {len(items)} items")
        return items
