"""
Rate-limited pagination over cursor-based platform listings.
"""
import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

PageT = TypeVar("PageT")


class RateLimitedPager(Generic[PageT]):
    """
    Lazy, finite, forward-only sequence of pages.

    ``fetch_page`` is called with the previous page's ``next_page_token``
    (None for the first page). Fetching each page after the first waits
    ``min_interval`` seconds, keeping a listing within the platform's rate
    budget. Iteration stops when a page carries no token, when the platform
    repeats a token, or after ``max_pages``.
    """

    def __init__(self, fetch_page: Callable[[Optional[str]], Awaitable[PageT]],
                 min_interval: float = 0.0, max_pages: Optional[int] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.fetch_page = fetch_page
        self.min_interval = min_interval
        self.max_pages = max_pages
        self.sleep = sleep
        self.pages_fetched = 0

    def __aiter__(self) -> AsyncIterator[PageT]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[PageT]:
        page_token: Optional[str] = None
        seen_tokens = set()

        while True:
            page = await self.fetch_page(page_token)
            self.pages_fetched += 1
            yield page

            page_token = getattr(page, "next_page_token", None)
            if not page_token:
                return
            if page_token in seen_tokens:
                logger.warning(f"Platform repeated page token {page_token!r}, stopping pagination")
                return
            seen_tokens.add(page_token)
            if self.max_pages is not None and self.pages_fetched >= self.max_pages:
                logger.warning(f"Stopping pagination after {self.pages_fetched} pages")
                return

            if self.min_interval > 0:
                await self.sleep(self.min_interval)
