"""
Feed reading collaborator.

The engine never parses RSS itself: activities talk to a FeedReader,
which turns a URL into a list of FeedItem records. HttpFeedReader is the
production implementation (httpx for transport, feedparser for parsing);
tests substitute an in-memory reader.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import feedparser
import httpx

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "rssflow/0.1 (+https://pypi.org/project/rssflow/)"


@dataclass(frozen=True)
class FeedItem:
    """One article record from a feed."""

    title: str | None
    link: str | None = None


class FeedError(Exception):
    """Raised when a feed cannot be fetched or parsed."""

    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url


@runtime_checkable
class FeedReader(Protocol):
    """Given a URL, return the feed's article records."""

    async def read(self, url: str) -> list[FeedItem]: ...


class HttpFeedReader:
    """
    Fetch feeds over HTTP and parse them with feedparser.

    Usage:
        async with HttpFeedReader() as reader:
            items = await reader.read("https://www.yahoo.com/news/rss")
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": user_agent},
        )

    async def read(self, url: str) -> list[FeedItem]:
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise FeedError(url, f"{type(e).__name__}: {e}") from e

        parsed = feedparser.parse(response.content)
        if parsed.bozo and not parsed.entries:
            raise FeedError(url, f"unparseable feed: {parsed.get('bozo_exception')}")

        items = [
            FeedItem(title=entry.get("title"), link=entry.get("link"))
            for entry in parsed.entries
        ]
        logger.debug(f"Read {len(items)} items from {url}")
        return items

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpFeedReader:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
