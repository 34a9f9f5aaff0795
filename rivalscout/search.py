from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from duckduckgo_search import DDGS
from duckduckgo_search.exceptions import DuckDuckGoSearchException, RatelimitException
from tavily import AsyncTavilyClient

from rivalscout.config import ConfigError, Settings

log = logging.getLogger(__name__)


class SearchError(Exception):
    """A search provider call failed."""


@dataclass
class SearchResult:
    title: str
    url: str
    snippet: str | None = None
    published_at: datetime | None = None
    source: str | None = None


class SearchProvider(Protocol):
    name: str

    async def search(self, query: str, *, num: int = 10, freshness_days: int | None = None) -> list[SearchResult]: ...


def _parse_date(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.replace(tzinfo=None) if parsed.tzinfo else parsed


def _window(freshness_days: int | None, buckets: list[tuple[int, str]]) -> str | None:
    if not freshness_days:
        return None
    for limit, label in buckets:
        if freshness_days <= limit:
            return label
    return None


# ---------------------------------------------------------------------------
# DuckDuckGo throttle
# ---------------------------------------------------------------------------


class SearchThrottle:
    """Spacing between DuckDuckGo calls, doubled on every rate-limit response.

    Shared by all ``DuckDuckGoSearch`` instances in the process so that runs
    started in parallel by the scheduler still queue behind one another.
    """

    def __init__(self, min_delay: float = 2.0, max_delay: float = 120.0):
        self._lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.delay = min_delay
        self._last_call = 0.0

    def _loop_lock(self) -> asyncio.Lock:
        # asyncio.Lock binds to the first loop that waits on it; each asyncio.run gets its own.
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def wait_turn(self) -> None:
        async with self._loop_lock():
            remaining = self.delay - (time.monotonic() - self._last_call)
            if remaining > 0:
                log.debug("DuckDuckGo throttle: sleeping %.1fs", remaining)
                await asyncio.sleep(remaining)
            self._last_call = time.monotonic()

    def slow_down(self) -> None:
        self.delay = min(self.delay * 2, self.max_delay)
        log.warning("DuckDuckGo rate limited; next calls spaced %.0fs apart", self.delay)

    def recover(self) -> None:
        self.delay = self.min_delay


_ddg_throttle = SearchThrottle()


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class DuckDuckGoSearch:
    """Key-less web search.  One retry after a rate-limit backoff."""

    name = "duckduckgo"

    def __init__(self, throttle: SearchThrottle | None = None):
        self._throttle = throttle or _ddg_throttle

    @staticmethod
    def _text(query: str, num: int, timelimit: str | None) -> list[dict]:
        with DDGS() as ddgs:
            return ddgs.text(query, max_results=num, timelimit=timelimit) or []

    async def search(self, query: str, *, num: int = 10, freshness_days: int | None = None) -> list[SearchResult]:
        timelimit = _window(freshness_days, [(1, "d"), (7, "w"), (31, "m"), (366, "y")])
        raw: list[dict] = []
        for attempt in range(2):
            await self._throttle.wait_turn()
            try:
                raw = await asyncio.to_thread(self._text, query, num, timelimit)
                self._throttle.recover()
                break
            except RatelimitException:
                self._throttle.slow_down()
                if attempt == 1:
                    raise SearchError(f"DuckDuckGo rate limited after retry: {query!r}")
            except DuckDuckGoSearchException as exc:
                raise SearchError(f"DuckDuckGo search failed: {exc}") from exc
        return [
            SearchResult(
                title=r.get("title", ""),
                url=r.get("href", ""),
                snippet=r.get("body"),
                source=self.name,
            )
            for r in raw
            if r.get("href")
        ]


class TavilySearch:
    name = "tavily"

    def __init__(self, api_key: str):
        self._client = AsyncTavilyClient(api_key=api_key)

    async def search(self, query: str, *, num: int = 10, freshness_days: int | None = None) -> list[SearchResult]:
        kwargs: dict[str, Any] = {
            "query": query,
            "search_depth": "basic",
            "max_results": num,
            "topic": "general",
        }
        time_range = _window(freshness_days, [(1, "day"), (7, "week"), (31, "month"), (366, "year")])
        if time_range:
            kwargs["time_range"] = time_range
        try:
            response = await self._client.search(**kwargs)
        except Exception as exc:
            raise SearchError(f"Tavily search failed: {exc}") from exc
        return [
            SearchResult(
                title=r.get("title", ""),
                url=r.get("url", ""),
                snippet=r.get("content"),
                published_at=_parse_date(r.get("published_date")),
                source=self.name,
            )
            for r in response.get("results", [])
            if r.get("url")
        ]


def make_search(settings: Settings) -> SearchProvider:
    provider = settings.search_provider or "duckduckgo"
    if provider == "tavily":
        if not settings.tavily_api_key:
            raise ConfigError("Tavily search selected but TAVILY_API_KEY is not set")
        return TavilySearch(settings.tavily_api_key)
    if provider == "duckduckgo":
        return DuckDuckGoSearch()
    raise ConfigError(f"Unknown search provider: {provider!r}")
