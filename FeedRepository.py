"""
FeedRepository — content sources that FeedManager can page through.

HttpContentRepository talks to the platform's feed endpoint:

    GET {base_url}/{path}?offset=30&limit=15&sort=newest&time_range=all[&post_type=audio][&q=lofi]

    200 {"items": [...], "totalCount": 120, "hasMore": true}

and maps every failure onto the FeedFetchError hierarchy, so callers never
see a raw httpx exception.

InMemoryRepository serves a fixed dataset with the same filter semantics as
the client-side overlay. The CLI and the inspection server use it for local
JSON files; tests use it as a well-behaved content store.

Usage:
    repo = HttpContentRepository("https://api.example.com/v1", path="posts",
                                 headers={"Authorization": f"Bearer {token}"})
    page = await repo.fetch_page(FilterOptions(), None, offset=0, limit=15)
    await repo.aclose()
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Callable

import httpx

from feed_config import CACHE_TTL, REQUEST_TIMEOUT
from FeedCache import FeedCache, make_key
from FeedExceptions import (
    FeedAuthError,
    FeedConnectionError,
    FeedParseError,
    FeedPermissionError,
    FeedRateLimitError,
    FeedServerError,
    FeedTimeoutError,
    FeedValidationError,
)
from FeedOverlay import apply_filters
from FeedState import FilterOptions, ResultSet
from FeedTypes import PageResponse

log = logging.getLogger("feedpager.repository")

_DEFAULT_HEADERS = {
    "Accept":     "application/json",
    "User-Agent": "feed-pager/1.0",
}

SEARCH_FIELDS = ("title", "content", "description", "caption", "author")


def _timeout(read: float) -> httpx.Timeout:
    return httpx.Timeout(connect=8.0, read=read, write=8.0, pool=5.0)


def build_params(filters: FilterOptions, search_query: str | None, offset: int, limit: int) -> dict:
    params = {
        "offset":     offset,
        "limit":      limit,
        "sort":       filters.sort_by.value,
        "time_range": filters.time_window.value,
    }
    if filters.content_kind != "all":
        params["post_type"] = filters.content_kind
    if search_query:
        params["q"] = search_query
    return params


def parse_page(status: int, body: bytes, headers: httpx.Headers | dict | None = None) -> PageResponse:
    """Turn an HTTP status + body into a PageResponse, or raise the matching FeedFetchError."""
    headers = headers or {}
    if status == 401:
        raise FeedAuthError("Content store rejected the session (HTTP 401)", status_code=status)
    if status == 403:
        raise FeedPermissionError("Content store denied access (HTTP 403)", status_code=status)
    if status == 429:
        raw = headers.get("retry-after") or headers.get("Retry-After")
        try:
            retry_after = int(raw) if raw is not None else 60
        except ValueError:
            retry_after = 60
        raise FeedRateLimitError(retry_after=retry_after, status_code=status)
    if status >= 500:
        raise FeedServerError(f"Content store error (HTTP {status})", status_code=status)
    if status != 200:
        raise FeedServerError(f"Unexpected HTTP {status} from content store", status_code=status)

    try:
        data = json.loads(body)
    except ValueError:
        raise FeedParseError(f"Content store returned non-JSON: {body[:200]!r}", raw=body, status_code=status) from None

    if not isinstance(data, dict):
        raise FeedValidationError(f"Expected a JSON object, got {type(data).__name__}", status_code=status)

    items = data.get("items")
    total = data.get("totalCount", data.get("total_count"))
    more  = data.get("hasMore", data.get("has_more"))

    if not isinstance(items, list) or not all(isinstance(i, dict) and "id" in i for i in items):
        raise FeedValidationError("'items' must be a list of objects with an 'id'", status_code=status)
    if not isinstance(total, int) or isinstance(total, bool) or total < 0:
        raise FeedValidationError(f"'totalCount' must be a non-negative integer, got {total!r}", status_code=status)
    if not isinstance(more, bool):
        raise FeedValidationError(f"'hasMore' must be a boolean, got {more!r}", status_code=status)

    return {"items": items, "total_count": total, "has_more": more}


# ── HTTP ───────────────────────────────────────────────────────────────────────

class HttpContentRepository:
    """
    Async content repository over HTTP.

    Args:
        base_url: API root, e.g. "https://api.example.com/v1".
        path:     Feed endpoint under base_url (default "posts").
        headers:  Extra headers, typically Authorization.
        timeout:  Read timeout per page request in seconds.
        cache_ttl: Page cache TTL; 0 disables caching (de-dup still applies).
        proxy:    Optional HTTP proxy URL.
        client:   Pre-built httpx.AsyncClient (tests, shared pools). When omitted
                  a client is opened per request, which keeps the repository
                  usable from short-lived event loops (see server.py).
    """

    def __init__(
        self,
        base_url: str,
        path: str = "posts",
        headers: dict | None = None,
        timeout: float = REQUEST_TIMEOUT,
        cache_ttl: int = CACHE_TTL,
        proxy: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        if not base_url:
            raise ValueError("base_url is required")
        self.url      = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
        self.headers  = {**_DEFAULT_HEADERS, **(headers or {})}
        self.timeout  = timeout
        self.proxy    = proxy
        self.cache    = FeedCache(ttl=cache_ttl)
        self._client  = client

    async def fetch_page(
        self,
        filters: FilterOptions,
        search_query: str | None,
        offset: int,
        limit: int,
    ) -> PageResponse:
        params = build_params(filters, search_query, offset, limit)
        key    = make_key(self.url, params)
        return await self.cache.get_or_fetch(key, lambda: self._request(params))

    async def _request(self, params: dict) -> PageResponse:
        log.debug(f"GET {self.url} params={params}")
        try:
            if self._client is not None:
                r = await self._client.get(self.url, params=params, headers=self.headers)
            else:
                async with httpx.AsyncClient(
                    proxy=self.proxy,
                    timeout=_timeout(self.timeout),
                    follow_redirects=True,
                ) as client:
                    r = await client.get(self.url, params=params, headers=self.headers)
        except httpx.TimeoutException as e:
            log.warning(f"Page request timed out after {self.timeout}s: {e}")
            raise FeedTimeoutError(timeout=self.timeout) from e
        except httpx.ProxyError as e:
            log.warning(f"Proxy error fetching page: {e}")
            raise FeedConnectionError(f"Proxy error: {e}") from e
        except httpx.TransportError as e:
            log.warning(f"Transport error fetching page: {e}")
            raise FeedConnectionError(f"Could not reach content store: {e}") from e

        log.debug(f"GET {self.url} -> HTTP {r.status_code} ({len(r.content)} bytes)")
        return parse_page(r.status_code, r.content, r.headers)

    def invalidate(self) -> None:
        """Forget cached pages; FeedManager.load_initial() calls this before a refresh."""
        dropped = self.cache.clear()
        if dropped:
            log.debug(f"Dropped {dropped} cached page(s) for {self.url}")

    async def aclose(self) -> None:
        self.cache.clear()
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpContentRepository":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


# ── In-memory ──────────────────────────────────────────────────────────────────

def matches_query(item: dict, query: str) -> bool:
    needle = query.casefold()
    for field_name in SEARCH_FIELDS:
        value = item.get(field_name)
        if isinstance(value, str) and needle in value.casefold():
            return True
    return False


class InMemoryRepository:
    """
    Serves pages out of a list of item dicts, applying filters and search the
    way a well-behaved content store would.

    Args:
        items:   The full dataset, in server order.
        latency: Seconds to sleep per fetch (simulates the network).
        clock:   Wall-clock seconds for time-window filters.
    """

    def __init__(self, items: list[dict], latency: float = 0.0, clock: Callable[[], float] | None = None):
        self._items   = tuple(items)
        self._latency = latency
        self._clock   = clock
        self.calls: list[dict] = []

    @classmethod
    def from_json_file(cls, path: str, **kwargs) -> "InMemoryRepository":
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
        if isinstance(data, dict):
            data = data.get("items", [])
        if not isinstance(data, list):
            raise ValueError(f"{path}: expected a list of items or {{\"items\": [...]}}")
        return cls(data, **kwargs)

    def __len__(self) -> int:
        return len(self._items)

    def _now(self) -> datetime:
        if self._clock is None:
            return datetime.now(timezone.utc)
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def matching(self, filters: FilterOptions, search_query: str | None) -> tuple:
        items = self._items
        if search_query:
            items = tuple(i for i in items if matches_query(i, search_query))
        return apply_filters(items, filters, self._now())

    def search(self, query: str, filters: FilterOptions | None = None) -> ResultSet:
        """The search-builder side: ranked ids of every match for query."""
        hits = self.matching(filters or FilterOptions(), query)
        return ResultSet.from_ids(i["id"] for i in hits)

    async def fetch_page(
        self,
        filters: FilterOptions,
        search_query: str | None,
        offset: int,
        limit: int,
    ) -> PageResponse:
        self.calls.append({
            "filters": filters.to_dict(), "q": search_query, "offset": offset, "limit": limit,
        })
        if self._latency:
            await asyncio.sleep(self._latency)
        matching = self.matching(filters, search_query)
        page     = matching[offset:offset + limit]
        return {
            "items":       list(page),
            "total_count": len(matching),
            "has_more":    offset + len(page) < len(matching),
        }
