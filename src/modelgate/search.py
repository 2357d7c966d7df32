from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from .metrics import enrichment_total

log = structlog.get_logger()

MAX_RESULTS = 5
MAX_CACHE_ENTRIES = 1024

_NEEDS_SEARCH_PATTERNS = [
    re.compile(p)
    for p in (
        r"\b(current|today|now|latest|recent|live|real[\s-]?time)\b",
        r"\b(price|cost|worth|value|rate|stock|market)\b",
        r"\b(weather|temperature|forecast|climate)\b",
        r"\b(news|happening|event|update|announcement)\b",
        r"\b(score|game|match|tournament|competition)\b",
        r"\b20(2[4-9]|[3-9]\d)\b",
        r"\bwhat\s+(is|are|was|were)\s+the\b",
        r"\bhow\s+(much|many|long|far|old)\s+(is|are|does|do)\b",
        r"\b(who|what|when|where|which)\s+.*\s+(win|won|winning|winner|elected|announced|released|launched)\b",
    )
]


def needs_web_search(query: str) -> bool:
    """Heuristic: does the query ask about something time-sensitive?"""
    lowered = query.lower()
    return any(p.search(lowered) for p in _NEEDS_SEARCH_PATTERNS)


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str
    snippet: str


class SearchEnricher(Protocol):
    async def enrich(self, query: str) -> str | None: ...


def render_results(query: str, results: list[SearchResult]) -> str:
    lines = [f'Web search results for "{query}":']
    for i, r in enumerate(results, start=1):
        lines.append(f"{i}. {r.title} ({r.url})\n   {r.snippet}")
    lines.append("Use these results where relevant and cite the URLs.")
    return "\n".join(lines)


def _json_object(resp: httpx.Response) -> dict[str, Any]:
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}.")
    return data


class WebSearchEnricher:
    """
    Tavily, then Brave, then SearXNG; first non-empty answer wins.

    Rendered context is cached per query for `cache_seconds`. Any provider
    failure falls through to the next one; when all fail the request simply
    goes out without enrichment.
    """

    def __init__(
        self,
        *,
        tavily_api_key: str | None = None,
        tavily_base_url: str = "https://api.tavily.com",
        brave_api_key: str | None = None,
        brave_base_url: str = "https://api.search.brave.com",
        searxng_enabled: bool = False,
        searxng_base_url: str = "http://localhost:8090",
        cache_seconds: int = 300,
        timeout_seconds: float = 3.5,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] | None = None,
        max_cache_entries: int = MAX_CACHE_ENTRIES,
    ):
        self._tavily_api_key = tavily_api_key
        self._tavily_base_url = tavily_base_url.rstrip("/")
        self._brave_api_key = brave_api_key
        self._brave_base_url = brave_base_url.rstrip("/")
        self._searxng_enabled = searxng_enabled
        self._searxng_base_url = searxng_base_url.rstrip("/")
        self._cache_seconds = cache_seconds
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._clock: Callable[[], float] = clock or time.monotonic
        self._cache: dict[str, tuple[str | None, float]] = {}
        self._max_cache_entries = max(1, max_cache_entries)

    @property
    def configured(self) -> bool:
        return bool(self._tavily_api_key or self._brave_api_key or self._searxng_enabled)

    async def close(self) -> None:
        await self._client.aclose()

    def _cached(self, query: str) -> tuple[bool, str | None]:
        hit = self._cache.get(query)
        if hit is None:
            return False, None
        value, stored_at = hit
        if self._clock() - stored_at >= self._cache_seconds:
            del self._cache[query]
            return False, None
        return True, value

    def cleanup_cache(self) -> None:
        now = self._clock()
        for key in [k for k, (_, at) in self._cache.items() if now - at >= self._cache_seconds]:
            del self._cache[key]

    def _store(self, query: str, value: str | None) -> None:
        self.cleanup_cache()
        while len(self._cache) >= self._max_cache_entries:
            # insertion order: first key is the oldest entry
            del self._cache[next(iter(self._cache))]
        self._cache[query] = (value, self._clock())

    async def enrich(self, query: str) -> str | None:
        query = query.strip()
        if not query or not self.configured or not needs_web_search(query):
            enrichment_total.labels(result="skipped").inc()
            return None

        hit, value = self._cached(query)
        if hit:
            enrichment_total.labels(result="cached").inc()
            return value

        results: list[SearchResult] = []
        used = "none"
        for name, enabled, search in (
            ("tavily", bool(self._tavily_api_key), self._search_tavily),
            ("brave", bool(self._brave_api_key), self._search_brave),
            ("searxng", self._searxng_enabled, self._search_searxng),
        ):
            if not enabled:
                continue
            try:
                results = await search(query)
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
                log.warning("search_provider_failed", provider=name, error=str(e))
                continue
            if results:
                used = name
                break

        rendered = render_results(query, results[:MAX_RESULTS]) if results else None
        enrichment_total.labels(result="hit" if rendered else "empty").inc()
        log.info("search_enrichment", provider=used, results=len(results))
        self._store(query, rendered)
        return rendered

    async def _search_tavily(self, query: str) -> list[SearchResult]:
        resp = await self._client.post(
            f"{self._tavily_base_url}/search",
            json={
                "api_key": self._tavily_api_key,
                "query": query,
                "search_depth": "basic",
                "include_answer": True,
                "include_raw_content": False,
                "max_results": MAX_RESULTS,
            },
        )
        resp.raise_for_status()
        data = _json_object(resp)
        return [SearchResult(r["title"], r["url"], r.get("content") or "") for r in data.get("results") or []]

    async def _search_brave(self, query: str) -> list[SearchResult]:
        resp = await self._client.get(
            f"{self._brave_base_url}/v1/web/search",
            params={"q": query, "count": MAX_RESULTS, "search_lang": "en"},
            headers={"X-Subscription-Token": self._brave_api_key or "", "Accept": "application/json"},
        )
        resp.raise_for_status()
        web = _json_object(resp).get("web") or {}
        if not isinstance(web, dict):
            raise ValueError("Brave response has no web section.")
        return [SearchResult(r["title"], r["url"], r.get("description") or "") for r in web.get("results") or []]

    async def _search_searxng(self, query: str) -> list[SearchResult]:
        resp = await self._client.get(
            f"{self._searxng_base_url}/search",
            params={"q": query, "format": "json", "safesearch": 1, "pageno": 1},
        )
        resp.raise_for_status()
        return [
            SearchResult(r["title"], r["url"], r.get("content") or "No content available")
            for r in (_json_object(resp).get("results") or [])[:MAX_RESULTS]
        ]
