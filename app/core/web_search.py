"""Web search service and the `web_search` tool exposed to the executor model.

Order of operations per search: sanitize -> cap n -> cache -> tenant rate
limit -> provider -> domain filter -> URL dedupe -> truncate -> cache.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

from app.core.config import Settings, get_settings
from app.core.exceptions import WebSearchDisabledError, WebSearchRateLimitError
from app.core.logging import get_logger
from app.core.rate_limiter import RateLimiter, SharedInstances, TTLCache, build_cache_key
from app.core.search_providers import (
    SearchProvider,
    WebSearchResponse,
    WebSearchResult,
    get_search_provider,
)

logger = get_logger(__name__)

MAX_QUERY_LENGTH = 500
MAX_RESULTS_CAP = 10

WebSearchFn = Callable[[str, int, str, str], Awaitable[list[WebSearchResult]]]


def sanitize_query(query: str) -> str:
    """
    Trim and collapse whitespace.

    Raises:
        ValueError: Empty query or longer than 500 chars
    """
    cleaned = " ".join((query or "").split())
    if not cleaned:
        raise ValueError("Search query cannot be empty")
    if len(cleaned) > MAX_QUERY_LENGTH:
        raise ValueError(f"Search query too long (max {MAX_QUERY_LENGTH} chars)")
    return cleaned


def _hostname(url: str) -> str | None:
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    return parsed.hostname.lower()


def filter_by_domain(
    results: list[WebSearchResult],
    blocklist: list[str],
    allowlist: list[str],
) -> list[WebSearchResult]:
    """Drop blocked hosts, keep only allowed hosts when an allowlist is set, drop bad URLs."""
    kept = []
    for result in results:
        host = _hostname(result.url)
        if host is None:
            continue
        if any(blocked in host for blocked in blocklist):
            continue
        if allowlist and not any(allowed in host for allowed in allowlist):
            continue
        kept.append(result)
    return kept


def dedupe_urls(results: list[WebSearchResult]) -> list[WebSearchResult]:
    """First occurrence wins; URLs compared lowercased without trailing slashes."""
    seen: set[str] = set()
    unique = []
    for result in results:
        key = result.url.lower().rstrip("/")
        if key in seen:
            continue
        seen.add(key)
        unique.append(result)
    return unique


class WebSearchService:
    """Cached, rate-limited web search over a configured provider."""

    def __init__(
        self,
        settings: Settings | None = None,
        provider: SearchProvider | None = None,
        rate_limiter: RateLimiter | None = None,
        cache: TTLCache[WebSearchResponse] | None = None,
    ):
        self.settings = settings or get_settings()
        self._provider = provider
        self.rate_limiter = rate_limiter or RateLimiter(
            max_tokens=self.settings.WEBSEARCH_RATE_LIMIT,
            refill_per_minute=self.settings.WEBSEARCH_RATE_LIMIT,
        )
        self.cache = cache or TTLCache(default_ttl=self.settings.WEBSEARCH_CACHE_TTL_SEC)

    @property
    def enabled(self) -> bool:
        return self.settings.WEBSEARCH_ENABLED

    @property
    def provider(self) -> SearchProvider:
        if self._provider is None:
            self._provider = get_search_provider(self.settings)
        return self._provider

    async def search(
        self,
        query: str,
        n: int | None = None,
        tenant_id: str = "",
        user_id: str = "",
    ) -> WebSearchResponse:
        """
        Search the web for a tenant.

        Args:
            query: Search query
            n: Max results (capped at 10)
            tenant_id: Tenant for rate limiting and cache isolation
            user_id: Requesting user (logging only)

        Returns:
            WebSearchResponse; empty results when the provider fails

        Raises:
            WebSearchDisabledError: WEBSEARCH_ENABLED is off
            ValueError: Empty or oversized query
            WebSearchRateLimitError: Tenant bucket exhausted
        """
        if not self.enabled:
            raise WebSearchDisabledError("Web search is disabled")

        cleaned = sanitize_query(query)
        n = min(n or self.settings.WEBSEARCH_MAX_RESULTS, MAX_RESULTS_CAP)
        cache_key = f"{self.settings.WEBSEARCH_PROVIDER}:{tenant_id}:{build_cache_key(cleaned, n)}"

        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Web search cache hit: '{cleaned[:50]}'", extra={"tenant_id": tenant_id})
            return cached.model_copy(update={"cached": True})

        if not self.rate_limiter.check_limit(tenant_id):
            raise WebSearchRateLimitError(tenant_id)

        timestamp = datetime.now(timezone.utc).isoformat()
        try:
            raw_results = await self.provider.search(cleaned, n)
        except Exception as e:
            logger.error(
                f"Web search failed for '{cleaned[:50]}': {e}",
                extra={"tenant_id": tenant_id, "user_id": user_id},
            )
            return WebSearchResponse(query=cleaned, results=[], timestamp=timestamp)

        results = filter_by_domain(
            raw_results,
            self.settings.websearch_blocklist,
            self.settings.websearch_allowlist,
        )
        results = dedupe_urls(results)[:n]

        response = WebSearchResponse(query=cleaned, results=results, timestamp=timestamp)
        self.cache.set(cache_key, response)

        logger.info(
            f"Web search '{cleaned[:50]}': {len(results)} results",
            extra={"tenant_id": tenant_id, "user_id": user_id},
        )
        return response

    async def search_results(
        self, query: str, n: int, tenant_id: str, user_id: str
    ) -> list[WebSearchResult]:
        """Adapter matching the executor's web_search(query, n, tenant_id, user_id) hook."""
        response = await self.search(query, n, tenant_id, user_id)
        return response.results


_shared_services: SharedInstances[WebSearchService] = SharedInstances()


def get_shared_web_search(settings: Settings | None = None) -> WebSearchService:
    """Long-lived service per settings object; rate limit and cache persist across calls."""
    settings = settings or get_settings()
    return _shared_services.get_or_create(settings, lambda: WebSearchService(settings))


# ============================================================================
# Tool spec
# ============================================================================


class WebSearchArgs(BaseModel):
    """Arguments the model may pass to `web_search`."""

    model_config = ConfigDict(extra="forbid")

    query: str = Field(..., min_length=1, max_length=MAX_QUERY_LENGTH)
    n: int | None = Field(default=None, ge=1, le=MAX_RESULTS_CAP)


WEB_SEARCH_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "web_search",
        "description": (
            "Search the web for current market data, competitors, pricing and trends. "
            "Returns a list of results with title, url and snippet."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query"},
                "n": {
                    "type": "integer",
                    "description": f"Max results (1-{MAX_RESULTS_CAP})",
                },
            },
            "required": ["query"],
            "additionalProperties": False,
        },
    },
}


def build_web_search_tool(
    search: WebSearchFn,
    tenant_id: str,
    user_id: str,
    default_n: int,
) -> tuple[dict[str, Any], Callable[[dict[str, Any]], Awaitable[Any]]]:
    """
    Tool spec plus a handler with tenant/user bound from the request.

    The model never supplies tenant or user; unknown argument keys are rejected.
    """

    async def handler(args: dict[str, Any]) -> list[dict[str, Any]]:
        parsed = WebSearchArgs.model_validate(args)
        results = await search(parsed.query, parsed.n or default_n, tenant_id, user_id)
        return [r.model_dump() for r in results]

    return WEB_SEARCH_TOOL, handler
