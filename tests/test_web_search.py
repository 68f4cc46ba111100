"""Tests for the web search service, providers' result extraction and the tool handler."""

import pytest
from pydantic import ValidationError

from app.core.exceptions import WebSearchDisabledError, WebSearchRateLimitError
from app.core.rate_limiter import RateLimiter
from app.core.search_providers import (
    SerpAPISearchProvider,
    TavilySearchProvider,
    WebSearchResult,
    extract_search_results,
    get_search_provider,
)
from app.core.web_search import (
    WEB_SEARCH_TOOL,
    WebSearchService,
    build_web_search_tool,
    dedupe_urls,
    filter_by_domain,
    sanitize_query,
)
from tests.fakes.fake_stores import FakeSearchProvider, FakeWebSearch


def _r(url: str, title: str = "Title") -> WebSearchResult:
    return WebSearchResult(title=title, snippet="snippet", url=url)


# ──────────────────────────────────────────────────────────────────────
# Pure helpers
# ──────────────────────────────────────────────────────────────────────


class TestSanitizeQuery:
    def test_collapses_whitespace(self):
        assert sanitize_query("  saas \n pricing  ") == "saas pricing"

    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            sanitize_query("   ")

    def test_rejects_too_long(self):
        with pytest.raises(ValueError):
            sanitize_query("x" * 501)


class TestDomainFiltering:
    def test_blocklist_and_bad_urls(self):
        results = [_r("https://spam.example.com/a"), _r("ftp://files.org/x"), _r("https://ok.com/b")]
        kept = filter_by_domain(results, blocklist=["spam.example.com"], allowlist=[])
        assert [r.url for r in kept] == ["https://ok.com/b"]

    def test_allowlist(self):
        results = [_r("https://www.gartner.com/r"), _r("https://blog.random.io/p")]
        kept = filter_by_domain(results, blocklist=[], allowlist=["gartner.com"])
        assert [r.url for r in kept] == ["https://www.gartner.com/r"]

    def test_dedupe_ignores_case_and_trailing_slash(self):
        results = [_r("https://a.com/x/"), _r("https://A.com/x"), _r("https://a.com/y")]
        assert [r.url for r in dedupe_urls(results)] == ["https://a.com/x/", "https://a.com/y"]


class TestExtractSearchResults:
    def test_json_array(self):
        text = '```json\n[{"title": "A", "snippet": "s", "url": "https://a.com"}]\n```'
        results = extract_search_results(text, 5)
        assert [(r.title, r.url) for r in results] == [("A", "https://a.com")]

    def test_markdown_links(self):
        text = "See [Market Report](https://reports.com/saas) for sizing data."
        results = extract_search_results(text, 5)
        assert results[0].title == "Market Report"
        assert results[0].url == "https://reports.com/saas"
        assert "sizing" in results[0].snippet

    def test_bare_urls(self):
        results = extract_search_results("Sources: https://a.com/x, https://b.com.", 5)
        assert [r.url for r in results] == ["https://a.com/x", "https://b.com"]

    def test_limit_and_empty(self):
        assert extract_search_results("", 3) == []
        text = " ".join(f"https://site{i}.com" for i in range(5))
        assert len(extract_search_results(text, 2)) == 2


class TestProviderSelection:
    def test_tavily_requires_key(self, settings):
        settings.WEBSEARCH_PROVIDER = "tavily"
        with pytest.raises(ValueError):
            get_search_provider(settings)

    def test_serpapi_requires_key(self, settings):
        with pytest.raises(ValueError):
            SerpAPISearchProvider(settings)

    def test_unknown_provider(self, settings):
        settings.WEBSEARCH_PROVIDER = "bing"
        with pytest.raises(ValueError):
            get_search_provider(settings)

    @pytest.mark.asyncio
    async def test_tavily_maps_results(self, settings):
        class FakeTavily:
            async def search(self, **kwargs):
                self.kwargs = kwargs
                return {
                    "results": [
                        {"title": "T", "content": "body", "url": "https://t.com"},
                        {"title": "no url", "content": "x"},
                    ]
                }

        tavily = FakeTavily()
        provider = TavilySearchProvider(settings, client=tavily)

        results = await provider.search("saas", 3)

        assert [(r.title, r.snippet, r.url) for r in results] == [("T", "body", "https://t.com")]
        assert tavily.kwargs["max_results"] == 3


# ──────────────────────────────────────────────────────────────────────
# Service
# ──────────────────────────────────────────────────────────────────────


@pytest.fixture
def search_settings(settings):
    settings.WEBSEARCH_ENABLED = True
    settings.WEBSEARCH_BLOCKLIST = "spam.com"
    return settings


class TestWebSearchService:
    @pytest.mark.asyncio
    async def test_filters_dedupes_and_truncates(self, search_settings):
        provider = FakeSearchProvider(
            [_r("https://a.com"), _r("https://a.com/"), _r("https://spam.com/x"), _r("https://b.com"), _r("https://c.com")]
        )
        service = WebSearchService(search_settings, provider=provider)

        response = await service.search("saas pricing", n=2, tenant_id="t1")

        assert [r.url for r in response.results] == ["https://a.com", "https://b.com"]
        assert response.cached is False

    @pytest.mark.asyncio
    async def test_cache_hit_skips_provider(self, search_settings):
        provider = FakeSearchProvider([_r("https://a.com")])
        service = WebSearchService(search_settings, provider=provider)

        await service.search("SaaS pricing", n=3, tenant_id="t1")
        second = await service.search("saas   pricing", n=3, tenant_id="t1")

        assert second.cached is True
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_cache_is_tenant_scoped(self, search_settings):
        provider = FakeSearchProvider([_r("https://a.com")])
        service = WebSearchService(search_settings, provider=provider)

        await service.search("saas", n=3, tenant_id="t1")
        await service.search("saas", n=3, tenant_id="t2")

        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_rate_limited(self, search_settings):
        service = WebSearchService(
            search_settings,
            provider=FakeSearchProvider([_r("https://a.com")]),
            rate_limiter=RateLimiter(max_tokens=1, refill_per_minute=1),
        )
        await service.search("first", tenant_id="t1")

        with pytest.raises(WebSearchRateLimitError):
            await service.search("second", tenant_id="t1")

    @pytest.mark.asyncio
    async def test_provider_failure_returns_empty(self, search_settings):
        service = WebSearchService(
            search_settings, provider=FakeSearchProvider(error=RuntimeError("provider down"))
        )

        response = await service.search("saas", tenant_id="t1")

        assert response.results == []

    @pytest.mark.asyncio
    async def test_disabled(self, settings):
        service = WebSearchService(settings, provider=FakeSearchProvider())
        with pytest.raises(WebSearchDisabledError):
            await service.search("saas", tenant_id="t1")

    @pytest.mark.asyncio
    async def test_n_capped_at_ten(self, search_settings):
        provider = FakeSearchProvider([_r(f"https://site{i}.com") for i in range(15)])
        service = WebSearchService(search_settings, provider=provider)

        response = await service.search("saas", n=50, tenant_id="t1")

        assert len(response.results) == 10


# ──────────────────────────────────────────────────────────────────────
# Tool
# ──────────────────────────────────────────────────────────────────────


class TestWebSearchTool:
    @pytest.mark.asyncio
    async def test_handler_binds_tenant_and_user(self):
        search = FakeWebSearch([_r("https://a.com")])
        spec, handler = build_web_search_tool(search, "t1", "u1", default_n=5)

        results = await handler({"query": "competitors"})

        assert spec is WEB_SEARCH_TOOL
        assert results == [{"title": "Title", "snippet": "snippet", "url": "https://a.com"}]
        assert search.calls == [{"query": "competitors", "n": 5, "tenant_id": "t1", "user_id": "u1"}]

    @pytest.mark.asyncio
    async def test_handler_rejects_unknown_arguments(self):
        _, handler = build_web_search_tool(FakeWebSearch(), "t1", "u1", default_n=5)

        with pytest.raises(ValidationError):
            await handler({"query": "x", "tenant_id": "other"})
