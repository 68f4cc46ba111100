"""Web search providers: OpenAI web search tool, Tavily and SerpAPI.

Each provider implements `async search(query, n) -> list[WebSearchResult]`
and raises on failure; the WebSearchService decides how failures degrade.
"""

from __future__ import annotations

import json
import re
from typing import Any, Protocol

import httpx
from openai import AsyncOpenAI
from pydantic import BaseModel, Field
from tavily import AsyncTavilyClient

from app.core.config import Settings, get_settings
from app.core.llm import strip_llm_fences
from app.core.logging import get_logger

logger = get_logger(__name__)

SERPAPI_BASE_URL = "https://serpapi.com/search"
SNIPPET_WINDOW_CHARS = 200

_MARKDOWN_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_BARE_URL_RE = re.compile(r"https?://[^\s<>\"]+")

OPENAI_SEARCH_INSTRUCTIONS = (
    "You are a cost-conscious research assistant. Search the web and return the most "
    "relevant, recent sources for the query. Return results in JSON format as an array "
    "of objects with fields: title, snippet, url. Limit to {n} most relevant results."
)


class WebSearchResult(BaseModel):
    title: str = ""
    snippet: str = ""
    url: str


class WebSearchResponse(BaseModel):
    query: str
    results: list[WebSearchResult] = Field(default_factory=list)
    timestamp: str
    cached: bool = False


class SearchProvider(Protocol):
    name: str

    async def search(self, query: str, n: int) -> list[WebSearchResult]: ...


def extract_search_results(text: str, n: int) -> list[WebSearchResult]:
    """
    Pull results out of free-form model output.

    Tries, in order: a JSON array of {title, snippet, url}, markdown links
    (snippet = surrounding text), then bare URLs.
    """
    if not text:
        return []

    cleaned = strip_llm_fences(text)
    array_match = re.search(r"\[\s*\{.*\}\s*\]", cleaned, re.DOTALL)
    if array_match:
        try:
            items = json.loads(array_match.group(0))
        except json.JSONDecodeError:
            items = []
        results = [
            WebSearchResult(
                title=str(item.get("title", "")),
                snippet=str(item.get("snippet", "")),
                url=str(item["url"]),
            )
            for item in items
            if isinstance(item, dict) and item.get("url") and item.get("title")
        ]
        if results:
            return results[:n]

    results = []
    for match in _MARKDOWN_LINK_RE.finditer(text):
        title, url = match.group(1), match.group(2)
        if not url.startswith("http"):
            continue
        start = max(0, match.start() - SNIPPET_WINDOW_CHARS // 2)
        end = min(len(text), match.end() + SNIPPET_WINDOW_CHARS // 2)
        snippet = " ".join(text[start:end].split())
        results.append(WebSearchResult(title=title, snippet=snippet, url=url))
    if results:
        return results[:n]

    for match in _BARE_URL_RE.finditer(text):
        url = match.group(0).rstrip(".,;)")
        results.append(WebSearchResult(title=url, snippet="", url=url))
    return results[:n]


class OpenAISearchProvider:
    """Responses API with the hosted `web_search_preview` tool."""

    name = "openai"

    def __init__(self, settings: Settings | None = None, client: AsyncOpenAI | None = None):
        self.settings = settings or get_settings()
        self._client = client or AsyncOpenAI(
            api_key=self.settings.OPENAI_API_KEY,
            timeout=self.settings.LLM_TIMEOUT_MS / 1000,
        )

    async def search(self, query: str, n: int) -> list[WebSearchResult]:
        response = await self._client.responses.create(
            model=self.settings.WEBSEARCH_MODEL,
            tools=[{"type": "web_search_preview"}],
            instructions=OPENAI_SEARCH_INSTRUCTIONS.format(n=n),
            input=query,
        )
        results = extract_search_results(response.output_text or "", n)
        logger.info(f"OpenAI web search '{query[:50]}': {len(results)} results")
        return results


class TavilySearchProvider:
    name = "tavily"

    def __init__(self, settings: Settings | None = None, client: AsyncTavilyClient | None = None):
        self.settings = settings or get_settings()
        if client is None:
            if not self.settings.TAVILY_API_KEY:
                raise ValueError("TAVILY_API_KEY not configured")
            client = AsyncTavilyClient(api_key=self.settings.TAVILY_API_KEY)
        self._client = client

    async def search(self, query: str, n: int) -> list[WebSearchResult]:
        response = await self._client.search(
            query=query,
            max_results=n,
            search_depth="basic",
            include_answer=False,
            include_raw_content=False,
        )
        results = [
            WebSearchResult(
                title=item.get("title") or "",
                snippet=item.get("content") or "",
                url=item.get("url") or "",
            )
            for item in response.get("results", [])
            if item.get("url")
        ]
        logger.info(f"Tavily search '{query[:50]}': {len(results)} results")
        return results


class SerpAPISearchProvider:
    """Google results via SerpAPI."""

    name = "serpapi"

    def __init__(self, settings: Settings | None = None, timeout: int = 15):
        self.settings = settings or get_settings()
        if not self.settings.SERPAPI_API_KEY:
            raise ValueError("SERPAPI_API_KEY not configured")
        self.timeout = timeout

    async def search(self, query: str, n: int) -> list[WebSearchResult]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                SERPAPI_BASE_URL,
                params={
                    "api_key": self.settings.SERPAPI_API_KEY,
                    "q": query,
                    "num": n,
                    "engine": "google",
                },
            )
            response.raise_for_status()
            data: dict[str, Any] = response.json()

        results = [
            WebSearchResult(
                title=item.get("title", ""),
                snippet=item.get("snippet", ""),
                url=item.get("link", ""),
            )
            for item in data.get("organic_results", [])[:n]
            if item.get("link")
        ]
        logger.info(f"SerpAPI search '{query[:50]}': {len(results)} results")
        return results


def get_search_provider(settings: Settings | None = None) -> SearchProvider:
    """Provider selected by WEBSEARCH_PROVIDER."""
    settings = settings or get_settings()
    provider = settings.WEBSEARCH_PROVIDER.lower()
    if provider == "openai":
        return OpenAISearchProvider(settings)
    if provider == "tavily":
        return TavilySearchProvider(settings)
    if provider == "serpapi":
        return SerpAPISearchProvider(settings)
    raise ValueError(f"Unknown WEBSEARCH_PROVIDER: {settings.WEBSEARCH_PROVIDER}")
