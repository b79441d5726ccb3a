import asyncio
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from turnbound.memory.cache import ResultCache

_BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
_TIMEOUT_SECONDS = 15
_DEFAULT_COUNT = 5
_MAX_QUERY_CHARS = 400


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str
    description: str


class BraveSearchClient:
    def __init__(self, api_key: str, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._api_key = api_key
        self._transport = transport

    async def search(self, query: str, count: int) -> list[SearchResult]:
        """Return search results. Raises httpx errors; the tool formats them."""
        headers = {
            "X-Subscription-Token": self._api_key,
            "Accept": "application/json",
        }
        params = {"q": query, "count": count}

        async with httpx.AsyncClient(timeout=_TIMEOUT_SECONDS, transport=self._transport) as client:
            response = await client.get(_BRAVE_SEARCH_URL, headers=headers, params=params)
        response.raise_for_status()

        raw_results = response.json().get("web", {}).get("results", [])
        return [
            SearchResult(
                title=r.get("title", "(no title)"),
                url=r.get("url", ""),
                description=r.get("description", ""),
            )
            for r in raw_results
        ]


def format_results(query: str, results: list[SearchResult]) -> str:
    if not results:
        return f"No results found for: {query}"
    lines = [f'Search: "{query}"', f"Results: {len(results)}", ""]
    for i, result in enumerate(results, 1):
        lines.append(f"{i}. {result.title}")
        lines.append(f"   {result.url}")
        if result.description:
            lines.append(f"   {result.description}")
        lines.append("")
    return "\n".join(lines).rstrip()


class WebSearchTool:
    """Web search backed by the result cache.

    Lookup order: exact cached query (including the result count), then any
    cached result whose text already covers the query's keywords, then Brave.
    """

    def __init__(self, client: BraveSearchClient, cache: ResultCache | None = None) -> None:
        self._client = client
        self._cache = cache

    @property
    def name(self) -> str:
        return "web_search"

    @property
    def description(self) -> str:
        return (
            "Search the web and return a list of results with titles, URLs, "
            "and descriptions. Use this to discover URLs before fetching "
            "their full content with web_fetch. Results are cached."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Search query (max 400 characters)",
                },
                "count": {
                    "type": "number",
                    "description": "Number of results to return (1-20, default 5)",
                },
            },
            "required": ["query"],
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        query: str = tool_input.get("query", "").strip()
        if not query:
            return "Error: query must not be empty"

        query = query[:_MAX_QUERY_CHARS]
        count = max(1, min(20, int(tool_input.get("count", _DEFAULT_COUNT))))
        exact_key = f"{query}|n={count}"

        if self._cache is not None:
            cached = await asyncio.to_thread(self._cache.get_search, exact_key)
            if cached is not None:
                logger.debug(f"web_search exact cache hit: {query!r}")
                return cached
            cached = await asyncio.to_thread(self._cache.search_cached_content, query)
            if cached is not None:
                logger.debug(f"web_search content cache hit: {query!r}")
                return cached

        try:
            results = await self._client.search(query, count)
        except httpx.TimeoutException:
            return "Error: Search request timed out"
        except httpx.HTTPStatusError as ex:
            return f"Error: HTTP {ex.response.status_code} from Brave Search API"
        except httpx.HTTPError as ex:
            return f"Error: {ex}"

        text = format_results(query, results)
        if results and self._cache is not None:
            await asyncio.to_thread(self._cache.set_search, exact_key, text)
        return text
