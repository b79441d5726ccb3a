import asyncio
import json
from typing import Any
from urllib.parse import urlparse

import httpx
from loguru import logger

from turnbound.memory.cache import ResultCache
from turnbound.tools.html_utilities import html_to_text, truncate

_DEFAULT_MAX_CHARS = 10_000
_MAX_RESPONSE_BYTES = 1_000_000
_TIMEOUT_SECONDS = 15
_MAX_REDIRECTS = 5

_HEADERS = {
    "User-Agent": "turnbound/0.1",
    "Accept": "text/html, text/plain;q=0.9, */*;q=0.5",
}


class WebFetchTool:
    """Fetch a URL as text. Results are cached by URL when a cache is attached."""

    def __init__(self, cache: ResultCache | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self._cache = cache
        self._transport = transport

    @property
    def name(self) -> str:
        return "web_fetch"

    @property
    def description(self) -> str:
        return (
            "Fetch content from a URL and return it as readable text. "
            "HTML pages are converted to plain text, JSON is pretty-printed. "
            "GET requests only. Results are cached."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The HTTP or HTTPS URL to fetch",
                },
                "maxChars": {
                    "type": "number",
                    "description": "Maximum characters of content to return (default 10000).",
                },
            },
            "required": ["url"],
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        url: str = tool_input.get("url", "").strip()
        max_chars = int(tool_input.get("maxChars", _DEFAULT_MAX_CHARS))
        if max_chars <= 0:
            max_chars = _DEFAULT_MAX_CHARS

        if urlparse(url).scheme not in ("http", "https"):
            return "Error: URL must use http or https scheme"

        if self._cache is not None:
            cached = await asyncio.to_thread(self._cache.get_fetch, url)
            if cached is not None:
                logger.debug(f"web_fetch cache hit: {url}")
                return truncate(cached, max_chars)

        try:
            async with httpx.AsyncClient(
                headers=_HEADERS,
                timeout=_TIMEOUT_SECONDS,
                follow_redirects=True,
                max_redirects=_MAX_REDIRECTS,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
        except httpx.TimeoutException:
            return f"Error: Request timed out after {_TIMEOUT_SECONDS} seconds"
        except httpx.TooManyRedirects:
            return f"Error: Too many redirects (max {_MAX_REDIRECTS})"
        except httpx.HTTPError as ex:
            return f"Error: Fetch failed: {ex}"

        if response.status_code >= 400:
            return f"Error: HTTP {response.status_code} fetching {url}"

        if len(response.content) > _MAX_RESPONSE_BYTES:
            return f"Error: Response too large ({len(response.content):,} bytes, max {_MAX_RESPONSE_BYTES:,} bytes)"

        content_type = response.headers.get("content-type", "")
        if "text/html" in content_type or "application/xhtml" in content_type:
            text = html_to_text(response.text)
        elif "application/json" in content_type:
            try:
                text = json.dumps(response.json(), indent=2)
            except ValueError:
                text = response.text
        else:
            text = response.text

        if self._cache is not None:
            await asyncio.to_thread(self._cache.set_fetch, url, text)
        return truncate(text, max_chars)
