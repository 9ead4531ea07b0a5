"""Network-backed tools: web search through Bocha and plain page fetching."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Awaitable, Iterable, Mapping, Sequence, TypeVar

import httpx

from ..config import Settings
from .registry import ToolDefinition, ToolInputError, ToolRegistry

logger = logging.getLogger(__name__)

SEARCH_PROVIDER = "bocha"
MIN_SEARCH_COUNT = 1
MAX_SEARCH_COUNT = 50
DEFAULT_SEARCH_COUNT = 5
MIN_FETCH_CHARS = 1000
MAX_FETCH_CHARS = 20000
DEFAULT_FETCH_CHARS = 8000
FETCH_BYTES_PER_CHAR = 4

T = TypeVar("T")

_FRESHNESS = ("noLimit", "oneDay", "oneWeek", "oneMonth", "oneYear")
_BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}

_HTML_DROP_RE = re.compile(
    r"<(script|style|noscript)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL
)
_HTML_BLOCK_END_RE = re.compile(r"</(p|div|br|li|h[1-6])>|<br\s*/?>", re.IGNORECASE)
_HTML_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_LINES_RE = re.compile(r"\n{3,}")
_SPACES_RE = re.compile(r"[ \t]{2,}")
_WHITESPACE_RE = re.compile(r"\s+")


def _clamp(value: Any, low: int, high: int, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def html_to_text(raw: str) -> str:
    """Crude HTML to text conversion; good enough for model context."""

    text = _HTML_DROP_RE.sub(" ", raw)
    text = _HTML_BLOCK_END_RE.sub("\n", text)
    text = _HTML_TAG_RE.sub(" ", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    text = _SPACES_RE.sub(" ", text)
    return text.strip()


def _is_authoritative(url: str, domains: Iterable[str]) -> bool:
    lowered = url.lower()
    return any(domain.lower() in lowered for domain in domains)


def rank_search_results(
    items: Sequence[Mapping[str, Any]],
    *,
    count: int,
    authoritative_domains: Sequence[str] = (),
) -> list[dict[str, Any]]:
    """De-duplicate raw search hits and put authoritative sources first.

    Hits missing a title or URL are dropped, as are hits whose title prefix,
    query-less URL, or normalised snippet was already seen. The sort is stable,
    so original provider order is kept within each group.
    """

    seen_titles: set[str] = set()
    seen_urls: set[str] = set()
    seen_snippets: set[str] = set()
    kept: list[tuple[bool, Mapping[str, Any]]] = []

    for item in items:
        if not isinstance(item, Mapping):
            continue
        title = str(item.get("name") or "").strip()
        url = str(item.get("url") or "").strip()
        snippet = str(item.get("snippet") or "").strip()
        if not title or not url:
            continue

        title_key = title.lower()[:100]
        url_key = url.lower().split("?", 1)[0]
        snippet_key = _WHITESPACE_RE.sub(" ", snippet.lower())[:200]
        if title_key in seen_titles or url_key in seen_urls:
            continue
        if snippet_key and snippet_key in seen_snippets:
            continue

        seen_titles.add(title_key)
        seen_urls.add(url_key)
        if snippet_key:
            seen_snippets.add(snippet_key)
        kept.append((_is_authoritative(url, authoritative_domains), item))

    kept.sort(key=lambda entry: not entry[0])

    results: list[dict[str, Any]] = []
    for position, (authoritative, item) in enumerate(kept[:count], start=1):
        results.append(
            {
                "title": item.get("name") or "",
                "link": item.get("url") or "",
                "display_url": item.get("displayUrl") or "",
                "snippet": item.get("snippet") or "",
                "summary": item.get("summary"),
                "site_name": item.get("siteName"),
                "date_last_crawled": item.get("dateLastCrawled"),
                "authoritative": authoritative,
                "position": position,
            }
        )
    return results


class WebTools:
    """Handlers for ``web_search`` and ``fetch_url`` sharing one HTTP client."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings
        self._http_client = http_client
        self._timeout = httpx.Timeout(settings.tool_http_timeout)

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=True
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _search_authorization(self) -> str:
        key = self._settings.search_api_key
        raw = key.get_secret_value().strip() if key is not None else ""
        if not raw:
            raise ToolInputError(
                "Web search is not configured: set BOCHA_API_KEY (or BOCHA_KEY / BOCHA_APIKEY)"
            )
        return raw if raw.startswith("Bearer ") else f"Bearer {raw}"

    async def web_search(self, args: Mapping[str, Any]) -> dict[str, Any]:
        query = str(args.get("query") or "").strip()
        if not query:
            raise ToolInputError("query must not be empty")

        count = _clamp(
            args.get("num_results"), MIN_SEARCH_COUNT, MAX_SEARCH_COUNT, DEFAULT_SEARCH_COUNT
        )
        freshness = args.get("freshness") or "noLimit"
        if freshness not in _FRESHNESS:
            freshness = "noLimit"
        summary = args.get("summary")
        body = {
            "query": query,
            "freshness": freshness,
            "summary": True if summary is None else bool(summary),
            "count": count,
        }

        response = await self._within_budget(
            self._client().post(
                str(self._settings.search_api_url),
                json=body,
                headers={"Authorization": self._search_authorization()},
                timeout=self._timeout,
            ),
            "Search",
        )
        if response.status_code >= 400:
            raise RuntimeError(
                f"Search request failed: {response.status_code} {response.text}"[:500]
            )
        data = response.json()
        if not isinstance(data, dict) or data.get("code") != 200:
            code = data.get("code") if isinstance(data, dict) else None
            message = data.get("msg") if isinstance(data, dict) else None
            raise RuntimeError(f"Search service error: code={code} msg={message or ''}".strip())

        web_pages = (data.get("data") or {}).get("webPages") or {}
        items = web_pages.get("value") if isinstance(web_pages, dict) else None
        if not isinstance(items, list):
            items = []

        results = rank_search_results(
            items,
            count=count,
            authoritative_domains=self._settings.authoritative_domains,
        )
        logger.debug("web_search '%s' kept %d of %d hits", query, len(results), len(items))
        return {
            "query": query,
            "provider": SEARCH_PROVIDER,
            "log_id": data.get("log_id"),
            "results": results,
            "original_count": len(items),
        }

    async def fetch_url(self, args: Mapping[str, Any]) -> dict[str, Any]:
        url = str(args.get("url") or "").strip()
        if not re.match(r"^https?://", url, re.IGNORECASE):
            raise ToolInputError("url must be http or https")
        max_chars = _clamp(
            args.get("max_chars"), MIN_FETCH_CHARS, MAX_FETCH_CHARS, DEFAULT_FETCH_CHARS
        )

        content_type, text, cut_short = await self._within_budget(
            self._read_page(url, max_chars * FETCH_BYTES_PER_CHAR), "Fetch"
        )
        if "text/html" in content_type:
            text = html_to_text(text)
        return {
            "url": url,
            "content_type": content_type,
            "text": text[:max_chars],
            "truncated": cut_short or len(text) > max_chars,
        }

    async def _within_budget(self, call: Awaitable[T], label: str) -> T:
        budget = self._settings.tool_http_timeout
        try:
            return await asyncio.wait_for(call, timeout=budget)
        except asyncio.TimeoutError as exc:
            raise RuntimeError(f"{label} timed out after {budget:g}s") from exc

    async def _read_page(self, url: str, max_bytes: int) -> tuple[str, str, bool]:
        """Stream at most ``max_bytes`` of the body; returns (type, text, cut_short)."""

        chunks: list[bytes] = []
        received = 0
        cut_short = False
        async with self._client().stream(
            "GET", url, headers=_BROWSER_HEADERS, timeout=self._timeout
        ) as response:
            limit = 500 if response.status_code >= 400 else max_bytes
            async for chunk in response.aiter_bytes():
                chunks.append(chunk)
                received += len(chunk)
                if received > limit:
                    cut_short = True
                    break
            raw = b"".join(chunks)[:limit]
            encoding = response.charset_encoding or "utf-8"
            text = raw.decode(encoding, errors="replace")
            if response.status_code >= 400:
                raise RuntimeError(f"Fetch failed: {response.status_code} {text}"[:500])
            return response.headers.get("content-type", ""), text, cut_short

    def register(self, registry: ToolRegistry) -> None:
        registry.register(
            ToolDefinition(
                name="web_search",
                description=(
                    "Search the web for up-to-date information. Returns titles, "
                    "snippets, and links, authoritative sources first."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "description": "Search query"},
                        "num_results": {
                            "type": "number",
                            "description": "Number of results (1-50), default 5",
                        },
                        "freshness": {"type": "string", "enum": list(_FRESHNESS)},
                        "summary": {
                            "type": "boolean",
                            "description": "Include page summaries, default true",
                        },
                    },
                    "required": ["query"],
                    "additionalProperties": False,
                },
            ),
            self.web_search,
        )
        registry.register(
            ToolDefinition(
                name="fetch_url",
                description="Fetch a web page and return its main text for reading or citing.",
                parameters={
                    "type": "object",
                    "properties": {
                        "url": {"type": "string", "description": "http(s) URL"},
                        "max_chars": {
                            "type": "number",
                            "description": "Maximum characters returned, default 8000",
                        },
                    },
                    "required": ["url"],
                    "additionalProperties": False,
                },
            ),
            self.fetch_url,
        )


__all__ = ["WebTools", "html_to_text", "rank_search_results"]
