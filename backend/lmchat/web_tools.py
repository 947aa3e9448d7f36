from __future__ import annotations

import re
from dataclasses import dataclass
from html import unescape
from typing import Protocol
from urllib.parse import parse_qs, unquote, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from .config import GOOGLE_SEARCH_API_KEY, GOOGLE_SEARCH_ENGINE_ID, SEARCH_PROVIDER
from .logging_utils import get_logger

log = get_logger(__name__)

GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
DUCKDUCKGO_URL = "https://html.duckduckgo.com/html/"

USER_AGENT = "lmchat/0.1 (+local)"


class WebToolError(RuntimeError):
    pass


@dataclass(frozen=True)
class SearchHit:
    title: str
    url: str
    snippet: str


class SearchTransport(Protocol):
    name: str

    async def search(self, query: str) -> list[SearchHit]: ...


def _is_http_url(url: str) -> bool:
    try:
        u = urlparse(url)
    except ValueError:
        return False
    return u.scheme in ("http", "https")


async def _read_limited(resp: httpx.Response, max_bytes: int) -> bytes:
    if max_bytes <= 0:
        raise WebToolError("max_bytes must be > 0")
    buf = bytearray()
    async for chunk in resp.aiter_bytes():
        if not chunk:
            continue
        remaining = max_bytes - len(buf)
        if len(chunk) >= remaining:
            buf.extend(chunk[:remaining])
            break
        buf.extend(chunk)
    return bytes(buf)


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html or "", "html.parser")
    for t in soup(["script", "style", "noscript"]):
        t.decompose()
    text = unescape(soup.get_text(" "))
    return re.sub(r"\s+", " ", text).strip()


async def scrape_page(
    url: str,
    *,
    client: httpx.AsyncClient,
    max_chars: int = 2000,
    max_bytes: int = 1_000_000,
) -> str:
    """Fetch ``url`` and return the first ``max_chars`` characters of visible text."""
    if not isinstance(url, str) or not _is_http_url(url.strip()):
        raise WebToolError(f"Not an http/https URL: {url!r}")

    headers = {"user-agent": USER_AGENT, "accept": "text/html,text/plain;q=0.9,*/*;q=0.1"}
    try:
        async with client.stream("GET", url.strip(), headers=headers, follow_redirects=True) as resp:
            if resp.status_code >= 400:
                raise WebToolError(f"Fetch failed ({resp.status_code}) for {url}")
            raw_type = str(resp.headers.get("content-type", "") or "").split(";", 1)[0].strip().lower()
            if raw_type and not (raw_type.startswith("text/") or "html" in raw_type):
                raise WebToolError(f"Unsupported content-type: {raw_type}")
            data = await _read_limited(resp, max_bytes=max_bytes)
            body = data.decode(resp.encoding or "utf-8", errors="replace")
    except (httpx.TimeoutException, httpx.HTTPError, httpx.InvalidURL) as e:
        raise WebToolError(f"Fetch failed: {type(e).__name__}: {e}") from e

    return html_to_text(body)[:max_chars]


async def google_search(
    query: str,
    *,
    api_key: str,
    engine_id: str,
    client: httpx.AsyncClient,
    k: int = 5,
) -> list[SearchHit]:
    q = str(query or "").strip()
    if not q:
        raise WebToolError("query must be a non-empty string")

    params = {"key": api_key, "cx": engine_id, "q": q}
    try:
        resp = await client.get(GOOGLE_SEARCH_URL, params=params)
    except (httpx.TimeoutException, httpx.HTTPError) as e:
        raise WebToolError(f"Search API unreachable: {type(e).__name__}: {e}") from e

    try:
        data = resp.json()
    except ValueError:
        data = {}
    if resp.status_code >= 400:
        err = data.get("error") if isinstance(data, dict) else None
        msg = err.get("message") if isinstance(err, dict) else None
        raise WebToolError(str(msg or f"Search API error ({resp.status_code})"))

    items = data.get("items") if isinstance(data, dict) else None
    if not isinstance(items, list):
        log.info("No search results for %r", q)
        return []

    hits: list[SearchHit] = []
    for it in items[:k]:
        if not isinstance(it, dict):
            continue
        url = str(it.get("link") or "").strip()
        if not url:
            continue
        hits.append(
            SearchHit(
                title=str(it.get("title") or "").strip(),
                url=url,
                snippet=str(it.get("snippet") or "").strip(),
            )
        )
    return hits


def _normalize_ddg_href(href: str) -> str:
    if not href:
        return ""
    # Result links are relative /l/?uddg=<target> redirects.
    href = urljoin("https://duckduckgo.com", href.strip())
    try:
        u = urlparse(href)
    except ValueError:
        return href
    uddg = parse_qs(u.query or "").get("uddg", [None])[0]
    if isinstance(uddg, str) and uddg:
        return unquote(unescape(uddg))
    return href


def parse_duckduckgo_results(html: str, k: int) -> list[SearchHit]:
    soup = BeautifulSoup(html or "", "html.parser")
    hits: list[SearchHit] = []
    seen: set[str] = set()
    for a in soup.select("a.result__a"):
        href = _normalize_ddg_href(str(a.get("href") or ""))
        title = a.get_text(" ", strip=True)
        if not href or not title or href in seen:
            continue
        seen.add(href)

        snippet = ""
        container = a.find_parent(class_=re.compile(r"\bresult\b"))
        if container is not None:
            sn = container.select_one(".result__snippet")
            if sn is not None:
                snippet = sn.get_text(" ", strip=True)

        hits.append(SearchHit(title=title, url=href, snippet=snippet))
        if len(hits) >= k:
            break
    return hits


async def duckduckgo_search(query: str, *, client: httpx.AsyncClient, k: int = 5) -> list[SearchHit]:
    q = str(query or "").strip()
    if not q:
        raise WebToolError("query must be a non-empty string")

    headers = {"user-agent": USER_AGENT, "accept": "text/html"}
    try:
        resp = await client.get(DUCKDUCKGO_URL, params={"q": q}, headers=headers, follow_redirects=True)
    except (httpx.TimeoutException, httpx.HTTPError) as e:
        raise WebToolError(f"DuckDuckGo failed: {type(e).__name__}: {e}") from e
    if resp.status_code >= 400:
        raise WebToolError(f"DuckDuckGo failed ({resp.status_code}): {resp.text[:400]}")
    return parse_duckduckgo_results(resp.text, k)


class GoogleSearchTransport:
    name = "google"

    def __init__(self, client: httpx.AsyncClient, *, api_key: str, engine_id: str, k: int = 5) -> None:
        self.client = client
        self.api_key = api_key
        self.engine_id = engine_id
        self.k = k

    async def search(self, query: str) -> list[SearchHit]:
        return await google_search(query, api_key=self.api_key, engine_id=self.engine_id, client=self.client, k=self.k)


class DuckDuckGoTransport:
    name = "duckduckgo"

    def __init__(self, client: httpx.AsyncClient, *, k: int = 5) -> None:
        self.client = client
        self.k = k

    async def search(self, query: str) -> list[SearchHit]:
        return await duckduckgo_search(query, client=self.client, k=self.k)


def build_search_transport(
    client: httpx.AsyncClient,
    *,
    provider: str = SEARCH_PROVIDER,
    api_key: str | None = GOOGLE_SEARCH_API_KEY,
    engine_id: str | None = GOOGLE_SEARCH_ENGINE_ID,
    k: int = 5,
) -> SearchTransport:
    if provider == "google":
        if api_key and engine_id:
            return GoogleSearchTransport(client, api_key=api_key, engine_id=engine_id, k=k)
        log.warning("Google search key or engine id not set; using DuckDuckGo")
        return DuckDuckGoTransport(client, k=k)
    if provider == "duckduckgo":
        return DuckDuckGoTransport(client, k=k)
    raise ValueError(f"Unsupported search provider: {provider}")
