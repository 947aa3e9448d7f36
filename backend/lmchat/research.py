from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable

import httpx

from .classifier import Classification, ResearchMode
from .logging_utils import get_logger
from .similarity import names_similar
from .web_tools import SearchHit, SearchTransport, WebToolError, scrape_page

log = get_logger(__name__)


class ResearchError(RuntimeError):
    pass


class ResearchTransportError(ResearchError):
    pass


class ResearchEmptyError(ResearchError):
    pass


@dataclass(frozen=True)
class ResearchResult:
    title: str
    url: str
    snippet: str
    scraped_content: str = ""


_PLATFORM_TEMPLATES = (
    '"{s}" site:linkedin.com',
    '"{s}" (site:twitter.com OR site:x.com)',
    '"{s}" site:facebook.com',
    '"{s}" site:instagram.com',
    '"{s}" site:tiktok.com',
    '"{s}" site:youtube.com',
    '"{s}" site:medium.com',
    '"{s}" site:substack.com',
    '"{s}" (personal website OR blog)',
    '"{s}" site:github.com',
    '"{s}" (news OR interview OR feature)',
)


def platform_queries(subject: str) -> list[str]:
    return [t.format(s=subject) for t in _PLATFORM_TEMPLATES]


def is_relevant(subject: str, result: ResearchResult) -> bool:
    if names_similar(subject, result.title):
        return True
    needle = subject.strip().lower()
    return bool(needle) and needle in f"{result.title} {result.snippet}".lower()


def dedupe_by_url(results: Iterable[ResearchResult]) -> list[ResearchResult]:
    # Later duplicates replace earlier ones but keep the first slot.
    by_url: dict[str, ResearchResult] = {}
    for r in results:
        by_url[r.url] = r
    return list(by_url.values())


class WebResearcher:
    def __init__(
        self,
        transport: SearchTransport,
        client: httpx.AsyncClient,
        *,
        scrape_chars: int = 2000,
    ) -> None:
        self.transport = transport
        self.client = client
        self.scrape_chars = scrape_chars

    async def _scrape(self, hit: SearchHit) -> ResearchResult:
        try:
            content = await scrape_page(hit.url, client=self.client, max_chars=self.scrape_chars)
        except WebToolError as e:
            log.warning("Scrape failed for %s: %s", hit.url, e)
            content = ""
        return ResearchResult(title=hit.title, url=hit.url, snippet=hit.snippet, scraped_content=content)

    async def search(self, query: str) -> list[ResearchResult]:
        """One search query, every hit scraped concurrently. Raises ``ResearchTransportError``."""
        try:
            hits = await self.transport.search(query)
        except WebToolError as e:
            raise ResearchTransportError(str(e)) from e
        if not hits:
            return []
        return list(await asyncio.gather(*(self._scrape(h) for h in hits)))

    async def _fan_out(self, queries: list[str]) -> list[ResearchResult]:
        settled = await asyncio.gather(*(self.search(q) for q in queries), return_exceptions=True)

        merged: list[ResearchResult] = []
        failures: list[BaseException] = []
        for q, res in zip(queries, settled):
            if isinstance(res, ResearchTransportError):
                log.warning("Search query failed (%s): %s", q, res)
                failures.append(res)
                continue
            if isinstance(res, BaseException):
                raise res
            merged.extend(res)

        if failures and len(failures) == len(queries):
            raise ResearchTransportError(str(failures[0])) from failures[0]
        return merged

    async def research(self, classification: Classification) -> list[ResearchResult]:
        mode = classification.mode
        if mode is ResearchMode.NONE:
            return []

        if mode is ResearchMode.GENERIC:
            query = classification.cleaned_query.strip()
            if not query:
                raise ResearchEmptyError("Nothing to search for.")
            log.info("Web search: %r", query)
            results = dedupe_by_url(await self.search(query))
            if not results:
                raise ResearchEmptyError(
                    "I couldn't find any search results for your query. Please try a different search term."
                )
            return results

        subject = (classification.subject or classification.cleaned_query).strip()
        queries = platform_queries(subject)
        log.info("Researching %r across %d queries (%s)", subject, len(queries), mode.value)

        merged = await self._fan_out(queries)
        results = dedupe_by_url(r for r in merged if is_relevant(subject, r))
        log.info("Kept %d of %d results for %r", len(results), len(merged), subject)

        if not results:
            log.info("No relevant results; trying a broad search for %r", subject)
            fallback = await self.search(subject)
            results = dedupe_by_url(r for r in fallback if is_relevant(subject, r))

        if not results:
            raise ResearchEmptyError(
                "I couldn't find any search results for your query. Please try a different search term."
            )
        return results
