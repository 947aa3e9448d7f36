from __future__ import annotations

import asyncio

import httpx
import pytest

from lmchat.classifier import Classification, ResearchMode
from lmchat.research import (
    ResearchEmptyError,
    ResearchResult,
    ResearchTransportError,
    WebResearcher,
    dedupe_by_url,
    is_relevant,
    platform_queries,
)
from lmchat.web_tools import SearchHit, WebToolError


class FakeTransport:
    name = "fake"

    def __init__(self, responses=None, default=None):
        self.responses = responses or {}
        self.default = default if default is not None else []
        self.queries: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def search(self, query):
        self.queries.append(query)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            res = self.responses.get(query, self.default)
            if isinstance(res, Exception):
                raise res
            return list(res)
        finally:
            self.in_flight -= 1


def page_client(pages=None, failing=()):
    pages = pages or {}

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in failing:
            raise httpx.ConnectError("boom", request=request)
        html = pages.get(url, "<html><body><p>page body</p></body></html>")
        return httpx.Response(200, headers={"content-type": "text/html"}, text=html)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def person(subject="Jane Doe"):
    return Classification(mode=ResearchMode.PERSON_LOOKUP, cleaned_query=f"who is {subject}", subject=subject)


def test_platform_queries_cover_fixed_battery():
    qs = platform_queries("Jane Doe")
    assert len(qs) == 11
    assert qs[0] == '"Jane Doe" site:linkedin.com'
    assert qs[1] == '"Jane Doe" (site:twitter.com OR site:x.com)'
    assert '"Jane Doe" site:github.com' in qs
    assert qs[-1] == '"Jane Doe" (news OR interview OR feature)'


def test_relevance_by_similarity_or_substring():
    assert is_relevant("Jane Doe", ResearchResult(title="Jane Do", url="u", snippet=""))
    assert is_relevant("Jane Doe", ResearchResult(title="Profile", url="u", snippet="About JANE DOE here"))
    assert not is_relevant("Jane Doe", ResearchResult(title="John Roe", url="u", snippet="nothing"))


def test_dedupe_keeps_one_entry_per_url():
    a1 = ResearchResult(title="a1", url="http://a", snippet="")
    b = ResearchResult(title="b", url="http://b", snippet="")
    a2 = ResearchResult(title="a2", url="http://a", snippet="")
    out = dedupe_by_url([a1, b, a2])
    assert [r.url for r in out] == ["http://a", "http://b"]
    assert out[0].title == "a2"


@pytest.mark.asyncio
async def test_none_mode_does_no_io():
    transport = FakeTransport()
    async with page_client() as client:
        r = WebResearcher(transport, client)
        assert await r.research(Classification(mode=ResearchMode.NONE, cleaned_query="hi")) == []
    assert transport.queries == []


@pytest.mark.asyncio
async def test_generic_mode_issues_single_query_and_scrapes():
    transport = FakeTransport(default=[SearchHit(title="Py 3.13", url="http://py.org/a", snippet="release")])
    pages = {"http://py.org/a": "<html><script>x()</script><body>  Python   3.13 <b>released</b></body></html>"}
    async with page_client(pages) as client:
        r = WebResearcher(transport, client)
        out = await r.research(Classification(mode=ResearchMode.GENERIC, cleaned_query="python 3.13", subject="python 3.13"))
    assert transport.queries == ["python 3.13"]
    assert out == [ResearchResult(title="Py 3.13", url="http://py.org/a", snippet="release", scraped_content="Python 3.13 released")]


@pytest.mark.asyncio
async def test_generic_mode_with_no_hits_is_empty_error():
    async with page_client() as client:
        r = WebResearcher(FakeTransport(default=[]), client)
        with pytest.raises(ResearchEmptyError):
            await r.research(Classification(mode=ResearchMode.GENERIC, cleaned_query="zzz", subject="zzz"))


@pytest.mark.asyncio
async def test_person_mode_fans_out_filters_and_dedupes():
    hit = SearchHit(title="Jane Doe", url="http://linkedin.com/jane", snippet="Engineer")
    responses = {
        '"Jane Doe" site:linkedin.com': [hit, SearchHit(title="Other person", url="http://x", snippet="nope")],
        '"Jane Doe" site:github.com': [SearchHit(title="janedoe", url="http://linkedin.com/jane", snippet="jane doe on github")],
    }
    transport = FakeTransport(responses)
    async with page_client() as client:
        out = await WebResearcher(transport, client).research(person())

    assert len(transport.queries) == 11
    assert transport.max_in_flight > 1
    assert [r.url for r in out] == ["http://linkedin.com/jane"]
    assert len({r.url for r in out}) == len(out)


@pytest.mark.asyncio
async def test_scrape_failure_degrades_item_only():
    responses = {
        '"Jane Doe" site:linkedin.com': [
            SearchHit(title="Jane Doe", url="http://bad", snippet=""),
            SearchHit(title="Jane Doe", url="http://good", snippet=""),
        ]
    }
    async with page_client(failing={"http://bad"}) as client:
        out = await WebResearcher(FakeTransport(responses), client).research(person())
    by_url = {r.url: r for r in out}
    assert by_url["http://bad"].scraped_content == ""
    assert by_url["http://good"].scraped_content == "page body"


@pytest.mark.asyncio
async def test_failed_queries_are_isolated():
    responses = {q: WebToolError("quota") for q in platform_queries("Jane Doe")[1:]}
    responses['"Jane Doe" site:linkedin.com'] = [SearchHit(title="Jane Doe", url="http://in", snippet="")]
    async with page_client() as client:
        out = await WebResearcher(FakeTransport(responses), client).research(person())
    assert [r.url for r in out] == ["http://in"]


@pytest.mark.asyncio
async def test_all_queries_failing_is_transport_error():
    transport = FakeTransport(default=WebToolError("unreachable"))
    async with page_client() as client:
        with pytest.raises(ResearchTransportError):
            await WebResearcher(transport, client).research(person())


@pytest.mark.asyncio
async def test_falls_back_to_broad_subject_query():
    responses = {"Jane Doe": [SearchHit(title="Doe, Jane", url="http://bio", snippet="Jane Doe biography")]}
    transport = FakeTransport(responses, default=[SearchHit(title="Unrelated", url="http://u", snippet="")])
    async with page_client() as client:
        out = await WebResearcher(transport, client).research(person())
    assert transport.queries[-1] == "Jane Doe"
    assert len(transport.queries) == 12
    assert [r.url for r in out] == ["http://bio"]


@pytest.mark.asyncio
async def test_empty_after_fallback_raises():
    transport = FakeTransport(default=[SearchHit(title="Unrelated", url="http://u", snippet="")])
    async with page_client() as client:
        with pytest.raises(ResearchEmptyError):
            await WebResearcher(transport, client).research(person())
    assert len(transport.queries) == 12


@pytest.mark.asyncio
async def test_unparseable_link_only_empties_its_own_content():
    responses = {
        '"Jane Doe" site:linkedin.com': [
            SearchHit(title="Jane Doe", url="http://good", snippet=""),
            SearchHit(title="Jane Doe", url="http://bad.example:99999x/", snippet=""),
        ],
        '"Jane Doe" site:github.com': [SearchHit(title="Jane Doe", url="http://gh", snippet="")],
    }
    async with page_client() as client:
        out = await WebResearcher(FakeTransport(responses), client).research(person())
    by_url = {r.url: r for r in out}
    assert set(by_url) == {"http://good", "http://bad.example:99999x/", "http://gh"}
    assert by_url["http://bad.example:99999x/"].scraped_content == ""
    assert by_url["http://good"].scraped_content == "page body"
