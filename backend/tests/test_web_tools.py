from __future__ import annotations

import httpx
import pytest

from lmchat.web_tools import (
    DuckDuckGoTransport,
    GoogleSearchTransport,
    WebToolError,
    build_search_transport,
    google_search,
    html_to_text,
    parse_duckduckgo_results,
    scrape_page,
)

DDG_HTML = """
<div class="result results_links">
  <a class="result__a" href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fexample.com%2Fa&amp;rut=x">Example A</a>
  <a class="result__snippet">First snippet</a>
</div>
<div class="result results_links">
  <a class="result__a" href="https://example.com/b">Example B</a>
</div>
<div class="result results_links">
  <a class="result__a" href="https://example.com/b">Example B again</a>
</div>
"""


def test_html_to_text_drops_scripts_and_collapses_space():
    html = "<html><head><style>p{}</style></head><body><p>Hello&nbsp; <b>there</b></p><script>x()</script></body></html>"
    assert html_to_text(html) == "Hello there"


def test_parse_duckduckgo_results():
    hits = parse_duckduckgo_results(DDG_HTML, k=5)
    assert [h.url for h in hits] == ["https://example.com/a", "https://example.com/b"]
    assert hits[0].snippet == "First snippet"
    assert parse_duckduckgo_results(DDG_HTML, k=1)[0].title == "Example A"


@pytest.mark.asyncio
async def test_google_search_maps_items():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["q"] == "python"
        assert request.url.params["cx"] == "cx1"
        return httpx.Response(
            200,
            json={"items": [{"title": " T ", "link": "http://t", "snippet": "s"}, {"title": "no link"}]},
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        hits = await google_search("python", api_key="k", engine_id="cx1", client=client)
    assert [(h.title, h.url, h.snippet) for h in hits] == [("T", "http://t", "s")]


@pytest.mark.asyncio
async def test_google_search_without_items_is_empty():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={}))) as client:
        assert await google_search("q", api_key="k", engine_id="e", client=client) == []


@pytest.mark.asyncio
async def test_google_search_reports_api_error_message():
    def handler(request):
        return httpx.Response(403, json={"error": {"message": "Daily limit exceeded"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(WebToolError, match="Daily limit exceeded"):
            await google_search("q", api_key="k", engine_id="e", client=client)


@pytest.mark.asyncio
async def test_scrape_page_truncates_and_rejects_binary():
    def handler(request):
        if request.url.path == "/img":
            return httpx.Response(200, headers={"content-type": "image/png"}, content=b"\x89PNG")
        if request.url.path == "/missing":
            return httpx.Response(404)
        return httpx.Response(200, headers={"content-type": "text/html"}, text="<p>" + "word " * 1000 + "</p>")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        text = await scrape_page("http://site/page", client=client, max_chars=50)
        assert len(text) == 50
        with pytest.raises(WebToolError, match="content-type"):
            await scrape_page("http://site/img", client=client)
        with pytest.raises(WebToolError, match="404"):
            await scrape_page("http://site/missing", client=client)
        with pytest.raises(WebToolError):
            await scrape_page("ftp://site/x", client=client)


@pytest.mark.asyncio
async def test_build_search_transport_selection():
    async with httpx.AsyncClient() as client:
        assert isinstance(build_search_transport(client, provider="google", api_key="k", engine_id="e"), GoogleSearchTransport)
        assert isinstance(build_search_transport(client, provider="google", api_key=None, engine_id="e"), DuckDuckGoTransport)
        assert isinstance(build_search_transport(client, provider="duckduckgo"), DuckDuckGoTransport)
        with pytest.raises(ValueError):
            build_search_transport(client, provider="bing")


@pytest.mark.asyncio
async def test_scrape_page_wraps_unparseable_url():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))) as client:
        with pytest.raises(WebToolError):
            await scrape_page("http://bad.example:99999x/", client=client)
