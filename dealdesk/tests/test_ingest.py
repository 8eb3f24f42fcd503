"""Tests for link ingestion: page rendering, DocSend gate handling, text quality checks."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from duckduckgo_search.exceptions import RatelimitException

from dealdesk.ingest import (
    LinkIngestor,
    collect_json_text,
    is_low_quality_link_content,
    normalize_url,
    page_data_numbers,
    search_web,
)

_BODY = "Acme builds billing infrastructure for mid-market logistics operators. " * 5

_PAGE = f"""<html><head><title>Acme | Billing</title>
<meta name="description" content="Billing for logistics"></head>
<body><nav>Home About</nav><script>var tracking = 1;</script><p>{_BODY}</p><footer>Copyright</footer></body></html>"""

_GATE = """<html><body><h1>DocSend</h1><form>Please enter your email to continue to document
<input name="email"></form></body></html>"""


def _ingestor(handler) -> LinkIngestor:
    return LinkIngestor(transport=httpx.MockTransport(handler))


def test_normalize_url():
    assert normalize_url("acme.io/deck") == "https://acme.io/deck"
    assert normalize_url("HTTP://acme.io") == "HTTP://acme.io"
    assert normalize_url("  ") == ""


# ---------------------------------------------------------------------------
# Plain pages
# ---------------------------------------------------------------------------


class TestWebPages:
    @pytest.mark.asyncio
    async def test_page_is_rendered(self):
        result = await _ingestor(lambda request: httpx.Response(200, html=_PAGE)).ingest("acme.io/about")
        assert result.success
        assert result.resolved_url == "https://acme.io/about"
        assert result.text.startswith("# Acme | Billing")
        assert "**Description**: Billing for logistics" in result.text
        assert "Acme builds billing infrastructure" in result.text
        assert "tracking" not in result.text
        assert "Home About" not in result.text

    @pytest.mark.asyncio
    async def test_http_error_fails(self):
        result = await _ingestor(lambda request: httpx.Response(404)).ingest("https://acme.io/missing")
        assert result.status == "failed"
        assert result.message.startswith("Failed to fetch external URL")

    @pytest.mark.asyncio
    async def test_empty_url(self):
        result = await _ingestor(lambda request: httpx.Response(200)).ingest("  ")
        assert result.status == "failed"
        assert result.message == "Empty external URL"


# ---------------------------------------------------------------------------
# DocSend
# ---------------------------------------------------------------------------


class TestDocSend:
    @pytest.mark.asyncio
    async def test_gate_without_email(self):
        result = await _ingestor(lambda request: httpx.Response(200, html=_GATE)).ingest(
            "https://docsend.com/view/abc",
        )
        assert result.status == "email_required"
        assert "access email" in result.message

    @pytest.mark.asyncio
    async def test_gate_passed_with_email(self):
        posted = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                posted.append(request.content.decode())
                return httpx.Response(200, html=f"<html><title>Acme Deck</title><body>{_BODY}</body></html>")
            return httpx.Response(200, html=_GATE)

        result = await _ingestor(handler).ingest("https://docsend.com/view/abc", access_email="vc@fund.test")
        assert result.success
        assert "Acme builds billing" in result.text
        assert posted == ["email=vc%40fund.test"]

    @pytest.mark.asyncio
    async def test_page_data_endpoints(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if "/page_data/" in request.url.path:
                n = request.url.path.rsplit("/", 1)[-1]
                return httpx.Response(200, text=json.dumps({"pages": [{"text": f"Slide {n}. {_BODY}"}]}))
            return httpx.Response(200, html='<div data-src="/page_data/2"></div><div data-src="/page_data/1"></div>')

        result = await _ingestor(handler).ingest("https://docsend.com/view/abc")
        assert result.success
        assert result.text.startswith("# DocSend")
        assert result.text.index("[Page 1]") < result.text.index("[Page 2]")

    @pytest.mark.asyncio
    async def test_unavailable_everywhere(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "r.jina.ai":
                return httpx.Response(500)
            return httpx.Response(200, html="<html><body>Content unavailable</body></html>")

        result = await _ingestor(handler).ingest("https://docsend.com/view/abc")
        assert result.status == "failed"
        assert result.message == "DocSend mirror fetch failed: HTTP 500"

    @pytest.mark.asyncio
    async def test_mirror_fallback(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "r.jina.ai":
                return httpx.Response(200, text=_BODY)
            return httpx.Response(200, html="<html><body>Loading...</body></html>")

        result = await _ingestor(handler).ingest("https://docsend.com/view/abc")
        assert result.success
        assert result.resolved_url == "https://docsend.com/view/abc"
        assert "Acme builds billing" in result.text


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------


class TestQuality:
    @pytest.mark.parametrize("text", [
        None,
        "",
        "External document link: https://docsend.com/view/abc",
        "Too short to be a deck",
        _BODY + " Powered by DocSend",
        _BODY + " This content is no longer available",
    ])
    def test_low_quality(self, text):
        assert is_low_quality_link_content(text)

    def test_real_content(self):
        assert not is_low_quality_link_content(_BODY)


def test_page_data_numbers_are_sorted_and_unique():
    assert page_data_numbers("/page_data/3 /page_data/1 /page_data/3 /page_data/0") == [1, 3]


def test_collect_json_text_keeps_text_like_keys():
    payload = {"id": "a-very-long-identifier-value", "content": "Revenue grew to two million dollars",
               "nested": [{"caption": "Team of ex-Stripe engineers and operators"}]}
    assert collect_json_text(payload) == [
        "Revenue grew to two million dollars", "Team of ex-Stripe engineers and operators",
    ]


# ---------------------------------------------------------------------------
# Web search
# ---------------------------------------------------------------------------


class TestSearchWeb:
    @pytest.mark.asyncio
    async def test_results_are_mapped(self):
        rows = [{"title": "Acme", "href": "https://acme.io", "body": "Billing"}, {"title": "no link"}]
        limiter = MagicMock(acquire=AsyncMock())
        with patch("dealdesk.ingest._ddg_limiter", limiter), patch("dealdesk.ingest._ddg_text", return_value=rows):
            assert await search_web("acme") == [{"title": "Acme", "link": "https://acme.io", "snippet": "Billing"}]
        limiter.reset.assert_called_once()

    @pytest.mark.asyncio
    async def test_rate_limit_returns_empty(self):
        limiter = MagicMock(acquire=AsyncMock())
        with patch("dealdesk.ingest._ddg_limiter", limiter), \
                patch("dealdesk.ingest._ddg_text", side_effect=RatelimitException("202 Ratelimit")):
            assert await search_web("acme") == []
        limiter.backoff.assert_called_once()

    @pytest.mark.asyncio
    async def test_blank_query(self):
        assert await search_web("  ") == []
