"""Link ingestion: external document links and web pages -> extracted text.

Hosted pitch-deck links (DocSend) may sit behind an email gate. The resolution
order is: direct fetch, form bypass with the access email, per-page
``/page_data/N`` endpoints, the page's own readable HTML, and finally a
server-side text-rendering mirror.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
from duckduckgo_search import DDGS
from duckduckgo_search.exceptions import DuckDuckGoSearchException, RatelimitException
from lxml import etree, html as lxml_html

from dealdesk.schemas import LinkIngestStatus

log = logging.getLogger(__name__)

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0 Safari/537.36"
)
_HEADERS = {
    "User-Agent": _USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}
_TIMEOUT = 15.0
_MIRROR_TIMEOUT = 20.0
_MAX_TEXT = 50_000
_MAX_PAGES = 120
_MIN_CONTENT = 180
_MIRROR_PREFIX = "https://r.jina.ai/http://"

_GATE_PHRASES = ("enter your email", "email address", "requires your email", "continue to document")
_ERROR_PATTERNS = (
    "content unavailable",
    "this content is no longer available",
    "there was an error loading part of this content",
    "please enable cookies then reload the page",
    "if you see this error again",
)
_PLACEHOLDER_RE = re.compile(r"^external document link:\s*https?://", re.IGNORECASE)
_BOILERPLATE_RE = re.compile(r"\b(docsend privacy policy|powered by docsend|please enable cookies)\b", re.IGNORECASE)
_PAGE_DATA_RE = re.compile(r"/page_data/(\d+)", re.IGNORECASE)
_SIGNAL_KEY_RE = re.compile(r"(text|content|title|caption|ocr|transcript|speaker)", re.IGNORECASE)
_STRIP_XPATH = "//script|//style|//nav|//footer|//header|//noscript|//iframe"


@dataclass
class LinkIngestResult:
    status: LinkIngestStatus
    text: str = ""
    resolved_url: str = ""
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status == "ingested"


@dataclass
class WebPage:
    url: str
    title: str
    description: str
    text: str


# ---------------------------------------------------------------------------
# Text heuristics
# ---------------------------------------------------------------------------


def _squash(text: str | None) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def normalize_url(raw: str) -> str:
    raw = (raw or "").strip()
    if not raw:
        return ""
    if re.match(r"^https?://", raw, re.IGNORECASE):
        return raw
    return f"https://{raw}"


def is_docsend_url(url: str) -> bool:
    return (urlparse(url).hostname or "").lower().endswith("docsend.com")


def looks_like_email_gate(html: str) -> bool:
    lower = html.lower()
    return "docsend" in lower and any(p in lower for p in _GATE_PHRASES)


def looks_like_broken_content(text: str) -> bool:
    normalized = _squash(text).lower()
    if len(normalized) < _MIN_CONTENT:
        return True
    return any(p in normalized for p in _ERROR_PATTERNS)


def is_low_quality_link_content(text: str | None) -> bool:
    """True when extracted link text is a placeholder, an error view or boilerplate."""
    normalized = _squash(text)
    if not normalized:
        return True
    if _PLACEHOLDER_RE.match(normalized):
        return True
    if looks_like_broken_content(normalized):
        return True
    return bool(_BOILERPLATE_RE.search(normalized))


def _clip(text: str) -> str:
    return f"{text[:_MAX_TEXT]}... [content truncated]" if len(text) > _MAX_TEXT else text


def _parse_html(raw_html: str):
    try:
        return lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return None


def strip_html(raw_html: str) -> str:
    tree = _parse_html(raw_html)
    if tree is None:
        return ""
    for el in tree.xpath(_STRIP_XPATH):
        el.drop_tree()
    body = tree.xpath("//body")
    return _squash((body[0] if body else tree).text_content())


def extract_page(url: str, raw_html: str) -> WebPage:
    tree = _parse_html(raw_html)
    if tree is None:
        return WebPage(url=url, title="External Document", description="", text="")
    title = _squash(" ".join(tree.xpath("//title//text()")))
    if not title:
        title = _squash(" ".join(tree.xpath("//meta[@property='og:title']/@content"))) or "External Document"
    description = _squash(" ".join(
        tree.xpath("//meta[@name='description']/@content") or tree.xpath("//meta[@property='og:description']/@content")
    ))
    return WebPage(url=url, title=title, description=description, text=strip_html(raw_html))


def render_page(page: WebPage) -> str:
    lines = [f"# {page.title}"]
    if page.description:
        lines.append(f"\n**Description**: {page.description}")
    lines.append(f"**URL**: {page.url}")
    lines.append("")
    lines.append("## Extracted Content")
    lines.append(_clip(page.text) or "[No readable body text found]")
    return "\n".join(lines).strip()


def _render_docsend(url: str, text: str) -> str:
    return f"# DocSend\n**URL**: {url}\n\n## Extracted Content\n{_clip(text)}"


def page_data_numbers(raw_html: str) -> list[int]:
    nums = {int(m) for m in _PAGE_DATA_RE.findall(raw_html) if int(m) > 0}
    return sorted(nums)[:_MAX_PAGES]


def collect_json_text(value, bucket: list[str] | None = None) -> list[str]:
    """Strings of 20+ chars under text-like keys, depth first."""
    bucket = [] if bucket is None else bucket
    if isinstance(value, str):
        text = _squash(value)
        if len(text) >= 20:
            bucket.append(text)
    elif isinstance(value, list):
        for item in value:
            collect_json_text(item, bucket)
    elif isinstance(value, dict):
        for key, item in value.items():
            if _SIGNAL_KEY_RE.search(str(key)) or isinstance(item, (dict, list)):
                collect_json_text(item, bucket)
    return bucket


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


class LinkIngestor:
    """Fetches links over httpx; ``transport`` lets tests plug in ``httpx.MockTransport``."""

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = _TIMEOUT,
        mirror_timeout: float = _MIRROR_TIMEOUT,
    ):
        self._transport = transport
        self._timeout = timeout
        self._mirror_timeout = mirror_timeout

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(timeout or self._timeout),
            headers=_HEADERS,
            transport=self._transport,
        )

    async def fetch_page(self, url: str) -> WebPage:
        url = normalize_url(url)
        async with self._client() as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return extract_page(str(resp.url), resp.text)

    async def ingest(self, raw_url: str, access_email: str | None = None) -> LinkIngestResult:
        url = normalize_url(raw_url)
        if not url:
            return LinkIngestResult(status="failed", message="Empty external URL")
        try:
            if is_docsend_url(url):
                return await self._ingest_docsend(url, (access_email or "").strip() or None)
            page = await self.fetch_page(url)
        except httpx.HTTPError as exc:
            log.warning("Link ingestion failed for %s: %s", url, exc)
            return LinkIngestResult(status="failed", resolved_url=url, message=f"Failed to fetch external URL: {exc}")
        return LinkIngestResult(status="ingested", text=render_page(page), resolved_url=page.url)

    async def _ingest_docsend(self, url: str, access_email: str | None) -> LinkIngestResult:
        async with self._client(self._mirror_timeout) as client:
            initial = await client.get(url)
            if initial.status_code >= 400:
                return LinkIngestResult(status="failed", resolved_url=url,
                                        message=f"DocSend fetch failed: HTTP {initial.status_code}")
            resolved = str(initial.url)
            initial_html = initial.text
            gated = looks_like_email_gate(initial_html)

            if gated and access_email:
                for field in ("email", "emailAddress", "visitor_email"):
                    try:
                        posted = await client.post(url, data={field: access_email}, headers={"Referer": url})
                    except httpx.HTTPError as exc:
                        log.debug("DocSend form post (%s) failed: %s", field, exc)
                        continue
                    if posted.status_code < 400 and not looks_like_email_gate(posted.text):
                        page = extract_page(str(posted.url), posted.text)
                        return LinkIngestResult(status="ingested", text=render_page(page), resolved_url=page.url)

            if gated and not access_email:
                return LinkIngestResult(
                    status="email_required", resolved_url=resolved,
                    message="DocSend link appears email-gated. Provide an access email to attempt ingestion.",
                )

            page_text = await self._page_data_text(client, resolved, initial_html)
            if page_text and not looks_like_broken_content(page_text):
                return LinkIngestResult(status="ingested", text=_render_docsend(resolved, page_text),
                                        resolved_url=resolved)

        readable = render_page(extract_page(resolved, initial_html))
        if not looks_like_broken_content(readable):
            return LinkIngestResult(status="ingested", text=readable, resolved_url=resolved)

        mirror = await self._mirror(resolved)
        if mirror.success:
            return mirror
        return LinkIngestResult(
            status="email_required" if gated else "failed",
            resolved_url=resolved,
            message=mirror.message or (
                "DocSend link appears gated or inaccessible. Provide access email or a direct deck URL."
                if gated else "DocSend page rendered an unavailable/error view instead of document content."
            ),
        )

    async def _page_data_text(self, client: httpx.AsyncClient, url: str, raw_html: str) -> str:
        numbers = page_data_numbers(raw_html)
        if not numbers:
            return ""
        base = url.rstrip("/")
        headers = {"Referer": url, "X-Requested-With": "XMLHttpRequest"}

        async def fetch(n: int) -> str:
            resp = await client.get(f"{base}/page_data/{n}", headers=headers, timeout=self._timeout)
            if resp.status_code >= 400 or not resp.text:
                return ""
            try:
                signals = collect_json_text(json.loads(resp.text))
                extracted = " ".join(dict.fromkeys(signals))
            except ValueError:
                extracted = strip_html(resp.text)
            extracted = _squash(extracted)
            if not extracted or looks_like_broken_content(extracted):
                return ""
            return f"[Page {n}] {extracted}"

        results = await asyncio.gather(*(fetch(n) for n in numbers), return_exceptions=True)
        chunks = []
        for n, result in zip(numbers, results):
            if isinstance(result, Exception):
                log.debug("DocSend page %d failed: %s", n, result)
            elif result:
                chunks.append(result)
        return "\n\n".join(chunks).strip()

    async def _mirror(self, url: str) -> LinkIngestResult:
        mirror_url = _MIRROR_PREFIX + re.sub(r"^https?://", "", url, flags=re.IGNORECASE)
        try:
            async with self._client(self._mirror_timeout) as client:
                resp = await client.get(mirror_url)
        except httpx.HTTPError as exc:
            log.warning("Mirror fetch failed for %s: %s", url, exc)
            return LinkIngestResult(status="failed", resolved_url=url, message=f"DocSend mirror fetch failed: {exc}")
        if resp.status_code >= 400:
            return LinkIngestResult(status="failed", resolved_url=url,
                                    message=f"DocSend mirror fetch failed: HTTP {resp.status_code}")
        text = _squash(resp.text)
        if looks_like_broken_content(text):
            return LinkIngestResult(status="failed", resolved_url=url,
                                    message="DocSend content appears unavailable from mirror fetch")
        return LinkIngestResult(status="ingested", text=_render_docsend(url, text), resolved_url=url)


# ---------------------------------------------------------------------------
# Web search
# ---------------------------------------------------------------------------


class _DDGRateLimiter:
    """Minimum delay between DuckDuckGo searches, doubled on rate limit errors."""

    def __init__(self, min_delay: float = 2.0, max_delay: float = 60.0):
        self._lock = asyncio.Lock()
        self._min_delay = min_delay
        self._current_delay = min_delay
        self._max_delay = max_delay
        self._last_call = 0.0

    async def acquire(self) -> None:
        async with self._lock:
            wait = self._current_delay - (time.monotonic() - self._last_call)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()

    def backoff(self) -> None:
        self._current_delay = min(self._current_delay * 2, self._max_delay)
        log.warning("DDG rate limited, backing off to %.0fs between requests", self._current_delay)

    def reset(self) -> None:
        self._current_delay = self._min_delay


_ddg_limiter = _DDGRateLimiter()


def _ddg_text(query: str, max_results: int) -> list[dict]:
    return list(DDGS().text(query, max_results=max_results) or [])


async def search_web(query: str, max_results: int = 5) -> list[dict[str, str]]:
    """``[{title, link, snippet}]``; empty on rate limiting or search errors."""
    if not query.strip():
        return []
    await _ddg_limiter.acquire()
    try:
        results = await asyncio.to_thread(_ddg_text, query, max_results)
    except RatelimitException:
        _ddg_limiter.backoff()
        log.warning("DDG rate limited for query=%r, skipping", query)
        return []
    except DuckDuckGoSearchException as exc:
        log.warning("DDG search failed for %r: %s", query, exc)
        return []
    _ddg_limiter.reset()
    return [
        {"title": r.get("title", ""), "link": r.get("href", ""), "snippet": r.get("body", "")}
        for r in results if r.get("href")
    ]
