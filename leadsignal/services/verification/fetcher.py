"""Plain HTTP page fetching with HTML title, text, and link extraction."""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from leadsignal.config import settings
from leadsignal.observability.metrics import metrics
from leadsignal.services.verification.cache import CachedPage, VerificationCache
from leadsignal.services.verification.errors import FetchError

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; LeadSignal/1.0)"
HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.5",
}
MAX_CONTENT_CHARS = 10_000
GET_FALLBACK_STATUSES = {405, 501}
_SKIPPED_HREF_PREFIXES = ("#", "javascript:", "mailto:", "tel:")


class PageFetcher:
    """Fetches pages through the shared URL cache."""

    def __init__(
        self,
        *,
        cache: VerificationCache | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        resolved_timeout = timeout if timeout is not None else settings.verification_fetch_timeout_seconds
        self._cache = cache
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(resolved_timeout),
            headers=HEADERS,
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def fetch(self, url: str) -> CachedPage:
        """Return the page at ``url``; raises FetchError when it is unavailable."""
        if self._cache is not None:
            cached = self._cache.get_url(url)
            if cached is not None:
                return cached

        start = time.perf_counter()
        try:
            response = await self._http.get(url, headers=HEADERS)
        except httpx.TimeoutException as exc:
            raise FetchError(f"Timed out fetching {url}", code="504_FETCH_TIMEOUT") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"Failed to fetch {url}: {exc}", code="520_FETCH_ERROR") from exc
        finally:
            metrics.timing("fetch.latency_ms", (time.perf_counter() - start) * 1000)

        if response.status_code >= 400:
            raise FetchError(f"HTTP {response.status_code} fetching {url}", code=f"{response.status_code}_HTTP_STATUS")

        title, text, links = parse_html(response.text, base_url=str(response.url))
        page = CachedPage(
            url=url,
            title=title,
            content=text,
            links=tuple(links),
            fetched_at=datetime.now(UTC),
            status_code=response.status_code,
        )
        if self._cache is not None:
            self._cache.set_url(url, page)
        return page

    async def probe(self, url: str) -> bool:
        """Cheap existence check: HEAD, falling back to GET where HEAD is refused."""
        try:
            response = await self._http.head(url, headers=HEADERS)
            if response.status_code in GET_FALLBACK_STATUSES:
                response = await self._http.get(url, headers=HEADERS)
        except httpx.HTTPError as exc:
            logger.debug("verification.fetch.probe_failed", extra={"url": url, "error": type(exc).__name__})
            return False
        return response.status_code < 400


def parse_html(html: str, *, base_url: str) -> tuple[str, str, list[str]]:
    """Return (title, visible text, absolute outbound links) for an HTML document."""
    soup = BeautifulSoup(html or "", "html.parser")
    title = soup.title.get_text(" ", strip=True) if soup.title else ""
    links = extract_links(soup, base_url=base_url)
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    text = " ".join(soup.get_text(" ", strip=True).split())
    return title, text[:MAX_CONTENT_CHARS], links


def extract_links(soup: BeautifulSoup, *, base_url: str) -> list[str]:
    links: list[str] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = str(anchor["href"]).strip()
        if not href or href.lower().startswith(_SKIPPED_HREF_PREFIXES):
            continue
        try:
            absolute = urljoin(base_url, href)
            scheme = urlparse(absolute).scheme
        except ValueError:
            continue
        if scheme not in ("http", "https"):
            continue
        if absolute in seen:
            continue
        seen.add(absolute)
        links.append(absolute)
    return links
