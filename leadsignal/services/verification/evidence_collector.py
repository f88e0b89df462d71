"""Gathers deduplicated evidence for a signal from the web and search providers."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol, TypeVar
from urllib.parse import urlparse

from leadsignal.clients.contracts import ScrapeProvider, SearchProvider, SearchResult
from leadsignal.config import settings
from leadsignal.models.verification import Evidence, EvidenceSourceType
from leadsignal.observability.metrics import metrics
from leadsignal.services.verification.cache import CachedPage, hash_content, normalize_url
from leadsignal.services.verification.weights import normalize_domain

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

MAX_OUTBOUND_LINKS = 3
MIN_EVIDENCE_BEFORE_SCRAPE = 3
JOB_SEARCH_RESULTS = 2

OFFICIAL_PATHS: tuple[tuple[str, EvidenceSourceType], ...] = (
    ("/press", "company_press"),
    ("/news", "company_newsroom"),
    ("/newsroom", "company_newsroom"),
    ("/about", "company_about"),
    ("/about-us", "company_about"),
    ("/careers", "company_careers"),
    ("/jobs", "company_careers"),
)

SOCIAL_DOMAINS = frozenset(
    {"facebook.com", "twitter.com", "x.com", "instagram.com", "linkedin.com", "youtube.com", "tiktok.com"}
)
JOB_BOARD_DOMAINS = frozenset(
    {"indeed.com", "glassdoor.com", "lever.co", "greenhouse.io", "workday.com", "myworkdayjobs.com"}
)
REGISTRY_DOMAINS = frozenset({"opencorporates.com", "dnb.com", "companieshouse.gov.uk"})
PUBLISHER_NAMES: dict[str, str] = {
    "techcrunch.com": "TechCrunch",
    "reuters.com": "Reuters",
    "bloomberg.com": "Bloomberg",
    "wsj.com": "The Wall Street Journal",
    "forbes.com": "Forbes",
    "venturebeat.com": "VentureBeat",
    "businesswire.com": "Business Wire",
    "prnewswire.com": "PR Newswire",
    "globenewswire.com": "GlobeNewswire",
    "crunchbase.com": "Crunchbase",
}

SEARCH_QUERY_TEMPLATES: dict[str, str] = {
    "funding_round": '"{company}" funding OR raised OR series',
    "funding_raised": '"{company}" raised funding announcement',
    "funding_amount": '"{company}" funding amount million',
    "acquisition": '"{company}" acquisition OR acquired OR acquires',
    "acquisition_announced": '"{company}" acquisition OR acquired OR acquires',
    "ipo": '"{company}" IPO OR "initial public offering"',
    "ipo_announced": '"{company}" IPO OR "initial public offering"',
    "leadership_hire": '"{company}" hired OR appoints OR names new',
    "leadership_change": '"{company}" CEO OR executive OR leadership change',
    "expansion": '"{company}" expansion OR expands OR new office',
    "expansion_geographic": '"{company}" expansion OR expands OR new office',
    "product_launch": '"{company}" launches OR announces new product',
    "partnership": '"{company}" partnership OR partners with',
    "partnership_announced": '"{company}" partnership OR partners with',
    "hiring": '"{company}" hiring OR jobs OR careers growth',
    "hiring_initiative": '"{company}" hiring OR jobs OR careers growth',
    "layoff": '"{company}" layoffs OR layoff OR workforce reduction',
    "layoff_announced": '"{company}" layoffs OR layoff OR workforce reduction',
}
JOB_SEARCH_TEMPLATE = "{company} jobs site:lever.co OR site:greenhouse.io OR site:jobs.ashbyhq.com"


class PageSource(Protocol):
    async def fetch(self, url: str) -> CachedPage:
        ...

    async def probe(self, url: str) -> bool:
        ...


@dataclass(frozen=True)
class CollectEvidenceOptions:
    company: str
    signal_type: str
    rss_article_url: str
    domain: str | None = None
    rss_article_content: str | None = None
    max_third_party_sources: int = 3


@dataclass(frozen=True)
class CollectionStats:
    search_requests_made: int = 0
    scrape_requests_made: int = 0
    fallback_fetches_made: int = 0
    sources_queried: int = 0


@dataclass(frozen=True)
class CollectEvidenceResult:
    evidence: list[Evidence]
    stats: CollectionStats
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Candidate:
    url: str
    title: str
    text: str
    source_type: EvidenceSourceType
    published_at: str | None = None
    is_official: bool = False


class _CollectionRun:
    """Mutable bookkeeping for a single collect() call."""

    def __init__(self, options: CollectEvidenceOptions, concurrency: int) -> None:
        self.options = options
        self.domain = normalize_domain(options.domain)
        self.seed_key = normalize_url(options.rss_article_url)
        self.semaphore = asyncio.Semaphore(concurrency)
        self.search_requests = 0
        self.scrape_requests = 0
        self.page_fetches = 0
        self.errors: list[str] = []

    def record_error(self, source: str, exc: BaseException) -> None:
        message = f"{source}: {exc}"
        self.errors.append(message)
        logger.warning(
            "verification.evidence.source_failed",
            extra={"source": source, "error": type(exc).__name__, "code": getattr(exc, "code", None)},
        )

    def stats(self) -> CollectionStats:
        return CollectionStats(
            search_requests_made=self.search_requests,
            scrape_requests_made=self.scrape_requests,
            fallback_fetches_made=self.page_fetches,
            sources_queried=self.search_requests + self.scrape_requests + self.page_fetches,
        )


class _EvidenceBag:
    """Ordered evidence list that rejects near-duplicate content."""

    def __init__(self, *, company_domain: str) -> None:
        self._company_domain = company_domain
        self._items: list[Evidence] = []
        self._hashes: set[str] = set()

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> list[Evidence]:
        return list(self._items)

    def add_all(self, candidates: Iterable[_Candidate]) -> None:
        for candidate in candidates:
            self.add(candidate)

    def add(self, candidate: _Candidate) -> bool:
        body = candidate.text.strip() or candidate.title.strip()
        if not body:
            return False
        content_hash = hash_content(body)
        if content_hash in self._hashes:
            logger.debug("verification.evidence.duplicate", extra={"url": candidate.url})
            return False
        self._hashes.add(content_hash)
        publisher = publisher_for(candidate.url)
        self._items.append(
            Evidence(
                id=f"ev_{len(self._items) + 1}",
                url=candidate.url,
                canonical_url=normalize_url(candidate.url),
                title=candidate.title,
                snippet=body,
                full_text=candidate.text or None,
                source_type=candidate.source_type,
                publisher=publisher,
                published_at=candidate.published_at,
                fetched_at=datetime.now(UTC),
                content_hash=content_hash,
                is_official=candidate.is_official
                or bool(self._company_domain and _host_matches(_host(candidate.url), self._company_domain)),
            )
        )
        return True


class EvidenceCollector:
    """Collects evidence from the seed article, its links, official pages, and search."""

    def __init__(
        self,
        *,
        fetcher: PageSource,
        search_provider: SearchProvider | None = None,
        scrape_provider: ScrapeProvider | None = None,
        concurrency: int | None = None,
    ) -> None:
        resolved = concurrency if concurrency is not None else settings.verification_fetch_concurrency
        if resolved < 1:
            raise ValueError("concurrency must be >= 1")
        self._fetcher = fetcher
        self._search = search_provider
        self._scrape = scrape_provider
        self._concurrency = resolved

    async def collect(self, options: CollectEvidenceOptions) -> CollectEvidenceResult:
        run = _CollectionRun(options, self._concurrency)
        bag = _EvidenceBag(company_domain=run.domain)
        start = time.perf_counter()

        seed_candidates, seed_page = await self._collect_seed(run)
        outbound, official, search, jobs = await asyncio.gather(
            self._collect_outbound(run, seed_page),
            self._collect_official(run),
            self._collect_search(run),
            self._collect_jobs(run),
        )
        for group in (seed_candidates, outbound, official, search, jobs):
            bag.add_all(group)

        if len(bag) < MIN_EVIDENCE_BEFORE_SCRAPE and self._scrape is not None:
            bag.add_all(await self._collect_scrape(run))

        duration_ms = (time.perf_counter() - start) * 1000
        stats = run.stats()
        metrics.timing("evidence.collection_ms", duration_ms, tags={"signal_type": options.signal_type})
        metrics.gauge("evidence.items", len(bag), tags={"signal_type": options.signal_type})
        logger.info(
            "verification.evidence.collected",
            extra={
                "company": options.company,
                "evidence_count": len(bag),
                "errors": len(run.errors),
                "search_requests": stats.search_requests_made,
                "duration_ms": f"{duration_ms:.2f}",
            },
        )
        return CollectEvidenceResult(evidence=bag.items, stats=stats, errors=list(run.errors))

    async def _collect_seed(self, run: _CollectionRun) -> tuple[list[_Candidate], CachedPage | None]:
        url = run.options.rss_article_url
        page: CachedPage | None = None
        run.page_fetches += 1
        try:
            page = await self._bounded(run, self._fetcher.fetch(url))
        except Exception as exc:  # noqa: BLE001 - any source failure is non-fatal
            run.record_error("seed", exc)

        content = (run.options.rss_article_content or "").strip() or (page.content if page else "")
        if not content:
            return [], page
        candidate = _Candidate(
            url=url,
            title=page.title if page else "",
            text=content,
            source_type="rss_article",
        )
        return [candidate], page

    async def _collect_outbound(self, run: _CollectionRun, seed_page: CachedPage | None) -> list[_Candidate]:
        if seed_page is None:
            return []
        links = select_outbound_links(seed_page.links, seed_url=run.options.rss_article_url)
        if not links:
            return []
        run.page_fetches += len(links)
        outcomes = await self._gather(run, [self._fetcher.fetch(link) for link in links])
        candidates: list[_Candidate] = []
        for link, outcome in zip(links, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                run.record_error(f"outbound {link}", outcome)
                continue
            candidates.append(
                _Candidate(
                    url=link,
                    title=outcome.title,
                    text=outcome.content,
                    source_type=classify_source_type(link),
                )
            )
        return candidates

    async def _collect_official(self, run: _CollectionRun) -> list[_Candidate]:
        if not run.domain:
            return []
        targets = [(f"https://{run.domain}{path}", source_type) for path, source_type in OFFICIAL_PATHS]
        probes = await self._gather(run, [self._fetcher.probe(url) for url, _ in targets])
        live = [
            (url, source_type)
            for (url, source_type), outcome in zip(targets, probes, strict=True)
            if outcome is True
        ]
        if not live:
            return []
        run.page_fetches += len(live)
        pages = await self._gather(run, [self._fetcher.fetch(url) for url, _ in live])
        candidates: list[_Candidate] = []
        for (url, source_type), outcome in zip(live, pages, strict=True):
            if isinstance(outcome, BaseException):
                run.record_error(f"official {url}", outcome)
                continue
            candidates.append(
                _Candidate(
                    url=url,
                    title=outcome.title,
                    text=outcome.content,
                    source_type=source_type,
                    is_official=True,
                )
            )
        return candidates

    async def _collect_search(self, run: _CollectionRun) -> list[_Candidate]:
        if self._search is None or run.options.max_third_party_sources <= 0:
            return []
        query = build_search_query(run.options.company, run.options.signal_type)
        results = await self._run_search(run, query, max_results=run.options.max_third_party_sources, label="search")
        return [
            _Candidate(
                url=result.url,
                title=result.title,
                text=result.snippet,
                source_type=classify_source_type(result.url),
                published_at=result.published_date,
            )
            for result in results
        ]

    async def _collect_jobs(self, run: _CollectionRun) -> list[_Candidate]:
        if self._search is None or not run.domain or "hiring" not in run.options.signal_type.lower():
            return []
        query = JOB_SEARCH_TEMPLATE.format(company=run.options.company)
        results = await self._run_search(run, query, max_results=JOB_SEARCH_RESULTS, label="job_search")
        return [
            _Candidate(
                url=result.url,
                title=result.title,
                text=result.snippet,
                source_type="jobs_board",
                published_at=result.published_date,
            )
            for result in results
        ]

    async def _run_search(
        self,
        run: _CollectionRun,
        query: str,
        *,
        max_results: int,
        label: str,
    ) -> list[SearchResult]:
        assert self._search is not None
        run.search_requests += 1
        try:
            response = await self._bounded(run, self._search.search(query, max_results=max_results))
        except Exception as exc:  # noqa: BLE001 - any source failure is non-fatal
            run.record_error(label, exc)
            return []
        return [
            result
            for result in response.results
            if result.url and normalize_url(result.url) != run.seed_key
        ]

    async def _collect_scrape(self, run: _CollectionRun) -> list[_Candidate]:
        assert self._scrape is not None
        url = run.options.rss_article_url
        run.scrape_requests += 1
        try:
            response = await self._bounded(run, self._scrape.scrape(url))
        except Exception as exc:  # noqa: BLE001 - any source failure is non-fatal
            run.record_error("scrape", exc)
            return []
        if not response.success or response.data is None or not response.data.markdown.strip():
            run.errors.append(f"scrape: {response.error or 'empty scrape result'}")
            return []
        metadata = response.data.metadata or {}
        return [
            _Candidate(
                url=url,
                title=str(metadata.get("title") or ""),
                text=response.data.markdown,
                source_type="rss_article",
                published_at=_metadata_published(metadata),
            )
        ]

    async def _bounded(self, run: _CollectionRun, awaitable: Awaitable[_T]) -> _T:
        async with run.semaphore:
            return await awaitable

    async def _gather(self, run: _CollectionRun, awaitables: Sequence[Awaitable[_T]]) -> list[_T | BaseException]:
        return await asyncio.gather(
            *(self._bounded(run, awaitable) for awaitable in awaitables),
            return_exceptions=True,
        )


def build_search_query(company: str, signal_type: str) -> str:
    template = SEARCH_QUERY_TEMPLATES.get(signal_type.strip().lower())
    if template is None:
        return f'"{company}" {signal_type}'
    return template.format(company=company)


def select_outbound_links(links: Iterable[str], *, seed_url: str, limit: int = MAX_OUTBOUND_LINKS) -> list[str]:
    """Pick the first non-social, non-self links from a page."""
    seed_key = normalize_url(seed_url)
    selected: list[str] = []
    seen: set[str] = set()
    for link in links:
        key = normalize_url(link)
        if key == seed_key or key in seen:
            continue
        host = _host(link)
        if not host or any(_host_matches(host, social) for social in SOCIAL_DOMAINS):
            continue
        seen.add(key)
        selected.append(link)
        if len(selected) >= limit:
            break
    return selected


def classify_source_type(url: str) -> EvidenceSourceType:
    """Infer an evidence source type from URL and domain heuristics."""
    host = _host(url)
    path = _path(url)

    if _host_matches(host, "sec.gov"):
        return "sec_filing"
    if (
        any(_host_matches(host, board) for board in JOB_BOARD_DOMAINS)
        or host == "jobs.ashbyhq.com"
        or (_host_matches(host, "linkedin.com") and path.startswith("/jobs"))
    ):
        return "jobs_board"
    if _host_matches(host, "crunchbase.com"):
        return "crunchbase"
    if _host_matches(host, "pitchbook.com"):
        return "pitchbook"
    if any(_host_matches(host, registry) for registry in REGISTRY_DOMAINS):
        return "registry"
    if _host_matches(host, "twitter.com") or _host_matches(host, "x.com"):
        return "social_official"
    if publisher_for(url) is not None:
        return "third_party_news"
    if "/newsroom" in path:
        return "company_newsroom"
    if "/press" in path or "/news" in path:
        return "company_press"
    if "/careers" in path or "/jobs" in path:
        return "company_careers"
    if "/about" in path:
        return "company_about"
    return "other"


def publisher_for(url: str) -> str | None:
    host = _host(url)
    for domain, name in PUBLISHER_NAMES.items():
        if _host_matches(host, domain):
            return name
    return None


def _host(url: str) -> str:
    return normalize_domain(url) if url else ""


def _path(url: str) -> str:
    try:
        return urlparse(url).path.lower()
    except ValueError:
        return ""


def _host_matches(host: str, domain: str) -> bool:
    return bool(host) and (host == domain or host.endswith(f".{domain}"))


def _metadata_published(metadata: dict[str, Any]) -> str | None:
    for key in ("publishedTime", "published_time", "article:published_time", "date"):
        value = metadata.get(key)
        if value:
            return str(value)
    return None
