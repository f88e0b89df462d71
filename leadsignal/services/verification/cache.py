"""TTL caches for fetched pages and prior claim verdicts."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Generic, TypeVar
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from leadsignal.models.verification import CacheStats, Claim, ClaimStatus
from leadsignal.observability.metrics import metrics

logger = logging.getLogger(__name__)

URL_CACHE_TTL_SECONDS = 24 * 60 * 60
CLAIM_CACHE_TTL_SECONDS = 8 * 60 * 60
TRACKING_PARAMS = frozenset(
    {"utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "ref", "source"}
)
CONTENT_HASH_PREFIX_CHARS = 500
HASH_LENGTH = 16

_V = TypeVar("_V")


@dataclass(frozen=True)
class CachedPage:
    """Fetched page content stored in the URL cache."""

    url: str
    title: str
    content: str
    links: tuple[str, ...]
    fetched_at: datetime
    status_code: int


@dataclass(frozen=True)
class CachedClaimVerdict:
    """Verdict for a previously verified claim, keyed by company and claim hash."""

    company_key: str
    claim_hash: str
    status: ClaimStatus
    confidence: float
    top_evidence_urls: tuple[str, ...]
    verified_at: datetime


@dataclass(frozen=True)
class CacheCleanupReport:
    urls_removed: int
    claims_removed: int


@dataclass(frozen=True)
class _CacheEntry(Generic[_V]):
    value: _V
    created_at: float
    expires_at: float


class TTLCache(Generic[_V]):
    """Lock-guarded key/value store whose entries expire after a fixed TTL."""

    def __init__(self, *, ttl_seconds: float, clock: Callable[[], float] = time.time) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CacheEntry[_V]] = {}
        self._hits = 0
        self._misses = 0
        self._lock = Lock()

    def get(self, key: str) -> _V | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if now >= entry.expires_at:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(self, key: str, value: _V) -> None:
        now = self._clock()
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, created_at=now, expires_at=now + self._ttl)

    def cleanup_expired(self) -> int:
        """Remove every entry past its expiry and return how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"hits": self._hits, "misses": self._misses, "size": len(self._entries)}


class VerificationCache:
    """Process-wide caches shared by every verification run."""

    def __init__(
        self,
        *,
        url_ttl_seconds: float = URL_CACHE_TTL_SECONDS,
        claim_ttl_seconds: float = CLAIM_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._urls: TTLCache[CachedPage] = TTLCache(ttl_seconds=url_ttl_seconds, clock=clock)
        self._claims: TTLCache[CachedClaimVerdict] = TTLCache(
            ttl_seconds=claim_ttl_seconds, clock=clock
        )

    def get_url(self, url: str) -> CachedPage | None:
        return self._urls.get(normalize_url(url))

    def set_url(self, url: str, page: CachedPage) -> None:
        self._urls.set(normalize_url(url), page)

    def get_claim(self, company: str, claim_hash: str) -> CachedClaimVerdict | None:
        return self._claims.get(claim_cache_key(company, claim_hash))

    def set_claim(self, company: str, claim_hash: str, verdict: CachedClaimVerdict) -> None:
        self._claims.set(claim_cache_key(company, claim_hash), verdict)

    def cleanup_expired(self) -> CacheCleanupReport:
        report = CacheCleanupReport(
            urls_removed=self._urls.cleanup_expired(),
            claims_removed=self._claims.cleanup_expired(),
        )
        if report.urls_removed or report.claims_removed:
            logger.info(
                "verification.cache.cleanup",
                extra={"urls_removed": report.urls_removed, "claims_removed": report.claims_removed},
            )
        return report

    def clear(self) -> None:
        self._urls.clear()
        self._claims.clear()

    def stats(self) -> dict[str, dict[str, int]]:
        return {"url": self._urls.stats, "claim": self._claims.stats}

    def verification_stats(self) -> CacheStats:
        url_stats = self._urls.stats
        claim_stats = self._claims.stats
        return CacheStats(
            url_hits=url_stats["hits"],
            url_misses=url_stats["misses"],
            claim_hits=claim_stats["hits"],
            claim_misses=claim_stats["misses"],
        )


class CacheSweeper:
    """Owned background task that periodically evicts expired cache entries."""

    def __init__(self, cache: VerificationCache, *, interval_seconds: float = 3600.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._cache = cache
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("verification.cache.sweeper_started", extra={"interval_seconds": self._interval})

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("verification.cache.sweeper_stopped")

    def sweep_once(self) -> CacheCleanupReport:
        report = self._cache.cleanup_expired()
        metrics.gauge("cache.urls_removed", report.urls_removed)
        metrics.gauge("cache.claims_removed", report.claims_removed)
        return report

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.sweep_once()


def normalize_url(url: str) -> str:
    """Strip tracking parameters, lowercase, and drop a trailing slash."""
    candidate = (url or "").strip()
    try:
        parsed = urlparse(candidate)
    except ValueError:
        return candidate.lower().rstrip("/")
    if parsed.scheme and parsed.netloc:
        filtered_query = [
            (key, value)
            for key, value in parse_qsl(parsed.query, keep_blank_values=True)
            if key.lower() not in TRACKING_PARAMS
        ]
        candidate = urlunparse(parsed._replace(query=urlencode(filtered_query, doseq=True)))
    return candidate.lower().rstrip("/")


def normalize_company(company: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (company or "").lower())


def claim_cache_key(company: str, claim_hash: str) -> str:
    return f"{normalize_company(company)}:{claim_hash}"


def hash_claim(claim: Claim) -> str:
    """Hash a claim so wording differences in case or whitespace collapse together."""
    entities = {
        key: " ".join(value.lower().split())
        for key, value in sorted(claim.entities.populated().items())
    }
    payload = {
        "type": claim.type,
        "statement": " ".join(claim.statement.lower().split()),
        "entities": entities,
    }
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def normalize_content(text: str) -> str:
    lowered = re.sub(r"[^\w\s]", " ", (text or "").lower())
    return " ".join(lowered.split())


def hash_content(text: str) -> str:
    """Hash the first 500 normalized characters of a document."""
    prefix = normalize_content(text)[:CONTENT_HASH_PREFIX_CHARS]
    return hashlib.sha256(prefix.encode("utf-8")).hexdigest()[:HASH_LENGTH]
