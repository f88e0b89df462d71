"""Orchestrates evidence collection, claim extraction, verification, and scoring."""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from leadsignal.clients.contracts import (
    CompletionUsage,
    ScrapeProvider,
    SearchProvider,
    StructuredCompletionProvider,
    track_completion_requests,
)
from leadsignal.clients.exa import ExaSearchClient
from leadsignal.clients.firecrawl import FirecrawlClient
from leadsignal.clients.openai_structured import OpenAIStructuredClient
from leadsignal.config import settings
from leadsignal.models.verification import (
    CacheStats,
    ClaimVerification,
    CompanyIdentity,
    Evidence,
    RateLimitStats,
    TopContradictingEvidence,
    TopSupportingEvidence,
    VerificationMetadata,
    VerificationResult,
    VerifySignalInput,
)
from leadsignal.observability.metrics import metrics
from leadsignal.services.verification.cache import CachedClaimVerdict, VerificationCache, hash_claim
from leadsignal.services.verification.claim_extractor import ClaimExtractor, ExtractClaimsInput
from leadsignal.services.verification.claim_verifier import ClaimVerifier
from leadsignal.services.verification.confidence import ConfidenceCalculator
from leadsignal.services.verification.evidence_collector import (
    CollectEvidenceOptions,
    CollectionStats,
    EvidenceCollector,
)
from leadsignal.services.verification.fetcher import PageFetcher
from leadsignal.services.verification.weights import VerificationWeights, load_weights, normalize_domain

logger = logging.getLogger(__name__)

VERIFIER_VERSION = "1.0.0"
STAGES = (
    "evidence_collection",
    "claim_extraction",
    "cache_check",
    "claim_verification",
    "confidence_calculation",
)
TOP_SUPPORTING_LIMIT = 5
TOP_CONTRADICTING_LIMIT = 3
CACHED_EVIDENCE_LIMIT = 3
IDENTITY_EVIDENCE_LIMIT = 3


class _Closeable(Protocol):
    async def aclose(self) -> None:
        ...


@dataclass(frozen=True)
class StageLogEntry:
    stage: str
    company: str
    duration_ms: float
    details: dict[str, Any]
    logged_at: datetime


@dataclass
class _RunTrace:
    company: str
    started_at: datetime
    start: float
    cache_baseline: CacheStats
    stage_timings: dict[str, float] = field(default_factory=dict)
    collection_stats: CollectionStats = field(default_factory=CollectionStats)
    collection_errors: list[str] = field(default_factory=list)
    completion_usage: CompletionUsage = field(default_factory=CompletionUsage)


class SignalVerifier:
    """Runs one signal through every verification stage; never raises."""

    def __init__(
        self,
        *,
        collector: EvidenceCollector,
        extractor: ClaimExtractor,
        verifier: ClaimVerifier,
        calculator: ConfidenceCalculator,
        cache: VerificationCache,
        log_buffer_size: int | None = None,
        resources: tuple[_Closeable, ...] = (),
    ) -> None:
        self._collector = collector
        self._extractor = extractor
        self._verifier = verifier
        self._calculator = calculator
        self._cache = cache
        self._logs: deque[StageLogEntry] = deque(maxlen=log_buffer_size or settings.verification_log_buffer_size)
        self._resources = resources

    @property
    def cache(self) -> VerificationCache:
        return self._cache

    def get_logs(self) -> list[StageLogEntry]:
        return list(self._logs)

    def clear_logs(self) -> None:
        self._logs.clear()

    async def aclose(self) -> None:
        for resource in self._resources:
            await resource.aclose()

    async def verify(self, payload: VerifySignalInput | Mapping[str, Any]) -> VerificationResult:
        with track_completion_requests() as usage:
            trace = _RunTrace(
                company="",
                started_at=datetime.now(UTC),
                start=time.perf_counter(),
                cache_baseline=self._cache.verification_stats(),
                completion_usage=usage,
            )
            try:
                trace.company = _echo(payload)["company"]
                request = (
                    payload if isinstance(payload, VerifySignalInput) else VerifySignalInput.model_validate(payload)
                )
                result = await self._run(request, trace)
            except Exception as exc:  # noqa: BLE001 - callers always receive a result
                logger.exception("verification.failed", extra={"company": trace.company})
                metrics.increment("verification.errors", tags={"error": type(exc).__name__})
                return self._failed_result(payload, trace, reason=f"Verification failed: {exc}")

        metrics.increment("verification.completed", tags={"status": result.overall_status})
        metrics.timing("verification.latency_ms", result.metadata.duration_ms)
        return result

    async def _run(self, request: VerifySignalInput, trace: _RunTrace) -> VerificationResult:
        rss = request.rss_item
        signal = request.raw_signal

        stage_start = time.perf_counter()
        collection = await self._collector.collect(
            CollectEvidenceOptions(
                company=request.company,
                domain=request.domain,
                signal_type=signal.type,
                rss_article_url=rss.link,
                rss_article_content=rss.content or rss.content_snippet or None,
                max_third_party_sources=settings.verification_max_third_party_sources,
            )
        )
        trace.collection_stats = collection.stats
        trace.collection_errors = list(collection.errors)
        self._record_stage(
            trace,
            "evidence_collection",
            stage_start,
            evidence=len(collection.evidence),
            errors=len(collection.errors),
        )
        evidence = collection.evidence
        if not evidence:
            return self._failed_result(request, trace, reason="No evidence could be collected")

        stage_start = time.perf_counter()
        extraction = await self._extractor.extract(
            ExtractClaimsInput(
                company=request.company,
                domain=request.domain,
                signal_type=signal.type,
                signal_details=signal.details,
                article_title=rss.title,
                article_snippet=rss.content_snippet or rss.content,
                article_source=rss.source_name,
            )
        )
        self._record_stage(
            trace,
            "claim_extraction",
            stage_start,
            claims=len(extraction.claims),
            fallback=extraction.used_fallback,
        )
        claims = extraction.claims
        if not claims:
            return self._failed_result(
                request,
                trace,
                reason="No verifiable claims could be extracted",
                evidence=evidence,
            )

        stage_start = time.perf_counter()
        cached = sum(1 for claim in claims if self._cache.get_claim(request.company, hash_claim(claim)) is not None)
        self._record_stage(trace, "cache_check", stage_start, cached_claims=cached, claims=len(claims))

        stage_start = time.perf_counter()
        verifications = await self._verifier.verify_all(claims, evidence)
        self._record_stage(
            trace,
            "claim_verification",
            stage_start,
            verified=sum(1 for item in verifications if item.status == "verified"),
            contradicted=sum(1 for item in verifications if item.status == "contradicted"),
        )

        stage_start = time.perf_counter()
        overall = self._calculator.calculate(verifications, evidence)
        explanation = self._calculator.explain(overall)
        self._record_stage(
            trace,
            "confidence_calculation",
            stage_start,
            confidence=round(overall.confidence, 4),
            status=overall.status,
        )

        self._store_verdicts(request.company, verifications)

        scored_evidence = tuple(
            item.model_copy(update={"reliability_score": overall.evidence_weights[item.id].final_weight})
            if item.id in overall.evidence_weights
            else item
            for item in evidence
        )
        identity = extraction.company_identity.model_copy(
            update={
                "aliases": (request.company,),
                "identified_from": tuple(item.id for item in evidence[:IDENTITY_EVIDENCE_LIMIT]),
            }
        )
        echo = _echo(request)
        return VerificationResult(
            input_company=request.company,
            input_domain=echo["domain"],
            input_signal_type=signal.type,
            rss_item_url=rss.link,
            company_identity=identity,
            claims=tuple(claims),
            claim_verifications=tuple(verifications),
            overall_status=overall.status,
            overall_confidence=overall.confidence,
            confidence_band=overall.band,
            status_reason=explanation.summary,
            top_supporting_evidence=_top_supporting(verifications, evidence),
            top_contradicting_evidence=_top_contradicting(verifications, evidence),
            all_evidence=scored_evidence,
            explanation=explanation,
            metadata=self._metadata(trace),
        )

    def _store_verdicts(self, company: str, verifications: list[ClaimVerification]) -> None:
        now = datetime.now(UTC)
        for verification in verifications:
            if verification.status == "unknown":
                continue
            claim_hash = hash_claim(verification.claim)
            self._cache.set_claim(
                company,
                claim_hash,
                CachedClaimVerdict(
                    company_key=company,
                    claim_hash=claim_hash,
                    status=verification.status,
                    confidence=verification.confidence,
                    top_evidence_urls=tuple(
                        item.url for item in verification.supporting_evidence[:CACHED_EVIDENCE_LIMIT]
                    ),
                    verified_at=now,
                ),
            )

    def _record_stage(self, trace: _RunTrace, stage: str, stage_start: float, **details: Any) -> None:
        duration_ms = (time.perf_counter() - stage_start) * 1000
        trace.stage_timings[stage] = round(duration_ms, 2)
        self._logs.append(
            StageLogEntry(
                stage=stage,
                company=trace.company,
                duration_ms=round(duration_ms, 2),
                details=details,
                logged_at=datetime.now(UTC),
            )
        )
        metrics.timing(f"stage.{stage}_ms", duration_ms)
        logger.info(
            "verification.stage_complete",
            extra={"stage": stage, "company": trace.company, "duration_ms": f"{duration_ms:.2f}", **details},
        )

    def _metadata(self, trace: _RunTrace) -> VerificationMetadata:
        completed_at = datetime.now(UTC)
        current = self._cache.verification_stats()
        baseline = trace.cache_baseline
        stats = trace.collection_stats
        return VerificationMetadata(
            verifier_version=VERIFIER_VERSION,
            started_at=trace.started_at,
            completed_at=completed_at,
            duration_ms=round((time.perf_counter() - trace.start) * 1000, 2),
            cache_stats=CacheStats(
                url_hits=current.url_hits - baseline.url_hits,
                url_misses=current.url_misses - baseline.url_misses,
                claim_hits=current.claim_hits - baseline.claim_hits,
                claim_misses=current.claim_misses - baseline.claim_misses,
            ),
            rate_limit_stats=RateLimitStats(
                search_requests_made=stats.search_requests_made,
                scrape_requests_made=stats.scrape_requests_made,
                fallback_fetches_made=stats.fallback_fetches_made,
            ),
            evidence_sources_queried=stats.sources_queried,
            llm_calls_made=trace.completion_usage.requests,
            stage_timings=dict(trace.stage_timings),
            collection_errors=tuple(trace.collection_errors),
        )

    def _failed_result(
        self,
        payload: VerifySignalInput | Mapping[str, Any] | Any,
        trace: _RunTrace,
        *,
        reason: str,
        evidence: list[Evidence] | None = None,
    ) -> VerificationResult:
        echo = _echo(payload)
        logger.info("verification.discarded", extra={"company": echo["company"], "reason": reason})
        return VerificationResult(
            input_company=echo["company"],
            input_domain=echo["domain"],
            input_signal_type=echo["signal_type"],
            rss_item_url=echo["url"],
            company_identity=CompanyIdentity(
                canonical_name=echo["company"],
                domain=echo["domain"],
                domain_confidence="low" if echo["domain"] else "unknown",
                aliases=(echo["company"],) if echo["company"] else (),
            ),
            overall_status="discard",
            overall_confidence=0.0,
            confidence_band="unknown",
            status_reason=reason,
            all_evidence=tuple(evidence or ()),
            metadata=self._metadata(trace),
        )


def build_signal_verifier(
    *,
    weights: VerificationWeights | None = None,
    cache: VerificationCache | None = None,
    fetcher: PageFetcher | None = None,
    search_provider: SearchProvider | None = None,
    scrape_provider: ScrapeProvider | None = None,
    completion: StructuredCompletionProvider | None = None,
) -> SignalVerifier:
    """Wire a verifier from settings, creating provider clients whose keys are configured."""
    resolved_weights = weights or load_weights()
    resolved_cache = cache or VerificationCache(
        url_ttl_seconds=settings.url_cache_ttl_seconds,
        claim_ttl_seconds=settings.claim_cache_ttl_seconds,
    )
    resources: list[_Closeable] = []
    if fetcher is None:
        fetcher = PageFetcher(cache=resolved_cache)
        resources.append(fetcher)
    if search_provider is None and settings.exa_api_key:
        exa = ExaSearchClient(settings.exa_api_key, timeout=settings.verification_fetch_timeout_seconds)
        search_provider = exa
        resources.append(exa)
    if scrape_provider is None and settings.firecrawl_api_key:
        firecrawl = FirecrawlClient(settings.firecrawl_api_key)
        scrape_provider = firecrawl
        resources.append(firecrawl)
    if completion is None and settings.openai_api_key:
        completion = OpenAIStructuredClient(api_key=settings.openai_api_key)

    return SignalVerifier(
        collector=EvidenceCollector(
            fetcher=fetcher,
            search_provider=search_provider,
            scrape_provider=scrape_provider,
        ),
        extractor=ClaimExtractor(weights=resolved_weights, completion=completion),
        verifier=ClaimVerifier(weights=resolved_weights, completion=completion),
        calculator=ConfidenceCalculator(resolved_weights),
        cache=resolved_cache,
        resources=tuple(resources),
    )


def _top_supporting(
    verifications: list[ClaimVerification],
    evidence: list[Evidence],
) -> tuple[TopSupportingEvidence, ...]:
    titles = {item.id: item.title for item in evidence}
    ranked = sorted(
        (support for verification in verifications for support in verification.supporting_evidence),
        key=lambda support: support.relevance_score,
        reverse=True,
    )
    return tuple(
        TopSupportingEvidence(
            url=support.url,
            title=titles.get(support.evidence_id, ""),
            snippet=support.snippet,
            source_type=support.source_type,
            relevance_score=support.relevance_score,
        )
        for support in ranked[:TOP_SUPPORTING_LIMIT]
    )


def _top_contradicting(
    verifications: list[ClaimVerification],
    evidence: list[Evidence],
) -> tuple[TopContradictingEvidence, ...]:
    titles = {item.id: item.title for item in evidence}
    contradictions = [item for verification in verifications for item in verification.contradicting_evidence]
    return tuple(
        TopContradictingEvidence(
            url=item.url,
            title=titles.get(item.evidence_id, ""),
            snippet=item.snippet,
            contradiction_type=item.contradiction_type,
        )
        for item in contradictions[:TOP_CONTRADICTING_LIMIT]
    )


def _echo(payload: Any) -> dict[str, Any]:
    """Best-effort copy of the identifying input fields, even from invalid payloads."""
    if isinstance(payload, VerifySignalInput):
        return {
            "company": payload.company,
            "domain": normalize_domain(payload.domain) or None,
            "signal_type": payload.raw_signal.type,
            "url": payload.rss_item.link,
        }
    if not isinstance(payload, Mapping):
        return {"company": "", "domain": None, "signal_type": "", "url": ""}
    signal = payload.get("raw_signal") or payload.get("rawSignal") or {}
    rss = payload.get("rss_item") or payload.get("rssItem") or {}
    domain = payload.get("domain")
    return {
        "company": str(payload.get("company") or ""),
        "domain": normalize_domain(domain) or None if isinstance(domain, str) else None,
        "signal_type": str(signal.get("type") or "") if isinstance(signal, Mapping) else "",
        "url": str(rss.get("link") or "") if isinstance(rss, Mapping) else "",
    }
