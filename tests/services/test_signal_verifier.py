from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import httpx
import pytest
from openai import APITimeoutError

from leadsignal.clients.contracts import SearchResult
from leadsignal.clients.openai_structured import OpenAIStructuredClient
from leadsignal.services.verification import signal_verifier as verifier_module
from leadsignal.services.verification.cache import VerificationCache, hash_claim
from leadsignal.services.verification.claim_extractor import ClaimExtractor
from leadsignal.services.verification.claim_verifier import ClaimVerifier
from leadsignal.services.verification.confidence import ConfidenceCalculator
from leadsignal.services.verification.evidence_collector import EvidenceCollector
from leadsignal.services.verification.signal_verifier import (
    STAGES,
    VERIFIER_VERSION,
    SignalVerifier,
    build_signal_verifier,
)
from tests.helpers.fakes import FakeCompletion, FakeFetcher, StubSearch, make_page, match
from tests.helpers.metrics_stub import StubMetrics

SEED_URL = "https://techcrunch.com/2026/10/01/acme-series-b"
PRESS_URL = "https://acmerobotics.com/press/series-b"


@pytest.fixture(autouse=True)
def _stub_metrics(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(verifier_module, "metrics", stub)
    return stub


def _recent(days: int) -> str:
    return (datetime.now(UTC) - timedelta(days=days)).isoformat()


def _build(
    weights,
    *,
    fetcher: FakeFetcher,
    search: StubSearch | None = None,
    completion: FakeCompletion | None = None,
    cache: VerificationCache | None = None,
    log_buffer_size: int = 50,
) -> SignalVerifier:
    return SignalVerifier(
        collector=EvidenceCollector(fetcher=fetcher, search_provider=search),
        extractor=ClaimExtractor(weights=weights, completion=completion),
        verifier=ClaimVerifier(weights=weights, completion=completion),
        calculator=ConfidenceCalculator(weights),
        cache=cache or VerificationCache(),
        log_buffer_size=log_buffer_size,
    )


def _payload(
    signal_type: str = "funding_round",
    *,
    content: str,
    domain: str | None = "acmerobotics.com",
    link: str = SEED_URL,
) -> dict:
    return {
        "company": "Acme Robotics",
        "domain": domain,
        "rawSignal": {"type": signal_type, "details": "Acme Robotics raised a $25M Series B"},
        "rssItem": {
            "title": "Acme Robotics raises $25M",
            "link": link,
            "content": content,
            "contentSnippet": content[:100],
            "sourceName": "TechCrunch",
        },
    }


def _funding_extraction() -> dict:
    return {
        "claims": [
            {
                "type": "funding_raised",
                "statement": "Acme Robotics raised a $25M Series B",
                "entities": {"company": "Acme Robotics", "amount": "$25M"},
                "confidence": 0.9,
            }
        ],
        "company_canonical_name": "Acme Robotics",
        "domain_confidence": "high",
    }


def _scenario_a(
    weights,
    *,
    cache: VerificationCache | None = None,
    log_buffer_size: int = 50,
    third_party: SearchResult | None = None,
) -> tuple[SignalVerifier, FakeCompletion]:
    fetcher = FakeFetcher(
        {
            SEED_URL: make_page(SEED_URL, "seed", title="Acme raises $25M", links=[PRESS_URL]),
            PRESS_URL: make_page(
                PRESS_URL,
                "Acme Robotics today announced $25M Series B funding led by Example Ventures.",
                title="Acme Robotics announces Series B",
            ),
        }
    )
    search = StubSearch(
        [
            third_party
            or SearchResult(
                url="https://www.reuters.com/technology/acme-robotics-funding",
                title="Acme Robotics raises $25M",
                snippet="Acme Robotics raised $25M in Series B funding, Reuters reports.",
                published_date=_recent(2),
            )
        ]
    )
    completion = FakeCompletion(
        {
            "claim_extraction": [_funding_extraction()],
            "claim_evidence_analysis": [
                {
                    "matches": [
                        match(supports=True, relevance=0.9),
                        match(supports=True, relevance=1.0, snippet="announced $25M Series B"),
                        match(supports=True, relevance=0.9),
                    ],
                    "overall_support": 0.9,
                    "overall_contradiction": 0.0,
                }
            ],
        }
    )
    verifier = _build(
        weights,
        fetcher=fetcher,
        search=search,
        completion=completion,
        cache=cache,
        log_buffer_size=log_buffer_size,
    )
    return verifier, completion


@pytest.mark.asyncio
async def test_funding_signal_with_official_and_reputable_sources_is_verified(weights):
    verifier, _ = _scenario_a(weights)

    result = await verifier.verify(
        _payload(content="Acme Robotics announced it raised $25M in a Series B led by Example Ventures.")
    )

    assert result.overall_status == "verified"
    assert result.confidence_band == "high"
    assert result.overall_confidence >= 0.8
    [verification] = result.claim_verifications
    assert verification.status == "verified"
    assert verification.gates_failed == ()
    assert [item.source_type for item in result.all_evidence] == [
        "rss_article",
        "company_press",
        "third_party_news",
    ]
    assert all(item.reliability_score is not None for item in result.all_evidence)
    assert result.top_supporting_evidence[0].url == PRESS_URL
    assert result.top_supporting_evidence[0].title == "Acme Robotics announces Series B"
    assert result.top_contradicting_evidence == ()
    assert result.company_identity.canonical_name == "Acme Robotics"
    assert result.company_identity.domain == "acmerobotics.com"
    assert result.company_identity.aliases == ("Acme Robotics",)
    assert result.company_identity.identified_from == ("ev_1", "ev_2", "ev_3")
    assert result.status_reason.startswith("Confidence: ")
    assert result.explanation is not None


@pytest.mark.asyncio
async def test_result_metadata_reports_stages_calls_and_cache_lookups(weights):
    verifier, _ = _scenario_a(weights)

    result = await verifier.verify(_payload(content="Acme Robotics raised $25M."))

    metadata = result.metadata
    assert metadata.verifier_version == VERIFIER_VERSION
    assert metadata.completed_at >= metadata.started_at
    assert set(metadata.stage_timings) == set(STAGES)
    assert metadata.llm_calls_made == 2
    assert metadata.rate_limit_stats.search_requests_made == 1
    assert metadata.evidence_sources_queried == 3
    assert metadata.cache_stats.claim_misses == 1
    assert metadata.cache_stats.claim_hits == 0


@pytest.mark.asyncio
async def test_llm_calls_made_counts_provider_retries(weights):
    class _DownCompletions:
        def __init__(self) -> None:
            self.calls = 0

        async def create(self, **kwargs):
            self.calls += 1
            raise APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))

    async def _no_sleep(_delay: float) -> None:
        return None

    completions = _DownCompletions()
    provider = OpenAIStructuredClient(
        model="test-model",
        max_retries=2,
        client=SimpleNamespace(chat=SimpleNamespace(completions=completions)),
        sleep=_no_sleep,
    )
    verifier = _build(weights, fetcher=FakeFetcher(), completion=provider)

    result = await verifier.verify(_payload(content="Acme Robotics raised $25M."))

    # Three single-shot extraction attempts, then one verification call with two retries.
    assert completions.calls == 6
    assert result.metadata.llm_calls_made == 6
    assert result.claim_verifications[0].status == "unknown"


@pytest.mark.asyncio
async def test_verified_claims_are_cached_for_later_runs(weights):
    cache = VerificationCache()
    verifier, _ = _scenario_a(weights, cache=cache)

    first = await verifier.verify(_payload(content="Acme Robotics raised $25M."))
    claim = first.claims[0]
    cached = cache.get_claim("Acme Robotics", hash_claim(claim))
    second = await verifier.verify(_payload(content="Acme Robotics raised $25M."))

    assert cached is not None
    assert cached.status == "verified"
    assert cached.top_evidence_urls[0] == SEED_URL
    assert second.metadata.cache_stats.claim_hits == 1


@pytest.mark.asyncio
async def test_hiring_signal_backed_by_careers_page_passes_its_gate(weights):
    careers_url = "https://acmerobotics.com/careers"
    fetcher = FakeFetcher(
        {careers_url: make_page(careers_url, "Join Acme Robotics: 12 open roles in engineering.", title="Careers")},
        live={careers_url},
    )
    completion = FakeCompletion(
        {
            "claim_extraction": [
                {"claims": [{"type": "hiring_initiative", "statement": "Acme Robotics is hiring engineers"}]}
            ],
            "claim_evidence_analysis": [
                {
                    "matches": [match(relevant=False), match(supports=True, relevance=0.85)],
                    "overall_support": 0.8,
                }
            ],
        }
    )
    verifier = _build(weights, fetcher=fetcher, completion=completion)

    result = await verifier.verify(_payload("hiring", content="Acme Robotics is growing its engineering team."))

    [verification] = result.claim_verifications
    assert verification.status == "partially_verified"
    assert verification.gates_passed == ("official_careers_page_or_job_listings",)
    careers = [item for item in result.all_evidence if item.url == careers_url]
    assert careers and careers[0].source_type == "company_careers"
    assert careers[0].is_official


@pytest.mark.asyncio
async def test_official_denial_discards_the_signal(weights):
    denial_url = "https://acmerobotics.com/press/statement"
    search = StubSearch(
        [
            SearchResult(
                url=denial_url,
                title="Statement on funding reports",
                snippet="Acme Robotics denies reports that it raised new funding.",
                published_date=_recent(1),
            )
        ]
    )
    completion = FakeCompletion(
        {
            "claim_extraction": [_funding_extraction()],
            "claim_evidence_analysis": [
                {
                    "matches": [
                        match(relevant=False),
                        match(contradicts=True, contradiction_type="denial", snippet="denies reports"),
                    ],
                    "overall_support": 0.0,
                    "overall_contradiction": 0.9,
                }
            ],
        }
    )
    verifier = _build(weights, fetcher=FakeFetcher(), search=search, completion=completion)

    result = await verifier.verify(_payload(content="Sources say Acme Robotics raised $25M."))

    assert result.overall_status == "discard"
    assert result.overall_confidence <= 0.3
    assert result.claim_verifications[0].status == "contradicted"
    [contradiction] = result.top_contradicting_evidence
    assert contradiction.url == denial_url
    assert contradiction.contradiction_type == "denial"
    assert contradiction.title == "Statement on funding reports"


@pytest.mark.asyncio
async def test_funding_signal_backed_by_data_provider_profile_is_verified(weights):
    profile_url = "https://www.crunchbase.com/organization/acme-robotics"
    verifier, _ = _scenario_a(
        weights,
        third_party=SearchResult(
            url=profile_url,
            title="Acme Robotics - Crunchbase Company Profile & Funding",
            snippet="Acme Robotics raised $25M Series B funding led by Example Ventures.",
            published_date=_recent(2),
        ),
    )

    result = await verifier.verify(
        _payload(content="Acme Robotics announced it raised $25M in a Series B led by Example Ventures.")
    )

    assert result.overall_status == "verified"
    assert result.confidence_band == "high"
    [verification] = result.claim_verifications
    assert verification.status == "verified"
    assert verification.gates_passed == (
        "official_announcement_or_2_reputable_sources",
        "amount_consistent_across_sources",
    )
    assert [item.source_type for item in result.all_evidence] == ["rss_article", "company_press", "crunchbase"]
    assert profile_url in {item.url for item in result.top_supporting_evidence}


@pytest.mark.asyncio
async def test_unreliable_blog_support_loses_to_official_denial(weights):
    blog_url = "https://acme-watch.blogspot.com/2026/10/acme-funding-rumor"
    denial_url = "https://acmerobotics.com/press/statement"
    search = StubSearch(
        [
            SearchResult(
                url=denial_url,
                title="Statement on funding reports",
                snippet="Acme Robotics denies reports that it raised new funding.",
                published_date=_recent(1),
            )
        ]
    )
    completion = FakeCompletion(
        {
            "claim_extraction": [_funding_extraction()],
            "claim_evidence_analysis": [
                {
                    "matches": [
                        match(supports=True, relevance=0.8, snippet="raised $25M"),
                        match(contradicts=True, contradiction_type="denial", snippet="denies reports"),
                    ],
                    "overall_support": 0.4,
                    "overall_contradiction": 0.9,
                }
            ],
        }
    )
    verifier = _build(weights, fetcher=FakeFetcher(), search=search, completion=completion)

    result = await verifier.verify(
        _payload(content="Rumor: Acme Robotics reportedly raised $25M from unnamed investors.", link=blog_url)
    )

    [verification] = result.claim_verifications
    assert verification.status == "partially_verified"
    assert [item.url for item in verification.supporting_evidence] == [blog_url]
    assert [item.url for item in verification.contradicting_evidence] == [denial_url]
    assert verification.gates_failed
    assert result.overall_status == "discard"
    assert result.overall_confidence <= 0.3
    assert result.top_contradicting_evidence[0].contradiction_type == "denial"


@pytest.mark.asyncio
async def test_no_evidence_is_discarded_immediately(weights):
    completion = FakeCompletion()
    verifier = _build(weights, fetcher=FakeFetcher(), completion=completion)

    result = await verifier.verify(_payload(content=""))

    assert result.overall_status == "discard"
    assert result.status_reason == "No evidence could be collected"
    assert result.confidence_band == "unknown"
    assert result.overall_confidence == 0.0
    assert result.company_identity.domain_confidence == "low"
    assert result.metadata.collection_errors
    assert completion.calls == []


@pytest.mark.asyncio
async def test_no_claims_is_discarded_with_collected_evidence(weights):
    completion = FakeCompletion({"claim_extraction": [{"claims": []}]})
    verifier = _build(weights, fetcher=FakeFetcher(), completion=completion)

    result = await verifier.verify(_payload(content="Acme Robotics raised $25M.", domain=None))

    assert result.status_reason == "No verifiable claims could be extracted"
    assert len(result.all_evidence) == 1
    assert result.company_identity.domain_confidence == "unknown"


@pytest.mark.asyncio
async def test_invalid_input_is_returned_as_failed_result(weights, _stub_metrics):
    verifier = _build(weights, fetcher=FakeFetcher())

    result = await verifier.verify({"company": "Acme Robotics", "rawSignal": {"type": "funding_round"}})

    assert result.overall_status == "discard"
    assert result.status_reason.startswith("Verification failed: ")
    assert result.input_company == "Acme Robotics"
    assert result.input_signal_type == "funding_round"
    assert any(call["metric"] == "verification.errors" for call in _stub_metrics.increment_calls)


@pytest.mark.asyncio
async def test_unexpected_stage_exception_never_escapes(weights):
    class _ExplodingCollector:
        async def collect(self, options):
            raise RuntimeError("collector exploded")

    verifier = SignalVerifier(
        collector=_ExplodingCollector(),  # type: ignore[arg-type]
        extractor=ClaimExtractor(weights=weights),
        verifier=ClaimVerifier(weights=weights),
        calculator=ConfidenceCalculator(weights),
        cache=VerificationCache(),
    )

    result = await verifier.verify(_payload(content="Acme Robotics raised $25M."))

    assert result.status_reason == "Verification failed: collector exploded"
    assert result.confidence_band == "unknown"


@pytest.mark.asyncio
async def test_malformed_domain_is_treated_as_unknown(weights):
    completion = FakeCompletion({"claim_extraction": [_funding_extraction()]})
    fetcher = FakeFetcher()
    verifier = _build(weights, fetcher=fetcher, completion=completion)

    result = await verifier.verify(_payload(content="Acme Robotics raised $25M.", domain="https://[acme.com"))

    assert result.input_company == "Acme Robotics"
    assert result.input_domain is None
    assert result.claims[0].type == "funding_raised"
    assert fetcher.probed == []


@pytest.mark.asyncio
async def test_invalid_input_with_malformed_domain_still_returns_a_result(weights):
    verifier = _build(weights, fetcher=FakeFetcher())

    result = await verifier.verify({"company": "Acme Robotics", "domain": "https://[acme.com"})

    assert result.overall_status == "discard"
    assert result.status_reason.startswith("Verification failed: ")
    assert result.input_domain is None
    assert result.company_identity.domain_confidence == "unknown"


@pytest.mark.asyncio
async def test_unknown_verdicts_are_not_cached(weights):
    cache = VerificationCache()
    verifier = _build(weights, fetcher=FakeFetcher(), cache=cache)

    result = await verifier.verify(_payload(content="Acme Robotics raised $25M."))

    assert result.claim_verifications[0].status == "unknown"
    assert result.metadata.llm_calls_made == 0
    assert cache.stats()["claim"]["size"] == 0


@pytest.mark.asyncio
async def test_stage_logs_are_bounded_and_clearable(weights, _stub_metrics):
    verifier, _ = _scenario_a(weights, log_buffer_size=3)

    await verifier.verify(_payload(content="Acme Robotics raised $25M."))

    logs = verifier.get_logs()
    assert [entry.stage for entry in logs] == list(STAGES[-3:])
    assert all(entry.company == "Acme Robotics" for entry in logs)
    assert {f"stage.{stage}_ms" for stage in STAGES} <= _stub_metrics.metric_names()
    verifier.clear_logs()
    assert verifier.get_logs() == []


@pytest.mark.asyncio
async def test_build_signal_verifier_uses_injected_providers(weights):
    completion = FakeCompletion({"claim_extraction": [_funding_extraction()]})
    verifier = build_signal_verifier(weights=weights, fetcher=FakeFetcher(), completion=completion)

    result = await verifier.verify(_payload(content="Acme Robotics raised $25M."))
    await verifier.aclose()

    assert result.claims[0].type == "funding_raised"
    assert completion.calls_for("claim_extraction")
