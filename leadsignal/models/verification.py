"""Schemas shared by every stage of the signal verification pipeline."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, get_args

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic.config import ConfigDict

SNIPPET_MAX_CHARS = 1000

EvidenceSourceType = Literal[
    "rss_article",
    "company_press",
    "company_newsroom",
    "company_careers",
    "company_about",
    "third_party_news",
    "sec_filing",
    "jobs_board",
    "crunchbase",
    "pitchbook",
    "registry",
    "social_official",
    "other",
]

ClaimType = Literal[
    "funding_raised",
    "funding_amount",
    "acquisition_announced",
    "acquisition_target",
    "acquisition_acquirer",
    "ipo_announced",
    "ipo_valuation",
    "leadership_hire",
    "leadership_departure",
    "expansion_geographic",
    "expansion_office",
    "product_launch",
    "partnership_announced",
    "partnership_partner",
    "hiring_initiative",
    "hiring_role",
    "layoff_announced",
    "revenue_milestone",
    "other",
]

ClaimStatus = Literal[
    "verified",
    "partially_verified",
    "contradicted",
    "insufficient_evidence",
    "unknown",
]
ContradictionType = Literal[
    "different_amount",
    "different_date",
    "entity_mismatch",
    "denial",
    "retraction",
    "unknown",
]
DomainConfidence = Literal["high", "medium", "low", "unknown"]
ConfidenceBand = Literal["high", "medium", "low", "unknown"]
OverallStatus = Literal["verified", "watchlist", "discard"]
FactorImpact = Literal["positive", "negative", "neutral"]

SOURCE_TYPES: tuple[str, ...] = get_args(EvidenceSourceType)
CLAIM_TYPES: tuple[str, ...] = get_args(ClaimType)
CONTRADICTION_TYPES: tuple[str, ...] = get_args(ContradictionType)

_FROZEN = ConfigDict(frozen=True, extra="forbid")


class Evidence(BaseModel):
    """A fetched document or snippet that may support or contradict a claim."""

    id: str = Field(..., min_length=1)
    url: str
    canonical_url: str
    title: str = ""
    snippet: str = ""
    full_text: str | None = None
    source_type: EvidenceSourceType
    publisher: str | None = None
    published_at: str | None = Field(
        default=None,
        description="Publication timestamp exactly as reported by the source.",
    )
    fetched_at: datetime
    content_hash: str = Field(..., min_length=1)
    reliability_score: float | None = Field(default=None, ge=0, le=1)
    is_official: bool = False

    model_config = _FROZEN

    @field_validator("snippet", mode="before")
    @classmethod
    def _truncate_snippet(cls, value: object) -> object:
        if isinstance(value, str) and len(value) > SNIPPET_MAX_CHARS:
            return value[:SNIPPET_MAX_CHARS]
        return value


class ClaimEntities(BaseModel):
    """Sparse map of the entities a claim mentions."""

    company: str | None = None
    amount: str | None = None
    date: str | None = None
    person: str | None = None
    partner: str | None = None
    location: str | None = None

    model_config = _FROZEN

    def populated(self) -> dict[str, str]:
        """Return only the fields that carry a non-blank value."""
        return {
            key: value
            for key, value in self.model_dump().items()
            if isinstance(value, str) and value.strip()
        }


class Claim(BaseModel):
    """A specific, checkable assertion extracted from a signal."""

    id: str = Field(..., min_length=1)
    type: ClaimType
    statement: str
    entities: ClaimEntities = Field(default_factory=ClaimEntities)
    verification_requirements: tuple[str, ...] = ()
    extracted_from: str = ""

    model_config = _FROZEN


class SupportingEvidence(BaseModel):
    evidence_id: str
    url: str
    snippet: str
    relevance_score: float = Field(..., ge=0, le=1)
    source_type: EvidenceSourceType

    model_config = _FROZEN


class ContradictingEvidence(BaseModel):
    evidence_id: str
    url: str
    snippet: str
    contradiction_type: ContradictionType
    source_type: EvidenceSourceType

    model_config = _FROZEN


class ClaimVerification(BaseModel):
    """Verdict for a single claim against the collected evidence."""

    claim_id: str
    claim: Claim
    status: ClaimStatus
    confidence: float = Field(..., ge=0, le=1)
    supporting_evidence: tuple[SupportingEvidence, ...] = ()
    contradicting_evidence: tuple[ContradictingEvidence, ...] = ()
    gates_passed: tuple[str, ...] = ()
    gates_failed: tuple[str, ...] = ()
    reasoning: str = ""

    model_config = _FROZEN


class CompanyIdentity(BaseModel):
    canonical_name: str
    domain: str | None = None
    domain_confidence: DomainConfidence = "unknown"
    aliases: tuple[str, ...] = ()
    industry: str | None = None
    headquarters: str | None = None
    identified_from: tuple[str, ...] = ()

    model_config = _FROZEN


class TopSupportingEvidence(BaseModel):
    url: str
    title: str
    snippet: str
    source_type: EvidenceSourceType
    relevance_score: float = Field(..., ge=0, le=1)

    model_config = _FROZEN


class TopContradictingEvidence(BaseModel):
    url: str
    title: str
    snippet: str
    contradiction_type: ContradictionType

    model_config = _FROZEN


class CacheStats(BaseModel):
    url_hits: int = 0
    url_misses: int = 0
    claim_hits: int = 0
    claim_misses: int = 0

    model_config = _FROZEN


class RateLimitStats(BaseModel):
    search_requests_made: int = 0
    scrape_requests_made: int = 0
    fallback_fetches_made: int = 0

    model_config = _FROZEN


class VerificationMetadata(BaseModel):
    verifier_version: str
    started_at: datetime
    completed_at: datetime
    duration_ms: float = Field(..., ge=0)
    cache_stats: CacheStats = Field(default_factory=CacheStats)
    rate_limit_stats: RateLimitStats = Field(default_factory=RateLimitStats)
    evidence_sources_queried: int = 0
    llm_calls_made: int = 0
    stage_timings: dict[str, float] = Field(default_factory=dict)
    collection_errors: tuple[str, ...] = ()

    model_config = _FROZEN


class ConfidenceFactor(BaseModel):
    name: str
    impact: FactorImpact
    detail: str

    model_config = _FROZEN


class ConfidenceExplanation(BaseModel):
    """Human-readable summary of how the overall confidence was reached."""

    summary: str
    factors: tuple[ConfidenceFactor, ...] = ()

    model_config = _FROZEN


class VerificationResult(BaseModel):
    """Aggregate verdict for one signal; always returned, never raised."""

    input_company: str
    input_domain: str | None = None
    input_signal_type: str
    rss_item_url: str
    company_identity: CompanyIdentity
    claims: tuple[Claim, ...] = ()
    claim_verifications: tuple[ClaimVerification, ...] = ()
    overall_status: OverallStatus
    overall_confidence: float = Field(..., ge=0, le=1)
    confidence_band: ConfidenceBand
    status_reason: str
    top_supporting_evidence: tuple[TopSupportingEvidence, ...] = Field(default=(), max_length=5)
    top_contradicting_evidence: tuple[TopContradictingEvidence, ...] = Field(default=(), max_length=3)
    all_evidence: tuple[Evidence, ...] = ()
    explanation: ConfidenceExplanation | None = None
    metadata: VerificationMetadata

    model_config = _FROZEN


_INPUT_CONFIG = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


class RawSignal(BaseModel):
    type: str = Field(..., min_length=1)
    details: str = ""
    relevance_score: float | None = None

    model_config = _INPUT_CONFIG


class RssItem(BaseModel):
    title: str = ""
    link: str = Field(..., min_length=1)
    content: str = ""
    content_snippet: str = ""
    pub_date: str | None = None
    source_name: str = ""

    model_config = _INPUT_CONFIG


class VerifySignalInput(BaseModel):
    """Inbound request accepted in either snake_case or camelCase keys."""

    company: str = Field(..., min_length=1)
    domain: str | None = None
    raw_signal: RawSignal
    rss_item: RssItem

    model_config = _INPUT_CONFIG
