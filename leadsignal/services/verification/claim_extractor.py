"""Turns a raw signal and its article into typed, gate-annotated claims."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic.config import ConfigDict

from leadsignal.clients.contracts import ChatMessage, StructuredCompletionProvider
from leadsignal.models.verification import (
    CLAIM_TYPES,
    Claim,
    ClaimEntities,
    ClaimType,
    CompanyIdentity,
    DomainConfidence,
)
from leadsignal.observability.metrics import metrics
from leadsignal.services.verification.weights import VerificationWeights, normalize_domain

logger = logging.getLogger(__name__)

EXTRACTION_RETRIES = 2
# Each extraction attempt is one provider request; retries live in the loop below.
EXTRACTION_PROVIDER_RETRIES = 0
EXTRACTION_TEMPERATURE = 0.1
EXTRACTION_MAX_TOKENS = 2000

SIGNAL_TO_CLAIM_TYPE: dict[str, ClaimType] = {
    "funding_round": "funding_raised",
    "funding": "funding_raised",
    "acquisition": "acquisition_announced",
    "ipo": "ipo_announced",
    "leadership_change": "leadership_hire",
    "expansion": "expansion_geographic",
    "product_launch": "product_launch",
    "partnership": "partnership_announced",
    "hiring": "hiring_initiative",
    "layoff": "layoff_announced",
}

SYSTEM_PROMPT = """You extract verifiable business claims from news about a company.
Return each distinct, checkable assertion as its own claim with:
- type: one of {claim_types}
- statement: one sentence restating the claim
- entities: company, amount, date, person, partner, location (omit unknown fields)
- confidence: 0-1, how explicitly the text states the claim
Also resolve the company's canonical name. Only return company_domain when you are highly
confident it is the company's official website, and rate that confidence in domain_confidence."""


class ExtractedEntities(BaseModel):
    company: str | None = None
    amount: str | None = None
    date: str | None = None
    person: str | None = None
    partner: str | None = None
    location: str | None = None

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class ExtractedClaim(BaseModel):
    type: str
    statement: str
    entities: ExtractedEntities = Field(default_factory=ExtractedEntities)
    confidence: float = Field(default=0.5, ge=0, le=1)

    model_config = ConfigDict(extra="ignore")

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in CLAIM_TYPES else "other"


class ClaimExtractionPayload(BaseModel):
    """Schema the completion provider must satisfy."""

    claims: list[ExtractedClaim] = Field(default_factory=list)
    company_canonical_name: str = ""
    company_domain: str | None = None
    domain_confidence: DomainConfidence = "unknown"

    model_config = ConfigDict(extra="ignore")


@dataclass(frozen=True)
class ExtractClaimsInput:
    company: str
    signal_type: str
    signal_details: str
    domain: str | None = None
    article_title: str = ""
    article_snippet: str = ""
    article_source: str = ""


@dataclass(frozen=True)
class ExtractClaimsResult:
    claims: list[Claim]
    company_identity: CompanyIdentity
    llm_calls: int
    used_fallback: bool = False


class ClaimExtractor:
    """Structured-completion claim extraction with a deterministic fallback."""

    def __init__(
        self,
        *,
        weights: VerificationWeights,
        completion: StructuredCompletionProvider | None = None,
        max_retries: int = EXTRACTION_RETRIES,
        temperature: float = EXTRACTION_TEMPERATURE,
        max_tokens: int = EXTRACTION_MAX_TOKENS,
    ) -> None:
        self._weights = weights
        self._completion = completion
        self._max_retries = max_retries
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def extract(self, request: ExtractClaimsInput) -> ExtractClaimsResult:
        if self._completion is None:
            return self._fallback(request, llm_calls=0)

        messages = _build_messages(request)
        llm_calls = 0
        start = time.perf_counter()
        for attempt in range(1, self._max_retries + 2):
            llm_calls += 1
            try:
                payload = await self._completion.complete_structured(
                    messages,
                    ClaimExtractionPayload,
                    schema_name="claim_extraction",
                    temperature=self._temperature,
                    max_tokens=self._max_tokens,
                    max_retries=EXTRACTION_PROVIDER_RETRIES,
                )
            except Exception as exc:  # noqa: BLE001 - degrade to the synthetic claim
                logger.warning(
                    "verification.extraction.attempt_failed",
                    extra={
                        "attempt": attempt,
                        "company": request.company,
                        "error": type(exc).__name__,
                        "code": getattr(exc, "code", None),
                    },
                )
                continue
            metrics.timing("extraction.latency_ms", (time.perf_counter() - start) * 1000)
            return self._build_result(request, payload, llm_calls=llm_calls)

        metrics.increment("extraction.fallback", tags={"signal_type": request.signal_type})
        logger.error(
            "verification.extraction.fallback",
            extra={"company": request.company, "attempts": llm_calls},
        )
        return self._fallback(request, llm_calls=llm_calls)

    def _build_result(
        self,
        request: ExtractClaimsInput,
        payload: ClaimExtractionPayload,
        *,
        llm_calls: int,
    ) -> ExtractClaimsResult:
        provenance = _provenance(request)
        claims = [
            Claim(
                id=f"claim_{index}",
                type=item.type,  # type: ignore[arg-type]
                statement=item.statement.strip(),
                entities=ClaimEntities(**item.entities.model_dump()),
                verification_requirements=self._weights.gates_for(item.type),
                extracted_from=provenance,
            )
            for index, item in enumerate(
                (item for item in payload.claims if item.statement.strip()),
                start=1,
            )
        ]
        merged = merge_similar_claims(claims)
        domain = normalize_domain(request.domain) or normalize_domain(payload.company_domain) or None
        identity = CompanyIdentity(
            canonical_name=payload.company_canonical_name.strip() or request.company,
            domain=domain,
            domain_confidence=payload.domain_confidence,
        )
        logger.info(
            "verification.extraction.complete",
            extra={"company": request.company, "claims": len(merged), "raw_claims": len(claims)},
        )
        return ExtractClaimsResult(claims=merged, company_identity=identity, llm_calls=llm_calls)

    def _fallback(self, request: ExtractClaimsInput, *, llm_calls: int) -> ExtractClaimsResult:
        claim_type = claim_type_for_signal(request.signal_type)
        statement = request.signal_details.strip() or f"{request.company} {request.signal_type}"
        claim = Claim(
            id="claim_1",
            type=claim_type,
            statement=statement,
            entities=ClaimEntities(company=request.company),
            verification_requirements=self._weights.gates_for(claim_type),
            extracted_from=_provenance(request),
        )
        domain = normalize_domain(request.domain) or None
        identity = CompanyIdentity(
            canonical_name=request.company,
            domain=domain,
            domain_confidence="medium" if domain else "unknown",
        )
        return ExtractClaimsResult(
            claims=[claim],
            company_identity=identity,
            llm_calls=llm_calls,
            used_fallback=True,
        )


def claim_type_for_signal(signal_type: str) -> ClaimType:
    normalized = (signal_type or "").strip().lower()
    if normalized in CLAIM_TYPES:
        return normalized  # type: ignore[return-value]
    return SIGNAL_TO_CLAIM_TYPE.get(normalized, "other")


def merge_similar_claims(claims: Sequence[Claim]) -> list[Claim]:
    """Collapse same-type claims into one, folding in missing entity fields."""
    groups: dict[str, list[Claim]] = {}
    for claim in claims:
        groups.setdefault(claim.type, []).append(claim)

    merged: list[Claim] = []
    for group in groups.values():
        if len(group) == 1:
            merged.append(group[0])
            continue
        base = max(group, key=lambda claim: len(claim.entities.populated()))
        entities = dict(base.entities.populated())
        for other in group:
            for key, value in other.entities.populated().items():
                entities.setdefault(key, value)
        merged.append(base.model_copy(update={"entities": ClaimEntities(**entities)}))
    return merged


def _provenance(request: ExtractClaimsInput) -> str:
    if request.article_title:
        return f"RSS: {request.article_title}"
    if request.article_source:
        return f"RSS: {request.article_source}"
    return "RSS"


def _build_messages(request: ExtractClaimsInput) -> list[ChatMessage]:
    lines = [
        f"Company: {request.company}",
        f"Domain: {request.domain or 'unknown'}",
        f"Signal type: {request.signal_type}",
        f"Signal details: {request.signal_details}",
        f"Article title: {request.article_title}",
        f"Article source: {request.article_source}",
        f"Article snippet: {request.article_snippet[:2000]}",
    ]
    return [
        ChatMessage(role="system", content=SYSTEM_PROMPT.format(claim_types=", ".join(CLAIM_TYPES))),
        ChatMessage(role="user", content="\n".join(lines)),
    ]
