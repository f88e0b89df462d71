"""Adjudicates each claim against the collected evidence."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic.config import ConfigDict

from leadsignal.clients.contracts import ChatMessage, StructuredCompletionProvider
from leadsignal.models.verification import (
    CONTRADICTION_TYPES,
    Claim,
    ClaimStatus,
    ClaimVerification,
    ContradictingEvidence,
    Evidence,
    SupportingEvidence,
)
from leadsignal.observability.metrics import metrics
from leadsignal.services.verification.gates import GateContext, GateRegistry, GateResult, default_registry
from leadsignal.services.verification.weights import VerificationWeights

logger = logging.getLogger(__name__)

VERIFICATION_TEMPERATURE = 0.1
VERIFICATION_MAX_TOKENS = 3000
LLM_FAILURE_REASONING = "LLM analysis failed - insufficient data to verify"
SNIPPET_PREVIEW_CHARS = 500

SYSTEM_PROMPT = """You verify a business claim against numbered evidence items.
For every evidence item, in the same order, report whether it is relevant to the claim,
whether it supports or contradicts it, a relevance_score from 0 to 1, the key_snippet that
justifies your judgment, and for contradictions a contradiction_type of different_amount,
different_date, entity_mismatch, denial, or retraction. Then give overall_support and
overall_contradiction scores from 0 to 1 and, for each listed gate, whether it passed."""


def _clamp_unit(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, number))


class EvidenceMatch(BaseModel):
    is_relevant: bool = False
    supports: bool = False
    contradicts: bool = False
    relevance_score: float = 0.0
    key_snippet: str = ""
    contradiction_type: str | None = None
    reasoning: str = ""

    model_config = ConfigDict(extra="ignore")

    @field_validator("relevance_score", mode="before")
    @classmethod
    def _normalize_score(cls, value: Any) -> float:
        return _clamp_unit(value)


class GateAnalysis(BaseModel):
    gate: str
    passed: bool
    reason: str = ""

    model_config = ConfigDict(extra="ignore")


class ClaimEvidenceAnalysis(BaseModel):
    """Schema the completion provider must satisfy for one claim."""

    matches: list[EvidenceMatch] = Field(default_factory=list)
    overall_support: float = 0.0
    overall_contradiction: float = 0.0
    gate_analysis: list[GateAnalysis] = Field(default_factory=list)
    reasoning: str = ""

    model_config = ConfigDict(extra="ignore")

    @field_validator("overall_support", "overall_contradiction", mode="before")
    @classmethod
    def _normalize_scores(cls, value: Any) -> float:
        return _clamp_unit(value)


class ClaimVerifier:
    """Combines model evidence matching with deterministic hard gates."""

    def __init__(
        self,
        *,
        weights: VerificationWeights,
        completion: StructuredCompletionProvider | None = None,
        registry: GateRegistry | None = None,
        temperature: float = VERIFICATION_TEMPERATURE,
        max_tokens: int = VERIFICATION_MAX_TOKENS,
    ) -> None:
        self._weights = weights
        self._completion = completion
        self._registry = registry or default_registry
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def uses_completion(self) -> bool:
        return self._completion is not None

    async def verify_all(self, claims: Sequence[Claim], evidence: Sequence[Evidence]) -> list[ClaimVerification]:
        """Verify claims one at a time to bound the completion request rate."""
        results: list[ClaimVerification] = []
        for claim in claims:
            results.append(await self.verify(claim, evidence))
        return results

    async def verify(self, claim: Claim, evidence: Sequence[Evidence]) -> ClaimVerification:
        start = time.perf_counter()
        try:
            analysis = await self._analyze(claim, evidence)
        except Exception as exc:  # noqa: BLE001 - a failed analysis yields an unknown verdict
            logger.error(
                "verification.claim.analysis_failed",
                extra={"claim_id": claim.id, "error": type(exc).__name__, "code": getattr(exc, "code", None)},
            )
            metrics.increment("claims.analysis_failed", tags={"claim_type": claim.type})
            return failed_verification(claim)

        supporting, contradicting = _partition_matches(analysis.matches, evidence)
        gate_results = self._evaluate_gates(claim, supporting, contradicting, evidence)
        gates_passed = tuple(result.gate for result in gate_results if result.passed)
        gates_failed = tuple(result.gate for result in gate_results if not result.passed)
        _log_gate_disagreements(claim, gate_results, analysis.gate_analysis)

        status = determine_claim_status(
            supporting_count=len(supporting),
            contradicting_count=len(contradicting),
            gates_failed=len(gates_failed),
            support_score=analysis.overall_support,
            contradiction_score=analysis.overall_contradiction,
        )
        confidence = claim_confidence(
            support_score=analysis.overall_support,
            contradiction_score=analysis.overall_contradiction,
            gates_passed=len(gates_passed),
            gates_total=len(gate_results),
            supporting_count=len(supporting),
            watchlist_threshold=self._weights.thresholds.watchlist,
        )
        metrics.timing(
            "claims.verify_ms",
            (time.perf_counter() - start) * 1000,
            tags={"claim_type": claim.type, "status": status},
        )
        return ClaimVerification(
            claim_id=claim.id,
            claim=claim,
            status=status,
            confidence=confidence,
            supporting_evidence=tuple(supporting),
            contradicting_evidence=tuple(contradicting),
            gates_passed=gates_passed,
            gates_failed=gates_failed,
            reasoning=_compose_reasoning(analysis, supporting, contradicting, gate_results),
        )

    async def _analyze(self, claim: Claim, evidence: Sequence[Evidence]) -> ClaimEvidenceAnalysis:
        if self._completion is None:
            raise RuntimeError("No structured-completion provider configured")
        return await self._completion.complete_structured(
            _build_messages(claim, evidence),
            ClaimEvidenceAnalysis,
            schema_name="claim_evidence_analysis",
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )

    def _evaluate_gates(
        self,
        claim: Claim,
        supporting: Sequence[SupportingEvidence],
        contradicting: Sequence[ContradictingEvidence],
        evidence: Sequence[Evidence],
    ) -> list[GateResult]:
        official_ids = {item.id for item in evidence if item.is_official}
        context = GateContext(
            claim=claim,
            supporting_source_types=tuple(item.source_type for item in supporting),
            official_support=any(item.evidence_id in official_ids for item in supporting),
            contradicting_count=len(contradicting),
        )
        return self._registry.evaluate_all(
            claim.verification_requirements,
            context,
            policy=self._weights.gate_policy,
        )


def failed_verification(claim: Claim) -> ClaimVerification:
    return ClaimVerification(
        claim_id=claim.id,
        claim=claim,
        status="unknown",
        confidence=0.0,
        gates_failed=tuple(claim.verification_requirements),
        reasoning=LLM_FAILURE_REASONING,
    )


def determine_claim_status(
    *,
    supporting_count: int,
    contradicting_count: int,
    gates_failed: int,
    support_score: float,
    contradiction_score: float,
) -> ClaimStatus:
    if contradicting_count > 0 and supporting_count == 0:
        return "contradicted"
    if gates_failed > 0:
        return "partially_verified" if supporting_count > 0 else "insufficient_evidence"
    if supporting_count >= 2 and contradicting_count == 0:
        return "verified"
    if supporting_count == 1 and contradicting_count == 0:
        return "partially_verified"
    if supporting_count > 0 and contradicting_count > 0:
        return "partially_verified" if support_score > contradiction_score * 2 else "contradicted"
    return "unknown"


def claim_confidence(
    *,
    support_score: float,
    contradiction_score: float,
    gates_passed: int,
    gates_total: int,
    supporting_count: int,
    watchlist_threshold: float,
) -> float:
    confidence = support_score - contradiction_score * 0.5
    if gates_total > 0:
        confidence *= 0.7 + 0.3 * (gates_passed / gates_total)
    if supporting_count >= 3:
        confidence *= 1.1
    elif supporting_count == 1:
        confidence *= 0.85
    if gates_passed < gates_total:
        confidence = min(confidence, watchlist_threshold)
    return max(0.0, min(1.0, confidence))


def _partition_matches(
    matches: Sequence[EvidenceMatch],
    evidence: Sequence[Evidence],
) -> tuple[list[SupportingEvidence], list[ContradictingEvidence]]:
    supporting: list[SupportingEvidence] = []
    contradicting: list[ContradictingEvidence] = []
    for match, item in zip(matches, evidence, strict=False):
        if not match.is_relevant:
            continue
        snippet = match.key_snippet.strip() or item.snippet[:SNIPPET_PREVIEW_CHARS]
        if match.supports:
            supporting.append(
                SupportingEvidence(
                    evidence_id=item.id,
                    url=item.url,
                    snippet=snippet,
                    relevance_score=match.relevance_score,
                    source_type=item.source_type,
                )
            )
        if match.contradicts:
            contradiction_type = (match.contradiction_type or "").strip().lower()
            contradicting.append(
                ContradictingEvidence(
                    evidence_id=item.id,
                    url=item.url,
                    snippet=snippet,
                    contradiction_type=contradiction_type if contradiction_type in CONTRADICTION_TYPES else "unknown",
                    source_type=item.source_type,
                )
            )
    return supporting, contradicting


def _log_gate_disagreements(
    claim: Claim,
    gate_results: Sequence[GateResult],
    model_view: Sequence[GateAnalysis],
) -> None:
    model_verdicts = {entry.gate: entry.passed for entry in model_view}
    for result in gate_results:
        model_passed = model_verdicts.get(result.gate)
        if model_passed is not None and model_passed != result.passed:
            logger.info(
                "verification.gate.model_disagreement",
                extra={"claim_id": claim.id, "gate": result.gate, "rule_passed": result.passed},
            )


def _compose_reasoning(
    analysis: ClaimEvidenceAnalysis,
    supporting: Sequence[SupportingEvidence],
    contradicting: Sequence[ContradictingEvidence],
    gate_results: Sequence[GateResult],
) -> str:
    parts = [f"{len(supporting)} supporting, {len(contradicting)} contradicting source(s)."]
    failed = [f"{result.gate} ({result.reason})" for result in gate_results if not result.passed]
    if failed:
        parts.append(f"Failed gates: {'; '.join(failed)}.")
    if analysis.reasoning.strip():
        parts.append(analysis.reasoning.strip())
    return " ".join(parts)


def _build_messages(claim: Claim, evidence: Sequence[Evidence]) -> list[ChatMessage]:
    entities = ", ".join(f"{key}={value}" for key, value in claim.entities.populated().items()) or "none"
    evidence_lines = [
        f"[{index}] ({item.source_type}) {item.url}\nTitle: {item.title}\n{item.snippet[:SNIPPET_PREVIEW_CHARS]}"
        for index, item in enumerate(evidence)
    ]
    user = "\n".join(
        [
            f"Claim ({claim.type}): {claim.statement}",
            f"Entities: {entities}",
            f"Gates: {', '.join(claim.verification_requirements) or 'none'}",
            "",
            "Evidence:",
            *evidence_lines,
        ]
    )
    return [ChatMessage(role="system", content=SYSTEM_PROMPT), ChatMessage(role="user", content=user)]
