"""Evidence reliability weighting and overall confidence calibration."""

from __future__ import annotations

import math
import re
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

from leadsignal.models.verification import (
    ClaimVerification,
    ConfidenceBand,
    ConfidenceExplanation,
    ConfidenceFactor,
    Evidence,
    OverallStatus,
)
from leadsignal.services.verification.gates import OFFICIAL_SOURCE_TYPES
from leadsignal.services.verification.weights import VerificationWeights, normalize_domain

DEFAULT_EVIDENCE_WEIGHT = 0.5
UNPARSEABLE_RECENCY_WEIGHT = 0.5
UNUSED_PUBLISHER_WEIGHT = 1.0
UNLISTED_PUBLISHER_WEIGHT = 0.6
CONTRADICTED_CAP = 0.3

_EXACT_NUMBERS = re.compile(r"\$[\d,.]+[MBK]?|\d+%|\d+(?:,\d{3})+")
_NAMED_PEOPLE = re.compile(r"(?:Mr\.|Ms\.|Dr\.|CEO|CFO|CTO)?\s*[A-Z][a-z]+\s+[A-Z][a-z]+")
_SPECIFIC_DATES = re.compile(
    r"(?:January|February|March|April|May|June|July|August|September|October|November|December)"
    r"\s+\d{1,2},?\s+\d{4}|\d{1,2}/\d{1,2}/\d{4}"
)
_QUOTES = re.compile(r'"[^"]{10,}"')


@dataclass(frozen=True)
class EvidenceWeight:
    evidence_id: str
    source_type_weight: float
    publisher_weight: float
    recency_weight: float
    specificity_bonus: float
    duplication_penalty: float
    raw_weight: float
    final_weight: float


@dataclass(frozen=True)
class OverallConfidence:
    confidence: float
    band: ConfidenceBand
    status: OverallStatus
    status_reason: str
    support_score: float = 0.0
    contradiction_score: float = 0.0
    gate_penalty: float = 0.0
    evidence_weights: Mapping[str, EvidenceWeight] = field(default_factory=dict)


def logistic(value: float, midpoint: float, steepness: float) -> float:
    return 1.0 / (1.0 + math.exp(-steepness * (value - midpoint)))


def confidence_band(confidence: float) -> ConfidenceBand:
    if confidence >= 0.8:
        return "high"
    if confidence >= 0.5:
        return "medium"
    if confidence >= 0.2:
        return "low"
    return "unknown"


class ConfidenceCalculator:
    """Scores evidence reliability and calibrates an overall verdict."""

    def __init__(
        self,
        weights: VerificationWeights,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._weights = weights
        self._clock = clock

    def evidence_weight(self, evidence: Evidence, all_evidence: Sequence[Evidence]) -> EvidenceWeight:
        source_type_weight = self._weights.source_type_weight(evidence.source_type)
        publisher_weight = self._publisher_weight(evidence)
        if publisher_weight == 0:
            return EvidenceWeight(
                evidence_id=evidence.id,
                source_type_weight=source_type_weight,
                publisher_weight=0.0,
                recency_weight=0.0,
                specificity_bonus=0.0,
                duplication_penalty=0.0,
                raw_weight=0.0,
                final_weight=0.0,
            )
        recency = self.recency_weight(evidence.published_at or evidence.fetched_at)
        specificity = self.specificity_bonus(evidence.snippet)
        duplicates = sum(
            1 for other in all_evidence if other.id != evidence.id and other.content_hash == evidence.content_hash
        )
        duplication = self.duplication_penalty(duplicates)
        raw = source_type_weight * publisher_weight * recency * (1 + specificity) * (1 - duplication)
        return EvidenceWeight(
            evidence_id=evidence.id,
            source_type_weight=source_type_weight,
            publisher_weight=publisher_weight,
            recency_weight=recency,
            specificity_bonus=specificity,
            duplication_penalty=duplication,
            raw_weight=raw,
            final_weight=logistic(raw, 0.5, 6),
        )

    def score_evidence(self, evidence: Sequence[Evidence]) -> dict[str, EvidenceWeight]:
        return {item.id: self.evidence_weight(item, evidence) for item in evidence}

    def recency_weight(self, published: str | datetime | None) -> float:
        moment = _parse_timestamp(published)
        if moment is None:
            return UNPARSEABLE_RECENCY_WEIGHT
        decay = self._weights.recency_decay
        days = max(0.0, (self._clock() - moment).total_seconds() / 86400)
        return max(decay.min_weight, 0.5 ** (days / decay.half_life_days))

    def specificity_bonus(self, text: str) -> float:
        factors = self._weights.specificity_factors
        bonus = 0.0
        if _EXACT_NUMBERS.search(text or ""):
            bonus += factors.has_exact_numbers
        if _NAMED_PEOPLE.search(text or ""):
            bonus += factors.has_named_people
        if _SPECIFIC_DATES.search(text or ""):
            bonus += factors.has_specific_dates
        if _QUOTES.search(text or ""):
            bonus += factors.has_quotes
        return bonus

    def duplication_penalty(self, duplicate_count: int) -> float:
        if duplicate_count <= 0:
            return 0.0
        ceiling = self._weights.duplication_penalty
        return min(ceiling, duplicate_count * ceiling / 3)

    def calculate(
        self,
        verifications: Sequence[ClaimVerification],
        evidence: Sequence[Evidence],
    ) -> OverallConfidence:
        evidence_weights = self.score_evidence(evidence)
        if not verifications:
            return OverallConfidence(
                confidence=0.0,
                band="unknown",
                status="discard",
                status_reason="Insufficient evidence to verify any claims",
                evidence_weights=evidence_weights,
            )

        final = {key: value.final_weight for key, value in evidence_weights.items()}
        total_support = 0.0
        total_contradiction = 0.0
        gates_passed = 0
        gates_failed = 0
        for verification in verifications:
            for support in verification.supporting_evidence:
                total_support += support.relevance_score * final.get(support.evidence_id, DEFAULT_EVIDENCE_WEIGHT)
            for contradiction in verification.contradicting_evidence:
                multiplier = 1.5 if contradiction.source_type in OFFICIAL_SOURCE_TYPES else 1.0
                total_contradiction += final.get(contradiction.evidence_id, DEFAULT_EVIDENCE_WEIGHT) * multiplier
            gates_passed += len(verification.gates_passed)
            gates_failed += len(verification.gates_failed)

        support = total_support / len(verifications)
        contradiction = total_contradiction / len(verifications)
        total_gates = gates_passed + gates_failed
        gate_penalty = gates_failed / total_gates if total_gates else 0.0

        confidence = logistic(support - contradiction * 0.7 - gate_penalty * 0.3, 0.5, 8)
        if gates_failed > 0:
            confidence = min(confidence, self._weights.thresholds.watchlist + 0.1)
        if any(verification.status == "contradicted" for verification in verifications):
            confidence = min(confidence, CONTRADICTED_CAP)
        confidence = max(0.0, min(1.0, confidence))

        status, reason = self._overall_status(confidence, verifications, gates_failed)
        return OverallConfidence(
            confidence=confidence,
            band=confidence_band(confidence),
            status=status,
            status_reason=reason,
            support_score=support,
            contradiction_score=contradiction,
            gate_penalty=gate_penalty,
            evidence_weights=evidence_weights,
        )

    def explain(self, result: OverallConfidence) -> ConfidenceExplanation:
        """Summarize the factors behind a verdict; informational only."""
        factors: list[ConfidenceFactor] = []
        if result.support_score > 0.7:
            factors.append(
                ConfidenceFactor(
                    name="Strong support",
                    impact="positive",
                    detail="Multiple high-quality sources support the claims",
                )
            )
        elif result.support_score > 0.4:
            factors.append(
                ConfidenceFactor(name="Moderate support", impact="neutral", detail="Some supporting evidence found")
            )
        else:
            factors.append(
                ConfidenceFactor(name="Weak support", impact="negative", detail="Limited supporting evidence")
            )

        if result.contradiction_score > 0.3:
            factors.append(
                ConfidenceFactor(
                    name="Contradictions found",
                    impact="negative",
                    detail="Evidence contradicts some claims",
                )
            )
        if result.gate_penalty > 0:
            factors.append(
                ConfidenceFactor(
                    name="Verification gates failed",
                    impact="negative",
                    detail="Some required verification checks did not pass",
                )
            )

        weights = [weight.final_weight for weight in result.evidence_weights.values()]
        average = sum(weights) / len(weights) if weights else 0.0
        if average > 0.7:
            factors.append(
                ConfidenceFactor(
                    name="High-quality sources",
                    impact="positive",
                    detail="Evidence from reputable, recent sources",
                )
            )
        elif average < 0.4:
            factors.append(
                ConfidenceFactor(
                    name="Lower-quality sources",
                    impact="negative",
                    detail="Evidence from less authoritative or older sources",
                )
            )

        summary = f"Confidence: {_percent(result.confidence)} ({result.band}). {result.status_reason}"
        return ConfidenceExplanation(summary=summary, factors=tuple(factors))

    def _publisher_weight(self, evidence: Evidence) -> float:
        listed = self._weights.publisher_weight(normalize_domain(evidence.url))
        if listed is not None:
            return listed
        if evidence.publisher:
            return UNLISTED_PUBLISHER_WEIGHT
        return UNUSED_PUBLISHER_WEIGHT

    def _overall_status(
        self,
        confidence: float,
        verifications: Sequence[ClaimVerification],
        gates_failed: int,
    ) -> tuple[OverallStatus, str]:
        thresholds = self._weights.thresholds
        statuses = Counter(verification.status for verification in verifications)
        if statuses["contradicted"]:
            return "discard", f"{statuses['contradicted']} claim(s) contradicted by evidence"
        if statuses["insufficient_evidence"] + statuses["unknown"] == len(verifications):
            return "discard", "Insufficient evidence to verify any claims"
        if confidence >= thresholds.verified and gates_failed == 0:
            return "verified", f"High confidence ({_percent(confidence)}), {statuses['verified']} claim(s) verified"
        if confidence >= thresholds.watchlist:
            return "watchlist", f"Moderate confidence ({_percent(confidence)}), needs additional verification"
        return "discard", f"Low confidence ({_percent(confidence)}), insufficient evidence"


def _percent(value: float) -> str:
    return f"{value * 100:.0f}%"


def _parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        text = value.strip()
        if not text:
            return None
        try:
            moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                moment = parsedate_to_datetime(text)
            except (TypeError, ValueError):
                return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)
