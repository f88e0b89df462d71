"""Deterministic hard gates evaluated from supporting evidence source types."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Literal

from leadsignal.models.verification import Claim
from leadsignal.services.verification.errors import UnknownGateError

logger = logging.getLogger(__name__)

GatePolicy = Literal["strict", "lenient"]
GATE_POLICIES: tuple[str, ...] = ("strict", "lenient")

OFFICIAL_SOURCE_TYPES = frozenset(
    {"company_press", "company_newsroom", "company_careers", "company_about", "sec_filing"}
)
REPUTABLE_SOURCE_TYPES = frozenset(
    {
        "company_press",
        "company_newsroom",
        "sec_filing",
        "third_party_news",
        "crunchbase",
        "pitchbook",
        "registry",
    }
)
JOB_SOURCE_TYPES = frozenset({"company_careers", "jobs_board"})

UNKNOWN_GATE_REASON = "Gate not implemented - passed by default"


@dataclass(frozen=True)
class GateContext:
    """Facts about one claim's supporting evidence that gates may inspect."""

    claim: Claim
    supporting_source_types: tuple[str, ...]
    official_support: bool = False
    contradicting_count: int = 0

    @property
    def supporting_count(self) -> int:
        return len(self.supporting_source_types)

    @property
    def has_official(self) -> bool:
        return self.official_support or any(
            source in OFFICIAL_SOURCE_TYPES for source in self.supporting_source_types
        )

    @property
    def reputable_count(self) -> int:
        return sum(1 for source in self.supporting_source_types if source in REPUTABLE_SOURCE_TYPES)

    def has_any(self, source_types: Iterable[str]) -> bool:
        wanted = set(source_types)
        return any(source in wanted for source in self.supporting_source_types)


@dataclass(frozen=True)
class GateResult:
    gate: str
    passed: bool
    reason: str


GateEvaluator = Callable[[GateContext], tuple[bool, str]]


def resolve_gate_policy(value: str | None) -> GatePolicy:
    normalized = (value or "strict").strip().lower()
    if normalized not in GATE_POLICIES:
        raise ValueError(f"Unknown gate policy '{value}'; expected one of {', '.join(GATE_POLICIES)}")
    return normalized  # type: ignore[return-value]


class GateRegistry:
    """Maps gate names to evaluators; unknown names follow the configured policy."""

    def __init__(self, evaluators: Mapping[str, GateEvaluator] | None = None) -> None:
        self._evaluators: dict[str, GateEvaluator] = dict(evaluators or {})

    def register(self, name: str, evaluator: GateEvaluator) -> None:
        if not name:
            raise ValueError("gate name is required")
        self._evaluators[name] = evaluator

    def __contains__(self, name: object) -> bool:
        return name in self._evaluators

    def names(self) -> frozenset[str]:
        return frozenset(self._evaluators)

    def unknown(self, names: Iterable[str]) -> list[str]:
        """Return the names with no registered evaluator, preserving order."""
        missing: list[str] = []
        for name in names:
            if name not in self._evaluators and name not in missing:
                missing.append(name)
        return missing

    def evaluate(self, gate: str, context: GateContext, *, policy: GatePolicy = "strict") -> GateResult:
        evaluator = self._evaluators.get(gate)
        if evaluator is None:
            if policy == "strict":
                raise UnknownGateError(gate)
            logger.warning("verification.gate.unknown", extra={"gate": gate, "policy": policy})
            return GateResult(gate=gate, passed=True, reason=UNKNOWN_GATE_REASON)
        passed, reason = evaluator(context)
        return GateResult(gate=gate, passed=passed, reason=reason)

    def evaluate_all(
        self,
        requirements: Sequence[str],
        context: GateContext,
        *,
        policy: GatePolicy = "strict",
    ) -> list[GateResult]:
        results: list[GateResult] = []
        for gate in requirements:
            try:
                results.append(self.evaluate(gate, context, policy=policy))
            except UnknownGateError as exc:
                logger.error("verification.gate.unknown", extra={"gate": gate, "policy": policy})
                results.append(GateResult(gate=gate, passed=False, reason=str(exc)))
        return results


def _official_or_two_reputable(context: GateContext) -> tuple[bool, str]:
    if context.has_official:
        return True, "Official source confirms the claim"
    if context.reputable_count >= 2:
        return True, f"{context.reputable_count} reputable sources confirm the claim"
    return False, "Needs an official source or at least 2 reputable sources"


def _multiple_sources(context: GateContext) -> tuple[bool, str]:
    if context.supporting_count >= 2:
        return True, f"{context.supporting_count} sources report a consistent amount"
    return False, "Needs at least 2 supporting sources to confirm consistency"


def _any_support(context: GateContext) -> tuple[bool, str]:
    if context.supporting_count >= 1:
        return True, "Named entity appears in supporting evidence"
    return False, "No supporting evidence mentions the named entity"


def _contradiction_checked(context: GateContext) -> tuple[bool, str]:
    return True, "Checked through contradiction analysis"


def _official_only(context: GateContext) -> tuple[bool, str]:
    if context.has_official:
        return True, "Official source confirms the claim"
    return False, "No official source found"


def _official_or_jobs(context: GateContext) -> tuple[bool, str]:
    if context.has_official or context.has_any(JOB_SOURCE_TYPES):
        return True, "Official announcement or job postings found"
    return False, "No official announcement or job postings found"


def _careers_or_jobs(context: GateContext) -> tuple[bool, str]:
    if context.has_any(JOB_SOURCE_TYPES):
        return True, "Careers page or job listing supports the claim"
    return False, "No careers page or job listing found"


def _sec_or_official(context: GateContext) -> tuple[bool, str]:
    if context.has_any({"sec_filing"}):
        return True, "SEC filing supports the claim"
    if context.has_official:
        return True, "Official source confirms the claim"
    return False, "No SEC filing or official source found"


def build_default_registry() -> GateRegistry:
    registry = GateRegistry()
    for name in (
        "official_announcement_or_2_reputable_sources",
        "official_from_either_party_or_2_reputable",
        "official_announcement_or_2_reputable",
        "official_statement_or_2_reputable_sources",
    ):
        registry.register(name, _official_or_two_reputable)
    registry.register("amount_consistent_across_sources", _multiple_sources)
    for name in ("amount_not_contradicted", "no_denial_found", "no_postponement_notice", "no_retraction"):
        registry.register(name, _contradiction_checked)
    for name in ("company_name_confirmed", "person_exists_verification", "partner_name_verified"):
        registry.register(name, _any_support)
    for name in (
        "official_announcement_or_company_page",
        "official_announcement_or_verifiable_address",
        "official_product_page_or_announcement",
        "confirmation_from_at_least_one_official_party",
    ):
        registry.register(name, _official_only)
    for name in (
        "sec_filing_or_official_announcement",
        "official_source_or_sec_filing",
        "official_announcement_or_sec_filing",
    ):
        registry.register(name, _sec_or_official)
    registry.register("official_announcement_or_job_postings", _official_or_jobs)
    registry.register("official_careers_page_or_job_listings", _careers_or_jobs)
    registry.register("active_job_posting_found", _careers_or_jobs)
    return registry


default_registry = build_default_registry()
