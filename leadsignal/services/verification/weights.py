"""Load and validate the versioned verification weights document."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any
from urllib.parse import urlparse

import yaml

from leadsignal.config import settings
from leadsignal.models.verification import CLAIM_TYPES, SOURCE_TYPES
from leadsignal.services.verification.errors import WeightsConfigError
from leadsignal.services.verification.gates import (
    GatePolicy,
    GateRegistry,
    default_registry,
    resolve_gate_policy,
)

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS_PATH = Path("configs/verification_weights.v1.yaml")
DEFAULT_SOURCE_TYPE_WEIGHT = 0.4
_REPO_ROOT = Path(__file__).resolve().parents[3]
_GATE_CAP_MARGIN = 0.1


@dataclass(frozen=True)
class RecencyDecay:
    half_life_days: float
    min_weight: float


@dataclass(frozen=True)
class SpecificityFactors:
    has_exact_numbers: float
    has_named_people: float
    has_specific_dates: float
    has_quotes: float


@dataclass(frozen=True)
class ConfidenceThresholds:
    verified: float
    watchlist: float
    discard: float


@dataclass(frozen=True)
class VerificationWeights:
    """Immutable weights and gate tables loaded once per process."""

    version: str
    sha256: str
    source_type_weights: Mapping[str, float]
    publisher_allowlist: Mapping[str, float]
    recency_decay: RecencyDecay
    specificity_factors: SpecificityFactors
    duplication_penalty: float
    thresholds: ConfidenceThresholds
    hard_gates: Mapping[str, tuple[str, ...]]
    gate_policy: GatePolicy = "strict"

    def source_type_weight(self, source_type: str) -> float:
        return self.source_type_weights.get(source_type, DEFAULT_SOURCE_TYPE_WEIGHT)

    def publisher_weight(self, domain: str | None) -> float | None:
        """Return the allowlisted weight for a domain or any of its parents."""
        host = normalize_domain(domain)
        while host:
            if host in self.publisher_allowlist:
                return self.publisher_allowlist[host]
            if "." not in host:
                break
            host = host.split(".", 1)[1]
        return None

    def gates_for(self, claim_type: str) -> tuple[str, ...]:
        return self.hard_gates.get(claim_type, ())


def load_weights(
    path: Path | str | None = None,
    *,
    registry: GateRegistry | None = None,
    policy: str | None = None,
) -> VerificationWeights:
    """Read, validate, and freeze the weights YAML."""
    resolved = _resolve_path(Path(path) if path else Path(settings.verification_weights_path))
    if not resolved.exists():
        raise WeightsConfigError(f"Weights document missing at {resolved}", code="WEIGHTS_MISSING")
    blob = resolved.read_bytes()
    try:
        raw = yaml.safe_load(blob.decode("utf-8"))
    except yaml.YAMLError as exc:
        raise WeightsConfigError(f"Unable to parse weights document: {exc}", code="SCHEMA_INVALID") from exc
    weights = parse_weights(
        raw,
        sha256=hashlib.sha256(blob).hexdigest(),
        registry=registry,
        policy=policy,
    )
    logger.info(
        "verification.weights.loaded",
        extra={"path": str(resolved), "version": weights.version, "gate_policy": weights.gate_policy},
    )
    return weights


def parse_weights(
    raw: Any,
    *,
    sha256: str = "",
    registry: GateRegistry | None = None,
    policy: str | None = None,
) -> VerificationWeights:
    if not isinstance(raw, Mapping):
        raise WeightsConfigError("Weights document must be a mapping", code="SCHEMA_INVALID")

    version = str(raw.get("version") or "").strip()
    if not version:
        raise WeightsConfigError("Weights document missing version", code="SCHEMA_INVALID")

    try:
        gate_policy = resolve_gate_policy(policy or settings.verification_unknown_gate_policy)
    except ValueError as exc:
        raise WeightsConfigError(str(exc), code="SCHEMA_INVALID") from exc

    source_type_weights = _parse_weight_table(
        raw.get("source_type_weights") or {},
        field="source_type_weights",
        allowed=SOURCE_TYPES,
    )
    publisher_allowlist = {
        normalize_domain(domain): value
        for domain, value in _parse_weight_table(
            raw.get("publisher_allowlist") or {}, field="publisher_allowlist"
        ).items()
    }

    recency_raw = _mapping(raw.get("recency_decay") or {}, "recency_decay")
    recency = RecencyDecay(
        half_life_days=_number(recency_raw.get("half_life_days", 30), "recency_decay.half_life_days"),
        min_weight=_unit(recency_raw.get("min_weight", 0.3), "recency_decay.min_weight"),
    )
    if recency.half_life_days <= 0:
        raise WeightsConfigError("recency_decay.half_life_days must be > 0", code="SCHEMA_INVALID")

    specificity_raw = _mapping(raw.get("specificity_factors") or {}, "specificity_factors")
    specificity = SpecificityFactors(
        has_exact_numbers=_unit(specificity_raw.get("has_exact_numbers", 0.1), "specificity_factors.has_exact_numbers"),
        has_named_people=_unit(specificity_raw.get("has_named_people", 0.05), "specificity_factors.has_named_people"),
        has_specific_dates=_unit(specificity_raw.get("has_specific_dates", 0.05), "specificity_factors.has_specific_dates"),
        has_quotes=_unit(specificity_raw.get("has_quotes", 0.05), "specificity_factors.has_quotes"),
    )

    duplication_penalty = _unit(raw.get("duplication_penalty", 0.3), "duplication_penalty")
    if duplication_penalty >= 1:
        raise WeightsConfigError("duplication_penalty must be < 1", code="SCHEMA_INVALID")

    thresholds_raw = _mapping(raw.get("confidence_thresholds") or {}, "confidence_thresholds")
    thresholds = ConfidenceThresholds(
        verified=_unit(thresholds_raw.get("verified", 0.75), "confidence_thresholds.verified"),
        watchlist=_unit(thresholds_raw.get("watchlist", 0.45), "confidence_thresholds.watchlist"),
        discard=_unit(thresholds_raw.get("discard", 0.2), "confidence_thresholds.discard"),
    )
    if not thresholds.discard < thresholds.watchlist < thresholds.verified:
        raise WeightsConfigError(
            "confidence_thresholds must satisfy discard < watchlist < verified",
            code="SCHEMA_INVALID",
        )
    if thresholds.watchlist + _GATE_CAP_MARGIN >= thresholds.verified:
        raise WeightsConfigError(
            "confidence_thresholds.verified must exceed watchlist by more than 0.1",
            code="SCHEMA_INVALID",
        )

    hard_gates = _parse_hard_gates(raw.get("hard_gates") or {})
    _check_gate_names(hard_gates, registry or default_registry, gate_policy)

    return VerificationWeights(
        version=version,
        sha256=sha256,
        source_type_weights=MappingProxyType(source_type_weights),
        publisher_allowlist=MappingProxyType(publisher_allowlist),
        recency_decay=recency,
        specificity_factors=specificity,
        duplication_penalty=duplication_penalty,
        thresholds=thresholds,
        hard_gates=MappingProxyType(hard_gates),
        gate_policy=gate_policy,
    )


def normalize_domain(value: str | None) -> str:
    if not value:
        return ""
    try:
        parsed = urlparse(value if "//" in value else f"https://{value}")
    except ValueError:
        return ""
    host = (parsed.netloc or parsed.path).lower()
    if ":" in host:
        host = host.split(":", 1)[0]
    if host.startswith("www."):
        host = host[4:]
    return host


def _resolve_path(path: Path) -> Path:
    if path.is_absolute() or path.exists():
        return path
    candidate = _REPO_ROOT / path
    return candidate if candidate.exists() else path


def _parse_weight_table(
    raw: Any, *, field: str, allowed: tuple[str, ...] | None = None
) -> dict[str, float]:
    table = _mapping(raw, field)
    parsed: dict[str, float] = {}
    for key, value in table.items():
        name = str(key).strip()
        if allowed is not None and name not in allowed:
            raise WeightsConfigError(f"{field} contains unknown key '{name}'", code="SCHEMA_INVALID")
        parsed[name] = _unit(value, f"{field}.{name}")
    return parsed


def _parse_hard_gates(raw: Any) -> dict[str, tuple[str, ...]]:
    table = _mapping(raw, "hard_gates")
    parsed: dict[str, tuple[str, ...]] = {}
    for claim_type, gates in table.items():
        name = str(claim_type).strip()
        if name not in CLAIM_TYPES:
            raise WeightsConfigError(f"hard_gates contains unknown claim type '{name}'", code="SCHEMA_INVALID")
        if gates is None:
            gates = []
        if not isinstance(gates, list) or not all(isinstance(gate, str) and gate.strip() for gate in gates):
            raise WeightsConfigError(f"hard_gates.{name} must be a list of gate names", code="SCHEMA_INVALID")
        parsed[name] = tuple(gate.strip() for gate in gates)
    return parsed


def _check_gate_names(
    hard_gates: Mapping[str, tuple[str, ...]],
    registry: GateRegistry,
    policy: GatePolicy,
) -> None:
    configured = [gate for gates in hard_gates.values() for gate in gates]
    unknown = registry.unknown(configured)
    if not unknown:
        return
    if policy == "strict":
        raise WeightsConfigError(
            f"hard_gates reference unregistered gates: {', '.join(unknown)}",
            code="GATE_UNKNOWN",
        )
    logger.warning("verification.weights.unknown_gates", extra={"gates": unknown, "policy": policy})


def _mapping(value: Any, field: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise WeightsConfigError(f"{field} must be a mapping", code="SCHEMA_INVALID")
    return value


def _number(value: Any, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise WeightsConfigError(f"{field} must be a number", code="SCHEMA_INVALID")
    return float(value)


def _unit(value: Any, field: str) -> float:
    number = _number(value, field)
    if not 0.0 <= number <= 1.0:
        raise WeightsConfigError(f"{field} must be within [0, 1]", code="SCHEMA_INVALID")
    return number
