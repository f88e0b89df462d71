"""API endpoint for verifying a single news-derived signal."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends

from leadsignal.models.verification import VerificationResult
from leadsignal.services.verification.signal_verifier import SignalVerifier, build_signal_verifier

router = APIRouter()
logger = logging.getLogger(__name__)

_VERIFIER_INSTANCE: SignalVerifier | None = None


def get_signal_verifier() -> SignalVerifier:
    """Singleton accessor used by API routes."""
    global _VERIFIER_INSTANCE  # noqa: PLW0603
    if _VERIFIER_INSTANCE is None:
        _VERIFIER_INSTANCE = build_signal_verifier()
    return _VERIFIER_INSTANCE


async def close_signal_verifier() -> None:
    global _VERIFIER_INSTANCE  # noqa: PLW0603
    verifier, _VERIFIER_INSTANCE = _VERIFIER_INSTANCE, None
    if verifier is not None:
        await verifier.aclose()


@router.post("/signals/verify", response_model=VerificationResult)
async def verify_signal(
    payload: dict[str, Any] = Body(..., description="VerifySignalInput in snake_case or camelCase."),
    verifier: SignalVerifier = Depends(get_signal_verifier),
) -> VerificationResult:
    """Verify a signal; invalid payloads come back as a discarded result, not a 4xx."""
    result = await verifier.verify(payload)
    logger.info(
        "verification.api_result",
        extra={
            "company": result.input_company,
            "status": result.overall_status,
            "confidence": round(result.overall_confidence, 4),
        },
    )
    return result
