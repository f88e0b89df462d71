"""Verify one signal JSON file and write the VerificationResult next to it."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from leadsignal.models.verification import VerificationResult
from leadsignal.services.verification.errors import VerificationError, WeightsConfigError
from leadsignal.services.verification.signal_verifier import SignalVerifier, build_signal_verifier
from leadsignal.services.verification.weights import load_weights

logger = logging.getLogger("pipelines.verify_signal")


class SignalInputError(VerificationError):
    """Raised when the input signal file cannot be read."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="E_INPUT_UNREADABLE")


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verify a news-derived signal against independent evidence.")
    parser.add_argument("--input", type=Path, required=True, help="Path to a VerifySignalInput JSON file.")
    parser.add_argument(
        "--output",
        "--out",
        dest="output",
        type=Path,
        required=True,
        help="Destination for the VerificationResult JSON.",
    )
    parser.add_argument("--weights", type=Path, default=None, help="Override the verification weights YAML.")
    return parser.parse_args(argv)


def load_signal(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SignalInputError(f"Unable to read signal input {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise SignalInputError(f"Signal input {path} must contain a JSON object.")
    return payload


def run_pipeline(
    *,
    input_path: Path,
    output_path: Path,
    weights_path: Path | None = None,
    verifier: SignalVerifier | None = None,
) -> VerificationResult:
    """Verify the signal at ``input_path``; the result is written even when discarded."""
    payload = load_signal(input_path)
    return asyncio.run(_verify(payload, output_path, weights_path=weights_path, verifier=verifier))


async def _verify(
    payload: dict[str, Any],
    output_path: Path,
    *,
    weights_path: Path | None,
    verifier: SignalVerifier | None,
) -> VerificationResult:
    owned = verifier is None
    if verifier is None:
        verifier = build_signal_verifier(weights=load_weights(weights_path) if weights_path else None)
    try:
        result = await verifier.verify(payload)
    finally:
        if owned:
            await verifier.aclose()

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(result.model_dump_json(indent=2), encoding="utf-8")
    logger.info(
        "verify_signal.complete",
        extra={
            "company": result.input_company,
            "status": result.overall_status,
            "confidence": round(result.overall_confidence, 4),
            "output": str(output_path),
        },
    )
    return result


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    args = parse_args(argv if argv is not None else sys.argv[1:])
    try:
        run_pipeline(input_path=args.input, output_path=args.output, weights_path=args.weights)
    except (SignalInputError, WeightsConfigError) as exc:
        logger.error("verify_signal failed: %s (code=%s)", exc, exc.code)
        return 1
    except Exception as exc:  # pragma: no cover - final safeguard
        logger.exception("Unexpected verify_signal failure: %s", exc)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
