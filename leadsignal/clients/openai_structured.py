"""Structured completions backed by the OpenAI chat completions API."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from random import SystemRandom
from typing import Any, TypeVar

from openai import APIStatusError, APITimeoutError, AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

from leadsignal.clients.contracts import ChatMessage, record_completion_request
from leadsignal.config import settings
from leadsignal.observability.metrics import metrics
from leadsignal.services.verification.errors import (
    CompletionProviderError,
    CompletionValidationError,
    VerificationError,
)

logger = logging.getLogger(__name__)

_SchemaT = TypeVar("_SchemaT", bound=BaseModel)

RETRY_BASE_DELAY_SECONDS = 0.5
RETRY_MAX_DELAY_SECONDS = 8.0
RETRY_JITTER = 0.25

_rng = SystemRandom()


class OpenAIStructuredClient:
    """Requests JSON output and validates it against a pydantic schema."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        max_retries: int | None = None,
        client: AsyncOpenAI | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if client is None:
            key = api_key or settings.openai_api_key
            if not key:
                raise ValueError("OPENAI_API_KEY is required to create an OpenAIStructuredClient.")
            client = AsyncOpenAI(
                api_key=key,
                timeout=settings.verification_completion_timeout_seconds,
                max_retries=0,
            )
        self._client = client
        self._model = model or settings.verification_model
        self._max_retries = settings.verification_completion_retries if max_retries is None else max_retries
        self._sleep = sleep

    async def complete_structured(
        self,
        messages: Sequence[ChatMessage],
        schema: type[_SchemaT],
        *,
        schema_name: str,
        temperature: float,
        max_tokens: int,
        max_retries: int | None = None,
    ) -> _SchemaT:
        payload_messages = _with_schema_instructions(messages, schema, schema_name)
        start = time.perf_counter()
        status = "success"
        retries = self._max_retries if max_retries is None else max_retries
        try:
            for attempt in range(1, retries + 2):
                try:
                    return await self._complete_once(
                        payload_messages,
                        schema,
                        temperature=temperature,
                        max_tokens=max_tokens,
                    )
                except VerificationError as exc:
                    logger.warning(
                        "completion.retry",
                        extra={"attempt": attempt, "code": exc.code, "schema": schema_name},
                    )
                    if attempt > retries:
                        status = "error"
                        metrics.increment("completion.errors", tags={"schema": schema_name, "code": exc.code})
                        raise
                    await self._sleep(retry_delay(attempt))
            raise CompletionProviderError("Exceeded retry policy", code="502_OPENAI_UPSTREAM")
        finally:
            metrics.timing(
                "completion.latency_ms",
                (time.perf_counter() - start) * 1000,
                tags={"schema": schema_name, "status": status},
            )

    async def _complete_once(
        self,
        messages: list[dict[str, str]],
        schema: type[_SchemaT],
        *,
        temperature: float,
        max_tokens: int,
    ) -> _SchemaT:
        record_completion_request()
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except APITimeoutError as exc:
            raise CompletionProviderError("OpenAI request timed out", code="504_OPENAI_TIMEOUT") from exc
        except APIStatusError as exc:
            code = "429_RATE_LIMIT" if exc.status_code == 429 else "502_OPENAI_UPSTREAM"
            raise CompletionProviderError(f"OpenAI request failed: {exc.message}", code=code) from exc
        except OpenAIError as exc:
            raise CompletionProviderError(f"OpenAI request failed: {exc}", code="502_OPENAI_UPSTREAM") from exc

        text = _extract_message_text(response)
        try:
            payload = parse_json_payload(text)
        except ValueError as exc:
            raise CompletionValidationError("Model response was not valid JSON.", code="422_INVALID_JSON") from exc
        try:
            return schema.model_validate(payload)
        except ValidationError as exc:
            raise CompletionValidationError(
                f"Model response did not match {schema.__name__}: {exc.error_count()} errors",
                code="422_SCHEMA_MISMATCH",
            ) from exc


def _with_schema_instructions(
    messages: Sequence[ChatMessage],
    schema: type[BaseModel],
    schema_name: str,
) -> list[dict[str, str]]:
    instructions = (
        f"Respond with a single JSON object named {schema_name} that conforms to this JSON schema:\n"
        f"{json.dumps(schema.model_json_schema())}"
    )
    rendered = [{"role": message.role, "content": message.content} for message in messages]
    return [{"role": "system", "content": instructions}, *rendered]


def _extract_message_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if choices:
        content = getattr(choices[0].message, "content", "")
        if isinstance(content, str) and content.strip():
            return content.strip()
    raise CompletionProviderError(
        "OpenAI response did not include text output.",
        code="502_OPENAI_UPSTREAM",
    )


def parse_json_payload(raw_text: str) -> dict[str, Any]:
    """Best-effort JSON decoding that tolerates code fences or prose."""
    candidate = raw_text.strip()
    if candidate.startswith("```"):
        candidate = "\n".join(line for line in candidate.splitlines() if not line.strip().startswith("```")).strip()
    if candidate.startswith("{") and candidate.endswith("}"):
        return json.loads(candidate)
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start != -1 and end != -1 and end > start:
        return json.loads(candidate[start : end + 1])
    raise ValueError("Response did not contain JSON object.")


def retry_delay(retry_number: int) -> float:
    """Seconds to wait before retry ``retry_number`` (1-based): doubling, jittered, capped."""
    delay = min(RETRY_BASE_DELAY_SECONDS * 2 ** (retry_number - 1), RETRY_MAX_DELAY_SECONDS)
    return min(delay + _rng.uniform(0, delay * RETRY_JITTER), RETRY_MAX_DELAY_SECONDS)
