"""Async client for the Exa semantic search API."""

from __future__ import annotations

import os
from typing import Any

import httpx

from leadsignal.clients.contracts import SearchResponse, SearchResult

SNIPPET_MAX_CHARS = 1000


class ExaError(RuntimeError):
    """Base error for Exa client failures."""

    def __init__(self, message: str, code: str = "EXA_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ExaRateLimitError(ExaError):
    """Raised when Exa responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by Exa") -> None:
        super().__init__(message, code="EXA_429")


class ExaTimeoutError(ExaError):
    """Raised when Exa request times out."""

    def __init__(self, message: str = "Exa request timed out") -> None:
        super().__init__(message, code="EXA_TIMEOUT")


class ExaSchemaError(ExaError):
    """Raised when Exa response schema is not as expected."""

    def __init__(self, message: str = "Unexpected Exa response schema") -> None:
        super().__init__(message, code="EXA_SCHEMA_ERR")


class ExaSearchClient:
    """Search provider backed by Exa neural search."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.exa.ai",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("EXA_API_KEY is required to create an ExaSearchClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    @classmethod
    def from_env(cls) -> ExaSearchClient:
        """Instantiate the client using the EXA_API_KEY environment variable."""
        return cls(os.getenv("EXA_API_KEY", ""))

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_http_client:
            await self._http.aclose()

    async def search(self, query: str, *, max_results: int) -> SearchResponse:
        if max_results <= 0:
            raise ValueError("max_results must be a positive integer.")

        payload = {
            "query": query,
            "numResults": max_results,
            "type": "neural",
            "useAutoprompt": True,
            "contents": {"text": {"maxCharacters": SNIPPET_MAX_CHARS}},
        }
        headers = {"X-API-KEY": self._api_key}

        try:
            response = await self._http.post("/search", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise ExaTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise ExaError(f"HTTP error calling Exa: {exc}") from exc

        if response.status_code == 429:
            raise ExaRateLimitError()

        if response.status_code in (408, 504):
            raise ExaTimeoutError()

        if response.status_code >= 400:
            detail: str | None = None
            try:
                body = response.json()
                detail = body.get("message") or body.get("detail") or body.get("error")
            except ValueError:
                detail = response.text[:200]
            message = f"Exa request failed: {response.status_code}"
            if detail:
                message = f"{message} - {detail}"
            raise ExaError(message, code=response.headers.get("x-exa-error-code", "EXA_ERROR"))

        try:
            data = response.json()
        except ValueError as exc:
            raise ExaSchemaError("Failed to decode Exa response JSON.") from exc
        results = data.get("results") if isinstance(data, dict) else None

        if not isinstance(results, list):
            raise ExaSchemaError("`results` missing from Exa response.")

        if not all(isinstance(entry, dict) for entry in results):
            raise ExaSchemaError("Entries in `results` must be JSON objects.")

        return SearchResponse(results=[_to_result(entry) for entry in results if entry.get("url")])

    async def __aenter__(self) -> ExaSearchClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def _to_result(entry: dict[str, Any]) -> SearchResult:
    text = entry.get("text") or entry.get("summary") or ""
    return SearchResult(
        url=str(entry["url"]),
        title=str(entry.get("title") or ""),
        snippet=str(text)[:SNIPPET_MAX_CHARS],
        published_date=entry.get("publishedDate") or entry.get("published_date"),
        source="exa",
    )
