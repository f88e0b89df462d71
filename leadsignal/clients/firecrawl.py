"""Async client for the Firecrawl scrape API."""

from __future__ import annotations

import os

import httpx

from leadsignal.clients.contracts import ScrapeData, ScrapeResponse


class FirecrawlError(RuntimeError):
    """Base error for Firecrawl client failures."""

    def __init__(self, message: str, code: str = "FIRECRAWL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class FirecrawlRateLimitError(FirecrawlError):
    """Raised when Firecrawl responds with HTTP 429."""

    def __init__(self, message: str = "Rate limited by Firecrawl") -> None:
        super().__init__(message, code="FIRECRAWL_429")


class FirecrawlTimeoutError(FirecrawlError):
    """Raised when the scrape request times out."""

    def __init__(self, message: str = "Firecrawl request timed out") -> None:
        super().__init__(message, code="FIRECRAWL_TIMEOUT")


class FirecrawlClient:
    """Scrape provider that renders a page and returns it as markdown."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.firecrawl.dev",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("FIRECRAWL_API_KEY is required to create a FirecrawlClient.")
        self._api_key = api_key
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    @classmethod
    def from_env(cls) -> FirecrawlClient:
        """Instantiate the client using the FIRECRAWL_API_KEY environment variable."""
        return cls(os.getenv("FIRECRAWL_API_KEY", ""))

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def scrape(self, url: str) -> ScrapeResponse:
        payload = {"url": url, "formats": ["markdown"], "onlyMainContent": True}
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            response = await self._http.post("/v1/scrape", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise FirecrawlTimeoutError() from exc
        except httpx.HTTPError as exc:
            raise FirecrawlError(f"HTTP error calling Firecrawl: {exc}") from exc

        if response.status_code == 429:
            raise FirecrawlRateLimitError()
        if response.status_code in (408, 504):
            raise FirecrawlTimeoutError()

        try:
            body = response.json()
        except ValueError as exc:
            raise FirecrawlError("Failed to decode Firecrawl response JSON.", code="FIRECRAWL_SCHEMA_ERR") from exc

        if response.status_code >= 400 or not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            return ScrapeResponse(success=False, error=str(error or f"HTTP {response.status_code}"))

        data = body.get("data") or {}
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        return ScrapeResponse(
            success=True,
            data=ScrapeData(markdown=str(data.get("markdown") or ""), metadata=metadata),
        )

    async def __aenter__(self) -> FirecrawlClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
