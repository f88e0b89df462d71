"""Deterministic providers used in place of the network in tests."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from leadsignal.clients.contracts import (
    ChatMessage,
    ScrapeData,
    ScrapeResponse,
    SearchResponse,
    SearchResult,
    record_completion_request,
)
from leadsignal.models.verification import Evidence
from leadsignal.services.verification.cache import CachedPage, hash_content, normalize_url
from leadsignal.services.verification.errors import CompletionProviderError, FetchError

ScriptedReply = Mapping[str, Any] | Exception | Callable[[Sequence[ChatMessage]], Mapping[str, Any]]


class FakeCompletion:
    """Replays scripted payloads per schema name; the last entry repeats."""

    def __init__(self, scripts: Mapping[str, Sequence[ScriptedReply]] | None = None) -> None:
        self._scripts: dict[str, list[ScriptedReply]] = {
            name: list(replies) for name, replies in (scripts or {}).items()
        }
        self.calls: list[dict[str, Any]] = []

    def script(self, schema_name: str, *replies: ScriptedReply) -> None:
        self._scripts.setdefault(schema_name, []).extend(replies)

    def calls_for(self, schema_name: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["schema_name"] == schema_name]

    async def complete_structured(
        self,
        messages: Sequence[ChatMessage],
        schema: type[BaseModel],
        *,
        schema_name: str,
        temperature: float,
        max_tokens: int,
        max_retries: int | None = None,
    ) -> BaseModel:
        self.calls.append(
            {
                "schema_name": schema_name,
                "messages": list(messages),
                "temperature": temperature,
                "max_tokens": max_tokens,
                "max_retries": max_retries,
            }
        )
        record_completion_request()
        replies = self._scripts.get(schema_name) or []
        if not replies:
            raise CompletionProviderError(f"No scripted reply for {schema_name}", code="502_OPENAI_UPSTREAM")
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(messages)
        return schema.model_validate(reply)


class FakeFetcher:
    """In-memory page source keyed by exact URL."""

    def __init__(
        self,
        pages: Mapping[str, CachedPage | Exception] | None = None,
        *,
        live: Iterable[str] = (),
    ) -> None:
        self.pages: dict[str, CachedPage | Exception] = dict(pages or {})
        self.live = set(live)
        self.fetched: list[str] = []
        self.probed: list[str] = []

    async def fetch(self, url: str) -> CachedPage:
        self.fetched.append(url)
        page = self.pages.get(url)
        if page is None:
            raise FetchError(f"HTTP 404 for {url}", code="404_HTTP_STATUS")
        if isinstance(page, Exception):
            raise page
        return page

    async def probe(self, url: str) -> bool:
        self.probed.append(url)
        return url in self.live


class StubSearch:
    def __init__(
        self,
        results: Sequence[SearchResult] = (),
        *,
        by_query: Mapping[str, Sequence[SearchResult]] | None = None,
        error: Exception | None = None,
    ) -> None:
        self._results = list(results)
        self._by_query = {key: list(value) for key, value in (by_query or {}).items()}
        self._error = error
        self.queries: list[tuple[str, int]] = []

    async def search(self, query: str, *, max_results: int) -> SearchResponse:
        self.queries.append((query, max_results))
        if self._error is not None:
            raise self._error
        for fragment, results in self._by_query.items():
            if fragment in query:
                return SearchResponse(results=results[:max_results])
        return SearchResponse(results=self._results[:max_results])


class StubScrape:
    def __init__(self, response: ScrapeResponse | None = None, *, error: Exception | None = None) -> None:
        self._response = response or ScrapeResponse(success=False, error="not configured")
        self._error = error
        self.urls: list[str] = []

    async def scrape(self, url: str) -> ScrapeResponse:
        self.urls.append(url)
        if self._error is not None:
            raise self._error
        return self._response


def make_page(url: str, content: str, *, title: str = "", links: Sequence[str] = ()) -> CachedPage:
    return CachedPage(
        url=url,
        title=title,
        content=content,
        links=tuple(links),
        fetched_at=datetime.now(UTC),
        status_code=200,
    )


def make_scrape(markdown: str, **metadata: Any) -> ScrapeResponse:
    return ScrapeResponse(success=True, data=ScrapeData(markdown=markdown, metadata=dict(metadata)))


def make_evidence(
    evidence_id: str,
    url: str,
    *,
    source_type: str = "third_party_news",
    snippet: str | None = None,
    title: str = "",
    publisher: str | None = None,
    published_at: str | None = None,
    is_official: bool = False,
    content_hash: str | None = None,
) -> Evidence:
    body = snippet if snippet is not None else f"Evidence body for {url}"
    return Evidence(
        id=evidence_id,
        url=url,
        canonical_url=normalize_url(url),
        title=title,
        snippet=body,
        source_type=source_type,
        publisher=publisher,
        published_at=published_at,
        fetched_at=datetime.now(UTC),
        content_hash=content_hash or hash_content(body),
        is_official=is_official,
    )


def match(
    *,
    supports: bool = False,
    contradicts: bool = False,
    relevance: float = 0.9,
    snippet: str = "",
    contradiction_type: str | None = None,
    relevant: bool = True,
) -> dict[str, Any]:
    return {
        "is_relevant": relevant,
        "supports": supports,
        "contradicts": contradicts,
        "relevance_score": relevance,
        "key_snippet": snippet,
        "contradiction_type": contradiction_type,
    }
