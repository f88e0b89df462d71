"""Narrow contracts for the external services the verifier consumes."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel

_SchemaT = TypeVar("_SchemaT", bound=BaseModel)


@dataclass
class CompletionUsage:
    requests: int = 0


# Shared by reference with tasks spawned inside the tracked block.
_current_usage: ContextVar[CompletionUsage | None] = ContextVar("completion_usage", default=None)


@contextmanager
def track_completion_requests() -> Iterator[CompletionUsage]:
    """Count every outbound completion request made inside the block."""
    usage = CompletionUsage()
    token = _current_usage.set(usage)
    try:
        yield usage
    finally:
        _current_usage.reset(token)


def record_completion_request() -> None:
    usage = _current_usage.get()
    if usage is not None:
        usage.requests += 1


@dataclass(frozen=True)
class SearchResult:
    url: str
    title: str = ""
    snippet: str = ""
    published_date: str | None = None
    source: str | None = None


@dataclass(frozen=True)
class SearchResponse:
    results: list[SearchResult] = field(default_factory=list)


@dataclass(frozen=True)
class ScrapeData:
    markdown: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScrapeResponse:
    success: bool
    data: ScrapeData | None = None
    error: str | None = None


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


class SearchProvider(Protocol):
    """Keyword search used to find third-party coverage."""

    async def search(self, query: str, *, max_results: int) -> SearchResponse:
        ...


class ScrapeProvider(Protocol):
    """Rendered-page scraper used as a last-resort evidence source."""

    async def scrape(self, url: str) -> ScrapeResponse:
        ...


class StructuredCompletionProvider(Protocol):
    """Language model call that must return an instance of ``schema``.

    ``max_retries`` overrides the provider default for one call. Implementations call
    ``record_completion_request`` once per request they send.
    """

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
        ...
