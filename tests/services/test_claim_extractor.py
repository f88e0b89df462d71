from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest
from openai import APITimeoutError

from leadsignal.clients.contracts import track_completion_requests
from leadsignal.clients.openai_structured import OpenAIStructuredClient
from leadsignal.models.verification import Claim, ClaimEntities
from leadsignal.services.verification.claim_extractor import (
    ClaimExtractor,
    ExtractClaimsInput,
    claim_type_for_signal,
    merge_similar_claims,
)
from leadsignal.services.verification.errors import CompletionProviderError
from tests.helpers.fakes import FakeCompletion


def _request(**overrides) -> ExtractClaimsInput:
    values = {
        "company": "Acme Robotics",
        "domain": "acmerobotics.com",
        "signal_type": "funding_round",
        "signal_details": "Acme Robotics raised a $25M Series B",
        "article_title": "Acme Robotics raises $25M",
        "article_snippet": "Acme Robotics raised $25M led by Example Ventures",
        "article_source": "TechCrunch",
    }
    values.update(overrides)
    return ExtractClaimsInput(**values)


@pytest.mark.asyncio
async def test_extract_builds_claims_with_gates_and_provenance(weights):
    completion = FakeCompletion(
        {
            "claim_extraction": [
                {
                    "claims": [
                        {
                            "type": "funding_raised",
                            "statement": "Acme Robotics raised a Series B",
                            "entities": {"company": "Acme Robotics", "amount": 25000000},
                            "confidence": 0.9,
                        },
                        {
                            "type": "leadership_hire",
                            "statement": "Acme Robotics hired Jane Doe as CFO",
                            "entities": {"person": "Jane Doe"},
                        },
                        {"type": "rumor", "statement": "Acme may IPO"},
                        {"type": "product_launch", "statement": "   "},
                    ],
                    "company_canonical_name": "Acme Robotics Inc.",
                    "company_domain": "https://www.acmerobotics.com",
                    "domain_confidence": "high",
                }
            ]
        }
    )
    extractor = ClaimExtractor(weights=weights, completion=completion)

    result = await extractor.extract(_request(domain=None))

    assert result.llm_calls == 1
    assert not result.used_fallback
    assert [claim.type for claim in result.claims] == ["funding_raised", "leadership_hire", "other"]
    funding = result.claims[0]
    assert funding.id == "claim_1"
    assert funding.entities.amount == "25000000"
    assert funding.verification_requirements == weights.gates_for("funding_raised")
    assert funding.extracted_from == "RSS: Acme Robotics raises $25M"
    assert result.claims[2].verification_requirements == ()
    assert result.company_identity.canonical_name == "Acme Robotics Inc."
    assert result.company_identity.domain == "acmerobotics.com"
    assert result.company_identity.domain_confidence == "high"
    call = completion.calls[0]
    assert call["temperature"] == 0.1
    assert call["max_tokens"] == 2000
    assert call["max_retries"] == 0


@pytest.mark.asyncio
async def test_extract_retries_then_succeeds(weights):
    completion = FakeCompletion(
        {
            "claim_extraction": [
                CompletionProviderError("upstream", code="502_OPENAI_UPSTREAM"),
                {"claims": [{"type": "funding_raised", "statement": "Acme raised $25M"}]},
            ]
        }
    )

    result = await ClaimExtractor(weights=weights, completion=completion).extract(_request())

    assert result.llm_calls == 2
    assert len(result.claims) == 1


@pytest.mark.asyncio
async def test_extract_falls_back_to_synthetic_claim_after_three_failures(weights):
    completion = FakeCompletion({"claim_extraction": [CompletionProviderError("down", code="502_OPENAI_UPSTREAM")]})

    result = await ClaimExtractor(weights=weights, completion=completion).extract(_request())

    assert len(completion.calls) == 3
    assert result.llm_calls == 3
    assert result.used_fallback
    [claim] = result.claims
    assert claim.id == "claim_1"
    assert claim.type == "funding_raised"
    assert claim.statement == "Acme Robotics raised a $25M Series B"
    assert claim.entities.populated() == {"company": "Acme Robotics"}
    assert claim.verification_requirements == weights.gates_for("funding_raised")
    assert result.company_identity.domain_confidence == "medium"


@pytest.mark.asyncio
async def test_extraction_sends_one_provider_request_per_attempt(weights):
    class _DownCompletions:
        def __init__(self) -> None:
            self.calls = 0

        async def create(self, **kwargs):
            self.calls += 1
            raise APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))

    async def _no_sleep(_delay: float) -> None:
        return None

    completions = _DownCompletions()
    provider = OpenAIStructuredClient(
        model="test-model",
        max_retries=2,
        client=SimpleNamespace(chat=SimpleNamespace(completions=completions)),
        sleep=_no_sleep,
    )

    with track_completion_requests() as usage:
        result = await ClaimExtractor(weights=weights, completion=provider).extract(_request())

    assert completions.calls == 3
    assert usage.requests == 3
    assert result.llm_calls == 3
    assert result.used_fallback


@pytest.mark.asyncio
async def test_extract_without_provider_uses_fallback_without_llm_calls(weights):
    result = await ClaimExtractor(weights=weights).extract(_request(domain=None, signal_type="mystery"))

    assert result.llm_calls == 0
    assert result.claims[0].type == "other"
    assert result.company_identity.domain_confidence == "unknown"


def test_merge_similar_claims_unions_entities_into_richest_claim():
    richer = Claim(
        id="claim_1",
        type="funding_raised",
        statement="Acme raised $25M from Example Ventures",
        entities=ClaimEntities(company="Acme", amount="$25M", partner="Example Ventures"),
    )
    sparse = Claim(
        id="claim_2",
        type="funding_raised",
        statement="Acme closed its round in October",
        entities=ClaimEntities(company="Acme Inc", date="2026-10-01"),
    )
    other = Claim(id="claim_3", type="product_launch", statement="Acme launched Arm 2")

    merged = merge_similar_claims([sparse, richer, other])

    assert [claim.id for claim in merged] == ["claim_1", "claim_3"]
    assert merged[0].statement == richer.statement
    assert merged[0].entities.populated() == {
        "company": "Acme",
        "amount": "$25M",
        "date": "2026-10-01",
        "partner": "Example Ventures",
    }


@pytest.mark.parametrize(
    ("signal_type", "expected"),
    [
        ("funding_round", "funding_raised"),
        ("Hiring", "hiring_initiative"),
        ("partnership_announced", "partnership_announced"),
        ("something_else", "other"),
    ],
)
def test_claim_type_for_signal(signal_type, expected):
    assert claim_type_for_signal(signal_type) == expected
