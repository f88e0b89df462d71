import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from leadsignal.main import app
from leadsignal.services.verification.weights import DEFAULT_WEIGHTS_PATH, load_weights


class _SyncASGIClient:
    """Minimal synchronous wrapper around httpx.AsyncClient for ASGI apps."""

    def __init__(self, app):
        transport = httpx.ASGITransport(app=app)
        self._client = httpx.AsyncClient(transport=transport, base_url="http://testserver")

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._client.request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        asyncio.run(self._client.aclose())


@pytest.fixture
def client():
    """Create test client compatible with older/newer httpx releases."""
    try:
        test_client = TestClient(app)
        yield test_client
    except TypeError:
        fallback_client = _SyncASGIClient(app)
        try:
            yield fallback_client
        finally:
            fallback_client.close()


@pytest.fixture(scope="session")
def weights():
    """Shipped weights document, loaded under the strict gate policy."""
    return load_weights(DEFAULT_WEIGHTS_PATH, policy="strict")


@pytest.fixture
def signal_payload():
    """camelCase request body as produced by the RSS ingestion job."""
    return {
        "company": "Acme Robotics",
        "domain": "acmerobotics.com",
        "rawSignal": {
            "type": "funding_round",
            "details": "Acme Robotics raised a $25M Series B",
            "relevanceScore": 0.9,
        },
        "rssItem": {
            "title": "Acme Robotics raises $25M Series B",
            "link": "https://techcrunch.com/2026/10/01/acme-robotics-series-b",
            "content": "Acme Robotics announced it raised $25M in a Series B led by Example Ventures.",
            "contentSnippet": "Acme Robotics raised $25M",
            "pubDate": "Thu, 01 Oct 2026 10:00:00 GMT",
            "sourceName": "TechCrunch",
        },
    }
