"""
Tests for FastAPI Endpoints

Integration tests for the licensing API.
"""

import pytest
from fastapi.testclient import TestClient

from content_rail.api.server import create_app
from content_rail.config import ServerSettings
from content_rail.core.ledger import fingerprint_hex
from content_rail.crypto.identity import AgentIdentity

OWNER = "0xcreator"
CRAWLER = {"User-Agent": "AI-Agent-Crawler/1.0"}


@pytest.fixture
def settings():
    return ServerSettings(api_key="test-key-12345", contract_address="0xregistry")


@pytest.fixture
def client(engine, settings):
    """Create test client."""
    with TestClient(create_app(engine=engine, settings=settings)) as test_client:
        yield test_client


@pytest.fixture
def content_hash(fp):
    return fingerprint_hex(fp(1))


@pytest.fixture
def registered(client, auth_headers, content_hash):
    response = client.post("/api/content/register", json={
        "contentHash": content_hash,
        "price": "50000",
        "contentURI": "ipfs://article-1",
        "ownerAddress": OWNER,
    }, headers=auth_headers)
    assert response.status_code == 201
    return response.json()["content"]


class TestHealthEndpoint:

    def test_health_no_auth_required(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["contentCount"] == 0
        assert data["contractAddress"] == "0xregistry"


class TestContentEndpoints:
    """Test registration and owner operations."""

    def test_register_requires_auth(self, client, content_hash):
        response = client.post("/api/content/register", json={
            "contentHash": content_hash,
            "price": 1,
            "contentURI": "ipfs://x",
            "ownerAddress": OWNER,
        })
        assert response.status_code == 422  # Missing header

    def test_register_invalid_api_key(self, client, content_hash):
        response = client.post("/api/content/register", json={
            "contentHash": content_hash,
            "price": 1,
            "contentURI": "ipfs://x",
            "ownerAddress": OWNER,
        }, headers={"X-API-Key": "wrong"})
        assert response.status_code == 401

    def test_register_and_get(self, client, registered, content_hash):
        assert registered["price"] == "50000"
        assert registered["active"] is True

        response = client.get(f"/api/content/{content_hash}")

        assert response.status_code == 200
        assert response.json()["contentOwner"] == OWNER

    def test_duplicate_registration(self, client, registered, auth_headers, content_hash):
        response = client.post("/api/content/register", json={
            "contentHash": content_hash,
            "price": 1,
            "contentURI": "ipfs://x",
            "ownerAddress": OWNER,
        }, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "ALREADY_REGISTERED"

    def test_zero_price_rejected(self, client, auth_headers, fp):
        response = client.post("/api/content/register", json={
            "contentHash": fingerprint_hex(fp(2)),
            "price": 0,
            "contentURI": "ipfs://x",
            "ownerAddress": OWNER,
        }, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_PRICE"

    def test_unknown_content(self, client, fp):
        response = client.get(f"/api/content/{fingerprint_hex(fp(9))}")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "CONTENT_NOT_FOUND"

    def test_malformed_hash(self, client):
        response = client.get("/api/content/0x1234")
        assert response.status_code == 400

    def test_owner_price_update(self, client, registered, auth_headers, content_hash):
        response = client.post(f"/api/content/{content_hash}/price", json={
            "newPrice": 70000,
            "callerAddress": OWNER,
        }, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["content"]["price"] == "70000"

    def test_non_owner_price_update(self, client, registered, auth_headers, content_hash):
        response = client.post(f"/api/content/{content_hash}/price", json={
            "newPrice": 1,
            "callerAddress": "0xintruder",
        }, headers=auth_headers)

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "NOT_OWNER"

    def test_toggle(self, client, registered, auth_headers, content_hash):
        response = client.post(f"/api/content/{content_hash}/toggle", json={
            "callerAddress": OWNER,
        }, headers=auth_headers)

        assert response.json()["active"] is False


class TestLicenseEndpoints:
    """Test license recording and lookup."""

    def test_buy_and_check(self, client, registered, auth_headers, content_hash):
        response = client.post("/api/license/buy", json={
            "contentHash": content_hash,
            "agentAddress": "0xAgent",
            "txHash": "0xtx1",
        }, headers=auth_headers)

        assert response.status_code == 200
        license = response.json()["license"]
        assert license["pricePaid"] == "50000"

        check = client.get("/api/license/check", params={
            "agentAddress": "0xagent",
            "contentHash": content_hash,
        })
        assert check.json()["hasLicense"] is True

    def test_check_without_license(self, client, registered, content_hash):
        check = client.get("/api/license/check", params={
            "agentAddress": "0xnobody",
            "contentHash": content_hash,
        })
        assert check.json() == {"hasLicense": False, "license": None}

    def test_buy_for_inactive_content(self, client, registered, auth_headers, content_hash):
        client.post(f"/api/content/{content_hash}/toggle", json={"callerAddress": OWNER}, headers=auth_headers)

        response = client.post("/api/license/buy", json={
            "contentHash": content_hash,
            "agentAddress": "0xagent",
            "txHash": "0xtx1",
        }, headers=auth_headers)

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "CONTENT_INACTIVE"

    def test_batch(self, client, registered, auth_headers, content_hash, fp):
        response = client.post("/api/license/batch", json={
            "contentHashes": [content_hash, fingerprint_hex(fp(5))],
            "agentAddress": "0xagent",
            "txHash": "0xbatch",
        }, headers=auth_headers)

        data = response.json()
        assert data["success"] is False
        assert data["licensesCreated"] == 1
        assert data["results"][1]["code"] == "CONTENT_NOT_FOUND"


class TestAccessEndpoint:
    """Test the 402 flow."""

    def test_regular_reader_allowed(self, client, registered, content_hash):
        response = client.post(f"/api/content/{content_hash}/access", json={},
                               headers={"User-Agent": "Mozilla/5.0"})

        assert response.status_code == 200
        assert response.json()["contentURI"] == "ipfs://article-1"

    def test_anonymous_crawler_gets_402(self, client, registered, content_hash):
        response = client.post(f"/api/content/{content_hash}/access", json={}, headers=CRAWLER)

        assert response.status_code == 402
        assert response.json()["code"] == "PAYMENT_REQUIRED"
        assert response.json()["price"] == "50000"

    def test_licensed_agent_allowed(self, client, engine, registered, content_hash, clock):
        agent = AgentIdentity.generate()
        engine.record_license(agent.address, content_hash, 50_000, "0xtx")
        proof = agent.sign_access(content_hash, clock.now)

        response = client.post(f"/api/content/{content_hash}/access", json={
            "agentAddress": agent.address,
            **proof.to_dict(),
        }, headers=CRAWLER)

        assert response.status_code == 200
        assert response.json()["reason"] == "Valid license"

    def test_unlicensed_agent_gets_instructions(self, client, registered, content_hash, clock):
        agent = AgentIdentity.generate()
        proof = agent.sign_access(content_hash, clock.now)

        response = client.post(f"/api/content/{content_hash}/access", json={
            "agentAddress": agent.address,
            **proof.to_dict(),
        }, headers=CRAWLER)

        assert response.status_code == 402
        instructions = response.json()["paymentInstructions"]
        assert instructions["to"] == OWNER
        assert instructions["amount"] == "50000"

    def test_bad_signature_forbidden(self, client, registered, content_hash, clock):
        agent = AgentIdentity.generate()
        proof = AgentIdentity.generate().sign_access(content_hash, clock.now)

        response = client.post(f"/api/content/{content_hash}/access", json={
            "agentAddress": agent.address,
            **proof.to_dict(),
        }, headers=CRAWLER)

        assert response.status_code == 403
        assert response.json()["code"] == "INVALID_SIGNATURE"

    def test_unknown_content(self, client, fp):
        response = client.post(f"/api/content/{fingerprint_hex(fp(7))}/access", json={}, headers=CRAWLER)
        assert response.status_code == 404


class TestAnalytics:

    def test_creator_stats_and_overview(self, client, registered, auth_headers, content_hash):
        client.post("/api/license/buy", json={
            "contentHash": content_hash,
            "agentAddress": "0xagent",
            "txHash": "0xtx1",
        }, headers=auth_headers)

        stats = client.get(f"/api/creator/{OWNER}/stats").json()
        overview = client.get("/api/analytics/overview").json()

        assert stats["totalRevenue"] == "50000"
        assert stats["totalAccesses"] == 1
        assert overview["totalContent"] == 1
        assert overview["totalRevenue"] == "50000"
        assert "gateway" in overview
