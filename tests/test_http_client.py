"""
Tests for the HTTP Licensing Client

The client runs against the ASGI app in-process through httpx.
"""

import asyncio
import httpx
import pytest

from content_rail.api.server import AppState, create_app
from content_rail.config import AgentConfig, ServerSettings
from content_rail.core.errors import ContentInactive, ContentNotFound, ContentRailError, LicensingUnavailable
from content_rail.crypto.identity import AgentIdentity
from content_rail.enforcement.gateway import GateDecision
from content_rail.settlement.client import HttpLicensingClient
from content_rail.settlement.orchestrator import PaymentOrchestrator, SettlementStrategy
from content_rail.settlement.rail import InMemoryPaymentRail

API_KEY = "test-key-12345"
OWNER = "0xcreator"


@pytest.fixture
def app(engine):
    settings = ServerSettings(api_key=API_KEY)
    application = create_app(engine=engine, settings=settings)
    application.state.rail = AppState(settings, engine=engine)
    return application


def run_with_client(app, scenario, api_key=API_KEY):
    """Run ``scenario(client)`` against the app over an in-process transport."""
    async def main():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
            client = HttpLicensingClient(base_url="http://testserver", api_key=api_key, client=http)
            return await scenario(client)

    return asyncio.run(main())


class TestHttpLicensingClient:
    """Test each client call against the API."""

    def test_get_content(self, app, engine, fp):
        engine.register_content(fp(1), 50_000, "ipfs://a", OWNER)

        quote = run_with_client(app, lambda c: c.get_content(fp(1)))

        assert quote.price == 50_000
        assert quote.owner == OWNER
        assert quote.active is True

    def test_unknown_content(self, app, fp):
        with pytest.raises(ContentNotFound):
            run_with_client(app, lambda c: c.get_content(fp(2)))

    def test_record_and_check_license(self, app, engine, fp):
        engine.register_content(fp(1), 50_000, "ipfs://a", OWNER)

        async def scenario(client):
            await client.record_license("0xagent", fp(1), 50_000, "0xtx1")
            return await client.has_valid_license("0xagent", fp(1))

        assert run_with_client(app, scenario) is True
        assert engine.get_content(fp(1)).access_count == 1

    def test_errors_keep_their_type(self, app, engine, fp):
        engine.register_content(fp(1), 50_000, "ipfs://a", OWNER)
        engine.toggle_active(fp(1), OWNER)

        with pytest.raises(ContentInactive):
            run_with_client(app, lambda c: c.record_license("0xagent", fp(1), 50_000, "0xtx1"))

    def test_bad_api_key(self, app, engine, fp):
        engine.register_content(fp(1), 50_000, "ipfs://a", OWNER)

        with pytest.raises(ContentRailError) as exc_info:
            run_with_client(app, lambda c: c.record_license("0xagent", fp(1), 50_000, "0xtx1"), api_key="wrong")

        assert exc_info.value.context["status"] == 401

    def test_transport_failure_is_typed(self, fp):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def main():
            async with httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://testserver") as http:
                client = HttpLicensingClient(base_url="http://testserver", api_key=API_KEY, client=http)
                return await client.has_valid_license("0xagent", fp(1))

        with pytest.raises(LicensingUnavailable) as exc_info:
            asyncio.run(main())

        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    def test_request_access_requires_payment(self, app, engine, fp):
        engine.register_content(fp(1), 50_000, "ipfs://a", OWNER)

        decision = run_with_client(app, lambda c: c.request_access(fp(1), holder="0xagent"))

        assert decision.kind == GateDecision.PAYMENT_REQUIRED
        assert decision.price == 50_000
        assert decision.payment_instructions["to"] == OWNER


class TestOrchestratorOverHttp:
    """The agent buys and reads content through the HTTP API."""

    def test_parallel_purchase_then_read(self, app, engine, fp, clock):
        for i in range(3):
            engine.register_content(fp(i), 50_000, f"ipfs://{i}", f"0xowner{i}")

        identity = AgentIdentity.generate()
        rail = InMemoryPaymentRail(identity.address, balances={identity.address: 1_000_000}, clock=clock)

        async def scenario(client):
            agent = PaymentOrchestrator(identity, client, rail, config=AgentConfig(), clock=clock)
            result = await agent.purchase([fp(0), fp(1), fp(2)], SettlementStrategy.PARALLEL)
            decision = await agent.retrieve_content(fp(1))
            return result, decision

        result, decision = run_with_client(app, scenario)

        assert result.successful == 3
        assert all(o.license_recorded for o in result.outcomes)
        assert all(engine.has_valid_license(identity.address, fp(i)) for i in range(3))
        assert decision.kind == GateDecision.ALLOWED
        assert decision.uri == "ipfs://1"
