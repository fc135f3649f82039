"""
Tests for the marketplace ledger API endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from hyperion_bridge.config import Settings
from hyperion_bridge.main import create_app
from hyperion_bridge.marketplace import ListingStore

from conftest import ALICE, BOB, ONE_ETHER, TREASURY


def _settings(**overrides) -> Settings:
    values = dict(
        rpc_url="http://fake-rpc",
        treasury_address=TREASURY,
        database_url="sqlite:///unused.db",
        query_token_secret="query-secret",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def app(db, chain):
    return create_app(_settings(), db=db, chain=chain)


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def listing(app):
    seller = app.state.transactor.find_or_create_user(BOB)
    return ListingStore(app.state.db).create_listing(
        owner_id=seller.id,
        name="Search MCP",
        endpoint_url="https://search.example/mcp",
        price_per_query="1",
        payout_address=BOB,
    )


class TestHealthCheck:
    """Tests for /health endpoint."""

    def test_health_ok(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["chain_rpc"] is True
        assert data["database"] is True
        assert data["treasury"].lower() == TREASURY

    def test_health_degraded_without_rpc(self, client, chain):
        chain.fail_block_number = True

        data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["chain_rpc"] is False


class TestAccounts:
    """Tests for /users/{address}."""

    def test_find_or_create_account(self, client, app):
        first = client.get(f"/users/{ALICE}")
        app.state.transactor.credit(ALICE, 3 * ONE_ETHER)
        second = client.get(f"/users/{ALICE}")

        assert first.status_code == 200
        assert first.json()["balance"] == "0"
        assert second.json()["user_id"] == first.json()["user_id"]
        assert second.json()["balance"] == "3"
        assert second.json()["balance_wei"] == str(3 * ONE_ETHER)

    def test_invalid_address(self, client):
        assert client.get("/users/0xTREAS").status_code == 400


class TestListings:
    """Tests for listing endpoints."""

    def test_list_and_get(self, client, listing):
        listed = client.get("/listings").json()
        assert [item["id"] for item in listed] == [listing.id]
        assert listed[0]["price_per_query"] == "1"

        assert client.get(f"/listings/{listing.id}").json()["name"] == "Search MCP"
        assert client.get("/listings/999").status_code == 404
        assert client.get("/listings/not-an-id").status_code == 404


class TestMeteredQueries:
    """Tests for /queries/*."""

    def test_authorize_and_verify(self, client, app, listing):
        buyer = app.state.transactor.find_or_create_user(ALICE)
        app.state.transactor.credit(ALICE, 2 * ONE_ETHER)

        response = client.post("/queries/authorize", json={"user_id": buyer.id, "listing_id": listing.id})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["balance"] == "1"

        verified = client.post("/queries/verify", json={"token": data["query_token"]})
        assert verified.status_code == 200
        assert verified.json()["user_id"] == buyer.id
        assert verified.json()["listing_id"] == listing.id

    def test_insufficient_funds_is_402(self, client, app, listing):
        buyer = app.state.transactor.find_or_create_user(ALICE)

        response = client.post("/queries/authorize", json={"user_id": buyer.id, "listing_id": listing.id})

        assert response.status_code == 402
        assert response.json()["status"] == "insufficient_funds"
        assert response.json()["query_token"] is None

    def test_unknown_buyer_is_404(self, client, listing):
        response = client.post("/queries/authorize", json={"user_id": 777, "listing_id": listing.id})

        assert response.status_code == 404
        assert response.json()["status"] == "user_not_found"

    def test_unknown_listing_is_404(self, client):
        response = client.post("/queries/authorize", json={"user_id": 1, "listing_id": 999})

        assert response.status_code == 404

    def test_bad_token_is_401(self, client):
        assert client.post("/queries/verify", json={"token": "abc.def"}).status_code == 401

    def test_api_token_required_when_configured(self, db, chain, listing):
        client = TestClient(create_app(_settings(api_token="s3cret"), db=db, chain=chain))
        body = {"user_id": 777, "listing_id": listing.id}

        assert client.post("/queries/authorize", json=body).status_code == 401
        assert client.post("/queries/authorize", json=body, headers={"X-API-Key": "wrong"}).status_code == 401
        assert client.post("/queries/authorize", json=body, headers={"X-API-Key": "s3cret"}).status_code == 404

    def test_metered_endpoints_need_token_secret(self, db, chain):
        client = TestClient(create_app(_settings(query_token_secret=None), db=db, chain=chain))

        assert client.post("/queries/authorize", json={"user_id": 1, "listing_id": 1}).status_code == 503
        assert client.post("/queries/verify", json={"token": "a.b"}).status_code == 503
