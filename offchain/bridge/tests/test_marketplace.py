"""
Tests for listings and metered query payments.
"""

import pytest

from hyperion_bridge.ledger import DebitStatus
from hyperion_bridge.marketplace import ListingNotFoundError, ListingStore, MeteredQueryService
from hyperion_bridge.query_token import verify_query_token
from hyperion_bridge.units import to_units

from conftest import ALICE, BOB, ONE_ETHER

SECRET = "query-secret"


@pytest.fixture
def store(db) -> ListingStore:
    return ListingStore(db)


@pytest.fixture
def seller(transactor):
    return transactor.find_or_create_user(BOB)


@pytest.fixture
def listing(store, seller):
    return store.create_listing(
        owner_id=seller.id,
        name="Weather MCP",
        endpoint_url="https://weather.example/mcp",
        price_per_query="0.5",
        payout_address=BOB,
        description="Forecasts",
        keywords=["weather", " forecast "],
    )


@pytest.fixture
def service(transactor, store) -> MeteredQueryService:
    return MeteredQueryService(transactor, store, token_secret=SECRET, token_ttl_seconds=60)


class TestListingStore:
    """Tests for listing records."""

    def test_create_and_get(self, store, listing, seller):
        assert listing.owner_id == seller.id
        assert listing.price_per_query == to_units("0.5")
        assert listing.keywords == ["weather", "forecast"]
        assert listing.unpaid_balance == 0
        assert store.get_listing(listing.id) == listing
        assert store.get_listing(str(listing.id)) == listing

    def test_get_malformed_or_unknown_id(self, store):
        assert store.get_listing("64f0c0ffee") is None
        assert store.get_listing(12345) is None

    def test_list_active(self, store, listing):
        assert [item.id for item in store.list_active_listings()] == [listing.id]

    def test_price_must_be_positive(self, store, seller):
        with pytest.raises(ValueError):
            store.create_listing(seller.id, "Free", "https://x.example", "0", BOB)

    def test_update_only_by_owner(self, store, listing, seller):
        assert store.update_listing(listing.id, seller.id + 100, name="Hijacked") is None

        updated = store.update_listing(listing.id, seller.id, name="Weather v2", price_per_query="0.75")

        assert updated.name == "Weather v2"
        assert updated.price_per_query == to_units("0.75")

    def test_increment_unpaid_balance(self, store, listing):
        assert store.increment_unpaid_balance(listing.id, 10)
        assert store.increment_unpaid_balance(listing.id, 5)
        assert store.get_listing(listing.id).unpaid_balance == 15
        assert not store.increment_unpaid_balance(listing.id + 1, 5)


class TestMeteredQueryService:
    """Tests for paying per query."""

    def test_authorize_debits_and_issues_token(self, service, transactor, store, listing):
        buyer = transactor.find_or_create_user(ALICE)
        transactor.credit(ALICE, 2 * ONE_ETHER)

        auth = service.authorize(buyer.id, listing.id)

        assert auth.ok
        assert auth.balance == to_units("1.5")
        assert transactor.get_user(ALICE).account.balance == to_units("1.5")
        assert store.get_listing(listing.id).unpaid_balance == to_units("0.5")
        assert store.count_query_transactions(listing.id) == 1

        payload = verify_query_token(secret=SECRET, token=auth.token)
        assert payload.user_id == buyer.id
        assert payload.listing_id == listing.id

    def test_insufficient_funds_issue_no_token(self, service, transactor, store, listing):
        buyer = transactor.find_or_create_user(ALICE)

        auth = service.authorize(buyer.id, listing.id)

        assert not auth.ok
        assert auth.status == DebitStatus.INSUFFICIENT_FUNDS
        assert auth.token is None
        assert store.get_listing(listing.id).unpaid_balance == 0
        assert store.count_query_transactions(listing.id) == 0

    def test_unknown_buyer_is_denied(self, service, listing):
        auth = service.authorize(424242, listing.id)

        assert auth.status == DebitStatus.USER_NOT_FOUND
        assert auth.token is None

    def test_unknown_listing_raises(self, service):
        with pytest.raises(ListingNotFoundError):
            service.authorize(1, 999)
