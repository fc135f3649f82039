"""
Service listings and metered query payments.

Sellers list third-party service endpoints with a price per query.
Before a buyer may call a listing, MeteredQueryService debits the
price from the buyer's ledger balance, adds it to the seller's unpaid
balance, records the query and issues a short-lived query token.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Union

import structlog
from sqlalchemy import select

from .db import LedgerDatabase, as_utc, listings, query_transactions, utcnow
from .ledger import DebitStatus, LedgerTransactor, canonical_address, parse_record_id
from .query_token import QueryTokenPayload, issue_query_token
from .units import format_units, to_units

logger = structlog.get_logger()


@dataclass
class Listing:
    """A paid service endpoint offered by a seller."""

    id: int
    owner_id: int
    name: str
    description: str
    keywords: list[str]
    endpoint_url: str
    price_per_query: int  # ledger base units
    payout_address: str
    unpaid_balance: int
    is_active: bool
    created_at: datetime


def _row_to_listing(row: Any) -> Listing:
    return Listing(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        description=row.description,
        keywords=[k for k in (row.keywords or "").split(",") if k],
        endpoint_url=row.endpoint_url,
        price_per_query=row.price_per_query,
        payout_address=row.payout_address,
        unpaid_balance=row.unpaid_balance,
        is_active=row.is_active,
        created_at=as_utc(row.created_at),
    )


class ListingStore:
    """Listing records in the ledger database."""

    def __init__(self, db: LedgerDatabase):
        self.db = db

    def create_listing(
        self,
        owner_id: int,
        name: str,
        endpoint_url: str,
        price_per_query: Union[int, str, Decimal],
        payout_address: str,
        description: str = "",
        keywords: Optional[list[str]] = None,
    ) -> Listing:
        """Create a listing. ``price_per_query`` is in tokens."""
        price = to_units(price_per_query)
        if price <= 0:
            raise ValueError("price_per_query must be positive")

        values = dict(
            owner_id=owner_id,
            name=name,
            description=description,
            keywords=",".join(k.strip() for k in (keywords or []) if k.strip()),
            endpoint_url=endpoint_url,
            price_per_query=price,
            payout_address=canonical_address(payout_address),
            unpaid_balance=0,
            is_active=True,
            created_at=utcnow(),
        )
        with self.db.engine.begin() as conn:
            result = conn.execute(listings.insert().values(**values))
            listing_id = result.inserted_primary_key[0]

        logger.info("listing_created", listing_id=listing_id, owner_id=owner_id, price=format_units(price))
        return self.get_listing(listing_id)

    def list_active_listings(self) -> list[Listing]:
        """All active listings, oldest first."""
        with self.db.engine.connect() as conn:
            rows = conn.execute(
                select(listings).where(listings.c.is_active.is_(True)).order_by(listings.c.id)
            ).fetchall()
        return [_row_to_listing(row) for row in rows]

    def get_listing(self, listing_id: Union[int, str]) -> Optional[Listing]:
        """Get a listing by id. Malformed ids find nothing."""
        lid = parse_record_id(listing_id)
        if lid is None:
            return None
        with self.db.engine.connect() as conn:
            row = conn.execute(select(listings).where(listings.c.id == lid)).fetchone()
        return _row_to_listing(row) if row else None

    def update_listing(
        self,
        listing_id: int,
        owner_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        price_per_query: Optional[Union[int, str, Decimal]] = None,
    ) -> Optional[Listing]:
        """
        Update a listing's details. Only the owner can update.

        Returns the updated listing, or None if it does not exist or
        belongs to someone else.
        """
        values: dict[str, Any] = {}
        if name is not None:
            values["name"] = name
        if description is not None:
            values["description"] = description
        if price_per_query is not None:
            price = to_units(price_per_query)
            if price <= 0:
                raise ValueError("price_per_query must be positive")
            values["price_per_query"] = price

        if not values:
            listing = self.get_listing(listing_id)
            return listing if listing and listing.owner_id == owner_id else None

        with self.db.engine.begin() as conn:
            result = conn.execute(
                listings.update()
                .where(listings.c.id == listing_id, listings.c.owner_id == owner_id)
                .values(**values)
            )
            if result.rowcount == 0:
                return None
        return self.get_listing(listing_id)

    def increment_unpaid_balance(self, listing_id: int, units: int) -> bool:
        """Add to a seller's unpaid balance in one atomic update."""
        with self.db.engine.begin() as conn:
            result = conn.execute(
                listings.update()
                .where(listings.c.id == listing_id)
                .values(unpaid_balance=listings.c.unpaid_balance + units)
            )
        return result.rowcount > 0

    def record_query_transaction(self, listing: Listing, buyer_id: int, units: int) -> int:
        """Log a paid query."""
        with self.db.engine.begin() as conn:
            result = conn.execute(
                query_transactions.insert().values(
                    listing_id=listing.id,
                    seller_id=listing.owner_id,
                    buyer_id=buyer_id,
                    amount=units,
                    timestamp=utcnow(),
                )
            )
            return result.inserted_primary_key[0]

    def count_query_transactions(self, listing_id: int) -> int:
        with self.db.engine.connect() as conn:
            rows = conn.execute(
                select(query_transactions.c.id).where(query_transactions.c.listing_id == listing_id)
            ).fetchall()
        return len(rows)


@dataclass
class QueryAuthorization:
    """Result of paying for a query."""

    status: DebitStatus
    listing_id: int
    user_id: Union[int, str]
    price: int = 0
    balance: Optional[int] = None
    token: Optional[str] = None
    payload: Optional[QueryTokenPayload] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.status == DebitStatus.SUCCEEDED


class ListingNotFoundError(LookupError):
    """The listing does not exist or is inactive."""


class MeteredQueryService:
    """Charges buyers per query and issues request-scoped query tokens."""

    def __init__(
        self,
        transactor: LedgerTransactor,
        listing_store: ListingStore,
        token_secret: str,
        token_ttl_seconds: int = 300,
    ):
        self.transactor = transactor
        self.listings = listing_store
        self.token_secret = token_secret
        self.token_ttl_seconds = token_ttl_seconds

    def authorize(self, user_id: Union[int, str], listing_id: Union[int, str]) -> QueryAuthorization:
        """
        Debit the listing price and issue a query token.

        A denied debit returns an authorization with ``ok`` False and no
        token. Bookkeeping failures after a successful debit are logged;
        the buyer has paid, so the token is still issued.

        Raises:
            ListingNotFoundError: if the listing is unknown or inactive
        """
        listing = self.listings.get_listing(listing_id)
        if listing is None or not listing.is_active:
            raise ListingNotFoundError(f"Listing not found: {listing_id}")

        debit = self.transactor.debit_units(user_id, listing.price_per_query)
        if not debit.ok:
            logger.info(
                "query_denied",
                user_id=user_id,
                listing_id=listing.id,
                reason=debit.status.value,
            )
            return QueryAuthorization(
                status=debit.status,
                listing_id=listing.id,
                user_id=user_id,
                price=listing.price_per_query,
            )

        buyer_id = parse_record_id(user_id)
        try:
            self.listings.increment_unpaid_balance(listing.id, listing.price_per_query)
            self.listings.record_query_transaction(listing, buyer_id, listing.price_per_query)
        except Exception as e:
            logger.error(
                "query_bookkeeping_failed",
                user_id=buyer_id,
                listing_id=listing.id,
                error=str(e),
            )

        token, payload = issue_query_token(
            secret=self.token_secret,
            user_id=buyer_id,
            listing_id=listing.id,
            ttl_seconds=self.token_ttl_seconds,
        )
        logger.info(
            "query_authorized",
            user_id=buyer_id,
            listing_id=listing.id,
            price=format_units(listing.price_per_query),
            expires_at=payload.expires_at,
        )
        return QueryAuthorization(
            status=debit.status,
            listing_id=listing.id,
            user_id=buyer_id,
            price=listing.price_per_query,
            balance=debit.account.balance if debit.account else None,
            token=token,
            payload=payload,
        )
