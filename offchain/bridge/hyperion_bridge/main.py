"""
Marketplace ledger API.

Provides REST endpoints for:
- Account lookup (GET /users/{address})
- Listings (GET /listings, GET /listings/{listing_id})
- Paying for a query (POST /queries/authorize)
- Checking a query token (POST /queries/verify)
- Health checks (GET /health)
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, Response

from . import __version__
from .auth import get_app_settings, verify_api_token
from .chain import ChainClient
from .config import Settings, get_settings
from .db import LedgerDatabase
from .ledger import DebitStatus, LedgerTransactor, User
from .marketplace import Listing, ListingNotFoundError, ListingStore, MeteredQueryService
from .models import (
    AccountResponse,
    AuthorizeQueryRequest,
    AuthorizeQueryResponse,
    HealthResponse,
    ListingResponse,
    VerifyQueryTokenRequest,
    VerifyQueryTokenResponse,
)
from .query_token import verify_query_token
from .units import format_units

# Configure logging
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()

DENIED_STATUS_CODES = {
    DebitStatus.INSUFFICIENT_FUNDS: 402,
    DebitStatus.USER_NOT_FOUND: 404,
    DebitStatus.INFRASTRUCTURE_ERROR: 503,
}


def _account_response(user: User) -> AccountResponse:
    return AccountResponse(
        user_id=user.id,
        wallet_address=user.wallet_address,
        balance=format_units(user.account.balance),
        balance_wei=str(user.account.balance_wei),
        last_funded_at=user.last_funded_at.isoformat() if user.last_funded_at else None,
    )


def _listing_response(listing: Listing) -> ListingResponse:
    return ListingResponse(
        id=listing.id,
        owner_id=listing.owner_id,
        name=listing.name,
        description=listing.description,
        keywords=listing.keywords,
        endpoint_url=listing.endpoint_url,
        price_per_query=format_units(listing.price_per_query),
        payout_address=listing.payout_address,
    )


def get_transactor(request: Request) -> LedgerTransactor:
    return request.app.state.transactor


def get_listing_store(request: Request) -> ListingStore:
    return request.app.state.listings


def get_query_service(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> MeteredQueryService:
    if not settings.query_token_secret:
        raise HTTPException(status_code=503, detail="QUERY_TOKEN_SECRET not configured")
    return MeteredQueryService(
        transactor=request.app.state.transactor,
        listing_store=request.app.state.listings,
        token_secret=settings.query_token_secret,
        token_ttl_seconds=settings.query_token_ttl_seconds,
    )


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[LedgerDatabase] = None,
    chain: Optional[ChainClient] = None,
) -> FastAPI:
    """
    Build the API application.

    The database and chain client are created here unless passed in,
    and the database is closed when the application shuts down.
    """
    settings = settings or get_settings()
    owns_db = db is None
    db = db or LedgerDatabase(settings.database_url)
    chain = chain or ChainClient(settings.rpc_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        logger.info(
            "API started",
            version=__version__,
            host=settings.host,
            port=settings.port,
            rpc_url=settings.rpc_url,
        )

        yield

        if owns_db:
            db.close()
        logger.info("API stopped")

    app = FastAPI(
        title="Hyperion Marketplace Ledger API",
        description="Deposit-funded balances and metered query payments",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.db = db
    app.state.chain = chain
    app.state.transactor = LedgerTransactor(db, settings.create_unknown_depositors)
    app.state.listings = ListingStore(db)

    # ========================================================================
    # Health Check
    # ========================================================================

    @app.get("/health", response_model=HealthResponse)
    def health_check(request: Request) -> HealthResponse:
        """Check API health and connectivity to the chain and the database."""
        chain_ok = request.app.state.chain.check_connectivity()
        db_ok = request.app.state.db.ping()
        return HealthResponse(
            status="ok" if (chain_ok and db_ok) else "degraded",
            version=__version__,
            chain_rpc=chain_ok,
            database=db_ok,
            treasury=settings.treasury_address,
        )

    # ========================================================================
    # Accounts
    # ========================================================================

    @app.get("/users/{address}", response_model=AccountResponse)
    def get_account(
        address: str,
        transactor: LedgerTransactor = Depends(get_transactor),
    ) -> AccountResponse:
        """Find or create the account for a wallet address."""
        try:
            user = transactor.find_or_create_user(address)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _account_response(user)

    # ========================================================================
    # Listings
    # ========================================================================

    @app.get("/listings", response_model=list[ListingResponse])
    def get_listings(store: ListingStore = Depends(get_listing_store)) -> list[ListingResponse]:
        """List active service listings."""
        return [_listing_response(listing) for listing in store.list_active_listings()]

    @app.get("/listings/{listing_id}", response_model=ListingResponse)
    def get_listing(
        listing_id: str,
        store: ListingStore = Depends(get_listing_store),
    ) -> ListingResponse:
        listing = store.get_listing(listing_id)
        if listing is None:
            raise HTTPException(status_code=404, detail="Listing not found")
        return _listing_response(listing)

    # ========================================================================
    # Metered Queries
    # ========================================================================

    @app.post(
        "/queries/authorize",
        response_model=AuthorizeQueryResponse,
        dependencies=[Depends(verify_api_token)],
    )
    def authorize_query(
        request: AuthorizeQueryRequest,
        response: Response,
        service: MeteredQueryService = Depends(get_query_service),
    ) -> AuthorizeQueryResponse:
        """
        Pay for one query against a listing.

        Debits the listing price from the buyer and returns a query token.
        A denied debit returns 402 (insufficient funds), 404 (unknown
        buyer) or 503 (ledger unavailable) with no token.
        """
        try:
            auth = service.authorize(request.user_id, request.listing_id)
        except ListingNotFoundError:
            raise HTTPException(status_code=404, detail="Listing not found")

        if not auth.ok:
            response.status_code = DENIED_STATUS_CODES[auth.status]

        return AuthorizeQueryResponse(
            success=auth.ok,
            status=auth.status.value,
            listing_id=auth.listing_id,
            price=format_units(auth.price),
            balance=format_units(auth.balance) if auth.balance is not None else None,
            query_token=auth.token,
            expires_at=auth.payload.expires_at if auth.payload else None,
        )

    @app.post("/queries/verify", response_model=VerifyQueryTokenResponse)
    def verify_query(
        request: VerifyQueryTokenRequest,
        settings: Settings = Depends(get_app_settings),
    ) -> VerifyQueryTokenResponse:
        """Check a query token issued by /queries/authorize."""
        if not settings.query_token_secret:
            raise HTTPException(status_code=503, detail="QUERY_TOKEN_SECRET not configured")
        try:
            payload = verify_query_token(secret=settings.query_token_secret, token=request.token)
        except ValueError as e:
            raise HTTPException(status_code=401, detail=f"Invalid query token: {e}")
        return VerifyQueryTokenResponse(
            user_id=payload.user_id,
            listing_id=payload.listing_id,
            issued_at=payload.issued_at,
            expires_at=payload.expires_at,
        )

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    uvicorn.run(
        "hyperion_bridge.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
    )
