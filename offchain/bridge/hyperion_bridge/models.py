"""
Pydantic models for API requests and responses.

Token amounts are rendered as decimal strings so no balance passes
through a JSON float.
"""

from typing import Optional

from pydantic import BaseModel, Field


# ============================================================================
# Health
# ============================================================================

class HealthResponse(BaseModel):
    """Service status."""

    status: str = Field(..., description="ok or degraded")
    version: str
    chain_rpc: bool = Field(..., description="Hyperion RPC reachable")
    database: bool = Field(..., description="Ledger database reachable")
    treasury: str = Field(..., description="Treasury wallet receiving deposits")


# ============================================================================
# Accounts
# ============================================================================

class AccountResponse(BaseModel):
    """A user's ledger account."""

    user_id: int
    wallet_address: str
    balance: str = Field(..., description="Balance in tMETIS")
    balance_wei: str = Field(..., description="Exact deposited wei not yet spent, including the carried remainder")
    last_funded_at: Optional[str] = None


# ============================================================================
# Listings
# ============================================================================

class ListingResponse(BaseModel):
    """A paid service listing."""

    id: int
    owner_id: int
    name: str
    description: str
    keywords: list[str]
    endpoint_url: str
    price_per_query: str = Field(..., description="Price in tMETIS")
    payout_address: str


# ============================================================================
# Metered queries
# ============================================================================

class AuthorizeQueryRequest(BaseModel):
    """Request to pay for one query against a listing."""

    user_id: int = Field(..., description="Buyer user id")
    listing_id: int = Field(..., description="Listing to query")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": 1,
                    "listing_id": 7,
                }
            ]
        }
    }


class AuthorizeQueryResponse(BaseModel):
    """Outcome of paying for a query."""

    success: bool
    status: str = Field(..., description="succeeded, insufficient_funds, user_not_found or infrastructure_error")
    listing_id: int
    price: str = Field(..., description="Price charged in tMETIS")
    balance: Optional[str] = Field(None, description="Remaining balance in tMETIS")
    query_token: Optional[str] = Field(None, description="Request-scoped token for the listing endpoint")
    expires_at: Optional[int] = None


class VerifyQueryTokenRequest(BaseModel):
    """Request to check a query token."""

    token: str


class VerifyQueryTokenResponse(BaseModel):
    """A valid query token's claims."""

    user_id: int
    listing_id: int
    issued_at: int
    expires_at: int
