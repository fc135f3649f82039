"""
Configuration for the Hyperion deposit bridge.

The three connection settings (RPC URL, treasury wallet, database URL) are
required. Loading settings without them raises a pydantic ValidationError,
so the listener refuses to start before touching the chain or the database.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

# Hyperion testnet (native currency tMETIS, 18 decimals)
HYPERION_TESTNET_CHAIN_ID = 133717


class Settings(BaseSettings):
    """
    Bridge configuration settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Required connections
    rpc_url: str = Field(
        ...,
        description="Hyperion JSON-RPC endpoint",
        alias="HYPERION_RPC_URL",
    )
    treasury_address: str = Field(
        ...,
        description="Marketplace treasury wallet receiving deposits",
        alias="MARKETPLACE_TREASURY_WALLET_ADDRESS",
    )
    database_url: str = Field(
        ...,
        description="Ledger database URL (sqlite:///... or postgresql://...)",
        alias="DATABASE_URL",
    )

    # Chain
    chain_id: int = Field(default=HYPERION_TESTNET_CHAIN_ID, alias="CHAIN_ID")
    poll_interval_seconds: float = Field(
        default=4.0,
        gt=0,
        description="Seconds between block number polls",
        alias="POLL_INTERVAL_SECONDS",
    )
    max_catchup_blocks: int = Field(
        default=50,
        ge=1,
        description="Most blocks emitted per poll when the listener falls behind",
        alias="MAX_CATCHUP_BLOCKS",
    )

    # Ledger
    create_unknown_depositors: bool = Field(
        default=False,
        description="Create a user for deposits from unknown wallets instead of dropping them",
        alias="CREATE_UNKNOWN_DEPOSITORS",
    )

    # API Server
    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Authentication
    # When API_TOKEN is set, metered endpoints require it via X-API-Key header.
    api_token: Optional[str] = Field(default=None, alias="API_TOKEN")
    query_token_secret: Optional[str] = Field(
        default=None,
        description="HMAC secret for request-scoped query tokens",
        alias="QUERY_TOKEN_SECRET",
    )
    query_token_ttl_seconds: int = Field(
        default=300,
        description="Query token TTL in seconds",
        alias="QUERY_TOKEN_TTL_SECONDS",
    )

    @field_validator("treasury_address")
    @classmethod
    def _checksum_treasury(cls, value: str) -> str:
        if not Web3.is_address(value):
            raise ValueError(f"Invalid treasury wallet address: {value}")
        return Web3.to_checksum_address(value)

    @field_validator("rpc_url", "database_url")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
