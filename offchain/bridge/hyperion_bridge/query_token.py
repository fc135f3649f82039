"""
Request-scoped query tokens.

A paid query is authorized once, when the buyer's balance is debited.
The server then hands out an HMAC-signed token, without server-side
storage, that contains:
- user_id (buyer)
- listing_id
- nonce
- issued_at / expires_at
The listing endpoint verifies the token instead of touching the ledger.

Wire form: ``<claims>.<mac>``, both parts unpadded base64url. ``claims``
is compact JSON with short keys; ``mac`` is HMAC-SHA256 over the claims
bytes exactly as sent.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass

MIN_TTL_SECONDS = 30
CLOCK_SKEW_SECONDS = 60
TOKEN_VERSION = 1

# Attribute name -> short JSON key
_CLAIM_KEYS = {
    "version": "v",
    "user_id": "uid",
    "listing_id": "lid",
    "nonce": "nonce",
    "issued_at": "iat",
    "expires_at": "exp",
}


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _decode_segment(segment: str) -> bytes:
    missing = -len(segment) % 4
    return base64.urlsafe_b64decode(segment + "=" * missing)


@dataclass(frozen=True)
class QueryTokenPayload:
    version: int
    user_id: int
    listing_id: int
    nonce: str
    issued_at: int
    expires_at: int

    def encode(self) -> bytes:
        claims = {key: getattr(self, attr) for attr, key in _CLAIM_KEYS.items()}
        # Same claims always give the same bytes, and so the same MAC
        return json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes) -> QueryTokenPayload:
        claims = json.loads(data.decode("utf-8"))
        return cls(
            version=int(claims["v"]),
            user_id=int(claims["uid"]),
            listing_id=int(claims["lid"]),
            nonce=str(claims["nonce"]),
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
        )


def _mac(secret: str, claims: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), claims, hashlib.sha256).digest()


def issue_query_token(
    *, secret: str, user_id: int, listing_id: int, ttl_seconds: int, now: int | None = None
) -> tuple[str, QueryTokenPayload]:
    """Sign a token for one paid query. TTLs below MIN_TTL_SECONDS are raised to it."""
    issued_at = int(time.time()) if now is None else int(now)
    payload = QueryTokenPayload(
        version=TOKEN_VERSION,
        user_id=user_id,
        listing_id=listing_id,
        nonce=secrets.token_urlsafe(16),
        issued_at=issued_at,
        expires_at=issued_at + max(MIN_TTL_SECONDS, int(ttl_seconds)),
    )

    claims = payload.encode()
    token = f"{_encode_segment(claims)}.{_encode_segment(_mac(secret, claims))}"
    return token, payload


def verify_query_token(*, secret: str, token: str, now: int | None = None) -> QueryTokenPayload:
    """
    Check a token's signature and lifetime and return its claims.

    Raises:
        ValueError: if the token is malformed, forged, expired or issued
            too far in the future
    """
    claims_part, sep, mac_part = token.partition(".")
    if not sep:
        raise ValueError("Invalid token format")
    try:
        claims = _decode_segment(claims_part)
        mac = _decode_segment(mac_part)
    except (ValueError, UnicodeEncodeError) as e:
        raise ValueError("Invalid token encoding") from e

    if not hmac.compare_digest(mac, _mac(secret, claims)):
        raise ValueError("Invalid token signature")

    try:
        payload = QueryTokenPayload.decode(claims)
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError("Invalid token payload") from e

    now_ts = int(time.time()) if now is None else int(now)
    if payload.expires_at < now_ts:
        raise ValueError("Token expired")
    if payload.issued_at > now_ts + CLOCK_SKEW_SECONDS:
        raise ValueError("Token issued in the future")
    return payload
