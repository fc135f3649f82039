"""
Operator key check for the paid query endpoints.

/queries/authorize moves money between ledger accounts, so when API_TOKEN
is configured the caller (the marketplace backend) must send it in the
X-API-Key header. Read-only endpoints stay open. With no API_TOKEN the
check is off, which is only meant for local runs against a test ledger.
"""

import hmac
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from .config import Settings

API_KEY_HEADER = "X-API-Key"

operator_key = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def get_app_settings(request: Request) -> Settings:
    """Settings the application was created with."""
    return request.app.state.settings


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": API_KEY_HEADER},
    )


async def verify_api_token(
    presented: Optional[str] = Depends(operator_key),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Reject the request with 401 unless it carries the operator key."""
    expected = settings.api_token
    if not expected:
        return

    if not presented:
        raise _unauthorized(f"Operator key required in {API_KEY_HEADER} header")

    if not hmac.compare_digest(presented.encode(), expected.encode()):
        raise _unauthorized("Operator key rejected")
