"""
Authentication dependency for FastAPI endpoints.

Provides bearer-token verification via Supabase auth.get_user() and a FastAPI
dependency that protects the account-action endpoints. Webhook endpoints are
unauthenticated; they rely on gateway signatures instead.
"""

from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


class AuthenticatedAccount(BaseModel):
    """Represents a verified account."""

    id: str
    email: str | None = None


async def get_current_account(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthenticatedAccount:
    """
    FastAPI dependency that verifies a JWT Bearer token via Supabase.

    Raises:
        HTTPException 503: Supabase client not configured.
        HTTPException 401: Token is invalid, expired, or account not found.
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication service unavailable")

    token = credentials.credentials
    try:
        response = await supabase.auth.get_user(token)
        user = response.user if response else None
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        structlog.contextvars.bind_contextvars(account_id=str(user.id))
        return AuthenticatedAccount(id=str(user.id), email=user.email)
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")


CurrentAccount = Annotated[AuthenticatedAccount, Depends(get_current_account)]
