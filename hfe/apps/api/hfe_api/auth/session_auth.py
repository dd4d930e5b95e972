"""Session authentication for user-facing endpoints.

Supabase JWT-based session auth: the mobile client sends the Supabase access
token as Authorization: Bearer <jwt>; Supabase verifies signature and expiry and
returns the user. The user id is the entitlement key (also the RevenueCat
app_user_id and the Stripe client_reference_id).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from hfe_api.context import request_id_var, user_id_var
from hfe_api.errors import ConfigurationError
from hfe_api.schemas import ProblemDetail
from hfe_api.supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

session_security = HTTPBearer(auto_error=False, description="Supabase JWT Session Token")


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: Optional[str] = None


def _unauthorized(detail: str, request: Request) -> HTTPException:
    """401 with an RFC 9457 body (rendered as-is by the HTTPException handler)."""
    problem = ProblemDetail(
        type="urn:hfe:problem:unauthorized",
        title="Unauthorized",
        status=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        instance=f"urn:hfe:trace:{request_id_var.get()}",
    )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=problem.model_dump(exclude_none=True),
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(session_security),
) -> AuthenticatedUser:
    """Resolve the caller from the Supabase session JWT.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired
        ConfigurationError: Supabase settings missing (500)
    """
    if not credentials:
        raise _unauthorized("Missing Authorization header. Please log in first.", request)

    try:
        user_response = get_supabase_client().auth.get_user(credentials.credentials)
    except ConfigurationError:
        raise
    except Exception as e:
        logger.warning(
            "SESSION_JWT_REJECTED",
            extra={"error_type": type(e).__name__},
        )
        raise _unauthorized("Invalid or expired session token. Please log in again.", request)

    if not user_response or not user_response.user:
        raise _unauthorized("Invalid or expired session token. Please log in again.", request)

    user = user_response.user
    user_id_var.set(user.id)
    logger.debug("SESSION_JWT_VALIDATED", extra={"user_id": user.id})
    return AuthenticatedUser(user_id=user.id, email=user.email)
