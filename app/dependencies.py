"""FastAPI dependencies."""

from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.integrations import Integrations
from app.core.redis_client import CacheManager, get_redis_client
from app.core.security import decode_access_token
from app.database import get_db
from app.services.audit_service import RequestContext
from app.services.user_service import UserService

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> int:
    """
    Resolve the caller's user id from the bearer token.

    The token must be a valid, unexpired access token whose ``sub`` claim is
    an integer id.

    Raises:
        HTTPException: 401 for a missing, invalid or malformed token
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    claims = decode_access_token(credentials.credentials) or {}
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise _unauthorized("Could not validate credentials")

    return int(subject)


def get_cache_manager() -> CacheManager | None:
    """
    Cache manager backed by the shared Redis client.

    CacheManager fails open, so an unreachable Redis only costs cache hits.
    """
    return CacheManager(get_redis_client())


async def get_current_user(
    user_id: Annotated[int, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
    cache_manager: Annotated[CacheManager | None, Depends(get_cache_manager)],
) -> dict:
    """
    Load the authenticated user and tag the request logs with their id.

    Raises:
        HTTPException: 401 if the user no longer exists, 403 if deactivated
    """
    user = await UserService(cache_manager).get_user_by_id(db, user_id)

    if not user:
        raise _unauthorized("User not found")

    if not user["is_active"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is deactivated",
        )

    structlog.contextvars.bind_contextvars(user_id=user_id)
    return user


def get_integrations(request: Request) -> Integrations:
    """External clients built at startup."""
    return request.app.state.integrations


def get_request_context(request: Request) -> RequestContext:
    """Origin of the current request for the audit trail."""
    return RequestContext.from_request(request)


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
CurrentUserId = Annotated[int, Depends(get_current_user_id)]
CurrentUser = Annotated[dict, Depends(get_current_user)]
CacheManagerDep = Annotated[CacheManager | None, Depends(get_cache_manager)]
IntegrationsDep = Annotated[Integrations, Depends(get_integrations)]
RequestContextDep = Annotated[RequestContext, Depends(get_request_context)]
