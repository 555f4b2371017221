"""
Authentication dependencies for FastAPI routes.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from kickoff.services import auth_service, user_service
from kickoff.services.errors import UnauthenticatedError
from kickoff.database.db import get_db_session

ADMIN_ROLE = "admin"

security = HTTPBearer(auto_error=False)


async def get_current_user(
    session: AsyncSession = Depends(get_db_session),
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Dependency to get the current authenticated user from the bearer token.

    The resolved identity is mirrored into the users table on every request
    so names and roles stay current.

    Args:
        session: Database session
        credentials: HTTP Bearer token credentials

    Returns:
        User dictionary

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"kind": "unauthenticated", "message": "Not authenticated"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        identity = auth_service.resolve_identity(credentials.credentials)
    except UnauthenticatedError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )

    return await user_service.upsert_user(
        session,
        identity["user_id"],
        display_name=identity.get("display_name"),
        email=identity.get("email"),
        avatar_url=identity.get("avatar_url"),
        roles=identity.get("roles"),
    )


async def require_user(user: dict = Depends(get_current_user)) -> dict:
    """Require any authenticated user."""
    return user


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    """Require an authenticated user with the admin role."""
    if ADMIN_ROLE not in (user.get("roles") or []):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"kind": "forbidden", "message": "Admin role required"},
        )
    return user
