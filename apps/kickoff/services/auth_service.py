"""
Identity resolution for bearer tokens issued by the external identity provider.

Tokens are never issued here; they are verified with the shared secret and
mapped to {user_id, display_name, roles}.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from jose import JWTError, jwt

from kickoff.services.errors import UnauthenticatedError

logger = logging.getLogger(__name__)

# JWT settings
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "dev-secret-key-change")
AUTH_JWT_ALGORITHM = os.getenv("AUTH_JWT_ALGORITHM", "HS256")
AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE") or None
AUTH_JWT_ISSUER = os.getenv("AUTH_JWT_ISSUER") or None


def verify_token(token: str) -> Optional[Dict]:
    """
    Verify and decode a bearer token.

    Returns:
        Claims dict, or None if the token is invalid, expired, or malformed
    """
    if not token:
        return None
    try:
        return jwt.decode(
            token,
            AUTH_JWT_SECRET,
            algorithms=[AUTH_JWT_ALGORITHM],
            audience=AUTH_JWT_AUDIENCE,
            issuer=AUTH_JWT_ISSUER,
            options={"verify_aud": AUTH_JWT_AUDIENCE is not None},
        )
    except JWTError as e:
        logger.debug(f"Token verification failed: {e}")
        return None


def _roles_from_claims(claims: Dict) -> List[str]:
    roles = claims.get("roles")
    if roles is None:
        role = claims.get("role")
        roles = [role] if role else []
    elif isinstance(roles, str):
        roles = [r.strip() for r in roles.split(",")]
    return [str(r) for r in roles if r]


def resolve_identity(token: str) -> Dict:
    """
    Map a bearer token to the caller's identity.

    Returns:
        {"user_id", "display_name", "roles", "email", "avatar_url"}

    Raises:
        UnauthenticatedError: If the token is invalid or has no subject
    """
    claims = verify_token(token)
    if claims is None:
        raise UnauthenticatedError("Invalid authentication token")

    user_id = claims.get("sub")
    if not user_id:
        raise UnauthenticatedError("Invalid token payload")

    return {
        "user_id": str(user_id),
        "display_name": claims.get("name") or claims.get("nickname"),
        "roles": _roles_from_claims(claims),
        "email": claims.get("email"),
        "avatar_url": claims.get("picture"),
    }


def create_access_token(
    user_id: str,
    display_name: Optional[str] = None,
    roles: Optional[List[str]] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Sign a token the way the identity provider does.

    Used by local tooling and tests; production tokens come from the provider.
    """
    to_encode = {"sub": user_id, "roles": roles or []}
    if display_name:
        to_encode["name"] = display_name
    if AUTH_JWT_AUDIENCE:
        to_encode["aud"] = AUTH_JWT_AUDIENCE
    if AUTH_JWT_ISSUER:
        to_encode["iss"] = AUTH_JWT_ISSUER
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))
    to_encode["exp"] = expire
    return jwt.encode(to_encode, AUTH_JWT_SECRET, algorithm=AUTH_JWT_ALGORITHM)
