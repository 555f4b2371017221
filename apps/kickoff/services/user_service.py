"""
User service layer: local mirror of identities resolved by the token issuer.
"""

from typing import Optional, Dict, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from kickoff.database.models import User
from kickoff.utils.datetime_utils import isoformat_or_none
import logging

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = "A player"


def _user_to_dict(user: User) -> Dict:
    return {
        "id": user.id,
        "display_name": user.display_name,
        "email": user.email,
        "avatar_url": user.avatar_url,
        "roles": [r for r in (user.roles or "").split(",") if r],
        "created_at": isoformat_or_none(user.created_at),
    }


async def upsert_user(
    session: AsyncSession,
    user_id: str,
    display_name: Optional[str] = None,
    email: Optional[str] = None,
    avatar_url: Optional[str] = None,
    roles: Optional[List[str]] = None,
) -> Dict:
    """
    Create or refresh the local row for an externally-issued identity.

    Only fields present in the identity overwrite stored values, so a token
    without a name claim does not blank out a known display name.

    Args:
        session: Database session
        user_id: Subject of the identity token
        display_name: Optional display name claim
        email: Optional email claim
        avatar_url: Optional avatar URL claim
        roles: Optional list of role names

    Returns:
        User dict
    """
    if not user_id:
        raise ValueError("user_id is required")

    user = await session.get(User, user_id)
    if user is None:
        user = User(id=user_id)
        session.add(user)
        try:
            await session.flush()
        except IntegrityError:
            # First requests of a new identity raced; the other one created the row
            await session.rollback()
            user = await session.get(User, user_id, populate_existing=True)
            if user is None:
                raise

    if display_name:
        user.display_name = display_name
    if email:
        user.email = email
    if avatar_url:
        user.avatar_url = avatar_url
    if roles is not None:
        user.roles = ",".join(roles)

    await session.flush()
    await session.commit()
    return _user_to_dict(user)


async def get_user_by_id(session: AsyncSession, user_id: str) -> Optional[Dict]:
    """Return the user dict or None."""
    user = await session.get(User, user_id)
    if user is None:
        return None
    return _user_to_dict(user)


async def get_display_name(session: AsyncSession, user_id: str) -> str:
    """Best display name for notifications; never raises for unknown users."""
    result = await session.execute(select(User.display_name).where(User.id == user_id))
    return result.scalar_one_or_none() or DEFAULT_DISPLAY_NAME
