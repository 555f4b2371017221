"""
Friend service for friend requests and friendships.

One Friendship row per unordered pair: user_id is the requester,
friend_id the recipient. Accepted rows are symmetric friendships.
"""

from typing import List, Dict
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, and_, or_
from sqlalchemy.exc import IntegrityError
from kickoff.database.models import Friendship, FriendshipStatus, User
from kickoff.services import notification_service, user_service
from kickoff.services.errors import ValidationError, NotFoundError, ConflictError
from kickoff.utils.datetime_utils import utcnow, isoformat_or_none
import logging

logger = logging.getLogger(__name__)

RESPONSE_STATUSES = {FriendshipStatus.ACCEPTED.value, FriendshipStatus.REJECTED.value}


def _user_summary(user: User) -> Dict:
    return {
        "id": user.id,
        "display_name": user.display_name or user_service.DEFAULT_DISPLAY_NAME,
        "avatar_url": user.avatar_url,
    }


def _friendship_to_dict(friendship: Friendship) -> Dict:
    return {
        "id": friendship.id,
        "user_id": friendship.user_id,
        "friend_id": friendship.friend_id,
        "status": friendship.status,
        "created_at": isoformat_or_none(friendship.created_at),
        "updated_at": isoformat_or_none(friendship.updated_at),
    }


async def send_friend_request(session: AsyncSession, user_id: str, friend_id: str) -> Dict:
    """
    Send a friend request from user_id to friend_id.

    Args:
        session: Database session
        user_id: Requesting user
        friend_id: Recipient

    Returns:
        Friendship dict with a "friend" summary

    Raises:
        ValidationError: If sending to yourself
        NotFoundError: If the recipient does not exist
        ConflictError: If any relationship already exists for the pair
    """
    if user_id == friend_id:
        raise ValidationError("Cannot send a friend request to yourself")

    target = await session.get(User, friend_id)
    if target is None:
        raise NotFoundError("User not found")

    existing = await session.execute(
        select(Friendship.id).where(
            or_(
                and_(Friendship.user_id == user_id, Friendship.friend_id == friend_id),
                and_(Friendship.user_id == friend_id, Friendship.friend_id == user_id),
            )
        )
    )
    if existing.first() is not None:
        raise ConflictError("A friendship with this user already exists")

    friendship = Friendship(
        user_id=user_id, friend_id=friend_id, status=FriendshipStatus.PENDING.value
    )
    session.add(friendship)
    try:
        await session.flush()
        await session.commit()
    except IntegrityError:
        # The reverse request won a concurrent insert for the same pair
        await session.rollback()
        logger.info(f"Concurrent friend request detected between {user_id} and {friend_id}")
        raise ConflictError("A friendship with this user already exists")
    except Exception:
        await session.rollback()
        raise
    await session.refresh(friendship)

    logger.info(f"Friend request {friendship.id} sent from {user_id} to {friend_id}")

    try:
        sender_name = await user_service.get_display_name(session, user_id)
        notification_service.notify_friend_request(friend_id, sender_name, user_id)
    except Exception as e:
        logger.warning(f"Failed to dispatch friend request notification: {e}")

    return {**_friendship_to_dict(friendship), "friend": _user_summary(target)}


async def respond_to_friend_request(
    session: AsyncSession, request_id: int, user_id: str, status: str
) -> Dict:
    """
    Accept or reject a pending request addressed to user_id.

    Raises:
        ValidationError: If status is not 'accepted' or 'rejected'
        NotFoundError: If no pending request with that id is addressed to the user
    """
    if status not in RESPONSE_STATUSES:
        raise ValidationError("status must be 'accepted' or 'rejected'")

    result = await session.execute(
        select(Friendship).where(
            and_(
                Friendship.id == request_id,
                Friendship.friend_id == user_id,
                Friendship.status == FriendshipStatus.PENDING.value,
            )
        )
    )
    friendship = result.scalar_one_or_none()
    if friendship is None:
        raise NotFoundError("Friend request not found")

    friendship.status = status
    friendship.updated_at = utcnow()
    try:
        await session.flush()
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(friendship)

    logger.info(f"Friend request {request_id} {status} by {user_id}")

    if status == FriendshipStatus.ACCEPTED.value:
        try:
            accepter_name = await user_service.get_display_name(session, user_id)
            notification_service.notify_friend_accept(friendship.user_id, accepter_name, user_id)
        except Exception as e:
            logger.warning(f"Failed to dispatch friend accept notification: {e}")

    requester = await session.get(User, friendship.user_id)
    data = _friendship_to_dict(friendship)
    if requester is not None:
        data["user"] = _user_summary(requester)
    return data


async def list_friends(session: AsyncSession, user_id: str) -> List[Dict]:
    """Accepted friendships of the user, with the other side's summary."""
    result = await session.execute(
        select(Friendship).where(
            and_(
                Friendship.status == FriendshipStatus.ACCEPTED.value,
                or_(Friendship.user_id == user_id, Friendship.friend_id == user_id),
            )
        ).order_by(Friendship.updated_at.desc(), Friendship.id.desc())
    )
    friendships = result.scalars().all()

    other_ids = [f.friend_id if f.user_id == user_id else f.user_id for f in friendships]
    users = {}
    if other_ids:
        users_result = await session.execute(select(User).where(User.id.in_(other_ids)))
        users = {u.id: u for u in users_result.scalars().all()}

    friends = []
    for friendship, other_id in zip(friendships, other_ids):
        other = users.get(other_id)
        friends.append(
            {
                "friendship_id": friendship.id,
                "since": isoformat_or_none(friendship.updated_at),
                "friend": _user_summary(other) if other else {"id": other_id, "display_name": user_service.DEFAULT_DISPLAY_NAME, "avatar_url": None},
            }
        )
    return friends


async def list_pending_requests(session: AsyncSession, user_id: str) -> Dict:
    """Pending requests split into "received" and "sent"."""
    result = await session.execute(
        select(Friendship, User)
        .join(User, User.id == Friendship.user_id)
        .where(
            and_(
                Friendship.friend_id == user_id,
                Friendship.status == FriendshipStatus.PENDING.value,
            )
        )
        .order_by(Friendship.created_at.desc(), Friendship.id.desc())
    )
    received = [
        {**_friendship_to_dict(f), "user": _user_summary(u)} for f, u in result.all()
    ]

    result = await session.execute(
        select(Friendship, User)
        .join(User, User.id == Friendship.friend_id)
        .where(
            and_(
                Friendship.user_id == user_id,
                Friendship.status == FriendshipStatus.PENDING.value,
            )
        )
        .order_by(Friendship.created_at.desc(), Friendship.id.desc())
    )
    sent = [
        {**_friendship_to_dict(f), "friend": _user_summary(u)} for f, u in result.all()
    ]
    return {"received": received, "sent": sent}


async def remove_friend(session: AsyncSession, user_id: str, friendship_id: int) -> bool:
    """
    Delete a friendship (or request) the user is part of.

    Raises:
        NotFoundError: If the row does not exist or the user is not part of it
    """
    result = await session.execute(
        delete(Friendship).where(
            and_(
                Friendship.id == friendship_id,
                or_(Friendship.user_id == user_id, Friendship.friend_id == user_id),
            )
        )
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFoundError("Friendship not found")
    await session.commit()
    logger.info(f"Friendship {friendship_id} removed by {user_id}")
    return True
