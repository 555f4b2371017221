"""
Notification service: durable history plus best-effort fan-out.

A notification is first persisted (the only step allowed to fail the call),
then relayed to the user's live sockets, then pushed to every registered
device in parallel. Push failures are isolated per device; permanently dead
tokens are removed in the background on a separate session.
"""

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Set

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database import db
from kickoff.database.models import Notification, NotificationType
from kickoff.services import device_service, push_service
from kickoff.services.errors import NotFoundError, ValidationError
from kickoff.services.websocket_manager import get_websocket_manager
from kickoff.utils.datetime_utils import utcnow, ensure_utc, isoformat_or_none

logger = logging.getLogger(__name__)

# Upper bound for one fan-out round; devices still pending count as failed
PUSH_DELIVERY_TIMEOUT_SECONDS = float(os.getenv("PUSH_DELIVERY_TIMEOUT_SECONDS", "10"))

VALID_NOTIFICATION_TYPES = {t.value for t in NotificationType}

# Strong references to fire-and-forget tasks so they are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


def _notification_to_dict(notification: Notification) -> Dict:
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "type": notification.type,
        "title": notification.title,
        "body": notification.body,
        "data": json.loads(notification.data) if notification.data else None,
        "is_read": notification.is_read,
        "read_at": isoformat_or_none(notification.read_at),
        "created_at": isoformat_or_none(notification.created_at),
    }


async def create_notification(
    session: AsyncSession,
    user_id: str,
    type: str,
    title: str,
    body: str,
    data: Optional[Dict] = None,
) -> Dict:
    """
    Persist a single notification for a user and commit it.

    Args:
        session: Database session
        user_id: ID of the user to notify
        type: Notification type (NotificationType enum value)
        title: Notification title
        body: Notification body text
        data: Optional JSON metadata (dict will be serialized to JSON string)

    Returns:
        Dict containing the created notification data

    Raises:
        ValidationError: If required fields are missing or invalid
    """
    if not user_id:
        raise ValidationError("user_id is required")
    if type not in VALID_NOTIFICATION_TYPES:
        raise ValidationError(f"Unknown notification type: {type}")
    if not title:
        raise ValidationError("title is required")
    if not body:
        raise ValidationError("body is required")

    # Serialize data dict to JSON string if provided
    data_json = None
    if data is not None:
        data_json = json.dumps(data, default=str)

    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        body=body,
        data=data_json,
        is_read=False,
    )

    session.add(notification)
    try:
        await session.flush()
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(notification)

    return _notification_to_dict(notification)


async def _publish(user_id: str, message: Dict) -> None:
    """Relay to the user's live connections; never raises."""
    try:
        await get_websocket_manager().publish(user_id, message)
    except Exception as e:
        logger.warning(f"Failed to broadcast realtime event to user {user_id}: {e}")


async def notify(
    session: AsyncSession,
    user_id: str,
    type: str,
    title: str,
    body: str,
    data: Optional[Dict] = None,
) -> Dict:
    """
    Record a notification and fan it out to the user's channels.

    Persistence errors propagate. Realtime and push failures are logged and
    reflected in the counts only.

    Returns:
        Dict with "notification", "delivered" and "failed"
    """
    notification = await create_notification(session, user_id, type, title, body, data)

    await _publish(user_id, {"type": "notification", "notification": notification})

    delivery = await deliver_push(session, user_id, title, body, data)
    return {"notification": notification, **delivery}


async def deliver_push(
    session: AsyncSession,
    user_id: str,
    title: str,
    body: str,
    data: Optional[Dict] = None,
) -> Dict[str, int]:
    """
    Send a push message to every active device of a user.

    Sends run concurrently and are bounded by PUSH_DELIVERY_TIMEOUT_SECONDS.
    Registrations whose token is permanently invalid are scheduled for removal.

    Returns:
        Dict with "delivered" and "failed" counts
    """
    transport = push_service.get_push_transport()
    if transport is None:
        return {"delivered": 0, "failed": 0}

    devices = await device_service.list_active_devices(session, user_id)
    if not devices:
        return {"delivered": 0, "failed": 0}

    payload = push_service.stringify_data(data)
    sends = {
        asyncio.create_task(transport.send(device["push_token"], title, body, payload)): device
        for device in devices
    }

    done, pending = await asyncio.wait(sends.keys(), timeout=PUSH_DELIVERY_TIMEOUT_SECONDS)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    delivered = 0
    failed = 0
    invalid_device_ids: List[int] = []

    for task, device in sends.items():
        if task in pending:
            failed += 1
            logger.warning(f"Push to device {device['id']} of user {user_id} timed out")
            continue
        error = task.exception()
        if error is None:
            delivered += 1
        elif isinstance(error, push_service.InvalidPushTokenError):
            failed += 1
            invalid_device_ids.append(device["id"])
            logger.info(f"Push token for device {device['id']} is no longer valid: {error}")
        else:
            failed += 1
            logger.warning(f"Push to device {device['id']} of user {user_id} failed: {error}")

    if invalid_device_ids:
        _spawn_background(_remove_invalid_devices(invalid_device_ids))

    logger.debug(f"Push fan-out for user {user_id}: {delivered} delivered, {failed} failed")
    return {"delivered": delivered, "failed": failed}


async def _remove_invalid_devices(device_ids: List[int]) -> None:
    """Delete dead registrations on a dedicated session. Errors are logged only."""
    try:
        async with db.AsyncSessionLocal() as session:
            removed = await device_service.remove_devices(session, device_ids)
            logger.info(f"Removed {removed} invalid device registration(s)")
    except Exception as e:
        logger.warning(f"Failed to remove invalid device registrations {device_ids}: {e}")


def _spawn_background(coro: Awaitable) -> asyncio.Task:
    task = asyncio.ensure_future(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def _notify_in_new_session(
    user_id: str, type: str, title: str, body: str, data: Optional[Dict]
) -> None:
    try:
        async with db.AsyncSessionLocal() as session:
            await notify(session, user_id, type, title, body, data)
    except Exception as e:
        logger.error(f"Failed to dispatch {type} notification to user {user_id}: {e}", exc_info=True)


def dispatch_notification(
    user_id: str,
    type: str,
    title: str,
    body: str,
    data: Optional[Dict] = None,
) -> Optional[asyncio.Task]:
    """
    Fire-and-forget notify() on its own session.

    Returns the background task, or None when no event loop is running.
    Never raises.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        logger.warning(f"No running event loop, dropping {type} notification for user {user_id}")
        return None
    return _spawn_background(_notify_in_new_session(user_id, type, title, body, data))


async def drain_background_tasks() -> None:
    """Wait for every in-flight background notification task."""
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


async def get_user_notifications(
    session: AsyncSession,
    user_id: str,
    limit: int = 50,
    offset: int = 0,
    unread_only: bool = False,
) -> Dict:
    """
    Fetch user notifications with pagination.

    Args:
        session: Database session
        user_id: ID of the user
        limit: Maximum number of notifications to return (default: 50)
        offset: Number of notifications to skip (default: 0)
        unread_only: If True, only return unread notifications (default: False)

    Returns:
        Dict containing:
            - notifications: List of notification dicts (newest first)
            - total_count: Total number of notifications matching the criteria
            - unread_count: Unread notifications for the user
            - has_more: Boolean indicating if there are more notifications
    """
    query = select(Notification).where(Notification.user_id == user_id)

    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712

    count_query = select(func.count()).select_from(query.subquery())
    total_result = await session.execute(count_query)
    total_count = total_result.scalar_one() or 0

    query = (
        query.order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(query)
    notification_dicts = [_notification_to_dict(n) for n in result.scalars().all()]

    return {
        "notifications": notification_dicts,
        "total_count": total_count,
        "unread_count": await get_unread_count(session, user_id),
        "has_more": (offset + len(notification_dicts)) < total_count,
    }


async def get_notification(session: AsyncSession, notification_id: int, user_id: str) -> Dict:
    """Single notification owned by the user, else NotFoundError."""
    result = await session.execute(
        select(Notification).where(
            and_(Notification.id == notification_id, Notification.user_id == user_id)
        )
    )
    notification = result.scalar_one_or_none()
    if not notification:
        raise NotFoundError("Notification not found")
    return _notification_to_dict(notification)


async def get_unread_count(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(Notification)
        .where(and_(Notification.user_id == user_id, Notification.is_read == False))  # noqa: E712
    )
    return result.scalar_one() or 0


async def _publish_unread_count(session: AsyncSession, user_id: str) -> None:
    count = await get_unread_count(session, user_id)
    await _publish(user_id, {"type": "unread_count_changed", "unread_count": count})


async def mark_as_read(session: AsyncSession, notification_id: int, user_id: str) -> Dict:
    """
    Mark a single notification as read.

    Args:
        session: Database session
        notification_id: ID of the notification
        user_id: ID of the user (ensures user owns the notification)

    Returns:
        Updated notification dict

    Raises:
        NotFoundError: If notification not found or doesn't belong to user
    """
    result = await session.execute(
        select(Notification).where(
            and_(Notification.id == notification_id, Notification.user_id == user_id)
        )
    )
    notification = result.scalar_one_or_none()

    if not notification:
        raise NotFoundError("Notification not found")

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        await session.flush()
        await session.commit()
        await session.refresh(notification)
        await _publish_unread_count(session, user_id)

    return _notification_to_dict(notification)


async def mark_all_as_read(session: AsyncSession, user_id: str) -> int:
    """Mark every unread notification of the user as read. Returns the count."""
    result = await session.execute(
        update(Notification)
        .where(and_(Notification.user_id == user_id, Notification.is_read == False))  # noqa: E712
        .values(is_read=True, read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    count = result.rowcount or 0
    await session.commit()

    if count:
        await _publish_unread_count(session, user_id)
    return count


#
# Business event helpers. All of them are fire-and-forget.
#

def _game_type_text(game_type: Any) -> str:
    return f"{int(game_type)}-a-side" if game_type is not None else "football"


def _format_start(start_time: Optional[datetime]) -> str:
    if start_time is None:
        return "soon"
    return ensure_utc(start_time).strftime("%A %H:%M UTC")


def _game_data(game_details: Dict, **extra) -> Dict:
    data = {"game_id": game_details.get("game_id"), "game_type": game_details.get("game_type")}
    data.update(extra)
    return data


def notify_game_join(organizer_id: str, player_name: str, game_details: Dict) -> Optional[asyncio.Task]:
    """
    Tell the organizer that a player joined.

    game_details needs game_id, game_type and start_time (datetime).
    """
    return dispatch_notification(
        organizer_id,
        NotificationType.GAME_JOIN.value,
        "New player joined your game",
        f"{player_name} joined your {_game_type_text(game_details.get('game_type'))} game on "
        f"{_format_start(game_details.get('start_time'))}",
        _game_data(game_details, player_name=player_name),
    )


def notify_game_leave(organizer_id: str, player_name: str, game_details: Dict) -> Optional[asyncio.Task]:
    return dispatch_notification(
        organizer_id,
        NotificationType.GAME_LEAVE.value,
        "A player left your game",
        f"{player_name} left your {_game_type_text(game_details.get('game_type'))} game on "
        f"{_format_start(game_details.get('start_time'))}",
        _game_data(game_details, player_name=player_name),
    )


def notify_game_kick(player_id: str, game_details: Dict) -> Optional[asyncio.Task]:
    return dispatch_notification(
        player_id,
        NotificationType.GAME_KICK.value,
        "You were removed from a game",
        f"The organizer removed you from the {_game_type_text(game_details.get('game_type'))} game on "
        f"{_format_start(game_details.get('start_time'))}",
        _game_data(game_details),
    )


def notify_game_cancel(player_ids: Iterable[str], game_details: Dict) -> List[asyncio.Task]:
    """Tell every joined player that the game was cancelled."""
    tasks = []
    for player_id in player_ids:
        task = dispatch_notification(
            player_id,
            NotificationType.GAME_CANCEL.value,
            "Game cancelled",
            f"The {_game_type_text(game_details.get('game_type'))} game on "
            f"{_format_start(game_details.get('start_time'))} was cancelled",
            _game_data(game_details),
        )
        if task is not None:
            tasks.append(task)
    return tasks


def notify_game_update(
    player_ids: Iterable[str], game_details: Dict, changed_fields: Iterable[str]
) -> List[asyncio.Task]:
    """Tell every joined player which game details changed."""
    changed = sorted(changed_fields)
    tasks = []
    for player_id in player_ids:
        task = dispatch_notification(
            player_id,
            NotificationType.GAME_UPDATE.value,
            "Game updated",
            f"The {_game_type_text(game_details.get('game_type'))} game on "
            f"{_format_start(game_details.get('start_time'))} was updated: {', '.join(changed)}",
            _game_data(game_details, changed_fields=changed),
        )
        if task is not None:
            tasks.append(task)
    return tasks


def notify_friend_request(receiver_id: str, sender_name: str, sender_id: str) -> Optional[asyncio.Task]:
    return dispatch_notification(
        receiver_id,
        NotificationType.FRIEND_REQUEST.value,
        "New friend request",
        f"{sender_name} sent you a friend request",
        {"sender_id": sender_id, "sender_name": sender_name},
    )


def notify_friend_accept(sender_id: str, accepter_name: str, accepter_id: str) -> Optional[asyncio.Task]:
    return dispatch_notification(
        sender_id,
        NotificationType.FRIEND_ACCEPT.value,
        "Friend request accepted",
        f"{accepter_name} accepted your friend request",
        {"accepter_id": accepter_id, "accepter_name": accepter_name},
    )
