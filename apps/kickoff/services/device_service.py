"""
Device registration service: push endpoints per user.
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select, delete, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database.models import DeviceRegistration
from kickoff.services.errors import ValidationError
from kickoff.utils.datetime_utils import utcnow, isoformat_or_none

logger = logging.getLogger(__name__)

# Tokens not refreshed within this window are treated as expired (FCM guidance: ~270 days)
DEVICE_TOKEN_TTL_DAYS = int(os.getenv("DEVICE_TOKEN_TTL_DAYS", "270"))


def _device_to_dict(device: DeviceRegistration) -> Dict:
    return {
        "id": device.id,
        "user_id": device.user_id,
        "push_token": device.push_token,
        "platform": device.platform,
        "created_at": isoformat_or_none(device.created_at),
        "last_used_at": isoformat_or_none(device.last_used_at),
    }


async def register_device(
    session: AsyncSession, user_id: str, push_token: str, platform: Optional[str] = None
) -> Dict:
    """
    Register a push token for a user, or refresh it if already known.

    Upserts by (user_id, push_token): an existing row only gets its
    last_used_at (and platform, if given) refreshed.

    Args:
        session: Database session
        user_id: Owner of the device
        push_token: Provider token for the device
        platform: Optional platform label ("ios", "android", "web")

    Returns:
        Dict with the device data and a "created" flag
    """
    if not push_token or not push_token.strip():
        raise ValidationError("push_token is required")
    push_token = push_token.strip()
    now = utcnow()

    result = await session.execute(
        select(DeviceRegistration).where(
            and_(
                DeviceRegistration.user_id == user_id,
                DeviceRegistration.push_token == push_token,
            )
        )
    )
    device = result.scalar_one_or_none()
    created = device is None

    if created:
        device = DeviceRegistration(
            user_id=user_id, push_token=push_token, platform=platform, last_used_at=now
        )
        session.add(device)
        try:
            await session.flush()
        except IntegrityError:
            # Registered concurrently by another request; refresh that row instead
            await session.rollback()
            return await register_device(session, user_id, push_token, platform)
    else:
        device.last_used_at = now
        if platform:
            device.platform = platform
        await session.flush()

    await session.commit()
    await session.refresh(device)

    if created:
        logger.info(f"New device registered for user {user_id}")
    else:
        logger.info(f"Device token updated for user {user_id}")

    return {**_device_to_dict(device), "created": created}


async def unregister_device(session: AsyncSession, user_id: str, push_token: str) -> bool:
    """Remove a user's device registration. Returns True if a row was deleted."""
    result = await session.execute(
        delete(DeviceRegistration).where(
            and_(
                DeviceRegistration.user_id == user_id,
                DeviceRegistration.push_token == push_token,
            )
        )
    )
    await session.commit()
    return result.rowcount > 0


async def list_devices(session: AsyncSession, user_id: str) -> List[Dict]:
    result = await session.execute(
        select(DeviceRegistration)
        .where(DeviceRegistration.user_id == user_id)
        .order_by(DeviceRegistration.id)
    )
    return [_device_to_dict(d) for d in result.scalars().all()]


async def list_active_devices(
    session: AsyncSession, user_id: str, now: Optional[datetime] = None
) -> List[Dict]:
    """Devices whose token was refreshed within DEVICE_TOKEN_TTL_DAYS."""
    cutoff = (now or utcnow()) - timedelta(days=DEVICE_TOKEN_TTL_DAYS)
    result = await session.execute(
        select(DeviceRegistration)
        .where(
            and_(
                DeviceRegistration.user_id == user_id,
                DeviceRegistration.last_used_at >= cutoff,
            )
        )
        .order_by(DeviceRegistration.id)
    )
    return [_device_to_dict(d) for d in result.scalars().all()]


async def remove_devices(session: AsyncSession, device_ids: List[int]) -> int:
    """Delete registrations by id (used when the provider reports dead tokens)."""
    if not device_ids:
        return 0
    result = await session.execute(
        delete(DeviceRegistration).where(DeviceRegistration.id.in_(device_ids))
    )
    await session.commit()
    return result.rowcount
