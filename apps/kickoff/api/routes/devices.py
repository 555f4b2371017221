"""Push device registration route handlers."""

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database.db import get_db_session
from kickoff.services import device_service
from kickoff.services.errors import NotFoundError
from kickoff.api.auth_dependencies import require_user
from kickoff.api.routes import handle_service_error
from kickoff.models.schemas import DeviceRegisterRequest, DeviceResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/devices/register")
async def register_device(
    payload: DeviceRegisterRequest,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Register or refresh a push token for the current user."""
    try:
        return await device_service.register_device(
            session, user["id"], payload.push_token, payload.platform
        )
    except Exception as e:
        raise handle_service_error(e, "registering device")


@router.get("/api/devices", response_model=List[DeviceResponse])
async def list_devices(
    user: dict = Depends(require_user), session: AsyncSession = Depends(get_db_session)
):
    try:
        return await device_service.list_devices(session, user["id"])
    except Exception as e:
        raise handle_service_error(e, "listing devices")


@router.delete("/api/devices/{push_token}", status_code=204)
async def unregister_device(
    push_token: str,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        if not await device_service.unregister_device(session, user["id"], push_token):
            raise NotFoundError("Device not found")
    except Exception as e:
        raise handle_service_error(e, "unregistering device")
