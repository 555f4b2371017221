"""Field route handlers."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database.db import get_db_session
from kickoff.services import field_service
from kickoff.api.auth_dependencies import require_user, require_admin
from kickoff.api.routes import handle_service_error
from kickoff.models.schemas import (
    FieldCreate,
    FieldUpdate,
    FieldResponse,
    PaginatedFieldsResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/fields", response_model=FieldResponse, status_code=201)
async def create_field(
    payload: FieldCreate,
    user: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """Create a field (admin only)."""
    try:
        return await field_service.create_field(session, **payload.model_dump())
    except Exception as e:
        raise handle_service_error(e, "creating field")


@router.get("/api/fields", response_model=PaginatedFieldsResponse)
async def list_fields(
    search: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius: Optional[float] = Query(None, gt=0, le=50, description="Kilometers"),
    sort_by: Optional[str] = Query(None, pattern="^(name|price|distance)$"),
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """List fields with optional text, price and radius filters."""
    try:
        return await field_service.list_fields(
            session,
            search=search,
            min_price=min_price,
            max_price=max_price,
            latitude=latitude,
            longitude=longitude,
            radius_km=radius,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
    except Exception as e:
        raise handle_service_error(e, "listing fields")


@router.get("/api/fields/{field_id}", response_model=FieldResponse)
async def get_field(
    field_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await field_service.get_field(session, field_id)
    except Exception as e:
        raise handle_service_error(e, "fetching field")


@router.patch("/api/fields/{field_id}", response_model=FieldResponse)
async def update_field(
    field_id: int,
    payload: FieldUpdate,
    user: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    """Partially update a field (admin only)."""
    try:
        return await field_service.update_field(
            session, field_id, **payload.model_dump(exclude_unset=True)
        )
    except Exception as e:
        raise handle_service_error(e, "updating field")
