"""
Field service: playable fields, admin-managed.
"""

import logging
import math
from datetime import time
from typing import Dict, List, Optional

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database.models import Field
from kickoff.services.discovery_service import validate_search_origin
from kickoff.services.errors import ValidationError, NotFoundError
from kickoff.utils.datetime_utils import isoformat_or_none
from kickoff.utils.geo_utils import (
    haversine_meters,
    bounding_box,
    radius_km_to_meters,
    validate_coordinates,
)

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_KM = 5.0
MAX_PAGE_SIZE = 100
SORT_FIELDS = ("name", "price", "distance")
SORT_ORDERS = ("asc", "desc")
UPDATABLE_FIELD_ATTRS = {
    "name",
    "address",
    "latitude",
    "longitude",
    "phone",
    "opening_time",
    "closing_time",
    "base_price_per_hour",
    "amenities",
}


def _parse_time(value, name: str) -> time:
    """Accept a time or an 'HH:MM[:SS]' string."""
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        try:
            return time.fromisoformat(value)
        except ValueError:
            pass
    raise ValidationError(f"{name} must be a time in HH:MM or HH:MM:SS format")


def _field_to_dict(field: Field, distance_meters: Optional[float] = None) -> Dict:
    data = {
        "id": field.id,
        "name": field.name,
        "address": field.address,
        "latitude": field.latitude,
        "longitude": field.longitude,
        "phone": field.phone,
        "opening_time": field.opening_time.strftime("%H:%M:%S") if field.opening_time else None,
        "closing_time": field.closing_time.strftime("%H:%M:%S") if field.closing_time else None,
        "base_price_per_hour": float(field.base_price_per_hour) if field.base_price_per_hour is not None else None,
        "amenities": field.amenities or {},
        "created_at": isoformat_or_none(field.created_at),
        "updated_at": isoformat_or_none(field.updated_at),
    }
    if distance_meters is not None:
        data["distance_meters"] = round(distance_meters, 1)
    return data


def _validate_field_values(values: Dict) -> Dict:
    """Normalize and validate field attributes in place; returns the dict."""
    if "name" in values and not (values["name"] or "").strip():
        raise ValidationError("name is required")
    if "address" in values and not (values["address"] or "").strip():
        raise ValidationError("address is required")
    if "latitude" in values or "longitude" in values:
        try:
            values["latitude"], values["longitude"] = validate_coordinates(
                values.get("latitude"), values.get("longitude")
            )
        except ValueError as e:
            raise ValidationError(str(e))
    for key in ("opening_time", "closing_time"):
        if key in values:
            values[key] = _parse_time(values[key], key)
    price = values.get("base_price_per_hour")
    if price is not None and price < 0:
        raise ValidationError("base_price_per_hour must be zero or positive")
    amenities = values.get("amenities")
    if amenities is not None and not isinstance(amenities, dict):
        raise ValidationError("amenities must be an object")
    return values


async def create_field(
    session: AsyncSession,
    name: str,
    address: str,
    latitude: float,
    longitude: float,
    opening_time,
    closing_time,
    phone: Optional[str] = None,
    base_price_per_hour: Optional[float] = None,
    amenities: Optional[Dict] = None,
) -> Dict:
    """
    Create a field.

    Args:
        session: Database session
        name: Display name
        address: Street address
        latitude: -90..90
        longitude: -180..180
        opening_time: time or 'HH:MM[:SS]'
        closing_time: time or 'HH:MM[:SS]'
        phone: Optional contact phone
        base_price_per_hour: Optional hourly price (>= 0)
        amenities: Optional free-form key/value map

    Returns:
        Field dict
    """
    values = _validate_field_values(
        {
            "name": name,
            "address": address,
            "latitude": latitude,
            "longitude": longitude,
            "opening_time": opening_time,
            "closing_time": closing_time,
            "phone": phone,
            "base_price_per_hour": base_price_per_hour,
            "amenities": amenities,
        }
    )
    values["name"] = values["name"].strip()
    values["address"] = values["address"].strip()

    field = Field(**values)
    session.add(field)
    try:
        await session.flush()
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(field)

    logger.info(f"Field {field.id} created: {field.name}")
    return _field_to_dict(field)


async def get_field(session: AsyncSession, field_id: int) -> Dict:
    field = await session.get(Field, field_id)
    if field is None:
        raise NotFoundError("Field not found")
    return _field_to_dict(field)


async def update_field(session: AsyncSession, field_id: int, **changes) -> Dict:
    """Partial update; only keys in UPDATABLE_FIELD_ATTRS are accepted."""
    unknown = set(changes) - UPDATABLE_FIELD_ATTRS
    if unknown:
        raise ValidationError(f"Cannot update: {', '.join(sorted(unknown))}")

    field = await session.get(Field, field_id)
    if field is None:
        raise NotFoundError("Field not found")

    changes = {k: v for k, v in changes.items() if v is not None}
    if ("latitude" in changes) != ("longitude" in changes):
        # Validate the pair together using the stored value for the missing half
        changes.setdefault("latitude", field.latitude)
        changes.setdefault("longitude", field.longitude)
    _validate_field_values(changes)

    for key, value in changes.items():
        setattr(field, key, value.strip() if key in ("name", "address") else value)

    try:
        await session.flush()
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(field)

    logger.info(f"Field {field_id} updated: {', '.join(sorted(changes))}")
    return _field_to_dict(field)


def _paginate(items: List[Dict], total: int, page: int, limit: int) -> Dict:
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "data": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": total_pages,
        "has_next_page": page < total_pages,
        "has_previous_page": page > 1,
    }


async def list_fields(
    session: AsyncSession,
    search: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius_km: Optional[float] = None,
    sort_by: Optional[str] = None,
    sort_order: str = "asc",
    page: int = 1,
    limit: int = 10,
) -> Dict:
    """
    Paginated field listing with optional text, price and radius filters.

    With both coordinates, only fields within radius_km (default 5) are
    returned, each with a distance_meters, and the default sort is by
    distance. Without coordinates, sorting by distance is rejected.

    Raises:
        ValidationError: Bad paging/sort values, partial coordinates, or bad radius
    """
    if page < 1:
        raise ValidationError("page must be at least 1")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if sort_order not in SORT_ORDERS:
        raise ValidationError("sort_order must be 'asc' or 'desc'")
    if sort_by is not None and sort_by not in SORT_FIELDS:
        raise ValidationError(f"sort_by must be one of {', '.join(SORT_FIELDS)}")
    for label, price in (("min_price", min_price), ("max_price", max_price)):
        if price is not None and price < 0:
            raise ValidationError(f"{label} must be zero or positive")
    if (latitude is None) != (longitude is None):
        raise ValidationError("latitude and longitude must be provided together")

    conditions = []
    if search:
        pattern = f"%{search.strip()}%"
        conditions.append(or_(Field.name.ilike(pattern), Field.address.ilike(pattern)))
    if min_price is not None:
        conditions.append(Field.base_price_per_hour >= min_price)
    if max_price is not None:
        conditions.append(Field.base_price_per_hour <= max_price)

    offset = (page - 1) * limit
    descending = sort_order == "desc"

    if latitude is None:
        if sort_by == "distance":
            raise ValidationError("sort_by=distance requires latitude and longitude")
        query = select(Field).where(and_(*conditions)) if conditions else select(Field)
        total_result = await session.execute(select(func.count()).select_from(query.subquery()))
        total = total_result.scalar_one() or 0

        sort_column = Field.base_price_per_hour if sort_by == "price" else Field.name
        order = sort_column.desc() if descending else sort_column.asc()
        result = await session.execute(
            query.order_by(order, Field.id.asc()).limit(limit).offset(offset)
        )
        return _paginate([_field_to_dict(f) for f in result.scalars().all()], total, page, limit)

    lat, lng, radius = validate_search_origin(
        latitude, longitude, DEFAULT_RADIUS_KM if radius_km is None else radius_km
    )
    radius_meters = radius_km_to_meters(radius)
    min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_meters)
    conditions.append(Field.latitude.between(min_lat, max_lat))
    conditions.append(Field.longitude.between(min_lng, max_lng))

    result = await session.execute(select(Field).where(and_(*conditions)))
    nearby = []
    for field in result.scalars().all():
        distance = haversine_meters(lat, lng, field.latitude, field.longitude)
        if distance <= radius_meters:
            nearby.append((field, distance))

    sort_by = sort_by or "distance"
    if sort_by == "name":
        nearby.sort(key=lambda fd: (fd[0].name, fd[0].id), reverse=descending)
    elif sort_by == "price":
        # Unpriced fields sort last in either direction
        priced = [fd for fd in nearby if fd[0].base_price_per_hour is not None]
        unpriced = [fd for fd in nearby if fd[0].base_price_per_hour is None]
        priced.sort(key=lambda fd: (fd[0].base_price_per_hour, fd[0].id), reverse=descending)
        nearby = priced + unpriced
    else:
        nearby.sort(key=lambda fd: (fd[1], fd[0].id), reverse=descending)

    page_items = nearby[offset:offset + limit]
    return _paginate(
        [_field_to_dict(field, distance) for field, distance in page_items], len(nearby), page, limit
    )
