"""
Discovery service: open upcoming games near a point, grouped by field.

Candidates come from a bounding-box pre-filter in SQL; the exact radius
check uses in-Python haversine distance (same approach as the field
listing).
"""

from datetime import datetime
from typing import Dict, List, Optional
import logging

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from kickoff.database.models import Game, Field, User, GameStatus
from kickoff.services.errors import ValidationError
from kickoff.services.user_service import DEFAULT_DISPLAY_NAME
from kickoff.utils.datetime_utils import utcnow, ensure_utc, isoformat_or_none
from kickoff.utils.geo_utils import (
    haversine_meters,
    bounding_box,
    radius_km_to_meters,
    validate_coordinates,
)

logger = logging.getLogger(__name__)


def validate_search_origin(latitude, longitude, radius_km) -> tuple:
    """
    Coerce and validate a (lat, lng, radius_km) search origin.

    Raises:
        ValidationError: Missing, non-numeric or out-of-range values
    """
    try:
        lat, lng = validate_coordinates(latitude, longitude)
    except ValueError as e:
        raise ValidationError(str(e))
    if radius_km is None:
        raise ValidationError("radius is required")
    try:
        radius = float(radius_km)
    except (TypeError, ValueError):
        raise ValidationError("radius must be a number")
    if not radius > 0:
        raise ValidationError("radius must be greater than 0")
    return lat, lng, radius


def group_games_by_field(rows: List[Dict]) -> List[Dict]:
    """
    Fold flat, already-sorted rows into one entry per field.

    Field order is the order in which each field is first seen; the
    field's distance is taken from its first row.
    """
    groups: List[Dict] = []
    by_field: Dict[int, Dict] = {}
    for row in rows:
        group = by_field.get(row["field_id"])
        if group is None:
            group = {
                "field_id": row["field_id"],
                "field_name": row["field_name"],
                "distance_meters": row["distance_meters"],
                "games": [],
            }
            by_field[row["field_id"]] = group
            groups.append(group)
        group["games"].append(
            {
                "game_id": row["game_id"],
                "start_time": row["start_time"],
                "end_time": row["end_time"],
                "available_spots": row["available_spots"],
                "total_spots": row["total_spots"],
                "price_per_player": row["price_per_player"],
                "organizer_name": row["organizer_name"],
                "game_level": row["game_level"],
                "game_type": row["game_type"],
            }
        )
    return groups


async def find_nearby_games(
    session: AsyncSession,
    latitude,
    longitude,
    radius_km,
    now: Optional[datetime] = None,
) -> List[Dict]:
    """
    Find open games starting in the future within radius_km of a point.

    Ordered by field name, then distance, then start time (game id breaks
    remaining ties), and grouped by field.

    Args:
        session: Database session
        latitude: Origin latitude (-90..90)
        longitude: Origin longitude (-180..180)
        radius_km: Search radius in kilometers (> 0)
        now: Reference time for "upcoming" (defaults to current UTC time)

    Returns:
        List of {field_id, field_name, distance_meters, games}; [] if none match

    Raises:
        ValidationError: If the origin or radius is invalid
    """
    lat, lng, radius_km = validate_search_origin(latitude, longitude, radius_km)
    radius_meters = radius_km_to_meters(radius_km)
    now = ensure_utc(now) if now is not None else utcnow()
    min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_meters)

    result = await session.execute(
        select(Game, Field, User.display_name)
        .join(Field, Game.field_id == Field.id)
        .outerjoin(User, Game.organizer_id == User.id)
        .where(
            and_(
                Game.status == GameStatus.OPEN.value,
                Game.start_time > now,
                Field.latitude.between(min_lat, max_lat),
                Field.longitude.between(min_lng, max_lng),
            )
        )
    )

    rows = []
    for game, field, organizer_name in result.all():
        distance = haversine_meters(lat, lng, field.latitude, field.longitude)
        if distance > radius_meters:
            continue
        rows.append(
            {
                "field_id": field.id,
                "field_name": field.name,
                "distance_meters": round(distance, 1),
                "game_id": game.id,
                "start_time": isoformat_or_none(game.start_time),
                "end_time": isoformat_or_none(game.end_time),
                "available_spots": game.available_spots,
                "total_spots": game.total_spots,
                "price_per_player": float(game.price_per_player or 0),
                "organizer_name": organizer_name or DEFAULT_DISPLAY_NAME,
                "game_level": game.game_level,
                "game_type": game.game_type,
                "_start": ensure_utc(game.start_time),
            }
        )

    rows.sort(key=lambda r: (r["field_name"], r["distance_meters"], r["_start"], r["game_id"]))
    logger.debug(f"Nearby search at ({lat}, {lng}) r={radius_km}km matched {len(rows)} game(s)")
    return group_games_by_field(rows)
