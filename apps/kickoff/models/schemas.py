"""
Pydantic models for API request/response validation.
"""

from datetime import datetime
from typing import Optional, List, Literal, Dict, Any
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator


# ============================================================================
# Fields
# ============================================================================


class FieldCreate(BaseModel):
    """Request to create a field (admin)."""

    name: str = Field(..., min_length=1, max_length=255)
    address: str = Field(..., min_length=1, max_length=500)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    phone: Optional[str] = Field(None, max_length=30)
    opening_time: str = Field(..., description="HH:MM or HH:MM:SS")
    closing_time: str = Field(..., description="HH:MM or HH:MM:SS")
    base_price_per_hour: Optional[float] = Field(None, ge=0)
    amenities: Optional[Dict[str, Any]] = None


class FieldUpdate(BaseModel):
    """Partial field update (admin)."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    address: Optional[str] = Field(None, min_length=1, max_length=500)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    phone: Optional[str] = Field(None, max_length=30)
    opening_time: Optional[str] = None
    closing_time: Optional[str] = None
    base_price_per_hour: Optional[float] = Field(None, ge=0)
    amenities: Optional[Dict[str, Any]] = None


class FieldResponse(BaseModel):
    """Field response."""

    id: int
    name: str
    address: str
    latitude: float
    longitude: float
    phone: Optional[str] = None
    opening_time: Optional[str] = None
    closing_time: Optional[str] = None
    base_price_per_hour: Optional[float] = None
    amenities: Dict[str, Any] = {}
    distance_meters: Optional[float] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class PaginatedFieldsResponse(BaseModel):
    """Paginated field listing."""

    data: List[FieldResponse]
    total: int
    page: int
    limit: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


# ============================================================================
# Games
# ============================================================================


class GameCreate(BaseModel):
    """Request to organize a game."""

    field_id: int
    game_type: Literal[5, 7]
    game_level: int = Field(..., ge=1, le=5)
    start_time: datetime
    end_time: datetime
    total_spots: int = Field(..., gt=0)
    available_spots: Optional[int] = Field(None, ge=0)
    price_per_player: float = Field(0, ge=0)

    @model_validator(mode="after")
    def check_spots(self):
        if self.available_spots is not None and self.available_spots > self.total_spots:
            raise ValueError("available_spots cannot exceed total_spots")
        return self


class GameUpdate(BaseModel):
    """Partial game update (organizer)."""

    game_level: Optional[int] = Field(None, ge=1, le=5)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    total_spots: Optional[int] = Field(None, gt=0)
    price_per_player: Optional[float] = Field(None, ge=0)


class GameResponse(BaseModel):
    """Game response."""

    id: int
    field_id: int
    organizer_id: str
    game_type: int
    game_level: int
    start_time: str
    end_time: str
    total_spots: int
    available_spots: int
    price_per_player: float
    status: str
    field_name: Optional[str] = None
    organizer_name: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class GameListResponse(BaseModel):
    """Paginated game list."""

    games: List[GameResponse]
    total_count: int
    has_more: bool


class MembershipResponse(BaseModel):
    """Membership state after join/leave/kick."""

    id: int
    game_id: int
    player_id: str
    joined_at: Optional[str] = None
    status: str
    game: GameResponse


class GamePlayerSummary(BaseModel):
    id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


class GamePlayerResponse(BaseModel):
    id: int
    game_id: int
    player_id: str
    joined_at: Optional[str] = None
    status: str
    player: GamePlayerSummary


class GamePlayersResponse(BaseModel):
    """Joined players of a game with the spot snapshot."""

    players: List[GamePlayerResponse]
    total_players: int
    total_spots: int
    available_spots: int


class NearbyGame(BaseModel):
    game_id: int
    start_time: str
    end_time: str
    available_spots: int
    total_spots: int
    price_per_player: float
    organizer_name: str
    game_level: int
    game_type: int


class NearbyFieldGroup(BaseModel):
    """Open upcoming games on one field."""

    field_id: int
    field_name: str
    distance_meters: float
    games: List[NearbyGame]


# ============================================================================
# Friends
# ============================================================================


class FriendRequestCreate(BaseModel):
    """Request to send a friend request."""

    friend_id: str = Field(..., min_length=1)


class FriendRequestRespond(BaseModel):
    """Accept or reject a pending friend request."""

    status: Literal["accepted", "rejected"]


# ============================================================================
# Notifications
# ============================================================================


class NotificationResponse(BaseModel):
    """Notification response."""

    model_config = ConfigDict(from_attributes=True)
    id: int
    user_id: str
    type: str
    title: str
    body: str
    data: Optional[dict] = None
    is_read: bool
    read_at: Optional[str] = None
    created_at: Optional[str] = None


class NotificationListResponse(BaseModel):
    """Paginated notification list response."""

    notifications: List[NotificationResponse]
    total_count: int
    unread_count: int
    has_more: bool


class UnreadCountResponse(BaseModel):
    """Unread notification count response."""

    count: int


# ============================================================================
# Devices
# ============================================================================


class DeviceRegisterRequest(BaseModel):
    """Register (or refresh) a push token for the current user."""

    push_token: str = Field(..., min_length=1, max_length=512)
    platform: Optional[Literal["ios", "android", "web"]] = None

    @field_validator("push_token")
    @classmethod
    def strip_token(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("push_token cannot be blank")
        return v


class DeviceResponse(BaseModel):
    id: int
    user_id: str
    push_token: str
    platform: Optional[str] = None
    created_at: Optional[str] = None
    last_used_at: Optional[str] = None
