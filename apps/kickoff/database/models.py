"""
SQLAlchemy ORM models for the Kickoff matchmaking backend.
"""

import enum
from sqlalchemy import (
    JSON,
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Float,
    Numeric,
    Time,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import case, func
from kickoff.database.db import Base


class GameStatus(str, enum.Enum):
    """Game status enum. FULL is derived from available_spots."""

    OPEN = "open"
    FULL = "full"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# Statuses that still accept membership changes
ACTIVE_GAME_STATUSES = (GameStatus.OPEN.value, GameStatus.FULL.value)
TERMINAL_GAME_STATUSES = (GameStatus.CANCELLED.value, GameStatus.COMPLETED.value)


class GameType(int, enum.Enum):
    """Squad size per team."""

    FIVE_A_SIDE = 5
    SEVEN_A_SIDE = 7


class GamePlayerStatus(str, enum.Enum):
    """Membership status enum."""

    JOINED = "joined"
    LEFT = "left"
    KICKED = "kicked"


class FriendshipStatus(str, enum.Enum):
    """Friendship status enum."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    BLOCKED = "blocked"


class NotificationType(str, enum.Enum):
    """Notification type enum."""

    GAME_JOIN = "game_join"
    GAME_LEAVE = "game_leave"
    GAME_KICK = "game_kick"
    GAME_CANCEL = "game_cancel"
    GAME_UPDATE = "game_update"
    FRIEND_REQUEST = "friend_request"
    FRIEND_ACCEPT = "friend_accept"
    GENERAL = "general"


# Amenities are opaque client metadata: JSONB on PostgreSQL, JSON elsewhere
AmenitiesType = JSON().with_variant(JSONB(), "postgresql")


class User(Base):
    """Local mirror of an identity resolved by the external token issuer."""

    __tablename__ = "users"

    id = Column(String(128), primary_key=True)  # Subject claim from the identity token
    display_name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    avatar_url = Column(String(500), nullable=True)
    roles = Column(String(255), nullable=True)  # Comma-separated role names
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (Index("idx_users_display_name", "display_name"),)


class Field(Base):
    """Playable field (pitch) with a geographic point."""

    __tablename__ = "fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    address = Column(String(500), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    phone = Column(String(30), nullable=True)
    opening_time = Column(Time, nullable=False)
    closing_time = Column(Time, nullable=False)
    base_price_per_hour = Column(Numeric(10, 2, asdecimal=False), nullable=True)
    amenities = Column(AmenitiesType, nullable=True)  # e.g. {"parking": true, "showers": false}
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    games = relationship("Game", back_populates="field")

    __table_args__ = (
        CheckConstraint("latitude >= -90 AND latitude <= 90", name="ck_fields_latitude"),
        CheckConstraint("longitude >= -180 AND longitude <= 180", name="ck_fields_longitude"),
        Index("idx_fields_name", "name"),
        Index("idx_fields_lat_lng", "latitude", "longitude"),
    )


class Game(Base):
    """A time-boxed game organized on a field."""

    __tablename__ = "games"

    id = Column(Integer, primary_key=True, autoincrement=True)
    field_id = Column(Integer, ForeignKey("fields.id"), nullable=False)
    organizer_id = Column(String(128), ForeignKey("users.id"), nullable=False)
    game_type = Column(Integer, nullable=False)  # GameType value (5 or 7)
    game_level = Column(Integer, nullable=False)  # 1-5
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    total_spots = Column(Integer, nullable=False)
    available_spots = Column(Integer, nullable=False)
    price_per_player = Column(Numeric(10, 2, asdecimal=False), nullable=False, default=0)
    status = Column(String(20), nullable=False, default=GameStatus.OPEN.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    field = relationship("Field", back_populates="games")
    organizer = relationship("User", backref="organized_games")
    players = relationship("GamePlayer", back_populates="game")

    __table_args__ = (
        CheckConstraint("total_spots > 0", name="ck_games_total_spots_positive"),
        CheckConstraint(
            "available_spots >= 0 AND available_spots <= total_spots",
            name="ck_games_available_spots_range",
        ),
        CheckConstraint("game_type IN (5, 7)", name="ck_games_game_type"),
        CheckConstraint("game_level >= 1 AND game_level <= 5", name="ck_games_game_level"),
        CheckConstraint("start_time < end_time", name="ck_games_time_order"),
        CheckConstraint(
            "status IN ('open', 'full', 'cancelled', 'completed')", name="ck_games_status"
        ),
        Index("idx_games_field", "field_id"),
        Index("idx_games_organizer", "organizer_id"),
        Index("idx_games_status_start", "status", "start_time"),
    )


class GamePlayer(Base):
    """Membership of a player in a game. Never hard-deleted (audit history)."""

    __tablename__ = "game_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(Integer, ForeignKey("games.id"), nullable=False)
    player_id = Column(String(128), ForeignKey("users.id"), nullable=False)
    joined_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default=GamePlayerStatus.JOINED.value)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    game = relationship("Game", back_populates="players")
    player = relationship("User", backref="game_memberships")

    __table_args__ = (
        UniqueConstraint("game_id", "player_id", name="uq_game_players_game_player"),
        CheckConstraint("status IN ('joined', 'left', 'kicked')", name="ck_game_players_status"),
        Index("idx_game_players_game_status", "game_id", "status"),
        Index("idx_game_players_player", "player_id"),
    )


class Friendship(Base):
    """Directional friend request that becomes symmetric once accepted."""

    __tablename__ = "friendships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), ForeignKey("users.id"), nullable=False)  # Requester
    friend_id = Column(String(128), ForeignKey("users.id"), nullable=False)  # Recipient
    status = Column(String(20), nullable=False, default=FriendshipStatus.PENDING.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    requester = relationship("User", foreign_keys=[user_id], backref="sent_friendships")
    recipient = relationship("User", foreign_keys=[friend_id], backref="received_friendships")

    __table_args__ = (
        UniqueConstraint("user_id", "friend_id", name="uq_friendships_user_friend"),
        # One row per unordered pair, whichever side sent the request
        Index(
            "uq_friendships_pair",
            case((user_id < friend_id, user_id), else_=friend_id),
            case((user_id < friend_id, friend_id), else_=user_id),
            unique=True,
        ),
        CheckConstraint("user_id != friend_id", name="ck_friendships_not_self"),
        Index("idx_friendships_friend_status", "friend_id", "status"),
        Index("idx_friendships_user", "user_id"),
    )


class Notification(Base):
    """User notification history. Append-only except for the read flag."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), ForeignKey("users.id"), nullable=False)
    type = Column(String, nullable=False)  # NotificationType enum value
    title = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)
    data = Column(Text, nullable=True)  # JSON string for flexible metadata (game_id, sender_id, etc.)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    user = relationship("User", backref="notifications")

    __table_args__ = (
        Index("idx_notifications_user_unread", "user_id", "is_read", "created_at"),
        Index("idx_notifications_user_created", "user_id", "created_at"),
    )


class DeviceRegistration(Base):
    """Push endpoint registered by a user's device."""

    __tablename__ = "device_registrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), ForeignKey("users.id"), nullable=False)
    push_token = Column(String(512), nullable=False)
    platform = Column(String(20), nullable=True)  # "ios", "android", "web"
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_used_at = Column(DateTime(timezone=True), nullable=False)

    # Relationships
    user = relationship("User", backref="devices")

    __table_args__ = (
        UniqueConstraint("user_id", "push_token", name="uq_device_registrations_user_token"),
        Index("idx_device_registrations_user", "user_id"),
    )
