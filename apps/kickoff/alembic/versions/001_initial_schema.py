"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

Identity mirror (users), matchmaking (fields, games, game_players),
social graph (friendships) and delivery (notifications, device_registrations).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Dependency order; downgrade walks it backwards
TABLES = (
    "users",
    "fields",
    "games",
    "game_players",
    "friendships",
    "notifications",
    "device_registrations",
)


def _timestamps(updated: bool = True):
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())
        )
    return columns


def _user_fk(column: str = "user_id"):
    return sa.Column(column, sa.String(length=128), sa.ForeignKey("users.id"), nullable=False)


def upgrade() -> None:
    existing = set(sa.inspect(op.get_bind()).get_table_names())

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=128), primary_key=True),
            sa.Column("display_name", sa.String(length=255), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("avatar_url", sa.String(length=500), nullable=True),
            sa.Column("roles", sa.String(length=255), nullable=True),
            *_timestamps(),
        )
        op.create_index("idx_users_display_name", "users", ["display_name"])

    if "fields" not in existing:
        op.create_table(
            "fields",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("address", sa.String(length=500), nullable=False),
            sa.Column("latitude", sa.Float(), nullable=False),
            sa.Column("longitude", sa.Float(), nullable=False),
            sa.Column("phone", sa.String(length=30), nullable=True),
            sa.Column("opening_time", sa.Time(), nullable=False),
            sa.Column("closing_time", sa.Time(), nullable=False),
            sa.Column("base_price_per_hour", sa.Numeric(10, 2), nullable=True),
            sa.Column(
                "amenities", sa.JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=True
            ),
            *_timestamps(),
            sa.CheckConstraint("latitude >= -90 AND latitude <= 90", name="ck_fields_latitude"),
            sa.CheckConstraint("longitude >= -180 AND longitude <= 180", name="ck_fields_longitude"),
        )
        op.create_index("idx_fields_name", "fields", ["name"])
        op.create_index("idx_fields_lat_lng", "fields", ["latitude", "longitude"])

    if "games" not in existing:
        op.create_table(
            "games",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("field_id", sa.Integer(), sa.ForeignKey("fields.id"), nullable=False),
            _user_fk("organizer_id"),
            sa.Column("game_type", sa.Integer(), nullable=False),
            sa.Column("game_level", sa.Integer(), nullable=False),
            sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
            sa.Column("total_spots", sa.Integer(), nullable=False),
            sa.Column("available_spots", sa.Integer(), nullable=False),
            sa.Column("price_per_player", sa.Numeric(10, 2), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
            *_timestamps(),
            sa.CheckConstraint("total_spots > 0", name="ck_games_total_spots_positive"),
            sa.CheckConstraint(
                "available_spots >= 0 AND available_spots <= total_spots",
                name="ck_games_available_spots_range",
            ),
            sa.CheckConstraint("game_type IN (5, 7)", name="ck_games_game_type"),
            sa.CheckConstraint("game_level >= 1 AND game_level <= 5", name="ck_games_game_level"),
            sa.CheckConstraint("start_time < end_time", name="ck_games_time_order"),
            sa.CheckConstraint(
                "status IN ('open', 'full', 'cancelled', 'completed')", name="ck_games_status"
            ),
        )
        op.create_index("idx_games_field", "games", ["field_id"])
        op.create_index("idx_games_organizer", "games", ["organizer_id"])
        op.create_index("idx_games_status_start", "games", ["status", "start_time"])

    if "game_players" not in existing:
        op.create_table(
            "game_players",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("game_id", sa.Integer(), sa.ForeignKey("games.id"), nullable=False),
            _user_fk("player_id"),
            sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="joined"),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.UniqueConstraint("game_id", "player_id", name="uq_game_players_game_player"),
            sa.CheckConstraint(
                "status IN ('joined', 'left', 'kicked')", name="ck_game_players_status"
            ),
        )
        op.create_index("idx_game_players_game_status", "game_players", ["game_id", "status"])
        op.create_index("idx_game_players_player", "game_players", ["player_id"])

    if "friendships" not in existing:
        op.create_table(
            "friendships",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            _user_fk("user_id"),
            _user_fk("friend_id"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            *_timestamps(),
            sa.UniqueConstraint("user_id", "friend_id", name="uq_friendships_user_friend"),
            sa.CheckConstraint("user_id != friend_id", name="ck_friendships_not_self"),
        )
        op.create_index("idx_friendships_friend_status", "friendships", ["friend_id", "status"])
        op.create_index("idx_friendships_user", "friendships", ["user_id"])
        op.create_index(
            "uq_friendships_pair",
            "friendships",
            [
                sa.text("(CASE WHEN user_id < friend_id THEN user_id ELSE friend_id END)"),
                sa.text("(CASE WHEN user_id < friend_id THEN friend_id ELSE user_id END)"),
            ],
            unique=True,
        )

    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            _user_fk(),
            sa.Column("type", sa.String(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("body", sa.Text(), nullable=False),
            sa.Column("data", sa.Text(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(updated=False),
        )
        op.create_index(
            "idx_notifications_user_unread", "notifications", ["user_id", "is_read", "created_at"]
        )
        op.create_index("idx_notifications_user_created", "notifications", ["user_id", "created_at"])

    if "device_registrations" not in existing:
        op.create_table(
            "device_registrations",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            _user_fk(),
            sa.Column("push_token", sa.String(length=512), nullable=False),
            sa.Column("platform", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint(
                "user_id", "push_token", name="uq_device_registrations_user_token"
            ),
        )
        op.create_index("idx_device_registrations_user", "device_registrations", ["user_id"])


def downgrade() -> None:
    existing = set(sa.inspect(op.get_bind()).get_table_names())
    for table in reversed(TABLES):
        if table in existing:
            op.drop_table(table)
