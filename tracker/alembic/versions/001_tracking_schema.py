"""Tracking schema (families, members, devices, locations, geofences, events, rules).

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from typing import Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, None] = None
depends_on: Union[str, None] = None


def upgrade() -> None:
    op.create_table(
        "families",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("subscription_locked", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "family_members",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("family_id", sa.Uuid(), sa.ForeignKey("families.id"), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False, server_default="member"),
        sa.Column("location_sharing", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_family_members_family_id", "family_members", ["family_id"])

    # member_tokens: sha256 of the bearer tokens issued at login
    op.create_table(
        "member_tokens",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("family_members.id"), nullable=False),
        sa.Column("token_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_member_tokens_user_id", "member_tokens", ["user_id"])

    op.create_table(
        "devices",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("family_members.id"), nullable=False),
        sa.Column("device_uuid", sa.String(64), nullable=False),
        sa.Column("platform", sa.String(20), nullable=True),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "device_uuid", name="uq_device_user_uuid"),
    )
    op.create_index("ix_devices_user_id", "devices", ["user_id"])

    # current_locations: one promoted position per member
    op.create_table(
        "current_locations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("family_members.id"), nullable=False, unique=True),
        sa.Column("family_id", sa.Uuid(), sa.ForeignKey("families.id"), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("accuracy_m", sa.Float(), nullable=True),
        sa.Column("speed_mps", sa.Float(), nullable=True),
        sa.Column("bearing_deg", sa.Float(), nullable=True),
        sa.Column("altitude_m", sa.Float(), nullable=True),
        sa.Column("battery_level", sa.Integer(), nullable=True),
        sa.Column("motion_state", sa.String(), nullable=False, server_default="unknown"),
        sa.Column("quality_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("fix_source", sa.String(), nullable=True),
        sa.Column("device_id", sa.String(64), nullable=True),
        sa.Column("platform", sa.String(20), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_current_locations_family_id", "current_locations", ["family_id"])

    # location_history: append-only trail
    op.create_table(
        "location_history",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("family_id", sa.Uuid(), sa.ForeignKey("families.id"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("family_members.id"), nullable=False),
        sa.Column("device_id", sa.String(64), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("accuracy_m", sa.Float(), nullable=True),
        sa.Column("speed_mps", sa.Float(), nullable=True),
        sa.Column("bearing_deg", sa.Float(), nullable=True),
        sa.Column("altitude_m", sa.Float(), nullable=True),
        sa.Column("battery_level", sa.Integer(), nullable=True),
        sa.Column("motion_state", sa.String(), nullable=False, server_default="unknown"),
        sa.Column("client_event_id", sa.String(64), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "client_event_id", name="uq_history_client_event"),
    )
    op.create_index("ix_location_history_user_recorded", "location_history", ["user_id", "recorded_at"])
    op.create_index("ix_location_history_family_id", "location_history", ["family_id"])

    op.create_table(
        "geofences",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("family_id", sa.Uuid(), sa.ForeignKey("families.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("shape", sa.String(), nullable=False, server_default="circle"),
        sa.Column("center_lat", sa.Float(), nullable=True),
        sa.Column("center_lng", sa.Float(), nullable=True),
        sa.Column("radius_m", sa.Float(), nullable=True),
        sa.Column("polygon_points", sa.JSON(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_geofences_family_id", "geofences", ["family_id"])

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("family_id", sa.Uuid(), sa.ForeignKey("families.id"), nullable=False),
        sa.Column("rule_type", sa.String(), nullable=False),
        sa.Column("params", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("cooldown_seconds", sa.Integer(), nullable=True),
        sa.Column("last_fired_per_user", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_alert_rules_family_id", "alert_rules", ["family_id"])

    # tracking_events: immutable activity log; geofence state is derived from it
    op.create_table(
        "tracking_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("family_id", sa.Uuid(), sa.ForeignKey("families.id"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("family_members.id"), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("geofence_id", sa.Uuid(), sa.ForeignKey("geofences.id"), nullable=True),
        sa.Column("rule_id", sa.Uuid(), sa.ForeignKey("alert_rules.id"), nullable=True),
        sa.Column("rule_type", sa.String(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_tracking_events_family_created", "tracking_events", ["family_id", "created_at"])
    op.create_index(
        "ix_tracking_events_user_type", "tracking_events", ["user_id", "event_type", "created_at"]
    )

    op.create_table(
        "family_settings",
        sa.Column("family_id", sa.Uuid(), sa.ForeignKey("families.id"), primary_key=True),
        sa.Column("overrides", sa.JSON(), nullable=False, server_default="{}"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("family_settings")
    op.drop_index("ix_tracking_events_user_type", table_name="tracking_events")
    op.drop_index("ix_tracking_events_family_created", table_name="tracking_events")
    op.drop_table("tracking_events")
    op.drop_index("ix_alert_rules_family_id", table_name="alert_rules")
    op.drop_table("alert_rules")
    op.drop_index("ix_geofences_family_id", table_name="geofences")
    op.drop_table("geofences")
    op.drop_index("ix_location_history_family_id", table_name="location_history")
    op.drop_index("ix_location_history_user_recorded", table_name="location_history")
    op.drop_table("location_history")
    op.drop_index("ix_current_locations_family_id", table_name="current_locations")
    op.drop_table("current_locations")
    op.drop_index("ix_devices_user_id", table_name="devices")
    op.drop_table("devices")
    op.drop_index("ix_member_tokens_user_id", table_name="member_tokens")
    op.drop_table("member_tokens")
    op.drop_index("ix_family_members_family_id", table_name="family_members")
    op.drop_table("family_members")
    op.drop_table("families")
