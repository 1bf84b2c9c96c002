"""Initial schema: static schedule and realtime snapshot tables.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ENTITY_KIND_CHECK = (
    "(kind = 'TRIP_UPDATE' AND trip_update_id IS NOT NULL"
    " AND vehicle_position_id IS NULL AND alert_id IS NULL)"
    " OR (kind = 'VEHICLE_POSITION' AND vehicle_position_id IS NOT NULL"
    " AND trip_update_id IS NULL AND alert_id IS NULL)"
    " OR (kind = 'ALERT' AND alert_id IS NOT NULL"
    " AND trip_update_id IS NULL AND vehicle_position_id IS NULL)"
    " OR (kind = 'DELETED' AND is_deleted"
    " AND trip_update_id IS NULL AND vehicle_position_id IS NULL AND alert_id IS NULL)"
)


def upgrade() -> None:
    # --- Static schedule ---
    op.create_table(
        "routes",
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("route_id", sa.String(64), nullable=False),
        sa.Column("route_short_name", sa.String(64), nullable=True),
        sa.Column("route_long_name", sa.String(255), nullable=True),
        sa.Column("route_type", sa.Integer(), nullable=False),
        sa.Column("route_color", sa.String(8), nullable=True),
        sa.Column("route_text_color", sa.String(8), nullable=True),
        sa.Column("route_url", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("provider_id", "route_id"),
    )

    op.create_table(
        "stops",
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("stop_id", sa.String(64), nullable=False),
        sa.Column("stop_code", sa.String(64), nullable=True),
        sa.Column("stop_name", sa.String(255), nullable=False),
        sa.Column("stop_lat", sa.Float(), nullable=True),
        sa.Column("stop_lon", sa.Float(), nullable=True),
        sa.Column("zone_id", sa.String(64), nullable=True),
        sa.Column("parent_station", sa.String(64), nullable=True),
        sa.Column("platform_code", sa.String(16), nullable=True),
        sa.PrimaryKeyConstraint("provider_id", "stop_id"),
    )
    op.create_index(
        "ix_stops_provider_zone_platform", "stops", ["provider_id", "zone_id", "platform_code"]
    )

    op.create_table(
        "trips",
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("trip_id", sa.String(128), nullable=False),
        sa.Column("route_id", sa.String(64), nullable=False),
        sa.Column("service_id", sa.String(64), nullable=False),
        sa.Column("trip_headsign", sa.String(255), nullable=True),
        sa.Column("direction_id", sa.Integer(), nullable=True),
        sa.Column("block_id", sa.String(64), nullable=True),
        sa.Column("shape_id", sa.String(64), nullable=True),
        sa.PrimaryKeyConstraint("provider_id", "trip_id"),
    )
    op.create_index("ix_trips_provider_route", "trips", ["provider_id", "route_id"])

    op.create_table(
        "stop_times",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("trip_id", sa.String(128), nullable=False),
        sa.Column("stop_id", sa.String(64), nullable=False),
        sa.Column("stop_sequence", sa.Integer(), nullable=False),
        sa.Column("arrival_time", sa.String(8), nullable=True),
        sa.Column("departure_time", sa.String(8), nullable=True),
        sa.Column("stop_headsign", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider_id", "trip_id", "stop_sequence", name="uq_stop_times_trip_sequence"
        ),
    )
    op.create_index("ix_stop_times_provider_stop", "stop_times", ["provider_id", "stop_id"])

    op.create_table(
        "calendar",
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("service_id", sa.String(64), nullable=False),
        sa.Column("monday", sa.Integer(), nullable=False),
        sa.Column("tuesday", sa.Integer(), nullable=False),
        sa.Column("wednesday", sa.Integer(), nullable=False),
        sa.Column("thursday", sa.Integer(), nullable=False),
        sa.Column("friday", sa.Integer(), nullable=False),
        sa.Column("saturday", sa.Integer(), nullable=False),
        sa.Column("sunday", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.String(8), nullable=False),
        sa.Column("end_date", sa.String(8), nullable=False),
        sa.PrimaryKeyConstraint("provider_id", "service_id"),
    )

    # --- Providers and snapshots ---
    op.create_table(
        "providers",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "snapshots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("feed_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("gtfs_realtime_version", sa.String(16), nullable=False),
        sa.Column(
            "incrementality", sa.String(16), nullable=False, server_default="FULL_DATASET"
        ),
        sa.Column("feed_version", sa.String(64), nullable=True),
        sa.Column("entities_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("finished", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["provider_id"], ["providers.id"]),
        sa.UniqueConstraint("provider_id", "feed_timestamp", name="uq_snapshots_provider_ts"),
        sa.CheckConstraint(
            "incrementality IN ('FULL_DATASET', 'DIFFERENTIAL')",
            name="ck_snapshots_incrementality",
        ),
    )
    op.create_index(
        "ix_snapshots_provider_finished_ts",
        "snapshots",
        ["provider_id", "finished", "feed_timestamp"],
    )

    # --- Shared descriptors (insert-if-absent) ---
    op.create_table(
        "trip_descriptors",
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("trip_id", sa.String(128), nullable=False),
        sa.Column("route_id", sa.String(64), nullable=True),
        sa.Column("direction_id", sa.Integer(), nullable=True),
        sa.Column(
            "schedule_relationship", sa.String(32), nullable=False, server_default="SCHEDULED"
        ),
        sa.Column("start_date", sa.String(8), nullable=True),
        sa.Column("start_time", sa.String(8), nullable=True),
        sa.PrimaryKeyConstraint("provider_id", "trip_id"),
    )
    op.create_index("ix_trip_descriptors_route", "trip_descriptors", ["provider_id", "route_id"])

    op.create_table(
        "vehicle_descriptors",
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("vehicle_id", sa.String(64), nullable=False),
        sa.Column("label", sa.String(128), nullable=True),
        sa.Column("license_plate", sa.String(32), nullable=True),
        sa.PrimaryKeyConstraint("provider_id", "vehicle_id"),
    )

    op.create_table(
        "positions",
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("bearing", sa.Float(), nullable=True),
        sa.Column("odometer", sa.Float(), nullable=True),
        sa.Column("speed", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("provider_id", "entity_id"),
    )
    op.create_index("ix_positions_lat_lon", "positions", ["latitude", "longitude"])

    # --- Typed payloads, owned by a snapshot ---
    op.create_table(
        "trip_updates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("trip_id", sa.String(128), nullable=True),
        sa.Column("vehicle_id", sa.String(64), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delay", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["snapshot_id"], ["snapshots.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("snapshot_id", "entity_id", name="uq_trip_updates_snapshot_entity"),
    )
    op.create_index("ix_trip_updates_provider_trip", "trip_updates", ["provider_id", "trip_id"])

    op.create_table(
        "vehicle_positions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("trip_id", sa.String(128), nullable=True),
        sa.Column("vehicle_id", sa.String(64), nullable=True),
        sa.Column("current_stop_sequence", sa.Integer(), nullable=True),
        sa.Column("stop_id", sa.String(64), nullable=True),
        sa.Column(
            "current_status", sa.String(32), nullable=False, server_default="IN_TRANSIT_TO"
        ),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "congestion_level",
            sa.String(32),
            nullable=False,
            server_default="UNKNOWN_CONGESTION_LEVEL",
        ),
        sa.Column(
            "occupancy_status", sa.String(32), nullable=False, server_default="NO_DATA_AVAILABLE"
        ),
        sa.Column("occupancy_percentage", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["snapshot_id"], ["snapshots.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "snapshot_id", "entity_id", name="uq_vehicle_positions_snapshot_entity"
        ),
    )
    op.create_index(
        "ix_vehicle_positions_provider_vehicle",
        "vehicle_positions",
        ["provider_id", "vehicle_id"],
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("cause", sa.String(32), nullable=False, server_default="UNKNOWN_CAUSE"),
        sa.Column("effect", sa.String(32), nullable=False, server_default="UNKNOWN_EFFECT"),
        sa.Column(
            "severity_level", sa.String(32), nullable=False, server_default="UNKNOWN_SEVERITY"
        ),
        sa.Column("url", postgresql.JSONB(), nullable=True),
        sa.Column("header_text", postgresql.JSONB(), nullable=True),
        sa.Column("description_text", postgresql.JSONB(), nullable=True),
        sa.Column("tts_header_text", postgresql.JSONB(), nullable=True),
        sa.Column("tts_description_text", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["snapshot_id"], ["snapshots.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("snapshot_id", "entity_id", name="uq_alerts_snapshot_entity"),
    )

    op.create_table(
        "entities",
        sa.Column("snapshot_id", sa.Integer(), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("trip_update_id", sa.Integer(), nullable=True),
        sa.Column("vehicle_position_id", sa.Integer(), nullable=True),
        sa.Column("alert_id", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("snapshot_id", "entity_id", name="pk_entities"),
        sa.ForeignKeyConstraint(["snapshot_id"], ["snapshots.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["trip_update_id"], ["trip_updates.id"]),
        sa.ForeignKeyConstraint(["vehicle_position_id"], ["vehicle_positions.id"]),
        sa.ForeignKeyConstraint(["alert_id"], ["alerts.id"]),
        sa.CheckConstraint(ENTITY_KIND_CHECK, name="ck_entities_kind_reference"),
    )
    op.create_index("ix_entities_snapshot_position", "entities", ["snapshot_id", "position"])

    # --- Payload children ---
    op.create_table(
        "stop_time_updates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("trip_update_id", sa.Integer(), nullable=False),
        sa.Column("update_index", sa.Integer(), nullable=False),
        sa.Column("stop_sequence", sa.Integer(), nullable=True),
        sa.Column("stop_id", sa.String(64), nullable=True),
        sa.Column(
            "schedule_relationship", sa.String(32), nullable=False, server_default="SCHEDULED"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["trip_update_id"], ["trip_updates.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("trip_update_id", "update_index", name="uq_stop_time_updates_index"),
    )
    op.create_index(
        "ix_stop_time_updates_trip_seq",
        "stop_time_updates",
        ["trip_update_id", "stop_sequence"],
    )

    op.create_table(
        "stop_time_events",
        sa.Column("stop_time_update_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.Integer(), nullable=False),
        sa.Column("delay", sa.Integer(), nullable=True),
        sa.Column("time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("uncertainty", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("stop_time_update_id", "event_type", name="pk_stop_time_events"),
        sa.ForeignKeyConstraint(
            ["stop_time_update_id"], ["stop_time_updates.id"], ondelete="CASCADE"
        ),
        sa.CheckConstraint("event_type IN (0, 1)", name="ck_stop_time_events_type"),
    )

    op.create_table(
        "time_ranges",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("alert_id", sa.Integer(), nullable=False),
        sa.Column("start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["alert_id"], ["alerts.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_time_ranges_alert_id", "time_ranges", ["alert_id"])

    op.create_table(
        "entity_selectors",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("alert_id", sa.Integer(), nullable=False),
        sa.Column("agency_id", sa.String(64), nullable=True),
        sa.Column("route_id", sa.String(64), nullable=True),
        sa.Column("route_type", sa.Integer(), nullable=True),
        sa.Column("trip_id", sa.String(128), nullable=True),
        sa.Column("direction_id", sa.Integer(), nullable=True),
        sa.Column("stop_id", sa.String(64), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["alert_id"], ["alerts.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_entity_selectors_alert_id", "entity_selectors", ["alert_id"])


def downgrade() -> None:
    op.drop_table("entity_selectors")
    op.drop_table("time_ranges")
    op.drop_table("stop_time_events")
    op.drop_table("stop_time_updates")
    op.drop_table("entities")
    op.drop_table("alerts")
    op.drop_table("vehicle_positions")
    op.drop_table("trip_updates")
    op.drop_table("positions")
    op.drop_table("vehicle_descriptors")
    op.drop_table("trip_descriptors")
    op.drop_table("snapshots")
    op.drop_table("providers")
    op.drop_table("calendar")
    op.drop_table("stop_times")
    op.drop_table("trips")
    op.drop_table("stops")
    op.drop_table("routes")
