"""GTFS-Realtime snapshot models.

One ``Snapshot`` per successful feed poll; ``Entity`` rows tie it to exactly
one typed payload row. Trip/vehicle descriptors and positions are shared,
keyed by (provider, natural id) and written insert-if-absent.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from transit_snapshots.models.base import Base

ENTITY_KINDS = ("TRIP_UPDATE", "VEHICLE_POSITION", "ALERT", "DELETED")

# Exactly one payload reference, consistent with kind; deletion markers carry none
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


class Provider(Base):
    """Tenant scoping every other row."""

    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class Snapshot(Base):
    """One feed poll for one provider."""

    __tablename__ = "snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("providers.id"), nullable=False
    )
    feed_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    gtfs_realtime_version: Mapped[str] = mapped_column(String(16), nullable=False)
    incrementality: Mapped[str] = mapped_column(
        String(16), nullable=False, default="FULL_DATASET"
    )
    feed_version: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entities_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    finished: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("provider_id", "feed_timestamp", name="uq_snapshots_provider_ts"),
        CheckConstraint(
            "incrementality IN ('FULL_DATASET', 'DIFFERENTIAL')",
            name="ck_snapshots_incrementality",
        ),
        Index("ix_snapshots_provider_finished_ts", "provider_id", "finished", "feed_timestamp"),
    )


class Entity(Base):
    """A feed entity within a snapshot."""

    __tablename__ = "entities"

    snapshot_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("snapshots.id", ondelete="CASCADE"), nullable=False
    )
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    trip_update_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("trip_updates.id"), nullable=True
    )
    vehicle_position_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("vehicle_positions.id"), nullable=True
    )
    alert_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("alerts.id"), nullable=True
    )

    __table_args__ = (
        PrimaryKeyConstraint("snapshot_id", "entity_id", name="pk_entities"),
        CheckConstraint(ENTITY_KIND_CHECK, name="ck_entities_kind_reference"),
        Index("ix_entities_snapshot_position", "snapshot_id", "position"),
    )


class TripUpdate(Base):
    """Trip update payload."""

    __tablename__ = "trip_updates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("snapshots.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    trip_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    vehicle_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delay: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("snapshot_id", "entity_id", name="uq_trip_updates_snapshot_entity"),
        Index("ix_trip_updates_provider_trip", "provider_id", "trip_id"),
    )


class VehiclePosition(Base):
    """Vehicle position payload."""

    __tablename__ = "vehicle_positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("snapshots.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    trip_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    vehicle_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    current_stop_sequence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stop_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    current_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="IN_TRANSIT_TO"
    )
    timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    congestion_level: Mapped[str] = mapped_column(
        String(32), nullable=False, default="UNKNOWN_CONGESTION_LEVEL"
    )
    occupancy_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="NO_DATA_AVAILABLE"
    )
    occupancy_percentage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "snapshot_id", "entity_id", name="uq_vehicle_positions_snapshot_entity"
        ),
        Index("ix_vehicle_positions_provider_vehicle", "provider_id", "vehicle_id"),
    )


class Alert(Base):
    """Service alert payload. Localized strings are JSON lists of {text, language}."""

    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("snapshots.id", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    cause: Mapped[str] = mapped_column(String(32), nullable=False, default="UNKNOWN_CAUSE")
    effect: Mapped[str] = mapped_column(String(32), nullable=False, default="UNKNOWN_EFFECT")
    severity_level: Mapped[str] = mapped_column(
        String(32), nullable=False, default="UNKNOWN_SEVERITY"
    )
    url: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    header_text: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    description_text: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    tts_header_text: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    tts_description_text: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("snapshot_id", "entity_id", name="uq_alerts_snapshot_entity"),
    )


class TripDescriptor(Base):
    """Shared trip descriptor, keyed by (provider, trip_id)."""

    __tablename__ = "trip_descriptors"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    trip_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    route_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    direction_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    schedule_relationship: Mapped[str] = mapped_column(
        String(32), nullable=False, default="SCHEDULED"
    )
    start_date: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    start_time: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)

    __table_args__ = (Index("ix_trip_descriptors_route", "provider_id", "route_id"),)


class VehicleDescriptor(Base):
    """Shared vehicle descriptor, keyed by (provider, vehicle_id)."""

    __tablename__ = "vehicle_descriptors"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    label: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    license_plate: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)


class Position(Base):
    """Shared vehicle position, keyed by (provider, entity_id)."""

    __tablename__ = "positions"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    bearing: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    odometer: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    speed: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    __table_args__ = (Index("ix_positions_lat_lon", "latitude", "longitude"),)


class StopTimeUpdate(Base):
    """Per-stop prediction inside a trip update."""

    __tablename__ = "stop_time_updates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trip_update_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trip_updates.id", ondelete="CASCADE"), nullable=False
    )
    update_index: Mapped[int] = mapped_column(Integer, nullable=False)
    stop_sequence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stop_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    schedule_relationship: Mapped[str] = mapped_column(
        String(32), nullable=False, default="SCHEDULED"
    )

    __table_args__ = (
        UniqueConstraint("trip_update_id", "update_index", name="uq_stop_time_updates_index"),
        Index("ix_stop_time_updates_trip_seq", "trip_update_id", "stop_sequence"),
    )


class StopTimeEvent(Base):
    """Arrival (0) or departure (1) prediction of a stop time update."""

    __tablename__ = "stop_time_events"

    stop_time_update_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("stop_time_updates.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[int] = mapped_column(Integer, nullable=False)
    delay: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    uncertainty: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint("stop_time_update_id", "event_type", name="pk_stop_time_events"),
        CheckConstraint("event_type IN (0, 1)", name="ck_stop_time_events_type"),
    )


class TimeRange(Base):
    """Active period of an alert."""

    __tablename__ = "time_ranges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False
    )
    start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_time_ranges_alert_id", "alert_id"),)


class EntitySelector(Base):
    """Informed entity of an alert."""

    __tablename__ = "entity_selectors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False
    )
    agency_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    route_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    route_type: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    trip_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    direction_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stop_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (Index("ix_entity_selectors_alert_id", "alert_id"),)
