"""GTFS static schedule models.

Loaded by external tooling; read-only here. Every table is keyed by
(provider_id, natural id) since realtime rows reference GTFS ids.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from transit_snapshots.models.base import Base


class Route(Base):
    """Transit route (line)."""

    __tablename__ = "routes"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    route_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    route_short_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    route_long_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    route_type: Mapped[int] = mapped_column(Integer, nullable=False)
    route_color: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    route_text_color: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    route_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class Stop(Base):
    """Stop or platform. zone_id holds the station code."""

    __tablename__ = "stops"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stop_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stop_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    stop_name: Mapped[str] = mapped_column(String(255), nullable=False)
    stop_lat: Mapped[Optional[float]] = mapped_column(nullable=True)
    stop_lon: Mapped[Optional[float]] = mapped_column(nullable=True)
    zone_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    parent_station: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    platform_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    __table_args__ = (
        Index("ix_stops_provider_zone_platform", "provider_id", "zone_id", "platform_code"),
    )


class Trip(Base):
    """Scheduled trip."""

    __tablename__ = "trips"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    trip_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    route_id: Mapped[str] = mapped_column(String(64), nullable=False)
    service_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trip_headsign: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    direction_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    block_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    shape_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (Index("ix_trips_provider_route", "provider_id", "route_id"),)


class StopTime(Base):
    """Scheduled arrival/departure of a trip at a stop (HH:MM:SS, may exceed 24h)."""

    __tablename__ = "stop_times"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trip_id: Mapped[str] = mapped_column(String(128), nullable=False)
    stop_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stop_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    arrival_time: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    departure_time: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    stop_headsign: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "provider_id", "trip_id", "stop_sequence", name="uq_stop_times_trip_sequence"
        ),
        Index("ix_stop_times_provider_stop", "provider_id", "stop_id"),
    )


class Calendar(Base):
    """Weekly service pattern."""

    __tablename__ = "calendar"

    provider_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    service_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    monday: Mapped[int] = mapped_column(Integer, nullable=False)
    tuesday: Mapped[int] = mapped_column(Integer, nullable=False)
    wednesday: Mapped[int] = mapped_column(Integer, nullable=False)
    thursday: Mapped[int] = mapped_column(Integer, nullable=False)
    friday: Mapped[int] = mapped_column(Integer, nullable=False)
    saturday: Mapped[int] = mapped_column(Integer, nullable=False)
    sunday: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[str] = mapped_column(String(8), nullable=False)
    end_date: Mapped[str] = mapped_column(String(8), nullable=False)
