"""SQLAlchemy models for Transit Snapshots."""

from transit_snapshots.models.base import Base
from transit_snapshots.models.gtfs import Calendar, Route, Stop, StopTime, Trip
from transit_snapshots.models.realtime import (
    ENTITY_KINDS,
    Alert,
    Entity,
    EntitySelector,
    Position,
    Provider,
    Snapshot,
    StopTimeEvent,
    StopTimeUpdate,
    TimeRange,
    TripDescriptor,
    TripUpdate,
    VehicleDescriptor,
    VehiclePosition,
)

__all__ = [
    "ENTITY_KINDS",
    "Alert",
    "Base",
    "Calendar",
    "Entity",
    "EntitySelector",
    "Position",
    "Provider",
    "Route",
    "Snapshot",
    "Stop",
    "StopTime",
    "StopTimeEvent",
    "StopTimeUpdate",
    "TimeRange",
    "Trip",
    "TripDescriptor",
    "TripUpdate",
    "VehicleDescriptor",
    "VehiclePosition",
]
