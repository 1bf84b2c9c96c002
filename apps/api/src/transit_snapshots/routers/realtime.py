"""Per-provider realtime read endpoints.

Endpoints
---------
GET /{provider}/snapshots          - paginated snapshot listing, newest first
GET /{provider}/trip-updates       - trip updates of the resolved snapshot
GET /{provider}/vehicle-positions  - vehicle positions of the resolved snapshot
GET /{provider}/alerts             - alerts of the resolved snapshot

The snapshot is resolved from ``snapshot_id`` if given, else the finished
snapshot closest to ``at``, else the latest finished one.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from transit_snapshots.config import get_settings
from transit_snapshots.database import get_session_context
from transit_snapshots.logging import get_logger
from transit_snapshots.services.snapshots.projections import ProjectionBuilder
from transit_snapshots.services.snapshots.resolver import SnapshotInfo, SnapshotResolver

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class SnapshotOut(BaseModel):
    id: int
    provider_id: str
    feed_timestamp: datetime
    gtfs_realtime_version: str
    incrementality: str
    feed_version: Optional[str] = None
    entities_count: int
    finished: bool
    created_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class SnapshotListResponse(BaseModel):
    provider: str
    snapshots: List[SnapshotOut]
    pagination: Pagination


class TripOut(BaseModel):
    trip_id: str
    route_id: Optional[str] = None
    direction_id: Optional[int] = None
    start_date: Optional[str] = None
    start_time: Optional[str] = None
    schedule_relationship: Optional[str] = None
    headsign: Optional[str] = None


class RouteOut(BaseModel):
    route_id: str
    short_name: Optional[str] = None
    long_name: Optional[str] = None
    color: Optional[str] = None
    text_color: Optional[str] = None


class VehicleOut(BaseModel):
    id: str
    label: Optional[str] = None
    license_plate: Optional[str] = None


class StopTimeEventOut(BaseModel):
    delay: Optional[int] = None
    time: Optional[datetime] = None
    uncertainty: Optional[int] = None


class StopTimeUpdateOut(BaseModel):
    stop_sequence: Optional[int] = None
    stop_id: Optional[str] = None
    schedule_relationship: str
    arrival: Optional[StopTimeEventOut] = None
    departure: Optional[StopTimeEventOut] = None


class TripUpdateOut(BaseModel):
    entity_id: str
    is_deleted: bool
    trip: Optional[TripOut] = None
    route: Optional[RouteOut] = None
    vehicle: Optional[VehicleOut] = None
    timestamp: Optional[datetime] = None
    delay: Optional[int] = None
    stop_time_updates: List[StopTimeUpdateOut]


class PositionOut(BaseModel):
    latitude: float
    longitude: float
    bearing: Optional[float] = None
    odometer: Optional[float] = None
    speed: Optional[float] = None


class VehiclePositionOut(BaseModel):
    entity_id: str
    is_deleted: bool
    trip: Optional[TripOut] = None
    vehicle: Optional[VehicleOut] = None
    position: Optional[PositionOut] = None
    current_stop_sequence: Optional[int] = None
    stop_id: Optional[str] = None
    current_status: str
    timestamp: Optional[datetime] = None
    congestion_level: str
    occupancy_status: str
    occupancy_percentage: Optional[int] = None


class TranslationOut(BaseModel):
    text: str
    language: Optional[str] = None


class TimeRangeOut(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class EntitySelectorOut(BaseModel):
    agency_id: Optional[str] = None
    route_id: Optional[str] = None
    route_type: Optional[int] = None
    trip_id: Optional[str] = None
    direction_id: Optional[int] = None
    stop_id: Optional[str] = None


class AlertOut(BaseModel):
    entity_id: str
    is_deleted: bool
    cause: str
    effect: str
    severity_level: str
    url: Optional[List[TranslationOut]] = None
    header_text: Optional[List[TranslationOut]] = None
    description_text: Optional[List[TranslationOut]] = None
    tts_header_text: Optional[List[TranslationOut]] = None
    tts_description_text: Optional[List[TranslationOut]] = None
    active_periods: List[TimeRangeOut]
    informed_entities: List[EntitySelectorOut]


class TripUpdatesResponse(BaseModel):
    provider: str
    snapshot: SnapshotOut
    count: int
    trip_updates: List[TripUpdateOut]


class VehiclePositionsResponse(BaseModel):
    provider: str
    snapshot: SnapshotOut
    count: int
    vehicle_positions: List[VehiclePositionOut]


class AlertsResponse(BaseModel):
    provider: str
    snapshot: SnapshotOut
    count: int
    alerts: List[AlertOut]


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

AtQuery = Annotated[
    Optional[datetime],
    Query(description="Instant to resolve; the closest finished snapshot within the window"),
]
SnapshotIdQuery = Annotated[
    Optional[int],
    Query(ge=1, description="Explicit snapshot id; wins over `at`"),
]


def as_utc(value: datetime | None) -> datetime | None:
    """Naive query datetimes are taken as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


async def require_provider(resolver: SnapshotResolver, provider_id: str) -> None:
    """Configured providers pass; otherwise the provider must have been ingested."""
    if get_settings().get_provider(provider_id) is None:
        await resolver.ensure_provider(provider_id)


async def resolve_snapshot(
    resolver: SnapshotResolver,
    provider_id: str,
    at: datetime | None,
    snapshot_id: int | None,
) -> SnapshotInfo:
    await require_provider(resolver, provider_id)
    return await resolver.resolve(provider_id, at=as_utc(at), snapshot_id=snapshot_id)


def _resolver(session: Any) -> SnapshotResolver:
    return SnapshotResolver(session, window_sec=get_settings().snapshot_window_sec)


# ---------------------------------------------------------------------------
# GET /{provider}/snapshots
# ---------------------------------------------------------------------------


@router.get(
    "/{provider}/snapshots",
    response_model=SnapshotListResponse,
    summary="List snapshots for a provider",
)
async def list_snapshots(
    provider: str,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[Optional[int], Query(ge=1, le=100)] = None,
    finished: Optional[bool] = None,
    start: Annotated[Optional[datetime], Query(alias="from")] = None,
    end: Annotated[Optional[datetime], Query(alias="to")] = None,
) -> Dict[str, Any]:
    """Paginated snapshots, newest feed timestamp first."""
    async with get_session_context() as session:
        resolver = _resolver(session)
        await require_provider(resolver, provider)
        return await resolver.list_snapshots(
            provider,
            page=page,
            limit=limit,
            finished=finished,
            start=as_utc(start),
            end=as_utc(end),
        )


# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------


@router.get(
    "/{provider}/trip-updates",
    response_model=TripUpdatesResponse,
    summary="Trip updates of a snapshot",
)
async def get_trip_updates(
    provider: str, at: AtQuery = None, snapshot_id: SnapshotIdQuery = None
) -> Dict[str, Any]:
    async with get_session_context() as session:
        snapshot = await resolve_snapshot(_resolver(session), provider, at, snapshot_id)
        records = await ProjectionBuilder(session).project_trip_updates(snapshot)
    return {
        "provider": provider,
        "snapshot": snapshot.to_dict(),
        "count": len(records),
        "trip_updates": records,
    }


@router.get(
    "/{provider}/vehicle-positions",
    response_model=VehiclePositionsResponse,
    summary="Vehicle positions of a snapshot",
)
async def get_vehicle_positions(
    provider: str, at: AtQuery = None, snapshot_id: SnapshotIdQuery = None
) -> Dict[str, Any]:
    async with get_session_context() as session:
        snapshot = await resolve_snapshot(_resolver(session), provider, at, snapshot_id)
        records = await ProjectionBuilder(session).project_vehicle_positions(snapshot)
    return {
        "provider": provider,
        "snapshot": snapshot.to_dict(),
        "count": len(records),
        "vehicle_positions": records,
    }


@router.get(
    "/{provider}/alerts",
    response_model=AlertsResponse,
    summary="Service alerts of a snapshot",
)
async def get_alerts(
    provider: str, at: AtQuery = None, snapshot_id: SnapshotIdQuery = None
) -> Dict[str, Any]:
    async with get_session_context() as session:
        snapshot = await resolve_snapshot(_resolver(session), provider, at, snapshot_id)
        records = await ProjectionBuilder(session).project_alerts(snapshot)
    return {
        "provider": provider,
        "snapshot": snapshot.to_dict(),
        "count": len(records),
        "alerts": records,
    }
