"""Station departure board endpoints.

Endpoints
---------
GET /{provider}/departures/{station}             - all platforms
GET /{provider}/departures/{station}/{platform}  - one platform
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from transit_snapshots.config import get_settings
from transit_snapshots.database import get_session_context
from transit_snapshots.logging import get_logger
from transit_snapshots.routers.realtime import AtQuery, SnapshotIdQuery, resolve_snapshot
from transit_snapshots.services.departures.compositor import DepartureCompositor
from transit_snapshots.services.snapshots.resolver import SnapshotResolver

logger = get_logger(__name__)

router = APIRouter(tags=["departures"])


class DepartureRoute(BaseModel):
    route_id: Optional[str] = None
    route_name: Optional[str] = None
    color: Optional[str] = None
    text_color: Optional[str] = None


class DepartureOut(BaseModel):
    destination: str
    route: DepartureRoute
    platform: Optional[str] = None
    minutes: Optional[int] = None
    departure_time: Optional[datetime] = None
    scheduled_departure: Optional[str] = None
    delay: int
    vehicle_label: Optional[str] = None
    stop_sequence: Optional[int] = None
    trip_id: Optional[str] = None


class DepartureBoardResponse(BaseModel):
    station: str
    platform: str
    station_name: Optional[str] = None
    snapshot_id: int
    timestamp: datetime
    platforms: List[str]
    departures: List[DepartureOut]


async def _board(
    provider: str,
    station: str,
    platform: str | None,
    at: datetime | None,
    snapshot_id: int | None,
) -> Dict[str, Any]:
    settings = get_settings()
    provider_config = settings.get_provider(provider)
    tz = provider_config.timezone if provider_config else "UTC"
    station_code = station.upper()

    async with get_session_context() as session:
        resolver = SnapshotResolver(session, window_sec=settings.snapshot_window_sec)
        snapshot = await resolve_snapshot(resolver, provider, at, snapshot_id)
        board = await DepartureCompositor(session).departures(
            provider, station_code, platform, snapshot, tz=tz
        )
    return board.to_dict()


@router.get(
    "/{provider}/departures/{station}",
    response_model=DepartureBoardResponse,
    summary="Departure board for a station",
)
async def get_station_departures(
    provider: str,
    station: str,
    at: AtQuery = None,
    snapshot_id: SnapshotIdQuery = None,
) -> Dict[str, Any]:
    return await _board(provider, station, None, at, snapshot_id)


@router.get(
    "/{provider}/departures/{station}/{platform}",
    response_model=DepartureBoardResponse,
    summary="Departure board for one platform of a station",
)
async def get_platform_departures(
    provider: str,
    station: str,
    platform: str,
    at: AtQuery = None,
    snapshot_id: SnapshotIdQuery = None,
) -> Dict[str, Any]:
    return await _board(provider, station, platform, at, snapshot_id)
