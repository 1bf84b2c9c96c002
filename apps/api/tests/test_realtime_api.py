"""Tests for the per-provider realtime read endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient

from transit_snapshots.errors import ProviderMismatchError, SnapshotNotFoundError
from transit_snapshots.services.snapshots.projections import ProjectionBuilder
from transit_snapshots.services.snapshots.resolver import SnapshotInfo, SnapshotResolver

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

SNAPSHOT = SnapshotInfo(
    id=7,
    provider_id="bart",
    feed_timestamp=T0,
    gtfs_realtime_version="2.0",
    incrementality="FULL_DATASET",
    feed_version=None,
    entities_count=1,
    finished=True,
    created_at=T0,
)


def _wire_session(mock_ctx: MagicMock, session: Any | None = None) -> Any:
    session = session or AsyncMock()
    mock_ctx.return_value.__aenter__ = AsyncMock(return_value=session)
    mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)
    return session


class TestTripUpdatesEndpoint:
    @pytest.mark.asyncio
    async def test_latest_snapshot_by_default(self, client: AsyncClient) -> None:
        record = {
            "entity_id": "tu_1",
            "is_deleted": False,
            "trip": {"trip_id": "trip_1", "route_id": "YELLOW-N", "headsign": "Antioch"},
            "route": None,
            "vehicle": None,
            "timestamp": None,
            "delay": None,
            "stop_time_updates": [
                {
                    "stop_sequence": 4,
                    "stop_id": "M16-1",
                    "schedule_relationship": "SCHEDULED",
                    "arrival": None,
                    "departure": {"delay": 120, "time": None, "uncertainty": None},
                }
            ],
        }
        with (
            patch("transit_snapshots.routers.realtime.get_session_context") as mock_ctx,
            patch.object(SnapshotResolver, "resolve", AsyncMock(return_value=SNAPSHOT)) as resolve,
            patch.object(
                ProjectionBuilder, "project_trip_updates", AsyncMock(return_value=[record])
            ),
        ):
            _wire_session(mock_ctx)
            response = await client.get("/bart/trip-updates")

        assert response.status_code == 200
        data = response.json()
        assert data["provider"] == "bart"
        assert data["snapshot"]["id"] == 7
        assert data["count"] == 1
        tu = data["trip_updates"][0]
        assert tu["trip"]["headsign"] == "Antioch"
        assert tu["stop_time_updates"][0]["departure"]["delay"] == 120
        assert resolve.call_args.kwargs == {"at": None, "snapshot_id": None}

    @pytest.mark.asyncio
    async def test_naive_at_is_utc(self, client: AsyncClient) -> None:
        with (
            patch("transit_snapshots.routers.realtime.get_session_context") as mock_ctx,
            patch.object(SnapshotResolver, "resolve", AsyncMock(return_value=SNAPSHOT)) as resolve,
            patch.object(ProjectionBuilder, "project_trip_updates", AsyncMock(return_value=[])),
        ):
            _wire_session(mock_ctx)
            response = await client.get("/bart/trip-updates", params={"at": "2024-03-01T12:00:00"})

        assert response.status_code == 200
        assert resolve.call_args.kwargs["at"] == T0

    @pytest.mark.asyncio
    async def test_snapshot_id_passed_through(self, client: AsyncClient) -> None:
        with (
            patch("transit_snapshots.routers.realtime.get_session_context") as mock_ctx,
            patch.object(SnapshotResolver, "resolve", AsyncMock(return_value=SNAPSHOT)) as resolve,
            patch.object(ProjectionBuilder, "project_trip_updates", AsyncMock(return_value=[])),
        ):
            _wire_session(mock_ctx)
            response = await client.get("/bart/trip-updates", params={"snapshot_id": 7})

        assert response.status_code == 200
        assert resolve.call_args.kwargs["snapshot_id"] == 7

    @pytest.mark.asyncio
    async def test_invalid_snapshot_id(self, client: AsyncClient) -> None:
        response = await client.get("/bart/trip-updates", params={"snapshot_id": 0})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_snapshot_not_found(self, client: AsyncClient) -> None:
        with (
            patch("transit_snapshots.routers.realtime.get_session_context") as mock_ctx,
            patch.object(
                SnapshotResolver,
                "resolve",
                AsyncMock(side_effect=SnapshotNotFoundError("No finished snapshot")),
            ),
        ):
            _wire_session(mock_ctx)
            response = await client.get("/bart/trip-updates")

        assert response.status_code == 404
        assert response.json() == {
            "error": "snapshot_not_found",
            "message": "No finished snapshot",
        }

    @pytest.mark.asyncio
    async def test_provider_mismatch(self, client: AsyncClient) -> None:
        with (
            patch("transit_snapshots.routers.realtime.get_session_context") as mock_ctx,
            patch.object(
                SnapshotResolver,
                "resolve",
                AsyncMock(side_effect=ProviderMismatchError("Snapshot 9 belongs to 'muni'")),
            ),
        ):
            _wire_session(mock_ctx)
            response = await client.get("/bart/trip-updates", params={"snapshot_id": 9})

        assert response.status_code == 409
        assert response.json()["error"] == "provider_mismatch"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, client: AsyncClient) -> None:
        result = MagicMock()
        result.first.return_value = None
        session = AsyncMock()
        session.execute = AsyncMock(return_value=result)

        with patch("transit_snapshots.routers.realtime.get_session_context") as mock_ctx:
            _wire_session(mock_ctx, session)
            response = await client.get("/nope/trip-updates")

        assert response.status_code == 404
        assert response.json()["error"] == "unknown_provider"

    @pytest.mark.asyncio
    async def test_ingested_provider_not_in_config(self, client: AsyncClient) -> None:
        result = MagicMock()
        result.first.return_value = (1,)
        session = AsyncMock()
        session.execute = AsyncMock(return_value=result)
        snapshot = SnapshotInfo(**{**SNAPSHOT.__dict__, "provider_id": "muni"})

        with (
            patch("transit_snapshots.routers.realtime.get_session_context") as mock_ctx,
            patch.object(SnapshotResolver, "resolve", AsyncMock(return_value=snapshot)),
            patch.object(ProjectionBuilder, "project_trip_updates", AsyncMock(return_value=[])),
        ):
            _wire_session(mock_ctx, session)
            response = await client.get("/muni/trip-updates")

        assert response.status_code == 200
        assert response.json()["count"] == 0


class TestVehiclePositionsEndpoint:
    @pytest.mark.asyncio
    async def test_vehicle_positions(self, client: AsyncClient) -> None:
        record = {
            "entity_id": "vp_1",
            "is_deleted": False,
            "trip": None,
            "vehicle": {"id": "car_2", "label": None, "license_plate": None},
            "position": {"latitude": 37.8, "longitude": -122.27},
            "current_stop_sequence": None,
            "stop_id": None,
            "current_status": "IN_TRANSIT_TO",
            "timestamp": None,
            "congestion_level": "UNKNOWN_CONGESTION_LEVEL",
            "occupancy_status": "NO_DATA_AVAILABLE",
            "occupancy_percentage": None,
        }
        with (
            patch("transit_snapshots.routers.realtime.get_session_context") as mock_ctx,
            patch.object(SnapshotResolver, "resolve", AsyncMock(return_value=SNAPSHOT)),
            patch.object(
                ProjectionBuilder, "project_vehicle_positions", AsyncMock(return_value=[record])
            ),
        ):
            _wire_session(mock_ctx)
            response = await client.get("/bart/vehicle-positions")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["vehicle_positions"][0]["vehicle"]["id"] == "car_2"
        assert data["vehicle_positions"][0]["position"]["bearing"] is None


class TestAlertsEndpoint:
    @pytest.mark.asyncio
    async def test_alerts(self, client: AsyncClient) -> None:
        record = {
            "entity_id": "alert_1",
            "is_deleted": False,
            "cause": "MAINTENANCE",
            "effect": "DETOUR",
            "severity_level": "UNKNOWN_SEVERITY",
            "url": None,
            "header_text": [{"text": "Track work", "language": None}],
            "description_text": None,
            "tts_header_text": None,
            "tts_description_text": None,
            "active_periods": [{"start": T0, "end": None}],
            "informed_entities": [{"route_id": "YELLOW-N"}],
        }
        with (
            patch("transit_snapshots.routers.realtime.get_session_context") as mock_ctx,
            patch.object(SnapshotResolver, "resolve", AsyncMock(return_value=SNAPSHOT)),
            patch.object(ProjectionBuilder, "project_alerts", AsyncMock(return_value=[record])),
        ):
            _wire_session(mock_ctx)
            response = await client.get("/bart/alerts")

        assert response.status_code == 200
        alert = response.json()["alerts"][0]
        assert alert["cause"] == "MAINTENANCE"
        assert alert["header_text"] == [{"text": "Track work", "language": None}]
        assert alert["informed_entities"][0]["stop_id"] is None


class TestSnapshotsEndpoint:
    @pytest.mark.asyncio
    async def test_list_snapshots(self, client: AsyncClient) -> None:
        page = {
            "provider": "bart",
            "snapshots": [SNAPSHOT.to_dict()],
            "pagination": {
                "page": 1,
                "limit": 20,
                "total": 1,
                "total_pages": 1,
                "has_next": False,
                "has_prev": False,
            },
        }
        with (
            patch("transit_snapshots.routers.realtime.get_session_context") as mock_ctx,
            patch.object(
                SnapshotResolver, "list_snapshots", AsyncMock(return_value=page)
            ) as list_snapshots,
        ):
            _wire_session(mock_ctx)
            response = await client.get(
                "/bart/snapshots",
                params={"finished": "true", "from": "2024-03-01T00:00:00Z", "to": "2024-03-02T00:00:00"},
            )

        assert response.status_code == 200
        data = response.json()
        assert data["snapshots"][0]["id"] == 7
        assert data["pagination"]["total"] == 1
        kwargs = list_snapshots.call_args.kwargs
        assert kwargs["finished"] is True
        assert kwargs["start"] == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert kwargs["end"] == datetime(2024, 3, 2, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_limit_capped(self, client: AsyncClient) -> None:
        response = await client.get("/bart/snapshots", params={"limit": 101})
        assert response.status_code == 422
