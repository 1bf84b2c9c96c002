"""Tests for the departure board endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient

from transit_snapshots.errors import StationNotFoundError
from transit_snapshots.services.departures.compositor import (
    Departure,
    DepartureBoard,
    DepartureCompositor,
)
from transit_snapshots.services.snapshots.resolver import SnapshotInfo, SnapshotResolver

T0 = datetime(2024, 3, 1, 16, 0, 0, tzinfo=timezone.utc)

SNAPSHOT = SnapshotInfo(
    id=7,
    provider_id="bart",
    feed_timestamp=T0,
    gtfs_realtime_version="2.0",
    incrementality="FULL_DATASET",
    feed_version=None,
    entities_count=1,
    finished=True,
)


def _wire_session(mock_ctx: MagicMock) -> Any:
    session = AsyncMock()
    mock_ctx.return_value.__aenter__ = AsyncMock(return_value=session)
    mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)
    return session


def _board(platform: str | None) -> DepartureBoard:
    return DepartureBoard(
        station="16TH",
        platform=platform,
        station_name="16th St Mission",
        snapshot_id=7,
        timestamp=T0,
        platforms=["1", "2"],
        departures=[
            Departure(
                destination="Antioch",
                route={
                    "route_id": "YELLOW-N",
                    "route_name": "Yellow",
                    "color": "FFFF33",
                    "text_color": "000000",
                },
                platform="1",
                minutes=2,
                departure_time=T0,
                scheduled_departure="08:00:00",
                delay=120,
                vehicle_label="10-car",
                stop_sequence=4,
                trip_id="trip_1",
            )
        ],
    )


class TestDeparturesEndpoint:
    @pytest.mark.asyncio
    async def test_station_board(self, client: AsyncClient) -> None:
        with (
            patch("transit_snapshots.routers.departures.get_session_context") as mock_ctx,
            patch.object(SnapshotResolver, "resolve", AsyncMock(return_value=SNAPSHOT)),
            patch.object(
                DepartureCompositor, "departures", AsyncMock(return_value=_board(None))
            ) as departures,
        ):
            _wire_session(mock_ctx)
            response = await client.get("/bart/departures/16th")

        assert response.status_code == 200
        data = response.json()
        assert data["station"] == "16TH"
        assert data["platform"] == "all"
        assert data["platforms"] == ["1", "2"]
        assert data["departures"][0]["minutes"] == 2
        assert data["departures"][0]["route"]["route_name"] == "Yellow"

        args, kwargs = departures.call_args
        assert args[:3] == ("bart", "16TH", None)
        assert kwargs["tz"] == "America/Los_Angeles"

    @pytest.mark.asyncio
    async def test_platform_board(self, client: AsyncClient) -> None:
        with (
            patch("transit_snapshots.routers.departures.get_session_context") as mock_ctx,
            patch.object(SnapshotResolver, "resolve", AsyncMock(return_value=SNAPSHOT)),
            patch.object(
                DepartureCompositor, "departures", AsyncMock(return_value=_board("1"))
            ) as departures,
        ):
            _wire_session(mock_ctx)
            response = await client.get("/bart/departures/16TH/1")

        assert response.status_code == 200
        assert response.json()["platform"] == "1"
        assert departures.call_args[0][2] == "1"

    @pytest.mark.asyncio
    async def test_station_not_found(self, client: AsyncClient) -> None:
        with (
            patch("transit_snapshots.routers.departures.get_session_context") as mock_ctx,
            patch.object(SnapshotResolver, "resolve", AsyncMock(return_value=SNAPSHOT)),
            patch.object(
                DepartureCompositor,
                "departures",
                AsyncMock(side_effect=StationNotFoundError("Station XXX not found")),
            ),
        ):
            _wire_session(mock_ctx)
            response = await client.get("/bart/departures/xxx")

        assert response.status_code == 404
        assert response.json() == {
            "error": "station_not_found",
            "message": "Station XXX not found",
        }
