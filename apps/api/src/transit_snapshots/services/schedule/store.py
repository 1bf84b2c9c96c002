"""Read-only lookups against the static GTFS schedule tables."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from sqlalchemy import bindparam, text

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

_ROUTE_COLUMNS = (
    "route_id, route_short_name, route_long_name, route_type, route_color, "
    "route_text_color, route_url"
)
_STOP_COLUMNS = (
    "stop_id, stop_code, stop_name, stop_lat, stop_lon, zone_id, parent_station, platform_code"
)
_TRIP_COLUMNS = "trip_id, route_id, service_id, trip_headsign, direction_id, block_id, shape_id"
_STOP_TIME_COLUMNS = (
    "trip_id, stop_id, stop_sequence, arrival_time, departure_time, stop_headsign"
)


def _row_dict(row: Any) -> Dict[str, Any]:
    return dict(row._mapping)


class ScheduleStore:
    """Static schedule lookups keyed by (provider, natural id)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _one(self, sql: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        result = await self._session.execute(text(sql), params)
        row = result.first()
        return _row_dict(row) if row is not None else None

    async def _many_by_ids(
        self, table: str, columns: str, key: str, provider_id: str, ids: Iterable[str]
    ) -> Dict[str, Dict[str, Any]]:
        unique_ids = sorted({i for i in ids if i})
        if not unique_ids:
            return {}
        stmt = text(
            f"SELECT {columns} FROM {table} "
            f"WHERE provider_id = :provider_id AND {key} IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        result = await self._session.execute(stmt, {"provider_id": provider_id, "ids": unique_ids})
        return {row._mapping[key]: _row_dict(row) for row in result.fetchall()}

    async def route(self, provider_id: str, route_id: str) -> Optional[Dict[str, Any]]:
        return await self._one(
            f"SELECT {_ROUTE_COLUMNS} FROM routes "
            "WHERE provider_id = :provider_id AND route_id = :route_id",
            {"provider_id": provider_id, "route_id": route_id},
        )

    async def stop(self, provider_id: str, stop_id: str) -> Optional[Dict[str, Any]]:
        return await self._one(
            f"SELECT {_STOP_COLUMNS} FROM stops "
            "WHERE provider_id = :provider_id AND stop_id = :stop_id",
            {"provider_id": provider_id, "stop_id": stop_id},
        )

    async def trip(self, provider_id: str, trip_id: str) -> Optional[Dict[str, Any]]:
        return await self._one(
            f"SELECT {_TRIP_COLUMNS} FROM trips "
            "WHERE provider_id = :provider_id AND trip_id = :trip_id",
            {"provider_id": provider_id, "trip_id": trip_id},
        )

    async def stop_time(
        self, provider_id: str, trip_id: str, stop_sequence: int
    ) -> Optional[Dict[str, Any]]:
        return await self._one(
            f"SELECT {_STOP_TIME_COLUMNS} FROM stop_times "
            "WHERE provider_id = :provider_id AND trip_id = :trip_id "
            "AND stop_sequence = :stop_sequence",
            {"provider_id": provider_id, "trip_id": trip_id, "stop_sequence": stop_sequence},
        )

    async def stops_by_zone(
        self, provider_id: str, zone_id: str, platform_code: str | None = None
    ) -> List[Dict[str, Any]]:
        """Stops of a station; platform, when given, must match exactly."""
        sql = (
            f"SELECT {_STOP_COLUMNS} FROM stops "
            "WHERE provider_id = :provider_id AND zone_id = :zone_id"
        )
        params: Dict[str, Any] = {"provider_id": provider_id, "zone_id": zone_id}
        if platform_code is not None:
            sql += " AND platform_code = :platform_code"
            params["platform_code"] = platform_code
        result = await self._session.execute(text(sql + " ORDER BY stop_id"), params)
        return [_row_dict(row) for row in result.fetchall()]

    async def routes_by_ids(
        self, provider_id: str, route_ids: Iterable[str]
    ) -> Dict[str, Dict[str, Any]]:
        return await self._many_by_ids("routes", _ROUTE_COLUMNS, "route_id", provider_id, route_ids)

    async def trips_by_ids(
        self, provider_id: str, trip_ids: Iterable[str]
    ) -> Dict[str, Dict[str, Any]]:
        return await self._many_by_ids("trips", _TRIP_COLUMNS, "trip_id", provider_id, trip_ids)
