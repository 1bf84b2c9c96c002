"""Projection builders: denormalized listings for one snapshot.

Each builder issues a fixed number of queries per snapshot: the entity and
payload join, one ``IN (...)`` lookup per shared table, and one query per
child table joined by snapshot id. Assembly into nested dicts is pure.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.dialects.postgresql import JSONB

from transit_snapshots.logging import get_logger
from transit_snapshots.services.gtfs_rt.normalizer import EVENT_ARRIVAL, EVENT_DEPARTURE
from transit_snapshots.services.schedule.store import ScheduleStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from transit_snapshots.services.snapshots.resolver import SnapshotInfo

logger = get_logger(__name__)

ALERT_TEXT_FIELDS = (
    "url",
    "header_text",
    "description_text",
    "tts_header_text",
    "tts_description_text",
)


# --- Pure assembly ---


def trip_summary(
    descriptor: Optional[Dict[str, Any]], static_trip: Optional[Dict[str, Any]]
) -> Optional[Dict[str, Any]]:
    if descriptor is None:
        return None
    return {
        "trip_id": descriptor["trip_id"],
        "route_id": descriptor.get("route_id"),
        "direction_id": descriptor.get("direction_id"),
        "start_date": descriptor.get("start_date"),
        "start_time": descriptor.get("start_time"),
        "schedule_relationship": descriptor.get("schedule_relationship"),
        "headsign": static_trip.get("trip_headsign") if static_trip else None,
    }


def route_summary(route: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if route is None:
        return None
    return {
        "route_id": route["route_id"],
        "short_name": route.get("route_short_name"),
        "long_name": route.get("route_long_name"),
        "color": route.get("route_color"),
        "text_color": route.get("route_text_color"),
    }


def vehicle_summary(descriptor: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if descriptor is None:
        return None
    return {
        "id": descriptor["vehicle_id"],
        "label": descriptor.get("label"),
        "license_plate": descriptor.get("license_plate"),
    }


def position_summary(position: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if position is None:
        return None
    return {
        "latitude": position["latitude"],
        "longitude": position["longitude"],
        "bearing": position.get("bearing"),
        "odometer": position.get("odometer"),
        "speed": position.get("speed"),
    }


def group_stop_time_updates(rows: Iterable[Dict[str, Any]]) -> Dict[int, List[Dict[str, Any]]]:
    """Fold (update, event) join rows into per-trip-update lists in update order.

    Rows must arrive ordered by trip update id and update index; an update
    with no events yields one row with a null event type.
    """
    grouped: Dict[int, List[Dict[str, Any]]] = defaultdict(list)
    current: Dict[int, Dict[str, Any]] = {}
    for row in rows:
        update = current.get(row["stop_time_update_id"])
        if update is None:
            update = {
                "stop_sequence": row["stop_sequence"],
                "stop_id": row["stop_id"],
                "schedule_relationship": row["schedule_relationship"],
                "arrival": None,
                "departure": None,
            }
            current[row["stop_time_update_id"]] = update
            grouped[row["trip_update_id"]].append(update)

        event_type = row.get("event_type")
        if event_type is None:
            continue
        event = {
            "delay": row.get("delay"),
            "time": row.get("time"),
            "uncertainty": row.get("uncertainty"),
        }
        if event_type == EVENT_ARRIVAL:
            update["arrival"] = event
        elif event_type == EVENT_DEPARTURE:
            update["departure"] = event
    return dict(grouped)


def group_by_alert(rows: Iterable[Dict[str, Any]]) -> Dict[int, List[Dict[str, Any]]]:
    grouped: Dict[int, List[Dict[str, Any]]] = defaultdict(list)
    for row in rows:
        item = dict(row)
        alert_id = item.pop("alert_id")
        grouped[alert_id].append(item)
    return dict(grouped)


# --- Builders ---


class ProjectionBuilder:
    """Builds the three per-kind listings for a resolved snapshot."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._schedule = ScheduleStore(session)

    async def _rows(self, sql: Any, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        stmt = text(sql) if isinstance(sql, str) else sql
        result = await self._session.execute(stmt, params)
        return [dict(row._mapping) for row in result.fetchall()]

    async def _by_keys(
        self, table: str, key: str, provider_id: str, keys: Iterable[Optional[str]]
    ) -> Dict[str, Dict[str, Any]]:
        unique_keys = sorted({k for k in keys if k})
        if not unique_keys:
            return {}
        stmt = text(
            f"SELECT * FROM {table} WHERE provider_id = :provider_id AND {key} IN :keys"
        ).bindparams(bindparam("keys", expanding=True))
        rows = await self._rows(stmt, {"provider_id": provider_id, "keys": unique_keys})
        return {row[key]: row for row in rows}

    async def project_trip_updates(self, snapshot: SnapshotInfo) -> List[Dict[str, Any]]:
        provider_id = snapshot.provider_id
        entities = await self._rows(
            """
            SELECT e.entity_id, e.is_deleted, e.position,
                   tu.id AS trip_update_id, tu.trip_id, tu.vehicle_id, tu.timestamp, tu.delay
            FROM entities e
            JOIN trip_updates tu ON tu.id = e.trip_update_id
            WHERE e.snapshot_id = :snapshot_id
            ORDER BY e.position
            """,
            {"snapshot_id": snapshot.id},
        )
        if not entities:
            return []

        trip_descriptors = await self._by_keys(
            "trip_descriptors", "trip_id", provider_id, (e["trip_id"] for e in entities)
        )
        vehicle_descriptors = await self._by_keys(
            "vehicle_descriptors", "vehicle_id", provider_id, (e["vehicle_id"] for e in entities)
        )
        static_trips = await self._schedule.trips_by_ids(
            provider_id, (e["trip_id"] for e in entities if e["trip_id"])
        )
        route_ids = {
            (trip_descriptors.get(tid) or {}).get("route_id")
            or (static_trips.get(tid) or {}).get("route_id")
            for tid in {e["trip_id"] for e in entities if e["trip_id"]}
        }
        routes = await self._schedule.routes_by_ids(provider_id, (r for r in route_ids if r))

        update_rows = await self._rows(
            """
            SELECT stu.id AS stop_time_update_id, stu.trip_update_id, stu.update_index,
                   stu.stop_sequence, stu.stop_id, stu.schedule_relationship,
                   ev.event_type, ev.delay, ev.time, ev.uncertainty
            FROM stop_time_updates stu
            JOIN trip_updates tu ON tu.id = stu.trip_update_id
            LEFT JOIN stop_time_events ev ON ev.stop_time_update_id = stu.id
            WHERE tu.snapshot_id = :snapshot_id
            ORDER BY stu.trip_update_id, stu.update_index, ev.event_type
            """,
            {"snapshot_id": snapshot.id},
        )
        updates = group_stop_time_updates(update_rows)

        records = []
        for e in entities:
            descriptor = trip_descriptors.get(e["trip_id"]) if e["trip_id"] else None
            static_trip = static_trips.get(e["trip_id"]) if e["trip_id"] else None
            route_id = (descriptor or {}).get("route_id") or (static_trip or {}).get("route_id")
            records.append(
                {
                    "entity_id": e["entity_id"],
                    "is_deleted": e["is_deleted"],
                    "trip": trip_summary(descriptor, static_trip),
                    "route": route_summary(routes.get(route_id)) if route_id else None,
                    "vehicle": vehicle_summary(vehicle_descriptors.get(e["vehicle_id"])),
                    "timestamp": e["timestamp"],
                    "delay": e["delay"],
                    "stop_time_updates": updates.get(e["trip_update_id"], []),
                }
            )

        logger.debug(
            "Projected trip updates", snapshot_id=snapshot.id, count=len(records)
        )
        return records

    async def project_vehicle_positions(self, snapshot: SnapshotInfo) -> List[Dict[str, Any]]:
        provider_id = snapshot.provider_id
        entities = await self._rows(
            """
            SELECT e.entity_id, e.is_deleted, e.position,
                   vp.trip_id, vp.vehicle_id, vp.current_stop_sequence, vp.stop_id,
                   vp.current_status, vp.timestamp, vp.congestion_level,
                   vp.occupancy_status, vp.occupancy_percentage
            FROM entities e
            JOIN vehicle_positions vp ON vp.id = e.vehicle_position_id
            WHERE e.snapshot_id = :snapshot_id
            ORDER BY e.position
            """,
            {"snapshot_id": snapshot.id},
        )
        if not entities:
            return []

        trip_descriptors = await self._by_keys(
            "trip_descriptors", "trip_id", provider_id, (e["trip_id"] for e in entities)
        )
        vehicle_descriptors = await self._by_keys(
            "vehicle_descriptors", "vehicle_id", provider_id, (e["vehicle_id"] for e in entities)
        )
        positions = await self._by_keys(
            "positions", "entity_id", provider_id, (e["entity_id"] for e in entities)
        )

        records = [
            {
                "entity_id": e["entity_id"],
                "is_deleted": e["is_deleted"],
                "trip": trip_summary(trip_descriptors.get(e["trip_id"]), None)
                if e["trip_id"]
                else None,
                "vehicle": vehicle_summary(vehicle_descriptors.get(e["vehicle_id"])),
                "position": position_summary(positions.get(e["entity_id"])),
                "current_stop_sequence": e["current_stop_sequence"],
                "stop_id": e["stop_id"],
                "current_status": e["current_status"],
                "timestamp": e["timestamp"],
                "congestion_level": e["congestion_level"],
                "occupancy_status": e["occupancy_status"],
                "occupancy_percentage": e["occupancy_percentage"],
            }
            for e in entities
        ]
        logger.debug(
            "Projected vehicle positions", snapshot_id=snapshot.id, count=len(records)
        )
        return records

    async def project_alerts(self, snapshot: SnapshotInfo) -> List[Dict[str, Any]]:
        stmt = text(
            """
            SELECT e.entity_id, e.is_deleted, e.position, a.id AS alert_id,
                   a.cause, a.effect, a.severity_level, a.url, a.header_text,
                   a.description_text, a.tts_header_text, a.tts_description_text
            FROM entities e
            JOIN alerts a ON a.id = e.alert_id
            WHERE e.snapshot_id = :snapshot_id
            ORDER BY e.position
            """
        ).columns(**{name: JSONB for name in ALERT_TEXT_FIELDS})
        entities = await self._rows(stmt, {"snapshot_id": snapshot.id})
        if not entities:
            return []

        periods = group_by_alert(
            await self._rows(
                """
                SELECT tr.alert_id, tr."start", tr."end"
                FROM time_ranges tr
                JOIN alerts a ON a.id = tr.alert_id
                WHERE a.snapshot_id = :snapshot_id
                ORDER BY tr.alert_id, tr.id
                """,
                {"snapshot_id": snapshot.id},
            )
        )
        selectors = group_by_alert(
            await self._rows(
                """
                SELECT es.alert_id, es.agency_id, es.route_id, es.route_type,
                       es.trip_id, es.direction_id, es.stop_id
                FROM entity_selectors es
                JOIN alerts a ON a.id = es.alert_id
                WHERE a.snapshot_id = :snapshot_id
                ORDER BY es.alert_id, es.id
                """,
                {"snapshot_id": snapshot.id},
            )
        )

        records = []
        for e in entities:
            record = {
                "entity_id": e["entity_id"],
                "is_deleted": e["is_deleted"],
                "cause": e["cause"],
                "effect": e["effect"],
                "severity_level": e["severity_level"],
            }
            record.update({name: e[name] for name in ALERT_TEXT_FIELDS})
            record["active_periods"] = periods.get(e["alert_id"], [])
            record["informed_entities"] = selectors.get(e["alert_id"], [])
            records.append(record)

        logger.debug("Projected alerts", snapshot_id=snapshot.id, count=len(records))
        return records
