"""Departure board for a station, realtime joined against the schedule.

One joined query pulls every (trip update, stop time update) pair of the
snapshot whose scheduled stop time lands on one of the station's stops; the
time arithmetic, sorting and platform ordering are pure functions.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import bindparam, text

from transit_snapshots.errors import StationNotFoundError
from transit_snapshots.logging import get_logger
from transit_snapshots.services.gtfs_rt.normalizer import EVENT_DEPARTURE
from transit_snapshots.services.schedule.store import ScheduleStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from transit_snapshots.services.snapshots.resolver import SnapshotInfo

logger = get_logger(__name__)

UNKNOWN_DESTINATION = "Unknown"

_DEPARTURES_SQL = """
    SELECT e.position, stu.update_index, stu.stop_sequence,
           td.trip_id,
           st.stop_id, st.departure_time AS scheduled_departure,
           ev.delay AS departure_delay, ev.time AS departure_time,
           t.trip_headsign,
           r.route_id, r.route_short_name, r.route_color, r.route_text_color,
           s.platform_code,
           vd.label AS vehicle_label
    FROM entities e
    JOIN trip_updates tu ON tu.id = e.trip_update_id
    JOIN trip_descriptors td
      ON td.provider_id = tu.provider_id AND td.trip_id = tu.trip_id
    JOIN stop_time_updates stu ON stu.trip_update_id = tu.id
    JOIN stop_times st
      ON st.provider_id = tu.provider_id
     AND st.trip_id = td.trip_id
     AND st.stop_sequence = stu.stop_sequence
    LEFT JOIN stop_time_events ev
      ON ev.stop_time_update_id = stu.id AND ev.event_type = :departure_event
    LEFT JOIN trips t ON t.provider_id = tu.provider_id AND t.trip_id = td.trip_id
    LEFT JOIN routes r
      ON r.provider_id = tu.provider_id AND r.route_id = COALESCE(td.route_id, t.route_id)
    LEFT JOIN stops s ON s.provider_id = st.provider_id AND s.stop_id = st.stop_id
    LEFT JOIN vehicle_descriptors vd
      ON vd.provider_id = tu.provider_id AND vd.vehicle_id = tu.vehicle_id
    WHERE e.snapshot_id = :snapshot_id
      AND st.stop_id IN :stop_ids
    ORDER BY e.position, stu.update_index
"""


@dataclass
class Departure:
    destination: str
    route: Dict[str, Optional[str]]
    platform: Optional[str]
    minutes: Optional[int]
    departure_time: Optional[datetime]
    scheduled_departure: Optional[str]
    delay: int
    vehicle_label: Optional[str]
    stop_sequence: Optional[int]
    trip_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["departure_time"] = (
            self.departure_time.isoformat() if self.departure_time else None
        )
        return data


@dataclass
class DepartureBoard:
    station: str
    platform: Optional[str]
    station_name: Optional[str]
    snapshot_id: int
    timestamp: datetime
    platforms: List[str] = field(default_factory=list)
    departures: List[Departure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "station": self.station,
            "platform": self.platform or "all",
            "station_name": self.station_name,
            "snapshot_id": self.snapshot_id,
            "timestamp": self.timestamp.isoformat(),
            "platforms": list(self.platforms),
            "departures": [d.to_dict() for d in self.departures],
        }


# --- Pure helpers ---


def parse_time_of_day(value: str) -> timedelta:
    """Parse a GTFS ``HH:MM:SS`` offset from midnight; hours may exceed 23."""
    hours, minutes, seconds = (int(part) for part in value.strip().split(":"))
    return timedelta(hours=hours, minutes=minutes, seconds=seconds)


def compute_departure_time(
    event_time: Optional[datetime],
    scheduled_departure: Optional[str],
    delay: Optional[int],
    feed_timestamp: datetime,
    tz: tzinfo = timezone.utc,
) -> Optional[datetime]:
    """Authoritative departure instant, or None when it cannot be known.

    An absolute event time wins. Otherwise the scheduled time of day on the
    feed timestamp's local calendar date, shifted by ``delay`` seconds.
    Offsets past 24:00 land on the following day; the service day never
    rolls back, so a ``24:35:00`` trip seen just after midnight is a day out.
    """
    if event_time is not None:
        return event_time
    if not scheduled_departure or delay is None:
        return None
    try:
        offset = parse_time_of_day(scheduled_departure)
    except ValueError:
        logger.warning("Unparseable scheduled departure", value=scheduled_departure)
        return None
    service_day = feed_timestamp.astimezone(tz).date()
    midnight = datetime(service_day.year, service_day.month, service_day.day, tzinfo=tz)
    return midnight + offset + timedelta(seconds=delay)


def minutes_until(departure_time: Optional[datetime], feed_timestamp: datetime) -> Optional[int]:
    """Whole minutes from the feed timestamp, rounding halves up."""
    if departure_time is None:
        return None
    seconds = (departure_time - feed_timestamp).total_seconds()
    return math.floor(seconds / 60 + 0.5)


def sort_departures(departures: Iterable[Departure]) -> List[Departure]:
    """Ascending by minutes, unknown times last; ties keep scan order."""
    return sorted(departures, key=lambda d: (d.minutes is None, d.minutes or 0))


def _platform_key(code: str) -> Tuple[int, int, str]:
    try:
        return (0, int(code), code)
    except ValueError:
        return (1, 0, code)


def sort_platform_codes(codes: Iterable[Optional[str]]) -> List[str]:
    """Distinct non-empty codes: integers first numerically, then the rest."""
    return sorted({c for c in codes if c}, key=_platform_key)


def _route(row: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return {
        "route_id": row.get("route_id"),
        "route_name": row.get("route_short_name"),
        "color": row.get("route_color"),
        "text_color": row.get("route_text_color"),
    }


def build_departure(
    row: Dict[str, Any], feed_timestamp: datetime, tz: tzinfo = timezone.utc
) -> Departure:
    """One board line from a joined (trip update, stop time update) row."""
    delay = row.get("departure_delay")
    departure_time = compute_departure_time(
        row.get("departure_time"), row.get("scheduled_departure"), delay, feed_timestamp, tz
    )
    return Departure(
        destination=row.get("trip_headsign") or UNKNOWN_DESTINATION,
        route=_route(row),
        platform=row.get("platform_code"),
        minutes=minutes_until(departure_time, feed_timestamp),
        departure_time=departure_time,
        scheduled_departure=row.get("scheduled_departure"),
        delay=delay or 0,
        vehicle_label=row.get("vehicle_label"),
        stop_sequence=row.get("stop_sequence"),
        trip_id=row.get("trip_id"),
    )


class DepartureCompositor:
    """Composes departure boards from a snapshot and the static schedule."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._schedule = ScheduleStore(session)

    async def departures(
        self,
        provider_id: str,
        station_code: str,
        platform: str | None,
        snapshot: SnapshotInfo,
        tz: str | tzinfo = "UTC",
    ) -> DepartureBoard:
        """Departures at a station (optionally one platform) for a snapshot.

        Raises:
            StationNotFoundError: No static stop matches the station/platform.
        """
        zone = ZoneInfo(tz) if isinstance(tz, str) else tz

        station_stops = await self._schedule.stops_by_zone(provider_id, station_code)
        selected = (
            [s for s in station_stops if s.get("platform_code") == platform]
            if platform is not None
            else station_stops
        )
        if not selected:
            suffix = f" platform {platform}" if platform is not None else ""
            msg = f"Station {station_code}{suffix} not found"
            raise StationNotFoundError(msg)

        stmt = text(_DEPARTURES_SQL).bindparams(bindparam("stop_ids", expanding=True))
        result = await self._session.execute(
            stmt,
            {
                "snapshot_id": snapshot.id,
                "stop_ids": [s["stop_id"] for s in selected],
                "departure_event": EVENT_DEPARTURE,
            },
        )
        rows = [dict(row._mapping) for row in result.fetchall()]
        departures = sort_departures(
            build_departure(row, snapshot.feed_timestamp, zone) for row in rows
        )

        logger.info(
            "Departure board composed",
            provider_id=provider_id,
            station=station_code,
            platform=platform,
            snapshot_id=snapshot.id,
            departures=len(departures),
        )
        return DepartureBoard(
            station=station_code,
            platform=platform,
            station_name=selected[0].get("stop_name"),
            snapshot_id=snapshot.id,
            timestamp=snapshot.feed_timestamp,
            platforms=sort_platform_codes(s.get("platform_code") for s in station_stops),
            departures=departures,
        )
