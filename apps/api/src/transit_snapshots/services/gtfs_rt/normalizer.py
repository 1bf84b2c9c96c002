"""GTFS-RT normalizer: decoded FeedMessage to a flat snapshot plan.

Planning is pure: it validates the header and turns every feed entity, in
input order, into a ``PlannedEntity`` whose payload is exactly one of the
three typed plans (or none, for a bare deletion marker). Shared descriptors
are collected once per (provider, natural id). ``SnapshotNormalizer`` hands
the plan to the writer, which persists it in one transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Type, TypeVar, Union

from transit_snapshots.errors import IngestError, MalformedHeaderError
from transit_snapshots.logging import get_logger

if TYPE_CHECKING:
    from google.transit import gtfs_realtime_pb2  # type: ignore[import-untyped]
    from sqlalchemy.ext.asyncio import AsyncSession

    from transit_snapshots.services.gtfs_rt.writer import SnapshotWriter

logger = get_logger(__name__)

# Enum lookup maps
INCREMENTALITY = {0: "FULL_DATASET", 1: "DIFFERENTIAL"}

TRIP_SCHEDULE_RELATIONSHIP = {
    0: "SCHEDULED",
    1: "ADDED",
    2: "UNSCHEDULED",
    3: "CANCELED",
    5: "REPLACEMENT",
    6: "DUPLICATED",
    7: "DELETED",
}

STOP_SCHEDULE_RELATIONSHIP = {
    0: "SCHEDULED",
    1: "SKIPPED",
    2: "NO_DATA",
    3: "UNSCHEDULED",
}

VEHICLE_STOP_STATUS = {
    0: "INCOMING_AT",
    1: "STOPPED_AT",
    2: "IN_TRANSIT_TO",
}

CONGESTION_LEVEL = {
    0: "UNKNOWN_CONGESTION_LEVEL",
    1: "RUNNING_SMOOTHLY",
    2: "STOP_AND_GO",
    3: "CONGESTION",
    4: "SEVERE_CONGESTION",
}

OCCUPANCY_STATUS = {
    0: "EMPTY",
    1: "MANY_SEATS_AVAILABLE",
    2: "FEW_SEATS_AVAILABLE",
    3: "STANDING_ROOM_ONLY",
    4: "CRUSHED_STANDING_ROOM_ONLY",
    5: "FULL",
    6: "NOT_ACCEPTING_PASSENGERS",
    7: "NO_DATA_AVAILABLE",
    8: "NOT_BOARDABLE",
}

CAUSE_MAP = {
    1: "UNKNOWN_CAUSE",
    2: "OTHER_CAUSE",
    3: "TECHNICAL_PROBLEM",
    4: "STRIKE",
    5: "DEMONSTRATION",
    6: "ACCIDENT",
    7: "HOLIDAY",
    8: "WEATHER",
    9: "MAINTENANCE",
    10: "CONSTRUCTION",
    11: "POLICE_ACTIVITY",
    12: "MEDICAL_EMERGENCY",
}

EFFECT_MAP = {
    1: "NO_SERVICE",
    2: "REDUCED_SERVICE",
    3: "SIGNIFICANT_DELAYS",
    4: "DETOUR",
    5: "ADDITIONAL_SERVICE",
    6: "MODIFIED_SERVICE",
    7: "OTHER_EFFECT",
    8: "UNKNOWN_EFFECT",
    9: "STOP_MOVED",
    10: "NO_EFFECT",
    11: "ACCESSIBILITY_ISSUE",
}

SEVERITY_LEVEL = {
    1: "UNKNOWN_SEVERITY",
    2: "INFO",
    3: "WARNING",
    4: "SEVERE",
}

EVENT_ARRIVAL = 0
EVENT_DEPARTURE = 1


def _ts_to_dt(unix_ts: int) -> datetime:
    """Convert unix timestamp to timezone-aware datetime."""
    return datetime.fromtimestamp(unix_ts, tz=timezone.utc)


def _opt(message: Any, name: str) -> Any:
    """Return an optional proto2 field's value, or None when unset or unknown."""
    if name not in message.DESCRIPTOR.fields_by_name:
        return None
    return getattr(message, name) if message.HasField(name) else None


def _opt_ts(message: Any, name: str) -> Optional[datetime]:
    value = _opt(message, name)
    return _ts_to_dt(value) if value else None


def _translations(message: Any, name: str) -> Optional[List[Dict[str, Optional[str]]]]:
    """Flatten a TranslatedString field into [{text, language}], or None if unset."""
    if name not in message.DESCRIPTOR.fields_by_name or not message.HasField(name):
        return None
    return [
        {"text": t.text, "language": t.language if t.HasField("language") else None}
        for t in getattr(message, name).translation
    ]


# --- Plan types ---


@dataclass
class StopTimeEventPlan:
    event_type: int
    delay: Optional[int] = None
    time: Optional[datetime] = None
    uncertainty: Optional[int] = None


@dataclass
class StopTimeUpdatePlan:
    update_index: int
    stop_sequence: Optional[int]
    stop_id: Optional[str]
    schedule_relationship: str = "SCHEDULED"
    arrival: Optional[StopTimeEventPlan] = None
    departure: Optional[StopTimeEventPlan] = None

    def events(self) -> List[StopTimeEventPlan]:
        return [e for e in (self.arrival, self.departure) if e is not None]


@dataclass
class TripUpdatePlan:
    kind = "TRIP_UPDATE"

    trip_id: Optional[str]
    vehicle_id: Optional[str]
    timestamp: Optional[datetime] = None
    delay: Optional[int] = None
    stop_time_updates: List[StopTimeUpdatePlan] = field(default_factory=list)


@dataclass
class VehiclePositionPlan:
    kind = "VEHICLE_POSITION"

    trip_id: Optional[str]
    vehicle_id: Optional[str]
    current_stop_sequence: Optional[int] = None
    stop_id: Optional[str] = None
    current_status: str = "IN_TRANSIT_TO"
    timestamp: Optional[datetime] = None
    congestion_level: str = "UNKNOWN_CONGESTION_LEVEL"
    occupancy_status: str = "NO_DATA_AVAILABLE"
    occupancy_percentage: Optional[int] = None


@dataclass
class AlertPlan:
    kind = "ALERT"

    cause: str = "UNKNOWN_CAUSE"
    effect: str = "UNKNOWN_EFFECT"
    severity_level: str = "UNKNOWN_SEVERITY"
    url: Optional[List[Dict[str, Optional[str]]]] = None
    header_text: Optional[List[Dict[str, Optional[str]]]] = None
    description_text: Optional[List[Dict[str, Optional[str]]]] = None
    tts_header_text: Optional[List[Dict[str, Optional[str]]]] = None
    tts_description_text: Optional[List[Dict[str, Optional[str]]]] = None
    active_periods: List[Dict[str, Optional[datetime]]] = field(default_factory=list)
    informed_entities: List[Dict[str, Any]] = field(default_factory=list)


Payload = Union[TripUpdatePlan, VehiclePositionPlan, AlertPlan]
PayloadT = TypeVar("PayloadT", TripUpdatePlan, VehiclePositionPlan, AlertPlan)


@dataclass
class PlannedEntity:
    """One feed entity with exactly one payload, or none for a deletion marker."""

    entity_id: str
    position: int
    is_deleted: bool
    payload: Optional[Payload]

    def __post_init__(self) -> None:
        if self.payload is None and not self.is_deleted:
            msg = f"Entity '{self.entity_id}' has no payload and is not a deletion marker"
            raise ValueError(msg)

    @property
    def kind(self) -> str:
        return self.payload.kind if self.payload is not None else "DELETED"


@dataclass
class SnapshotPlan:
    """Everything needed to materialize one feed poll."""

    provider_id: str
    feed_timestamp: datetime
    gtfs_realtime_version: str
    incrementality: str
    feed_version: Optional[str]
    entities: List[PlannedEntity] = field(default_factory=list)
    trip_descriptors: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    vehicle_descriptors: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    positions: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def entities_count(self) -> int:
        return len(self.entities)

    def payloads_of(self, payload_type: Type[PayloadT]) -> List[Tuple[str, PayloadT]]:
        """(entity id, payload) pairs of one payload type, in feed order."""
        return [
            (e.entity_id, e.payload) for e in self.entities if isinstance(e.payload, payload_type)
        ]


# --- Planning ---


def _header_timestamp(feed: gtfs_realtime_pb2.FeedMessage) -> datetime:
    header = feed.header
    raw = header.timestamp if header.HasField("timestamp") else 0
    if not raw:
        msg = "Feed header has no timestamp"
        raise MalformedHeaderError(msg)
    try:
        return _ts_to_dt(raw)
    except (OverflowError, OSError, ValueError) as exc:
        msg = f"Feed header timestamp {raw} is out of range"
        raise MalformedHeaderError(msg, cause=exc) from exc


def _plan_trip_descriptor(plan: SnapshotPlan, trip: Any) -> Optional[str]:
    trip_id = _opt(trip, "trip_id") or None
    if trip_id is None:
        return None
    plan.trip_descriptors.setdefault(
        trip_id,
        {
            "provider_id": plan.provider_id,
            "trip_id": trip_id,
            "route_id": _opt(trip, "route_id") or None,
            "direction_id": _opt(trip, "direction_id"),
            "schedule_relationship": TRIP_SCHEDULE_RELATIONSHIP.get(
                trip.schedule_relationship, "SCHEDULED"
            ),
            "start_date": _opt(trip, "start_date") or None,
            "start_time": _opt(trip, "start_time") or None,
        },
    )
    return trip_id


def _plan_vehicle_descriptor(plan: SnapshotPlan, vehicle: Any) -> Optional[str]:
    vehicle_id = _opt(vehicle, "id") or None
    if vehicle_id is None:
        return None
    plan.vehicle_descriptors.setdefault(
        vehicle_id,
        {
            "provider_id": plan.provider_id,
            "vehicle_id": vehicle_id,
            "label": _opt(vehicle, "label") or None,
            "license_plate": _opt(vehicle, "license_plate") or None,
        },
    )
    return vehicle_id


def _plan_event(event: Any, event_type: int) -> StopTimeEventPlan:
    return StopTimeEventPlan(
        event_type=event_type,
        delay=_opt(event, "delay"),
        time=_opt_ts(event, "time"),
        uncertainty=_opt(event, "uncertainty"),
    )


def _plan_trip_update(plan: SnapshotPlan, tu: Any) -> TripUpdatePlan:
    trip_id = _plan_trip_descriptor(plan, tu.trip) if tu.HasField("trip") else None
    vehicle_id = _plan_vehicle_descriptor(plan, tu.vehicle) if tu.HasField("vehicle") else None

    updates = []
    for index, stu in enumerate(tu.stop_time_update):
        updates.append(
            StopTimeUpdatePlan(
                update_index=index,
                stop_sequence=_opt(stu, "stop_sequence"),
                stop_id=_opt(stu, "stop_id") or None,
                schedule_relationship=STOP_SCHEDULE_RELATIONSHIP.get(
                    stu.schedule_relationship, "SCHEDULED"
                ),
                arrival=_plan_event(stu.arrival, EVENT_ARRIVAL)
                if stu.HasField("arrival")
                else None,
                departure=_plan_event(stu.departure, EVENT_DEPARTURE)
                if stu.HasField("departure")
                else None,
            )
        )

    return TripUpdatePlan(
        trip_id=trip_id,
        vehicle_id=vehicle_id,
        timestamp=_opt_ts(tu, "timestamp"),
        delay=_opt(tu, "delay"),
        stop_time_updates=updates,
    )


def _plan_vehicle_position(plan: SnapshotPlan, entity_id: str, vp: Any) -> VehiclePositionPlan:
    trip_id = _plan_trip_descriptor(plan, vp.trip) if vp.HasField("trip") else None
    vehicle_id = _plan_vehicle_descriptor(plan, vp.vehicle) if vp.HasField("vehicle") else None

    if vp.HasField("position"):
        pos = vp.position
        plan.positions.setdefault(
            entity_id,
            {
                "provider_id": plan.provider_id,
                "entity_id": entity_id,
                "latitude": pos.latitude,
                "longitude": pos.longitude,
                "bearing": _opt(pos, "bearing"),
                "odometer": _opt(pos, "odometer"),
                "speed": _opt(pos, "speed"),
            },
        )

    return VehiclePositionPlan(
        trip_id=trip_id,
        vehicle_id=vehicle_id,
        current_stop_sequence=_opt(vp, "current_stop_sequence"),
        stop_id=_opt(vp, "stop_id") or None,
        current_status=VEHICLE_STOP_STATUS.get(vp.current_status, "IN_TRANSIT_TO"),
        timestamp=_opt_ts(vp, "timestamp"),
        congestion_level=CONGESTION_LEVEL.get(vp.congestion_level, "UNKNOWN_CONGESTION_LEVEL"),
        occupancy_status=OCCUPANCY_STATUS.get(vp.occupancy_status, "NO_DATA_AVAILABLE")
        if vp.HasField("occupancy_status")
        else "NO_DATA_AVAILABLE",
        occupancy_percentage=_opt(vp, "occupancy_percentage"),
    )


def _plan_alert(alert: Any) -> AlertPlan:
    active_periods = [
        {"start": _opt_ts(period, "start"), "end": _opt_ts(period, "end")}
        for period in alert.active_period
    ]
    informed_entities = [
        {
            "agency_id": _opt(ie, "agency_id") or None,
            "route_id": _opt(ie, "route_id") or None,
            "route_type": _opt(ie, "route_type"),
            "trip_id": (_opt(ie.trip, "trip_id") or None) if ie.HasField("trip") else None,
            "direction_id": _opt(ie, "direction_id"),
            "stop_id": _opt(ie, "stop_id") or None,
        }
        for ie in alert.informed_entity
    ]

    return AlertPlan(
        cause=CAUSE_MAP.get(alert.cause, "UNKNOWN_CAUSE"),
        effect=EFFECT_MAP.get(alert.effect, "UNKNOWN_EFFECT"),
        severity_level=SEVERITY_LEVEL.get(alert.severity_level, "UNKNOWN_SEVERITY"),
        url=_translations(alert, "url"),
        header_text=_translations(alert, "header_text"),
        description_text=_translations(alert, "description_text"),
        tts_header_text=_translations(alert, "tts_header_text"),
        tts_description_text=_translations(alert, "tts_description_text"),
        active_periods=active_periods,
        informed_entities=informed_entities,
    )


def plan_snapshot(provider_id: str, feed: gtfs_realtime_pb2.FeedMessage) -> SnapshotPlan:
    """Validate the header and flatten every entity into a SnapshotPlan.

    Raises:
        MalformedHeaderError: Header timestamp missing, zero or out of range.
        IngestError: Two entities share an id within the feed, or an entity
            carries a timestamp outside the representable range.
    """
    header = feed.header
    plan = SnapshotPlan(
        provider_id=provider_id,
        feed_timestamp=_header_timestamp(feed),
        gtfs_realtime_version=header.gtfs_realtime_version or "2.0",
        incrementality=INCREMENTALITY.get(header.incrementality, "FULL_DATASET"),
        feed_version=_opt(header, "feed_version") or None,
    )

    seen: set[str] = set()
    skipped = 0

    for entity in feed.entity:
        entity_id = entity.id
        if entity_id in seen:
            msg = f"Duplicate entity id '{entity_id}' in feed"
            raise IngestError(msg)
        seen.add(entity_id)

        present = [
            name for name in ("trip_update", "vehicle", "alert") if entity.HasField(name)
        ]
        if len(present) > 1:
            logger.warning(
                "Entity carries more than one payload, keeping the first",
                provider_id=provider_id,
                entity_id=entity_id,
                payloads=present,
            )

        is_deleted = entity.is_deleted if entity.HasField("is_deleted") else False
        payload: Optional[Payload] = None
        if present:
            kind = present[0]
            try:
                if kind == "trip_update":
                    payload = _plan_trip_update(plan, entity.trip_update)
                elif kind == "vehicle":
                    payload = _plan_vehicle_position(plan, entity_id, entity.vehicle)
                else:
                    payload = _plan_alert(entity.alert)
            except (OverflowError, OSError, ValueError) as exc:
                msg = f"Entity '{entity_id}' carries an out-of-range value: {exc}"
                raise IngestError(msg, cause=exc) from exc
        elif not is_deleted:
            skipped += 1
            logger.warning(
                "Skipping entity without a supported payload",
                provider_id=provider_id,
                entity_id=entity_id,
            )
            continue

        plan.entities.append(
            PlannedEntity(
                entity_id=entity_id,
                position=len(plan.entities),
                is_deleted=is_deleted,
                payload=payload,
            )
        )

    logger.info(
        "Snapshot planned",
        provider_id=provider_id,
        feed_timestamp=plan.feed_timestamp.isoformat(),
        entities=plan.entities_count,
        skipped=skipped,
        trip_descriptors=len(plan.trip_descriptors),
        vehicle_descriptors=len(plan.vehicle_descriptors),
        positions=len(plan.positions),
    )
    return plan


class SnapshotNormalizer:
    """Normalizes one decoded feed into a finished snapshot."""

    def __init__(self, writer: SnapshotWriter) -> None:
        self._writer = writer

    async def normalize(
        self,
        session: AsyncSession,
        provider_id: str,
        feed: gtfs_realtime_pb2.FeedMessage,
        provider_name: str | None = None,
    ) -> int:
        """Plan and atomically write the feed; return the new snapshot id.

        Raises:
            MalformedHeaderError: Invalid header, nothing written.
            DuplicateSnapshotError: Same (provider, feed timestamp) already stored.
            IngestError: Any write failure; the unit of work was rolled back.
        """
        plan = plan_snapshot(provider_id, feed)
        return await self._writer.write(session, plan, provider_name=provider_name)
