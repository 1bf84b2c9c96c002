"""Tests for GTFS-RT snapshot planning and the normalizer entry point."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from google.transit import gtfs_realtime_pb2

from transit_snapshots.errors import IngestError, MalformedHeaderError
from transit_snapshots.services.gtfs_rt.normalizer import (
    EVENT_DEPARTURE,
    AlertPlan,
    PlannedEntity,
    SnapshotNormalizer,
    TripUpdatePlan,
    VehiclePositionPlan,
    plan_snapshot,
)

from .fixtures.gtfs_rt_fixture import (
    FEED_TS,
    build_alert_message,
    build_mixed_message,
    build_multi_entity_message,
    build_trip_update_message,
    build_vehicle_position_message,
)


class TestHeaderValidation:
    def test_missing_timestamp_raises(self) -> None:
        feed = gtfs_realtime_pb2.FeedMessage()
        feed.header.gtfs_realtime_version = "2.0"
        with pytest.raises(MalformedHeaderError):
            plan_snapshot("bart", feed)

    def test_zero_timestamp_raises(self) -> None:
        feed = gtfs_realtime_pb2.FeedMessage()
        feed.header.gtfs_realtime_version = "2.0"
        feed.header.timestamp = 0
        with pytest.raises(MalformedHeaderError):
            plan_snapshot("bart", feed)

    def test_out_of_range_timestamp_raises(self) -> None:
        feed = gtfs_realtime_pb2.FeedMessage()
        feed.header.gtfs_realtime_version = "2.0"
        feed.header.timestamp = 10**15
        with pytest.raises(MalformedHeaderError):
            plan_snapshot("bart", feed)

    def test_malformed_header_is_an_ingest_error(self) -> None:
        assert issubclass(MalformedHeaderError, IngestError)

    def test_header_fields(self) -> None:
        plan = plan_snapshot("bart", build_trip_update_message())
        assert plan.provider_id == "bart"
        assert plan.feed_timestamp == datetime.fromtimestamp(FEED_TS, tz=timezone.utc)
        assert plan.gtfs_realtime_version == "2.0"
        assert plan.incrementality == "FULL_DATASET"


class TestEntityPlanning:
    def test_mixed_feed_kinds_in_order(self) -> None:
        plan = plan_snapshot("bart", build_mixed_message())

        assert [e.entity_id for e in plan.entities] == ["tu_1", "vp_1", "alert_1", "gone_1"]
        assert [e.position for e in plan.entities] == [0, 1, 2, 3]
        assert [e.kind for e in plan.entities] == [
            "TRIP_UPDATE",
            "VEHICLE_POSITION",
            "ALERT",
            "DELETED",
        ]
        assert plan.entities_count == 4

    def test_deletion_marker_has_no_payload(self) -> None:
        plan = plan_snapshot("bart", build_mixed_message())
        deleted = plan.entities[-1]
        assert deleted.is_deleted is True
        assert deleted.payload is None

    def test_shared_descriptors_collected_once(self) -> None:
        plan = plan_snapshot("bart", build_mixed_message())

        assert set(plan.trip_descriptors) == {"trip_1", "trip_2"}
        assert set(plan.vehicle_descriptors) == {"car_1", "car_2"}
        assert set(plan.positions) == {"vp_1"}
        assert plan.trip_descriptors["trip_1"]["route_id"] == "YELLOW-N"
        assert plan.trip_descriptors["trip_1"]["schedule_relationship"] == "SCHEDULED"
        assert plan.vehicle_descriptors["car_1"]["label"] == "car_1-label"

    def test_trip_update_payload(self) -> None:
        plan = plan_snapshot("bart", build_mixed_message())
        payload = plan.entities[0].payload

        assert isinstance(payload, TripUpdatePlan)
        assert payload.trip_id == "trip_1"
        assert payload.vehicle_id == "car_1"
        assert len(payload.stop_time_updates) == 1

        update = payload.stop_time_updates[0]
        assert update.update_index == 0
        assert update.stop_sequence == 4
        assert update.stop_id == "M16-1"
        assert update.arrival is None
        assert update.departure is not None
        assert update.departure.event_type == EVENT_DEPARTURE
        assert update.departure.delay == 120
        assert update.departure.time is None
        assert update.events() == [update.departure]

    def test_stop_time_update_order_is_kept(self) -> None:
        plan = plan_snapshot("bart", build_trip_update_message())
        payload = plan.entities[0].payload
        assert isinstance(payload, TripUpdatePlan)
        assert [u.stop_id for u in payload.stop_time_updates] == ["stop_A", "stop_B"]
        assert [u.update_index for u in payload.stop_time_updates] == [0, 1]

    def test_vehicle_position_enums_by_name(self) -> None:
        plan = plan_snapshot("bart", build_vehicle_position_message())
        payload = plan.entities[0].payload

        assert isinstance(payload, VehiclePositionPlan)
        assert payload.current_status == "STOPPED_AT"
        assert payload.occupancy_status == "FEW_SEATS_AVAILABLE"
        assert payload.current_stop_sequence == 3
        assert plan.positions["vp_veh_001"]["bearing"] == pytest.approx(90.0)

    def test_alert_payload(self) -> None:
        plan = plan_snapshot(
            "bart", build_alert_message(active_start=FEED_TS, stop_id="12TH")
        )
        payload = plan.entities[0].payload

        assert isinstance(payload, AlertPlan)
        assert payload.cause == "TECHNICAL_PROBLEM"
        assert payload.effect == "SIGNIFICANT_DELAYS"
        assert payload.header_text == [{"text": "Delays on the Yellow line", "language": "en"}]
        assert payload.url is None
        assert payload.active_periods == [
            {"start": datetime.fromtimestamp(FEED_TS, tz=timezone.utc), "end": None}
        ]
        assert payload.informed_entities[0]["route_id"] == "YELLOW-N"
        assert payload.informed_entities[0]["stop_id"] == "12TH"

    def test_translation_without_language(self) -> None:
        plan = plan_snapshot("bart", build_mixed_message())
        payload = plan.entities[2].payload
        assert isinstance(payload, AlertPlan)
        assert payload.header_text == [{"text": "Track work", "language": None}]

    def test_duplicate_entity_id_raises(self) -> None:
        feed = build_multi_entity_message(count=2)
        feed.entity[1].id = feed.entity[0].id
        with pytest.raises(IngestError, match="Duplicate entity id"):
            plan_snapshot("bart", feed)

    def test_entity_without_payload_is_skipped(self) -> None:
        feed = build_multi_entity_message(count=1)
        feed.entity.add().id = "empty"
        plan = plan_snapshot("bart", feed)
        assert [e.entity_id for e in plan.entities] == ["tu_trip_000"]

    def test_first_payload_wins(self) -> None:
        feed = build_trip_update_message()
        feed.entity[0].alert.cause = 2
        plan = plan_snapshot("bart", feed)
        assert plan.entities[0].kind == "TRIP_UPDATE"

    def test_planned_entity_requires_payload_unless_deleted(self) -> None:
        with pytest.raises(ValueError):
            PlannedEntity(entity_id="x", position=0, is_deleted=False, payload=None)

    def test_payloads_of(self) -> None:
        plan = plan_snapshot("bart", build_mixed_message())
        pairs = plan.payloads_of(AlertPlan)
        assert [entity_id for entity_id, _ in pairs] == ["alert_1"]
        assert all(isinstance(payload, AlertPlan) for _, payload in pairs)

    @pytest.mark.parametrize(
        "corrupt",
        [
            lambda feed: setattr(
                feed.entity[0].trip_update.stop_time_update[0].departure, "time", 2**62
            ),
            lambda feed: setattr(feed.entity[0].trip_update, "timestamp", 2**62),
        ],
        ids=["stop_time_event", "trip_update_timestamp"],
    )
    def test_out_of_range_entity_timestamp_is_an_ingest_error(self, corrupt) -> None:
        feed = build_trip_update_message()
        corrupt(feed)
        with pytest.raises(IngestError, match="tu_trip_001") as exc_info:
            plan_snapshot("bart", feed)
        assert isinstance(exc_info.value.cause, (OverflowError, OSError, ValueError))

    def test_out_of_range_vehicle_timestamp_is_an_ingest_error(self) -> None:
        feed = build_vehicle_position_message()
        feed.entity[0].vehicle.timestamp = 2**62
        with pytest.raises(IngestError, match="vp_veh_001"):
            plan_snapshot("bart", feed)

    def test_out_of_range_active_period_is_an_ingest_error(self) -> None:
        feed = build_alert_message(active_start=FEED_TS)
        feed.entity[0].alert.active_period[0].end = 2**62
        with pytest.raises(IngestError, match="alert_001"):
            plan_snapshot("bart", feed)


class TestSnapshotNormalizer:
    @pytest.mark.asyncio
    async def test_normalize_writes_plan(self) -> None:
        writer = MagicMock()
        writer.write = AsyncMock(return_value=42)
        session = AsyncMock()

        snapshot_id = await SnapshotNormalizer(writer).normalize(
            session, "bart", build_mixed_message(), provider_name="BART"
        )

        assert snapshot_id == 42
        writer.write.assert_awaited_once()
        args, kwargs = writer.write.call_args
        assert args[0] is session
        assert args[1].entities_count == 4
        assert kwargs["provider_name"] == "BART"

    @pytest.mark.asyncio
    async def test_malformed_header_writes_nothing(self) -> None:
        writer = MagicMock()
        writer.write = AsyncMock()
        feed = gtfs_realtime_pb2.FeedMessage()

        with pytest.raises(MalformedHeaderError):
            await SnapshotNormalizer(writer).normalize(AsyncMock(), "bart", feed)

        writer.write.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_out_of_range_entity_value_writes_nothing(self) -> None:
        writer = MagicMock()
        writer.write = AsyncMock()
        feed = build_trip_update_message()
        feed.entity[0].trip_update.stop_time_update[0].departure.time = 2**62

        with pytest.raises(IngestError):
            await SnapshotNormalizer(writer).normalize(AsyncMock(), "bart", feed)

        writer.write.assert_not_awaited()
