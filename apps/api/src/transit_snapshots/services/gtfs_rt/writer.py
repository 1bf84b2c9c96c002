"""Snapshot writer: persists a SnapshotPlan in a single transaction.

All inserts for one feed poll run inside one unit of work and are batched per
table. The snapshot row is created unfinished and flipped to ``finished`` as
the last statement before commit; any failure rolls the whole unit back.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import text

from transit_snapshots.errors import DuplicateSnapshotError, IngestError
from transit_snapshots.logging import get_logger
from transit_snapshots.services.gtfs_rt.normalizer import (
    AlertPlan,
    SnapshotPlan,
    TripUpdatePlan,
    VehiclePositionPlan,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 500

# Table definitions for batch insert
_TABLE_DEFS: Dict[str, Dict[str, Any]] = {
    "trip_descriptors": {
        "columns": (
            "provider_id",
            "trip_id",
            "route_id",
            "direction_id",
            "schedule_relationship",
            "start_date",
            "start_time",
        ),
        "conflict_cols": ("provider_id", "trip_id"),
    },
    "vehicle_descriptors": {
        "columns": ("provider_id", "vehicle_id", "label", "license_plate"),
        "conflict_cols": ("provider_id", "vehicle_id"),
    },
    "positions": {
        "columns": (
            "provider_id",
            "entity_id",
            "latitude",
            "longitude",
            "bearing",
            "odometer",
            "speed",
        ),
        "conflict_cols": ("provider_id", "entity_id"),
    },
    "trip_updates": {
        "columns": (
            "snapshot_id",
            "provider_id",
            "entity_id",
            "trip_id",
            "vehicle_id",
            "timestamp",
            "delay",
        ),
        "returning": ("id", "entity_id"),
    },
    "vehicle_positions": {
        "columns": (
            "snapshot_id",
            "provider_id",
            "entity_id",
            "trip_id",
            "vehicle_id",
            "current_stop_sequence",
            "stop_id",
            "current_status",
            "timestamp",
            "congestion_level",
            "occupancy_status",
            "occupancy_percentage",
        ),
        "returning": ("id", "entity_id"),
    },
    "alerts": {
        "columns": (
            "snapshot_id",
            "provider_id",
            "entity_id",
            "cause",
            "effect",
            "severity_level",
            "url",
            "header_text",
            "description_text",
            "tts_header_text",
            "tts_description_text",
        ),
        "json_cols": (
            "url",
            "header_text",
            "description_text",
            "tts_header_text",
            "tts_description_text",
        ),
        "returning": ("id", "entity_id"),
    },
    "stop_time_updates": {
        "columns": (
            "trip_update_id",
            "update_index",
            "stop_sequence",
            "stop_id",
            "schedule_relationship",
        ),
        "returning": ("id", "trip_update_id", "update_index"),
    },
    "stop_time_events": {
        "columns": ("stop_time_update_id", "event_type", "delay", "time", "uncertainty"),
    },
    "time_ranges": {
        "columns": ("alert_id", "start", "end"),
    },
    "entity_selectors": {
        "columns": (
            "alert_id",
            "agency_id",
            "route_id",
            "route_type",
            "trip_id",
            "direction_id",
            "stop_id",
        ),
    },
    "entities": {
        "columns": (
            "snapshot_id",
            "entity_id",
            "position",
            "is_deleted",
            "kind",
            "trip_update_id",
            "vehicle_position_id",
            "alert_id",
        ),
    },
}


def _quote(column: str) -> str:
    return f'"{column}"'


def _by_key(rows: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [rows[key] for key in sorted(rows)]


class SnapshotWriter:
    """Batch writer for one snapshot's rows."""

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self.batch_size = batch_size

    async def write(
        self,
        session: AsyncSession,
        plan: SnapshotPlan,
        provider_name: str | None = None,
    ) -> int:
        """Write the plan as one unit of work and return the snapshot id.

        Raises:
            DuplicateSnapshotError: A snapshot already exists for
                (provider, feed timestamp); nothing was written.
            IngestError: Any other failure; the transaction was rolled back.
        """
        try:
            snapshot_id = await self._write_unit(session, plan, provider_name)
            await session.commit()
        except DuplicateSnapshotError:
            await session.rollback()
            logger.info(
                "Snapshot already ingested",
                provider_id=plan.provider_id,
                feed_timestamp=plan.feed_timestamp.isoformat(),
            )
            raise
        except Exception as exc:
            await session.rollback()
            logger.error(
                "Snapshot write failed, rolled back",
                provider_id=plan.provider_id,
                feed_timestamp=plan.feed_timestamp.isoformat(),
                error=str(exc),
            )
            msg = f"Failed to write snapshot for provider '{plan.provider_id}'"
            raise IngestError(msg, cause=exc) from exc

        logger.info(
            "Snapshot written",
            provider_id=plan.provider_id,
            snapshot_id=snapshot_id,
            feed_timestamp=plan.feed_timestamp.isoformat(),
            entities=plan.entities_count,
        )
        return snapshot_id

    async def delete_snapshot(self, session: AsyncSession, snapshot_id: int) -> bool:
        """Delete a snapshot and, by cascade, every row it owns."""
        result = await session.execute(
            text("DELETE FROM snapshots WHERE id = :snapshot_id"),
            {"snapshot_id": snapshot_id},
        )
        await session.commit()
        deleted = bool(result.rowcount)
        logger.info("Snapshot deleted", snapshot_id=snapshot_id, deleted=deleted)
        return deleted

    async def reclaim_unfinished(
        self,
        session: AsyncSession,
        older_than: datetime,
        provider_id: str | None = None,
    ) -> List[int]:
        """Delete unfinished snapshots created before ``older_than``.

        Only rows left behind by a crashed ingest can match: an in-flight
        unit of work is not visible outside its own transaction.
        """
        sql = "DELETE FROM snapshots WHERE finished = false AND created_at < :cutoff"
        params: Dict[str, Any] = {"cutoff": older_than}
        if provider_id is not None:
            sql += " AND provider_id = :provider_id"
            params["provider_id"] = provider_id
        result = await session.execute(text(sql + " RETURNING id"), params)
        ids = [row[0] for row in result.fetchall()]
        await session.commit()
        logger.info(
            "Unfinished snapshots reclaimed",
            provider_id=provider_id,
            cutoff=older_than.isoformat(),
            count=len(ids),
        )
        return ids

    # --- Unit of work ---

    async def _write_unit(
        self,
        session: AsyncSession,
        plan: SnapshotPlan,
        provider_name: str | None,
    ) -> int:
        await session.execute(
            text(
                "INSERT INTO providers (id, name) VALUES (:id, :name) "
                "ON CONFLICT (id) DO NOTHING"
            ),
            {"id": plan.provider_id, "name": provider_name or plan.provider_id},
        )

        result = await session.execute(
            text("""
                INSERT INTO snapshots
                    (provider_id, feed_timestamp, gtfs_realtime_version, incrementality,
                     feed_version, entities_count, finished)
                VALUES
                    (:provider_id, :feed_timestamp, :gtfs_realtime_version, :incrementality,
                     :feed_version, :entities_count, false)
                ON CONFLICT (provider_id, feed_timestamp) DO NOTHING
                RETURNING id
            """),
            {
                "provider_id": plan.provider_id,
                "feed_timestamp": plan.feed_timestamp,
                "gtfs_realtime_version": plan.gtfs_realtime_version,
                "incrementality": plan.incrementality,
                "feed_version": plan.feed_version,
                "entities_count": plan.entities_count,
            },
        )
        snapshot_id = result.scalar_one_or_none()
        if snapshot_id is None:
            raise DuplicateSnapshotError(plan.provider_id, plan.feed_timestamp)

        # Shared rows are locked in key order across concurrent ingests
        await self._insert(session, "trip_descriptors", _by_key(plan.trip_descriptors))
        await self._insert(session, "vehicle_descriptors", _by_key(plan.vehicle_descriptors))
        await self._insert(session, "positions", _by_key(plan.positions))

        trip_update_ids = await self._write_trip_updates(session, snapshot_id, plan)
        vehicle_position_ids = await self._write_vehicle_positions(session, snapshot_id, plan)
        alert_ids = await self._write_alerts(session, snapshot_id, plan)

        entity_rows = [
            {
                "snapshot_id": snapshot_id,
                "entity_id": entity.entity_id,
                "position": entity.position,
                "is_deleted": entity.is_deleted,
                "kind": entity.kind,
                "trip_update_id": trip_update_ids.get(entity.entity_id)
                if entity.kind == "TRIP_UPDATE"
                else None,
                "vehicle_position_id": vehicle_position_ids.get(entity.entity_id)
                if entity.kind == "VEHICLE_POSITION"
                else None,
                "alert_id": alert_ids.get(entity.entity_id) if entity.kind == "ALERT" else None,
            }
            for entity in plan.entities
        ]
        await self._insert(session, "entities", entity_rows)

        await session.execute(
            text("UPDATE snapshots SET finished = true WHERE id = :snapshot_id"),
            {"snapshot_id": snapshot_id},
        )
        return int(snapshot_id)

    async def _write_trip_updates(
        self, session: AsyncSession, snapshot_id: int, plan: SnapshotPlan
    ) -> Dict[str, int]:
        trip_updates = plan.payloads_of(TripUpdatePlan)
        rows = []
        for entity_id, tu in trip_updates:
            rows.append(
                {
                    "snapshot_id": snapshot_id,
                    "provider_id": plan.provider_id,
                    "entity_id": entity_id,
                    "trip_id": tu.trip_id,
                    "vehicle_id": tu.vehicle_id,
                    "timestamp": tu.timestamp,
                    "delay": tu.delay,
                }
            )
        returned = await self._insert(session, "trip_updates", rows)
        ids = {row[1]: row[0] for row in returned}

        update_rows = []
        for entity_id, tu in trip_updates:
            for stu in tu.stop_time_updates:
                update_rows.append(
                    {
                        "trip_update_id": ids[entity_id],
                        "update_index": stu.update_index,
                        "stop_sequence": stu.stop_sequence,
                        "stop_id": stu.stop_id,
                        "schedule_relationship": stu.schedule_relationship,
                    }
                )
        returned = await self._insert(session, "stop_time_updates", update_rows)
        update_ids: Dict[Tuple[int, int], int] = {(row[1], row[2]): row[0] for row in returned}

        event_rows = []
        for entity_id, tu in trip_updates:
            for stu in tu.stop_time_updates:
                stu_id = update_ids[(ids[entity_id], stu.update_index)]
                for event in stu.events():
                    event_rows.append(
                        {
                            "stop_time_update_id": stu_id,
                            "event_type": event.event_type,
                            "delay": event.delay,
                            "time": event.time,
                            "uncertainty": event.uncertainty,
                        }
                    )
        await self._insert(session, "stop_time_events", event_rows)
        return ids

    async def _write_vehicle_positions(
        self, session: AsyncSession, snapshot_id: int, plan: SnapshotPlan
    ) -> Dict[str, int]:
        rows = []
        for entity_id, vp in plan.payloads_of(VehiclePositionPlan):
            rows.append(
                {
                    "snapshot_id": snapshot_id,
                    "provider_id": plan.provider_id,
                    "entity_id": entity_id,
                    "trip_id": vp.trip_id,
                    "vehicle_id": vp.vehicle_id,
                    "current_stop_sequence": vp.current_stop_sequence,
                    "stop_id": vp.stop_id,
                    "current_status": vp.current_status,
                    "timestamp": vp.timestamp,
                    "congestion_level": vp.congestion_level,
                    "occupancy_status": vp.occupancy_status,
                    "occupancy_percentage": vp.occupancy_percentage,
                }
            )
        returned = await self._insert(session, "vehicle_positions", rows)
        return {row[1]: row[0] for row in returned}

    async def _write_alerts(
        self, session: AsyncSession, snapshot_id: int, plan: SnapshotPlan
    ) -> Dict[str, int]:
        alerts = plan.payloads_of(AlertPlan)
        rows = []
        for entity_id, alert in alerts:
            rows.append(
                {
                    "snapshot_id": snapshot_id,
                    "provider_id": plan.provider_id,
                    "entity_id": entity_id,
                    "cause": alert.cause,
                    "effect": alert.effect,
                    "severity_level": alert.severity_level,
                    "url": alert.url,
                    "header_text": alert.header_text,
                    "description_text": alert.description_text,
                    "tts_header_text": alert.tts_header_text,
                    "tts_description_text": alert.tts_description_text,
                }
            )
        returned = await self._insert(session, "alerts", rows)
        ids = {row[1]: row[0] for row in returned}

        range_rows = []
        selector_rows = []
        for entity_id, alert in alerts:
            alert_id = ids[entity_id]
            range_rows.extend({"alert_id": alert_id, **period} for period in alert.active_periods)
            selector_rows.extend(
                {"alert_id": alert_id, **selector} for selector in alert.informed_entities
            )
        await self._insert(session, "time_ranges", range_rows)
        await self._insert(session, "entity_selectors", selector_rows)
        return ids

    async def _insert(
        self,
        session: AsyncSession,
        table: str,
        rows: Sequence[Dict[str, Any]],
    ) -> List[Any]:
        """Multi-row INSERT in batches; returns RETURNING rows when defined.

        Does not commit: the caller owns the transaction.
        """
        if not rows:
            return []

        table_def = _TABLE_DEFS[table]
        columns: Tuple[str, ...] = table_def["columns"]
        json_cols = set(table_def.get("json_cols", ()))
        conflict_cols: Optional[Tuple[str, ...]] = table_def.get("conflict_cols")
        returning: Optional[Tuple[str, ...]] = table_def.get("returning")

        column_list = ", ".join(_quote(col) for col in columns)
        returned: List[Any] = []

        for batch_start in range(0, len(rows), self.batch_size):
            batch = rows[batch_start : batch_start + self.batch_size]

            values_sql = ", ".join(
                "("
                + ", ".join(
                    f"CAST(:{col}_{i} AS JSONB)" if col in json_cols else f":{col}_{i}"
                    for col in columns
                )
                + ")"
                for i in range(len(batch))
            )
            params: Dict[str, Any] = {}
            for i, row in enumerate(batch):
                for col in columns:
                    value = row.get(col)
                    if col in json_cols and value is not None:
                        value = json.dumps(value)
                    params[f"{col}_{i}"] = value

            sql = f"INSERT INTO {table} ({column_list}) VALUES {values_sql}"
            if conflict_cols:
                sql += f" ON CONFLICT ({', '.join(conflict_cols)}) DO NOTHING"
            if returning:
                sql += f" RETURNING {', '.join(returning)}"

            result = await session.execute(text(sql), params)
            if returning:
                returned.extend(result.fetchall())

        logger.debug("Batch insert complete", table=table, total_rows=len(rows))
        return returned
