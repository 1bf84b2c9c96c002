"""Snapshot resolution: which stored poll answers a read request.

Readers only ever see finished snapshots through ``closest`` and
``latest_finished``; ``by_id`` returns whatever is stored, finished or not.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from sqlalchemy import text

from transit_snapshots.config import get_settings
from transit_snapshots.errors import (
    ProviderMismatchError,
    SnapshotNotFoundError,
    UnknownProviderError,
)
from transit_snapshots.logging import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

DEFAULT_WINDOW_SEC = 60

_SNAPSHOT_COLUMNS = (
    "id, provider_id, feed_timestamp, gtfs_realtime_version, incrementality, "
    "feed_version, entities_count, finished, created_at"
)


@dataclass
class SnapshotInfo:
    id: int
    provider_id: str
    feed_timestamp: datetime
    gtfs_realtime_version: str
    incrementality: str
    feed_version: Optional[str]
    entities_count: int
    finished: bool
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["feed_timestamp"] = self.feed_timestamp.isoformat()
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        return data


def _to_info(row: Any) -> SnapshotInfo:
    return SnapshotInfo(
        id=row.id,
        provider_id=row.provider_id,
        feed_timestamp=row.feed_timestamp,
        gtfs_realtime_version=row.gtfs_realtime_version,
        incrementality=row.incrementality,
        feed_version=row.feed_version,
        entities_count=row.entities_count,
        finished=row.finished,
        created_at=row.created_at,
    )


def pick_closest(
    candidates: Sequence[SnapshotInfo], instant: datetime, window: timedelta
) -> Optional[SnapshotInfo]:
    """Return the finished candidate nearest to ``instant`` within ``window``.

    Ties on distance go to the later feed timestamp.
    """
    in_window = [
        c
        for c in candidates
        if c.finished and abs(c.feed_timestamp - instant) <= window
    ]
    if not in_window:
        return None
    return min(
        in_window,
        key=lambda c: (abs(c.feed_timestamp - instant), -c.feed_timestamp.timestamp()),
    )


class SnapshotResolver:
    """Read-only snapshot lookups for one session."""

    def __init__(self, session: AsyncSession, window_sec: int = DEFAULT_WINDOW_SEC) -> None:
        self._session = session
        self._window = timedelta(seconds=window_sec)

    async def ensure_provider(self, provider_id: str) -> None:
        result = await self._session.execute(
            text("SELECT 1 FROM providers WHERE id = :provider_id"),
            {"provider_id": provider_id},
        )
        if result.first() is None:
            msg = f"Unknown provider '{provider_id}'"
            raise UnknownProviderError(msg)

    async def closest(
        self, provider_id: str, instant: datetime, window: timedelta | None = None
    ) -> SnapshotInfo:
        """Finished snapshot nearest to ``instant`` within the window.

        Raises:
            SnapshotNotFoundError: No finished snapshot in the window.
        """
        window = window if window is not None else self._window
        result = await self._session.execute(
            text(f"""
                SELECT {_SNAPSHOT_COLUMNS}
                FROM snapshots
                WHERE provider_id = :provider_id
                  AND finished = true
                  AND feed_timestamp BETWEEN :lower AND :upper
                ORDER BY feed_timestamp DESC
            """),
            {
                "provider_id": provider_id,
                "lower": instant - window,
                "upper": instant + window,
            },
        )
        candidates = [_to_info(row) for row in result.fetchall()]
        snapshot = pick_closest(candidates, instant, window)
        if snapshot is None:
            msg = (
                f"No snapshot for provider '{provider_id}' within "
                f"{int(window.total_seconds())}s of {instant.isoformat()}"
            )
            raise SnapshotNotFoundError(msg)

        logger.debug(
            "Resolved closest snapshot",
            provider_id=provider_id,
            snapshot_id=snapshot.id,
            candidates=len(candidates),
        )
        return snapshot

    async def latest_finished(self, provider_id: str) -> SnapshotInfo:
        """Most recent finished snapshot for the provider."""
        result = await self._session.execute(
            text(f"""
                SELECT {_SNAPSHOT_COLUMNS}
                FROM snapshots
                WHERE provider_id = :provider_id AND finished = true
                ORDER BY feed_timestamp DESC
                LIMIT 1
            """),
            {"provider_id": provider_id},
        )
        row = result.first()
        if row is None:
            msg = f"No finished snapshot for provider '{provider_id}'"
            raise SnapshotNotFoundError(msg)
        return _to_info(row)

    async def by_id(
        self, snapshot_id: int, expected_provider: str | None = None
    ) -> SnapshotInfo:
        """Direct lookup; may return an unfinished snapshot.

        Raises:
            SnapshotNotFoundError: No such id.
            ProviderMismatchError: The snapshot belongs to another provider.
        """
        result = await self._session.execute(
            text(f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots WHERE id = :snapshot_id"),
            {"snapshot_id": snapshot_id},
        )
        row = result.first()
        if row is None:
            msg = f"Snapshot {snapshot_id} not found"
            raise SnapshotNotFoundError(msg)
        snapshot = _to_info(row)
        if expected_provider is not None and snapshot.provider_id != expected_provider:
            msg = (
                f"Snapshot {snapshot_id} belongs to provider '{snapshot.provider_id}', "
                f"not '{expected_provider}'"
            )
            raise ProviderMismatchError(msg)
        return snapshot

    async def resolve(
        self,
        provider_id: str,
        at: datetime | None = None,
        snapshot_id: int | None = None,
    ) -> SnapshotInfo:
        """Explicit id wins, then ``at``, else the latest finished snapshot."""
        if snapshot_id is not None:
            return await self.by_id(snapshot_id, expected_provider=provider_id)
        if at is not None:
            return await self.closest(provider_id, at)
        return await self.latest_finished(provider_id)

    async def list_snapshots(
        self,
        provider_id: str,
        page: int = 1,
        limit: int | None = None,
        finished: bool | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Dict[str, Any]:
        """Paginated snapshot listing, newest first.

        ``limit`` defaults to ``default_page_size`` and is clamped to
        ``max_page_size``.
        """
        settings = get_settings()
        if limit is None:
            limit = settings.default_page_size
        page = max(page, 1)
        limit = min(max(limit, 1), settings.max_page_size)

        conditions = ["provider_id = :provider_id"]
        params: Dict[str, Any] = {"provider_id": provider_id}
        if finished is not None:
            conditions.append("finished = :finished")
            params["finished"] = finished
        if start is not None:
            conditions.append("feed_timestamp >= :start")
            params["start"] = start
        if end is not None:
            conditions.append("feed_timestamp <= :end")
            params["end"] = end
        where = " AND ".join(conditions)

        count_result = await self._session.execute(
            text(f"SELECT COUNT(*) FROM snapshots WHERE {where}"), params
        )
        total = count_result.scalar_one()

        rows_result = await self._session.execute(
            text(f"""
                SELECT {_SNAPSHOT_COLUMNS}
                FROM snapshots
                WHERE {where}
                ORDER BY feed_timestamp DESC
                LIMIT :lim OFFSET :off
            """),
            {**params, "lim": limit, "off": (page - 1) * limit},
        )
        items: List[SnapshotInfo] = [_to_info(row) for row in rows_result.fetchall()]
        total_pages = math.ceil(total / limit) if total else 0

        return {
            "provider": provider_id,
            "snapshots": [s.to_dict() for s in items],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            },
        }
