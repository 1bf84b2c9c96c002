"""Tests for IngestService: bytes in, snapshot result out."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
from unittest.mock import AsyncMock, patch

import pytest

from transit_snapshots.config import ProviderConfig
from transit_snapshots.errors import DuplicateSnapshotError, FeedDecodeError, IngestError
from transit_snapshots.services.gtfs_rt.ingest import (
    STATUS_DUPLICATE,
    STATUS_OK,
    IngestService,
)
from transit_snapshots.services.gtfs_rt.normalizer import SnapshotNormalizer

from .fixtures.gtfs_rt_fixture import build_trip_update_feed


def _service(session: AsyncMock) -> IngestService:
    @asynccontextmanager
    async def session_context() -> AsyncIterator[AsyncMock]:
        yield session

    return IngestService(
        providers={"bart": ProviderConfig(name="Bay Area Rapid Transit")},
        session_context=session_context,
    )


class TestIngestService:
    @pytest.mark.asyncio
    async def test_ingest_ok(self) -> None:
        session = AsyncMock()
        service = _service(session)

        with patch.object(
            SnapshotNormalizer, "normalize", AsyncMock(return_value=21)
        ) as normalize:
            result = await service.ingest("bart", "trip_updates", build_trip_update_feed())

        assert result.status == STATUS_OK
        assert result.snapshot_id == 21
        assert result.to_dict() == {
            "provider_id": "bart",
            "feed_type": "trip_updates",
            "status": "ok",
            "snapshot_id": 21,
        }
        args, kwargs = normalize.call_args
        assert args[0] is session
        assert args[1] == "bart"
        assert kwargs["provider_name"] == "Bay Area Rapid Transit"

    @pytest.mark.asyncio
    async def test_duplicate_is_success(self) -> None:
        service = _service(AsyncMock())

        with patch.object(
            SnapshotNormalizer,
            "normalize",
            AsyncMock(side_effect=DuplicateSnapshotError("bart", "2023-11-14")),
        ):
            result = await service.ingest("bart", "trip_updates", build_trip_update_feed())

        assert result.status == STATUS_DUPLICATE
        assert result.snapshot_id is None

    @pytest.mark.asyncio
    async def test_write_failure_propagates(self) -> None:
        service = _service(AsyncMock())

        with patch.object(
            SnapshotNormalizer, "normalize", AsyncMock(side_effect=IngestError("boom"))
        ):
            with pytest.raises(IngestError):
                await service.ingest("bart", "trip_updates", build_trip_update_feed())

    @pytest.mark.asyncio
    async def test_unknown_feed_type(self) -> None:
        service = _service(AsyncMock())
        with pytest.raises(IngestError, match="Unknown feed type"):
            await service.ingest("bart", "gtfs_static", build_trip_update_feed())

    @pytest.mark.asyncio
    async def test_undecodable_bytes(self) -> None:
        service = _service(AsyncMock())
        with pytest.raises(FeedDecodeError):
            await service.ingest("bart", "alerts", b"\xff\xff not protobuf")

    @pytest.mark.asyncio
    async def test_unconfigured_provider_uses_id_as_name(self) -> None:
        service = _service(AsyncMock())

        with patch.object(
            SnapshotNormalizer, "normalize", AsyncMock(return_value=1)
        ) as normalize:
            await service.ingest("muni", "trip_updates", build_trip_update_feed())

        assert normalize.call_args.kwargs["provider_name"] is None
