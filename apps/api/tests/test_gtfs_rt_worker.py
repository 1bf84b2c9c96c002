"""Tests for the GTFS-RT polling worker and its delivery queue."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from transit_snapshots.config import ProviderConfig
from transit_snapshots.errors import IngestError
from transit_snapshots.services.gtfs_rt.fetcher import FeedFetchError
from transit_snapshots.services.gtfs_rt.ingest import IngestResult
from transit_snapshots.services.gtfs_rt.worker import (
    OUTCOME_ACKED,
    OUTCOME_DROPPED,
    GtfsRtWorker,
    IngestUnit,
    get_worker,
    reset_worker,
)


@pytest.fixture(autouse=True)
def _reset_singleton() -> None:
    """Reset singleton between tests."""
    reset_worker()


def _providers(**urls: str) -> dict[str, ProviderConfig]:
    return {"bart": ProviderConfig(name="BART", **urls)}


def _make_worker(
    providers: dict[str, ProviderConfig] | None = None,
    max_attempts: int = 3,
) -> tuple[GtfsRtWorker, MagicMock, MagicMock]:
    """Create a worker whose fetcher and ingest service are mocks."""
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(return_value=(b"feed-bytes", "hash-1"))
    ingest = MagicMock()
    ingest.ingest = AsyncMock(return_value=IngestResult("bart", "trip_updates", "ok", 11))

    with patch("transit_snapshots.services.gtfs_rt.worker.get_settings") as mock_settings:
        settings = MagicMock()
        settings.providers = {}
        settings.ingest_poll_interval_sec = 30
        settings.ingest_max_attempts = max_attempts
        settings.ingest_backoff_base = 0.0
        settings.ingest_concurrency = 2
        settings.unfinished_grace_sec = 900
        settings.ingest_fetch_timeout_sec = 10
        settings.ingest_fetch_retries = 1
        settings.ingest_batch_size = 100
        mock_settings.return_value = settings

        worker = GtfsRtWorker(
            providers=providers if providers is not None else _providers(
                trip_updates_url="https://example.com/tu"
            ),
            ingest_service=ingest,
            fetcher=fetcher,
        )
    return worker, fetcher, ingest


async def _until(predicate: Callable[[], bool]) -> None:
    while not predicate():
        await asyncio.sleep(0.01)


class TestLifecycle:
    def test_initial_state(self) -> None:
        worker, _, _ = _make_worker()
        assert not worker.is_running
        assert worker.poll_count == 0
        assert worker.last_poll_at is None
        assert worker.queue_size == 0

    @pytest.mark.asyncio
    async def test_start_stop(self) -> None:
        worker, _, _ = _make_worker()
        worker._poll_loop = AsyncMock()  # type: ignore[method-assign]

        await worker.start()
        assert worker.is_running

        await worker.stop()
        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_start_idempotent(self) -> None:
        worker, _, _ = _make_worker()
        worker._poll_loop = AsyncMock()  # type: ignore[method-assign]

        await worker.start()
        consumers = list(worker._consumers)
        await worker.start()
        assert worker._consumers == consumers

        await worker.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self) -> None:
        worker, _, _ = _make_worker()
        await worker.stop()
        assert not worker.is_running

    @pytest.mark.asyncio
    async def test_get_status(self) -> None:
        worker, _, _ = _make_worker()
        status = await worker.get_status()

        assert status["running"] is False
        assert status["poll_count"] == 0
        assert status["last_poll_at"] is None
        assert status["poll_interval_sec"] == 30
        assert status["max_attempts"] == 3
        assert status["providers"] == ["bart"]
        assert status["ingested"] == 0
        assert status["dropped"] == 0

    def test_get_worker_is_singleton(self) -> None:
        assert get_worker() is get_worker()


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_fetches_every_configured_feed(self) -> None:
        worker, fetcher, ingest = _make_worker(
            providers=_providers(
                trip_updates_url="https://example.com/tu",
                alerts_url="https://example.com/al",
            )
        )

        report = await worker.run_once()

        assert fetcher.fetch.await_count == 2
        assert ingest.ingest.await_count == 2
        assert set(report["providers"]["bart"]) == {"trip_updates", "alerts"}
        assert report["poll_count"] == 1
        assert worker.poll_count == 1
        assert worker.last_poll_at is not None

    @pytest.mark.asyncio
    async def test_report_structure(self) -> None:
        worker, _, _ = _make_worker()

        report = await worker.run_once()

        assert "poll_id" in report
        assert "started_at" in report
        assert "ended_at" in report
        feed = report["providers"]["bart"]["trip_updates"]
        assert feed["outcome"] == OUTCOME_ACKED
        assert feed["status"] == "ok"
        assert feed["snapshot_id"] == 11
        assert feed["feed_hash"] == "hash-1"
        assert feed["attempts"] == 1

    @pytest.mark.asyncio
    async def test_provider_headers_passed_to_fetcher(self) -> None:
        providers = {
            "bart": ProviderConfig(
                name="BART",
                trip_updates_url="https://example.com/tu",
                headers={"x-api-key": "secret"},
            )
        }
        worker, fetcher, _ = _make_worker(providers=providers)

        await worker.run_once()

        assert fetcher.fetch.call_args.kwargs["headers"] == {"x-api-key": "secret"}

    @pytest.mark.asyncio
    async def test_fetch_failure_is_isolated(self) -> None:
        worker, fetcher, ingest = _make_worker(
            providers=_providers(
                trip_updates_url="https://example.com/tu",
                alerts_url="https://example.com/al",
            )
        )
        fetcher.fetch.side_effect = [FeedFetchError("timeout"), (b"feed-bytes", "hash-2")]

        report = await worker.run_once()

        feeds = report["providers"]["bart"]
        assert feeds["trip_updates"]["status"] == "fetch_error"
        assert "timeout" in feeds["trip_updates"]["error"]
        assert feeds["alerts"]["outcome"] == OUTCOME_ACKED
        ingest.ingest.assert_awaited_once_with("bart", "alerts", b"feed-bytes")

    @pytest.mark.asyncio
    async def test_redelivers_until_success(self) -> None:
        worker, _, ingest = _make_worker()
        ingest.ingest.side_effect = [
            IngestError("write failed"),
            IngestResult("bart", "trip_updates", "ok", 12),
        ]

        report = await worker.run_once()

        feed = report["providers"]["bart"]["trip_updates"]
        assert feed["outcome"] == OUTCOME_ACKED
        assert feed["attempts"] == 2
        assert feed["snapshot_id"] == 12
        status = await worker.get_status()
        assert status["redelivered"] == 1
        assert status["ingested"] == 1

    @pytest.mark.asyncio
    async def test_drops_after_max_attempts(self) -> None:
        worker, _, ingest = _make_worker(max_attempts=3)
        ingest.ingest.side_effect = IngestError("write failed")

        report = await worker.run_once()

        feed = report["providers"]["bart"]["trip_updates"]
        assert feed["outcome"] == OUTCOME_DROPPED
        assert feed["attempts"] == 3
        assert "write failed" in feed["error"]
        assert ingest.ingest.await_count == 3
        status = await worker.get_status()
        assert status["dropped"] == 1
        assert status["redelivered"] == 2

    @pytest.mark.asyncio
    async def test_duplicate_is_acknowledged(self) -> None:
        worker, _, ingest = _make_worker()
        ingest.ingest.return_value = IngestResult("bart", "trip_updates", "duplicate")

        report = await worker.run_once()

        feed = report["providers"]["bart"]["trip_updates"]
        assert feed["outcome"] == OUTCOME_ACKED
        assert feed["status"] == "duplicate"
        assert feed["snapshot_id"] is None
        assert ingest.ingest.await_count == 1
        status = await worker.get_status()
        assert status["duplicates"] == 1


class TestBackgroundDelivery:
    @pytest.mark.asyncio
    async def test_consumer_redelivers_failed_unit(self) -> None:
        worker, _, ingest = _make_worker()
        worker._poll_loop = AsyncMock()  # type: ignore[method-assign]
        ingest.ingest.side_effect = [
            IngestError("write failed"),
            IngestResult("bart", "trip_updates", "ok", 13),
        ]

        await worker.start()
        try:
            worker._queue.put_nowait(
                IngestUnit("bart", "trip_updates", b"feed-bytes", "hash-1", "poll-1")
            )
            await asyncio.wait_for(
                _until(lambda: worker._counters["ingested"] == 1), timeout=2
            )
        finally:
            await worker.stop()

        assert ingest.ingest.await_count == 2
        assert worker._counters["redelivered"] == 1

    @pytest.mark.asyncio
    async def test_consumer_drops_after_max_attempts(self) -> None:
        worker, _, ingest = _make_worker(max_attempts=2)
        worker._poll_loop = AsyncMock()  # type: ignore[method-assign]
        ingest.ingest.side_effect = IngestError("write failed")

        await worker.start()
        try:
            worker._queue.put_nowait(
                IngestUnit("bart", "trip_updates", b"feed-bytes", "hash-1", "poll-1")
            )
            await asyncio.wait_for(_until(lambda: worker._counters["dropped"] == 1), timeout=2)
        finally:
            await worker.stop()

        assert ingest.ingest.await_count == 2


class TestReclaim:
    @pytest.mark.asyncio
    async def test_reclaim_unfinished_uses_writer(self) -> None:
        worker, _, ingest = _make_worker()
        ingest.writer.reclaim_unfinished = AsyncMock(return_value=[5])
        session = AsyncMock()
        cutoff = datetime(2024, 1, 1, tzinfo=timezone.utc)

        with patch("transit_snapshots.services.gtfs_rt.worker.get_session_context") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=session)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            ids = await worker.reclaim_unfinished(older_than=cutoff)

        assert ids == [5]
        ingest.writer.reclaim_unfinished.assert_awaited_once_with(session, cutoff)

    @pytest.mark.asyncio
    async def test_reclaim_default_cutoff_uses_grace(self) -> None:
        worker, _, ingest = _make_worker()
        ingest.writer.reclaim_unfinished = AsyncMock(return_value=[])

        with patch("transit_snapshots.services.gtfs_rt.worker.get_session_context") as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=AsyncMock())
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            await worker.reclaim_unfinished()

        cutoff: Any = ingest.writer.reclaim_unfinished.call_args[0][1]
        age = (datetime.now(timezone.utc) - cutoff).total_seconds()
        assert 899 <= age <= 960
