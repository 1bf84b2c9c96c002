"""GTFS-RT polling worker with an at-least-once delivery queue.

The poller fetches every configured (provider, feed type) and puts the bytes
on an asyncio queue. Consumers hand each unit to the ingest service; a unit
is acknowledged on success or duplicate and redelivered with exponential
backoff otherwise, until ``ingest_max_attempts`` is reached.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from transit_snapshots.config import ProviderConfig, get_settings
from transit_snapshots.database import get_session_context
from transit_snapshots.logging import bind_context, clear_context, get_logger
from transit_snapshots.services.gtfs_rt.fetcher import FeedFetchError, GtfsRtFetcher
from transit_snapshots.services.gtfs_rt.ingest import IngestService

logger = get_logger(__name__)

OUTCOME_ACKED = "acked"
OUTCOME_RETRY = "retry"
OUTCOME_DROPPED = "dropped"


@dataclass
class IngestUnit:
    """One fetched feed awaiting ingestion."""

    provider_id: str
    feed_type: str
    data: bytes
    feed_hash: str
    poll_id: str
    attempts: int = 0


class GtfsRtWorker:
    """Polls provider feeds on a schedule and ingests them.

    Usage:
        worker = GtfsRtWorker()
        await worker.start()   # launches poller and consumers
        await worker.stop()    # cancels them

        # Or run a single poll cycle, delivering inline:
        report = await worker.run_once()
    """

    def __init__(
        self,
        providers: Dict[str, ProviderConfig] | None = None,
        ingest_service: IngestService | None = None,
        fetcher: GtfsRtFetcher | None = None,
    ) -> None:
        settings = get_settings()
        self._providers = providers if providers is not None else settings.providers
        self._poll_interval = settings.ingest_poll_interval_sec
        self._max_attempts = settings.ingest_max_attempts
        self._backoff_base = settings.ingest_backoff_base
        self._concurrency = settings.ingest_concurrency
        self._grace = timedelta(seconds=settings.unfinished_grace_sec)
        self._fetcher = fetcher or GtfsRtFetcher(
            timeout_sec=settings.ingest_fetch_timeout_sec,
            max_retries=settings.ingest_fetch_retries,
            max_bytes=settings.ingest_fetch_max_bytes,
            backoff_base=settings.ingest_backoff_base,
        )
        self._ingest = ingest_service or IngestService(
            providers=self._providers, batch_size=settings.ingest_batch_size
        )

        self._queue: asyncio.Queue[IngestUnit] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._consumers: List[asyncio.Task[None]] = []
        self._retries: set[asyncio.Task[None]] = set()
        self._running = False
        self._poll_count = 0
        self._last_poll_at: datetime | None = None
        self._counters = {"ingested": 0, "duplicates": 0, "redelivered": 0, "dropped": 0}

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def poll_count(self) -> int:
        return self._poll_count

    @property
    def last_poll_at(self) -> datetime | None:
        return self._last_poll_at

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Start the polling loop and queue consumers."""
        if self._running:
            logger.warning("Worker already running, ignoring start request")
            return

        self._running = True
        self._consumers = [
            asyncio.create_task(self._consume()) for _ in range(self._concurrency)
        ]
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "GTFS-RT worker started",
            poll_interval_sec=self._poll_interval,
            consumers=self._concurrency,
            providers=list(self._providers),
        )

    async def stop(self) -> None:
        """Stop polling and consuming. Queued units are discarded."""
        if not self._running:
            return

        self._running = False
        tasks = [t for t in (self._task, *self._consumers, *self._retries) if t is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._task = None
        self._consumers = []
        self._retries.clear()
        logger.info("GTFS-RT worker stopped", discarded=self._queue.qsize())
        self._queue = asyncio.Queue()

    async def run_once(self) -> dict[str, Any]:
        """Fetch every feed once and deliver each unit inline, with retries.

        Returns:
            Report dict with per-provider, per-feed results.
        """
        poll_id = str(uuid.uuid4())[:8]
        started_at = self._mark_poll(poll_id)
        report: dict[str, Any] = {
            "poll_id": poll_id,
            "poll_count": self._poll_count,
            "started_at": started_at.isoformat(),
            "providers": {},
        }

        units = await self._fetch_all(poll_id, report)
        semaphore = asyncio.Semaphore(self._concurrency)

        async def deliver(unit: IngestUnit) -> None:
            async with semaphore:
                result = await self._deliver_inline(unit)
            report["providers"][unit.provider_id][unit.feed_type].update(result)

        await asyncio.gather(*(deliver(unit) for unit in units))

        report["ended_at"] = datetime.now(timezone.utc).isoformat()
        logger.info("Poll cycle complete", poll_id=poll_id, report=report)
        return report

    async def reclaim_unfinished(self, older_than: datetime | None = None) -> List[int]:
        """Delete unfinished snapshots older than the grace period."""
        cutoff = older_than or datetime.now(timezone.utc) - self._grace
        async with get_session_context() as session:
            return await self._ingest.writer.reclaim_unfinished(session, cutoff)

    async def get_status(self) -> dict[str, Any]:
        """Get current worker status for the admin endpoint."""
        return {
            "running": self._running,
            "poll_count": self._poll_count,
            "last_poll_at": self._last_poll_at.isoformat() if self._last_poll_at else None,
            "poll_interval_sec": self._poll_interval,
            "queue_size": self._queue.qsize(),
            "max_attempts": self._max_attempts,
            "providers": sorted(self._providers),
            **self._counters,
        }

    # --- Polling ---

    def _mark_poll(self, poll_id: str) -> datetime:
        self._poll_count += 1
        self._last_poll_at = datetime.now(timezone.utc)
        logger.info("Starting poll cycle", poll_id=poll_id, poll_count=self._poll_count)
        return self._last_poll_at

    async def _fetch_all(self, poll_id: str, report: dict[str, Any]) -> List[IngestUnit]:
        """Fetch every configured feed; failures are isolated per feed."""
        units: List[IngestUnit] = []
        for provider_id, provider in self._providers.items():
            provider_report = report["providers"].setdefault(provider_id, {})
            for feed_type, url in provider.feed_urls().items():
                try:
                    data, feed_hash = await self._fetcher.fetch(
                        url, provider_id, feed_type, poll_id, headers=provider.headers
                    )
                except FeedFetchError as exc:
                    provider_report[feed_type] = {"status": "fetch_error", "error": str(exc)}
                    continue
                provider_report[feed_type] = {"status": "fetched", "feed_hash": feed_hash}
                units.append(IngestUnit(provider_id, feed_type, data, feed_hash, poll_id))
        return units

    async def _poll_loop(self) -> None:
        """Main polling loop that runs until stopped."""
        while self._running:
            try:
                poll_id = str(uuid.uuid4())[:8]
                self._mark_poll(poll_id)
                units = await self._fetch_all(poll_id, {"providers": {}})
                for unit in units:
                    self._queue.put_nowait(unit)
                await self.reclaim_unfinished()
            except Exception as exc:
                logger.error("Poll cycle failed unexpectedly", exc_info=exc)

            try:
                await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                break

    # --- Delivery ---

    def _backoff(self, attempts: int) -> float:
        return self._backoff_base**attempts

    async def _handle(self, unit: IngestUnit) -> dict[str, Any]:
        """Attempt delivery once; the outcome says whether to retry."""
        unit.attempts += 1
        try:
            result = await self._ingest.ingest(unit.provider_id, unit.feed_type, unit.data)
        except Exception as exc:
            if unit.attempts >= self._max_attempts:
                self._counters["dropped"] += 1
                logger.error(
                    "Dropping feed unit after max attempts",
                    provider_id=unit.provider_id,
                    feed_type=unit.feed_type,
                    poll_id=unit.poll_id,
                    attempts=unit.attempts,
                    error=str(exc),
                )
                return {"outcome": OUTCOME_DROPPED, "attempts": unit.attempts, "error": str(exc)}
            logger.warning(
                "Feed unit failed, will redeliver",
                provider_id=unit.provider_id,
                feed_type=unit.feed_type,
                poll_id=unit.poll_id,
                attempts=unit.attempts,
                error=str(exc),
            )
            return {"outcome": OUTCOME_RETRY, "attempts": unit.attempts, "error": str(exc)}

        counter = "duplicates" if result.status == "duplicate" else "ingested"
        self._counters[counter] += 1
        return {
            "outcome": OUTCOME_ACKED,
            "attempts": unit.attempts,
            "status": result.status,
            "snapshot_id": result.snapshot_id,
            "error": None,
        }

    async def _deliver_inline(self, unit: IngestUnit) -> dict[str, Any]:
        while True:
            result = await self._handle(unit)
            if result["outcome"] != OUTCOME_RETRY:
                return result
            self._counters["redelivered"] += 1
            await asyncio.sleep(self._backoff(unit.attempts))

    async def _consume(self) -> None:
        while self._running:
            unit = await self._queue.get()
            bind_context(
                provider_id=unit.provider_id, feed_type=unit.feed_type, poll_id=unit.poll_id
            )
            try:
                result = await self._handle(unit)
                if result["outcome"] == OUTCOME_RETRY:
                    self._schedule_redelivery(unit)
            except Exception as exc:
                logger.error("Consumer failed unexpectedly", exc_info=exc)
            finally:
                clear_context()
                self._queue.task_done()

    def _schedule_redelivery(self, unit: IngestUnit) -> None:
        delay = self._backoff(unit.attempts)
        self._counters["redelivered"] += 1

        async def redeliver() -> None:
            await asyncio.sleep(delay)
            self._queue.put_nowait(unit)

        task = asyncio.create_task(redeliver())
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)


# Singleton instance for the app lifecycle
_worker_instance: Optional[GtfsRtWorker] = None


def get_worker() -> GtfsRtWorker:
    """Get or create the singleton worker instance."""
    global _worker_instance
    if _worker_instance is None:
        _worker_instance = GtfsRtWorker()
    return _worker_instance


def reset_worker() -> None:
    """Reset the singleton (for testing)."""
    global _worker_instance
    _worker_instance = None
