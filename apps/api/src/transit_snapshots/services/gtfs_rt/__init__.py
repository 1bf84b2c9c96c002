"""GTFS-Realtime ingestion pipeline."""

from transit_snapshots.services.gtfs_rt.decoder import GtfsRtDecoder
from transit_snapshots.services.gtfs_rt.fetcher import GtfsRtFetcher
from transit_snapshots.services.gtfs_rt.ingest import IngestService
from transit_snapshots.services.gtfs_rt.normalizer import SnapshotNormalizer, plan_snapshot
from transit_snapshots.services.gtfs_rt.worker import GtfsRtWorker
from transit_snapshots.services.gtfs_rt.writer import SnapshotWriter

__all__ = [
    "GtfsRtDecoder",
    "GtfsRtFetcher",
    "GtfsRtWorker",
    "IngestService",
    "SnapshotNormalizer",
    "SnapshotWriter",
    "plan_snapshot",
]
