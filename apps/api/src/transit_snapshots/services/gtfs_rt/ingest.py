"""Ingest entry point: feed bytes in, finished snapshot out."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from transit_snapshots.config import FEED_TYPES, ProviderConfig
from transit_snapshots.database import get_session_context
from transit_snapshots.errors import DuplicateSnapshotError, IngestError
from transit_snapshots.logging import get_logger
from transit_snapshots.services.gtfs_rt.decoder import GtfsRtDecoder
from transit_snapshots.services.gtfs_rt.normalizer import SnapshotNormalizer
from transit_snapshots.services.gtfs_rt.writer import DEFAULT_BATCH_SIZE, SnapshotWriter

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

STATUS_OK = "ok"
STATUS_DUPLICATE = "duplicate"


@dataclass
class IngestResult:
    provider_id: str
    feed_type: str
    status: str
    snapshot_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class IngestService:
    """Decodes and normalizes one (provider, feed type, bytes) unit.

    A duplicate snapshot is reported as success; every other failure
    propagates so the caller can redeliver.
    """

    def __init__(
        self,
        providers: Dict[str, ProviderConfig] | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        session_context: Callable[[], AbstractAsyncContextManager[AsyncSession]] = (
            get_session_context
        ),
    ) -> None:
        self._providers = providers or {}
        self._decoder = GtfsRtDecoder()
        self._writer = SnapshotWriter(batch_size=batch_size)
        self._normalizer = SnapshotNormalizer(self._writer)
        self._session_context = session_context

    @property
    def writer(self) -> SnapshotWriter:
        return self._writer

    async def ingest(self, provider_id: str, feed_type: str, data: bytes) -> IngestResult:
        """Ingest one feed payload.

        Raises:
            FeedDecodeError: Bytes are not a FeedMessage.
            IngestError: Unknown feed type, malformed header or write failure.
        """
        if feed_type not in FEED_TYPES:
            msg = f"Unknown feed type '{feed_type}'"
            raise IngestError(msg)

        feed = self._decoder.decode(data, provider_id, feed_type)
        provider = self._providers.get(provider_id)
        provider_name = provider.name if provider else None

        try:
            async with self._session_context() as session:
                snapshot_id = await self._normalizer.normalize(
                    session, provider_id, feed, provider_name=provider_name
                )
        except DuplicateSnapshotError:
            return IngestResult(provider_id, feed_type, STATUS_DUPLICATE)

        return IngestResult(provider_id, feed_type, STATUS_OK, snapshot_id)
