"""GTFS-RT protobuf decode layer."""

from __future__ import annotations

from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from transit_snapshots.errors import FeedDecodeError
from transit_snapshots.logging import get_logger

logger = get_logger(__name__)


class GtfsRtDecoder:
    """Decodes raw protobuf bytes into GTFS-RT FeedMessage objects."""

    @staticmethod
    def decode(
        data: bytes, provider_id: str, feed_type: str
    ) -> gtfs_realtime_pb2.FeedMessage:
        """Decode protobuf bytes into a FeedMessage.

        Args:
            data: Raw protobuf bytes.
            provider_id: Provider the bytes were fetched for (logging only).
            feed_type: Feed label (logging only).

        Returns:
            Parsed FeedMessage.

        Raises:
            FeedDecodeError: If protobuf parsing fails.
        """
        try:
            feed = gtfs_realtime_pb2.FeedMessage()
            feed.ParseFromString(data)
        except DecodeError as exc:
            msg = f"Failed to decode {feed_type} feed for provider '{provider_id}'"
            logger.error(msg, provider_id=provider_id, feed_type=feed_type, error=str(exc))
            raise FeedDecodeError(msg) from exc

        logger.info(
            "GTFS-RT feed decoded",
            provider_id=provider_id,
            feed_type=feed_type,
            entity_count=len(feed.entity),
            feed_timestamp=feed.header.timestamp if feed.header.HasField("timestamp") else None,
            gtfs_rt_version=feed.header.gtfs_realtime_version,
        )

        return feed
