"""Error taxonomy shared by the ingest and read paths."""

from __future__ import annotations


class TransitSnapshotsError(Exception):
    """Base class for all domain errors."""


# --- Ingest path ---


class FeedDecodeError(TransitSnapshotsError):
    """Raised when feed bytes cannot be decoded into a FeedMessage."""


class FeedFetchError(TransitSnapshotsError):
    """Raised when a feed could not be downloaded."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class IngestError(TransitSnapshotsError):
    """Raised when a feed could not be normalized; no partial state survives."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class MalformedHeaderError(IngestError):
    """Raised when the feed header has no usable timestamp."""


class DuplicateSnapshotError(TransitSnapshotsError):
    """Raised when a snapshot for (provider, feed timestamp) already exists.

    Callers treat this as success: the feed was already ingested.
    """

    def __init__(self, provider_id: str, feed_timestamp: object) -> None:
        super().__init__(
            f"Snapshot for provider '{provider_id}' at {feed_timestamp} already exists"
        )
        self.provider_id = provider_id
        self.feed_timestamp = feed_timestamp


# --- Read path ---


class ReadError(TransitSnapshotsError):
    """Base class for errors surfaced by the read API."""

    status_code = 400
    code = "bad_request"


class UnknownProviderError(ReadError):
    status_code = 404
    code = "unknown_provider"


class SnapshotNotFoundError(ReadError):
    status_code = 404
    code = "snapshot_not_found"


class ProviderMismatchError(ReadError):
    status_code = 409
    code = "provider_mismatch"


class StationNotFoundError(ReadError):
    status_code = 404
    code = "station_not_found"
