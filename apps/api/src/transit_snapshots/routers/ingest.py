"""Ingest control and maintenance endpoints."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from transit_snapshots.logging import get_logger
from transit_snapshots.services.gtfs_rt.worker import get_worker

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["ingest"])


# --- Schemas ---


class WorkerStatusResponse(BaseModel):
    """Response for worker status."""

    running: bool
    poll_count: int
    last_poll_at: Optional[str] = None
    poll_interval_sec: int
    queue_size: int
    max_attempts: int
    providers: List[str]
    ingested: int
    duplicates: int
    redelivered: int
    dropped: int


class RunOnceResponse(BaseModel):
    """Response for run-once endpoint."""

    poll_id: str
    poll_count: int
    started_at: str
    ended_at: str = ""
    providers: Dict[str, Dict[str, Any]]


class ReclaimRequest(BaseModel):
    older_than_sec: Optional[int] = Field(
        default=None,
        ge=0,
        description="Age threshold in seconds. Defaults to UNFINISHED_GRACE_SEC.",
    )


class ReclaimResponse(BaseModel):
    deleted: int
    snapshot_ids: List[int]


# --- Endpoints ---


@router.post(
    "/ingest/run-once",
    response_model=RunOnceResponse,
    summary="Trigger a single poll cycle",
)
async def run_once() -> dict[str, Any]:
    """Fetch and ingest every configured feed immediately."""
    worker = get_worker()
    return await worker.run_once()


@router.post(
    "/ingest/start",
    response_model=WorkerStatusResponse,
    summary="Start the polling worker",
)
async def start_worker() -> dict[str, Any]:
    worker = get_worker()
    await worker.start()
    return await worker.get_status()


@router.post(
    "/ingest/stop",
    response_model=WorkerStatusResponse,
    summary="Stop the polling worker",
)
async def stop_worker() -> dict[str, Any]:
    worker = get_worker()
    await worker.stop()
    return await worker.get_status()


@router.get(
    "/ingest/status",
    response_model=WorkerStatusResponse,
    summary="Get worker status",
)
async def worker_status() -> dict[str, Any]:
    worker = get_worker()
    return await worker.get_status()


@router.post(
    "/snapshots/reclaim",
    response_model=ReclaimResponse,
    summary="Delete unfinished snapshots older than a threshold",
)
async def reclaim_snapshots(request: Optional[ReclaimRequest] = None) -> dict[str, Any]:
    worker = get_worker()
    older_than = None
    if request is not None and request.older_than_sec is not None:
        older_than = datetime.now(timezone.utc) - timedelta(seconds=request.older_than_sec)
    ids = await worker.reclaim_unfinished(older_than)
    logger.info("Reclaim requested", deleted=len(ids))
    return {"deleted": len(ids), "snapshot_ids": ids}
