"""Download queue API routes.

Provides endpoints to enqueue downloads, inspect and control jobs, and receive
real-time job events via SSE.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from tubevault.api.dependencies import get_broadcaster, get_queue_manager
from tubevault.application.workers.queue_manager import QueueManager
from tubevault.domain.entities import DownloadStatus, DownloadType, QueueJob
from tubevault.domain.exceptions import EntityNotFoundException
from tubevault.infrastructure.notifications import InMemoryStatusBroadcaster
from tubevault.infrastructure.notifications.status_broadcaster import EVENT_STATUS

logger = logging.getLogger(__name__)

router = APIRouter(tags=["downloads"])


# -------------------------------------------------------------------------
# Request / Response Models (Pydantic DTOs)
# -------------------------------------------------------------------------


class CreateDownloadRequest(BaseModel):
    """Body of POST /downloads."""

    url: str = Field(min_length=1, description="Video or playlist URL")
    type: DownloadType
    options: dict[str, Any] | None = Field(
        default=None, description="Type-specific options, validated on admission"
    )


class EnqueueResponse(BaseModel):
    id: str
    status: str
    type: str


class DownloadJobDTO(BaseModel):
    """API representation of a queue job."""

    id: str
    url: str
    type: str
    status: str
    progress: int
    error: str | None
    options: dict[str, Any] | None
    items_total: int | None
    items_completed: int | None
    file_id: str | None
    is_cancelled: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, job: QueueJob) -> "DownloadJobDTO":
        """Convert domain entity to DTO."""
        return cls(
            id=job.id,
            url=job.url,
            type=job.type.value,
            status=job.status.value,
            progress=job.progress,
            error=job.error,
            options=job.options.to_dict() if job.options else None,
            items_total=job.items_total,
            items_completed=job.items_completed,
            file_id=job.file_id,
            is_cancelled=job.is_cancelled,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )


class BulkActionResponse(BaseModel):
    count: int


class RecentGroupDTO(BaseModel):
    group_type: str
    group_name: str
    file_count: int
    last_updated: datetime | None


class QueueSummaryDTO(BaseModel):
    """Per-status counts and recently touched file groups."""

    pending: int
    processing: int
    completed: int
    partially_completed: int
    failed: int
    paused: int
    total: int
    active: int
    max_concurrent: int
    recent_groups: list[RecentGroupDTO]


# -------------------------------------------------------------------------
# Routes
# -------------------------------------------------------------------------


@router.post(
    "/downloads",
    response_model=EnqueueResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_download(
    body: CreateDownloadRequest,
    queue_manager: QueueManager = Depends(get_queue_manager),
) -> EnqueueResponse:
    """Enqueue a download job. 422 if the options don't fit the type."""
    job = await queue_manager.enqueue(body.url, body.type, body.options)
    return EnqueueResponse(id=job.id, status=job.status.value, type=job.type.value)


@router.get("/downloads", response_model=list[DownloadJobDTO])
async def list_downloads(
    status_filter: DownloadStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    queue_manager: QueueManager = Depends(get_queue_manager),
) -> list[DownloadJobDTO]:
    """List jobs, newest first."""
    jobs = await queue_manager.list_jobs(status_filter, limit=limit)
    return [DownloadJobDTO.from_entity(job) for job in jobs]


@router.post("/downloads/pause-all", response_model=BulkActionResponse)
async def pause_all_downloads(
    queue_manager: QueueManager = Depends(get_queue_manager),
) -> BulkActionResponse:
    return BulkActionResponse(count=await queue_manager.pause_all())


@router.post("/downloads/resume-all", response_model=BulkActionResponse)
async def resume_all_downloads(
    queue_manager: QueueManager = Depends(get_queue_manager),
) -> BulkActionResponse:
    return BulkActionResponse(count=await queue_manager.resume_all())


@router.get("/downloads/{job_id}", response_model=DownloadJobDTO)
async def get_download(
    job_id: str,
    queue_manager: QueueManager = Depends(get_queue_manager),
) -> DownloadJobDTO:
    job = await queue_manager.get_status(job_id)
    if job is None:
        raise EntityNotFoundException("QueueJob", job_id)
    return DownloadJobDTO.from_entity(job)


@router.post("/downloads/{job_id}/cancel", response_model=DownloadJobDTO)
async def cancel_download(
    job_id: str,
    queue_manager: QueueManager = Depends(get_queue_manager),
) -> DownloadJobDTO:
    """Cancel a job. 409 if it already finished."""
    await queue_manager.cancel(job_id)
    return await get_download(job_id, queue_manager)


@router.post("/downloads/{job_id}/pause", response_model=DownloadJobDTO)
async def pause_download(
    job_id: str,
    queue_manager: QueueManager = Depends(get_queue_manager),
) -> DownloadJobDTO:
    await queue_manager.pause(job_id)
    return await get_download(job_id, queue_manager)


@router.post("/downloads/{job_id}/resume", response_model=DownloadJobDTO)
async def resume_download(
    job_id: str,
    queue_manager: QueueManager = Depends(get_queue_manager),
) -> DownloadJobDTO:
    await queue_manager.resume(job_id)
    return await get_download(job_id, queue_manager)


@router.get("/queue/summary", response_model=QueueSummaryDTO)
async def queue_summary(
    queue_manager: QueueManager = Depends(get_queue_manager),
) -> QueueSummaryDTO:
    return QueueSummaryDTO.model_validate(await queue_manager.get_queue_summary())


@router.get("/downloads/{job_id}/events")
async def download_events(
    job_id: str,
    request: Request,
    queue_manager: QueueManager = Depends(get_queue_manager),
    broadcaster: InMemoryStatusBroadcaster = Depends(get_broadcaster),
) -> EventSourceResponse:
    """Server-Sent Events for one job.

    The first event is a snapshot of the job row, read after the subscription is open so
    nothing emitted in between is lost. After that every broadcaster event for the job is
    forwarded until the job-level complete/error event or the client leaves. A failed
    playlist item (error with item_index) does not end the stream.

    Example JS client:
    ```javascript
    const evtSource = new EventSource(`/api/downloads/${id}/events`);
    evtSource.addEventListener('download:status', (e) => updateBar(JSON.parse(e.data)));
    ```
    """
    job = await queue_manager.get_status(job_id)
    if job is None:
        raise EntityNotFoundException("QueueJob", job_id)

    async def event_generator() -> AsyncIterator[dict[str, str]]:
        try:
            async with broadcaster.subscribe(job_id) as subscription:
                snapshot = await queue_manager.get_status(job_id) or job
                yield {
                    "event": EVENT_STATUS,
                    "data": json.dumps(
                        DownloadJobDTO.from_entity(snapshot).model_dump(mode="json")
                    ),
                }
                if snapshot.is_terminal:
                    return

                async for event in subscription:
                    if await request.is_disconnected():
                        break
                    yield {"event": event.event, "data": json.dumps(event.to_dict())}
                    if event.is_final:
                        break
        except asyncio.CancelledError:
            logger.debug("SSE connection cancelled", extra={"job_id": job_id})

    return EventSourceResponse(event_generator())
