"""Realtime job status fan-out.

Hey future me - this replaces the old socket "rooms": every job id is a room, and each SSE
client subscribed to that job gets its own bounded asyncio.Queue. Emitting NEVER blocks the
downloader: if a client stops reading and its queue fills up, its oldest event is dropped.
Status is also persisted in the DB, so a client that missed events just re-fetches.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from tubevault.domain.entities import DownloadStatus
from tubevault.domain.ports import IStatusBroadcaster

logger = logging.getLogger(__name__)

EVENT_STATUS = "download:status"
EVENT_COMPLETE = "download:complete"
EVENT_ERROR = "download:error"
EVENT_ITEM_PROGRESS = "playlist:item-progress"
EVENT_ITEM_COMPLETE = "playlist:item-complete"


@dataclass
class StatusEvent:
    """One broadcast event."""

    event: str
    job_id: str
    data: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "job_id": self.job_id,
            "timestamp": self.timestamp.isoformat(),
            **self.data,
        }

    @property
    def is_final(self) -> bool:
        """True for the job-level end events. A failed playlist item is not one."""
        if self.event == EVENT_ERROR:
            return "item_index" not in self.data
        return self.event == EVENT_COMPLETE


class Subscription:
    """Events of one job, buffered from the moment the subscription is created.

    Use as an async context manager and iterate it. Leaving the block unregisters.
    """

    def __init__(
        self, job_id: str, queue: asyncio.Queue[StatusEvent], on_close: Callable[[], None]
    ) -> None:
        self.job_id = job_id
        self._queue = queue
        self._on_close = on_close
        self._closed = False

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StatusEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self._queue.get()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._on_close()


class InMemoryStatusBroadcaster(IStatusBroadcaster):
    """Per-job pub/sub over asyncio queues (single process)."""

    def __init__(self, max_queue_size: int = 100) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: dict[str, set[asyncio.Queue[StatusEvent]]] = defaultdict(set)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def subscribe(self, job_id: str) -> Subscription:
        """Start buffering events for one job right now.

        Registration happens here, not on first iteration, so a caller can read a snapshot
        after subscribing without missing whatever is emitted in between.
        """
        queue: asyncio.Queue[StatusEvent] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[job_id].add(queue)

        def unregister() -> None:
            subscribers = self._subscribers.get(job_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[job_id]

        return Subscription(job_id, queue, unregister)

    def _publish(self, event: StatusEvent) -> None:
        for queue in list(self._subscribers.get(event.job_id, ())):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.debug("broadcaster.event_dropped", extra={"job_id": event.job_id})
            queue.put_nowait(event)

    async def emit_status(
        self,
        job_id: str,
        status: DownloadStatus,
        progress: int,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self._publish(
            StatusEvent(
                EVENT_STATUS,
                job_id,
                {"status": status.value, "progress": progress, **(extra or {})},
            )
        )

    async def emit_complete(
        self, job_id: str, file_id: str | None, file_data: dict[str, Any] | None
    ) -> None:
        self._publish(
            StatusEvent(EVENT_COMPLETE, job_id, {"file_id": file_id, "file": file_data})
        )

    async def emit_error(
        self, job_id: str, message: str, item_index: int | None = None
    ) -> None:
        data: dict[str, Any] = {"error": message}
        if item_index is not None:
            data["item_index"] = item_index
        self._publish(StatusEvent(EVENT_ERROR, job_id, data))

    async def emit_playlist_item_progress(
        self, job_id: str, index: int, total: int, title: str, progress: int
    ) -> None:
        self._publish(
            StatusEvent(
                EVENT_ITEM_PROGRESS,
                job_id,
                {"index": index, "total": total, "title": title, "progress": progress},
            )
        )

    async def emit_playlist_item_complete(
        self,
        job_id: str,
        index: int,
        total: int,
        file_id: str,
        file_data: dict[str, Any],
    ) -> None:
        self._publish(
            StatusEvent(
                EVENT_ITEM_COMPLETE,
                job_id,
                {"index": index, "total": total, "file_id": file_id, "file": file_data},
            )
        )


class NullStatusBroadcaster(IStatusBroadcaster):
    """Broadcaster that drops everything (CLI use, tests)."""

    async def emit_status(
        self,
        job_id: str,
        status: DownloadStatus,
        progress: int,
        extra: dict[str, Any] | None = None,
    ) -> None:
        return None

    async def emit_complete(
        self, job_id: str, file_id: str | None, file_data: dict[str, Any] | None
    ) -> None:
        return None

    async def emit_error(
        self, job_id: str, message: str, item_index: int | None = None
    ) -> None:
        return None

    async def emit_playlist_item_progress(
        self, job_id: str, index: int, total: int, title: str, progress: int
    ) -> None:
        return None

    async def emit_playlist_item_complete(
        self,
        job_id: str,
        index: int,
        total: int,
        file_id: str,
        file_data: dict[str, Any],
    ) -> None:
        return None
