"""Fan-out of job progress to every connected client."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    progress: int

    def to_dict(self) -> dict[str, Any]:
        return {"event": "progress", "jobId": self.job_id, "progress": self.progress}


@dataclass(frozen=True)
class StatusEvent:
    job_id: str
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {"event": "status", "jobId": self.job_id, "status": self.status}


JobEvent = Union[ProgressEvent, StatusEvent]
Observer = Callable[[JobEvent], None]


@dataclass(frozen=True)
class Subscription:
    id: int


class ProgressBroadcaster:
    """Best-effort, no-replay delivery of job events to subscribed observers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._observers: dict[int, Observer] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)

    def subscribe(self, observer: Observer) -> Subscription:
        with self._lock:
            handle = Subscription(next(self._ids))
            self._observers[handle.id] = observer
            return handle

    def unsubscribe(self, handle: Subscription) -> None:
        with self._lock:
            self._observers.pop(handle.id, None)

    def publish(self, event: JobEvent) -> int:
        with self._lock:
            observers = list(self._observers.values())

        delivered = 0
        for observer in observers:
            try:
                observer(event)
                delivered += 1
            except Exception:
                logger.exception("Error delivering %s to observer", event)
        return delivered

    def publish_progress(self, job_id: str, progress: int) -> int:
        logger.debug("Progress update for job %s: %s%%", job_id, progress)
        return self.publish(ProgressEvent(job_id, progress))

    def publish_status(self, job_id: str, status: str) -> int:
        return self.publish(StatusEvent(job_id, status))


def format_sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def event_stream(
    broadcaster: ProgressBroadcaster,
    keepalive_seconds: float = 30.0,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """Server-sent event frames for one client connection.

    Events are published from worker threads, so they are handed over to this
    connection's event loop before being queued.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[JobEvent] = asyncio.Queue()

    def observer(event: JobEvent) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event)

    handle = broadcaster.subscribe(observer)
    try:
        yield format_sse({"event": "connected"})
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                if is_disconnected is not None and await is_disconnected():
                    break
                yield format_sse({"event": "ping"})
                continue
            yield format_sse(event.to_dict())
    finally:
        broadcaster.unsubscribe(handle)
