# events.py
import asyncio
import logging
import time
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from labs_client import OperationHandle

log = logging.getLogger(__name__)


class EventStatus(str, Enum):
    SUBMITTING = "submitting"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"
    RETRYING = "retrying"


class HandleRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    scene_id: str = Field(alias="sceneId")


class ProgressEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: Optional[str] = Field(default=None, alias="jobId")
    message: str
    status: EventStatus
    artifact_url: Optional[str] = Field(default=None, alias="artifactUrl")
    operation_handle: Optional[HandleRef] = Field(default=None, alias="operationHandle")
    timestamp: float = Field(default_factory=time.time)

    def wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


Listener = Callable[[ProgressEvent], None]


class ProgressEmitter:
    """
    One-way fan-out of progress events. Listeners are called synchronously
    in registration order; a failing listener is logged and skipped.
    """

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(
        self,
        job_id: Optional[str],
        message: str,
        status: EventStatus,
        artifact_url: Optional[str] = None,
        handle: Optional[OperationHandle] = None,
    ) -> ProgressEvent:
        event = ProgressEvent(
            job_id=job_id,
            message=message,
            status=status,
            artifact_url=artifact_url,
            operation_handle=HandleRef(name=handle.operation_name, scene_id=handle.scene_id) if handle else None,
        )
        level = logging.WARNING if status in (EventStatus.ERROR, EventStatus.RETRYING) else logging.INFO
        log.log(level, "[%s] %s", job_id or "general", message)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("progress listener %r failed", listener)
        return event


class EventQueue:
    """Listener that buffers events for an async consumer (SSE, CLI)."""

    def __init__(self, maxsize: int = 1000):
        self.queue: "asyncio.Queue[ProgressEvent]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def __call__(self, event: ProgressEvent):
        try:
            self.queue.put_nowait(event)
            return
        except asyncio.QueueFull:
            self.dropped += 1

        if event.job_id is not None:
            log.warning("event queue full, dropped event for %s: %s", event.job_id, event.message)
            return
        # run-level events end the stream; make room by dropping the oldest
        dropped = self.queue.get_nowait()
        log.warning("event queue full, dropped event for %s: %s", dropped.job_id or "general", dropped.message)
        self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
