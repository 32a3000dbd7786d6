"""Session and job lifecycle events and their outward delivery."""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field

from autofill_engine.utils.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """Lifecycle event types."""
    SESSION_STARTED = "session_started"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    SESSION_CANCELLED = "session_cancelled"
    JOB_STARTED = "job_started"
    JOB_RETRYING = "job_retrying"
    JOB_FINISHED = "job_finished"


class SessionEvent(BaseModel):
    """One lifecycle event."""
    type: EventType
    session_id: str
    timestamp: datetime = Field(default_factory=datetime.now)
    url: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    def anonymized(self) -> "SessionEvent":
        """Copy with the URL reduced to its domain."""
        if not self.url:
            return self
        return self.model_copy(update={"url": urlparse(self.url).netloc or None})


class EventSink(Protocol):
    """Receiver of lifecycle events."""

    async def publish(self, event: SessionEvent) -> None:
        ...


class LoggingEventSink:
    """Writes events to the structured log."""

    def __init__(self):
        self.logger = logger.bind(component="event_log")

    async def publish(self, event: SessionEvent) -> None:
        self.logger.info(
            "Session event",
            event_type=event.type.value,
            session_id=event.session_id,
            url=event.url,
            **event.data,
        )


class WebhookEventSink:
    """POSTs events as JSON to a webhook."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        anonymize: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.anonymize = anonymize
        self.client = client or httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
        self.logger = logger.bind(component="webhook_sink")

    async def publish(self, event: SessionEvent) -> None:
        if self.anonymize:
            event = event.anonymized()
        response = await self.client.post(self.url, json=event.model_dump(mode="json"))
        response.raise_for_status()

    async def close(self) -> None:
        await self.client.aclose()


class EventBus:
    """
    Fans events out to sinks without blocking the publisher.

    Each delivery runs as its own task; delivery failures are logged and
    never reach the scheduler.
    """

    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self.sinks: List[EventSink] = list(sinks or [])
        self.logger = logger.bind(component="event_bus")
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def emit(self, event: SessionEvent) -> None:
        if not self.sinks:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug("No running loop, event dropped", event_type=event.type.value)
            return
        for sink in self.sinks:
            task = loop.create_task(self._deliver(sink, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, sink: EventSink, event: SessionEvent) -> None:
        try:
            await sink.publish(event)
        except httpx.HTTPError as e:
            self.logger.warning("Event delivery failed", sink=type(sink).__name__, event_type=event.type.value, error=str(e))
        except Exception as e:
            self.logger.error(
                "Event sink error",
                sink=type(sink).__name__,
                event_type=event.type.value,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries, mainly for shutdown and tests."""
        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout)
