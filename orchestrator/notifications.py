"""Fire-and-forget notification bus for queue and pipeline events.

Publishers (GenerationQueue, PipelineController, GenerationExecutor) call
publish() and never wait for delivery. Delivery failures are logged and
never reach the publisher.

Implementations:
    - InMemoryNotificationBus: in-process subscribers (sync or async callables)
    - WebhookNotificationBus: POSTs each event as JSON to a webhook URL (httpx)

Usage:
    bus = InMemoryNotificationBus()
    bus.subscribe(handler)
    bus.publish(EventType.JOB_CREATED, {"job_id": job.id, "queue_position": 1})
"""

import asyncio
import contextlib
import enum
import inspect
import json
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx
from aiolimiter import AsyncLimiter

from orchestrator.models import utcnow
from orchestrator.utils.logging import get_logger

log = get_logger(__name__)


class EventType(str, enum.Enum):
    """Event names published on the notification bus."""

    JOB_CREATED = "job-created"
    JOB_STARTED = "job-started"
    JOB_PROGRESS = "job-progress"
    JOB_COMPLETED = "job-completed"
    JOB_FAILED = "job-failed"
    PIPELINE_STAGE_COMPLETED = "pipeline-stage-completed"
    PIPELINE_STAGE_FAILED = "pipeline-stage-failed"
    GENERATION_QUALITY_CHECK = "generation-quality-check"
    PIPELINE_GENERATION_TRIGGERED = "pipeline-generation-triggered"


@dataclass(frozen=True)
class Notification:
    """One published event."""

    event: EventType
    payload: dict[str, Any]
    published_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        return json.dumps(
            {
                "event": self.event.value,
                "payload": self.payload,
                "timestamp": self.published_at.isoformat(),
            },
            default=str,
        )


class NotificationBus(Protocol):
    """Publish-only interface the core depends on."""

    def publish(self, event: EventType, payload: dict[str, Any]) -> None: ...


class _BackgroundDelivery:
    """Tracks delivery tasks so they are not garbage collected mid-flight."""

    def __init__(self) -> None:
        self._pending: set[asyncio.Task[None]] = set()

    def _spawn(self, coro: Any, event: EventType) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            log.warning("notification_dropped_no_event_loop", event_type=event.value)
            return

        def _handle_delivery_done(done: asyncio.Task[None]) -> None:
            self._pending.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                log.error(
                    "notification_delivery_failed",
                    event_type=event.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        self._pending.add(task)
        task.add_done_callback(_handle_delivery_done)

    async def drain(self) -> None:
        """Wait until every scheduled delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class InMemoryNotificationBus(_BackgroundDelivery):
    """Delivers events to in-process subscribers.

    Sync subscribers run inline; async subscribers are scheduled as tasks.
    The most recent events are kept in `history` for inspection.
    """

    def __init__(self, history_size: int = 1000) -> None:
        super().__init__()
        self._subscribers: list[Callable[[Notification], Any]] = []
        self.history: deque[Notification] = deque(maxlen=history_size)

    def subscribe(self, handler: Callable[[Notification], Any]) -> None:
        self._subscribers.append(handler)

    def unsubscribe(self, handler: Callable[[Notification], Any]) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(handler)

    def publish(self, event: EventType, payload: dict[str, Any]) -> None:
        notification = Notification(event=event, payload=dict(payload))
        self.history.append(notification)

        for handler in list(self._subscribers):
            try:
                result = handler(notification)
            except Exception as e:
                log.error(
                    "notification_subscriber_failed",
                    event_type=event.value,
                    error=str(e),
                    exc_info=True,
                )
                continue
            if inspect.isawaitable(result):
                self._spawn(result, event)

    def events_of(self, event: EventType) -> list[Notification]:
        """Recorded notifications of one type, oldest first."""
        return [n for n in self.history if n.event == event]


class WebhookNotificationBus(_BackgroundDelivery):
    """Posts every event to a webhook URL.

    Architecture Pattern:
        - Async HTTP client (httpx), shared across deliveries
        - Timeout handling (5s max)
        - Deliveries throttled to max_rate per second (AsyncLimiter)
        - Graceful degradation (log on failure, never raise to the publisher)
    """

    def __init__(
        self,
        webhook_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 5.0,
        max_rate: float = 10.0,
    ) -> None:
        super().__init__()
        self._webhook_url = webhook_url
        self._timeout = timeout
        self._limiter = AsyncLimiter(max_rate=max_rate, time_period=1)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()

    def publish(self, event: EventType, payload: dict[str, Any]) -> None:
        self._spawn(self._send(Notification(event=event, payload=dict(payload))), event)

    async def _send(self, notification: Notification) -> None:
        try:
            async with self._limiter:
                response = await self._client.post(
                    self._webhook_url,
                    content=notification.to_json(),
                    headers={"Content-Type": "application/json"},
                    timeout=self._timeout,
                )
            response.raise_for_status()
            log.debug("notification_sent", event_type=notification.event.value)
        except httpx.TimeoutException:
            log.error(
                "notification_webhook_timeout",
                event_type=notification.event.value,
                webhook_url=self._webhook_url[:50],
            )
        except httpx.HTTPStatusError as e:
            log.error(
                "notification_webhook_http_error",
                event_type=notification.event.value,
                status_code=e.response.status_code,
                response=e.response.text[:500],
            )
        except httpx.HTTPError as e:
            log.error(
                "notification_webhook_failed",
                event_type=notification.event.value,
                error=str(e),
            )

    async def close(self) -> None:
        """Finish pending deliveries and release the HTTP client."""
        await self.drain()
        if self._owns_client:
            await self._client.aclose()
