"""
In-process event bus between the face publisher and its status surfaces.

Topics in use: `status.connection` (one `ConnectionStatus` per transition),
`publish.face.outcome` (one `PublishOutcome` per detection record),
`status.health.summary` from the orchestrator and `status.bus` telemetry.
The Prometheus exporter and the status API only ever read from it.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import time
from asyncio import QueueEmpty
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .contracts import BasePayload, BusStatus, EventHandler

logger = logging.getLogger(__name__)


Handler = Callable[[str, BasePayload], Awaitable[None]]


@dataclass(frozen=True)
class Subscription:
    """Handle for a topic subscription."""

    topic: str
    handler: EventHandler


class EventBus:
    """
    Exact-topic publish/subscribe over a bounded asyncio queue.

    Each handler call is its own task: a slow metrics or HTTP subscriber must
    not hold up the publisher tick that queued the event.
    """

    def __init__(
        self,
        *,
        queue_size: int = 256,
        telemetry_topic: str = "status.bus",
        telemetry_interval: float = 5.0,
        telemetry_enabled: bool = True,
    ) -> None:
        self._queue: asyncio.Queue[tuple[str, BasePayload]] = asyncio.Queue(maxsize=queue_size)
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._dispatcher_task: asyncio.Task[None] | None = None
        self._telemetry_task: asyncio.Task[None] | None = None
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._stopping = asyncio.Event()
        self._telemetry_topic = telemetry_topic
        self._telemetry_interval = telemetry_interval
        self._telemetry_enabled = telemetry_enabled
        self._published_total = 0
        self._processed_total = 0
        self._dropped_total = 0
        now = time.monotonic()
        self._last_publish_ts = now
        self._last_dispatch_ts = now

    @property
    def running(self) -> bool:
        return self._dispatcher_task is not None

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        """Register a handler; returns the handle `unsubscribe` expects."""
        self._subscribers[topic].append(handler)
        logger.debug("Subscribed handler %s to topic %s", handler, topic)
        return Subscription(topic=topic, handler=handler)

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a previously registered handler."""
        handlers = self._subscribers.get(subscription.topic, [])
        if subscription.handler in handlers:
            handlers.remove(subscription.handler)
            logger.debug(
                "Unsubscribed handler %s from topic %s", subscription.handler, subscription.topic
            )

    async def publish(self, topic: str, payload: BasePayload) -> None:
        """Queue a payload; waits when the queue is full rather than dropping it."""
        self._published_total += 1
        self._last_publish_ts = time.monotonic()
        if self._queue.full():
            logger.warning("Event bus queue is full (%d); waiting for status subscribers.", self._queue.maxsize)
        await self._queue.put((topic, payload))
        logger.debug("Queued payload for topic %s", topic)

    async def start(self) -> None:
        """Start dispatching, plus the `status.bus` telemetry loop when enabled."""
        if self._dispatcher_task is None:
            self._stopping.clear()
            self._dispatcher_task = asyncio.create_task(self._dispatcher(), name="facebridge-bus")
            logger.info("Event bus dispatcher started.")
        if self._telemetry_enabled and self._telemetry_task is None:
            self._telemetry_task = asyncio.create_task(
                self._telemetry_loop(), name="facebridge-bus-telemetry"
            )

    async def stop(self) -> None:
        """Stop the dispatcher loop and drop whatever is still queued."""
        if self._dispatcher_task is None:
            return
        self._stopping.set()
        await self._queue.put(("", _StopPayload()))
        await self._dispatcher_task
        self._dispatcher_task = None
        if self._handler_tasks:
            pending = list(self._handler_tasks)
            self._handler_tasks.clear()
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Event bus dispatcher stopped.")
        if self._telemetry_task:
            self._telemetry_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._telemetry_task
            self._telemetry_task = None

    async def _dispatcher(self) -> None:
        while not self._stopping.is_set():
            topic, payload = await self._queue.get()
            try:
                if isinstance(payload, _StopPayload):
                    break
                handlers = list(self._subscribers.get(topic, []))
                logger.debug("Dispatching payload on topic %s to %d handlers", topic, len(handlers))
                for handler in handlers:
                    task = asyncio.create_task(self._call_handler(handler, topic, payload))
                    self._handler_tasks.add(task)
                    task.add_done_callback(self._on_handler_done)
                self._processed_total += 1
                self._last_dispatch_ts = time.monotonic()
            finally:
                self._queue.task_done()
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except QueueEmpty:
                break
            else:
                self._dropped_total += 1
                self._queue.task_done()
        logger.info("Event bus dispatcher drained %d dropped events.", self._dropped_total)

    def _on_handler_done(self, task: asyncio.Task[None]) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Subscriber handler failed", exc_info=exc)

    async def _telemetry_loop(self) -> None:
        """Report queue depth and drop counts for the exporter every interval."""
        try:
            while not self._stopping.is_set():
                await asyncio.sleep(self._telemetry_interval)
                await self.publish(self._telemetry_topic, self._build_status_payload())
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            return

    async def _call_handler(self, handler: Handler, topic: str, payload: BasePayload) -> None:
        # Sync handlers are accepted too; only await what is awaitable.
        result = handler(topic, payload)
        if inspect.isawaitable(result):
            await result

    def _build_status_payload(self) -> BusStatus:
        depth = self._queue.qsize()
        capacity = self._queue.maxsize
        ratio = depth / capacity if capacity else 0.0
        if ratio >= 0.9:
            watermark = "critical"
        elif ratio >= 0.75:
            watermark = "high"
        else:
            watermark = "normal"
        return BusStatus(
            queue_depth=depth,
            queue_capacity=capacity,
            subscriber_count=sum(len(handlers) for handlers in self._subscribers.values()),
            topic_count=len(self._subscribers),
            published_total=self._published_total,
            processed_total=self._processed_total,
            dropped_total=self._dropped_total,
            lag_seconds=max(0.0, self._last_publish_ts - self._last_dispatch_ts),
            watermark=watermark,
        )


class _StopPayload(BasePayload):
    """Sentinel payload to signal dispatcher shutdown."""


__all__ = ["EventBus", "Handler", "Subscription"]
