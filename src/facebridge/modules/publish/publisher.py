"""
Tick-driven publisher that streams face detections to a single consumer.

Every ``tick_interval_seconds`` the publisher asks its detection source for
the faces in view and runs each one through formatter, change filter and
connection. A tick whose predecessor is still detecting is skipped rather
than run concurrently.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable

from ...core.contracts import (
    BaseModule,
    BasePayload,
    ConnectionState,
    ConnectionStatus,
    HealthStatus,
    ModuleConfig,
    PublishOutcome,
    WireMessage,
)
from ..input.base import DetectionSource, RawDetection
from .change_filter import ChangeFilter
from .connection import ConnectionManager, Connector
from .formatter import EventFormatter, MalformedDetectionError

logger = logging.getLogger(__name__)

SENT = "sent"
SUPPRESSED = "suppressed"
DROPPED = "dropped"
MALFORMED = "malformed"
OUTCOMES = (SENT, SUPPRESSED, DROPPED, MALFORMED)


class FacePublisher(BaseModule):
    """Bridge detection ticks to the downstream WebSocket consumer."""

    name = "modules.publish.face_publisher"

    def __init__(
        self,
        *,
        source: DetectionSource | None = None,
        connection: ConnectionManager | None = None,
        connector: Connector | None = None,
        formatter: EventFormatter | None = None,
        change_filter: ChangeFilter | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        super().__init__()
        self._source = source
        self._connection = connection
        self._connector = connector
        self._formatter = formatter or EventFormatter(clock=clock)
        self._filter = change_filter or ChangeFilter()
        self._endpoint = "ws://127.0.0.1:8080"
        self._tick_interval = 0.1
        self._retry_delay = 3.0
        self._connect_timeout = 10.0
        self._include_timestamp = False
        self._state_topic = "status.connection"
        self._outcome_topic = "publish.face.outcome"
        self._publish_outcomes = True
        self._counters: dict[str, int] = dict.fromkeys(OUTCOMES, 0)
        self._ticks = 0
        self._ticks_skipped = 0
        self._running = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._tick_task: asyncio.Task[int] | None = None
        self._pending_events: set[asyncio.Task[None]] = set()

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._endpoint = options.get("endpoint", self._endpoint)
        self._tick_interval = float(options.get("tick_interval_seconds", self._tick_interval))
        self._retry_delay = float(options.get("retry_delay_seconds", self._retry_delay))
        self._connect_timeout = float(
            options.get("connect_timeout_seconds", self._connect_timeout)
        )
        self._include_timestamp = bool(
            options.get("include_timestamp_in_change_key", self._include_timestamp)
        )
        self._state_topic = options.get("state_topic", self._state_topic)
        self._outcome_topic = options.get("outcome_topic", self._outcome_topic)
        self._publish_outcomes = bool(options.get("publish_outcomes", self._publish_outcomes))

    @property
    def connection(self) -> ConnectionManager:
        if self._connection is None:
            self._connection = ConnectionManager(
                self._endpoint,
                retry_delay=self._retry_delay,
                connect_timeout=self._connect_timeout,
                connector=self._connector,
            )
        return self._connection

    @property
    def connection_state(self) -> ConnectionState:
        if self._connection is None:
            return ConnectionState.UNINITIALIZED
        return self._connection.state

    @property
    def counters(self) -> dict[str, int]:
        return dict(self._counters)

    async def start(self) -> None:
        if self._source is None:
            raise RuntimeError("FacePublisher requires a detection source before start().")
        connection = self.connection
        connection.add_listener(self._on_state_change)
        # A fresh run starts with no last-sent snapshot.
        self._filter.reset()
        connection.open()
        self._running.set()
        self._loop_task = asyncio.create_task(self._run(), name=f"{self.name}-ticker")
        logger.info(
            "FacePublisher streaming to %s every %.2fs (retry every %.1fs)",
            connection.endpoint,
            self._tick_interval,
            self._retry_delay,
        )

    async def stop(self) -> None:
        self._running.clear()
        if self._loop_task:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        if self._tick_task and not self._tick_task.done():
            self._tick_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._tick_task
        self._tick_task = None
        if self._connection is not None:
            await self._connection.close()
        if self._pending_events:
            await asyncio.gather(*list(self._pending_events), return_exceptions=True)
        logger.info(
            "FacePublisher stopped after %d ticks (%d skipped): %s",
            self._ticks,
            self._ticks_skipped,
            self._counters,
        )

    async def health(self) -> HealthStatus:
        state = self.connection_state
        return HealthStatus(
            status="healthy" if state is ConnectionState.OPEN else "degraded",
            details={
                "state": state.value,
                "label": state.label,
                "endpoint": self._connection.endpoint if self._connection else self._endpoint,
                "retry_pending": bool(self._connection and self._connection.retry_pending),
                "ticks": self._ticks,
                "ticks_skipped": self._ticks_skipped,
                **self._counters,
            },
        )

    async def run_tick(self, tick: int = 0) -> int:
        """Run one detection/publish cycle and return the number of frames sent."""
        source = self._source
        if source is None or not source.ready:
            return 0
        try:
            records = await source.detect()
        except asyncio.CancelledError:
            raise
        except Exception:  # detector failures end the tick only
            logger.exception("Face detection failed on tick %d", tick)
            return 0
        sent = 0
        for index, record in enumerate(records):
            if await self.publish_record(record, tick=tick, face_index=index):
                sent += 1
        return sent

    async def publish_record(
        self, record: RawDetection, *, tick: int = 0, face_index: int = 0
    ) -> bool:
        try:
            message = self._formatter.format(record)
        except MalformedDetectionError as exc:
            logger.warning("Skipping malformed face %d on tick %d: %s", face_index + 1, tick, exc)
            await self._record(MALFORMED, tick, face_index)
            return False
        outcome = await self.dispatch(message)
        await self._record(outcome, tick, face_index)
        if outcome == SENT:
            logger.debug(
                "Sent face %d data: %s (%.1f%%)",
                face_index + 1,
                message.face.gender,
                message.face.gender_confidence * 100,
            )
        return outcome == SENT

    async def dispatch(self, message: WireMessage) -> str:
        """
        Filter and send one message, fire-and-forget.

        The filter snapshot advances on the decision to send, before the
        connection is consulted. A message dropped while disconnected is
        therefore never resent after reconnecting; only a different message
        goes out. Override this method to substitute another policy.
        """
        key = message.change_key(include_timestamp=self._include_timestamp)
        if not self._filter.should_send(key):
            return SUPPRESSED
        if await self.connection.send(message.serialize()):
            return SENT
        return DROPPED

    async def _run(self) -> None:
        while self._running.is_set():
            await asyncio.sleep(self._tick_interval)
            self._schedule_tick()

    def _schedule_tick(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            self._ticks_skipped += 1
            logger.debug("Previous detection still running; skipping tick")
            return
        self._ticks += 1
        self._tick_task = asyncio.create_task(
            self.run_tick(self._ticks), name=f"{self.name}-tick-{self._ticks}"
        )

    async def _record(self, outcome: str, tick: int, face_index: int) -> None:
        self._counters[outcome] += 1
        if self._publish_outcomes and self._bus is not None:
            await self.bus.publish(
                self._outcome_topic,
                PublishOutcome(outcome=outcome, tick=tick, face_index=face_index),
            )

    def _on_state_change(self, state: ConnectionState) -> None:
        if self._bus is None:
            return
        connection = self.connection
        self._emit(
            self._state_topic,
            ConnectionStatus(
                state=state,
                endpoint=connection.endpoint,
                reconnect_attempts=connection.reconnect_attempts,
            ),
        )

    def _emit(self, topic: str, payload: BasePayload) -> None:
        task = asyncio.create_task(self.bus.publish(topic, payload))
        self._pending_events.add(task)
        task.add_done_callback(self._pending_events.discard)


__all__ = ["FacePublisher", "OUTCOMES"]
