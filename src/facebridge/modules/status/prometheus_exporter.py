"""
Expose connection state and publish counters via Prometheus.

The exporter only listens to the bus: connection transitions arrive on
`status.connection`, per-face results on `publish.face.outcome` and bus
telemetry on `status.bus`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from prometheus_client import CollectorRegistry, Counter, Enum, Gauge, start_http_server

from ...core.bus import Subscription
from ...core.contracts import (
    BaseModule,
    BusStatus,
    ConnectionState,
    ConnectionStatus,
    ModuleConfig,
    PublishOutcome,
)

logger = logging.getLogger(__name__)


def _default_server_factory(
    port: int, addr: str, registry: CollectorRegistry
) -> object:  # pragma: no cover - thin wrapper
    return start_http_server(port=port, addr=addr, registry=registry)


class PrometheusExporter(BaseModule):
    """Status module that renders publisher telemetry over HTTP."""

    name = "modules.status.prometheus_exporter"

    def __init__(
        self,
        *,
        registry: CollectorRegistry | None = None,
        server_factory: Callable[[int, str, CollectorRegistry], object] | None = None,
    ) -> None:
        super().__init__()
        self._registry = registry or CollectorRegistry()
        self._server_factory = server_factory or _default_server_factory
        self._server: object | None = None
        self._port = 9093
        self._addr = "127.0.0.1"
        self._state_topic = "status.connection"
        self._outcome_topic = "publish.face.outcome"
        self._bus_topic = "status.bus"
        self._subscriptions: list[Subscription] = []
        self._connection_state = Enum(
            "facebridge_connection_state",
            "Current state of the downstream connection.",
            states=[state.value for state in ConnectionState],
            registry=self._registry,
        )
        self._reconnect_attempts = Gauge(
            "facebridge_reconnect_attempts",
            "Reconnection attempts since startup.",
            registry=self._registry,
        )
        self._faces = Counter(
            "facebridge_faces",
            "Detection records processed, by outcome.",
            labelnames=("outcome",),
            registry=self._registry,
        )
        self._queue_depth = Gauge(
            "facebridge_bus_queue_depth",
            "Number of events currently waiting on the bus.",
            registry=self._registry,
        )
        self._dropped_events = Gauge(
            "facebridge_bus_dropped_events",
            "Bus events dropped due to shutdown.",
            registry=self._registry,
        )

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._port = int(options.get("port", self._port))
        self._addr = options.get("addr", self._addr)
        self._state_topic = options.get("state_topic", self._state_topic)
        self._outcome_topic = options.get("outcome_topic", self._outcome_topic)
        self._bus_topic = options.get("bus_topic", self._bus_topic)

    async def start(self) -> None:
        if self._server is None:
            self._server = self._server_factory(self._port, self._addr, self._registry)
            logger.info("Started Prometheus exporter on %s:%d", self._addr, self._port)
        self._subscriptions = [
            self.bus.subscribe(self._state_topic, self._handle_connection_status),
            self.bus.subscribe(self._outcome_topic, self._handle_outcome),
            self.bus.subscribe(self._bus_topic, self._handle_bus_status),
        ]

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions.clear()
        # Recent prometheus_client releases return a (server, thread) pair.
        server = self._server[0] if isinstance(self._server, tuple) else self._server
        shutdown = getattr(server, "shutdown", None)
        if callable(shutdown):
            shutdown()
        self._server = None

    async def _handle_connection_status(self, topic: str, payload: ConnectionStatus) -> None:
        if not isinstance(payload, ConnectionStatus):
            return
        self._connection_state.state(payload.state.value)
        self._reconnect_attempts.set(payload.reconnect_attempts)

    async def _handle_outcome(self, topic: str, payload: PublishOutcome) -> None:
        if not isinstance(payload, PublishOutcome):
            return
        self._faces.labels(outcome=payload.outcome).inc()

    async def _handle_bus_status(self, topic: str, payload: BusStatus) -> None:
        if not isinstance(payload, BusStatus):
            return
        self._queue_depth.set(payload.queue_depth)
        self._dropped_events.set(payload.dropped_total)


__all__ = ["PrometheusExporter"]
