"""
Read-only HTTP status surface for dashboards and on-screen overlays.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import uvicorn
from fastapi import FastAPI

from ...core.bus import Subscription
from ...core.contracts import (
    BaseModule,
    ConnectionState,
    ConnectionStatus,
    HealthStatus,
    HealthSummary,
    ModuleConfig,
    PublishOutcome,
)

logger = logging.getLogger(__name__)


class StatusApi(BaseModule):
    """Mirror connection state and publish counters from the bus over HTTP."""

    name = "modules.dashboard.status_api"

    def __init__(
        self,
        *,
        config_factory: Callable[..., uvicorn.Config] | None = None,
        server_factory: Callable[[uvicorn.Config], uvicorn.Server] | None = None,
    ) -> None:
        super().__init__()
        self._host = "127.0.0.1"
        self._port = 8090
        self._serve_api = True
        self._state_topic = "status.connection"
        self._outcome_topic = "publish.face.outcome"
        self._health_topic = "status.health.summary"
        self._connection: ConnectionStatus | None = None
        self._outcomes: dict[str, int] = {}
        self._health: HealthSummary | None = None
        self._subscriptions: list[Subscription] = []
        self._app: FastAPI | None = None
        self._config_factory = config_factory or uvicorn.Config
        self._server_factory = server_factory or uvicorn.Server
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._host = options.get("host", self._host)
        self._port = int(options.get("port", self._port))
        self._serve_api = bool(options.get("serve_api", self._serve_api))
        self._state_topic = options.get("state_topic", self._state_topic)
        self._outcome_topic = options.get("outcome_topic", self._outcome_topic)
        self._health_topic = options.get("health_topic", self._health_topic)

    async def start(self) -> None:
        self._app = self._build_app()
        self._subscriptions = [
            self.bus.subscribe(self._state_topic, self._handle_connection_status),
            self.bus.subscribe(self._outcome_topic, self._handle_outcome),
            self.bus.subscribe(self._health_topic, self._handle_health),
        ]
        if not self._serve_api:
            logger.info("StatusApi running in embedded-only mode (no HTTP server).")
            return
        config = self._config_factory(
            app=self._app,
            host=self._host,
            port=self._port,
            loop="asyncio",
            lifespan="on",
            log_level="warning",
        )
        self._server = self._server_factory(config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info("StatusApi listening on http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions.clear()
        if self._server_task:
            self._server.should_exit = True  # type: ignore[union-attr]
            await asyncio.wait([self._server_task], timeout=1)
            self._server_task = None
        self._server = None

    @property
    def app(self) -> FastAPI:
        if self._app is None:
            raise RuntimeError("StatusApi has not been started yet.")
        return self._app

    async def health(self) -> HealthStatus:
        return HealthStatus(
            status="healthy",
            details={"serving": self._server_task is not None, "port": self._port},
        )

    def status_document(self) -> dict[str, Any]:
        state = self._connection.state if self._connection else ConnectionState.UNINITIALIZED
        return {
            "state": state.value,
            "label": state.label,
            "endpoint": self._connection.endpoint if self._connection else None,
            "reconnect_attempts": self._connection.reconnect_attempts if self._connection else 0,
            "outcomes": dict(self._outcomes),
            "health": self._health.status if self._health else None,
        }

    async def _handle_connection_status(self, topic: str, payload: ConnectionStatus) -> None:
        if isinstance(payload, ConnectionStatus):
            self._connection = payload

    async def _handle_outcome(self, topic: str, payload: PublishOutcome) -> None:
        if isinstance(payload, PublishOutcome):
            self._outcomes[payload.outcome] = self._outcomes.get(payload.outcome, 0) + 1

    async def _handle_health(self, topic: str, payload: HealthSummary) -> None:
        if isinstance(payload, HealthSummary):
            self._health = payload

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="facebridge status", version="0.1.0")

        @app.get("/health")
        async def health() -> dict[str, str]:
            return {"status": "ok"}

        @app.get("/status")
        async def status() -> dict[str, Any]:
            return self.status_document()

        return app


__all__ = ["StatusApi"]
