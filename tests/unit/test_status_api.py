import asyncio

import httpx
import pytest

from facebridge.core.bus import EventBus
from facebridge.core.contracts import (
    ConnectionState,
    ConnectionStatus,
    HealthSummary,
    ModuleConfig,
    PublishOutcome,
)
from facebridge.modules.dashboard.status_api import StatusApi


@pytest.mark.asyncio
async def test_status_api_reports_bus_state() -> None:
    bus = EventBus(telemetry_enabled=False)
    await bus.start()

    module = StatusApi()
    module.set_bus(bus)
    await module.configure(ModuleConfig(options={"serve_api": False}))
    await module.start()

    transport = httpx.ASGITransport(app=module.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/status")
        assert response.status_code == 200
        assert response.json()["label"] == "Not initialized"

        await bus.publish(
            "status.connection",
            ConnectionStatus(state=ConnectionState.CLOSED, endpoint="ws://127.0.0.1:8080"),
        )
        await bus.publish(
            "publish.face.outcome", PublishOutcome(outcome="dropped", tick=3, face_index=0)
        )
        await bus.publish("status.health.summary", HealthSummary(status="degraded"))
        await asyncio.sleep(0.05)

        response = await client.get("/status")
        document = response.json()
        assert document["state"] == "closed"
        assert document["label"] == "Disconnected"
        assert document["endpoint"] == "ws://127.0.0.1:8080"
        assert document["outcomes"] == {"dropped": 1}
        assert document["health"] == "degraded"

        response = await client.get("/health")
        assert response.json() == {"status": "ok"}

    await module.stop()
    await bus.stop()


@pytest.mark.asyncio
async def test_status_api_starts_uvicorn_with_configured_address() -> None:
    captured: dict = {}

    class FakeServer:
        def __init__(self, config) -> None:
            captured["config"] = config
            self.should_exit = False

        async def serve(self) -> None:
            while not self.should_exit:
                await asyncio.sleep(0.01)

    def config_factory(**kwargs):
        return kwargs

    bus = EventBus(telemetry_enabled=False)
    module = StatusApi(config_factory=config_factory, server_factory=FakeServer)
    module.set_bus(bus)
    await module.configure(ModuleConfig(options={"host": "0.0.0.0", "port": 8123}))
    await module.start()

    health = await module.health()
    assert health.details == {"serving": True, "port": 8123}
    assert captured["config"]["host"] == "0.0.0.0"
    assert captured["config"]["port"] == 8123

    await module.stop()
    assert (await module.health()).details["serving"] is False
