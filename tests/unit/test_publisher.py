import asyncio
import json
from collections.abc import Callable

import pytest

from facebridge.core.bus import EventBus
from facebridge.core.contracts import (
    BoundingBox,
    ConnectionState,
    ConnectionStatus,
    DetectionRecord,
    ModuleConfig,
    PublishOutcome,
)
from facebridge.modules.publish.connection import ConnectionManager
from facebridge.modules.publish.publisher import FacePublisher


class FakeTransport:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.close_code: int | None = None
        self._closed = asyncio.Event()

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.close_code = 1000
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def drop(self) -> None:
        self.close_code = 1006
        self._closed.set()


class FakeConnector:
    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.refuse = False

    async def __call__(self, endpoint: str) -> FakeTransport:
        if self.refuse:
            raise ConnectionRefusedError("consumer offline")
        transport = FakeTransport()
        self.transports.append(transport)
        return transport

    @property
    def sent(self) -> list[dict]:
        return [json.loads(message) for t in self.transports for message in t.sent]


class StaticSource:
    def __init__(self, *frames: list) -> None:
        self.frames = list(frames)
        self.ready = True
        self.calls = 0
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None

    async def detect(self) -> list:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if len(self.frames) > 1:
            return self.frames.pop(0)
        return self.frames[0] if self.frames else []


def _face(x: float = 10.0, gender: str = "male") -> DetectionRecord:
    return DetectionRecord(
        box=BoundingBox(x=x, y=20.0, width=50.0, height=60.0),
        gender=gender,
        gender_probability=0.9,
        age=30.0,
        expressions={"neutral": 1.0},
    )


async def _wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


async def _open_publisher(
    source: StaticSource, *, retry_delay: float = 30.0, clock=None
) -> tuple[FacePublisher, FakeConnector]:
    connector = FakeConnector()
    connection = ConnectionManager(
        "ws://127.0.0.1:8080", retry_delay=retry_delay, connector=connector
    )
    publisher = FacePublisher(source=source, connection=connection, clock=clock or (lambda: 1000))
    connection.open()
    await _wait_for(lambda: connection.state is ConnectionState.OPEN)
    return publisher, connector


@pytest.mark.asyncio
async def test_unchanged_face_is_sent_once_across_ticks() -> None:
    moments = iter([1000, 1100, 1200, 1300])
    source = StaticSource([_face()], [_face()], [_face()], [_face(x=11.0)])
    publisher, connector = await _open_publisher(source, clock=lambda: next(moments))

    results = [await publisher.run_tick(tick) for tick in range(1, 5)]

    assert results == [1, 0, 0, 1]
    sent = connector.sent
    assert [message["timestamp"] for message in sent] == [1000, 1300]
    assert sent[1]["face"]["position"]["x"] == 11.0
    assert publisher.counters["suppressed"] == 2
    await publisher.connection.close()


@pytest.mark.asyncio
async def test_timestamp_in_change_key_disables_suppression_of_still_faces() -> None:
    moments = iter([1000, 1100])
    source = StaticSource([_face()])
    publisher, connector = await _open_publisher(source, clock=lambda: next(moments))
    await publisher.configure(ModuleConfig(options={"include_timestamp_in_change_key": True}))

    assert await publisher.run_tick(1) == 1
    assert await publisher.run_tick(2) == 1
    assert len(connector.sent) == 2
    await publisher.connection.close()


@pytest.mark.asyncio
async def test_message_dropped_while_disconnected_is_not_resent_after_reconnect() -> None:
    source = StaticSource([_face()])
    publisher, connector = await _open_publisher(source, retry_delay=0.01)
    connection = publisher.connection

    connector.refuse = True
    connector.transports[0].drop()
    await _wait_for(lambda: connection.state is ConnectionState.CLOSED)

    assert await publisher.run_tick(1) == 0
    assert publisher.counters["dropped"] == 1

    connector.refuse = False
    await _wait_for(lambda: connection.state is ConnectionState.OPEN)

    # Same content as the dropped message: already recorded as sent by the filter.
    assert await publisher.run_tick(2) == 0
    assert publisher.counters["suppressed"] == 1

    source.frames = [[_face(x=99.0)]]
    assert await publisher.run_tick(3) == 1
    assert [message["face"]["position"]["x"] for message in connector.sent] == [99.0]
    await connection.close()


@pytest.mark.asyncio
async def test_malformed_record_does_not_block_siblings() -> None:
    source = StaticSource([{"gender": "male"}, _face()])
    publisher, connector = await _open_publisher(source)

    assert await publisher.run_tick(1) == 1
    assert publisher.counters["malformed"] == 1
    assert publisher.counters["sent"] == 1
    assert len(connector.sent) == 1
    await publisher.connection.close()


@pytest.mark.asyncio
async def test_tick_is_noop_while_source_not_ready() -> None:
    source = StaticSource([_face()])
    source.ready = False
    publisher, connector = await _open_publisher(source)

    assert await publisher.run_tick(1) == 0
    assert source.calls == 0
    assert connector.sent == []
    await publisher.connection.close()


@pytest.mark.asyncio
async def test_detection_failure_ends_only_that_tick() -> None:
    source = StaticSource([_face()])
    source.error = RuntimeError("model crashed")
    publisher, connector = await _open_publisher(source)

    assert await publisher.run_tick(1) == 0
    source.error = None
    assert await publisher.run_tick(2) == 1
    await publisher.connection.close()


@pytest.mark.asyncio
async def test_tick_is_skipped_while_previous_detection_runs() -> None:
    source = StaticSource([_face()])
    source.gate = asyncio.Event()
    publisher, connector = await _open_publisher(source)

    publisher._schedule_tick()
    await _wait_for(lambda: source.calls == 1)
    publisher._schedule_tick()
    publisher._schedule_tick()

    health = await publisher.health()
    assert health.details["ticks"] == 1
    assert health.details["ticks_skipped"] == 2

    source.gate.set()
    await publisher._tick_task
    assert source.calls == 1
    assert len(connector.sent) == 1
    await publisher.connection.close()


@pytest.mark.asyncio
async def test_start_requires_source() -> None:
    publisher = FacePublisher()
    with pytest.raises(RuntimeError):
        await publisher.start()


@pytest.mark.asyncio
async def test_publisher_lifecycle_reports_on_bus() -> None:
    bus = EventBus(telemetry_enabled=False)
    await bus.start()
    statuses: list[ConnectionStatus] = []
    outcomes: list[PublishOutcome] = []
    sent_signal = asyncio.Event()

    async def status_handler(topic: str, payload: ConnectionStatus) -> None:
        statuses.append(payload)

    async def outcome_handler(topic: str, payload: PublishOutcome) -> None:
        outcomes.append(payload)
        if payload.outcome == "sent":
            sent_signal.set()

    bus.subscribe("status.connection", status_handler)
    bus.subscribe("publish.face.outcome", outcome_handler)

    connector = FakeConnector()
    publisher = FacePublisher(source=StaticSource([_face()]), connector=connector)
    publisher.set_bus(bus)
    await publisher.configure(
        ModuleConfig(
            options={
                "endpoint": "ws://consumer.test:8080",
                "tick_interval_seconds": 0.01,
                "retry_delay_seconds": 0.05,
            }
        )
    )
    await publisher.start()
    await asyncio.wait_for(sent_signal.wait(), timeout=1.0)

    health = await publisher.health()
    assert health.status == "healthy"
    assert health.details["endpoint"] == "ws://consumer.test:8080"

    await publisher.stop()
    await asyncio.sleep(0.02)
    await bus.stop()

    assert publisher.connection_state is ConnectionState.CLOSED
    assert [status.state for status in statuses][:2] == [
        ConnectionState.CONNECTING,
        ConnectionState.OPEN,
    ]
    assert statuses[-1].state is ConnectionState.CLOSED
    assert outcomes[0].outcome == "sent"
    assert len(connector.sent) == 1


@pytest.mark.asyncio
async def test_identical_record_is_suppressed_until_age_changes() -> None:
    def record(age: float) -> DetectionRecord:
        return DetectionRecord(
            box=BoundingBox(x=10, y=10, width=50, height=50),
            gender="female",
            gender_probability=0.92,
            age=age,
            expressions={"happy": 0.8},
        )

    source = StaticSource([record(30)], [record(30)], [record(31)])
    publisher, connector = await _open_publisher(source, clock=lambda: 1_700_000_000_000)

    assert await publisher.run_tick(1) == 1
    assert await publisher.run_tick(2) == 0
    assert await publisher.run_tick(3) == 1

    first, second = connector.sent
    assert first == {
        "timestamp": 1_700_000_000_000,
        "face": {
            "gender": "female",
            "genderConfidence": 0.92,
            "age": 30.0,
            "position": {"x": 10.0, "y": 10.0, "width": 50.0, "height": 50.0},
            "expressions": {"happy": 0.8},
        },
    }
    assert second["face"]["age"] == 31.0
    await publisher.connection.close()


@pytest.mark.asyncio
async def test_restart_sends_current_face_on_new_connection() -> None:
    bus = EventBus(telemetry_enabled=False)
    await bus.start()
    statuses: list[ConnectionStatus] = []

    async def status_handler(topic: str, payload: ConnectionStatus) -> None:
        statuses.append(payload)

    bus.subscribe("status.connection", status_handler)

    connector = FakeConnector()
    publisher = FacePublisher(source=StaticSource([_face()]), connector=connector)
    publisher.set_bus(bus)
    await publisher.configure(ModuleConfig(options={"tick_interval_seconds": 0.01}))

    for run in (1, 2):
        await publisher.start()
        await _wait_for(lambda: len(connector.transports) == run)
        await _wait_for(lambda: len(connector.transports[-1].sent) == 1)
        await publisher.stop()

    await asyncio.sleep(0.02)
    await bus.stop()

    assert [len(transport.sent) for transport in connector.transports] == [1, 1]
    opened = [status for status in statuses if status.state is ConnectionState.OPEN]
    assert len(opened) == 2
