"""
Contracts and payload schemas for the facebridge publisher.

Modules interact with the event bus and orchestrator through these strongly
typed payloads. Detection records and wire messages are defined here as well
so the formatter, the change filter and the detection sources agree on a
single shape.
"""

from __future__ import annotations

import abc
import enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BasePayload(BaseModel):
    """Base class for all bus payloads."""

    model_config = ConfigDict(extra="allow", frozen=True)

    schema_version: str = Field(
        default="1.0.0", description="Semantic version of the payload schema."
    )


class ConnectionState(str, enum.Enum):
    """Lifecycle of the single outbound connection."""

    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"

    @property
    def label(self) -> str:
        return _STATE_LABELS[self]


_STATE_LABELS = {
    ConnectionState.UNINITIALIZED: "Not initialized",
    ConnectionState.CONNECTING: "Connecting...",
    ConnectionState.OPEN: "Connected",
    ConnectionState.CLOSING: "Closing...",
    ConnectionState.CLOSED: "Disconnected",
}


class BoundingBox(BaseModel):
    """Face rectangle in source pixel units."""

    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    width: float
    height: float


class DetectionRecord(BaseModel):
    """One inferred face for a single video frame, as yielded by a detection source."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    box: BoundingBox | None = None
    gender: str | None = None
    gender_probability: float | None = Field(default=None, ge=0.0, le=1.0)
    age: float | None = None
    expressions: dict[str, float] | None = None
    score: float = Field(default=1.0, ge=0.0, le=1.0, description="Detector confidence.")

    @field_validator("gender_probability", "score", mode="before")
    @classmethod
    def _clamp_probability(cls, value: Any) -> Any:
        # Detectors occasionally report values a rounding error outside [0, 1].
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return min(1.0, max(0.0, float(value)))
        return value


class Position(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    width: float
    height: float


class FacePayload(BaseModel):
    """Face attributes carried by a wire message."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    gender: str
    gender_confidence: float = Field(alias="genderConfidence")
    age: float
    position: Position
    expressions: dict[str, float] = Field(default_factory=dict)


class WireMessage(BaseModel):
    """Canonical envelope transmitted downstream, one JSON text frame per message."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    timestamp: int = Field(description="Epoch milliseconds at formatting time.")
    face: FacePayload

    def serialize(self) -> str:
        """Compact JSON with camelCase keys in declaration order."""
        return self.model_dump_json(by_alias=True)

    def change_key(self, *, include_timestamp: bool = False) -> str:
        """Serialized content used for duplicate suppression."""
        if include_timestamp:
            return self.serialize()
        return self.face.model_dump_json(by_alias=True)


class ConnectionStatus(BasePayload):
    """Published on every connection state transition."""

    state: ConnectionState
    endpoint: str
    reconnect_attempts: int = Field(default=0, ge=0)

    @property
    def label(self) -> str:
        return self.state.label


class PublishOutcome(BasePayload):
    """Result of running one detection record through the publish pipeline."""

    outcome: str = Field(description="sent, suppressed, dropped or malformed.")
    tick: int = Field(ge=0)
    face_index: int = Field(ge=0)


class BusStatus(BasePayload):
    """Telemetry snapshot emitted by the event bus on `status.bus`."""

    queue_depth: int = Field(ge=0, description="Current number of queued events.")
    queue_capacity: int = Field(gt=0, description="Maximum queue capacity.")
    subscriber_count: int = Field(ge=0, description="Total registered handlers.")
    topic_count: int = Field(ge=0, description="Unique topics with subscribers.")
    published_total: int = Field(ge=0, description="Cumulative published events.")
    processed_total: int = Field(ge=0, description="Cumulative dispatched events.")
    dropped_total: int = Field(
        ge=0, description="Events dropped due to queue pressure or shutdown."
    )
    lag_seconds: float = Field(
        ge=0.0,
        description="Approximate lag between last publish and last dispatch completion.",
    )
    watermark: str = Field(
        default="normal",
        description="Watermark classification (normal/high/critical).",
    )


class HealthStatus(BaseModel):
    """Structured health report for modules."""

    model_config = ConfigDict(extra="allow", frozen=True)

    status: str = Field(description="Health classification such as healthy/degraded/error.")
    details: dict[str, Any] = Field(default_factory=dict)


class HealthSummary(BasePayload):
    """Aggregated health report emitted on `status.health.summary`."""

    status: str = Field(description="Overall classification.")
    modules: dict[str, HealthStatus] = Field(default_factory=dict)


class ModuleConfig(BaseModel):
    """Baseline configuration contract applied to all modules."""

    model_config = ConfigDict(extra="allow")

    enabled: bool = Field(default=True)
    options: dict[str, Any] = Field(
        default_factory=dict, description="Arbitrary module configuration."
    )


@runtime_checkable
class EventHandler(Protocol):
    """Callable type for bus subscribers."""

    async def __call__(self, topic: str, payload: BasePayload) -> None: ...


if TYPE_CHECKING:
    from .bus import EventBus


class BaseModule(abc.ABC):
    """
    Abstract base class for all modular components.

    Modules receive an event bus instance and are responsible for
    subscribing to topics or scheduling tasks during `start`.
    """

    name: str

    def __init__(self) -> None:
        self._configured = False
        self._config = ModuleConfig()
        self._bus: EventBus | None = None

    @property
    def bus(self) -> EventBus:
        if self._bus is None:
            raise RuntimeError(f"{self.__class__.__name__} has not been attached to an EventBus.")
        return self._bus

    def set_bus(self, bus: EventBus) -> None:
        """Attach the shared event bus instance to the module."""
        self._bus = bus

    async def configure(self, config: ModuleConfig) -> None:
        """Apply the provided configuration prior to module start."""
        self._config = config
        self._configured = True

    @abc.abstractmethod
    async def start(self) -> None:
        """Begin processing by registering bus subscriptions or scheduling tasks."""

    async def stop(self) -> None:
        """Optional hook to release resources."""
        return None

    async def health(self) -> HealthStatus:
        """Return a basic health status; modules can override for richer diagnostics."""
        status = "healthy" if self._configured else "degraded"
        return HealthStatus(status=status, details={"configured": self._configured})


__all__ = [
    "BaseModule",
    "BasePayload",
    "BoundingBox",
    "BusStatus",
    "ConnectionState",
    "ConnectionStatus",
    "DetectionRecord",
    "EventHandler",
    "FacePayload",
    "HealthStatus",
    "HealthSummary",
    "ModuleConfig",
    "Position",
    "PublishOutcome",
    "WireMessage",
]
