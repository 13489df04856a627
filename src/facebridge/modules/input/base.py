"""Detection source protocol consumed by the publisher on every tick."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from ...core.contracts import DetectionRecord

RawDetection = DetectionRecord | Mapping[str, Any]


class DetectionSourceError(RuntimeError):
    """Raised by a source when a detection pass fails."""


@runtime_checkable
class DetectionSource(Protocol):
    """
    Anything that yields the faces visible in the current frame.

    ``ready`` is False while the upstream (capture device, model) is not
    initialised; the publisher turns such ticks into no-ops. ``detect`` may
    suspend, e.g. while awaiting an inference call.
    """

    @property
    def ready(self) -> bool: ...

    async def detect(self) -> Sequence[RawDetection]: ...


__all__ = ["DetectionSource", "DetectionSourceError", "RawDetection"]
