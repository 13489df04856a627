"""
Map detection records onto the canonical wire message.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from ...core.contracts import (
    BoundingBox,
    DetectionRecord,
    FacePayload,
    Position,
    WireMessage,
)

UNKNOWN_GENDER = "unknown"


class MalformedDetectionError(ValueError):
    """Raised when a detection record cannot be turned into a wire message."""


def epoch_millis() -> int:
    return time.time_ns() // 1_000_000


def coerce_record(raw: DetectionRecord | Mapping[str, Any]) -> DetectionRecord:
    """
    Accept either a DetectionRecord or a face-api shaped mapping.

    Mappings may carry the box flat under ``box`` or nested under
    ``alignedRect.box`` and use ``genderProbability`` for the confidence.
    """
    if isinstance(raw, DetectionRecord):
        return raw
    if not isinstance(raw, Mapping):
        raise MalformedDetectionError(f"Unsupported detection record type {type(raw).__name__}")
    data = dict(raw)
    if "box" not in data:
        aligned = data.get("alignedRect") or data.get("aligned_rect")
        if isinstance(aligned, Mapping):
            data["box"] = aligned.get("box")
    if "gender_probability" not in data and "genderProbability" in data:
        data["gender_probability"] = data["genderProbability"]
    try:
        return DetectionRecord.model_validate(data)
    except ValidationError as exc:
        raise MalformedDetectionError(str(exc)) from exc


class EventFormatter:
    """Pure record-to-message mapping stamped with the injected clock."""

    def __init__(self, *, clock: Callable[[], int] | None = None) -> None:
        self._clock = clock or epoch_millis

    def format(self, record: DetectionRecord | Mapping[str, Any]) -> WireMessage:
        record = coerce_record(record)
        box: BoundingBox | None = record.box
        if box is None:
            raise MalformedDetectionError("Detection record has no bounding box.")
        face = FacePayload(
            gender=record.gender or UNKNOWN_GENDER,
            gender_confidence=record.gender_probability or 0.0,
            age=record.age if record.age is not None else 0.0,
            position=Position(x=box.x, y=box.y, width=box.width, height=box.height),
            expressions=dict(record.expressions or {}),
        )
        return WireMessage(timestamp=int(self._clock()), face=face)


__all__ = ["EventFormatter", "MalformedDetectionError", "coerce_record", "epoch_millis"]
