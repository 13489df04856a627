"""
Synthetic face source for running the bridge without a camera or model.

Faces wander around a virtual frame, occasionally hold still (so duplicate
suppression has something to do) and carry a detector score that is checked
against the configured confidence threshold like a real detector would.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ...core.contracts import BoundingBox, DetectionRecord

logger = logging.getLogger(__name__)

EXPRESSIONS = ("neutral", "happy", "sad", "angry", "fearful", "disgusted", "surprised")


@dataclass(slots=True)
class _SimulatedFace:
    x: float
    y: float
    size: float
    gender: str
    gender_probability: float
    age: float
    score: float
    expressions: dict[str, float] = field(default_factory=dict)


class SimulatedFaceSource:
    """Seeded generator of plausible face detections."""

    def __init__(
        self,
        *,
        face_count: int = 1,
        frame_width: int = 720,
        frame_height: int = 560,
        score_threshold: float = 0.5,
        hold_probability: float = 0.6,
        latency_seconds: float = 0.0,
        startup_delay_seconds: float = 0.0,
        seed: int | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._frame_width = frame_width
        self._frame_height = frame_height
        self._score_threshold = score_threshold
        self._hold_probability = hold_probability
        self._latency = latency_seconds
        self._clock = clock or time.monotonic
        self._ready_at = self._clock() + startup_delay_seconds
        self._rand = random.Random(seed)  # nosec B311 - synthetic data only
        self._faces = [self._spawn_face() for _ in range(face_count)]

    @property
    def ready(self) -> bool:
        return self._clock() >= self._ready_at

    @property
    def score_threshold(self) -> float:
        return self._score_threshold

    async def detect(self) -> list[DetectionRecord]:
        if self._latency > 0:
            await asyncio.sleep(self._latency)
        records: list[DetectionRecord] = []
        for face in self._faces:
            if self._rand.random() >= self._hold_probability:
                self._move(face)
            if face.score < self._score_threshold:
                continue
            records.append(
                DetectionRecord(
                    box=BoundingBox(x=face.x, y=face.y, width=face.size, height=face.size),
                    gender=face.gender,
                    gender_probability=face.gender_probability,
                    age=face.age,
                    expressions=dict(face.expressions),
                    score=face.score,
                )
            )
        return records

    def _spawn_face(self) -> _SimulatedFace:
        size = float(self._rand.randint(60, 160))
        face = _SimulatedFace(
            x=float(self._rand.randint(0, max(0, self._frame_width - int(size)))),
            y=float(self._rand.randint(0, max(0, self._frame_height - int(size)))),
            size=size,
            gender=self._rand.choice(("male", "female")),
            gender_probability=round(self._rand.uniform(0.55, 0.99), 2),
            age=float(self._rand.randint(18, 70)),
            score=round(self._rand.uniform(0.3, 0.99), 2),
        )
        face.expressions = self._sample_expressions()
        return face

    def _move(self, face: _SimulatedFace) -> None:
        face.x = self._clamp(face.x + self._rand.randint(-8, 8), self._frame_width - face.size)
        face.y = self._clamp(face.y + self._rand.randint(-8, 8), self._frame_height - face.size)
        face.score = round(min(0.99, max(0.0, face.score + self._rand.uniform(-0.05, 0.05))), 2)
        face.expressions = self._sample_expressions()

    def _sample_expressions(self) -> dict[str, float]:
        weights = [self._rand.random() for _ in EXPRESSIONS]
        total = sum(weights) or 1.0
        return {name: round(weight / total, 2) for name, weight in zip(EXPRESSIONS, weights)}

    @staticmethod
    def _clamp(value: float, upper: float) -> float:
        return float(min(max(0.0, value), max(0.0, upper)))


__all__ = ["SimulatedFaceSource"]
