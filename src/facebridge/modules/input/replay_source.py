"""
Replay detections captured from a real detector as JSON lines.

Each line holds the faces of one frame, either as a JSON array or as an
object with a ``faces`` array. Entries use the face-api result shape
(``alignedRect.box``, ``genderProbability``...) or the flat DetectionRecord
fields; the formatter accepts both.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .base import DetectionSourceError

logger = logging.getLogger(__name__)


def _detection_score(entry: Mapping[str, Any]) -> float:
    value: Any = 1.0
    detection = entry.get("detection")
    if "score" in entry:
        value = entry["score"]
    elif isinstance(detection, Mapping) and "score" in detection:
        value = detection["score"]
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class ReplayDetectionSource:
    """Yield one recorded frame per tick, optionally looping."""

    def __init__(
        self,
        path: str | Path,
        *,
        loop: bool = True,
        score_threshold: float = 0.5,
    ) -> None:
        self._path = Path(path)
        self._loop = loop
        self._score_threshold = score_threshold
        self._frames: list[list[Mapping[str, Any]]] | None = None
        self._cursor = 0

    @property
    def ready(self) -> bool:
        if self._frames is None:
            return False
        return self._loop or self._cursor < len(self._frames)

    async def load(self) -> None:
        """Read and parse the recording; must complete before ticks produce records."""
        try:
            text = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        except OSError as exc:
            raise DetectionSourceError(f"Cannot read replay file {self._path}: {exc}") from exc
        frames: list[list[Mapping[str, Any]]] = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                frames.append(self._parse_frame(json.loads(line)))
            except (json.JSONDecodeError, DetectionSourceError) as exc:
                logger.warning("Skipping replay line %d of %s: %s", lineno, self._path, exc)
        self._frames = frames
        self._cursor = 0
        logger.info("Loaded %d recorded frames from %s", len(frames), self._path)

    async def detect(self) -> list[Mapping[str, Any]]:
        if not self._frames:
            return []
        if self._cursor >= len(self._frames):
            if not self._loop:
                return []
            self._cursor = 0
        frame = self._frames[self._cursor]
        self._cursor += 1
        return [entry for entry in frame if _detection_score(entry) >= self._score_threshold]

    @staticmethod
    def _parse_frame(raw: Any) -> list[Mapping[str, Any]]:
        if isinstance(raw, Mapping):
            raw = raw.get("faces", [])
        if not isinstance(raw, list):
            raise DetectionSourceError("frame must be a list of faces or an object with 'faces'")
        return [entry for entry in raw if isinstance(entry, Mapping)]


__all__ = ["ReplayDetectionSource"]
