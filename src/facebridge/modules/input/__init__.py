"""Detection sources that feed the publisher."""

from .base import DetectionSource, DetectionSourceError
from .face_simulator import SimulatedFaceSource
from .replay_source import ReplayDetectionSource

__all__ = [
    "DetectionSource",
    "DetectionSourceError",
    "ReplayDetectionSource",
    "SimulatedFaceSource",
]
