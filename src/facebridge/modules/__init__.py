"""
Collection of facebridge components grouped by responsibility.
"""

from .dashboard.status_api import StatusApi
from .input.base import DetectionSource, DetectionSourceError
from .input.face_simulator import SimulatedFaceSource
from .input.replay_source import ReplayDetectionSource
from .publish.change_filter import ChangeFilter
from .publish.connection import ConnectionManager
from .publish.formatter import EventFormatter, MalformedDetectionError
from .publish.publisher import FacePublisher
from .status.prometheus_exporter import PrometheusExporter

__all__ = [
    "ChangeFilter",
    "ConnectionManager",
    "DetectionSource",
    "DetectionSourceError",
    "EventFormatter",
    "FacePublisher",
    "MalformedDetectionError",
    "PrometheusExporter",
    "ReplayDetectionSource",
    "SimulatedFaceSource",
    "StatusApi",
]
