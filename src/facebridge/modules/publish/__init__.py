"""Publishing pipeline: formatting, change filtering and the WebSocket link."""

from .change_filter import ChangeFilter
from .connection import ConnectionManager, websocket_connector
from .formatter import EventFormatter, MalformedDetectionError
from .publisher import FacePublisher

__all__ = [
    "ChangeFilter",
    "ConnectionManager",
    "EventFormatter",
    "FacePublisher",
    "MalformedDetectionError",
    "websocket_connector",
]
