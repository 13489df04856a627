"""
facebridge - stream face detections to a WebSocket consumer.

Detections are formatted into a flat JSON message, filtered so only changed
faces go out, and published over a self-healing WebSocket connection.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
