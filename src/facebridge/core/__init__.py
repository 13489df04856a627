"""
Core infrastructure shared by every facebridge module.
"""

from .bus import EventBus
from .config import ConfigError, ConfigService, ConfigSnapshot
from .contracts import (
    BaseModule,
    ConnectionState,
    ConnectionStatus,
    DetectionRecord,
    FacePayload,
    ModuleConfig,
    PublishOutcome,
    WireMessage,
)
from .orchestrator import Orchestrator

__all__ = [
    "BaseModule",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "ConnectionState",
    "ConnectionStatus",
    "DetectionRecord",
    "EventBus",
    "FacePayload",
    "ModuleConfig",
    "Orchestrator",
    "PublishOutcome",
    "WireMessage",
]
