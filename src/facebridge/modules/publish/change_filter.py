"""
Single-slot duplicate suppression for outbound messages.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class ChangeFilter:
    """
    Remember the last accepted serialized message and reject exact repeats.

    There is one global slot, not one per face: two faces alternating in the
    same scene never suppress each other.
    """

    def __init__(self) -> None:
        self._last_sent: str | None = None

    @property
    def snapshot(self) -> str | None:
        return self._last_sent

    def should_send(self, candidate: str) -> bool:
        if candidate == self._last_sent:
            logger.debug("Suppressing unchanged message")
            return False
        self._last_sent = candidate
        return True

    def reset(self) -> None:
        self._last_sent = None


__all__ = ["ChangeFilter"]
