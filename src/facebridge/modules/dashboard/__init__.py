"""Read-only status surfaces for operators."""

from .status_api import StatusApi

__all__ = ["StatusApi"]
