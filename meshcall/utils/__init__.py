"""Shared helpers."""

from .logging import configure_logging, short_id
from .tasks import BackgroundTasks

__all__ = ["BackgroundTasks", "configure_logging", "short_id"]
