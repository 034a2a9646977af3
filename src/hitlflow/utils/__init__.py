"""Scheduling and synchronization helpers."""

from .locks import KeyedLocks
from .timers import TimerHandle, TimerRegistry

__all__ = [
    "KeyedLocks",
    "TimerHandle",
    "TimerRegistry",
]
