"""
Realtime change notifications.

RealtimeMerger folds insert/delete notifications into the cache;
RealtimeChannel receives them from a WebSocket change feed.
"""

from .channel import RealtimeChannel
from .merger import Observer, RealtimeMerger

__all__ = [
    "Observer",
    "RealtimeChannel",
    "RealtimeMerger",
]
