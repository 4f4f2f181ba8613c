"""
In-memory cache store for entity snapshots.
"""

from .store import CacheEntry, CacheStore, Mutator

__all__ = [
    "CacheEntry",
    "CacheStore",
    "Mutator",
]
