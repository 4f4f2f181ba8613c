"""
In-memory cache store.

Holds one snapshot per entity kind together with the time it was
fetched. The store is a plain object with injected configuration so
tests and independent clients each get their own instance.

Not safe for uncoordinated writers on several threads: all access is
expected to happen on one event loop. Hosts that call in from worker
threads must serialize access themselves.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..config import CacheConfig

logger = logging.getLogger(__name__)

# Transforms a cached sequence into its replacement
Mutator = Callable[[list[Any]], list[Any]]


@dataclass(frozen=True)
class CacheEntry:
    """Snapshot of one kind.

    Invariant: ``data is None`` implies ``fetched_at == 0``.
    """

    data: tuple[Any, ...] | None = None
    fetched_at: float = 0.0

    @property
    def loaded(self) -> bool:
        return self.data is not None


EMPTY = CacheEntry()


class CacheStore:
    """Per-kind holder of ``{data, fetched_at}`` with a freshness predicate.

    Entries are immutable; every write replaces the whole entry, so a
    snapshot handed to a caller never changes underneath it.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache store.

        Args:
            config: Kind table supplying TTLs (defaults to the built-in table)
            clock: Time source in seconds
        """
        self.config = config or CacheConfig.default()
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def now(self) -> float:
        return self._clock()

    def get(self, kind: str) -> CacheEntry:
        """Current entry for a kind. Pure read."""
        return self._entries.get(kind, EMPTY)

    def is_fresh(self, kind: str, mode: str | None = None) -> bool:
        """Whether the kind holds data younger than its TTL.

        Args:
            kind: Entity kind
            mode: Optional named TTL (e.g. ``live`` polling for chat)
        """
        entry = self.get(kind)
        if entry.data is None:
            return False
        ttl = self.config.policy(kind).ttl_for(mode)
        return self.now() - entry.fetched_at < ttl

    def set(self, kind: str, data: list[Any]) -> None:
        """Replace a kind's entry wholesale and stamp it fetched now."""
        self._entries[kind] = CacheEntry(tuple(data), self.now())

    def invalidate(self, kind: str) -> None:
        """Reset a kind to the empty entry."""
        self._entries.pop(kind, None)
        logger.debug(f"Invalidated cache for {kind}")

    def invalidate_all(self) -> None:
        self._entries.clear()

    def patch(self, kind: str, mutator: Mutator) -> bool:
        """Transform cached data in place without touching ``fetched_at``.

        Args:
            kind: Entity kind
            mutator: Receives a copy of the cached list, returns the new list

        Returns:
            True if the kind had data to patch, False if nothing was cached
        """
        entry = self.get(kind)
        if entry.data is None:
            return False
        self._entries[kind] = CacheEntry(tuple(mutator(list(entry.data))), entry.fetched_at)
        return True

    def ids(self, kind: str) -> set[str]:
        """Identifiers of the records currently cached for a kind."""
        entry = self.get(kind)
        return {record.id for record in entry.data or ()}

    def stats(self) -> dict[str, Any]:
        """Cache statistics per kind."""
        now = self.now()
        return {
            kind: {
                "size": len(entry.data or ()),
                "age": now - entry.fetched_at if entry.data is not None else None,
                "fresh": self.is_fresh(kind),
            }
            for kind, entry in self._entries.items()
        }
