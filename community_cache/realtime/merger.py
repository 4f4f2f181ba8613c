"""
Realtime merger.

Reconciles change notifications (``inserted(row)`` / ``deleted(id)``)
into the live cache of one kind. Events are applied in delivery order
with no reordering buffer, so a delete that arrives after an insert
removes the record and an insert that arrives after a delete adds it.

The merger never fetches: references (such as a message's author) are
resolved only from data already resident in the cache store, with a
generated placeholder when the reference cannot be resolved.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from ..cache.store import CacheStore
from ..config import MEMBERS, NotificationResolver, sort_records
from ..gateway.base import RemoteGateway, Subscription
from ..logging_utils import get_cache_logger

# Receives the kind and the new cached snapshot after each applied change
Observer = Callable[[str, list[Any]], None]


class RealtimeMerger:
    """Applies pushed inserts and deletes to one cached kind.

    Inserts for ids already cached are ignored, which makes redelivery
    and the race with the synchronizer's own invalidate/refetch path
    harmless. Notifications for a kind with nothing cached are ignored
    too; the next read loads the full state.

    Example:
        >>> merger = RealtimeMerger(cache, "messages")
        >>> merger.add_observer(lambda kind, snapshot: render(snapshot))
        >>> subscription = merger.attach(gateway)
        >>> ...
        >>> subscription.close()
    """

    def __init__(
        self,
        cache: CacheStore,
        kind: str,
        resolver: NotificationResolver | None = None,
    ) -> None:
        """Initialize the merger.

        Args:
            cache: Cache store to update
            kind: Entity kind this merger maintains
            resolver: Pushed row -> record; defaults to the kind's resolver
        """
        self.cache = cache
        self.kind = kind
        self.policy = cache.config.policy(kind)
        self.resolver = resolver or self.policy.resolver
        self.log = get_cache_logger(__name__, kind=kind, collection=self.policy.collection)
        self._observers: list[Observer] = []

    def add_observer(self, observer: Observer) -> Callable[[], None]:
        """Register a change observer.

        Returns:
            Callable that unregisters the observer
        """
        self._observers.append(observer)

        def _remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _remove

    def attach(self, gateway: RemoteGateway) -> Subscription:
        """Subscribe to the kind's collection on the gateway."""
        return gateway.subscribe(self.policy.collection, self.on_inserted, self.on_deleted)

    def on_inserted(self, row: dict[str, Any]) -> bool:
        """Apply an insert notification.

        Returns:
            True if the cache changed
        """
        record_id = row.get("id")
        if record_id is None:
            self.log.warning(f"Ignoring {self.kind} insert notification without id")
            return False
        record_id = str(record_id)

        if not self.cache.get(self.kind).loaded:
            self.log.debug(
                f"Ignoring {self.kind} insert: nothing cached", extra={"record_id": record_id}
            )
            return False
        if record_id in self.cache.ids(self.kind):
            self.log.debug(
                f"Ignoring duplicate {self.kind} insert", extra={"record_id": record_id}
            )
            return False

        members = self.cache.get(MEMBERS).data
        record = self.resolver(row, list(members) if members is not None else None)

        def insert(data: list[Any]) -> list[Any]:
            return sort_records([*data, record], self.policy.ordering)

        self.cache.patch(self.kind, insert)
        self._notify()
        return True

    def on_deleted(self, record_id: str) -> bool:
        """Apply a delete notification. Absent ids are a no-op.

        Returns:
            True if the cache changed
        """
        record_id = str(record_id)
        if record_id not in self.cache.ids(self.kind):
            return False

        self.cache.patch(
            self.kind, lambda data: [item for item in data if item.id != record_id]
        )
        self._notify()
        return True

    def _notify(self) -> None:
        snapshot = list(self.cache.get(self.kind).data or ())
        for observer in list(self._observers):
            observer(self.kind, snapshot)
