"""
In-memory gateway.

A process-local implementation of the remote gateway for development
and tests. Rows live in per-collection dicts, change notifications are
delivered synchronously to subscribers, and failures can be injected
per operation.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections import Counter, defaultdict
from datetime import UTC, datetime, timedelta
from typing import Any

from ..exceptions import GatewayError, NotFoundError
from ..models import parse_timestamp
from .base import DeleteHandler, Filter, InsertHandler, Order, RemoteGateway, Subscription

logger = logging.getLogger(__name__)


def _matches(row: dict[str, Any], flt: Filter) -> bool:
    value = row.get(flt.field)
    expected = flt.value
    if flt.field.endswith("_at"):
        value = parse_timestamp(value)
        expected = parse_timestamp(expected)
    if flt.op == "eq":
        return value == expected
    if value is None:
        return False
    if flt.op == "lt":
        return value < expected
    return value > expected


def _sort_key(field: str):
    def key(row: dict[str, Any]) -> Any:
        if field.endswith("_at"):
            return parse_timestamp(row.get(field))
        return row.get(field)

    return key


class InMemoryGateway(RemoteGateway):
    """Dict-backed gateway with failure injection and call accounting.

    Attributes:
        calls: Count of calls per ``"{operation}:{collection}"``
    """

    def __init__(self, clock=None) -> None:
        """Initialize the gateway.

        Args:
            clock: Optional callable returning the ``created_at`` datetime
                for inserted rows. Defaults to a strictly increasing UTC clock.
        """
        self._rows: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._subscribers: dict[str, list[tuple[InsertHandler, DeleteHandler]]] = defaultdict(list)
        self._failures: dict[str, Exception] = {}
        self._clock = clock
        self._last_created: datetime | None = None
        self.calls: Counter[str] = Counter()

    def seed(self, collection: str, rows: list[dict[str, Any]]) -> None:
        """Store rows directly, without notifications."""
        for row in rows:
            row = dict(row)
            row.setdefault("id", str(uuid.uuid4()))
            self._rows[collection][str(row["id"])] = row

    def rows(self, collection: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._rows[collection].values()]

    def fail(self, operation: str, error: Exception | None = None) -> None:
        """Make every call to ``operation`` raise until ``recover`` is called.

        Args:
            operation: ``query``, ``insert``, ``update``, ``delete`` or ``*``
            error: Exception to raise (default: GatewayError)
        """
        self._failures[operation] = error or GatewayError(f"Injected {operation} failure")

    def recover(self, operation: str | None = None) -> None:
        if operation is None:
            self._failures.clear()
        else:
            self._failures.pop(operation, None)

    def _check(self, operation: str, collection: str) -> None:
        self.calls[f"{operation}:{collection}"] += 1
        error = self._failures.get(operation) or self._failures.get("*")
        if error is not None:
            raise error

    def _next_created_at(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        now = datetime.now(UTC)
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    async def query(
        self,
        collection: str,
        filters: list[Filter] | None = None,
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self._check("query", collection)
        rows = [
            r for r in self._rows[collection].values()
            if all(_matches(r, f) for f in filters or [])
        ]
        if order is not None:
            rows.sort(key=_sort_key(order.field), reverse=not order.ascending)
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    async def insert(self, collection: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        self._check("insert", collection)
        row = dict(fields)
        row["id"] = str(uuid.uuid4())
        row["created_at"] = self._next_created_at().isoformat()
        self._rows[collection][row["id"]] = row
        for on_insert, _ in list(self._subscribers[collection]):
            on_insert(copy.deepcopy(row))
        return copy.deepcopy(row)

    async def update(self, collection: str, record_id: str, fields: dict[str, Any]) -> None:
        self._check("update", collection)
        row = self._rows[collection].get(record_id)
        if row is None:
            raise NotFoundError(record_id, collection)
        row.update(copy.deepcopy(fields))

    async def delete(self, collection: str, record_id: str) -> None:
        self._check("delete", collection)
        if self._rows[collection].pop(record_id, None) is None:
            raise NotFoundError(record_id, collection)
        for _, on_delete in list(self._subscribers[collection]):
            on_delete(record_id)

    def subscribe(
        self,
        collection: str,
        on_insert: InsertHandler,
        on_delete: DeleteHandler,
    ) -> Subscription:
        handlers = (on_insert, on_delete)
        self._subscribers[collection].append(handlers)
        logger.debug(f"Subscribed to {collection}")

        def _remove() -> None:
            if handlers in self._subscribers[collection]:
                self._subscribers[collection].remove(handlers)

        return Subscription(_remove)

    def push_insert(self, collection: str, row: dict[str, Any]) -> None:
        """Deliver an insert notification without storing the row."""
        for on_insert, _ in list(self._subscribers[collection]):
            on_insert(copy.deepcopy(row))

    def push_delete(self, collection: str, record_id: str) -> None:
        """Deliver a delete notification without touching stored rows."""
        for _, on_delete in list(self._subscribers[collection]):
            on_delete(record_id)
