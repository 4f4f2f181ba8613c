"""
Abstract remote data gateway interface.

Defines the minimum surface the cache needs from the remote
structured-data service. All adapters (in-memory, Cosmos DB) implement
this interface and raise GatewayError for network, authorization and
server failures.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

# Callback for an inserted row (the full wire record)
InsertHandler = Callable[[dict[str, Any]], None]

# Callback for a deleted row (its identifier)
DeleteHandler = Callable[[str], None]

FILTER_OPS = ("eq", "lt", "gt")


@dataclass(frozen=True)
class Filter:
    """A single field predicate.

    Attributes:
        field: Wire field name
        op: One of ``eq``, ``lt`` (strictly less), ``gt`` (strictly greater)
        value: Comparison value
    """

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter op: {self.op}")

    @classmethod
    def eq(cls, field: str, value: Any) -> Filter:
        return cls(field, "eq", value)

    @classmethod
    def lt(cls, field: str, value: Any) -> Filter:
        return cls(field, "lt", value)


@dataclass(frozen=True)
class Order:
    """Result ordering."""

    field: str
    ascending: bool = True


class Subscription:
    """Handle for an active change subscription.

    Closing is idempotent.
    """

    def __init__(self, on_close: Callable[[], None] | None = None) -> None:
        self._on_close = on_close
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close:
            self._on_close()


class RemoteGateway(ABC):
    """Authenticated reads and writes against named record collections."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: list[Filter] | None = None,
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Query a collection.

        Args:
            collection: Collection name
            filters: Predicates, all of which must hold
            order: Result ordering
            limit: Maximum number of rows

        Returns:
            Wire rows

        Raises:
            GatewayError: On network, authorization or server failure
        """

    @abstractmethod
    async def insert(self, collection: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        """Insert a row. The service assigns ``id`` and ``created_at``.

        Returns:
            The stored row when the service returns it, else None

        Raises:
            GatewayError: On failure
        """

    @abstractmethod
    async def update(self, collection: str, record_id: str, fields: dict[str, Any]) -> None:
        """Set fields on an existing row.

        Raises:
            NotFoundError: If the row does not exist
            GatewayError: On failure
        """

    @abstractmethod
    async def delete(self, collection: str, record_id: str) -> None:
        """Delete a row.

        Raises:
            NotFoundError: If the row does not exist
            GatewayError: On failure
        """

    @abstractmethod
    def subscribe(
        self,
        collection: str,
        on_insert: InsertHandler,
        on_delete: DeleteHandler,
    ) -> Subscription:
        """Subscribe to insert/delete notifications for a collection.

        Returns:
            Handle whose ``close()`` ends the subscription
        """

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""
        return None
