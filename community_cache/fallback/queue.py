"""
Fallback write queue.

When the gateway rejects a write the product cannot let silently fail
(user-authored content such as comments), the payload is persisted in
the local durable store and spliced back into read results, flagged as
pending, until the caller retries successfully.

Records are kept as one JSON list per namespace under
``fallback:{namespace}``. There is no background retry.

Deduplication across the local/server boundary uses a client-generated
idempotency key (``client_ref``). The same key is sent with every
attempt of the write, so once a server row carrying that key is seen,
the queued copy is dropped.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ..config import Ordering, sort_records
from ..durable.store import DurableStore, read_json_list, write_json_list
from ..models import format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

# Prefix of locally generated ids; server ids are bare UUIDs
LOCAL_ID_PREFIX = "local-"

KEY_PREFIX = "fallback:"


def new_local_id() -> str:
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def new_client_ref() -> str:
    """Idempotency key threaded through to the gateway with a write."""
    return uuid.uuid4().hex


def is_local_id(record_id: str) -> bool:
    return record_id.startswith(LOCAL_ID_PREFIX)


@dataclass
class FallbackRecord:
    """A write that failed remotely and is held locally.

    Attributes:
        local_id: Locally unique id, always prefixed ``local-``
        namespace: Originating action / real kind (e.g. ``comments``)
        payload: Wire fields of the failed write
        created_at: When the write was attempted
        client_ref: Idempotency key sent with the write
        pending: Always True while queued
    """

    local_id: str
    namespace: str
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    client_ref: str | None = None
    pending: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "local_id": self.local_id,
            "namespace": self.namespace,
            "payload": self.payload,
            "created_at": format_timestamp(self.created_at),
            "client_ref": self.client_ref,
            "pending": self.pending,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FallbackRecord:
        """Create from dictionary."""
        return cls(
            local_id=data["local_id"],
            namespace=data.get("namespace", ""),
            payload=data.get("payload") or {},
            created_at=parse_timestamp(data.get("created_at")),
            client_ref=data.get("client_ref"),
            pending=True,
        )


class FallbackQueue:
    """Persists failed writes per namespace and serves them back to readers."""

    def __init__(
        self,
        store: DurableStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            store: Local durable store holding the queued records
            clock: Source of ``created_at`` for new records (default: now, UTC)
        """
        self.store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    def _key(self, namespace: str) -> str:
        return f"{KEY_PREFIX}{namespace}"

    def _load(self, namespace: str) -> list[FallbackRecord]:
        records = []
        for item in read_json_list(self.store, self._key(namespace)):
            try:
                records.append(FallbackRecord.from_dict(item))
            except (KeyError, TypeError) as e:
                logger.warning(f"Dropping malformed fallback record in {namespace}: {e}")
        return records

    def _save(self, namespace: str, records: list[FallbackRecord]) -> None:
        write_json_list(self.store, self._key(namespace), [r.to_dict() for r in records])

    def enqueue(
        self,
        namespace: str,
        payload: dict[str, Any],
        *,
        client_ref: str | None = None,
    ) -> str:
        """Queue a failed write.

        Args:
            namespace: Originating action (e.g. ``comments``)
            payload: Wire fields of the write
            client_ref: Idempotency key sent with the write, if any

        Returns:
            The record's local id
        """
        record = FallbackRecord(
            local_id=new_local_id(),
            namespace=namespace,
            payload=dict(payload),
            created_at=self._clock(),
            client_ref=client_ref or payload.get("client_ref"),
        )
        records = self._load(namespace)
        records.append(record)
        self._save(namespace, records)
        logger.warning(f"Queued failed {namespace} write locally as {record.local_id}")
        return record.local_id

    def list_for(
        self,
        namespace: str,
        filter_key: str | None = None,
        filter_value: Any = None,
    ) -> list[FallbackRecord]:
        """Queued records of a namespace, optionally those whose payload
        field ``filter_key`` equals ``filter_value``."""
        records = self._load(namespace)
        if filter_key is None:
            return records
        return [r for r in records if r.payload.get(filter_key) == filter_value]

    def remove(self, namespace: str, local_id: str) -> bool:
        """Drop one record, e.g. after the caller's retry succeeded."""
        records = self._load(namespace)
        kept = [r for r in records if r.local_id != local_id]
        if len(kept) == len(records):
            return False
        self._save(namespace, kept)
        return True

    def reconcile(self, namespace: str, confirmed_refs: Iterable[str | None]) -> int:
        """Drop queued records whose ``client_ref`` the server has confirmed.

        Returns:
            Number of records dropped
        """
        refs = {ref for ref in confirmed_refs if ref}
        if not refs:
            return 0
        records = self._load(namespace)
        kept = [r for r in records if r.client_ref not in refs]
        dropped = len(records) - len(kept)
        if dropped:
            self._save(namespace, kept)
            logger.info(f"Reconciled {dropped} queued {namespace} write(s) with the server")
        return dropped

    def merge_with_remote(
        self,
        namespace: str,
        remote: list[Any],
        key_field: str,
        key_value: Any,
        to_record: Callable[[FallbackRecord], Any],
        ordering: Ordering = Ordering.OLDEST_FIRST,
    ) -> list[Any]:
        """Splice pending records into a confirmed remote result.

        Queued records already confirmed by ``remote`` (same ``client_ref``)
        are dropped from the queue first; the rest are converted with
        ``to_record`` and interleaved by timestamp.

        Args:
            namespace: Queue namespace (e.g. ``comments``)
            remote: Confirmed records, each with ``created_at`` and ``client_ref``
            key_field: Payload field selecting the relevant records (e.g. ``post_id``)
            key_value: Value that field must equal
            to_record: FallbackRecord -> domain record flagged pending
            ordering: Order of the merged result

        Returns:
            New merged list; ``remote`` is not modified
        """
        self.reconcile(namespace, (getattr(r, "client_ref", None) for r in remote))
        pending = [to_record(r) for r in self.list_for(namespace, key_field, key_value)]
        return merge_pending(remote, pending, ordering)

    def clear(self, namespace: str) -> None:
        self.store.remove(self._key(namespace))


def merge_pending(
    confirmed: list[Any],
    pending: list[Any],
    ordering: Ordering = Ordering.OLDEST_FIRST,
) -> list[Any]:
    """Interleave pending local records with confirmed remote ones by timestamp.

    Both lists hold records with ``created_at``. On equal timestamps the
    confirmed record comes first.
    """
    return sort_records([*confirmed, *pending], ordering)
