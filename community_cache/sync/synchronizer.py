"""
Read-through / write-through synchronizer.

The synchronizer is the only writer of the cache store for caller
operations. Per call it decides whether to serve from memory or go to
the gateway, folds write results back into the cache, and stitches
paginated history into one ordered timeline.

Read paths never raise GatewayError: they degrade to the stale cached
snapshot, then to the configured static fallback dataset, then to an
empty list.

Write paths follow an explicit per-call WritePolicy:

    PROPAGATE               gateway failures are raised to the caller
    QUEUE_AND_SUCCEED       failures are queued locally and reported as pending
    OPTIMISTIC_BEST_EFFORT  failures are logged; the optimistic cache state stays

Optimistic patches are applied before the gateway call is awaited, so
any read that runs after ``write`` has started sees the patched value
even though the server has not confirmed it yet.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from ..cache.store import CacheStore
from ..config import REQUIRED_FIELDS, KindPolicy, Ordering, sort_records
from ..exceptions import GatewayError, NotFoundError, ValidationError
from ..fallback.queue import FallbackQueue, new_client_ref
from ..gateway.base import Filter, Order, RemoteGateway
from ..logging_utils import CacheLoggerAdapter, get_cache_logger
from ..models import format_timestamp

# Failures a read path absorbs; a call that never resolves counts as rejected
READ_FAILURES = (GatewayError, TimeoutError)


class WriteOp(Enum):
    """Kind of write, which decides how the cache is reconciled.

    CREATE: server assigns id/timestamp; cache is invalidated after the write
    REPLACE: effect known client-side; cache is patched before the write
    DELETE: record filtered out of the cache before the write
    """

    CREATE = "create"
    REPLACE = "replace"
    DELETE = "delete"


class WritePolicy(Enum):
    """What a write does when the gateway fails."""

    PROPAGATE = "propagate"
    QUEUE_AND_SUCCEED = "queue_and_succeed"
    OPTIMISTIC_BEST_EFFORT = "optimistic_best_effort"


@dataclass
class WriteResult:
    """Outcome of a write.

    Attributes:
        row: Row returned by the gateway for a successful CREATE
        pending: True when the write was queued locally instead
        local_id: Fallback record id when pending
        client_ref: Idempotency key sent with the write, if any
        error: The absorbed gateway error, for queued/best-effort writes

    A queued write counts as ``ok``: it succeeded locally and carries the
    ``pending`` marker. Use ``confirmed`` for "accepted by the server".
    """

    row: dict[str, Any] | None = None
    pending: bool = False
    local_id: str | None = None
    client_ref: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None or self.pending

    @property
    def confirmed(self) -> bool:
        return self.error is None and not self.pending


def _replace_by_id(record: Any):
    def mutator(data: list[Any]) -> list[Any]:
        return [record if item.id == record.id else item for item in data]

    return mutator


def _without_id(record_id: str):
    def mutator(data: list[Any]) -> list[Any]:
        return [item for item in data if item.id != record_id]

    return mutator


class Synchronizer:
    """Decides per call between cache and gateway, and reconciles the two.

    Example:
        >>> sync = Synchronizer(gateway, CacheStore(config))
        >>> posts = await sync.fetch_many("posts")          # network
        >>> posts = await sync.fetch_many("posts")          # memory
        >>> await sync.write("posts", WriteOp.REPLACE, {"likes_count": 3},
        ...                  record=liked_post, policy=WritePolicy.OPTIMISTIC_BEST_EFFORT)
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        cache: CacheStore,
        fallback: FallbackQueue | None = None,
    ) -> None:
        """Initialize the synchronizer.

        Args:
            gateway: Remote data gateway
            cache: Cache store (carries the kind configuration)
            fallback: Queue used by QUEUE_AND_SUCCEED writes
        """
        self.gateway = gateway
        self.cache = cache
        self.config = cache.config
        self.fallback = fallback

    def _log(self, policy: KindPolicy, collection: str | None = None) -> CacheLoggerAdapter:
        return get_cache_logger(
            __name__, kind=policy.name, collection=collection or policy.collection
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def cached(self, kind: str) -> list[Any]:
        """Merged view of a kind as currently cached (copy; empty if not loaded)."""
        return list(self.cache.get(kind).data or ())

    def replace_cached(self, kind: str, records: list[Any]) -> None:
        """Store a caller-assembled snapshot, in canonical order, as fresh."""
        policy = self.config.policy(kind)
        self.cache.set(kind, sort_records(records, policy.ordering))

    def oldest_cursor(self, kind: str) -> datetime | None:
        """Pagination cursor: ``created_at`` of the oldest cached record."""
        data = self.cache.get(kind).data
        if not data:
            return None
        return min(record.created_at for record in data)

    async def fetch_many(
        self,
        kind: str,
        force_refresh: bool = False,
        *,
        mode: str | None = None,
        limit: int | None = None,
    ) -> list[Any]:
        """Read a whole kind through the cache.

        Args:
            kind: Entity kind
            force_refresh: Skip the freshness check
            mode: Named TTL for this call site
            limit: Maximum rows to request from the gateway

        Returns:
            Records in the kind's canonical order
        """
        policy = self.config.policy(kind)
        log = self._log(policy)

        if not force_refresh and self.cache.is_fresh(kind, mode):
            log.debug(f"Cache hit for {kind}")
            return self.cached(kind)

        try:
            rows = await self.gateway.query(
                policy.collection, order=self._canonical_order(policy), limit=limit
            )
        except READ_FAILURES as e:
            return self._degrade(policy, e)

        records = sort_records((policy.mapper(row) for row in rows), policy.ordering)
        self.cache.set(kind, records)
        log.debug(f"Fetched {len(records)} {kind} from gateway")
        return list(records)

    async def fetch_page(
        self,
        kind: str,
        limit: int,
        before: datetime | str | None = None,
        *,
        mode: str | None = None,
    ) -> list[Any]:
        """Fetch one page of a paginated kind and merge it into the cache.

        Without a cursor this is the initial load: a fresh cache holding at
        least ``limit`` records is served directly, otherwise the newest
        ``limit`` records replace the cache. With a cursor, up to ``limit``
        records strictly older than ``before`` are fetched, records already
        cached are dropped, and the rest are merged at the old end.

        Args:
            kind: Entity kind
            limit: Page size
            before: Cursor (``created_at`` of the oldest held record)
            mode: Named TTL for the initial-load freshness check

        Returns:
            Only the newly fetched page, in canonical order. Use ``cached``
            for the merged timeline.

        Raises:
            ValidationError: If ``limit`` is not positive, or the kind is not
                loaded in pages
        """
        if limit < 1:
            raise ValidationError("limit", "must be >= 1", str(limit))

        policy = self.config.policy(kind)
        if not policy.paginated:
            raise ValidationError("kind", "is not loaded in pages", kind)
        log = self._log(policy)
        newest_first = Order(policy.order_field, ascending=False)

        if before is None:
            entry = self.cache.get(kind)
            if (
                entry.data is not None
                and len(entry.data) >= limit
                and self.cache.is_fresh(kind, mode)
            ):
                log.debug(f"Serving newest {limit} {kind} from cache")
                return self._newest(policy, list(entry.data), limit)

            try:
                rows = await self.gateway.query(policy.collection, order=newest_first, limit=limit)
            except READ_FAILURES as e:
                return self._newest(policy, self._degrade(policy, e), limit)

            page = self._from_newest_first(policy, rows)
            # A newest-page fetch is the ground truth for the timeline's tail
            self.cache.set(kind, page)
            return list(page)

        cursor = before if isinstance(before, str) else format_timestamp(before)
        try:
            rows = await self.gateway.query(
                policy.collection,
                filters=[Filter.lt(policy.order_field, cursor)],
                order=newest_first,
                limit=limit,
            )
        except READ_FAILURES as e:
            log.warning(f"Could not load older {kind} before {cursor}: {e}")
            return []

        page = self._from_newest_first(policy, rows)

        # Records at the cursor boundary can legitimately come back twice
        seen = self.cache.ids(kind)
        delta = []
        for record in page:
            if record.id not in seen:
                seen.add(record.id)
                delta.append(record)

        if policy.ordering is Ordering.OLDEST_FIRST:
            merged = self.cache.patch(kind, lambda data: [*delta, *data])
        else:
            merged = self.cache.patch(kind, lambda data: [*data, *delta])
        if not merged:
            log.debug(f"No {kind} timeline cached; older page not retained")

        return delta

    async def fetch_uncached(
        self,
        collection: str,
        mapper: Callable[[dict[str, Any]], Any],
        *,
        filters: list[Filter] | None = None,
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[Any] | None:
        """Read a sub-resource that is loaded on demand and never cached.

        Returns:
            Mapped records, or None when the gateway failed (so callers can
            tell "no rows" from "unknown")
        """
        try:
            rows = await self.gateway.query(collection, filters=filters, order=order, limit=limit)
        except READ_FAILURES as e:
            get_cache_logger(__name__, collection=collection).warning(
                f"Gateway read failed for {collection}: {e}"
            )
            return None
        return [mapper(row) for row in rows]

    def _canonical_order(self, policy: KindPolicy) -> Order | None:
        if policy.ordering is Ordering.OLDEST_FIRST:
            return Order(policy.order_field, ascending=True)
        if policy.ordering is Ordering.NEWEST_FIRST:
            return Order(policy.order_field, ascending=False)
        return None

    def _from_newest_first(self, policy: KindPolicy, rows: list[dict[str, Any]]) -> list[Any]:
        records = [policy.mapper(row) for row in rows]
        if policy.ordering is Ordering.OLDEST_FIRST:
            records.reverse()
            return records
        return sort_records(records, policy.ordering)

    def _newest(self, policy: KindPolicy, records: list[Any], limit: int) -> list[Any]:
        if policy.ordering is Ordering.OLDEST_FIRST:
            return records[-limit:]
        return records[:limit]

    def _degrade(self, policy: KindPolicy, error: Exception) -> list[Any]:
        """Stale cache, then static fallback, then nothing."""
        log = self._log(policy)
        entry = self.cache.get(policy.name)
        if entry.data is not None:
            log.warning(f"Gateway read failed for {policy.name}, serving stale cache: {error}")
            return list(entry.data)

        fallback = self.config.fallback_for(policy.name)
        if fallback is not None:
            log.warning(f"Gateway read failed for {policy.name}, serving fallback dataset: {error}")
            return fallback

        log.warning(f"Gateway read failed for {policy.name} with no cache or fallback: {error}")
        return []

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def write(
        self,
        kind: str,
        op: WriteOp,
        fields: dict[str, Any] | None = None,
        *,
        record_id: str | None = None,
        record: Any = None,
        policy: WritePolicy = WritePolicy.PROPAGATE,
        collection: str | None = None,
        queue_namespace: str | None = None,
    ) -> WriteResult:
        """Write through to the gateway and reconcile the cache.

        Args:
            kind: Cached kind affected by the write
            op: CREATE, REPLACE or DELETE
            fields: Wire fields to send
            record_id: Target id (REPLACE/DELETE; defaults to ``record.id``)
            record: Full domain record after the change, for optimistic REPLACE
            policy: Failure policy for this call
            collection: Remote collection if it differs from the kind's own
                (e.g. a comment written to ``comments`` that affects ``posts``)
            queue_namespace: Fallback namespace (defaults to the collection)

        Returns:
            WriteResult describing the outcome

        Raises:
            ValidationError: Before any network call, for an incomplete write
            GatewayError: Under PROPAGATE, when the gateway fails
        """
        kind_policy = self.config.policy(kind)
        target = collection or kind_policy.collection
        fields = dict(fields or {})
        if record_id is None and record is not None:
            record_id = getattr(record, "id", None)

        self._validate(op, target, fields, record_id)

        if op is WriteOp.CREATE:
            return await self._create(kind_policy, target, fields, policy, queue_namespace)
        if op is WriteOp.REPLACE:
            return await self._replace(kind_policy, target, record_id, fields, record, policy)
        return await self._delete(kind_policy, target, record_id, policy)

    def _validate(
        self,
        op: WriteOp,
        collection: str,
        fields: dict[str, Any],
        record_id: str | None,
    ) -> None:
        if op is WriteOp.CREATE:
            for name in REQUIRED_FIELDS.get(collection, ()):
                value = fields.get(name)
                if value is None or (isinstance(value, str) and not value.strip()):
                    raise ValidationError(name, f"required to create a {collection} record")
        elif not record_id:
            raise ValidationError("id", f"required to {op.value} a {collection} record")

    async def _create(
        self,
        kind_policy: KindPolicy,
        collection: str,
        fields: dict[str, Any],
        policy: WritePolicy,
        queue_namespace: str | None,
    ) -> WriteResult:
        log = self._log(kind_policy, collection)
        client_ref = fields.get("client_ref")
        if policy is WritePolicy.QUEUE_AND_SUCCEED and not client_ref:
            client_ref = fields["client_ref"] = new_client_ref()

        try:
            row = await self.gateway.insert(collection, fields)
        except (GatewayError, TimeoutError) as e:
            if policy is WritePolicy.QUEUE_AND_SUCCEED and self.fallback is not None:
                local_id = self.fallback.enqueue(
                    queue_namespace or collection, fields, client_ref=client_ref
                )
                log.warning(
                    f"Create on {collection} failed, queued locally: {e}",
                    extra={"op": "create", "record_id": local_id},
                )
                return WriteResult(pending=True, local_id=local_id, client_ref=client_ref, error=e)
            if policy is WritePolicy.OPTIMISTIC_BEST_EFFORT:
                log.error(f"Create on {collection} failed, continuing: {e}", extra={"op": "create"})
                return WriteResult(client_ref=client_ref, error=e)
            raise

        # Server-assigned fields are only known now; the next read refetches
        self.cache.invalidate(kind_policy.name)
        return WriteResult(row=row, client_ref=client_ref)

    async def _replace(
        self,
        kind_policy: KindPolicy,
        collection: str,
        record_id: str,
        fields: dict[str, Any],
        record: Any,
        policy: WritePolicy,
    ) -> WriteResult:
        log = self._log(kind_policy, collection)
        patched = False
        if record is not None:
            patched = self.cache.patch(kind_policy.name, _replace_by_id(record))

        try:
            await self.gateway.update(collection, record_id, fields)
        except (GatewayError, NotFoundError, TimeoutError) as e:
            if policy is WritePolicy.PROPAGATE:
                raise
            # Optimistic, not transactional: the patch stays
            log.error(
                f"Update of {collection}/{record_id} failed, keeping local state: {e}",
                extra={"op": "replace", "record_id": record_id},
            )
            return WriteResult(error=e)

        if not patched:
            self.cache.invalidate(kind_policy.name)
        return WriteResult()

    async def _delete(
        self,
        kind_policy: KindPolicy,
        collection: str,
        record_id: str,
        policy: WritePolicy,
    ) -> WriteResult:
        log = self._log(kind_policy, collection)
        data = self.cache.get(kind_policy.name).data
        removed = next((item for item in data or () if item.id == record_id), None)

        if not self.cache.patch(kind_policy.name, _without_id(record_id)):
            self.cache.invalidate(kind_policy.name)

        try:
            await self.gateway.delete(collection, record_id)
        except NotFoundError:
            log.debug(f"{collection}/{record_id} already deleted remotely")
        except (GatewayError, TimeoutError) as e:
            if policy is WritePolicy.PROPAGATE:
                if removed is not None:
                    self._restore(kind_policy, removed)
                raise
            log.error(
                f"Delete of {collection}/{record_id} failed, keeping local state: {e}",
                extra={"op": "delete", "record_id": record_id},
            )
            return WriteResult(error=e)

        return WriteResult()

    def _restore(self, kind_policy: KindPolicy, record: Any) -> None:
        """Put back a record whose deletion the server refused."""

        def mutator(data: list[Any]) -> list[Any]:
            if any(item.id == record.id for item in data):
                return data
            return sort_records([*data, record], kind_policy.ordering)

        self.cache.patch(kind_policy.name, mutator)
