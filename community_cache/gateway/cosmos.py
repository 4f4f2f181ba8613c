"""
Cosmos DB gateway.

Stores each collection in its own Cosmos DB container, partitioned on
``/id``. Queries are translated to parameterized Cosmos SQL. Change
notifications come from a RealtimeChannel, since Cosmos has no push
channel of its own that a client can hold open.

Supports multiple authentication methods:
- Key-based authentication
- Azure AD via DefaultAzureCredential (recommended)
- Azure Managed Identity
- Service Principal
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable
from datetime import UTC, datetime
from typing import Any, TypeVar

from azure.core.exceptions import AzureError
from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient, DatabaseProxy
from azure.cosmos.exceptions import CosmosHttpResponseError, CosmosResourceNotFoundError

from ..config import CosmosAuthMethod, CosmosSettings
from ..exceptions import GatewayError, NotFoundError
from ..realtime.channel import RealtimeChannel
from .base import DeleteHandler, Filter, InsertHandler, Order, RemoteGateway, Subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 15.0  # seconds

_SQL_OPS = {"eq": "=", "lt": "<", "gt": ">"}


def _get_credential(settings: CosmosSettings) -> Any:
    """Get the appropriate credential based on auth method.

    Raises:
        GatewayError: If the credential cannot be created
    """
    auth_method = settings.auth_method

    if auth_method == CosmosAuthMethod.KEY:
        if not settings.key:
            raise GatewayError("Cosmos key required for KEY authentication")
        return settings.key

    if auth_method == CosmosAuthMethod.DEFAULT_CREDENTIAL:
        from azure.identity.aio import DefaultAzureCredential

        return DefaultAzureCredential()

    if auth_method == CosmosAuthMethod.MANAGED_IDENTITY:
        from azure.identity.aio import ManagedIdentityCredential

        # User-assigned identity when a client id is given, else system-assigned
        if settings.azure_client_id:
            return ManagedIdentityCredential(client_id=settings.azure_client_id)
        return ManagedIdentityCredential()

    if auth_method == CosmosAuthMethod.SERVICE_PRINCIPAL:
        if not all(
            [settings.azure_tenant_id, settings.azure_client_id, settings.azure_client_secret]
        ):
            raise GatewayError(
                "azure_tenant_id, azure_client_id, and azure_client_secret "
                "required for SERVICE_PRINCIPAL authentication"
            )
        from azure.identity.aio import ClientSecretCredential

        return ClientSecretCredential(
            tenant_id=settings.azure_tenant_id,  # type: ignore[arg-type]
            client_id=settings.azure_client_id,  # type: ignore[arg-type]
            client_secret=settings.azure_client_secret,  # type: ignore[arg-type]
        )

    raise GatewayError(f"Unsupported auth method: {auth_method}")


def build_query(
    filters: list[Filter] | None,
    order: Order | None,
    limit: int | None,
) -> tuple[str, list[dict[str, Any]]]:
    """Translate a gateway query into Cosmos SQL and parameters.

    Field names are emitted in bracket notation so wire names never
    collide with SQL keywords.
    """
    params: list[dict[str, Any]] = []
    query = "SELECT"
    if limit is not None:
        query += " TOP @limit"
        params.append({"name": "@limit", "value": int(limit)})
    query += " * FROM c"

    clauses = []
    for i, flt in enumerate(filters or []):
        name = f"@p{i}"
        clauses.append(f'c["{flt.field}"] {_SQL_OPS[flt.op]} {name}')
        params.append({"name": name, "value": flt.value})
    if clauses:
        query += " WHERE " + " AND ".join(clauses)

    if order is not None:
        direction = "ASC" if order.ascending else "DESC"
        query += f' ORDER BY c["{order.field}"] {direction}'

    return query, params


class CosmosGateway(RemoteGateway):
    """Remote gateway backed by Azure Cosmos DB.

    Container schema (one per collection):
    {
        "id": "{uuid}",
        "created_at": "{iso_timestamp}",
        ...collection fields...
    }
    """

    def __init__(
        self,
        settings: CosmosSettings,
        channel: RealtimeChannel | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the gateway.

        Args:
            settings: Cosmos DB connection settings
            channel: Change notification channel used by ``subscribe``
            timeout: Per-call timeout in seconds; a timeout is reported
                as a GatewayError like any other failure
        """
        if not settings.endpoint:
            raise GatewayError("Cosmos endpoint is required")

        self.settings = settings
        self.channel = channel
        self.timeout = timeout

        self._credential: Any = None
        self._client: CosmosClient | None = None
        self._database: DatabaseProxy | None = None
        self._containers: dict[str, ContainerProxy] = {}

    async def _ensure_database(self) -> DatabaseProxy:
        if self._database is not None:
            return self._database

        self._credential = _get_credential(self.settings)
        try:
            self._client = CosmosClient(self.settings.endpoint, credential=self._credential)
            self._database = await self._client.create_database_if_not_exists(
                id=self.settings.database
            )
        except CosmosHttpResponseError as e:
            if e.status_code in (401, 403):
                raise GatewayError(
                    f"Authentication failed for Cosmos DB: {e.message}", cause=e
                ) from e
            raise GatewayError(f"Failed to connect to Cosmos DB: {e}", cause=e) from e
        except AzureError as e:
            raise GatewayError(f"Failed to connect to Cosmos DB: {e}", cause=e) from e

        logger.info(
            f"Connected to Cosmos DB: {self.settings.endpoint} "
            f"(database={self.settings.database}, "
            f"auth={self.settings.auth_method.value})"
        )
        return self._database

    async def _container(self, collection: str) -> ContainerProxy:
        container = self._containers.get(collection)
        if container is not None:
            return container

        database = await self._ensure_database()
        container = await database.create_container_if_not_exists(
            id=f"{self.settings.container_prefix}{collection}",
            partition_key=PartitionKey(path="/id"),
        )
        self._containers[collection] = container
        return container

    async def _call(self, collection: str, operation: str, awaitable: Awaitable[T]) -> T:
        """Run a Cosmos call, translating failures into cache errors."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except CosmosResourceNotFoundError as e:
            raise NotFoundError(operation, collection) from e
        except CosmosHttpResponseError as e:
            if e.status_code in (401, 403):
                raise GatewayError(
                    f"Not authorized to {operation} on {collection}", collection, e
                ) from e
            raise GatewayError(f"Cosmos {operation} failed on {collection}", collection, e) from e
        except TimeoutError as e:
            raise GatewayError(f"Cosmos {operation} timed out on {collection}", collection, e) from e
        except (AzureError, OSError) as e:
            raise GatewayError(f"Cosmos {operation} failed on {collection}", collection, e) from e

    async def query(
        self,
        collection: str,
        filters: list[Filter] | None = None,
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        container = await self._call(collection, "open", self._container(collection))
        query, params = build_query(filters, order, limit)

        async def _collect() -> list[dict[str, Any]]:
            rows: list[dict[str, Any]] = []
            async for doc in container.query_items(query=query, parameters=params):
                rows.append(self._strip_system_fields(doc))
                if limit is not None and len(rows) >= limit:
                    break
            return rows

        return await self._call(collection, "query", _collect())

    async def insert(self, collection: str, fields: dict[str, Any]) -> dict[str, Any] | None:
        container = await self._call(collection, "open", self._container(collection))
        doc = dict(fields)
        doc["id"] = str(uuid.uuid4())
        doc["created_at"] = datetime.now(UTC).isoformat()
        stored = await self._call(collection, "insert", container.create_item(body=doc))
        return self._strip_system_fields(stored)

    async def update(self, collection: str, record_id: str, fields: dict[str, Any]) -> None:
        container = await self._call(collection, "open", self._container(collection))
        operations = [{"op": "set", "path": f"/{key}", "value": value} for key, value in fields.items()]
        if not operations:
            return
        try:
            await self._call(
                collection,
                "update",
                container.patch_item(
                    item=record_id, partition_key=record_id, patch_operations=operations
                ),
            )
        except NotFoundError:
            raise NotFoundError(record_id, collection) from None

    async def delete(self, collection: str, record_id: str) -> None:
        container = await self._call(collection, "open", self._container(collection))
        try:
            await self._call(
                collection,
                "delete",
                container.delete_item(item=record_id, partition_key=record_id),
            )
        except NotFoundError:
            raise NotFoundError(record_id, collection) from None

    def subscribe(
        self,
        collection: str,
        on_insert: InsertHandler,
        on_delete: DeleteHandler,
    ) -> Subscription:
        """Register change handlers and open the channel on first use.

        Outside a running event loop the handlers are registered but the
        channel stays closed until a later subscribe, or an explicit
        ``channel.start()``.
        """
        if self.channel is None:
            raise GatewayError(
                "No realtime channel configured; set realtime_url to receive notifications",
                collection,
            )
        subscription = self.channel.register(collection, on_insert, on_delete)
        self.channel.ensure_started()
        return subscription

    async def close(self) -> None:
        if self.channel is not None:
            await self.channel.stop()
        if self._client is not None:
            await self._client.close()
            self._client = None
        if self._credential is not None and hasattr(self._credential, "close"):
            await self._credential.close()
            self._credential = None
        self._database = None
        self._containers.clear()

    @staticmethod
    def _strip_system_fields(doc: dict[str, Any]) -> dict[str, Any]:
        """Drop Cosmos bookkeeping fields (``_rid``, ``_etag``, ...)."""
        return {k: v for k, v in doc.items() if not k.startswith("_")}
