"""
Cache configuration.

Each entity kind the cache manages is described by a KindPolicy:
which remote collection backs it, how long a fetch stays fresh, which
order the cached sequence is kept in, and how wire rows map to records.
TTLs are independent per kind and, through named modes, per call site.

Configuration can be built in code, loaded from a YAML file, or taken
from environment variables:

Environment Variables:
    COMMUNITY_CACHE_CONFIG: Path to a YAML config file
    COMMUNITY_CACHE_DURABLE_PATH: Path of the local durable store file
    COMMUNITY_COSMOS_ENDPOINT: Cosmos DB endpoint URL
    COMMUNITY_COSMOS_KEY: Cosmos DB key (if using key auth)
    COMMUNITY_COSMOS_DATABASE: Database name (default: community)
    COMMUNITY_COSMOS_AUTH_METHOD: Auth method (default: default_credential)
    COMMUNITY_REALTIME_URL: WebSocket URL of the change notification feed
    AZURE_TENANT_ID / AZURE_CLIENT_ID / AZURE_CLIENT_SECRET: Service principal

Example YAML:

```yaml
kinds:
  posts:
    ttl: 600
  messages:
    ttl: 1800
    modes:
      live: 2
fallback_datasets:
  trainings:
    - {id: "t-welcome", title: "Bienvenue", created_at: "2024-01-01T00:00:00Z"}
durable_path: ~/.community/store.json
cosmos:
  endpoint: https://example.documents.azure.com:443/
  database: community
realtime_url: wss://realtime.example.com/changes
```
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from . import models
from .exceptions import ConfigurationError, UnknownKindError

MINUTE = 60.0

# Entity kinds managed by the cache
MEMBERS = "members"
POSTS = "posts"
TRAININGS = "trainings"
MESSAGES = "messages"

# Named TTL modes for call sites with different freshness needs
MODE_LIVE = "live"
MODE_HISTORY = "history"

# Fields a create must carry, per remote collection
REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "profiles": (),
    "posts": ("author_id", "content"),
    "trainings": ("title",),
    "messages": ("author_id", "content"),
    "comments": ("post_id", "content"),
}


class Ordering(Enum):
    """Canonical in-cache order of a kind's records.

    OLDEST_FIRST: ascending by created_at (chat timeline)
    NEWEST_FIRST: descending by created_at (activity feed)
    SOURCE: keep the order the gateway returned
    """

    OLDEST_FIRST = "oldest_first"
    NEWEST_FIRST = "newest_first"
    SOURCE = "source"


def sort_records(records: Iterable[Any], ordering: Ordering) -> list[Any]:
    """Return records in the kind's canonical order (stable)."""
    items = list(records)
    if ordering is Ordering.OLDEST_FIRST:
        items.sort(key=lambda r: r.created_at)
    elif ordering is Ordering.NEWEST_FIRST:
        items.sort(key=lambda r: r.created_at, reverse=True)
    return items


# Maps a wire row to a domain record
WireMapper = Callable[[dict[str, Any]], Any]

# Maps a pushed wire row to a domain record using resident member data
NotificationResolver = Callable[[dict[str, Any], list[models.Member] | None], Any]


@dataclass(frozen=True)
class KindPolicy:
    """How one entity kind is cached.

    Attributes:
        name: Kind name used as cache key
        collection: Remote collection backing the kind
        ttl: Default freshness window in seconds
        ordering: Canonical in-cache order
        mapper: Wire row -> domain record
        resolver: Pushed wire row -> domain record (resident data only)
        paginated: Whether history is loaded in cursor pages
        modes: Named TTL overrides for specific call sites
        order_field: Wire field used for ordering and pagination
    """

    name: str
    collection: str
    ttl: float
    ordering: Ordering
    mapper: WireMapper
    resolver: NotificationResolver
    paginated: bool = False
    modes: dict[str, float] = field(default_factory=dict)
    order_field: str = "created_at"

    def ttl_for(self, mode: str | None = None) -> float:
        """TTL for a call site; unknown or missing modes use the default."""
        if mode is not None and mode in self.modes:
            return self.modes[mode]
        return self.ttl


def default_kinds() -> dict[str, KindPolicy]:
    """The built-in kind table."""
    return {
        MEMBERS: KindPolicy(
            name=MEMBERS,
            collection="profiles",
            ttl=30 * MINUTE,
            ordering=Ordering.SOURCE,
            mapper=models.member_from_wire,
            resolver=models.member_from_notification,
        ),
        POSTS: KindPolicy(
            name=POSTS,
            collection="posts",
            ttl=5 * MINUTE,
            ordering=Ordering.NEWEST_FIRST,
            mapper=models.post_from_wire,
            resolver=models.post_from_notification,
        ),
        TRAININGS: KindPolicy(
            name=TRAININGS,
            collection="trainings",
            ttl=5 * MINUTE,
            ordering=Ordering.NEWEST_FIRST,
            mapper=models.training_from_wire,
            resolver=models.training_from_notification,
        ),
        MESSAGES: KindPolicy(
            name=MESSAGES,
            collection="messages",
            ttl=30 * MINUTE,
            ordering=Ordering.OLDEST_FIRST,
            mapper=models.message_from_wire,
            resolver=models.message_from_notification,
            paginated=True,
            modes={MODE_LIVE: 2.0, MODE_HISTORY: 30 * MINUTE},
        ),
    }


class CosmosAuthMethod(Enum):
    """Authentication method for Cosmos DB.

    KEY: Account key
    DEFAULT_CREDENTIAL: Azure DefaultAzureCredential (recommended)
    MANAGED_IDENTITY: Azure Managed Identity
    SERVICE_PRINCIPAL: Service Principal with client secret
    """

    KEY = "key"
    DEFAULT_CREDENTIAL = "default_credential"
    MANAGED_IDENTITY = "managed_identity"
    SERVICE_PRINCIPAL = "service_principal"


@dataclass
class CosmosSettings:
    """Connection settings for the Cosmos DB gateway.

    One container per collection, named ``{container_prefix}{collection}``,
    partitioned on ``/id``.
    """

    endpoint: str
    database: str = "community"
    auth_method: CosmosAuthMethod = CosmosAuthMethod.DEFAULT_CREDENTIAL
    key: str | None = None
    container_prefix: str = ""
    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None

    @classmethod
    def from_environment(cls) -> CosmosSettings | None:
        """Settings from environment variables, or None when no endpoint is set."""
        endpoint = os.environ.get("COMMUNITY_COSMOS_ENDPOINT")
        if not endpoint:
            return None

        auth_method_str = os.environ.get("COMMUNITY_COSMOS_AUTH_METHOD", "default_credential")
        try:
            auth_method = CosmosAuthMethod(auth_method_str.lower())
        except ValueError:
            auth_method = CosmosAuthMethod.DEFAULT_CREDENTIAL

        return cls(
            endpoint=endpoint,
            database=os.environ.get("COMMUNITY_COSMOS_DATABASE", "community"),
            auth_method=auth_method,
            key=os.environ.get("COMMUNITY_COSMOS_KEY"),
            azure_tenant_id=os.environ.get("AZURE_TENANT_ID"),
            azure_client_id=os.environ.get("AZURE_CLIENT_ID"),
            azure_client_secret=os.environ.get("AZURE_CLIENT_SECRET"),
        )


@dataclass
class CacheConfig:
    """Configuration injected into the cache store and synchronizer.

    Attributes:
        kinds: Kind table, keyed by kind name
        fallback_datasets: Static records served when a kind has neither
            network nor cache
        durable_path: File backing the local durable store (None = memory)
        cosmos: Cosmos DB gateway settings (None = no remote configured)
        realtime_url: WebSocket URL of the change notification feed
    """

    kinds: dict[str, KindPolicy] = field(default_factory=default_kinds)
    fallback_datasets: dict[str, list[Any]] = field(default_factory=dict)
    durable_path: str | None = None
    cosmos: CosmosSettings | None = None
    realtime_url: str | None = None

    @classmethod
    def default(cls) -> CacheConfig:
        return cls()

    def policy(self, kind: str) -> KindPolicy:
        """Look up a kind's policy.

        Raises:
            UnknownKindError: If the kind is not configured
        """
        try:
            return self.kinds[kind]
        except KeyError:
            raise UnknownKindError(kind) from None

    def fallback_for(self, kind: str) -> list[Any] | None:
        dataset = self.fallback_datasets.get(kind)
        return list(dataset) if dataset is not None else None

    def with_ttl(self, kind: str, ttl: float, **modes: float) -> CacheConfig:
        """Copy of this config with one kind's TTL (and modes) replaced."""
        policy = self.policy(kind)
        kinds = dict(self.kinds)
        kinds[kind] = replace(policy, ttl=ttl, modes={**policy.modes, **modes})
        return replace(self, kinds=kinds)

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: str | None = None) -> CacheConfig:
        """Build a config from a parsed mapping (the YAML layout above)."""
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping", source)

        kinds = default_kinds()
        for name, overrides in (data.get("kinds") or {}).items():
            if name not in kinds:
                raise ConfigurationError(f"Unknown kind in configuration: {name}", source)
            overrides = overrides or {}
            policy = kinds[name]
            try:
                ttl = float(overrides.get("ttl", policy.ttl))
                modes = {k: float(v) for k, v in (overrides.get("modes") or {}).items()}
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid TTL for kind {name}: {e}", source) from e
            if ttl < 0 or any(v < 0 for v in modes.values()):
                raise ConfigurationError(f"TTL must be >= 0 for kind {name}", source)
            kinds[name] = replace(policy, ttl=ttl, modes={**policy.modes, **modes})

        fallback_datasets: dict[str, list[Any]] = {}
        for name, rows in (data.get("fallback_datasets") or {}).items():
            if name not in kinds:
                raise ConfigurationError(f"Unknown kind in fallback_datasets: {name}", source)
            mapper = kinds[name].mapper
            fallback_datasets[name] = sort_records(
                (mapper(row) for row in rows or []), kinds[name].ordering
            )

        cosmos = None
        cosmos_data = data.get("cosmos")
        if cosmos_data:
            if not cosmos_data.get("endpoint"):
                raise ConfigurationError("cosmos.endpoint is required", source)
            try:
                auth_method = CosmosAuthMethod(
                    str(cosmos_data.get("auth_method", "default_credential")).lower()
                )
            except ValueError as e:
                raise ConfigurationError(f"Invalid cosmos.auth_method: {e}", source) from e
            cosmos = CosmosSettings(
                endpoint=cosmos_data["endpoint"],
                database=cosmos_data.get("database", "community"),
                auth_method=auth_method,
                key=cosmos_data.get("key"),
                container_prefix=cosmos_data.get("container_prefix", ""),
            )

        durable_path = data.get("durable_path")
        return cls(
            kinds=kinds,
            fallback_datasets=fallback_datasets,
            durable_path=str(Path(durable_path).expanduser()) if durable_path else None,
            cosmos=cosmos,
            realtime_url=data.get("realtime_url"),
        )

    @classmethod
    def from_yaml(cls, path: Path | str) -> CacheConfig:
        """Load configuration from a YAML file."""
        path = Path(path).expanduser()
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration: {e}", str(path)) from e
        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {e}", str(path)) from e
        return cls.from_dict(data, source=str(path))

    @classmethod
    def from_environment(cls) -> CacheConfig:
        """Build configuration from environment variables.

        Environment values take precedence over the YAML file named by
        COMMUNITY_CACHE_CONFIG.
        """
        config_path = os.environ.get("COMMUNITY_CACHE_CONFIG")
        config = cls.from_yaml(config_path) if config_path else cls()

        durable_path = os.environ.get("COMMUNITY_CACHE_DURABLE_PATH")
        if durable_path:
            config.durable_path = str(Path(durable_path).expanduser())

        cosmos = CosmosSettings.from_environment()
        if cosmos is not None:
            config.cosmos = cosmos

        realtime_url = os.environ.get("COMMUNITY_REALTIME_URL")
        if realtime_url:
            config.realtime_url = realtime_url

        return config
