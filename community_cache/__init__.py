"""
Community Cache

Client-side cache and synchronization layer for a membership platform.

Provides:
- Per-kind TTL cache with optimistic patching
- Read-through / write-through synchronizer with per-call failure policy
- Cursor pagination stitched into one ordered chat timeline
- Local fallback queue for user-authored writes that fail remotely
- Realtime insert/delete merging
- Gateways for Azure Cosmos DB and an in-memory backend

Usage:

    >>> from community_cache import CommunityService, CacheConfig
    >>> service = CommunityService.from_config(CacheConfig.from_environment())
    >>> members = await service.get_all_members()
    >>> page = await service.get_discussion_messages(limit=20)
    >>> older = await service.get_discussion_messages(limit=20, before=page[0].created_at)

Lower-level building blocks:

    >>> from community_cache import CacheStore, Synchronizer, InMemoryGateway
    >>> sync = Synchronizer(InMemoryGateway(), CacheStore(CacheConfig.default()))
    >>> posts = await sync.fetch_many("posts")
"""

from .cache import CacheEntry, CacheStore
from .config import (
    MEMBERS,
    MESSAGES,
    POSTS,
    TRAININGS,
    CacheConfig,
    CosmosAuthMethod,
    CosmosSettings,
    KindPolicy,
    Ordering,
)
from .durable import DurableStore, FileDurableStore, MemoryDurableStore
from .exceptions import (
    CacheError,
    ConfigurationError,
    GatewayError,
    NotFoundError,
    StorageIOError,
    UnknownKindError,
    ValidationError,
)
from .fallback import FallbackQueue, FallbackRecord, merge_pending
from .gateway import Filter, InMemoryGateway, Order, RemoteGateway, Subscription
from .lists import LocalLists
from .logging_utils import configure_structured_logging
from .models import Comment, DiscussionMessage, Location, Member, Post, Training
from .realtime import RealtimeChannel, RealtimeMerger
from .service import CommunityService
from .sync import Synchronizer, WriteOp, WritePolicy, WriteResult

__version__ = "0.1.0"

__all__ = [
    # Service
    "CommunityService",
    "LocalLists",
    # Core
    "CacheEntry",
    "CacheStore",
    "Synchronizer",
    "WriteOp",
    "WritePolicy",
    "WriteResult",
    "FallbackQueue",
    "FallbackRecord",
    "merge_pending",
    "RealtimeMerger",
    "RealtimeChannel",
    # Configuration
    "CacheConfig",
    "CosmosAuthMethod",
    "CosmosSettings",
    "KindPolicy",
    "Ordering",
    "MEMBERS",
    "MESSAGES",
    "POSTS",
    "TRAININGS",
    # Gateways and stores
    "RemoteGateway",
    "InMemoryGateway",
    "Filter",
    "Order",
    "Subscription",
    "DurableStore",
    "FileDurableStore",
    "MemoryDurableStore",
    # Records
    "Comment",
    "DiscussionMessage",
    "Location",
    "Member",
    "Post",
    "Training",
    # Errors
    "CacheError",
    "ConfigurationError",
    "GatewayError",
    "NotFoundError",
    "StorageIOError",
    "UnknownKindError",
    "ValidationError",
    # Logging
    "configure_structured_logging",
]
