"""
Community service facade.

One object per signed-in client wiring the cache store, synchronizer,
fallback queue, realtime mergers and local lists together, with the
operations the application screens call. Each write picks its failure
policy by what the user would lose:

    likes                  OPTIMISTIC_BEST_EFFORT (cheap to lose, must feel instant)
    comments               QUEUE_AND_SUCCEED (user-authored, kept locally)
    posts, trainings, chat PROPAGATE (caller shows the error)
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from .cache.store import CacheStore
from .config import MEMBERS, MESSAGES, POSTS, TRAININGS, CacheConfig, Ordering
from .durable.store import DurableStore, FileDurableStore, MemoryDurableStore
from .exceptions import ConfigurationError, NotFoundError
from .fallback.queue import FallbackQueue, FallbackRecord
from .gateway.base import Filter, Order, RemoteGateway, Subscription
from .lists import LocalLists
from .models import (
    Comment,
    DiscussionMessage,
    Member,
    Post,
    Training,
    comment_from_wire,
    member_from_wire,
    message_from_notification,
    post_engagement_to_wire,
    post_to_wire,
    training_to_wire,
)
from .realtime.merger import Observer, RealtimeMerger
from .sync.synchronizer import Synchronizer, WriteOp, WritePolicy, WriteResult

logger = logging.getLogger(__name__)

COMMENTS = "comments"
DEFAULT_PAGE_SIZE = 50

# Profile fields a member may edit, domain name -> wire name
PROFILE_FIELDS = {
    "name": "name",
    "business_name": "business_name",
    "sector": "sector",
    "city": "city",
    "address": "address",
    "avatar": "avatar_url",
    "role": "role",
}


def _pending_comment(record: FallbackRecord) -> Comment:
    payload = record.payload
    comment = comment_from_wire({**payload, "id": record.local_id})
    return replace(comment, created_at=record.created_at, pending=True)


class CommunityService:
    """Member directory, feed, trainings and chat for one client.

    Example:
        >>> service = CommunityService(InMemoryGateway())
        >>> posts = await service.get_posts()
        >>> await service.toggle_like(posts[0].id, member_id)
        >>> stop = service.watch_messages(lambda kind, messages: render(messages))
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        config: CacheConfig | None = None,
        durable: DurableStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the service.

        Args:
            gateway: Remote data gateway
            config: Cache configuration (default: built-in kind table)
            durable: Local durable store (default: file at
                ``config.durable_path``, else in-memory)
            clock: Time source for cache freshness, in epoch seconds
        """
        self.config = config or CacheConfig.default()
        if durable is None:
            if self.config.durable_path:
                durable = FileDurableStore(self.config.durable_path)
            else:
                durable = MemoryDurableStore()

        self.gateway = gateway
        self.durable = durable
        self.cache = CacheStore(self.config, clock)
        self.fallback = FallbackQueue(durable)
        self.sync = Synchronizer(gateway, self.cache, self.fallback)
        self.lists = LocalLists(durable)

        self._mergers: dict[str, RealtimeMerger] = {}
        self._subscriptions: dict[str, Subscription] = {}

    @classmethod
    def from_config(cls, config: CacheConfig) -> CommunityService:
        """Build a service talking to Cosmos DB as described by ``config``.

        Raises:
            ConfigurationError: If no Cosmos settings are configured
        """
        if config.cosmos is None:
            raise ConfigurationError("No remote gateway configured (cosmos.endpoint missing)")

        from .gateway.cosmos import CosmosGateway
        from .realtime.channel import RealtimeChannel

        channel = RealtimeChannel(config.realtime_url) if config.realtime_url else None
        return cls(CosmosGateway(config.cosmos, channel=channel), config)

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def get_all_members(self, force_refresh: bool = False) -> list[Member]:
        return await self.sync.fetch_many(MEMBERS, force_refresh)

    async def find_member(self, member_id: str) -> Member:
        """Look up a member in the (possibly cached) directory.

        Raises:
            NotFoundError: If no member has this id
        """
        for member in await self.get_all_members():
            if member.id == member_id:
                return member
        raise NotFoundError(member_id, "profiles")

    async def update_profile(self, member_id: str, **changes: Any) -> Member:
        """Update editable profile fields and return the refetched member.

        Only fields in PROFILE_FIELDS with a non-empty value are sent.
        The directory is refetched afterwards, since the server may
        normalize what it stores.

        Raises:
            ValidationError: If ``member_id`` is empty
            GatewayError: If the update is rejected
        """
        fields = {
            PROFILE_FIELDS[name]: value
            for name, value in changes.items()
            if name in PROFILE_FIELDS and value
        }
        unknown = set(changes) - set(PROFILE_FIELDS)
        if unknown:
            logger.warning(f"Ignoring non-editable profile fields: {sorted(unknown)}")

        if fields:
            # No record given, so the synchronizer invalidates the directory
            await self.sync.write(MEMBERS, WriteOp.REPLACE, fields, record_id=member_id)
        return await self.find_member(member_id)

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    async def get_posts(self, force_refresh: bool = False) -> list[Post]:
        return await self.sync.fetch_many(POSTS, force_refresh)

    async def add_post(self, post: Post) -> dict[str, Any] | None:
        """Publish a post. Counters start at zero whatever ``post`` holds.

        Returns:
            The row the gateway created
        """
        result = await self.sync.write(POSTS, WriteOp.CREATE, post_to_wire(post))
        return result.row

    async def update_post(self, post: Post) -> WriteResult:
        """Save a post's engagement (likes) optimistically."""
        return await self.sync.write(
            POSTS,
            WriteOp.REPLACE,
            post_engagement_to_wire(post),
            record=post,
            policy=WritePolicy.OPTIMISTIC_BEST_EFFORT,
        )

    async def toggle_like(self, post_id: str, member_id: str) -> Post:
        """Like or unlike a cached post on behalf of ``member_id``.

        Raises:
            NotFoundError: If the post is not in the cached feed
        """
        post = next((p for p in self.sync.cached(POSTS) if p.id == post_id), None)
        if post is None:
            raise NotFoundError(post_id, "posts")

        if member_id in post.liked_by:
            liked_by = [m for m in post.liked_by if m != member_id]
        else:
            liked_by = [*post.liked_by, member_id]
        updated = replace(post, liked_by=liked_by, likes=len(liked_by))
        await self.update_post(updated)
        return updated

    async def delete_post(self, post_id: str) -> None:
        await self.sync.write(POSTS, WriteOp.DELETE, record_id=post_id)

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    async def add_comment(
        self,
        post_id: str,
        content: str,
        author_id: str | None = None,
        author_name: str | None = None,
    ) -> WriteResult:
        """Comment on a post; kept locally as pending if the gateway fails.

        The post's comment count changes, so the feed is refetched on the
        next read.
        """
        fields: dict[str, Any] = {"post_id": post_id, "author_id": author_id, "content": content}
        if author_name:
            fields["author_name"] = author_name
        return await self.sync.write(
            POSTS,
            WriteOp.CREATE,
            fields,
            policy=WritePolicy.QUEUE_AND_SUCCEED,
            collection=COMMENTS,
            queue_namespace=COMMENTS,
        )

    async def get_comments_for_post(self, post_id: str) -> list[Comment]:
        """Confirmed comments of a post interleaved with pending local ones."""
        remote = await self.sync.fetch_uncached(
            COMMENTS,
            comment_from_wire,
            filters=[Filter.eq("post_id", post_id)],
            order=Order("created_at", ascending=True),
        )
        return self.fallback.merge_with_remote(
            COMMENTS, remote or [], "post_id", post_id, _pending_comment, Ordering.OLDEST_FIRST
        )

    async def retry_comment(self, local_id: str) -> WriteResult:
        """Resend a pending comment with its original idempotency key.

        The queued copy is dropped once the gateway accepts it; on failure
        it stays queued and the error is raised.

        Raises:
            NotFoundError: If no pending comment has this id
            GatewayError: If the gateway still rejects the write
        """
        record = next((r for r in self.fallback.list_for(COMMENTS) if r.local_id == local_id), None)
        if record is None:
            raise NotFoundError(local_id, COMMENTS)

        fields = {**record.payload, "client_ref": record.client_ref}
        result = await self.sync.write(POSTS, WriteOp.CREATE, fields, collection=COMMENTS)
        self.fallback.remove(COMMENTS, local_id)
        return result

    # ------------------------------------------------------------------
    # Trainings
    # ------------------------------------------------------------------

    async def get_trainings(self, force_refresh: bool = False) -> list[Training]:
        return await self.sync.fetch_many(TRAININGS, force_refresh)

    async def add_training(self, training: Training) -> dict[str, Any] | None:
        result = await self.sync.write(TRAININGS, WriteOp.CREATE, training_to_wire(training))
        return result.row

    async def mark_training_completed(self, member_id: str, training_id: str) -> Member:
        """Record a completed training and recompute the member's progress.

        The profile is read from the gateway rather than the cache so
        completions made from another device are not lost.

        Raises:
            NotFoundError: If the member does not exist (or cannot be read)
            GatewayError: If the update is rejected
        """
        found = await self.sync.fetch_uncached(
            "profiles", member_from_wire, filters=[Filter.eq("id", member_id)], limit=1
        )
        if not found:
            raise NotFoundError(member_id, "profiles")
        member = found[0]

        if training_id in member.completed_trainings:
            return member

        completed = [*member.completed_trainings, training_id]
        total = len(await self.get_trainings()) or 1
        progress = min(100, math.floor(len(completed) / total * 100 + 0.5))
        updated = replace(member, completed_trainings=completed, training_progress=progress)

        await self.sync.write(
            MEMBERS,
            WriteOp.REPLACE,
            {"completed_trainings": completed, "training_progress": progress},
            record=updated,
        )
        return updated

    # ------------------------------------------------------------------
    # Discussion
    # ------------------------------------------------------------------

    async def get_discussion_messages(
        self,
        limit: int = DEFAULT_PAGE_SIZE,
        before: Any = None,
        *,
        mode: str | None = None,
    ) -> list[DiscussionMessage]:
        """One page of chat, oldest first.

        Without ``before`` this is the newest page; with it, only the
        older records not already held. ``get_cached_messages`` returns
        the stitched timeline.
        """
        return await self.sync.fetch_page(MESSAGES, limit, before, mode=mode)

    def get_cached_messages(self) -> list[DiscussionMessage]:
        return self.sync.cached(MESSAGES)

    def sync_message_cache(self, messages: list[DiscussionMessage]) -> None:
        """Store the timeline the chat screen has assembled."""
        self.sync.replace_cached(MESSAGES, messages)

    async def add_discussion_message(
        self, author_id: str, content: str
    ) -> DiscussionMessage | None:
        """Post to the chat.

        Returns:
            The created message with its author resolved from the cached
            directory, or None if the gateway returned no row
        """
        result = await self.sync.write(
            MESSAGES, WriteOp.CREATE, {"author_id": author_id, "content": content}
        )
        if result.row is None:
            return None
        members = self.cache.get(MEMBERS).data
        return message_from_notification(result.row, list(members) if members else None)

    async def delete_discussion_message(self, message_id: str) -> None:
        """Delete a chat message; it reappears in the cache if the delete fails."""
        await self.sync.write(MESSAGES, WriteOp.DELETE, record_id=message_id)

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    def watch(self, kind: str, observer: Observer) -> Callable[[], None]:
        """Apply pushed changes of ``kind`` to the cache and report snapshots.

        The gateway subscription is opened on first use and shared by all
        observers of the kind.

        Returns:
            Callable that removes the observer
        """
        merger = self._mergers.get(kind)
        if merger is None:
            merger = self._mergers[kind] = RealtimeMerger(self.cache, kind)
            self._subscriptions[kind] = merger.attach(self.gateway)
        return merger.add_observer(observer)

    def watch_messages(self, observer: Observer) -> Callable[[], None]:
        return self.watch(MESSAGES, observer)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def logout(self) -> None:
        """Forget every cached kind; queued writes and local lists stay."""
        self.cache.invalidate_all()
        logger.info("Cache cleared on logout")

    async def close(self) -> None:
        for subscription in self._subscriptions.values():
            subscription.close()
        self._subscriptions.clear()
        self._mergers.clear()
        await self.gateway.close()
