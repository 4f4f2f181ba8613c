"""
Tests for the community service facade.
"""

import asyncio
import json

import pytest
from conftest import message_row, ts

from community_cache.config import (
    MEMBERS,
    MESSAGES,
    POSTS,
    CacheConfig,
    CosmosAuthMethod,
    CosmosSettings,
)
from community_cache.durable import FileDurableStore, MemoryDurableStore
from community_cache.exceptions import ConfigurationError, GatewayError, NotFoundError
from community_cache.fallback import is_local_id
from community_cache.gateway import InMemoryGateway
from community_cache.models import Post, Training
from community_cache.service import CommunityService


@pytest.fixture
def service(gateway, durable, clock):
    gateway.seed(
        "profiles",
        [
            {"id": "u1", "name": "Awa", "avatar_url": "https://img/awa.png"},
            {"id": "u2", "name": "Ali"},
        ],
    )
    gateway.seed(
        "posts",
        [
            {"id": "p1", "author_id": "u1", "content": "first", "created_at": 100},
            {"id": "p2", "author_id": "u2", "content": "second", "created_at": 200},
        ],
    )
    gateway.seed(
        "trainings",
        [{"id": f"t{n}", "title": f"Training {n}", "created_at": n} for n in range(1, 5)],
    )
    return CommunityService(gateway, durable=durable, clock=clock)


class TestConstruction:
    """Tests for building the service."""

    def test_defaults_to_memory_store(self, gateway):
        assert isinstance(CommunityService(gateway).durable, MemoryDurableStore)

    def test_file_store_from_config(self, gateway, tmp_path):
        config = CacheConfig(durable_path=str(tmp_path / "store.json"))
        assert isinstance(CommunityService(gateway, config).durable, FileDurableStore)

    def test_from_config_requires_cosmos(self):
        with pytest.raises(ConfigurationError):
            CommunityService.from_config(CacheConfig())

    def test_from_config_with_realtime(self):
        config = CacheConfig(
            cosmos=CosmosSettings(endpoint="https://acct.documents.azure.com:443/"),
            realtime_url="wss://rt/changes",
        )
        service = CommunityService.from_config(config)
        assert service.gateway.channel.url == "wss://rt/changes"


class TestCosmosRealtime:
    """Pushed changes reach the cache through the Cosmos wiring."""

    @pytest.fixture
    def cosmos_service(self):
        config = CacheConfig(
            cosmos=CosmosSettings(
                endpoint="https://acct.documents.azure.com:443/",
                auth_method=CosmosAuthMethod.KEY,
                key="secret",
            ),
            realtime_url="wss://rt/changes",
        )
        service = CommunityService.from_config(config)
        held = asyncio.Event()

        async def hold_open():
            await held.wait()

        service.gateway.channel._websocket_loop = hold_open
        return service

    @pytest.mark.asyncio
    async def test_watch_messages_opens_channel(self, cosmos_service):
        channel = cosmos_service.gateway.channel
        assert channel.is_connected() is False

        cosmos_service.watch_messages(lambda kind, messages: None)

        assert channel.is_connected() is True
        assert channel.tables == ["messages"]
        await cosmos_service.close()
        assert channel.is_connected() is False

    @pytest.mark.asyncio
    async def test_pushed_insert_reaches_cache(self, cosmos_service):
        cosmos_service.sync.replace_cached(MESSAGES, [])
        snapshots = []
        cosmos_service.watch_messages(lambda kind, messages: snapshots.append(messages))
        await asyncio.sleep(0)

        cosmos_service.gateway.channel.dispatch_raw(
            json.dumps({"type": "INSERT", "table": "messages", "new": message_row(1)})
        )
        cosmos_service.gateway.channel.dispatch_raw(
            json.dumps({"type": "DELETE", "table": "messages", "old": {"id": "m1"}})
        )

        assert [[m.id for m in snapshot] for snapshot in snapshots] == [["m1"], []]
        assert cosmos_service.get_cached_messages() == []
        await cosmos_service.close()


class TestMembers:
    """Tests for the member directory."""

    @pytest.mark.asyncio
    async def test_find_member(self, service):
        assert (await service.find_member("u2")).name == "Ali"
        with pytest.raises(NotFoundError):
            await service.find_member("nobody")

    @pytest.mark.asyncio
    async def test_update_profile(self, service, gateway):
        await service.get_all_members()

        member = await service.update_profile("u1", business_name="Awa Couture", city="", email="x")

        assert member.business_name == "Awa Couture"
        stored = next(r for r in gateway.rows("profiles") if r["id"] == "u1")
        assert stored["business_name"] == "Awa Couture"
        assert "city" not in stored
        assert "email" not in stored
        assert gateway.calls["query:profiles"] == 2

    @pytest.mark.asyncio
    async def test_update_profile_failure_raises(self, service, gateway):
        gateway.fail("update")
        with pytest.raises(GatewayError):
            await service.update_profile("u1", name="New")


class TestPosts:
    """Tests for the activity feed."""

    @pytest.mark.asyncio
    async def test_get_posts_newest_first(self, service):
        assert [p.id for p in await service.get_posts()] == ["p2", "p1"]

    @pytest.mark.asyncio
    async def test_add_post(self, service, gateway):
        await service.get_posts()
        row = await service.add_post(Post(id="", author_id="u1", content="third", likes=4))

        assert row["likes_count"] == 0
        posts = await service.get_posts()
        assert [p.content for p in posts] == ["third", "second", "first"]

    @pytest.mark.asyncio
    async def test_toggle_like(self, service, gateway):
        await service.get_posts()

        liked = await service.toggle_like("p1", "u2")
        assert liked.likes == 1
        assert liked.liked_by == ["u2"]

        unliked = await service.toggle_like("p1", "u2")
        assert unliked.likes == 0
        stored = next(r for r in gateway.rows("posts") if r["id"] == "p1")
        assert stored["liked_by"] == []

    @pytest.mark.asyncio
    async def test_like_survives_gateway_failure(self, service, gateway):
        await service.get_posts()
        gateway.fail("update")

        await service.toggle_like("p1", "u2")

        post = next(p for p in await service.get_posts() if p.id == "p1")
        assert post.likes == 1

    @pytest.mark.asyncio
    async def test_toggle_like_uncached(self, service):
        with pytest.raises(NotFoundError):
            await service.toggle_like("p1", "u2")

    @pytest.mark.asyncio
    async def test_delete_post(self, service, gateway):
        await service.get_posts()
        await service.delete_post("p1")
        assert [p.id for p in await service.get_posts()] == ["p2"]
        assert gateway.calls["query:posts"] == 1


class TestComments:
    """Tests for comments and the fallback queue."""

    @pytest.mark.asyncio
    async def test_comment_invalidates_feed(self, service):
        await service.get_posts()
        result = await service.add_comment("p1", "Bravo", author_id="u2")
        assert result.ok
        assert result.confirmed
        assert service.cache.get(POSTS).loaded is False

    @pytest.mark.asyncio
    async def test_failed_comment_is_pending(self, service, gateway):
        gateway.seed(
            "comments",
            [
                {"id": "c1", "post_id": "p1", "content": "early", "created_at": ts(-3600)},
                {"id": "c3", "post_id": "p1", "content": "future", "created_at": ts(10**9)},
            ],
        )
        gateway.fail("insert")

        result = await service.add_comment("p1", "Bravo", author_id="u2", author_name="Ali")

        assert result.pending is True
        assert result.ok is True
        assert result.confirmed is False
        comments = await service.get_comments_for_post("p1")
        assert [c.id for c in comments] == ["c1", result.local_id, "c3"]
        pending = comments[1]
        assert pending.pending is True
        assert is_local_id(pending.id)
        assert pending.author_name == "Ali"
        assert pending.content == "Bravo"

    @pytest.mark.asyncio
    async def test_pending_only_for_its_post(self, service, gateway):
        gateway.fail("insert")
        await service.add_comment("p1", "Bravo")
        gateway.recover()
        assert await service.get_comments_for_post("p2") == []

    @pytest.mark.asyncio
    async def test_pending_shown_while_offline(self, service, gateway):
        gateway.fail("*")
        await service.add_comment("p1", "Bravo")

        comments = await service.get_comments_for_post("p1")

        assert [c.content for c in comments] == ["Bravo"]
        assert comments[0].pending is True

    @pytest.mark.asyncio
    async def test_retry_comment(self, service, gateway):
        gateway.fail("insert")
        result = await service.add_comment("p1", "Bravo", author_id="u2")
        gateway.recover()

        await service.retry_comment(result.local_id)

        comments = await service.get_comments_for_post("p1")
        assert [(c.content, c.pending) for c in comments] == [("Bravo", False)]
        assert gateway.rows("comments")[0]["client_ref"] == result.client_ref

    @pytest.mark.asyncio
    async def test_retry_failure_keeps_pending(self, service, gateway):
        gateway.fail("insert")
        result = await service.add_comment("p1", "Bravo")

        with pytest.raises(GatewayError):
            await service.retry_comment(result.local_id)
        assert len(service.fallback.list_for("comments")) == 1

    @pytest.mark.asyncio
    async def test_retry_unknown(self, service):
        with pytest.raises(NotFoundError):
            await service.retry_comment("local-missing")

    @pytest.mark.asyncio
    async def test_server_copy_reconciles_queue(self, service, gateway):
        """A write that reached the server despite a reported failure is not shown twice."""
        gateway.fail("insert")
        result = await service.add_comment("p1", "Bravo")
        gateway.seed(
            "comments",
            [
                {
                    "id": "c9",
                    "post_id": "p1",
                    "content": "Bravo",
                    "client_ref": result.client_ref,
                    "created_at": ts(1),
                }
            ],
        )

        comments = await service.get_comments_for_post("p1")

        assert [c.id for c in comments] == ["c9"]
        assert service.fallback.list_for("comments") == []


class TestTrainings:
    """Tests for trainings and progress."""

    @pytest.mark.asyncio
    async def test_add_training(self, service):
        trainings = await service.get_trainings()
        assert [t.id for t in trainings] == ["t4", "t3", "t2", "t1"]

        await service.add_training(Training(id="", title="Export"))

        assert (await service.get_trainings())[0].title == "Export"

    @pytest.mark.asyncio
    async def test_mark_training_completed(self, service, gateway):
        await service.get_all_members()

        member = await service.mark_training_completed("u1", "t1")

        assert member.completed_trainings == ["t1"]
        assert member.training_progress == 25
        cached = next(m for m in service.sync.cached(MEMBERS) if m.id == "u1")
        assert cached.training_progress == 25
        stored = next(r for r in gateway.rows("profiles") if r["id"] == "u1")
        assert stored["completed_trainings"] == ["t1"]

    @pytest.mark.asyncio
    async def test_progress_rounds_half_up(self, service, gateway):
        gateway.seed("trainings", [{"id": f"x{n}", "title": "x"} for n in range(4)])
        # 8 trainings: 1/8 = 12.5%
        member = await service.mark_training_completed("u2", "t1")
        assert member.training_progress == 13

    @pytest.mark.asyncio
    async def test_completing_twice_is_noop(self, service, gateway):
        await service.mark_training_completed("u1", "t1")
        member = await service.mark_training_completed("u1", "t1")
        assert member.completed_trainings == ["t1"]
        assert gateway.calls["update:profiles"] == 1

    @pytest.mark.asyncio
    async def test_unknown_member(self, service):
        with pytest.raises(NotFoundError):
            await service.mark_training_completed("nobody", "t1")


class TestDiscussion:
    """Tests for the chat."""

    @pytest.fixture
    def chat(self, service, gateway):
        gateway.seed("messages", [message_row(n) for n in range(1, 11)])
        return service

    @pytest.mark.asyncio
    async def test_pages_stitch_into_timeline(self, chat):
        first = await chat.get_discussion_messages(limit=4)
        older = await chat.get_discussion_messages(limit=4, before=first[0].created_at)

        assert [m.id for m in first] == ["m7", "m8", "m9", "m10"]
        assert [m.id for m in older] == ["m3", "m4", "m5", "m6"]
        assert [m.id for m in chat.get_cached_messages()] == [f"m{n}" for n in range(3, 11)]

    @pytest.mark.asyncio
    async def test_sync_message_cache(self, chat, gateway):
        messages = await chat.get_discussion_messages(limit=4)
        chat.sync_message_cache(list(reversed(messages[1:])))

        assert [m.id for m in chat.get_cached_messages()] == ["m8", "m9", "m10"]

    @pytest.mark.asyncio
    async def test_add_message_resolves_author(self, chat):
        await chat.get_all_members()

        message = await chat.add_discussion_message("u1", "Salut")

        assert message.author_name == "Awa"
        assert message.author_avatar == "https://img/awa.png"

    @pytest.mark.asyncio
    async def test_add_message_failure_raises(self, chat, gateway):
        gateway.fail("insert")
        with pytest.raises(GatewayError):
            await chat.add_discussion_message("u1", "Salut")

    @pytest.mark.asyncio
    async def test_delete_message_failure_restores(self, chat, gateway):
        await chat.get_discussion_messages(limit=4)
        gateway.fail("delete")

        with pytest.raises(GatewayError):
            await chat.delete_discussion_message("m8")

        assert "m8" in {m.id for m in chat.get_cached_messages()}

    @pytest.mark.asyncio
    async def test_watch_messages(self, chat, gateway):
        await chat.get_all_members()
        await chat.get_discussion_messages(limit=4)
        snapshots = []
        stop = chat.watch_messages(lambda kind, messages: snapshots.append(messages))

        gateway.push_insert(
            "messages", {"id": "m11", "author_id": "u2", "content": "live", "created_at": ts(11)}
        )
        gateway.push_delete("messages", "m7")
        stop()
        gateway.push_delete("messages", "m8")

        assert [m.id for m in snapshots[0]] == ["m7", "m8", "m9", "m10", "m11"]
        assert snapshots[0][-1].author_name == "Ali"
        assert len(snapshots) == 2
        # The subscription stays open for the cache after the observer leaves
        assert "m8" not in {m.id for m in chat.get_cached_messages()}

    @pytest.mark.asyncio
    async def test_watch_shares_subscription(self, chat, gateway):
        chat.watch_messages(lambda kind, messages: None)
        chat.watch_messages(lambda kind, messages: None)
        assert len(gateway._subscribers["messages"]) == 1


class TestSession:
    """Tests for logout and close."""

    @pytest.mark.asyncio
    async def test_logout_clears_cache_only(self, service, gateway):
        await service.get_posts()
        gateway.fail("insert")
        await service.add_comment("p1", "Bravo")
        service.lists.add_goal("Export to Europe")

        service.logout()

        assert service.cache.get(POSTS).loaded is False
        assert service.cache.get(MESSAGES).loaded is False
        assert len(service.fallback.list_for("comments")) == 1
        assert len(service.lists.get_goals()) == 1

    @pytest.mark.asyncio
    async def test_close_drops_subscriptions(self, service, gateway):
        service.watch_messages(lambda kind, messages: None)
        await service.close()
        assert gateway._subscribers["messages"] == []


class TestFallbackDatasets:
    """Tests for offline startup."""

    @pytest.mark.asyncio
    async def test_offline_trainings_fallback(self, clock):
        config = CacheConfig.from_dict(
            {"fallback_datasets": {"trainings": [{"id": "t-welcome", "title": "Bienvenue"}]}}
        )
        gateway = InMemoryGateway()
        gateway.fail("*")
        service = CommunityService(gateway, config, clock=clock)

        assert [t.title for t in await service.get_trainings()] == ["Bienvenue"]
