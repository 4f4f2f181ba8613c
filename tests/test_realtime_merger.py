"""
Tests for merging realtime change notifications into the cache.
"""

import pytest
from conftest import message_row, ts

from community_cache.config import MEMBERS, MESSAGES, POSTS
from community_cache.models import (
    DEFAULT_REALTIME_AUTHOR,
    avatar_url,
    member_from_wire,
    message_from_wire,
    post_from_wire,
)
from community_cache.realtime import RealtimeMerger


def bare_message(n: int, author_id: str = "u1") -> dict:
    """Pushed rows carry no joined profile."""
    row = message_row(n, author_id)
    del row["profiles"]
    return row


@pytest.fixture
def merger(cache):
    cache.set(MESSAGES, [message_from_wire(message_row(n)) for n in (1, 3)])
    return RealtimeMerger(cache, MESSAGES)


class TestRealtimeMerger:
    """Tests for RealtimeMerger."""

    def test_insert_in_canonical_position(self, merger, cache):
        assert merger.on_inserted(bare_message(2)) is True
        assert [m.id for m in cache.get(MESSAGES).data] == ["m1", "m2", "m3"]

    def test_insert_is_idempotent(self, merger, cache):
        merger.on_inserted(bare_message(2))
        before = cache.get(MESSAGES).data

        assert merger.on_inserted(bare_message(2)) is False
        assert cache.get(MESSAGES).data == before

    def test_insert_of_cached_id_ignored(self, merger, cache):
        row = bare_message(1)
        row["content"] = "edited"
        assert merger.on_inserted(row) is False
        assert cache.get(MESSAGES).data[0].content == "message 1"

    def test_insert_without_cache_ignored(self, cache):
        merger = RealtimeMerger(cache, POSTS)
        assert merger.on_inserted({"id": "p1", "content": "x", "created_at": ts(1)}) is False
        assert cache.get(POSTS).loaded is False

    def test_insert_without_id_ignored(self, merger):
        assert merger.on_inserted({"content": "no id"}) is False

    def test_insert_keeps_fetched_at(self, merger, cache, clock):
        stamped = cache.get(MESSAGES).fetched_at
        clock.advance(10)
        merger.on_inserted(bare_message(2))
        assert cache.get(MESSAGES).fetched_at == stamped

    def test_author_resolved_from_cached_members(self, merger, cache):
        cache.set(
            MEMBERS,
            [member_from_wire({"id": "u7", "name": "Fatou", "avatar_url": "https://img/f.png"})],
        )

        merger.on_inserted(bare_message(2, author_id="u7"))

        message = cache.get(MESSAGES).data[1]
        assert message.author_name == "Fatou"
        assert message.author_avatar == "https://img/f.png"

    def test_unknown_author_placeholder(self, merger, cache):
        merger.on_inserted(bare_message(2, author_id="nobody"))

        message = cache.get(MESSAGES).data[1]
        assert message.author_name == DEFAULT_REALTIME_AUTHOR
        assert message.author_avatar == avatar_url(DEFAULT_REALTIME_AUTHOR)

    def test_delete(self, merger, cache):
        assert merger.on_deleted("m1") is True
        assert [m.id for m in cache.get(MESSAGES).data] == ["m3"]

    def test_delete_absent_is_noop(self, merger, cache):
        before = cache.get(MESSAGES).data
        assert merger.on_deleted("m99") is False
        assert cache.get(MESSAGES).data == before

    def test_delete_then_insert_applied_in_order(self, merger, cache):
        merger.on_deleted("m3")
        merger.on_inserted(bare_message(3))
        assert cache.ids(MESSAGES) == {"m1", "m3"}

    def test_insert_then_delete_applied_in_order(self, merger, cache):
        merger.on_inserted(bare_message(2))
        merger.on_deleted("m2")
        assert cache.ids(MESSAGES) == {"m1", "m3"}

    def test_newest_first_kind(self, cache):
        cache.set(POSTS, [post_from_wire({"id": "a", "content": "a", "created_at": 100})])
        merger = RealtimeMerger(cache, POSTS)

        merger.on_inserted({"id": "b", "content": "b", "created_at": 200})

        assert [p.id for p in cache.get(POSTS).data] == ["b", "a"]


class TestObservers:
    """Tests for change observers."""

    def test_observer_receives_snapshot(self, merger):
        seen = []
        merger.add_observer(lambda kind, snapshot: seen.append((kind, [m.id for m in snapshot])))

        merger.on_inserted(bare_message(2))
        merger.on_inserted(bare_message(2))
        merger.on_deleted("m1")

        assert seen == [(MESSAGES, ["m1", "m2", "m3"]), (MESSAGES, ["m2", "m3"])]

    def test_remove_observer(self, merger):
        seen = []
        remove = merger.add_observer(lambda kind, snapshot: seen.append(kind))
        remove()
        remove()

        merger.on_deleted("m1")
        assert seen == []


class TestAttach:
    """Tests for gateway subscription."""

    @pytest.mark.asyncio
    async def test_gateway_inserts_reach_cache(self, merger, gateway, cache):
        subscription = merger.attach(gateway)

        row = await gateway.insert("messages", {"author_id": "u1", "content": "live"})
        assert row["id"] in cache.ids(MESSAGES)

        subscription.close()
        gateway.push_insert("messages", {"id": "late", "created_at": ts(9)})
        assert "late" not in cache.ids(MESSAGES)

    def test_pushed_delete(self, merger, gateway, cache):
        merger.attach(gateway)
        gateway.push_delete("messages", "m3")
        assert cache.ids(MESSAGES) == {"m1"}
