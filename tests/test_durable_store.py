"""
Tests for the local durable stores.
"""

import json
import logging
import tempfile
from pathlib import Path

import pytest

from community_cache.durable import (
    FileDurableStore,
    MemoryDurableStore,
    read_json_list,
    write_json_list,
)


class TestMemoryDurableStore:
    """Tests for MemoryDurableStore."""

    def test_get_set_remove(self):
        store = MemoryDurableStore({"a": "1"})
        assert store.get_string("a") == "1"
        store.set_string("b", "2")
        store.remove("a")
        store.remove("missing")
        assert store.keys() == ["b"]
        assert store.get_string("a") is None


class TestFileDurableStore:
    """Tests for FileDurableStore."""

    @pytest.fixture
    def temp_dir(self):
        """Create a temporary directory for tests."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    def test_persists_across_instances(self, temp_dir):
        path = temp_dir / "nested" / "store.json"
        FileDurableStore(path).set_string("pr_goals", "[]")

        assert FileDurableStore(path).get_string("pr_goals") == "[]"
        assert json.loads(path.read_text()) == {"pr_goals": "[]"}

    def test_no_temp_file_left(self, temp_dir):
        path = temp_dir / "store.json"
        FileDurableStore(path).set_string("k", "v")
        assert not (temp_dir / "store.json.tmp").exists()

    def test_corrupted_file_recovers_from_backup(self, temp_dir):
        path = temp_dir / "store.json"
        store = FileDurableStore(path)
        store.set_string("a", "1")
        store.set_string("b", "2")
        path.write_text("{truncated")

        recovered = FileDurableStore(path)

        assert recovered.get_string("a") == "1"
        assert recovered.get_string("b") is None

    def test_corrupted_without_backup_starts_empty(self, temp_dir):
        path = temp_dir / "store.json"
        path.write_text("[1, 2, 3]")
        assert FileDurableStore(path).get_string("a") is None

    def test_write_failure_is_logged_not_raised(self, temp_dir, caplog):
        blocker = temp_dir / "blocker"
        blocker.write_text("not a directory")
        store = FileDurableStore(blocker / "store.json")

        with caplog.at_level(logging.ERROR):
            store.set_string("a", "1")

        assert store.get_string("a") == "1"
        assert "Storage I/O error during write_store" in caplog.text

    def test_remove(self, temp_dir):
        path = temp_dir / "store.json"
        store = FileDurableStore(path)
        store.set_string("a", "1")
        store.remove("a")
        assert FileDurableStore(path).get_string("a") is None


class TestJsonLists:
    """Tests for JSON list helpers."""

    def test_round_trip(self):
        store = MemoryDurableStore()
        write_json_list(store, "k", [{"id": "1"}])
        assert read_json_list(store, "k") == [{"id": "1"}]

    def test_missing_or_invalid(self):
        store = MemoryDurableStore({"bad": "{oops", "obj": '{"a": 1}'})
        assert read_json_list(store, "missing") == []
        assert read_json_list(store, "bad") == []
        assert read_json_list(store, "obj") == []
