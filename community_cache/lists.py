"""
Per-user lists kept only on this device.

Notifications, strategic goals and cluster victories never reach the
remote service; they live as JSON lists in the local durable store.
Items are plain dicts so the calling UI owns their shape; only ``id``
(and ``is_completed`` for goals) is interpreted here.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from .durable.store import DurableStore, read_json_list, write_json_list

logger = logging.getLogger(__name__)

NOTIFICATIONS_KEY = "pr_notifs"
GOALS_KEY = "pr_goals"
VICTORIES_KEY = "pr_victories"


def _new_item_id() -> str:
    # Millisecond timestamp keeps ids roughly ordered; suffix avoids collisions
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


class LocalLists:
    """Device-local notification, goal and victory lists."""

    def __init__(self, store: DurableStore) -> None:
        self.store = store

    # Notifications

    def get_notifications(self) -> list[dict[str, Any]]:
        return read_json_list(self.store, NOTIFICATIONS_KEY)

    def add_notification(self, notification: dict[str, Any]) -> list[dict[str, Any]]:
        """Prepend a notification (newest first).

        Returns:
            The updated list
        """
        items = [dict(notification), *self.get_notifications()]
        write_json_list(self.store, NOTIFICATIONS_KEY, items)
        return items

    # Strategic goals

    def get_goals(self) -> list[dict[str, Any]]:
        return read_json_list(self.store, GOALS_KEY)

    def add_goal(self, text: str) -> list[dict[str, Any]]:
        """Append a new, not yet completed goal."""
        items = self.get_goals()
        items.append({"id": _new_item_id(), "text": text, "is_completed": False})
        write_json_list(self.store, GOALS_KEY, items)
        return items

    def toggle_goal(self, goal_id: str) -> list[dict[str, Any]]:
        items = [
            {**goal, "is_completed": not goal.get("is_completed", False)}
            if goal.get("id") == goal_id
            else goal
            for goal in self.get_goals()
        ]
        write_json_list(self.store, GOALS_KEY, items)
        return items

    def delete_goal(self, goal_id: str) -> list[dict[str, Any]]:
        items = [goal for goal in self.get_goals() if goal.get("id") != goal_id]
        write_json_list(self.store, GOALS_KEY, items)
        return items

    # Cluster victories

    def get_victories(self) -> list[dict[str, Any]]:
        return read_json_list(self.store, VICTORIES_KEY)

    def add_victory(self, victory: dict[str, Any]) -> list[dict[str, Any]]:
        """Prepend a victory, assigning an id when it has none."""
        victory = dict(victory)
        victory.setdefault("id", _new_item_id())
        items = [victory, *self.get_victories()]
        write_json_list(self.store, VICTORIES_KEY, items)
        return items

    def update_victory(self, victory_id: str, changes: dict[str, Any]) -> list[dict[str, Any]]:
        """Merge ``changes`` into the victory with ``victory_id``; the id never changes."""
        changes = {k: v for k, v in changes.items() if k != "id"}
        items = [
            {**victory, **changes} if victory.get("id") == victory_id else victory
            for victory in self.get_victories()
        ]
        write_json_list(self.store, VICTORIES_KEY, items)
        return items

    def delete_victory(self, victory_id: str) -> list[dict[str, Any]]:
        items = [v for v in self.get_victories() if v.get("id") != victory_id]
        write_json_list(self.store, VICTORIES_KEY, items)
        return items

    def clear(self) -> None:
        """Forget all lists (used when the device user changes)."""
        for key in (NOTIFICATIONS_KEY, GOALS_KEY, VICTORIES_KEY):
            self.store.remove(key)
        logger.info("Cleared local user lists")
