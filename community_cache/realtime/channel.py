"""
Change notification channel.

WebSocket client for a row-change feed. Each message is a JSON object:

    {"type": "INSERT", "table": "messages", "new": {...row...}}
    {"type": "DELETE", "table": "messages", "old": {"id": "..."}}

Messages are dispatched, in arrival order, to the handlers registered
for their table. The connection is re-established after a delay when
it drops.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

import aiohttp

from ..exceptions import GatewayError
from ..gateway.base import DeleteHandler, InsertHandler, Subscription

logger = logging.getLogger(__name__)

INSERT = "INSERT"
DELETE = "DELETE"


class RealtimeChannel:
    """WebSocket subscriber for row-change notifications.

    Example:
        >>> channel = RealtimeChannel("wss://realtime.example.com/changes")
        >>> sub = channel.register("messages", on_insert, on_delete)
        >>> await channel.start()
        >>> # handlers run as notifications arrive
        >>> sub.close()
        >>> await channel.stop()
    """

    def __init__(
        self,
        url: str,
        auth_token: str | None = None,
        auto_reconnect: bool = True,
        reconnect_delay: float = 5.0,
    ) -> None:
        """Initialize the channel.

        Args:
            url: WebSocket URL of the change feed
            auth_token: Optional bearer token
            auto_reconnect: Reconnect when the connection drops
            reconnect_delay: Seconds to wait before reconnecting
        """
        self.url = url
        self.auth_token = auth_token
        self.auto_reconnect = auto_reconnect
        self.reconnect_delay = reconnect_delay

        self._handlers: dict[str, list[tuple[InsertHandler, DeleteHandler]]] = defaultdict(list)
        self._running = False
        self._connection_task: asyncio.Task[None] | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._sends: set[asyncio.Task[None]] = set()

        self.on_connected: Callable[[], None] | None = None
        self.on_error: Callable[[str], None] | None = None

    def register(
        self,
        table: str,
        on_insert: InsertHandler,
        on_delete: DeleteHandler,
    ) -> Subscription:
        """Register handlers for one table.

        A table registered while the socket is open is announced to the
        server right away; otherwise it goes out with the subscribe frame
        sent on the next connect.
        """
        handlers = (on_insert, on_delete)
        announce = not self._handlers[table]
        self._handlers[table].append(handlers)
        logger.debug(f"Registered change handlers for {table}")
        if announce:
            self._announce([table])

        def _remove() -> None:
            if handlers in self._handlers[table]:
                self._handlers[table].remove(handlers)

        return Subscription(_remove)

    @property
    def tables(self) -> list[str]:
        return [table for table, handlers in self._handlers.items() if handlers]

    async def start(self) -> None:
        """Start receiving notifications in the background."""
        self._launch()

    def ensure_started(self) -> bool:
        """Start the channel from synchronous code when a loop is running.

        Returns:
            True if the channel is running afterwards
        """
        if self._running:
            return True
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; realtime channel not started")
            return False
        self._launch()
        return True

    def _launch(self) -> None:
        if self._running:
            return

        self._running = True
        self._connection_task = asyncio.get_running_loop().create_task(self._connection_loop())
        logger.info(f"Realtime channel started: {self.url}")

    def _announce(self, tables: list[str]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(ws.send_json({"type": "subscribe", "tables": tables}))
        self._sends.add(task)
        task.add_done_callback(self._send_done)

    def _send_done(self, task: asyncio.Task[None]) -> None:
        self._sends.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Failed to announce subscription: {task.exception()}")

    async def stop(self) -> None:
        """Stop the channel."""
        self._running = False

        if self._connection_task:
            self._connection_task.cancel()
            try:
                await self._connection_task
            except asyncio.CancelledError:
                pass
            self._connection_task = None

        logger.info("Realtime channel stopped")

    def is_connected(self) -> bool:
        return self._running and self._connection_task is not None

    async def _connection_loop(self) -> None:
        """Main connection loop with auto-reconnect."""
        while self._running:
            try:
                await self._websocket_loop()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Realtime connection error: {e}")
                if self.on_error:
                    self.on_error(str(e))

            if self.auto_reconnect and self._running:
                logger.info(f"Reconnecting in {self.reconnect_delay}s...")
                await asyncio.sleep(self.reconnect_delay)
            else:
                break

    async def _websocket_loop(self) -> None:
        headers = {}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(self.url, headers=headers) as ws:
                if self.on_connected:
                    self.on_connected()

                self._ws = ws
                try:
                    await ws.send_json({"type": "subscribe", "tables": self.tables})
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            self.dispatch_raw(msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            raise GatewayError(f"WebSocket error: {ws.exception()}")
                finally:
                    self._ws = None

    def dispatch_raw(self, raw: str) -> None:
        """Parse and dispatch one text frame. Malformed frames are logged and dropped."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse change notification: {raw[:200]}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Ignoring non-object change notification: {raw[:200]}")
            return
        self.dispatch(data)

    def dispatch(self, data: dict[str, Any]) -> None:
        """Deliver a parsed notification to the table's handlers."""
        table = data.get("table")
        event_type = str(data.get("type", "")).upper()
        handlers = list(self._handlers.get(table, ())) if table else []
        if not handlers:
            return

        if event_type == INSERT:
            row = data.get("new")
            if not isinstance(row, dict) or "id" not in row:
                logger.warning(f"INSERT notification without row id on {table}")
                return
            for on_insert, _ in handlers:
                on_insert(row)
        elif event_type == DELETE:
            old = data.get("old") or {}
            record_id = old.get("id") if isinstance(old, dict) else None
            if record_id is None:
                logger.warning(f"DELETE notification without row id on {table}")
                return
            for _, on_delete in handlers:
                on_delete(str(record_id))
        else:
            logger.debug(f"Ignoring {event_type or 'untyped'} notification on {table}")
