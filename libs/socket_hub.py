"""
In-process fan-out of events to WebSocket clients.

Each socket subscribes to a set of topic ids (users it may watch, or its own
inbox); an event about a topic is pushed to every socket subscribed to it.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class SocketHub:
    def __init__(self) -> None:
        self.watchers: Dict[str, Set[WebSocket]] = defaultdict(set)
        self.subscriptions: Dict[WebSocket, Set[str]] = {}

    def subscribe(self, websocket: WebSocket, user_ids: Iterable[str]) -> None:
        watched = self.subscriptions.setdefault(websocket, set())
        for user_id in user_ids:
            watched.add(user_id)
            self.watchers[user_id].add(websocket)

    def unsubscribe(self, websocket: WebSocket) -> None:
        """Drop every subscription held by this socket."""
        for user_id in self.subscriptions.pop(websocket, set()):
            sockets = self.watchers.get(user_id)
            if sockets is None:
                continue
            sockets.discard(websocket)
            if not sockets:
                self.watchers.pop(user_id, None)

    def watcher_count(self, user_id: str) -> int:
        return len(self.watchers.get(user_id, ()))

    async def _send(self, websocket: WebSocket, payload: Dict[str, Any]) -> bool:
        try:
            await websocket.send_json(payload)
            return True
        except Exception as e:
            logger.warning("Dropping socket after send failure: %s", e)
            self.unsubscribe(websocket)
            return False

    async def publish(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        """Push an event about `user_id` to its subscribers; returns deliveries."""
        sockets = list(self.watchers.get(user_id, ()))
        if not sockets:
            return 0
        payload = {"event": event, "data": data}
        results = await asyncio.gather(*[self._send(ws, payload) for ws in sockets])
        return sum(results)
