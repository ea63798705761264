"""WebSocket fan-out of EventBus events.

Clients connect to ``/ws?topics=usage-update,session-status`` (default
``*``).  :meth:`WebSocketRegistry.pump` drains an EventBus subscription and
forwards every event to the clients subscribed to its topic, as
``{"type", "payload", "source", "timestamp"}`` JSON.

>>> WebSocketRegistry().client_count
0
"""

import json
import logging
from typing import Optional

from fastapi import WebSocket

from quotawatch.events import Event, Subscription

logger = logging.getLogger(__name__)


class WebSocketRegistry:
    """Connected clients and the topics each one wants."""

    def __init__(self):
        self._clients: dict[WebSocket, frozenset[str]] = {}

    async def connect(self, ws: WebSocket, topics: Optional[list[str]] = None):
        self._clients[ws] = frozenset(topics or ["*"])

    def disconnect(self, ws: WebSocket):
        """Forget a client; unknown clients are ignored."""
        self._clients.pop(ws, None)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def send_event(self, event: Event, source: str = "scheduler") -> int:
        """Send *event* to matching clients.  Returns how many received it.

        Clients whose send fails are dropped.
        """
        message = json.dumps(
            {
                "type": event.topic,
                "payload": event.payload,
                "source": source,
                "timestamp": int(event.timestamp),
            }
        )
        delivered = 0
        failed: list[WebSocket] = []
        for ws, topics in list(self._clients.items()):
            if "*" not in topics and event.topic not in topics:
                continue
            try:
                await ws.send_text(message)
                delivered += 1
            except Exception as e:
                logger.debug("WebSocket send failed, dropping client: %s", e)
                failed.append(ws)
        for ws in failed:
            self._clients.pop(ws, None)
        return delivered

    async def pump(self, subscription: Subscription):
        """Forward events from *subscription* until cancelled or closed."""
        async for event in subscription:
            if self._clients:
                await self.send_event(event)
