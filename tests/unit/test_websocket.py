"""Unit tests for the WebSocket bridge.

Covers connect/disconnect, topic filtering, wildcard clients, dead client
cleanup and pumping events off an EventBus subscription.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

from quotawatch.api.websocket import WebSocketRegistry
from quotawatch.events import SESSION_STATUS, USAGE_UPDATE, Event, EventBus


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.new_event_loop().run_until_complete(coro)


def _mock_ws():
    ws = MagicMock()
    ws.send_text = AsyncMock()
    return ws


def _event(topic, **payload):
    return Event(topic=topic, payload=payload, timestamp=1700000000.5)


def test_connect_disconnect():
    """
    >>> r = WebSocketRegistry()
    >>> r.disconnect(object())
    >>> r.client_count
    0
    """
    r = WebSocketRegistry()
    ws1, ws2 = _mock_ws(), _mock_ws()
    _run(r.connect(ws1))
    _run(r.connect(ws2, topics=[SESSION_STATUS]))
    assert r.client_count == 2

    r.disconnect(ws1)
    r.disconnect(ws1)
    assert r.client_count == 1


def test_send_event_filters_by_topic():
    """Only clients subscribed to the topic (or ``*``) receive it.

    >>> # Verified via unit test
    """
    r = WebSocketRegistry()
    ws_all = _mock_ws()
    ws_session = _mock_ws()
    _run(r.connect(ws_all))
    _run(r.connect(ws_session, topics=[SESSION_STATUS]))

    delivered = _run(r.send_event(_event(USAGE_UPDATE, accountId="a1")))
    assert delivered == 1
    ws_session.send_text.assert_not_called()

    msg = json.loads(ws_all.send_text.call_args[0][0])
    assert msg == {
        "type": USAGE_UPDATE,
        "payload": {"accountId": "a1"},
        "source": "scheduler",
        "timestamp": 1700000000,
    }


def test_dead_client_dropped():
    """
    >>> # Verified via unit test
    """
    r = WebSocketRegistry()
    alive, dead = _mock_ws(), _mock_ws()
    dead.send_text.side_effect = ConnectionError("gone")
    _run(r.connect(alive))
    _run(r.connect(dead))

    assert _run(r.send_event(_event(SESSION_STATUS))) == 1
    assert r.client_count == 1
    alive.send_text.assert_called_once()


def test_pump_forwards_bus_events():
    """Events published on the bus reach connected clients.

    >>> # Verified via unit test
    """
    r = WebSocketRegistry()
    ws = _mock_ws()

    async def scenario():
        bus = EventBus()
        sub = bus.subscribe()
        await r.connect(ws, topics=[USAGE_UPDATE])
        task = asyncio.ensure_future(r.pump(sub))
        bus.publish(USAGE_UPDATE, {"accountId": "a1"})
        bus.publish(SESSION_STATUS, {"accountId": "a1"})
        for _ in range(5):
            await asyncio.sleep(0)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        sub.close()

    _run(scenario())
    assert ws.send_text.call_count == 1
    assert json.loads(ws.send_text.call_args[0][0])["type"] == USAGE_UPDATE
