"""Tests for companion/monitor.py - broadcaster and websocket monitor."""
import asyncio
import json
import pytest
from unittest.mock import AsyncMock, MagicMock

import websockets.exceptions

from companion.monitor import CLIENT_QUEUE_SIZE, Broadcaster, MonitorServer


class TestBroadcaster:
    def test_subscribers_receive_events(self):
        b = Broadcaster()
        seen = []
        b.subscribe(lambda channel, payload: seen.append((channel, payload)))
        b.publish("turn", {"turn": 3})
        assert seen == [("turn", {"turn": 3})]
        assert b.last["turn"] == {"turn": 3}

    def test_failing_subscriber_does_not_block_others(self):
        b = Broadcaster()
        seen = []
        b.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        b.subscribe(lambda channel, payload: seen.append(channel))
        b.publish("state", {})
        assert seen == ["state"]

    def test_unsubscribe(self):
        b = Broadcaster()
        cb = MagicMock()
        b.subscribe(cb)
        b.unsubscribe(cb)
        b.unsubscribe(cb)
        b.publish("state", {})
        cb.assert_not_called()

    @pytest.mark.asyncio
    async def test_queue_receives_json_envelope(self):
        b = Broadcaster()
        q = b.attach_queue()
        b.publish("watchdog", {"kind": "idle"})
        message = json.loads(q.get_nowait())
        assert message["channel"] == "watchdog"
        assert message["data"] == {"kind": "idle"}
        assert "ts" in message

    @pytest.mark.asyncio
    async def test_full_queue_drops_instead_of_blocking(self):
        b = Broadcaster()
        q = b.attach_queue()
        for i in range(CLIENT_QUEUE_SIZE + 5):
            b.publish("state", {"n": i})
        assert q.qsize() == CLIENT_QUEUE_SIZE
        b.detach_queue(q)
        assert b.client_count == 0


class TestMonitorServer:
    @pytest.mark.asyncio
    async def test_client_gets_replay_then_live_events(self):
        b = Broadcaster()
        b.publish("turn", {"turn": 1})
        server = MonitorServer(b, port=0)

        sent = []
        ws = AsyncMock()

        async def send(message):
            sent.append(json.loads(message))
            if len(sent) == 2:
                raise websockets.exceptions.ConnectionClosed(None, None)

        ws.send = send
        task = asyncio.ensure_future(server.handle_client(ws))
        await asyncio.sleep(0)
        b.publish("decision_log", {"steps": ["End turn"]})
        await asyncio.wait_for(task, timeout=1)

        assert [m["channel"] for m in sent] == ["turn", "decision_log"]
        assert b.client_count == 0

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await MonitorServer(Broadcaster()).stop()
