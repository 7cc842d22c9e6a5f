"""Presentation broadcast channels.

The engine publishes on named channels (decision_log, plan_result,
available_actions, state, chain, watchdog, turn). Publishing never blocks:
local subscribers are plain callbacks, and websocket monitor clients are
fed from per-client queues drained by their own tasks.
"""
import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set

import websockets

from companion import config

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, Any], None]

CLIENT_QUEUE_SIZE = 256


class Broadcaster:
    """Non-blocking fan-out of (channel, payload) events."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._queues: Set[asyncio.Queue] = set()
        self.last: Dict[str, Any] = {}

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def attach_queue(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=CLIENT_QUEUE_SIZE)
        self._queues.add(q)
        return q

    def detach_queue(self, q: asyncio.Queue) -> None:
        self._queues.discard(q)

    @property
    def client_count(self) -> int:
        return len(self._queues)

    def publish(self, channel: str, payload: Any) -> None:
        self.last[channel] = payload
        for callback in list(self._subscribers):
            try:
                callback(channel, payload)
            except Exception as e:
                logger.error(f"Subscriber failed on {channel}: {e}", exc_info=True)
        if not self._queues:
            return
        try:
            message = json.dumps({"channel": channel, "ts": time.time(), "data": payload},
                                 default=str)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to serialize {channel} event: {e}")
            return
        for q in list(self._queues):
            try:
                q.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(f"Monitor client lagging, dropped {channel} event")


class MonitorServer:
    """Optional websocket endpoint streaming every broadcast channel as JSON."""

    def __init__(self, broadcaster: Broadcaster, host: str = config.MONITOR_HOST,
                 port: int = config.MONITOR_PORT):
        self.broadcaster = broadcaster
        self.host = host
        self.port = port
        self._server = None

    async def start(self) -> None:
        self._server = await websockets.serve(self.handle_client, self.host, self.port)
        logger.info(f"Monitor running on ws://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def handle_client(self, websocket) -> None:
        q = self.broadcaster.attach_queue()
        logger.info(f"Monitor client connected ({self.broadcaster.client_count} total)")
        try:
            for channel, payload in list(self.broadcaster.last.items()):
                await websocket.send(json.dumps(
                    {"channel": channel, "ts": time.time(), "data": payload}, default=str,
                ))
            while True:
                message = await q.get()
                await asyncio.wait_for(websocket.send(message),
                                       timeout=config.SEND_TIMEOUT_SECONDS)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Monitor client disconnected")
        except asyncio.TimeoutError:
            logger.warning("Monitor client send timed out, dropping it")
        finally:
            self.broadcaster.detach_queue(q)
