"""Game client transport and entry point.

Connects to the game client's local TCP port, subscribes, and exchanges
newline-delimited JSON frames. Runs three tasks per connection:

- consumer: reads lines, parses them and routes them to the TurnEngine
- producer: drains the outbound queue with a send timeout
- watchdog: periodic TurnEngine.watchdog_tick()

On EOF or any stream error the connection state is dropped and a new
connection is attempted after a fixed delay, forever.
"""
import argparse
import asyncio
import importlib
import logging
from typing import Dict, Optional

from companion import config
from companion.bot_interface import DecisionSource, HeuristicBot, PlanFollowerBot
from companion.engine import TurnEngine
from companion.game_logger import GameLogger
from companion.monitor import Broadcaster, MonitorServer
from companion.protocol import UnknownMsg, build_subscribe, encode, parse_message

logger = logging.getLogger(__name__)

# Snapshots can be large; asyncio's default 64 KiB line limit is too small
STREAM_LIMIT = 4 * 1024 * 1024


class CompanionClient:
    """Persistent line-protocol connection feeding a TurnEngine."""

    def __init__(self, engine: TurnEngine, host: str = config.GAME_HOST,
                 port: int = config.GAME_PORT, token: str = config.BRIDGE_TOKEN,
                 reconnect_delay_ms: int = config.RECONNECT_DELAY_MS):
        self.engine = engine
        self.host = host
        self.port = port
        self.token = token
        self.reconnect_delay_ms = reconnect_delay_ms
        self.queue: asyncio.Queue = asyncio.Queue()
        self.connected = False
        self._stopping = False
        self._consumer_task: Optional[asyncio.Task] = None
        self._producer_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        engine.send = self.send

    @property
    def game_logger(self) -> GameLogger:
        return self.engine.game_logger

    def send(self, msg: Dict) -> None:
        """Queue a message for the producer."""
        try:
            self.queue.put_nowait(encode(msg))
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to serialize outgoing message: {e}")

    def stop(self) -> None:
        self._stopping = True
        for task in (self._consumer_task, self._producer_task, self._watchdog_task):
            if task is not None and not task.done():
                task.cancel()

    async def run(self) -> None:
        """Connect, serve, and reconnect with a fixed delay until stop()."""
        while not self._stopping:
            try:
                await self.connect_and_serve()
            except (OSError, asyncio.IncompleteReadError) as e:
                logger.warning(f"Connection to {self.host}:{self.port} failed: {e}")
            if self._stopping:
                break
            logger.info(f"Reconnecting in {self.reconnect_delay_ms}ms")
            await asyncio.sleep(self.reconnect_delay_ms / 1000.0)

    async def connect_and_serve(self) -> None:
        reader, writer = await asyncio.open_connection(self.host, self.port, limit=STREAM_LIMIT)
        self.connected = True
        self.queue = asyncio.Queue()
        logger.info(f"Connected to game client at {self.host}:{self.port}")
        if not self.game_logger.is_open:
            self.game_logger.open_session()
        self.send(build_subscribe(self.token))
        try:
            self._consumer_task = asyncio.create_task(self._consumer(reader), name="consumer")
            self._producer_task = asyncio.create_task(self._producer(writer), name="producer")
            self._watchdog_task = asyncio.create_task(self.engine.run_watchdog(), name="watchdog")
            done, _ = await asyncio.wait(
                [self._consumer_task, self._producer_task, self._watchdog_task],
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                exc = task.exception() if not task.cancelled() else None
                if exc:
                    logger.error(f"Task {task.get_name()} failed: {exc}")
        finally:
            for task in (self._consumer_task, self._producer_task, self._watchdog_task):
                if task is not None and not task.done():
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass
                    except Exception as e:
                        logger.debug(f"Task {task.get_name()} ended with {e!r}")
            self.connected = False
            self.engine.on_disconnect()
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error while closing stream: {e}")
            logger.info("Connection closed, all tasks cleaned up")

    async def _consumer(self, reader: asyncio.StreamReader) -> None:
        """Read frames until EOF. Handler errors are logged, never fatal."""
        while True:
            try:
                line = await reader.readline()
            except (asyncio.LimitOverrunError, ValueError) as e:
                logger.error(f"Oversized or broken frame, resetting stream: {e}")
                return
            if not line:
                logger.info("Game client closed the connection")
                return
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                msg = parse_message(text)
                self.game_logger.log_incoming(type(msg).__name__, text)
                if isinstance(msg, UnknownMsg):
                    self.game_logger.log_security_event(
                        "unknown_message",
                        f"Unrecognized message structure: {text[:200]}",
                    )
                await self.engine.handle_message(msg)
            except Exception as e:
                logger.error(f"Error handling message: {e}", exc_info=True)
                self.game_logger.log_security_event(
                    "handler_exception",
                    f"Exception in message handler: {e}",
                )

    async def _producer(self, writer: asyncio.StreamWriter) -> None:
        """Write queued frames with a timeout so a stuck peer cannot hang us."""
        while True:
            data = await self.queue.get()
            try:
                writer.write(data)
                await asyncio.wait_for(writer.drain(), timeout=config.SEND_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.error(f"Send timed out after {config.SEND_TIMEOUT_SECONDS}s")
            except ConnectionError:
                logger.info("Connection lost during send")
                return


def load_planner(target: str):
    """Import a planner callable from "package.module:function"."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Planner must look like module:function, got {target!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


def build_source(planner: Optional[str] = None) -> DecisionSource:
    if planner:
        return PlanFollowerBot(load_planner(planner), fallback=HeuristicBot())
    return HeuristicBot()


async def main(host: str = config.GAME_HOST, port: int = config.GAME_PORT,
               token: str = config.BRIDGE_TOKEN, planner: Optional[str] = None,
               submit_mode: str = config.SUBMIT_MODE, orientation: str = config.ORIENTATION,
               decision_timeout_ms: int = config.DECISION_TIMEOUT_MS,
               monitor_port: int = config.MONITOR_PORT):
    """Run the companion until interrupted."""
    broadcaster = Broadcaster()
    engine = TurnEngine(
        build_source(planner),
        broadcaster=broadcaster,
        submit_mode=submit_mode,
        orientation=orientation,
        decision_timeout_ms=decision_timeout_ms,
    )
    client = CompanionClient(engine, host, port, token)
    monitor = None
    if monitor_port:
        monitor = MonitorServer(broadcaster, config.MONITOR_HOST, monitor_port)
        await monitor.start()
    logger.info(f"Companion starting (bot={engine.source.name}, submit={submit_mode}, "
                f"orientation={orientation})")
    try:
        await client.run()
    finally:
        client.stop()
        if monitor is not None:
            await monitor.stop()
        engine.game_logger.close_session()


def cli(argv=None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    parser = argparse.ArgumentParser(description="Tactics companion")
    parser.add_argument("--host", type=str, default=config.GAME_HOST,
                        help=f"Game client host (default: {config.GAME_HOST})")
    parser.add_argument("--port", type=int, default=config.GAME_PORT,
                        help=f"Game client port (default: {config.GAME_PORT})")
    parser.add_argument("--token", type=str, default=config.BRIDGE_TOKEN,
                        help="Subscribe token")
    parser.add_argument("--planner", type=str, default=None,
                        help="Plan source as module:function (default: heuristics only)")
    parser.add_argument("--submit-mode", type=str, default=config.SUBMIT_MODE,
                        choices=list(config.SUBMIT_MODES),
                        help=f"How steps are submitted (default: {config.SUBMIT_MODE})")
    parser.add_argument("--orientation", type=str, default=config.ORIENTATION,
                        choices=list(config.ORIENTATIONS),
                        help=f"Board orientation (default: {config.ORIENTATION})")
    parser.add_argument("--decision-timeout-ms", type=int, default=config.DECISION_TIMEOUT_MS,
                        help="Watchdog timeout for inflight requests")
    parser.add_argument("--monitor-port", type=int, default=config.MONITOR_PORT,
                        help="Websocket monitor port, 0 disables (default: %(default)s)")
    args = parser.parse_args(argv)
    try:
        asyncio.run(main(
            host=args.host, port=args.port, token=args.token, planner=args.planner,
            submit_mode=args.submit_mode, orientation=args.orientation,
            decision_timeout_ms=args.decision_timeout_ms, monitor_port=args.monitor_port,
        ))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    cli()
