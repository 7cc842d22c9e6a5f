"""JSON-lines session telemetry.

One file per game session under config.LOG_DIR. Every write is guarded so
a full disk or closed handle never interrupts play.
"""
import atexit
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional

from companion import config

logger = logging.getLogger(__name__)


class GameLogger:
    """Fire-and-forget telemetry sink.

    open_session() starts a new file; close_session() is idempotent and also
    registered with atexit. Methods called while no session is open are
    silently dropped.
    """

    def __init__(self):
        self._file = None
        self._session_id: Optional[str] = None
        self._games = 0
        atexit.register(self.close_session)

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def open_session(self) -> None:
        """Open a new session log.

        Reads config.LOG_DIR at call time so tests can point it at tmp_path.
        """
        self.close_session()
        self._games += 1
        self._session_id = f"session_{int(time.time())}_{self._games}"
        log_dir = config.LOG_DIR
        filepath = os.path.join(log_dir, f"{self._session_id}.jsonl")
        try:
            os.makedirs(log_dir, exist_ok=True)
            self._file = open(filepath, "a", encoding="utf-8")
            logger.info(f"Session log started: {filepath}")
        except OSError as e:
            logger.error(f"Failed to open session log {filepath}: {e}")
            self._file = None

    def log_incoming(self, msg_type: str, raw: str) -> None:
        self._write_entry({
            "dir": "in",
            "type": msg_type,
            "ts": time.time(),
            "raw": raw[:50000],
        })

    def log_outgoing(self, msg_type: str, data: Any) -> None:
        self._write_entry({
            "dir": "out",
            "type": msg_type,
            "ts": time.time(),
            "data": self._safe_serialize(data),
        })

    def log_event(self, event: str, **fields: Any) -> None:
        """Record an engine event (turn boundary, watchdog fire, retry, chain dispatch...)."""
        entry: Dict[str, Any] = {"dir": "event", "type": event, "ts": time.time()}
        for key, value in fields.items():
            entry[key] = self._safe_serialize(value)
        self._write_entry(entry)

    def log_security_event(self, event_type: str, details: str) -> None:
        """Unexpected or malformed frames from the client."""
        self._write_entry({
            "dir": "security",
            "type": event_type,
            "ts": time.time(),
            "details": str(details)[:1000],
        })

    def log_decision(self, turn: Any, source: str, steps: List[Dict]) -> None:
        self._write_entry({
            "dir": "decision",
            "ts": time.time(),
            "turn": self._safe_serialize(turn),
            "source": source,
            "steps": self._safe_serialize(steps),
        })

    def _write_entry(self, entry: dict) -> None:
        if self._file is None:
            return
        try:
            self._file.write(json.dumps(entry) + "\n")
            self._file.flush()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to write telemetry entry: {e}")

    @staticmethod
    def _safe_serialize(obj: Any) -> Any:
        try:
            json.dumps(obj)
            return obj
        except (TypeError, ValueError):
            return str(obj)[:500]

    def close_session(self) -> None:
        """Close the current session file. Safe to call repeatedly."""
        if self._file is None:
            return
        try:
            self._file.close()
            logger.info(f"Session log closed: {self._session_id}")
        except OSError as e:
            logger.error(f"Failed to close session log: {e}")
        finally:
            self._file = None
