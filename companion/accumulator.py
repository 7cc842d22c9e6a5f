"""Debounced step accumulator.

Decision sources push steps as they decide. Pushes that land within the
debounce window are coalesced into one flush, so a burst of decisions made
in the same tick becomes a single batch.
"""
import asyncio
import logging
from typing import Callable, List, Optional

from companion import config
from companion.models import Step

logger = logging.getLogger(__name__)

FlushHandler = Callable[[List[Step], str], None]


class StepAccumulator:
    """Ordered step buffer with a cancellable debounce timer.

    Args:
        on_flush: Called with (steps, reason) when a flush goes through.
        is_busy: Returns True while a request is inflight; flushes are then
            deferred and the steps stay buffered.
        debounce_ms: Debounce window in milliseconds.
    """

    def __init__(self, on_flush: FlushHandler, is_busy: Callable[[], bool],
                 debounce_ms: int = config.DEBOUNCE_MS):
        self._on_flush = on_flush
        self._is_busy = is_busy
        self.debounce_ms = debounce_ms
        self._steps: List[Step] = []
        self._timer: Optional[asyncio.TimerHandle] = None

    def __len__(self) -> int:
        return len(self._steps)

    @property
    def pending(self) -> List[Step]:
        return list(self._steps)

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def push(self, step: Step) -> None:
        self._steps.append(step)
        self._rearm()

    def extend(self, steps: List[Step]) -> None:
        if not steps:
            return
        self._steps.extend(steps)
        self._rearm()

    def flush(self, reason: str = "debounce") -> bool:
        """Hand buffered steps to the flush handler.

        Returns False (and keeps the buffer) when empty or busy.
        """
        if not self._steps:
            return False
        if self._is_busy():
            logger.debug(f"Flush ({reason}) deferred: request inflight, {len(self._steps)} step(s) kept")
            return False
        self._cancel_timer()
        batch = self._steps
        self._steps = []
        logger.debug(f"Flushing {len(batch)} step(s) ({reason})")
        self._on_flush(batch, reason)
        return True

    def flush_now(self, reason: str = "urgent") -> bool:
        """Flush immediately, bypassing the debounce window."""
        self._cancel_timer()
        return self.flush(reason)

    def resume(self) -> None:
        """Re-arm the debounce for steps kept back by a deferred flush."""
        if self._steps and self._timer is None:
            self._rearm()

    def clear(self) -> None:
        self._cancel_timer()
        if self._steps:
            logger.debug(f"Dropping {len(self._steps)} pending step(s)")
        self._steps = []

    def _rearm(self) -> None:
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer = loop.call_later(self.debounce_ms / 1000.0, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        try:
            self.flush("debounce")
        except Exception as e:
            logger.error(f"Debounced flush failed: {e}", exc_info=True)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
