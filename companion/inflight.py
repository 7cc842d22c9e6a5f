"""Inflight request tracking and listing generations.

At most one request is outstanding at any time: either a single
select_action or one batch (turn_plan / select_actions), never both.
"""
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

from companion.turn_state import TurnState

logger = logging.getLogger(__name__)

KIND_SINGLE = "single"
KIND_BATCH = "batch"


@dataclass
class InflightRequest:
    correlation_id: str
    submitted_at: float
    kind: str
    action_id: Optional[int] = None
    steps: List = field(default_factory=list)
    action_ids: Optional[List[int]] = None
    # TurnState from before this request was dispatched
    prior_state: Optional[TurnState] = None

    def age(self, now: Optional[float] = None) -> float:
        now = time.monotonic() if now is None else now
        return now - self.submitted_at


def new_correlation_id() -> str:
    return uuid.uuid4().hex


class InflightTracker:
    """Owns the single/batch inflight markers and the listing generation counter."""

    def __init__(self):
        self.single: Optional[InflightRequest] = None
        self.batch: Optional[InflightRequest] = None
        self.generation = 0

    @property
    def busy(self) -> bool:
        return self.single is not None or self.batch is not None

    @property
    def current(self) -> Optional[InflightRequest]:
        return self.single or self.batch

    def next_generation(self) -> int:
        """Stamp a newly arrived action listing."""
        self.generation += 1
        return self.generation

    def is_current(self, generation: int) -> bool:
        return generation == self.generation

    def begin_single(self, action_id: int, now: Optional[float] = None) -> Optional[InflightRequest]:
        """Mark a select_action inflight. Returns None if anything is already inflight."""
        if self.busy:
            logger.debug(f"Refusing single action {action_id}: request already inflight")
            return None
        self.single = InflightRequest(
            correlation_id=new_correlation_id(),
            submitted_at=time.monotonic() if now is None else now,
            kind=KIND_SINGLE,
            action_id=action_id,
        )
        return self.single

    def begin_batch(self, steps: List, now: Optional[float] = None) -> Optional[InflightRequest]:
        """Mark a batch inflight. Returns None if anything is already inflight."""
        if self.busy:
            logger.debug(f"Refusing batch of {len(steps)}: request already inflight")
            return None
        self.batch = InflightRequest(
            correlation_id=new_correlation_id(),
            submitted_at=time.monotonic() if now is None else now,
            kind=KIND_BATCH,
            steps=list(steps),
        )
        return self.batch

    def clear_single(self, req_id: Optional[str] = None) -> bool:
        """Clear the single marker. A result carrying a different req_id is ignored."""
        if self.single is None:
            return False
        if req_id is not None and req_id != self.single.correlation_id:
            logger.debug(f"Ignoring result for stale request {req_id}")
            return False
        self.single = None
        return True

    def clear_batch(self, req_id: Optional[str] = None) -> bool:
        if self.batch is None:
            return False
        if req_id is not None and req_id != self.batch.correlation_id:
            logger.debug(f"Ignoring batch result for stale request {req_id}")
            return False
        self.batch = None
        return True

    def clear_all(self) -> None:
        self.single = None
        self.batch = None

    def expired(self, timeout_seconds: float, now: Optional[float] = None) -> bool:
        req = self.current
        return req is not None and req.age(now) > timeout_seconds


def should_retry(attempted: int, succeeded: int, turn_state: TurnState) -> bool:
    """One-shot retry: only a total failure, and only the first one this turn."""
    return attempted >= 1 and succeeded == 0 and not turn_state.retried
