"""Per-turn bookkeeping and board orientation.

TurnState is immutable and replaced wholesale: on a turn boundary it is
rebuilt from scratch, and each dispatch produces a new value.
"""
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, FrozenSet, Iterable, Optional

from companion import config
from companion.models import (
    ActionListing,
    EndTurnStep,
    HeroPowerStep,
    MoveStep,
    MoveThenAttackStep,
    Step,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnState:
    turn_id: Any = None
    step_count: int = 0
    moved_units: FrozenSet[int] = frozenset()
    hero_power_used: bool = False
    ended_this_turn: bool = False
    retried: bool = False

    def after_dispatch(self, steps: Iterable[Step]) -> "TurnState":
        """New state reflecting that `steps` were sent to the client."""
        steps = list(steps)
        moved = set(self.moved_units)
        hero_power_used = self.hero_power_used
        ended = self.ended_this_turn
        for step in steps:
            if isinstance(step, (MoveStep, MoveThenAttackStep)):
                moved.add(step.unit_id)
            elif isinstance(step, HeroPowerStep):
                hero_power_used = True
            elif isinstance(step, EndTurnStep):
                ended = True
        return replace(
            self,
            step_count=self.step_count + len(steps),
            moved_units=frozenset(moved),
            hero_power_used=hero_power_used,
            ended_this_turn=ended,
        )

    def with_retry(self) -> "TurnState":
        return replace(self, retried=True)


def extract_turn_id(snapshot: Optional[Dict]) -> Any:
    if not isinstance(snapshot, dict):
        return None
    turn = snapshot.get("turn")
    if turn is None:
        turn = snapshot.get("turn_id")
    return turn


def _raw_unit_ids(units: Any) -> set:
    ids = set()
    for u in units or []:
        if not isinstance(u, dict):
            continue
        uid = u.get("unit_id", u.get("id"))
        if isinstance(uid, int) and not isinstance(uid, bool):
            ids.add(uid)
    return ids


def infer_flipped(listing: Optional[ActionListing], snapshot: Optional[Dict],
                  previous: bool = False) -> bool:
    """Majority vote of listing actor ids against the snapshot's two sides.

    Returns True when most actors belong to the snapshot's enemy side.
    A tie (including no actors at all) keeps `previous`.
    """
    if listing is None or not isinstance(snapshot, dict):
        return previous
    self_ids = _raw_unit_ids(snapshot.get("self_units"))
    enemy_ids = _raw_unit_ids(snapshot.get("enemy_units"))
    self_hits = 0
    enemy_hits = 0
    for actor in listing.actor_ids():
        if actor in self_ids:
            self_hits += 1
        elif actor in enemy_ids:
            enemy_hits += 1
    if self_hits > enemy_hits:
        return False
    if enemy_hits > self_hits:
        return True
    return previous


class TurnTracker:
    """Detects turn boundaries and owns the current TurnState and orientation."""

    def __init__(self, orientation: str = config.ORIENTATION):
        self.orientation = orientation
        self.state = TurnState()
        self.flipped = orientation == config.ORIENTATION_FLIPPED
        self._orientation_pending = False

    @property
    def turn_id(self) -> Any:
        return self.state.turn_id

    def observe_snapshot(self, snapshot: Dict, listing: Optional[ActionListing]) -> bool:
        """Record a snapshot. Returns True on a turn boundary."""
        turn_id = extract_turn_id(snapshot)
        if turn_id is None or turn_id == self.state.turn_id:
            return False
        previous = self.state.turn_id
        self.state = TurnState(turn_id=turn_id)
        logger.info(f"Turn boundary: {previous!r} -> {turn_id!r}")
        if self.orientation == config.ORIENTATION_AUTO:
            if listing is not None and len(listing):
                self._reinfer(listing, snapshot)
                self._orientation_pending = False
            else:
                self._orientation_pending = True
        return True

    def observe_listing(self, listing: ActionListing, snapshot: Optional[Dict]) -> None:
        """First listing after a boundary that had none settles orientation."""
        if self._orientation_pending and snapshot is not None and len(listing):
            self._reinfer(listing, snapshot)
            self._orientation_pending = False

    def _reinfer(self, listing: ActionListing, snapshot: Dict) -> None:
        flipped = infer_flipped(listing, snapshot, self.flipped)
        if flipped != self.flipped:
            logger.info(f"Board orientation changed: flipped={flipped}")
        self.flipped = flipped

    def record_dispatch(self, steps: Iterable[Step]) -> None:
        self.state = self.state.after_dispatch(steps)

    def mark_retried(self) -> None:
        self.state = self.state.with_retry()

    def restore(self, state: TurnState) -> None:
        """Roll back to a state saved before a dispatch the client did not apply.

        The retry flag is kept; a state from an earlier turn is ignored.
        """
        if state.turn_id != self.state.turn_id:
            return
        self.state = replace(state, retried=self.state.retried)

    def reopen(self) -> None:
        """An end turn was sent but not applied."""
        if self.state.ended_this_turn:
            logger.info("End turn was not applied, turn reopened")
            self.state = replace(self.state, ended_this_turn=False)
