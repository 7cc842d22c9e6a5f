"""Long-horizon plan bookkeeping.

A plan-based decision source computes a plan once and follows it across
several plies. The baseline captured when the plan was made lets us tell
when the board has drifted far enough that the plan must be regenerated.
"""
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_QUEUED = "queued"
STATUS_EXECUTED = "executed"

# Drift thresholds
DRIFT_UNITS = 3
DRIFT_HP = 10
DRIFT_HAND = 4
DRIFT_TURNS = 3
DRIFT_DIGEST_HP = 5


@dataclass(frozen=True)
class PolicySummary:
    my_units: int = 0
    enemy_units: int = 0
    my_hp: int = 0
    enemy_hp: int = 0
    my_hand: int = 0


@dataclass(frozen=True)
class PolicyBaseline:
    turn: int
    summary: PolicySummary
    digest: str
    created_at: float


def _side(snapshot: Dict, *keys: str) -> Dict:
    for key in keys:
        val = snapshot.get(key)
        if isinstance(val, dict):
            return val
    return {}


def _num(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _units(snapshot: Dict, key: str, side: Dict) -> Optional[list]:
    units = snapshot.get(key)
    if isinstance(units, list):
        return units
    units = side.get("units")
    return units if isinstance(units, list) else None


def build_summary(snapshot: Optional[Dict]) -> PolicySummary:
    if not isinstance(snapshot, dict):
        return PolicySummary()
    you = _side(snapshot, "you", "self")
    opp = _side(snapshot, "opponent", "enemy")
    mine = _units(snapshot, "self_units", you) or []
    theirs = _units(snapshot, "enemy_units", opp) or []
    hand = you.get("hand")
    return PolicySummary(
        my_units=len(mine),
        enemy_units=len(theirs),
        my_hp=_num(you.get("hero_hp", you.get("hp"))),
        enemy_hp=_num(opp.get("hero_hp", opp.get("hp"))),
        my_hand=len(hand) if isinstance(hand, list) else 0,
    )


def _unit_digest_row(u: Any) -> Dict:
    if not isinstance(u, dict):
        return {}
    return {
        "id": u.get("unit_id", u.get("id")),
        "card": u.get("card_id"),
        "hp": u.get("hp"),
        "atk": u.get("atk"),
        "cell": u.get("cell_index"),
    }


def snapshot_digest(snapshot: Optional[Dict]) -> Optional[str]:
    """sha1 over the fields that matter for plan validity."""
    if not isinstance(snapshot, dict):
        return None
    you = _side(snapshot, "you", "self")
    opp = _side(snapshot, "opponent", "enemy")
    hand = you.get("hand")
    opp_hand = opp.get("hand")
    self_units = snapshot.get("self_units")
    enemy_units = snapshot.get("enemy_units")
    picked = {
        "turn": snapshot.get("turn"),
        "you": {
            "hero_hp": you.get("hero_hp"),
            "mana": you.get("mana"),
            "hand": [{"id": c.get("card_id", c.get("id")), "name": c.get("name")}
                     for c in hand if isinstance(c, dict)] if isinstance(hand, list) else None,
        },
        "opponent": {
            "hero_hp": opp.get("hero_hp"),
            "hand_size": len(opp_hand) if isinstance(opp_hand, list) else None,
        },
        "self_units": [_unit_digest_row(u) for u in self_units] if isinstance(self_units, list) else None,
        "enemy_units": [_unit_digest_row(u) for u in enemy_units] if isinstance(enemy_units, list) else None,
    }
    try:
        encoded = json.dumps(picked, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return None
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


def build_baseline(snapshot: Optional[Dict]) -> Optional[PolicyBaseline]:
    if not isinstance(snapshot, dict):
        return None
    now = time.time()
    return PolicyBaseline(
        turn=_num(snapshot.get("turn")),
        summary=build_summary(snapshot),
        digest=snapshot_digest(snapshot) or f"{int(now * 1000)}",
        created_at=now,
    )


def policy_drift_exceeded(baseline: Optional[PolicyBaseline], snapshot: Optional[Dict]) -> bool:
    if baseline is None or not isinstance(snapshot, dict):
        return False
    cur = build_summary(snapshot)
    base = baseline.summary
    diff_units = abs(cur.my_units - base.my_units) + abs(cur.enemy_units - base.enemy_units)
    hp_delta = max(abs(cur.my_hp - base.my_hp), abs(cur.enemy_hp - base.enemy_hp))
    hand_delta = abs(cur.my_hand - base.my_hand)
    turn = snapshot.get("turn")
    turn_delta = abs(_num(turn) - baseline.turn) if turn is not None else 0
    if diff_units >= DRIFT_UNITS or hp_delta >= DRIFT_HP:
        return True
    if hand_delta >= DRIFT_HAND or turn_delta >= DRIFT_TURNS:
        return True
    digest = snapshot_digest(snapshot)
    if digest and digest != baseline.digest and (diff_units >= 1 or hp_delta >= DRIFT_DIGEST_HP):
        return True
    return False


@dataclass
class PlanStep:
    data: Dict
    status: str = STATUS_PENDING


@dataclass
class PolicyState:
    plan: Dict = field(default_factory=dict)
    steps: List[PlanStep] = field(default_factory=list)
    cursor: int = 0
    revision: int = 0
    baseline: Optional[PolicyBaseline] = None
    last_turn: Any = None
    digest: Optional[str] = None

    def adopt(self, plan: Dict, snapshot: Optional[Dict]) -> None:
        """Replace the current plan and capture a fresh baseline."""
        raw_steps = plan.get("steps") if isinstance(plan, dict) else None
        self.plan = plan if isinstance(plan, dict) else {}
        self.steps = [PlanStep(dict(s)) for s in raw_steps or [] if isinstance(s, dict)]
        self.cursor = 0
        self.revision += 1
        self.baseline = build_baseline(snapshot)
        self.digest = self.baseline.digest if self.baseline else None
        self.last_turn = snapshot.get("turn") if isinstance(snapshot, dict) else None
        logger.info(f"Policy plan revision {self.revision}: {len(self.steps)} step(s)")

    def needs_replan(self, snapshot: Optional[Dict]) -> bool:
        if not self.steps:
            return True
        turn = snapshot.get("turn") if isinstance(snapshot, dict) else None
        if turn != self.last_turn:
            return True
        return policy_drift_exceeded(self.baseline, snapshot)

    def take_pending(self) -> List[Dict]:
        """Return pending step dicts in order and mark them queued."""
        out = []
        for i, step in enumerate(self.steps):
            if step.status == STATUS_PENDING:
                step.status = STATUS_QUEUED
                out.append(step.data)
                self.cursor = i + 1
        return out

    def mark_executed(self, count: int) -> None:
        """Mark the first `count` queued steps executed."""
        for step in self.steps:
            if count <= 0:
                break
            if step.status == STATUS_QUEUED:
                step.status = STATUS_EXECUTED
                count -= 1
