"""Decision sources.

A decision source looks at the board, the live action listing and the
tactical preview and proposes abstract steps. propose() may be a plain
method or a coroutine; returning None or [] means "nothing to propose".

  HeuristicBot     rule-based, no external calls
  PlanFollowerBot  follows a plan produced by an external planner callable
                   and regenerates it when the board drifts
"""
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from companion.models import (
    ActionListing,
    AttackStep,
    Board,
    Destination,
    EndTurnAction,
    EndTurnStep,
    HeroPowerStep,
    MoveStep,
    PlayCardAction,
    PlayCardStep,
    Step,
    TacticalPreviewEntry,
    Unit,
    UnitAttackAction,
    step_destination,
    step_from_dict,
    step_kind,
)
from companion.pipeline import TargetPreference
from companion.placement import find_card_in_hand, normalize_name, pick_move_cell, pick_play_cell
from companion.policy_state import PolicyState

logger = logging.getLogger(__name__)

HERO_NAMES = ("hero", "enemy hero", "enemy_hero", "opponent hero")

# Enemy hero hp at or below which hero attacks are considered for lethal
HERO_LETHAL_HP = 10


class DecisionSource:
    """Base class for decision sources."""

    name = "base"

    def propose(self, board: Board, listing: ActionListing,
                hints: Sequence[TacticalPreviewEntry]) -> Optional[List[Step]]:
        raise NotImplementedError

    def target_preference(self, board: Board) -> Optional[TargetPreference]:
        """Optional tie-breaker the pipeline uses when it has to pick a target."""
        return None

    def on_result(self, succeeded: int) -> None:
        """Called with the number of applied steps after each batch result."""


# ---------------------------------------------------------------------------
# Target scoring
# ---------------------------------------------------------------------------

def _atk(unit: Optional[Unit]) -> int:
    return unit.atk if unit is not None and unit.atk is not None else 0


def _hp(unit: Optional[Unit]) -> int:
    return unit.hp if unit is not None and unit.hp is not None else 0


def score_target(board: Board, attacker_unit_id: int, target_unit_id: Optional[int]) -> float:
    """Higher is better. Kills dominate, then threat, then low remaining hp."""
    attacker = board.unit(attacker_unit_id)
    if target_unit_id is None:
        enemy_hp = board.enemy_hero_hp
        if enemy_hp is not None and _atk(attacker) >= enemy_hp:
            return 1000.0
        return 5.0
    target = board.unit(target_unit_id)
    if target is None:
        return 0.0
    score = 10.0 + _atk(target) * 2 - _hp(target) * 0.5
    if _atk(attacker) >= _hp(target) > 0:
        score += 40.0
    return score


def is_suicide_attack(board: Board, attacker_unit_id: int, target_unit_id: Optional[int]) -> bool:
    """Attacker dies to the counter-attack and the target survives."""
    if target_unit_id is None:
        return False
    attacker = board.unit(attacker_unit_id)
    target = board.unit(target_unit_id)
    if attacker is None or target is None:
        return False
    return _atk(target) >= _hp(attacker) > 0 and _atk(attacker) < _hp(target)


# ---------------------------------------------------------------------------
# Heuristic bot
# ---------------------------------------------------------------------------

class HeuristicBot(DecisionSource):
    """Fast rule-based decisions.

    Priority: only-end-turn, hero lethal, killing attacks, move-then-attack
    from the preview (kills first), remaining non-suicidal attacks, one
    playable card, hero power, and finally end turn.
    """

    name = "heuristic"

    def propose(self, board: Board, listing: ActionListing,
                hints: Sequence[TacticalPreviewEntry]) -> Optional[List[Step]]:
        if not len(listing):
            return None
        if all(isinstance(a, EndTurnAction) for a in listing.actions):
            return [EndTurnStep()]

        lethal = self._hero_lethal(board, listing)
        if lethal:
            return lethal

        steps: List[Step] = []
        used_attackers = set()

        # Killing attacks, best target per attacker
        for attacker_id in _attackers(listing):
            best = None
            for action in listing.attacks_for(attacker_id):
                target = board.unit(action.target_unit_id)
                if action.target_unit_id is None or target is None:
                    continue
                if _atk(board.unit(attacker_id)) >= _hp(target) > 0:
                    if best is None or score_target(board, attacker_id, action.target_unit_id) > \
                            score_target(board, attacker_id, best.target_unit_id):
                        best = action
            if best is not None:
                steps.append(AttackStep(attacker_id, best.target_unit_id, urgent=True))
                used_attackers.add(attacker_id)

        # Move-then-attack opportunities from the preview
        for entry in self._ranked_preview(board, listing, hints):
            if entry.unit_id in used_attackers or listing.attacks_for(entry.unit_id):
                continue
            steps.append(MoveStep(entry.unit_id, Destination.cell(entry.to_cell_index)))
            used_attackers.add(entry.unit_id)

        # Remaining attacks
        for attacker_id in _attackers(listing):
            if attacker_id in used_attackers:
                continue
            candidates = [a.target_unit_id for a in listing.attacks_for(attacker_id)
                          if not is_suicide_attack(board, attacker_id, a.target_unit_id)]
            if not candidates:
                continue
            target = max(candidates, key=lambda t: score_target(board, attacker_id, t))
            steps.append(AttackStep(attacker_id, target))
            used_attackers.add(attacker_id)

        play = next((a for a in listing.actions if isinstance(a, PlayCardAction)), None)
        if play is not None:
            steps.append(PlayCardStep(play.card_id, play.cell_index))

        if listing.hero_power() is not None:
            steps.append(HeroPowerStep(listing.hero_power().target_unit_id))

        if not steps and listing.end_turn() is not None:
            steps.append(EndTurnStep())
        return steps or None

    def _hero_lethal(self, board: Board, listing: ActionListing) -> Optional[List[Step]]:
        enemy_hp = board.enemy_hero_hp
        if enemy_hp is None or enemy_hp > HERO_LETHAL_HP:
            return None
        hero_attacks = [a for a in listing.actions
                        if isinstance(a, UnitAttackAction) and a.target_unit_id is None]
        total = sum(_atk(board.unit(a.attacker_unit_id)) for a in hero_attacks)
        if not hero_attacks or total < enemy_hp:
            return None
        logger.info(f"Hero lethal: {total} damage available vs {enemy_hp} hp")
        return [AttackStep(a.attacker_unit_id, None, urgent=True) for a in hero_attacks]

    @staticmethod
    def _ranked_preview(board: Board, listing: ActionListing,
                        hints: Sequence[TacticalPreviewEntry]) -> List[TacticalPreviewEntry]:
        """Preview entries whose move is legal now, kills first, one per unit."""
        legal = [e for e in hints if e.attacks and listing.find_move(e.unit_id, e.to_cell_index)]

        def rank(entry: TacticalPreviewEntry) -> float:
            kills = any(a.expected_kill for a in entry.attacks)
            best = max(score_target(board, entry.unit_id, a.target_unit_id) for a in entry.attacks)
            return (100.0 if kills else 0.0) + best

        out: List[TacticalPreviewEntry] = []
        seen = set()
        for entry in sorted(legal, key=rank, reverse=True):
            if entry.unit_id in seen:
                continue
            seen.add(entry.unit_id)
            out.append(entry)
        return out

    def target_preference(self, board: Board) -> Optional[TargetPreference]:
        def prefer(attacker_unit_id: int, candidates: List[Optional[int]]) -> Optional[int]:
            return max(candidates, key=lambda t: score_target(board, attacker_unit_id, t))
        return prefer


def _attackers(listing: ActionListing) -> List[int]:
    out = []
    for a in listing.actions:
        if isinstance(a, UnitAttackAction) and a.attacker_unit_id not in out:
            out.append(a.attacker_unit_id)
    return out


# ---------------------------------------------------------------------------
# Plan follower
# ---------------------------------------------------------------------------

def resolve_unit_ref(ref: Any, units: Sequence[Unit]) -> Optional[int]:
    """Resolve a unit reference by id, name, or "Name#N" label (1-based)."""
    if isinstance(ref, int) and not isinstance(ref, bool):
        return ref
    if not isinstance(ref, str) or not ref.strip():
        return None
    text = ref.strip()
    if text.isdigit():
        return int(text)
    index = 1
    if "#" in text:
        base, _, suffix = text.rpartition("#")
        if suffix.isdigit():
            text, index = base, int(suffix)
    wanted = normalize_name(text)
    matches = [u for u in units if normalize_name(u.name) == wanted]
    if not matches:
        matches = [u for u in units if wanted and wanted in normalize_name(u.name)]
    if len(matches) >= index:
        return matches[index - 1].unit_id
    return None


def resolve_card_ref(ref: Any, board: Board) -> Optional[int]:
    """Resolve a card reference by id or by the name of a card in hand."""
    if isinstance(ref, int) and not isinstance(ref, bool):
        return ref
    if isinstance(ref, str) and ref.strip().isdigit():
        return int(ref.strip())
    return find_card_in_hand(board, ref)


def resolve_step_refs(data: Dict, board: Board, listing: Optional[ActionListing] = None,
                      hints: Sequence[TacticalPreviewEntry] = (),
                      used_cells: Optional[Set[int]] = None) -> Optional[Dict]:
    """Rewrite name-based references in a plan step into numeric ids and cells.

    Card names are looked up in hand. With a listing, a play step without a
    cell gets one picked from its "hint" (or "position"), and a move step
    without a destination gets one from its direction hint. Cells picked for
    plays are added to `used_cells` so later plays in the same plan avoid
    them. Returns None when a reference cannot be resolved.
    """
    out = dict(data)
    for key in ("unit_id", "unit", "attacker_unit_id", "attacker"):
        if key in out and not isinstance(out[key], int):
            resolved = resolve_unit_ref(out[key], board.self_units)
            if resolved is None:
                logger.info(f"Unresolved unit reference {out[key]!r}")
                return None
            out[key] = resolved
    for key in ("target_unit_id", "target"):
        if key not in out or isinstance(out[key], int) or out[key] is None:
            continue
        if normalize_name(out[key]) in HERO_NAMES:
            out[key] = None
            continue
        resolved = resolve_unit_ref(out[key], board.enemy_units)
        if resolved is None:
            logger.info(f"Unresolved target reference {out[key]!r}")
            return None
        out[key] = resolved

    kind = step_kind(out)
    if kind == "play_card":
        return _resolve_play(out, board, listing, used_cells)
    if kind == "move" and listing is not None and step_destination(out) is None:
        unit_id = out.get("unit_id", out.get("unit"))
        if not isinstance(unit_id, int):
            return None
        cell = pick_move_cell(unit_id, out.get("hint"), board, listing, hints)
        if cell is None:
            logger.info(f"No listed move for unit {unit_id} matching hint {out.get('hint')!r}")
            return None
        out["to_cell_index"] = cell
    return out


def _resolve_play(out: Dict, board: Board, listing: Optional[ActionListing],
                  used_cells: Optional[Set[int]]) -> Optional[Dict]:
    ref = None
    for key in ("card_id", "card", "card_name"):
        if out.get(key) is not None:
            ref = out.pop(key)
            break
    card_id = resolve_card_ref(ref, board)
    if card_id is None:
        logger.info(f"Card {ref!r} not found in hand")
        return None
    out["card_id"] = card_id

    if listing is None or step_destination(out) is not None:
        return out
    cell = pick_play_cell(card_id, out.get("hint") or out.get("position"), board, listing,
                          used_cells if used_cells is not None else ())
    if cell is not None:
        out["cell_index"] = cell
        if used_cells is not None:
            used_cells.add(cell)
    return out


Planner = Callable[[Board, ActionListing, Sequence[TacticalPreviewEntry]], Any]


class PlanFollowerBot(DecisionSource):
    """Follows a multi-step plan from an external planner.

    The planner returns {"steps": [step dicts...]} (sync or async). The plan
    is regenerated on a new turn or when the board drifts from the baseline
    captured at planning time. Each step is emitted once.
    """

    name = "plan"

    def __init__(self, planner: Planner, fallback: Optional[DecisionSource] = None):
        self.planner = planner
        self.fallback = fallback
        self.policy = PolicyState()

    async def propose(self, board: Board, listing: ActionListing,
                      hints: Sequence[TacticalPreviewEntry]) -> Optional[List[Step]]:
        if self.policy.needs_replan(board.raw):
            plan = self.planner(board, listing, hints)
            if inspect.isawaitable(plan):
                plan = await plan
            if not isinstance(plan, dict):
                logger.warning(f"Planner returned {type(plan).__name__}, expected dict")
                return await self._fallback(board, listing, hints)
            self.policy.adopt(plan, board.raw)

        steps: List[Step] = []
        used_cells: Set[int] = set()
        for data in self.policy.take_pending():
            resolved = resolve_step_refs(data, board, listing, hints, used_cells)
            step = step_from_dict(resolved) if resolved is not None else None
            if step is None:
                logger.info(f"Skipping plan step {data!r}")
                continue
            steps.append(step)
        if not steps:
            return await self._fallback(board, listing, hints)
        return steps

    async def _fallback(self, board: Board, listing: ActionListing,
                        hints: Sequence[TacticalPreviewEntry]) -> Optional[List[Step]]:
        if self.fallback is None:
            return None
        result = self.fallback.propose(board, listing, hints)
        if inspect.isawaitable(result):
            result = await result
        return result

    def on_result(self, succeeded: int) -> None:
        self.policy.mark_executed(succeeded)

    def target_preference(self, board: Board) -> Optional[TargetPreference]:
        if self.fallback is not None:
            return self.fallback.target_preference(board)
        return None
