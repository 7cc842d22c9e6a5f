"""Plan augmentation and validation.

process() is a pure function applied to accumulated steps right before
submission. Stages, strictly in order:

  1. augment       bare move + preview hint -> move_then_attack
  2. identifiers   copy stable instance ids from the board onto references
  3. normalize     every destination becomes a canonical cell index
  4. dedupe        one move per unit per turn, one hero power per turn
  5. merge         move ... attack on the same unit -> move_then_attack
  6. validate      attack pairs must be legal in the current listing

Ordering is preserved except for merges, which collapse into the position
of the move. process(process(x)) == process(x).
"""
import logging
from dataclasses import replace
from typing import Callable, Iterable, List, Optional, Sequence, Set

from companion.models import (
    Action,
    ActionListing,
    AttackStep,
    Board,
    Destination,
    EndTurnAction,
    EndTurnStep,
    HeroPowerAction,
    HeroPowerStep,
    MoveAction,
    MoveStep,
    MoveThenAttackAction,
    MoveThenAttackStep,
    PlayCardAction,
    PlayCardStep,
    Step,
    TacticalPreviewEntry,
    UnitAttackAction,
    preview_lookup,
    step_from_dict,
)
from companion.turn_state import TurnState

logger = logging.getLogger(__name__)

# (attacker_unit_id, candidate targets) -> chosen target; None targets mean the hero
TargetPreference = Callable[[int, List[Optional[int]]], Optional[int]]


def pick_target(attacker_unit_id: int, candidates: Sequence[Optional[int]],
                prefer: Optional[TargetPreference] = None) -> Optional[int]:
    """Choose among non-empty candidates: caller preference if it names one, else first."""
    candidates = list(candidates)
    if prefer is not None:
        try:
            choice = prefer(attacker_unit_id, candidates)
        except Exception as e:
            logger.warning(f"Target preference failed for unit {attacker_unit_id}: {e}")
        else:
            if choice in candidates:
                return choice
    return candidates[0]


def process(steps: Iterable, board: Board, listing: ActionListing,
            hints: Sequence[TacticalPreviewEntry], turn_state: TurnState,
            target_preference: Optional[TargetPreference] = None) -> List[Step]:
    """Run all pipeline stages over `steps` and return the submittable list."""
    parsed = _coerce(steps)
    out = _augment(parsed, board, hints, target_preference)
    out = _attach_identifiers(out, board)
    out = _normalize(out, board)
    out = _dedupe(out, turn_state)
    out = _merge(out)
    out = _validate_attacks(out, board, listing, target_preference)
    if len(out) != len(parsed) or out != parsed:
        logger.debug(f"Pipeline: {len(parsed)} step(s) in, {len(out)} out")
    return out


def _coerce(steps: Iterable) -> List[Step]:
    out = []
    for raw in steps or []:
        step = step_from_dict(raw)
        if step is None:
            logger.warning(f"Dropping unrecognised step: {raw!r}")
            continue
        out.append(step)
    return out


# ---------------------------------------------------------------------------
# Stage 1: augment
# ---------------------------------------------------------------------------

def _augment(steps: List[Step], board: Board, hints: Sequence[TacticalPreviewEntry],
             prefer: Optional[TargetPreference]) -> List[Step]:
    out: List[Step] = []
    for step in steps:
        if not isinstance(step, MoveStep):
            out.append(step)
            continue
        cell = step.to.resolve(board.board_width)
        entry = preview_lookup(hints, step.unit_id, cell) if cell is not None else None
        if entry is None:
            if board.is_hero(step.unit_id):
                logger.debug(f"Dropping hero move {step.unit_id}: enables no attack")
                continue
            out.append(step)
            continue
        target = pick_target(step.unit_id, [a.target_unit_id for a in entry.attacks], prefer)
        out.append(MoveThenAttackStep(
            unit_id=step.unit_id,
            to=step.to,
            target_unit_id=target,
            unit_instance_id=step.unit_instance_id,
            urgent=step.urgent,
        ))
    return out


# ---------------------------------------------------------------------------
# Stage 2: stable identifiers
# ---------------------------------------------------------------------------

def _attach_identifiers(steps: List[Step], board: Board) -> List[Step]:
    out: List[Step] = []
    for step in steps:
        if isinstance(step, MoveStep):
            if step.unit_instance_id is None:
                step = replace(step, unit_instance_id=board.instance_id(step.unit_id))
        elif isinstance(step, AttackStep):
            step = replace(
                step,
                attacker_instance_id=step.attacker_instance_id or board.instance_id(step.attacker_unit_id),
                target_instance_id=step.target_instance_id or board.instance_id(step.target_unit_id),
            )
        elif isinstance(step, MoveThenAttackStep):
            step = replace(
                step,
                unit_instance_id=step.unit_instance_id or board.instance_id(step.unit_id),
                target_instance_id=step.target_instance_id or board.instance_id(step.target_unit_id),
            )
        out.append(step)
    return out


# ---------------------------------------------------------------------------
# Stage 3: normalize destinations
# ---------------------------------------------------------------------------

def _normalize(steps: List[Step], board: Board) -> List[Step]:
    out: List[Step] = []
    for step in steps:
        if isinstance(step, (MoveStep, MoveThenAttackStep)) and not step.to.is_canonical:
            cell = step.to.resolve(board.board_width)
            if cell is None:
                logger.warning(f"Dropping step with unresolvable destination: {step}")
                continue
            step = replace(step, to=Destination.cell(cell))
        out.append(step)
    return out


# ---------------------------------------------------------------------------
# Stage 4: per-turn dedupe
# ---------------------------------------------------------------------------

def _dedupe(steps: List[Step], turn_state: TurnState) -> List[Step]:
    moved: Set[int] = set(turn_state.moved_units)
    hero_power_seen = turn_state.hero_power_used
    out: List[Step] = []
    for step in steps:
        if isinstance(step, MoveStep):
            if step.unit_id in moved:
                logger.debug(f"Dropping repeat move for unit {step.unit_id}")
                continue
            moved.add(step.unit_id)
        elif isinstance(step, MoveThenAttackStep):
            if step.unit_id in moved:
                step = AttackStep(
                    attacker_unit_id=step.unit_id,
                    target_unit_id=step.target_unit_id,
                    attacker_instance_id=step.unit_instance_id,
                    target_instance_id=step.target_instance_id,
                    urgent=step.urgent,
                )
            else:
                moved.add(step.unit_id)
        elif isinstance(step, HeroPowerStep):
            if hero_power_seen:
                continue
            hero_power_seen = True
        out.append(step)
    return out


# ---------------------------------------------------------------------------
# Stage 5: merge move + attack
# ---------------------------------------------------------------------------

def _merge(steps: List[Step]) -> List[Step]:
    out: List[Optional[Step]] = list(steps)
    for i, step in enumerate(out):
        if not isinstance(step, MoveStep):
            continue
        for j in range(i + 1, len(out)):
            later = out[j]
            if isinstance(later, AttackStep) and later.attacker_unit_id == step.unit_id:
                out[i] = MoveThenAttackStep(
                    unit_id=step.unit_id,
                    to=step.to,
                    target_unit_id=later.target_unit_id,
                    unit_instance_id=step.unit_instance_id or later.attacker_instance_id,
                    target_instance_id=later.target_instance_id,
                    urgent=step.urgent or later.urgent,
                )
                out[j] = None
                break
    return [s for s in out if s is not None]


# ---------------------------------------------------------------------------
# Stage 6: validate attack pairs
# ---------------------------------------------------------------------------

def _validate_attacks(steps: List[Step], board: Board, listing: ActionListing,
                      prefer: Optional[TargetPreference]) -> List[Step]:
    out: List[Step] = []
    for step in steps:
        if isinstance(step, AttackStep):
            attacker = step.attacker_unit_id
        elif isinstance(step, MoveThenAttackStep):
            attacker = step.unit_id
        else:
            out.append(step)
            continue

        legal = listing.legal_targets(attacker)
        if step.target_unit_id in legal:
            out.append(step)
            continue

        if legal:
            target = pick_target(attacker, legal, prefer)
            logger.info(f"Attack {attacker} -> {step.target_unit_id} not legal, using {target}")
            out.append(replace(step, target_unit_id=target,
                               target_instance_id=board.instance_id(target)))
            continue

        if isinstance(step, MoveThenAttackStep) and board.is_hero(attacker):
            logger.info(f"Dropping hero move {attacker}: no legal target after it")
        elif isinstance(step, MoveThenAttackStep):
            logger.info(f"No legal target for unit {attacker}, keeping the move only")
            out.append(MoveStep(
                unit_id=step.unit_id,
                to=step.to,
                unit_instance_id=step.unit_instance_id,
                urgent=step.urgent,
            ))
        else:
            logger.info(f"Dropping attack by {attacker}: no legal target")
    return out


# ---------------------------------------------------------------------------
# Id resolution
# ---------------------------------------------------------------------------

def _candidates(step: Step, listing: ActionListing) -> List[Action]:
    if isinstance(step, PlayCardStep):
        return [a for a in listing.actions
                if isinstance(a, PlayCardAction) and a.card_id == step.card_id
                and (step.cell_index is None or a.cell_index == step.cell_index)]
    if isinstance(step, MoveStep):
        return [a for a in listing.actions
                if isinstance(a, MoveAction) and a.unit_id == step.unit_id
                and a.to_cell_index == step.to.cell_index]
    if isinstance(step, AttackStep):
        return [a for a in listing.actions
                if isinstance(a, UnitAttackAction) and a.attacker_unit_id == step.attacker_unit_id
                and a.target_unit_id == step.target_unit_id]
    if isinstance(step, MoveThenAttackStep):
        return [a for a in listing.actions
                if isinstance(a, MoveThenAttackAction) and a.unit_id == step.unit_id
                and a.to_cell_index == step.to.cell_index
                and a.target_unit_id == step.target_unit_id]
    if isinstance(step, HeroPowerStep):
        return [a for a in listing.actions
                if isinstance(a, HeroPowerAction)
                and (step.target_unit_id is None or a.target_unit_id == step.target_unit_id)]
    if isinstance(step, EndTurnStep):
        return [a for a in listing.actions if isinstance(a, EndTurnAction)]
    return []


def resolve_action_id(step: Step, listing: ActionListing,
                      exclude: Optional[Set[int]] = None) -> Optional[int]:
    exclude = exclude or set()
    for action in _candidates(step, listing):
        if action.id not in exclude:
            return action.id
    return None


def resolve_action_ids(steps: Sequence[Step], listing: ActionListing) -> Optional[List[int]]:
    """Map every step to a distinct legal action id, or None if any step has none."""
    used: Set[int] = set()
    ids = []
    for step in steps:
        action_id = resolve_action_id(step, listing, used)
        if action_id is None:
            return None
        used.add(action_id)
        ids.append(action_id)
    return ids


def find_end_turn(listing: Optional[ActionListing]) -> Optional[int]:
    if listing is None:
        return None
    action = listing.end_turn()
    return action.id if action is not None else None
