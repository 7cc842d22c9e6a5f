"""Word hints for plan steps.

Planners often say where a card should land or where a unit should go in
words instead of cell indices:

  {"type": "play", "card": "Footman", "hint": "front left"}
  {"type": "play", "card": "Healer", "hint": "behind Knight"}
  {"type": "move", "unit": "Archer", "hint": "forward"}

The helpers here pick the best cell the live listing offers for such a hint.
"Forward" is the direction from our hero toward the enemy hero, so hints
keep their meaning on a flipped board.
"""
import logging
import math
from typing import Any, Collection, Dict, Optional, Sequence, Tuple

from companion.models import (
    ActionListing,
    Board,
    MoveAction,
    PlayCardAction,
    TacticalPreviewEntry,
    Unit,
    preview_lookup,
)

logger = logging.getLogger(__name__)

DEFAULT_PLAY_HINT = "mid center"
DEFAULT_MOVE_HINT = "forward"

FRONT_WORDS = ("offensive", "front", "forward", "attack")
BACK_WORDS = ("defensive", "back", "protect", "shield", "retreat")

# A move the tactical preview says enables an attack beats any direction
PREVIEW_ATTACK_BONUS = 100


def normalize_name(name: Any) -> str:
    return " ".join(str(name if name is not None else "").strip().lower().replace("_", " ").split())


def split_cell(cell: int, width: int) -> Tuple[int, int]:
    return cell // width, cell % width


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


def compute_forward(board: Board) -> Tuple[int, int]:
    """(drow, dcol) pointing from our hero toward the enemy hero.

    Falls back to (1, 0) when either hero cell is unknown.
    """
    if board.self_hero_cell is None or board.enemy_hero_cell is None:
        return 1, 0
    r1, c1 = split_cell(board.self_hero_cell, board.board_width)
    r2, c2 = split_cell(board.enemy_hero_cell, board.board_width)
    return _sign(r2 - r1) or 1, _sign(c2 - c1)


def _lane(text: str) -> Optional[str]:
    for lane in ("center", "left", "right"):
        if lane in text:
            return lane
    return None


def _region(text: str) -> Optional[str]:
    if any(w in text for w in FRONT_WORDS):
        return "front"
    if any(w in text for w in BACK_WORDS):
        return "back"
    if "mid" in text:
        return "mid"
    return None


def _behind_anchor(text: str, board: Board) -> Optional[Unit]:
    words = text.split()
    if "behind" not in words:
        return None
    name = " ".join(words[words.index("behind") + 1:])
    if not name:
        return None
    for unit in board.self_units:
        if unit.cell_index is not None and normalize_name(unit.name) == name:
            return unit
    return None


def score_play_cell(cell: int, hint: Any, board: Board) -> float:
    """Score a placement cell against a lane/region/"behind X" hint. Higher is better."""
    width = board.board_width
    row, col = split_cell(cell, width)
    text = normalize_name(hint)
    lane = _lane(text)
    region = _region(text)
    dr, dc = compute_forward(board)
    middle = width // 2

    score = 0.0
    if lane == "left" and col < middle:
        score += 2
    elif lane == "right" and col > middle:
        score += 2
    elif lane == "center" and abs(col - middle) <= 1:
        score += 2

    # How far the cell sits in front of our hero, roughly 0..1
    advance = 0.0
    if board.self_hero_cell is not None:
        hero_row, hero_col = split_cell(board.self_hero_cell, width)
        advance = ((row - hero_row) * dr + (col - hero_col) * dc) / max(1.0, math.hypot(width, width))
    if region == "front":
        score += max(0.0, advance)
    elif region == "back":
        score += max(0.0, 1 - max(0.0, advance))

    if lane is None:
        score += 0.5
    if region is None:
        score += 0.5

    anchor = _behind_anchor(text, board)
    if anchor is not None:
        anchor_row, anchor_col = split_cell(anchor.cell_index, width)
        distance = math.hypot(row - (anchor_row - dr), col - (anchor_col - dc))
        score += max(0.0, 2 - distance)
    return score


def _card_id(card: Dict) -> Optional[int]:
    for key in ("card_id", "id"):
        val = card.get(key)
        if isinstance(val, int) and not isinstance(val, bool):
            return val
    return None


def find_card_in_hand(board: Board, name: Any) -> Optional[int]:
    """card_id of the first hand card matching `name`, exact match first."""
    wanted = normalize_name(name)
    if not wanted:
        return None
    cards = [(card, normalize_name(card.get("name") or card.get("label"))) for card in board.hand]
    for card, card_name in cards:
        if card_name == wanted:
            return _card_id(card)
    for card, card_name in cards:
        if card_name and (wanted in card_name or card_name in wanted):
            return _card_id(card)
    return None


def pick_play_cell(card_id: int, hint: Any, board: Board, listing: ActionListing,
                   used: Collection[int] = ()) -> Optional[int]:
    """Best listed placement cell for `card_id` under `hint`.

    A cell already taken earlier in the same plan is swapped for the
    nearest free one. Returns None when the card has no listed placement.
    """
    cells = [
        a.cell_index for a in listing.actions
        if isinstance(a, PlayCardAction) and a.card_id == card_id and a.cell_index is not None
    ]
    if not cells:
        return None
    text = hint or DEFAULT_PLAY_HINT
    best = max(cells, key=lambda c: score_play_cell(c, text, board))
    if best in used:
        free = [c for c in cells if c not in used]
        if not free:
            logger.info(f"No free cell left for card {card_id}")
            return None
        best = min(free, key=lambda c: abs(c - best))
    return best


def pick_move_cell(unit_id: int, hint: Any, board: Board, listing: ActionListing,
                   hints: Sequence[TacticalPreviewEntry] = ()) -> Optional[int]:
    """Best listed destination for `unit_id` under a direction hint."""
    cells = [a.to_cell_index for a in listing.actions
             if isinstance(a, MoveAction) and a.unit_id == unit_id]
    unit = board.unit(unit_id)
    if not cells or unit is None or unit.cell_index is None:
        return None
    width = board.board_width
    text = normalize_name(hint or DEFAULT_MOVE_HINT)
    dr, dc = compute_forward(board)
    row, col = split_cell(unit.cell_index, width)

    def score(cell: int) -> float:
        to_row, to_col = split_cell(cell, width)
        advance = (to_row - row) * dr + (to_col - col) * dc
        if any(w in text for w in ("forward", "attack", "offensive")):
            s = advance * 10
        elif any(w in text for w in ("back", "defensive", "retreat")):
            s = -advance * 10
        elif "left" in text:
            s = (col - to_col) * 10
        elif "right" in text:
            s = (to_col - col) * 10
        else:
            s = 0
        if preview_lookup(hints, unit_id, cell) is not None:
            s += PREVIEW_ATTACK_BONUS
        return s

    return max(cells, key=score)
