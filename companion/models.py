"""Typed actions, steps and tactical hints.

Actions are issued by the game client in an `available_actions` listing and
are only valid for the listing generation that carried them. Steps are the
abstract decisions produced by decision sources; they carry no id and are
resolved against the live listing at submission time.

Wire shapes handled here:
  {"id": 7, "play_card": {"card_id": 3, "cell_index": 40}}
  {"id": 8, "move_unit": {"unit_id": 5, "to_cell_index": 12}}
  {"id": 9, "unit_attack": {"attacker_unit_id": 5, "target_unit_id": 9}}
  {"id": 10, "hero_power": {...}}
  {"id": 11, "end_turn": true}
  {"id": 12, "move_then_attack": {"unit_id": 5, "to_cell_index": 12, "target_unit_id": 9}}
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

logger = logging.getLogger(__name__)


def _as_int(value: Any) -> Optional[int]:
    """Coerce ints and numeric strings, reject bools/floats with fractions/garbage."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _first_int(data: Dict, *keys: str) -> Optional[int]:
    for key in keys:
        if key in data:
            val = _as_int(data.get(key))
            if val is not None:
                return val
    return None


# ---------------------------------------------------------------------------
# Actions (issued by the client, one listing generation only)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlayCardAction:
    id: int
    card_id: int
    cell_index: Optional[int] = None


@dataclass(frozen=True)
class MoveAction:
    id: int
    unit_id: int
    to_cell_index: int


@dataclass(frozen=True)
class UnitAttackAction:
    id: int
    attacker_unit_id: int
    target_unit_id: Optional[int] = None  # None = enemy hero


@dataclass(frozen=True)
class HeroPowerAction:
    id: int
    target_unit_id: Optional[int] = None


@dataclass(frozen=True)
class EndTurnAction:
    id: int


@dataclass(frozen=True)
class MoveThenAttackAction:
    """Compound listing entry some clients publish alongside plain moves."""
    id: int
    unit_id: int
    to_cell_index: int
    target_unit_id: Optional[int] = None


Action = Union[
    PlayCardAction,
    MoveAction,
    UnitAttackAction,
    HeroPowerAction,
    EndTurnAction,
    MoveThenAttackAction,
]


def parse_action(raw: Any) -> Optional[Action]:
    """Parse one wire action. Returns None for unknown shapes or invalid ids."""
    if not isinstance(raw, dict):
        return None
    action_id = _as_int(raw.get("id"))
    if action_id is None or action_id <= 0:
        return None

    play = raw.get("play_card")
    if isinstance(play, dict):
        card_id = _first_int(play, "card_id", "id")
        if card_id is None:
            return None
        return PlayCardAction(action_id, card_id, _first_int(play, "cell_index", "to_cell_index"))

    move = raw.get("move_unit")
    if isinstance(move, dict):
        unit_id = _first_int(move, "unit_id")
        to_cell = _first_int(move, "to_cell_index", "cell_index")
        if unit_id is None or to_cell is None:
            return None
        return MoveAction(action_id, unit_id, to_cell)

    attack = raw.get("unit_attack")
    if isinstance(attack, dict):
        attacker = _first_int(attack, "attacker_unit_id", "unit_id")
        if attacker is None:
            return None
        return UnitAttackAction(action_id, attacker, _first_int(attack, "target_unit_id"))

    combo = raw.get("move_then_attack")
    if isinstance(combo, dict):
        unit_id = _first_int(combo, "unit_id", "attacker_unit_id")
        to_cell = _first_int(combo, "to_cell_index", "cell_index")
        if unit_id is None or to_cell is None:
            return None
        return MoveThenAttackAction(action_id, unit_id, to_cell, _first_int(combo, "target_unit_id"))

    power = raw.get("hero_power")
    if power:
        target = _first_int(power, "target_unit_id") if isinstance(power, dict) else None
        return HeroPowerAction(action_id, target)

    if raw.get("end_turn"):
        return EndTurnAction(action_id)

    return None


@dataclass
class ActionListing:
    """One `available_actions` message, stamped with its arrival generation."""
    actions: List[Action] = field(default_factory=list)
    generation: int = 0
    received_at: float = 0.0

    @classmethod
    def from_raw(cls, raw_actions: Iterable[Any], generation: int = 0,
                 received_at: float = 0.0) -> "ActionListing":
        actions = []
        skipped = 0
        for raw in raw_actions or []:
            action = parse_action(raw)
            if action is None:
                skipped += 1
                continue
            actions.append(action)
        if skipped:
            logger.debug(f"Skipped {skipped} unrecognised action entries")
        return cls(actions=actions, generation=generation, received_at=received_at)

    def __len__(self) -> int:
        return len(self.actions)

    def ids(self) -> Set[int]:
        return {a.id for a in self.actions}

    def by_id(self, action_id: int) -> Optional[Action]:
        for a in self.actions:
            if a.id == action_id:
                return a
        return None

    def end_turn(self) -> Optional[EndTurnAction]:
        for a in self.actions:
            if isinstance(a, EndTurnAction):
                return a
        return None

    def hero_power(self) -> Optional[HeroPowerAction]:
        for a in self.actions:
            if isinstance(a, HeroPowerAction):
                return a
        return None

    def attacks_for(self, attacker_unit_id: int) -> List[UnitAttackAction]:
        return [
            a for a in self.actions
            if isinstance(a, UnitAttackAction) and a.attacker_unit_id == attacker_unit_id
        ]

    def find_attack(self, attacker_unit_id: int,
                    target_unit_id: Optional[int]) -> Optional[UnitAttackAction]:
        for a in self.attacks_for(attacker_unit_id):
            if a.target_unit_id == target_unit_id:
                return a
        return None

    def find_move(self, unit_id: int, to_cell_index: int) -> Optional[MoveAction]:
        for a in self.actions:
            if isinstance(a, MoveAction) and a.unit_id == unit_id and a.to_cell_index == to_cell_index:
                return a
        return None

    def find_play(self, card_id: int, cell_index: Optional[int]) -> Optional[PlayCardAction]:
        for a in self.actions:
            if not isinstance(a, PlayCardAction) or a.card_id != card_id:
                continue
            if cell_index is None or a.cell_index == cell_index:
                return a
        return None

    def legal_targets(self, attacker_unit_id: int) -> List[Optional[int]]:
        """Targets the attacker may hit right now, in listing order, without duplicates."""
        targets: List[Optional[int]] = []
        for a in self.actions:
            if isinstance(a, UnitAttackAction) and a.attacker_unit_id == attacker_unit_id:
                tgt = a.target_unit_id
            elif isinstance(a, MoveThenAttackAction) and a.unit_id == attacker_unit_id:
                tgt = a.target_unit_id
            else:
                continue
            if tgt not in targets:
                targets.append(tgt)
        return targets

    def is_legal_attack(self, attacker_unit_id: int, target_unit_id: Optional[int]) -> bool:
        return target_unit_id in self.legal_targets(attacker_unit_id)

    def actor_ids(self) -> List[int]:
        """Ids of units acting in this listing (movers and attackers)."""
        ids = []
        for a in self.actions:
            if isinstance(a, MoveAction):
                ids.append(a.unit_id)
            elif isinstance(a, UnitAttackAction):
                ids.append(a.attacker_unit_id)
            elif isinstance(a, MoveThenAttackAction):
                ids.append(a.unit_id)
        return ids


# ---------------------------------------------------------------------------
# Steps (abstract decisions, resolved at submission time)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Destination:
    """Destination cell in one of the shapes decision sources produce.

    Canonical form carries only cell_index. Row/column pairs are converted
    with the board width during normalisation.
    """
    cell_index: Optional[int] = None
    row: Optional[int] = None
    col: Optional[int] = None

    @classmethod
    def cell(cls, cell_index: int) -> "Destination":
        return cls(cell_index=cell_index)

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["Destination"]:
        if isinstance(raw, Destination):
            return raw
        as_int = _as_int(raw)
        if as_int is not None:
            return cls(cell_index=as_int)
        if isinstance(raw, dict):
            cell = _first_int(raw, "cell_index", "to_cell_index", "cell", "index")
            if cell is not None:
                return cls(cell_index=cell)
            row = _first_int(raw, "row", "y")
            col = _first_int(raw, "col", "column", "x")
            if row is not None and col is not None:
                return cls(row=row, col=col)
        if isinstance(raw, (list, tuple)) and len(raw) == 2:
            row, col = _as_int(raw[0]), _as_int(raw[1])
            if row is not None and col is not None:
                return cls(row=row, col=col)
        return None

    @property
    def is_canonical(self) -> bool:
        return self.cell_index is not None and self.row is None and self.col is None

    def resolve(self, board_width: int) -> Optional[int]:
        if self.cell_index is not None:
            return self.cell_index
        if self.row is None or self.col is None or board_width <= 0:
            return None
        if self.row < 0 or self.col < 0 or self.col >= board_width:
            return None
        return self.row * board_width + self.col


@dataclass(frozen=True)
class PlayCardStep:
    card_id: int
    cell_index: Optional[int] = None
    urgent: bool = field(default=False, compare=False)

    def to_wire(self) -> Dict:
        step: Dict[str, Any] = {"type": "play_card", "card_id": self.card_id}
        if self.cell_index is not None:
            step["to"] = {"cell_index": self.cell_index}
        return step


@dataclass(frozen=True)
class MoveStep:
    unit_id: int
    to: Destination
    unit_instance_id: Optional[str] = None
    urgent: bool = field(default=False, compare=False)

    def to_wire(self) -> Dict:
        step: Dict[str, Any] = {
            "type": "move",
            "unit_id": self.unit_id,
            "to": {"cell_index": self.to.cell_index},
        }
        if self.unit_instance_id is not None:
            step["unit_instance_id"] = self.unit_instance_id
        return step


@dataclass(frozen=True)
class AttackStep:
    attacker_unit_id: int
    target_unit_id: Optional[int] = None  # None = enemy hero
    attacker_instance_id: Optional[str] = None
    target_instance_id: Optional[str] = None
    urgent: bool = field(default=False, compare=False)

    def to_wire(self) -> Dict:
        step: Dict[str, Any] = {
            "type": "unit_attack",
            "attacker_unit_id": self.attacker_unit_id,
            "target_unit_id": self.target_unit_id,
        }
        if self.attacker_instance_id is not None:
            step["attacker_instance_id"] = self.attacker_instance_id
        if self.target_instance_id is not None:
            step["target_instance_id"] = self.target_instance_id
        return step


@dataclass(frozen=True)
class MoveThenAttackStep:
    unit_id: int
    to: Destination
    target_unit_id: Optional[int] = None
    unit_instance_id: Optional[str] = None
    target_instance_id: Optional[str] = None
    urgent: bool = field(default=False, compare=False)

    def to_wire(self) -> Dict:
        step: Dict[str, Any] = {
            "type": "move_then_attack",
            "unit_id": self.unit_id,
            "to": {"cell_index": self.to.cell_index},
            "target_unit_id": self.target_unit_id,
        }
        if self.unit_instance_id is not None:
            step["unit_instance_id"] = self.unit_instance_id
        if self.target_instance_id is not None:
            step["target_instance_id"] = self.target_instance_id
        return step


@dataclass(frozen=True)
class HeroPowerStep:
    target_unit_id: Optional[int] = None
    urgent: bool = field(default=False, compare=False)

    def to_wire(self) -> Dict:
        step: Dict[str, Any] = {"type": "hero_power"}
        if self.target_unit_id is not None:
            step["target_unit_id"] = self.target_unit_id
        return step


@dataclass(frozen=True)
class EndTurnStep:
    urgent: bool = field(default=False, compare=False)

    def to_wire(self) -> Dict:
        return {"type": "end_turn"}


Step = Union[
    PlayCardStep,
    MoveStep,
    AttackStep,
    MoveThenAttackStep,
    HeroPowerStep,
    EndTurnStep,
]

STEP_TYPES = (PlayCardStep, MoveStep, AttackStep, MoveThenAttackStep, HeroPowerStep, EndTurnStep)

_STEP_ALIASES = {
    "play": "play_card",
    "play_card": "play_card",
    "summon": "play_card",
    "move": "move",
    "move_unit": "move",
    "reposition": "move",
    "attack": "attack",
    "unit_attack": "attack",
    "move_then_attack": "move_then_attack",
    "move_attack": "move_then_attack",
    "advance_and_attack": "move_then_attack",
    "hero_power": "hero_power",
    "power": "hero_power",
    "end_turn": "end_turn",
    "end": "end_turn",
}


def step_kind(raw: Dict) -> Optional[str]:
    """Canonical kind ("play_card", "move", ...) of a raw step dict."""
    return _STEP_ALIASES.get(str(raw.get("type", "")).strip().lower())


def step_destination(raw: Dict) -> Optional[Destination]:
    for key in ("to", "destination", "to_cell"):
        if key in raw:
            dest = Destination.from_raw(raw.get(key))
            if dest is not None:
                return dest
    cell = _first_int(raw, "to_cell_index", "cell_index")
    if cell is not None:
        return Destination.cell(cell)
    row = _first_int(raw, "to_row", "row")
    col = _first_int(raw, "to_col", "col")
    if row is not None and col is not None:
        return Destination(row=row, col=col)
    return None


def _instance(raw: Dict, *keys: str) -> Optional[str]:
    for key in keys:
        val = raw.get(key)
        if val is not None and val != "":
            return str(val)
    return None


def step_from_dict(raw: Any) -> Optional[Step]:
    """Parse a step dict in any of the shapes decision sources emit.

    Unit references must be numeric ids here; name resolution belongs to the
    decision source. Returns None for shapes that cannot be understood.
    """
    if isinstance(raw, STEP_TYPES):
        return raw
    if not isinstance(raw, dict):
        return None
    kind = step_kind(raw)
    urgent = bool(raw.get("urgent", False))

    if kind == "play_card":
        card_id = _first_int(raw, "card_id", "card")
        if card_id is None:
            return None
        dest = step_destination(raw)
        cell = dest.cell_index if dest is not None else None
        return PlayCardStep(card_id, cell, urgent=urgent)

    if kind == "move":
        unit_id = _first_int(raw, "unit_id", "unit")
        dest = step_destination(raw)
        if unit_id is None or dest is None:
            return None
        return MoveStep(unit_id, dest, _instance(raw, "unit_instance_id"), urgent=urgent)

    if kind == "attack":
        attacker = _first_int(raw, "attacker_unit_id", "attacker", "unit_id", "unit")
        if attacker is None:
            return None
        return AttackStep(
            attacker,
            _first_int(raw, "target_unit_id", "target"),
            _instance(raw, "attacker_instance_id", "unit_instance_id"),
            _instance(raw, "target_instance_id"),
            urgent=urgent,
        )

    if kind == "move_then_attack":
        unit_id = _first_int(raw, "unit_id", "unit", "attacker_unit_id")
        dest = step_destination(raw)
        if unit_id is None or dest is None:
            return None
        return MoveThenAttackStep(
            unit_id,
            dest,
            _first_int(raw, "target_unit_id", "target"),
            _instance(raw, "unit_instance_id"),
            _instance(raw, "target_instance_id"),
            urgent=urgent,
        )

    if kind == "hero_power":
        return HeroPowerStep(_first_int(raw, "target_unit_id", "target"), urgent=urgent)

    if kind == "end_turn":
        return EndTurnStep(urgent=urgent)

    return None


def step_unit(step: Step) -> Optional[int]:
    """The acting unit of a step, if it has one."""
    if isinstance(step, (MoveStep, MoveThenAttackStep)):
        return step.unit_id
    if isinstance(step, AttackStep):
        return step.attacker_unit_id
    return None


def describe_step(step: Step) -> str:
    """Human-readable one-liner for logs and the decision_log channel."""
    if isinstance(step, PlayCardStep):
        where = f" @ cell {step.cell_index}" if step.cell_index is not None else ""
        return f"Play card {step.card_id}{where}"
    if isinstance(step, MoveStep):
        return f"Move unit {step.unit_id} -> {_describe_dest(step.to)}"
    if isinstance(step, AttackStep):
        return f"Attack {step.attacker_unit_id} -> {_describe_target(step.target_unit_id)}"
    if isinstance(step, MoveThenAttackStep):
        return (f"Move unit {step.unit_id} -> {_describe_dest(step.to)} then attack "
                f"{_describe_target(step.target_unit_id)}")
    if isinstance(step, HeroPowerStep):
        return "Hero power"
    if isinstance(step, EndTurnStep):
        return "End turn"
    return repr(step)


def describe_action(action: Action) -> str:
    if isinstance(action, PlayCardAction):
        return f"#{action.id} play card {action.card_id} @ cell {action.cell_index}"
    if isinstance(action, MoveAction):
        return f"#{action.id} move unit {action.unit_id} -> cell {action.to_cell_index}"
    if isinstance(action, UnitAttackAction):
        return f"#{action.id} attack {action.attacker_unit_id} -> {_describe_target(action.target_unit_id)}"
    if isinstance(action, MoveThenAttackAction):
        return (f"#{action.id} move unit {action.unit_id} -> cell {action.to_cell_index} "
                f"then attack {_describe_target(action.target_unit_id)}")
    if isinstance(action, HeroPowerAction):
        return f"#{action.id} hero power"
    if isinstance(action, EndTurnAction):
        return f"#{action.id} end turn"
    return repr(action)


def _describe_dest(dest: Destination) -> str:
    if dest.cell_index is not None:
        return f"cell {dest.cell_index}"
    return f"r{dest.row}c{dest.col}"


def _describe_target(target_unit_id: Optional[int]) -> str:
    return "hero" if target_unit_id is None else f"unit {target_unit_id}"


# ---------------------------------------------------------------------------
# Tactical preview (non-authoritative hints)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PreviewAttack:
    target_unit_id: Optional[int]
    expected_kill: bool = False


@dataclass(frozen=True)
class TacticalPreviewEntry:
    unit_id: int
    to_cell_index: int
    attacks: Tuple[PreviewAttack, ...] = ()


def parse_preview(rows: Any) -> List[TacticalPreviewEntry]:
    """Parse tactical preview rows. Accepts flat rows and nested move_then_attack rows."""
    if not isinstance(rows, list):
        return []
    entries = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        nested = row.get("move_then_attack") if isinstance(row.get("move_then_attack"), dict) else {}
        unit_id = _first_int(row, "unit_id")
        if unit_id is None:
            unit_id = _first_int(nested, "unit_id")
        to_cell = _first_int(row, "to_cell_index")
        if to_cell is None:
            to_cell = _first_int(nested, "to_cell_index")
        if unit_id is None or to_cell is None:
            continue
        attacks = []
        raw_attacks = row.get("attacks")
        if isinstance(raw_attacks, list):
            for a in raw_attacks:
                if not isinstance(a, dict):
                    continue
                attacks.append(PreviewAttack(
                    _first_int(a, "target_unit_id"),
                    bool(a.get("expected_kill", a.get("kill", False))),
                ))
        elif nested and "target_unit_id" in nested:
            attacks.append(PreviewAttack(_first_int(nested, "target_unit_id")))
        entries.append(TacticalPreviewEntry(unit_id, to_cell, tuple(attacks)))
    return entries


def preview_lookup(hints: Iterable[TacticalPreviewEntry], unit_id: int,
                   to_cell_index: int) -> Optional[TacticalPreviewEntry]:
    """First preview entry for (unit, destination) that lists at least one attack."""
    for entry in hints:
        if entry.unit_id == unit_id and entry.to_cell_index == to_cell_index and entry.attacks:
            return entry
    return None


# ---------------------------------------------------------------------------
# Board view over a raw snapshot
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Unit:
    unit_id: int
    name: str = ""
    hp: Optional[int] = None
    atk: Optional[int] = None
    cell_index: Optional[int] = None
    instance_id: Optional[str] = None
    is_hero: bool = False
    can_attack: bool = True


def _parse_unit(raw: Any, hero_cell_index: Optional[int]) -> Optional[Unit]:
    if not isinstance(raw, dict):
        return None
    unit_id = _first_int(raw, "unit_id", "id")
    if unit_id is None:
        return None
    cell = _first_int(raw, "cell_index")
    is_hero = bool(raw.get("is_hero")) or raw.get("role") == "hero"
    if not is_hero and hero_cell_index is not None and cell == hero_cell_index:
        is_hero = True
    instance = raw.get("instance_id", raw.get("uid"))
    return Unit(
        unit_id=unit_id,
        name=str(raw.get("name") or raw.get("label") or ""),
        hp=_first_int(raw, "hp"),
        atk=_first_int(raw, "atk", "attack"),
        cell_index=cell,
        instance_id=str(instance) if instance not in (None, "") else None,
        is_hero=is_hero,
        can_attack=False if is_hero else bool(raw.get("can_attack", True)),
    )


def _side(snapshot: Dict, *keys: str) -> Dict:
    for key in keys:
        val = snapshot.get(key)
        if isinstance(val, dict):
            return val
    return {}


@dataclass
class Board:
    """Read-only typed view of a state snapshot.

    With flipped=True the snapshot's self and enemy sides are swapped, for
    clients whose snapshot labels disagree with the action listing.
    """
    turn: Any = None
    is_my_turn: bool = False
    self_units: List[Unit] = field(default_factory=list)
    enemy_units: List[Unit] = field(default_factory=list)
    board_width: int = 9
    self_hero_hp: Optional[int] = None
    enemy_hero_hp: Optional[int] = None
    mana: Optional[int] = None
    hand: List[Dict] = field(default_factory=list)
    self_hero_cell: Optional[int] = None
    enemy_hero_cell: Optional[int] = None
    raw: Dict = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: Optional[Dict], flipped: bool = False,
                      default_width: int = 9) -> "Board":
        snapshot = snapshot if isinstance(snapshot, dict) else {}
        you = _side(snapshot, "you", "self")
        opp = _side(snapshot, "opponent", "enemy")
        self_raw = snapshot.get("self_units") or []
        enemy_raw = snapshot.get("enemy_units") or []
        if flipped:
            you, opp = opp, you
            self_raw, enemy_raw = enemy_raw, self_raw

        self_hero_cell = _first_int(you, "hero_cell_index")
        enemy_hero_cell = _first_int(opp, "hero_cell_index")
        self_units = [u for u in (_parse_unit(r, self_hero_cell) for r in self_raw) if u]
        enemy_units = [u for u in (_parse_unit(r, enemy_hero_cell) for r in enemy_raw) if u]

        board_raw = snapshot.get("board") if isinstance(snapshot.get("board"), dict) else {}
        width = _first_int(board_raw, "width", "cols")
        if width is None:
            width = _first_int(snapshot, "board_width")
        if width is None or width <= 0:
            width = default_width

        is_my_turn = snapshot.get("is_my_turn", you.get("is_my_turn", False))
        hand = you.get("hand") if isinstance(you.get("hand"), list) else []

        return cls(
            turn=snapshot.get("turn", snapshot.get("turn_id")),
            is_my_turn=bool(is_my_turn),
            self_units=self_units,
            enemy_units=enemy_units,
            board_width=width,
            self_hero_hp=_first_int(you, "hero_hp"),
            enemy_hero_hp=_first_int(opp, "hero_hp"),
            mana=_first_int(you, "mana"),
            hand=[c for c in hand if isinstance(c, dict)],
            self_hero_cell=self_hero_cell,
            enemy_hero_cell=enemy_hero_cell,
            raw=snapshot,
        )

    def unit(self, unit_id: Optional[int]) -> Optional[Unit]:
        if unit_id is None:
            return None
        for u in self.self_units:
            if u.unit_id == unit_id:
                return u
        for u in self.enemy_units:
            if u.unit_id == unit_id:
                return u
        return None

    def instance_id(self, unit_id: Optional[int]) -> Optional[str]:
        u = self.unit(unit_id)
        return u.instance_id if u is not None else None

    def is_hero(self, unit_id: Optional[int]) -> bool:
        u = self.unit(unit_id)
        return u is not None and u.is_hero

    def self_unit_ids(self) -> Set[int]:
        return {u.unit_id for u in self.self_units}

    def enemy_unit_ids(self) -> Set[int]:
        return {u.unit_id for u in self.enemy_units}


def step_for_action(action: Action) -> Step:
    """Abstract step equivalent of a concrete listing action."""
    if isinstance(action, PlayCardAction):
        return PlayCardStep(action.card_id, action.cell_index)
    if isinstance(action, MoveAction):
        return MoveStep(action.unit_id, Destination.cell(action.to_cell_index))
    if isinstance(action, UnitAttackAction):
        return AttackStep(action.attacker_unit_id, action.target_unit_id)
    if isinstance(action, MoveThenAttackAction):
        return MoveThenAttackStep(action.unit_id, Destination.cell(action.to_cell_index),
                                  action.target_unit_id)
    if isinstance(action, HeroPowerAction):
        return HeroPowerStep(action.target_unit_id)
    return EndTurnStep()
