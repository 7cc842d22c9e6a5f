"""Game client line protocol parser and message builders.

Every frame is one JSON object terminated by a newline, keyed by a string
"type":
  {"type": "state", "snapshot": {...}}
  {"type": "available_actions", "actions": [...]}
  {"type": "plan_result", "steps": [{"id": 1, "ok": true}], "req_id": "..."}

Inbound frames are classified into typed dataclasses. Anything that cannot
be understood becomes UnknownMsg, never an exception.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from companion import config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Inbound message dataclasses
# ---------------------------------------------------------------------------

@dataclass
class StateMsg:
    """Full board snapshot for the current ply."""
    snapshot: Dict


@dataclass
class AvailableActionsMsg:
    """Authoritative list of currently legal actions (raw wire entries)."""
    actions: List[Dict]


@dataclass
class TacticalPreviewMsg:
    """Precomputed move-then-attack opportunities (raw rows)."""
    preview: List[Dict]


@dataclass
class ActionResultMsg:
    """A single selected action was applied."""
    id: Optional[int] = None
    req_id: Optional[str] = None


@dataclass
class ActionErrorMsg:
    """A single selected action was rejected."""
    id: Optional[int] = None
    reason: str = ""
    req_id: Optional[str] = None


@dataclass
class PlanStepResult:
    id: Optional[int]
    ok: bool
    reason: Optional[str] = None


@dataclass
class PlanResultMsg:
    """Per-step outcome of a submitted turn plan."""
    steps: List[PlanStepResult] = field(default_factory=list)
    note: Optional[str] = None
    req_id: Optional[str] = None

    @property
    def attempted(self) -> int:
        return len(self.steps)

    @property
    def succeeded(self) -> int:
        return sum(1 for s in self.steps if s.ok)


@dataclass
class PlanErrorMsg:
    """The plan was rejected before any step was attempted."""
    reason: str = ""
    req_id: Optional[str] = None


@dataclass
class ActionBatchSummaryMsg:
    """Outcome of a select_actions batch."""
    applied: List[Any] = field(default_factory=list)
    failed: List[Any] = field(default_factory=list)
    req_id: Optional[str] = None


@dataclass
class GameReadyMsg:
    pass


@dataclass
class GameOverMsg:
    result: Dict = field(default_factory=dict)


@dataclass
class SubscribeAckMsg:
    pass


@dataclass
class ErrorMsg:
    """Generic error reported by the client (e.g. bad token)."""
    message: str = ""


@dataclass
class UnknownMsg:
    """Fallback for unrecognized or malformed frames."""
    raw_data: Any = None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def parse_message(raw: str) -> Any:
    """Parse one line from the game client into a typed message object.

    Args:
        raw: A single JSON frame without its trailing newline.

    Returns:
        A typed message dataclass, or UnknownMsg if unrecognized.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"SECURITY: Malformed JSON received: {e}")
        return UnknownMsg(raw_data={"error": "malformed_json", "preview": str(raw)[:200]})

    if not isinstance(data, dict):
        logger.debug(f"Non-dict JSON: type={type(data).__name__}")
        return UnknownMsg(raw_data=data)

    msg_type = data.get("type")
    if not isinstance(msg_type, str):
        return UnknownMsg(raw_data=data)

    try:
        if msg_type == config.MSG_STATE:
            return _parse_state(data)
        if msg_type == config.MSG_AVAILABLE_ACTIONS:
            return _parse_available_actions(data)
        if msg_type == config.MSG_TACTICAL_PREVIEW:
            return _parse_tactical_preview(data)
        if msg_type == config.MSG_ACTION_RESULT:
            return ActionResultMsg(id=_opt_int(data.get("id")), req_id=_opt_str(data.get("req_id")))
        if msg_type == config.MSG_ACTION_ERROR:
            return ActionErrorMsg(
                id=_opt_int(data.get("id")),
                reason=str(data.get("reason") or data.get("error") or ""),
                req_id=_opt_str(data.get("req_id")),
            )
        if msg_type == config.MSG_PLAN_RESULT:
            return _parse_plan_result(data)
        if msg_type == config.MSG_PLAN_ERROR:
            return PlanErrorMsg(
                reason=str(data.get("reason") or data.get("error") or ""),
                req_id=_opt_str(data.get("req_id")),
            )
        if msg_type == config.MSG_ACTION_BATCH_SUMMARY:
            return _parse_batch_summary(data)
        if msg_type == config.MSG_GAME_READY:
            return GameReadyMsg()
        if msg_type == config.MSG_GAME_OVER:
            result = data.get("result")
            return GameOverMsg(result=result if isinstance(result, dict) else {})
        if msg_type == config.MSG_SUBSCRIBE_ACK:
            return SubscribeAckMsg()
        if msg_type == config.MSG_ERROR:
            return ErrorMsg(message=str(data.get("message") or data.get("error") or ""))
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"SECURITY: Error parsing {msg_type!r} message: {e}")
        return UnknownMsg(raw_data=data)

    return UnknownMsg(raw_data=data)


def _opt_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _opt_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _parse_state(data: Dict) -> Any:
    snapshot = data.get("snapshot")
    if not isinstance(snapshot, dict):
        return UnknownMsg(raw_data=data)
    return StateMsg(snapshot=snapshot)


def _parse_available_actions(data: Dict) -> Any:
    actions = data.get("actions")
    if not isinstance(actions, list):
        return UnknownMsg(raw_data=data)
    return AvailableActionsMsg(actions=[a for a in actions if isinstance(a, dict)])


def _parse_tactical_preview(data: Dict) -> Any:
    preview = data.get("preview")
    if not isinstance(preview, list):
        return UnknownMsg(raw_data=data)
    return TacticalPreviewMsg(preview=[p for p in preview if isinstance(p, dict)])


def _parse_plan_result(data: Dict) -> Any:
    """Parse plan_result.

    Steps: [{id, ok, reason?}]. A missing or non-list steps field is treated
    as zero attempted steps.
    """
    raw_steps = data.get("steps")
    steps = []
    if isinstance(raw_steps, list):
        for s in raw_steps:
            if not isinstance(s, dict):
                continue
            reason = s.get("reason")
            steps.append(PlanStepResult(
                id=_opt_int(s.get("id")),
                ok=bool(s.get("ok", False)),
                reason=str(reason) if reason is not None else None,
            ))
    note = data.get("note")
    return PlanResultMsg(
        steps=steps,
        note=str(note) if note is not None else None,
        req_id=_opt_str(data.get("req_id")),
    )


def _parse_batch_summary(data: Dict) -> Any:
    applied = data.get("applied")
    failed = data.get("failed")
    return ActionBatchSummaryMsg(
        applied=list(applied) if isinstance(applied, list) else [],
        failed=list(failed) if isinstance(failed, list) else [],
        req_id=_opt_str(data.get("req_id")),
    )


# ---------------------------------------------------------------------------
# Outbound builders
# ---------------------------------------------------------------------------

def build_subscribe(token: str) -> Dict:
    return {"type": config.MSG_SUBSCRIBE, "token": token}


def build_select_action(action_id: int, req_id: str) -> Dict:
    return {"type": config.MSG_SELECT_ACTION, "id": action_id, "req_id": req_id}


def build_turn_plan(steps: List[Dict], req_id: str) -> Dict:
    """Batch of abstract steps; partial success allowed, end turn never implicit."""
    return {
        "type": config.MSG_TURN_PLAN,
        "turn_plan": {"atomic": False, "auto_end": False, "steps": list(steps)},
        "req_id": req_id,
    }


def build_select_actions(ids: List[int], req_id: str) -> Dict:
    return {
        "type": config.MSG_SELECT_ACTIONS,
        "ids": list(ids),
        "atomic": False,
        "auto_end": False,
        "req_id": req_id,
    }


def encode(msg: Dict) -> bytes:
    """Serialize a message as one newline-terminated frame."""
    return (json.dumps(msg, separators=(",", ":")) + "\n").encode("utf-8")
