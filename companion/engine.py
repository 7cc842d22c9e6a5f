"""Turn engine.

Routes parsed client messages, runs one decision cycle at a time, pushes
proposed steps through the accumulator and pipeline, submits them, and
keeps the turn moving:

- Generation check: every listing bumps a counter; a decision computed
  against an older listing (or an earlier turn) is discarded.
- One-shot retry: a total failure of a submitted batch re-runs the decision
  cycle once per turn; a second total failure is left alone.
- Rollback: a rejected request, or a batch where nothing succeeded, restores
  the TurnState from before it was sent. An end turn that did not apply
  reopens the turn.
- Deferred flushes: steps held back while a request was inflight are
  re-armed when the marker clears and flushed on the next listing.
- Watchdog: a request inflight longer than the decision timeout is
  abandoned, pending steps are flushed together with end turn, or end turn
  is sent on its own. An idle turn is ended the same way.
"""
import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from companion import config
from companion.accumulator import StepAccumulator
from companion.bot_interface import DecisionSource
from companion.chain_queue import ChainQueue
from companion.game_logger import GameLogger
from companion.inflight import InflightRequest, InflightTracker, should_retry
from companion.models import (
    Action,
    ActionListing,
    Board,
    EndTurnStep,
    MoveThenAttackStep,
    Step,
    TacticalPreviewEntry,
    describe_action,
    describe_step,
    parse_preview,
    step_for_action,
)
from companion.monitor import Broadcaster
from companion.pipeline import find_end_turn, process, resolve_action_id, resolve_action_ids
from companion.protocol import (
    ActionBatchSummaryMsg,
    ActionErrorMsg,
    ActionResultMsg,
    AvailableActionsMsg,
    ErrorMsg,
    GameOverMsg,
    GameReadyMsg,
    PlanErrorMsg,
    PlanResultMsg,
    StateMsg,
    SubscribeAckMsg,
    TacticalPreviewMsg,
    UnknownMsg,
    build_select_action,
    build_select_actions,
    build_turn_plan,
)
from companion.turn_state import TurnTracker

logger = logging.getLogger(__name__)


def is_batch_precondition(reason: str) -> bool:
    text = (reason or "").lower()
    return any(marker in text for marker in config.BATCH_PRECONDITION_MARKERS)


class TurnEngine:
    """Decision/dispatch state machine for one client connection."""

    def __init__(self, source: DecisionSource,
                 send: Optional[Callable[[Dict], None]] = None,
                 game_logger: Optional[GameLogger] = None,
                 broadcaster: Optional[Broadcaster] = None,
                 submit_mode: str = config.SUBMIT_MODE,
                 orientation: str = config.ORIENTATION,
                 decision_timeout_ms: int = config.DECISION_TIMEOUT_MS,
                 propose_timeout: float = config.PROPOSE_TIMEOUT_SECONDS,
                 retry_delay_ms: int = config.RETRY_DELAY_MS,
                 watchdog_period_ms: int = config.WATCHDOG_PERIOD_MS,
                 debounce_ms: int = config.DEBOUNCE_MS):
        self.source = source
        self.send = send
        self.game_logger = game_logger or GameLogger()
        self.broadcaster = broadcaster or Broadcaster()
        self.submit_mode = submit_mode
        self.decision_timeout_ms = config.clamp(
            decision_timeout_ms, config.DECISION_TIMEOUT_MIN_MS, config.DECISION_TIMEOUT_MAX_MS,
        )
        self.propose_timeout = propose_timeout
        self.retry_delay_ms = retry_delay_ms
        self.watchdog_period_ms = watchdog_period_ms

        self.tracker = TurnTracker(orientation)
        self.inflight = InflightTracker()
        self.chain = ChainQueue()
        self.accumulator = StepAccumulator(self._on_flush, lambda: self.inflight.busy, debounce_ms)

        self.snapshot: Optional[Dict] = None
        self.board: Optional[Board] = None
        self.listing: Optional[ActionListing] = None
        self.hints: List[TacticalPreviewEntry] = []

        self._deciding = False
        self._decided_generation: Optional[int] = None
        self._decision_task: Optional[asyncio.Task] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._last_listing_at = 0.0
        self._last_dispatch_at = 0.0
        self._board_flipped = False

    @property
    def decision_timeout(self) -> float:
        return self.decision_timeout_ms / 1000.0

    # ------------------------------------------------------------------
    # Message routing
    # ------------------------------------------------------------------

    async def handle_message(self, msg) -> None:
        """Route a parsed message to the appropriate handler."""
        if isinstance(msg, StateMsg):
            self._handle_state(msg.snapshot)

        elif isinstance(msg, AvailableActionsMsg):
            self._handle_available_actions(msg)

        elif isinstance(msg, TacticalPreviewMsg):
            self.hints = parse_preview(msg.preview)

        elif isinstance(msg, ActionResultMsg):
            if self.inflight.clear_single(msg.req_id):
                logger.debug(f"Action {msg.id} applied")
                self._resume_pending()

        elif isinstance(msg, ActionErrorMsg):
            self._handle_action_error(msg)

        elif isinstance(msg, PlanResultMsg):
            self._handle_batch_result(
                msg.attempted, msg.succeeded, msg.req_id,
                {"steps": [vars(s) for s in msg.steps], "note": msg.note},
                step_ok=[s.ok for s in msg.steps],
            )

        elif isinstance(msg, ActionBatchSummaryMsg):
            self._handle_batch_result(
                len(msg.applied) + len(msg.failed), len(msg.applied), msg.req_id,
                {"applied": msg.applied, "failed": msg.failed},
                step_ok=self._applied_flags(msg.applied),
            )

        elif isinstance(msg, PlanErrorMsg):
            self._handle_plan_error(msg)

        elif isinstance(msg, GameReadyMsg):
            logger.info("Game ready")
            self.reset()
            self.game_logger.open_session()

        elif isinstance(msg, GameOverMsg):
            logger.info(f"Game over: {msg.result}")
            self.game_logger.log_event("game_over", result=msg.result)
            self.reset()

        elif isinstance(msg, SubscribeAckMsg):
            logger.info("Subscribed to game client")

        elif isinstance(msg, ErrorMsg):
            logger.warning(f"Client error: {msg.message}")

        elif isinstance(msg, UnknownMsg):
            logger.debug(f"Ignoring unrecognized message: {str(msg.raw_data)[:200]}")

    # ------------------------------------------------------------------
    # Inbound state
    # ------------------------------------------------------------------

    def _handle_state(self, snapshot: Dict) -> None:
        if self.tracker.observe_snapshot(snapshot, self.listing):
            self._on_turn_boundary()
        self.snapshot = snapshot
        self._rebuild_board()
        self.broadcaster.publish(config.CHANNEL_STATE, {
            "turn": self.board.turn,
            "is_my_turn": self.board.is_my_turn,
            "self_units": len(self.board.self_units),
            "enemy_units": len(self.board.enemy_units),
        })
        self._maybe_decide()

    def _handle_available_actions(self, msg: AvailableActionsMsg) -> None:
        now = time.monotonic()
        generation = self.inflight.next_generation()
        self.listing = ActionListing.from_raw(msg.actions, generation, now)
        self._last_listing_at = now
        self.tracker.observe_listing(self.listing, self.snapshot)
        if self.snapshot is not None and (self.board is None or self._board_flipped != self.tracker.flipped):
            self._rebuild_board()
        self.broadcaster.publish(config.CHANNEL_AVAILABLE_ACTIONS, {
            "generation": generation,
            "actions": [describe_action(a) for a in self.listing.actions],
        })
        self._rescan_chain(now)
        if len(self.accumulator) and not self.accumulator.timer_armed:
            self.accumulator.flush("deferred")
        self._maybe_decide()

    def _rebuild_board(self) -> None:
        self._board_flipped = self.tracker.flipped
        self.board = Board.from_snapshot(self.snapshot, self.tracker.flipped, config.DEFAULT_BOARD_WIDTH)

    def _on_turn_boundary(self) -> None:
        turn_id = self.tracker.turn_id
        self.chain.clear()
        self.accumulator.clear()
        self._cancel_retry()
        self._decided_generation = None
        self.game_logger.log_event("turn_start", turn=turn_id)
        self.broadcaster.publish(config.CHANNEL_TURN, {"turn": turn_id})

    def _is_my_turn(self) -> bool:
        return self.board is not None and self.board.is_my_turn

    # ------------------------------------------------------------------
    # Decision cycle
    # ------------------------------------------------------------------

    def _maybe_decide(self) -> None:
        if self.board is None or self.listing is None or not self._is_my_turn():
            return
        if self.tracker.state.ended_this_turn or self._deciding:
            return
        if self.inflight.busy or len(self.accumulator):
            return
        if self._decided_generation == self.listing.generation:
            return
        self._deciding = True
        self._decided_generation = self.listing.generation
        self._decision_task = asyncio.ensure_future(
            self._decide(self.listing.generation, self.tracker.turn_id)
        )

    async def _decide(self, generation: int, turn_id: Any) -> None:
        board, listing, hints = self.board, self.listing, list(self.hints)
        steps = None
        try:
            result = self.source.propose(board, listing, hints)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self.propose_timeout)
            steps = list(result) if result else None
        except asyncio.TimeoutError:
            logger.error(f"Decision source timed out after {self.propose_timeout}s")
        except Exception as e:
            logger.error(f"Decision source failed: {e}", exc_info=True)
        finally:
            self._deciding = False

        if turn_id != self.tracker.turn_id or not self.inflight.is_current(generation):
            logger.info(f"Discarding decision for stale listing (gen {generation}, "
                        f"now {self.inflight.generation})")
            self._maybe_decide()
            return

        if not steps:
            self._auto_fallback("no proposal")
            return

        descriptions = [describe_step(s) for s in steps]
        logger.info(f"{self.source.name} proposed: {'; '.join(descriptions)}")
        self.game_logger.log_decision(turn_id, self.source.name, [s.to_wire() for s in steps])
        self.broadcaster.publish(config.CHANNEL_DECISION_LOG, {
            "turn": turn_id, "source": self.source.name, "steps": descriptions,
        })
        self.accumulator.extend(steps)
        if any(s.urgent for s in steps):
            self.accumulator.flush_now("urgent")

    # ------------------------------------------------------------------
    # Flush and submission
    # ------------------------------------------------------------------

    def _on_flush(self, steps: List[Step], reason: str) -> None:
        if self.board is None or self.listing is None:
            logger.warning(f"Dropping {len(steps)} step(s): no board or listing yet")
            return
        processed = process(
            steps, self.board, self.listing, self.hints, self.tracker.state,
            self.source.target_preference(self.board),
        )
        if reason == "timeout":
            if self.submit_mode == config.SUBMIT_MODE_SINGLE:
                self._dispatch_end_turn("timeout")
                return
            if find_end_turn(self.listing) is not None and \
                    not any(isinstance(s, EndTurnStep) for s in processed):
                processed.append(EndTurnStep())
        if not processed:
            logger.info(f"Nothing left to submit after pipeline ({reason})")
            self._auto_fallback("empty plan")
            return
        self.submit(processed, reason)

    def submit(self, steps: List[Step], reason: str = "") -> bool:
        """Send validated steps in the configured submit mode."""
        if self.inflight.busy:
            logger.info(f"Submit refused ({reason}): request already inflight")
            return False
        if self.submit_mode == config.SUBMIT_MODE_SINGLE:
            return self._submit_first(steps, reason)

        msg = None
        req = self.inflight.begin_batch(steps)
        req.prior_state = self.tracker.state
        if self.submit_mode == config.SUBMIT_MODE_IDS:
            ids = resolve_action_ids(steps, self.listing)
            if ids is not None:
                req.action_ids = ids
                msg = build_select_actions(ids, req.correlation_id)
            else:
                logger.info("Not every step maps to a listed action, sending turn_plan")
        if msg is None:
            msg = build_turn_plan([s.to_wire() for s in steps], req.correlation_id)

        logger.info(f">> Batch of {len(steps)} ({reason}): {'; '.join(describe_step(s) for s in steps)}")
        self._send(msg)
        self.tracker.record_dispatch(steps)
        return True

    def _submit_first(self, steps: List[Step], reason: str) -> bool:
        """Fast path: only the first step goes out, as a select_action."""
        step = steps[0]
        if len(steps) > 1:
            logger.debug(f"Single mode: discarding {len(steps) - 1} trailing step(s)")
        if isinstance(step, MoveThenAttackStep):
            move = self.listing.find_move(step.unit_id, step.to.cell_index)
            if move is None:
                logger.info(f"No listed move for {describe_step(step)}")
                self._auto_fallback("unresolved step")
                return False
            if not self._dispatch_single(move, reason):
                return False
            self.chain.enqueue(step.unit_id, step.target_unit_id, self.listing.generation)
            self.broadcaster.publish(config.CHANNEL_CHAIN, {
                "queued": step.unit_id, "target": step.target_unit_id,
            })
            return True
        action_id = resolve_action_id(step, self.listing)
        action = self.listing.by_id(action_id) if action_id is not None else None
        if action is None:
            logger.info(f"No listed action for {describe_step(step)}")
            self._auto_fallback("unresolved step")
            return False
        return self._dispatch_single(action, reason)

    def _dispatch_single(self, action: Action, reason: str) -> bool:
        if self.listing is None or action.id not in self.listing.ids():
            logger.warning(f"Refusing to send {describe_action(action)}: not in current listing")
            return False
        req = self.inflight.begin_single(action.id)
        if req is None:
            return False
        req.steps = [step_for_action(action)]
        req.prior_state = self.tracker.state
        logger.info(f">> {describe_action(action)} ({reason})")
        self._send(build_select_action(action.id, req.correlation_id))
        self.tracker.record_dispatch(req.steps)
        return True

    def _send(self, msg: Dict) -> None:
        self._last_dispatch_at = time.monotonic()
        self.game_logger.log_outgoing(msg.get("type", "?"), msg)
        if self.send is None:
            logger.warning(f"No transport, dropping {msg.get('type')}")
            return
        self.send(msg)

    # ------------------------------------------------------------------
    # Chain queue
    # ------------------------------------------------------------------

    def _rescan_chain(self, now: float) -> None:
        if not len(self.chain):
            return
        can_dispatch = self._is_my_turn() and not self.inflight.busy
        picked = self.chain.rescan(self.listing, can_dispatch, now)
        if picked is None:
            return
        entry, attack = picked
        if self._dispatch_single(attack, "chain"):
            self.game_logger.log_event("chain_dispatch", unit=entry.attacker_unit_id,
                                       action=attack.id, retries=entry.retries)
            self.broadcaster.publish(config.CHANNEL_CHAIN, {
                "dispatched": entry.attacker_unit_id, "action": attack.id,
            })

    # ------------------------------------------------------------------
    # Results and errors
    # ------------------------------------------------------------------

    def _applied_flags(self, applied: List[Any]) -> Optional[List[bool]]:
        """Per-step outcome of a select_actions batch, aligned with its steps."""
        req = self.inflight.batch
        if req is None or req.action_ids is None:
            return None
        done = {a.get("id") if isinstance(a, dict) else a for a in applied}
        return [action_id in done for action_id in req.action_ids]

    @staticmethod
    def _end_turn_failed(req: InflightRequest, step_ok: Optional[List[bool]]) -> bool:
        positions = [i for i, s in enumerate(req.steps) if isinstance(s, EndTurnStep)]
        if not positions:
            return False
        if step_ok is None:
            return True
        return any(i >= len(step_ok) or not step_ok[i] for i in positions)

    def _roll_back(self, req: Optional[InflightRequest]) -> None:
        """Undo the bookkeeping of a request the client did not apply."""
        if req is not None and req.prior_state is not None:
            self.tracker.restore(req.prior_state)

    def _resume_pending(self) -> None:
        if len(self.accumulator) and not self.inflight.busy:
            self.accumulator.resume()

    def _handle_batch_result(self, attempted: int, succeeded: int,
                             req_id: Optional[str], payload: Dict,
                             step_ok: Optional[List[bool]] = None) -> None:
        req = self.inflight.batch
        if req is None:
            logger.debug("Batch result with nothing inflight")
        elif not self.inflight.clear_batch(req_id):
            return
        logger.info(f"Batch result: {succeeded}/{attempted} ok")
        self.broadcaster.publish(config.CHANNEL_PLAN_RESULT, dict(
            payload, attempted=attempted, succeeded=succeeded,
        ))
        self.game_logger.log_event("batch_result", attempted=attempted, succeeded=succeeded)
        self.source.on_result(succeeded)

        if req is not None:
            if succeeded == 0:
                self._roll_back(req)
            elif succeeded < attempted and self._end_turn_failed(req, step_ok):
                self.tracker.reopen()

        if should_retry(attempted, succeeded, self.tracker.state):
            self.tracker.mark_retried()
            logger.warning(f"All {attempted} step(s) failed, retrying once in {self.retry_delay_ms}ms")
            self._schedule_retry()
        elif attempted >= 1 and succeeded == 0:
            logger.warning("Batch failed again after retry, not retrying")
        self._resume_pending()

    def _handle_action_error(self, msg: ActionErrorMsg) -> None:
        req = self.inflight.single
        if self.inflight.clear_single(msg.req_id):
            self._roll_back(req)
        logger.warning(f"Action {msg.id} rejected: {msg.reason}")
        self.game_logger.log_event("action_error", id=msg.id, reason=msg.reason)
        if is_batch_precondition(msg.reason):
            self.accumulator.flush("precondition")
        else:
            self._resume_pending()

    def _handle_plan_error(self, msg: PlanErrorMsg) -> None:
        req = self.inflight.batch
        if self.inflight.clear_batch(msg.req_id):
            self._roll_back(req)
        logger.warning(f"Plan rejected: {msg.reason}")
        self.game_logger.log_event("plan_error", reason=msg.reason)
        self.broadcaster.publish(config.CHANNEL_PLAN_RESULT, {"error": msg.reason})
        if is_batch_precondition(msg.reason):
            self.accumulator.flush("precondition")
        else:
            self._resume_pending()

    def _schedule_retry(self) -> None:
        self._cancel_retry()
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(self.retry_delay_ms / 1000.0, self._retry)

    def _retry(self) -> None:
        self._retry_handle = None
        self.game_logger.log_event("retry", turn=self.tracker.turn_id)
        self._decided_generation = None
        self._maybe_decide()

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    # ------------------------------------------------------------------
    # Fallback and watchdog
    # ------------------------------------------------------------------

    def _auto_fallback(self, reason: str) -> bool:
        """End the turn when nothing else is going on."""
        if not self._is_my_turn() or self.tracker.state.ended_this_turn:
            return False
        if self.inflight.busy or len(self.accumulator):
            return False
        return self._dispatch_end_turn(reason)

    def _dispatch_end_turn(self, reason: str) -> bool:
        if self.tracker.state.ended_this_turn or self.listing is None:
            return False
        end_turn = self.listing.end_turn()
        if end_turn is None:
            logger.info(f"No end turn action listed ({reason})")
            return False
        return self._dispatch_single(end_turn, reason)

    def watchdog_tick(self, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        timeout = self.decision_timeout

        if self.inflight.expired(timeout, now):
            req = self.inflight.current
            age = req.age(now)
            logger.warning(f"Watchdog: {req.kind} request {req.correlation_id[:8]} "
                           f"inflight {age:.1f}s, clearing")
            self.inflight.clear_all()
            if any(isinstance(s, EndTurnStep) for s in req.steps):
                self.tracker.reopen()
            self.game_logger.log_event("watchdog", kind=req.kind, age=round(age, 3))
            self.broadcaster.publish(config.CHANNEL_WATCHDOG, {"kind": req.kind, "age": age})
            if len(self.accumulator):
                self.accumulator.flush_now("timeout")
            elif self._is_my_turn():
                self._dispatch_end_turn("watchdog")
            return

        if not self._is_my_turn() or self.tracker.state.ended_this_turn:
            return
        if self.inflight.busy or self._deciding or self.listing is None:
            return
        idle = now - max(self._last_listing_at, self._last_dispatch_at)
        if idle <= timeout:
            return
        self.broadcaster.publish(config.CHANNEL_WATCHDOG, {"kind": "idle", "age": idle})
        if len(self.accumulator):
            logger.warning(f"Watchdog: {len(self.accumulator)} step(s) held for {idle:.1f}s, "
                           f"flushing with end turn")
            self.accumulator.flush_now("timeout")
        else:
            logger.warning(f"Watchdog: turn idle for {idle:.1f}s, ending turn")
            self._dispatch_end_turn("idle")

    async def run_watchdog(self) -> None:
        while True:
            await asyncio.sleep(self.watchdog_period_ms / 1000.0)
            try:
                self.watchdog_tick()
            except Exception as e:
                logger.error(f"Watchdog tick failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def on_disconnect(self) -> None:
        """Drop everything tied to the connection; ids will not survive it."""
        self.inflight.clear_all()
        self.accumulator.clear()
        self.chain.clear()
        self._cancel_retry()
        if self._decision_task is not None and not self._decision_task.done():
            self._decision_task.cancel()
        self._deciding = False
        self._decided_generation = None
        self.listing = None

    def reset(self) -> None:
        """Forget the current game entirely."""
        self.on_disconnect()
        self.tracker = TurnTracker(self.tracker.orientation)
        self.snapshot = None
        self.board = None
        self.hints = []
