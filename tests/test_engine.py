"""Tests for companion/engine.py - decision cycle, submission, retry and watchdog."""
import asyncio
import json
import time
import pytest
from unittest.mock import MagicMock

from companion import config
from companion.bot_interface import DecisionSource
from companion.engine import TurnEngine, is_batch_precondition
from companion.models import (
    AttackStep,
    Destination,
    EndTurnStep,
    MoveStep,
    MoveThenAttackStep,
    PlayCardStep,
)
from companion.protocol import (
    AvailableActionsMsg,
    GameOverMsg,
    GameReadyMsg,
    StateMsg,
    UnknownMsg,
    parse_message,
)


SNAPSHOT = {
    "turn": 1,
    "is_my_turn": True,
    "self_units": [
        {"unit_id": 5, "name": "Archer", "hp": 3, "atk": 2, "cell_index": 3},
        {"unit_id": 6, "name": "Knight", "hp": 5, "atk": 3, "cell_index": 5},
    ],
    "enemy_units": [
        {"unit_id": 9, "name": "Goblin", "hp": 2, "atk": 1, "cell_index": 30},
        {"unit_id": 11, "name": "Orc", "hp": 6, "atk": 4, "cell_index": 31},
    ],
}

ACTIONS = [
    {"id": 1, "move_unit": {"unit_id": 5, "to_cell_index": 12}},
    {"id": 2, "unit_attack": {"attacker_unit_id": 5, "target_unit_id": 9}},
    {"id": 3, "move_then_attack": {"unit_id": 5, "to_cell_index": 12, "target_unit_id": 9}},
    {"id": 4, "move_unit": {"unit_id": 6, "to_cell_index": 14}},
    {"id": 5, "unit_attack": {"attacker_unit_id": 6, "target_unit_id": 11}},
    {"id": 6, "hero_power": True},
    {"id": 7, "play_card": {"card_id": 20, "cell_index": 13}},
    {"id": 8, "end_turn": True},
]


class ScriptedSource(DecisionSource):
    """Returns queued proposals in order; with repeat=True the last one forever."""

    name = "scripted"

    def __init__(self, *proposals, repeat=False):
        self.proposals = list(proposals)
        self.repeat = repeat
        self.calls = 0
        self.results = []

    def propose(self, board, listing, hints):
        self.calls += 1
        if not self.proposals:
            return None
        if self.repeat and len(self.proposals) == 1:
            return list(self.proposals[0])
        return list(self.proposals.pop(0))

    def on_result(self, succeeded):
        self.results.append(succeeded)


def _engine(source, **kwargs):
    sent = []
    kwargs.setdefault("orientation", config.ORIENTATION_AS_IS)
    kwargs.setdefault("submit_mode", config.SUBMIT_MODE_PLAN)
    kwargs.setdefault("debounce_ms", 10)
    kwargs.setdefault("retry_delay_ms", 10)
    engine = TurnEngine(source, send=sent.append, game_logger=MagicMock(), **kwargs)
    return engine, sent


async def _start(engine, snapshot=None, actions=None):
    await engine.handle_message(StateMsg(snapshot or SNAPSHOT))
    await engine.handle_message(AvailableActionsMsg(ACTIONS if actions is None else actions))


async def _plan_result(engine, oks, req_id=None):
    raw = {"type": "plan_result", "steps": [{"id": i + 1, "ok": ok} for i, ok in enumerate(oks)]}
    if req_id is not None:
        raw["req_id"] = req_id
    await engine.handle_message(parse_message(json.dumps(raw)))


def _wire_steps(msg):
    return msg["turn_plan"]["steps"]


class TestBatchPrecondition:
    @pytest.mark.parametrize("reason,expected", [
        ("Batch inflight", True),
        ("client busy", True),
        ("pending plan", True),
        ("stale id", False),
        ("", False),
        (None, False),
    ])
    def test_markers(self, reason, expected):
        assert is_batch_precondition(reason) is expected


class TestDecisionCycle:
    @pytest.mark.asyncio
    async def test_move_and_attack_sent_as_one_compound_step(self):
        source = ScriptedSource([MoveStep(5, Destination.cell(12)), AttackStep(5, 9)])
        engine, sent = _engine(source)
        await _start(engine)
        await asyncio.sleep(0.05)

        assert len(sent) == 1
        assert sent[0]["type"] == "turn_plan"
        assert _wire_steps(sent[0]) == [{
            "type": "move_then_attack", "unit_id": 5, "to": {"cell_index": 12}, "target_unit_id": 9,
        }]
        assert engine.inflight.batch is not None
        assert sent[0]["req_id"] == engine.inflight.batch.correlation_id

    @pytest.mark.asyncio
    async def test_illegal_target_rewritten_before_send(self):
        actions = [
            {"id": 1, "move_unit": {"unit_id": 5, "to_cell_index": 12}},
            {"id": 2, "move_then_attack": {"unit_id": 5, "to_cell_index": 12, "target_unit_id": 11}},
            {"id": 3, "end_turn": True},
        ]
        source = ScriptedSource([MoveThenAttackStep(5, Destination.cell(12), 9)])
        engine, sent = _engine(source)
        await _start(engine, actions=actions)
        await asyncio.sleep(0.05)
        assert _wire_steps(sent[0])[0]["target_unit_id"] == 11

    @pytest.mark.asyncio
    async def test_no_decision_off_turn(self):
        source = ScriptedSource([AttackStep(5, 9)])
        engine, sent = _engine(source)
        await _start(engine, snapshot=dict(SNAPSHOT, is_my_turn=False))
        await asyncio.sleep(0.03)
        assert source.calls == 0
        assert sent == []

    @pytest.mark.asyncio
    async def test_one_decision_per_generation(self):
        source = ScriptedSource([AttackStep(5, 9)], repeat=True)
        engine, sent = _engine(source)
        await _start(engine)
        await engine.handle_message(StateMsg(SNAPSHOT))
        await asyncio.sleep(0.05)
        assert source.calls == 1

    @pytest.mark.asyncio
    async def test_urgent_steps_skip_debounce(self):
        source = ScriptedSource([AttackStep(5, 9, urgent=True)])
        engine, sent = _engine(source, debounce_ms=5000)
        await _start(engine)
        await asyncio.sleep(0.01)
        assert len(sent) == 1

    @pytest.mark.asyncio
    async def test_no_proposal_ends_turn(self):
        engine, sent = _engine(ScriptedSource())
        await _start(engine)
        await asyncio.sleep(0.01)
        assert sent[-1]["type"] == "select_action"
        assert sent[-1]["id"] == 8
        assert engine.tracker.state.ended_this_turn

    @pytest.mark.asyncio
    async def test_source_error_ends_turn(self):
        source = ScriptedSource()
        source.propose = MagicMock(side_effect=RuntimeError("model exploded"))
        engine, sent = _engine(source)
        await _start(engine)
        await asyncio.sleep(0.01)
        assert sent[-1] == {"type": "select_action", "id": 8,
                            "req_id": engine.inflight.single.correlation_id}

    @pytest.mark.asyncio
    async def test_slow_source_times_out_and_ends_turn(self):
        class Slow(DecisionSource):
            name = "slow"

            async def propose(self, board, listing, hints):
                await asyncio.sleep(1)
                return [AttackStep(5, 9)]

        engine, sent = _engine(Slow(), propose_timeout=0.02)
        await _start(engine)
        await asyncio.sleep(0.1)
        assert [m["type"] for m in sent] == ["select_action"]
        assert sent[0]["id"] == 8

    @pytest.mark.asyncio
    async def test_stale_generation_is_discarded(self):
        class Gated(DecisionSource):
            name = "gated"

            def __init__(self):
                self.release = asyncio.Event()
                self.generations = []

            async def propose(self, board, listing, hints):
                self.generations.append(listing.generation)
                if len(self.generations) == 1:
                    await self.release.wait()
                    return [PlayCardStep(20, 13)]
                return [AttackStep(5, 9)]

        source = Gated()
        engine, sent = _engine(source)
        await _start(engine)
        await asyncio.sleep(0)
        await engine.handle_message(AvailableActionsMsg(ACTIONS))
        source.release.set()
        await asyncio.sleep(0.05)

        assert source.generations == [1, 2]
        assert len(sent) == 1
        assert _wire_steps(sent[0]) == [{"type": "unit_attack", "attacker_unit_id": 5,
                                         "target_unit_id": 9}]


class TestSubmitModes:
    @pytest.mark.asyncio
    async def test_ids_mode_sends_select_actions(self):
        source = ScriptedSource([MoveStep(5, Destination.cell(12)), AttackStep(5, 9), EndTurnStep()])
        engine, sent = _engine(source, submit_mode=config.SUBMIT_MODE_IDS)
        await _start(engine)
        await asyncio.sleep(0.05)
        assert sent[0]["type"] == "select_actions"
        assert sent[0]["ids"] == [3, 8]

    @pytest.mark.asyncio
    async def test_ids_mode_falls_back_to_turn_plan(self):
        source = ScriptedSource([PlayCardStep(99, 13)])
        engine, sent = _engine(source, submit_mode=config.SUBMIT_MODE_IDS)
        await _start(engine)
        await asyncio.sleep(0.05)
        assert sent[0]["type"] == "turn_plan"

    @pytest.mark.asyncio
    async def test_single_mode_sends_move_then_chains_attack(self):
        source = ScriptedSource([MoveStep(5, Destination.cell(12)), AttackStep(5, 9)])
        engine, sent = _engine(source, submit_mode=config.SUBMIT_MODE_SINGLE)
        await _start(engine)
        await asyncio.sleep(0.05)

        assert len(sent) == 1
        assert sent[0]["type"] == "select_action"
        assert sent[0]["id"] == 1
        assert len(engine.chain) == 1

        await engine.handle_message(parse_message(json.dumps(
            {"type": "action_result", "id": 1, "req_id": sent[0]["req_id"]})))
        assert not engine.inflight.busy

        await engine.handle_message(AvailableActionsMsg([
            {"id": 21, "unit_attack": {"attacker_unit_id": 5, "target_unit_id": 9}},
            {"id": 22, "end_turn": True},
        ]))
        assert sent[-1]["type"] == "select_action"
        assert sent[-1]["id"] == 21
        assert len(engine.chain) == 0


class TestRetry:
    STEPS = [AttackStep(5, 9), AttackStep(6, 11), PlayCardStep(20, 13)]

    @pytest.mark.asyncio
    async def test_total_failure_retries_exactly_once(self):
        source = ScriptedSource(self.STEPS, repeat=True)
        engine, sent = _engine(source)
        await _start(engine)
        await asyncio.sleep(0.05)
        assert len(sent) == 1

        await _plan_result(engine, [False, False, False], sent[0]["req_id"])
        assert engine.tracker.state.retried
        await asyncio.sleep(0.08)
        assert source.calls == 2
        assert len(sent) == 2
        assert sent[1]["type"] == "turn_plan"

        await _plan_result(engine, [False, False, False], sent[1]["req_id"])
        await asyncio.sleep(0.05)
        assert source.calls == 2
        assert len(sent) == 2
        assert source.results == [0, 0]

        # the idle watchdog still ends the turn eventually
        engine.watchdog_tick(now=time.monotonic() + 60)
        assert sent[-1]["type"] == "select_action"
        assert sent[-1]["id"] == 8

    @pytest.mark.asyncio
    async def test_partial_success_does_not_retry(self):
        source = ScriptedSource(self.STEPS, repeat=True)
        engine, sent = _engine(source)
        await _start(engine)
        await asyncio.sleep(0.05)
        await _plan_result(engine, [True, False, False], sent[0]["req_id"])
        await asyncio.sleep(0.05)
        assert source.calls == 1
        assert len(sent) == 1
        assert not engine.tracker.state.retried

    @pytest.mark.asyncio
    async def test_result_for_other_request_ignored(self):
        engine, sent = _engine(ScriptedSource(self.STEPS))
        await _start(engine)
        await asyncio.sleep(0.05)
        await _plan_result(engine, [False], "not-ours")
        assert engine.inflight.batch is not None
        assert not engine.tracker.state.retried

    @pytest.mark.asyncio
    async def test_batch_summary_counts(self):
        source = ScriptedSource(self.STEPS)
        engine, sent = _engine(source)
        await _start(engine)
        await asyncio.sleep(0.05)
        await engine.handle_message(parse_message(json.dumps(
            {"type": "action_batch_summary", "applied": [2, 5], "failed": [7]})))
        assert source.results == [2]
        assert not engine.inflight.busy

    @pytest.mark.asyncio
    async def test_retry_resends_moves_from_failed_batch(self):
        source = ScriptedSource([MoveStep(6, Destination.cell(14))], repeat=True)
        engine, sent = _engine(source)
        await _start(engine)
        await asyncio.sleep(0.05)
        assert 6 in engine.tracker.state.moved_units

        await _plan_result(engine, [False], sent[0]["req_id"])
        assert 6 not in engine.tracker.state.moved_units
        await asyncio.sleep(0.08)

        assert [m["type"] for m in sent] == ["turn_plan", "turn_plan"]
        assert _wire_steps(sent[1]) == _wire_steps(sent[0])
        assert not engine.tracker.state.ended_this_turn

    @pytest.mark.asyncio
    async def test_partial_success_keeps_moves_recorded(self):
        source = ScriptedSource([MoveStep(6, Destination.cell(14)), PlayCardStep(20, 13)])
        engine, sent = _engine(source)
        await _start(engine)
        await asyncio.sleep(0.05)
        await _plan_result(engine, [True, False], sent[0]["req_id"])
        assert 6 in engine.tracker.state.moved_units


class TestErrors:
    @pytest.mark.asyncio
    async def test_plan_error_precondition_reflushes(self):
        engine, sent = _engine(ScriptedSource([AttackStep(5, 9)]))
        await _start(engine)
        await asyncio.sleep(0.05)
        engine.accumulator.push(PlayCardStep(20, 13))
        await asyncio.sleep(0.03)
        assert len(sent) == 1

        await engine.handle_message(parse_message(json.dumps(
            {"type": "plan_error", "reason": "batch inflight", "req_id": sent[0]["req_id"]})))
        assert len(sent) == 2
        assert _wire_steps(sent[1]) == [{"type": "play_card", "card_id": 20,
                                         "to": {"cell_index": 13}}]

    @pytest.mark.asyncio
    async def test_action_error_other_reason_keeps_steps(self):
        engine, sent = _engine(ScriptedSource(), submit_mode=config.SUBMIT_MODE_SINGLE)
        await _start(engine)
        await asyncio.sleep(0.01)
        engine.accumulator.push(PlayCardStep(20, 13))
        await engine.handle_message(parse_message(json.dumps(
            {"type": "action_error", "id": 8, "reason": "stale id", "req_id": sent[0]["req_id"]})))
        assert not engine.inflight.busy
        assert len(engine.accumulator) == 1

        await asyncio.sleep(0.03)
        assert sent[-1]["id"] == 7
        assert len(engine.accumulator) == 0

    @pytest.mark.asyncio
    async def test_rejected_end_turn_reopens_turn(self):
        engine, sent = _engine(ScriptedSource())
        await _start(engine)
        await asyncio.sleep(0.01)
        assert sent[-1]["id"] == 8
        assert engine.tracker.state.ended_this_turn

        await engine.handle_message(parse_message(json.dumps(
            {"type": "action_error", "id": 8, "reason": "rejected", "req_id": sent[0]["req_id"]})))
        assert not engine.tracker.state.ended_this_turn

        engine.watchdog_tick(now=time.monotonic() + 60)
        assert len(sent) == 2
        assert sent[-1]["type"] == "select_action"
        assert sent[-1]["id"] == 8

    @pytest.mark.asyncio
    async def test_failed_end_step_in_batch_reopens_turn(self):
        engine, sent = _engine(ScriptedSource([AttackStep(5, 9), EndTurnStep()]))
        await _start(engine)
        await asyncio.sleep(0.05)
        assert _wire_steps(sent[0])[-1] == {"type": "end_turn"}
        assert engine.tracker.state.ended_this_turn

        await _plan_result(engine, [True, False], sent[0]["req_id"])
        assert not engine.tracker.state.ended_this_turn

        engine.watchdog_tick(now=time.monotonic() + 60)
        assert sent[-1] == {"type": "select_action", "id": 8,
                            "req_id": engine.inflight.single.correlation_id}

    @pytest.mark.asyncio
    async def test_applied_end_step_keeps_turn_ended(self):
        engine, sent = _engine(ScriptedSource([AttackStep(5, 9), EndTurnStep()]))
        await _start(engine)
        await asyncio.sleep(0.05)
        await _plan_result(engine, [False, True], sent[0]["req_id"])
        assert engine.tracker.state.ended_this_turn

    @pytest.mark.asyncio
    async def test_select_actions_summary_reports_end_turn_failure(self):
        source = ScriptedSource([MoveStep(5, Destination.cell(12)), AttackStep(5, 9), EndTurnStep()])
        engine, sent = _engine(source, submit_mode=config.SUBMIT_MODE_IDS)
        await _start(engine)
        await asyncio.sleep(0.05)
        assert sent[0]["ids"] == [3, 8]

        await engine.handle_message(parse_message(json.dumps(
            {"type": "action_batch_summary", "applied": [3], "failed": [8],
             "req_id": sent[0]["req_id"]})))
        assert not engine.tracker.state.ended_this_turn


class TestWatchdog:
    @pytest.mark.asyncio
    async def test_expired_batch_flushes_pending_with_end_turn(self):
        engine, sent = _engine(ScriptedSource([AttackStep(5, 9)]))
        await _start(engine)
        await asyncio.sleep(0.05)
        engine.accumulator.push(PlayCardStep(20, 13))

        engine.watchdog_tick(now=time.monotonic() + 60)

        assert len(sent) == 2
        assert _wire_steps(sent[1]) == [
            {"type": "play_card", "card_id": 20, "to": {"cell_index": 13}},
            {"type": "end_turn"},
        ]
        assert engine.tracker.state.ended_this_turn

    @pytest.mark.asyncio
    async def test_expired_request_without_pending_ends_turn(self):
        engine, sent = _engine(ScriptedSource([AttackStep(5, 9)]))
        await _start(engine)
        await asyncio.sleep(0.05)
        engine.watchdog_tick(now=time.monotonic() + 60)
        assert sent[-1]["type"] == "select_action"
        assert sent[-1]["id"] == 8

    @pytest.mark.asyncio
    async def test_single_mode_timeout_sends_end_turn(self):
        engine, sent = _engine(ScriptedSource([AttackStep(5, 9)]),
                               submit_mode=config.SUBMIT_MODE_SINGLE)
        await _start(engine)
        await asyncio.sleep(0.05)
        engine.accumulator.push(PlayCardStep(20, 13))
        engine.watchdog_tick(now=time.monotonic() + 60)
        assert sent[-1]["id"] == 8

    @pytest.mark.asyncio
    async def test_fresh_request_left_alone(self):
        engine, sent = _engine(ScriptedSource([AttackStep(5, 9)]))
        await _start(engine)
        await asyncio.sleep(0.05)
        engine.watchdog_tick()
        assert len(sent) == 1
        assert engine.inflight.busy

    @pytest.mark.asyncio
    async def test_idle_turn_is_ended(self):
        engine, sent = _engine(ScriptedSource([AttackStep(5, 9)]))
        await _start(engine)
        await asyncio.sleep(0.05)
        await _plan_result(engine, [True], sent[0]["req_id"])

        engine.watchdog_tick(now=time.monotonic() + 1)
        assert len(sent) == 1
        engine.watchdog_tick(now=time.monotonic() + 60)
        assert sent[-1]["type"] == "select_action"
        assert sent[-1]["id"] == 8

    def test_decision_timeout_is_clamped(self):
        engine, _ = _engine(ScriptedSource(), decision_timeout_ms=10)
        assert engine.decision_timeout_ms == config.DECISION_TIMEOUT_MIN_MS
        engine, _ = _engine(ScriptedSource(), decision_timeout_ms=10 ** 7)
        assert engine.decision_timeout_ms == config.DECISION_TIMEOUT_MAX_MS


class TestDeferredFlush:
    @pytest.mark.asyncio
    async def test_steps_held_while_busy_go_out_after_result(self):
        engine, sent = _engine(ScriptedSource([AttackStep(5, 9)]))
        await _start(engine)
        await asyncio.sleep(0.05)
        engine.accumulator.push(PlayCardStep(20, 13))
        await asyncio.sleep(0.03)
        assert len(sent) == 1
        assert len(engine.accumulator) == 1

        await _plan_result(engine, [True], sent[0]["req_id"])
        await asyncio.sleep(0.03)

        assert len(sent) == 2
        assert _wire_steps(sent[1]) == [{"type": "play_card", "card_id": 20,
                                         "to": {"cell_index": 13}}]
        assert len(engine.accumulator) == 0

    @pytest.mark.asyncio
    async def test_held_steps_flushed_on_next_listing(self):
        engine, sent = _engine(ScriptedSource([AttackStep(5, 9)]))
        await _start(engine)
        await asyncio.sleep(0.05)
        engine.accumulator.push(PlayCardStep(20, 13))
        await asyncio.sleep(0.03)
        assert not engine.accumulator.timer_armed

        engine.inflight.clear_all()
        await engine.handle_message(AvailableActionsMsg(ACTIONS))

        assert len(sent) == 2
        assert _wire_steps(sent[1])[0]["type"] == "play_card"
        assert len(engine.accumulator) == 0

    @pytest.mark.asyncio
    async def test_idle_watchdog_flushes_held_steps_with_end_turn(self):
        engine, sent = _engine(ScriptedSource([AttackStep(5, 9, urgent=True)]), debounce_ms=5000)
        await _start(engine)
        await asyncio.sleep(0.01)
        assert len(sent) == 1
        engine.accumulator.push(PlayCardStep(20, 13))

        await _plan_result(engine, [True], sent[0]["req_id"])
        await engine.handle_message(AvailableActionsMsg(ACTIONS))
        assert len(sent) == 1

        engine.watchdog_tick(now=time.monotonic() + 120)

        assert len(sent) == 2
        assert _wire_steps(sent[1]) == [
            {"type": "play_card", "card_id": 20, "to": {"cell_index": 13}},
            {"type": "end_turn"},
        ]
        assert engine.tracker.state.ended_this_turn


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_turn_boundary_clears_pending_work(self):
        engine, sent = _engine(ScriptedSource())
        await _start(engine)
        await asyncio.sleep(0.01)
        engine.accumulator.push(PlayCardStep(20, 13))
        engine.chain.enqueue(5, 9, engine.inflight.generation)

        await engine.handle_message(StateMsg(dict(SNAPSHOT, turn=2)))

        assert len(engine.accumulator) == 0
        assert len(engine.chain) == 0
        assert engine.tracker.turn_id == 2
        assert not engine.tracker.state.ended_this_turn
        engine.game_logger.log_event.assert_any_call("turn_start", turn=2)

    @pytest.mark.asyncio
    async def test_disconnect_drops_connection_state(self):
        engine, sent = _engine(ScriptedSource([AttackStep(5, 9)]))
        await _start(engine)
        await asyncio.sleep(0.05)
        engine.on_disconnect()
        assert not engine.inflight.busy
        assert engine.listing is None
        assert engine.board is not None

    @pytest.mark.asyncio
    async def test_game_ready_resets_and_opens_session(self):
        engine, sent = _engine(ScriptedSource())
        await _start(engine)
        await engine.handle_message(GameReadyMsg())
        assert engine.board is None
        assert engine.tracker.turn_id is None
        engine.game_logger.open_session.assert_called_once()

    @pytest.mark.asyncio
    async def test_game_over_logged(self):
        engine, sent = _engine(ScriptedSource())
        await engine.handle_message(GameOverMsg(result="win"))
        engine.game_logger.log_event.assert_called_with("game_over", result="win")

    def test_send_without_transport_is_dropped(self):
        engine = TurnEngine(ScriptedSource(), send=None, game_logger=MagicMock())
        engine._send({"type": "subscribe"})
        engine.game_logger.log_outgoing.assert_called_once()

    @pytest.mark.asyncio
    async def test_unknown_message_changes_nothing(self, caplog):
        engine, sent = _engine(ScriptedSource())
        with caplog.at_level("DEBUG", logger="companion.engine"):
            await engine.handle_message(UnknownMsg(raw_data={"type": "mystery"}))
        assert sent == []
        assert "mystery" in caplog.text
