"""Tests for companion/turn_state.py - per-turn state and orientation inference."""
from companion import config
from companion.models import (
    ActionListing,
    AttackStep,
    Destination,
    EndTurnStep,
    HeroPowerStep,
    MoveStep,
    MoveThenAttackStep,
    PlayCardStep,
)
from companion.turn_state import TurnState, TurnTracker, extract_turn_id, infer_flipped


def _snapshot(turn, self_ids=(1, 2), enemy_ids=(7, 8)):
    return {
        "turn": turn,
        "self_units": [{"unit_id": i} for i in self_ids],
        "enemy_units": [{"unit_id": i} for i in enemy_ids],
    }


def _listing(*movers):
    return ActionListing.from_raw(
        [{"id": n + 1, "move_unit": {"unit_id": u, "to_cell_index": 0}} for n, u in enumerate(movers)],
        generation=1,
    )


class TestTurnState:
    def test_after_dispatch_records_everything(self):
        state = TurnState(turn_id=3).after_dispatch([
            MoveStep(5, Destination.cell(1)),
            MoveThenAttackStep(6, Destination.cell(2), 9),
            AttackStep(7, 9),
            HeroPowerStep(),
            PlayCardStep(1, 3),
        ])
        assert state.moved_units == frozenset({5, 6})
        assert state.hero_power_used
        assert not state.ended_this_turn
        assert state.step_count == 5
        assert state.turn_id == 3

    def test_end_turn_marks_ended(self):
        assert TurnState().after_dispatch([EndTurnStep()]).ended_this_turn

    def test_values_are_replaced_not_mutated(self):
        original = TurnState(turn_id=1)
        updated = original.after_dispatch([MoveStep(5, Destination.cell(1))])
        assert original.moved_units == frozenset()
        assert updated is not original

    def test_with_retry(self):
        assert TurnState().with_retry().retried


class TestExtractTurnId:
    def test_turn_then_turn_id(self):
        assert extract_turn_id({"turn": 4}) == 4
        assert extract_turn_id({"turn_id": "t9"}) == "t9"
        assert extract_turn_id({}) is None
        assert extract_turn_id(None) is None


class TestInferFlipped:
    def test_self_majority_is_as_is(self):
        assert infer_flipped(_listing(1, 2, 7), _snapshot(1)) is False

    def test_enemy_majority_is_flipped(self):
        assert infer_flipped(_listing(7, 8, 1), _snapshot(1)) is True

    def test_tie_keeps_previous(self):
        assert infer_flipped(_listing(1, 7), _snapshot(1), previous=True) is True
        assert infer_flipped(_listing(), _snapshot(1), previous=False) is False


class TestTurnTracker:
    def test_boundary_replaces_state(self):
        tracker = TurnTracker(config.ORIENTATION_AUTO)
        assert tracker.observe_snapshot(_snapshot(1), None)
        tracker.record_dispatch([MoveStep(1, Destination.cell(0)), HeroPowerStep()])
        tracker.mark_retried()
        assert not tracker.observe_snapshot(_snapshot(1), None)
        assert tracker.state.moved_units == frozenset({1})

        assert tracker.observe_snapshot(_snapshot(2), None)
        assert tracker.state == TurnState(turn_id=2)

    def test_snapshot_without_turn_is_not_a_boundary(self):
        tracker = TurnTracker(config.ORIENTATION_AUTO)
        tracker.observe_snapshot(_snapshot(1), None)
        assert not tracker.observe_snapshot({"self_units": []}, None)
        assert tracker.turn_id == 1

    def test_orientation_inferred_at_boundary(self):
        tracker = TurnTracker(config.ORIENTATION_AUTO)
        tracker.observe_snapshot(_snapshot(1), _listing(7, 8))
        assert tracker.flipped is True

    def test_orientation_deferred_to_first_listing(self):
        tracker = TurnTracker(config.ORIENTATION_AUTO)
        snap = _snapshot(1)
        tracker.observe_snapshot(snap, None)
        assert tracker.flipped is False
        tracker.observe_listing(_listing(7, 8), snap)
        assert tracker.flipped is True
        # only the first listing after the boundary counts
        tracker.observe_listing(_listing(1, 2), snap)
        assert tracker.flipped is True

    def test_pinned_orientation_is_never_inferred(self):
        tracker = TurnTracker(config.ORIENTATION_FLIPPED)
        assert tracker.flipped is True
        tracker.observe_snapshot(_snapshot(1), _listing(1, 2))
        assert tracker.flipped is True

        as_is = TurnTracker(config.ORIENTATION_AS_IS)
        as_is.observe_snapshot(_snapshot(1), _listing(7, 8))
        assert as_is.flipped is False

    def test_restore_rolls_back_dispatch_but_keeps_retry(self):
        tracker = TurnTracker(config.ORIENTATION_AS_IS)
        tracker.observe_snapshot(_snapshot(1), None)
        before = tracker.state
        tracker.record_dispatch([MoveStep(1, Destination.cell(0)), EndTurnStep()])
        tracker.mark_retried()

        tracker.restore(before)

        assert tracker.state.moved_units == frozenset()
        assert not tracker.state.ended_this_turn
        assert tracker.state.retried

    def test_restore_ignores_state_from_another_turn(self):
        tracker = TurnTracker(config.ORIENTATION_AS_IS)
        tracker.observe_snapshot(_snapshot(1), None)
        old = tracker.state
        tracker.observe_snapshot(_snapshot(2), None)
        tracker.record_dispatch([MoveStep(2, Destination.cell(0))])
        tracker.restore(old)
        assert tracker.turn_id == 2
        assert tracker.state.moved_units == frozenset({2})

    def test_reopen_clears_only_the_end_flag(self):
        tracker = TurnTracker(config.ORIENTATION_AS_IS)
        tracker.observe_snapshot(_snapshot(1), None)
        tracker.record_dispatch([MoveStep(1, Destination.cell(0)), EndTurnStep()])
        tracker.reopen()
        assert not tracker.state.ended_this_turn
        assert tracker.state.moved_units == frozenset({1})
