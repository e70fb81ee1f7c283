"""
Tests for the board core: schema, position ledger, reorder resolver.
"""
import random

import pytest

from taskboard.errors import (
    ConcurrencyConflict, InvalidLane, InvalidReference, NotFound, ValidationFailed,
)
from taskboard.resolver import ReorderResolver, clamp_index, plan_move
from taskboard.schema import Lane, TaskCard
from taskboard.store import snapshot_positions

from conftest import add_tasks, lane_ids, lane_positions


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Schema
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_lane_parsing():
    assert Lane.from_str("in_review") == Lane.IN_REVIEW
    assert Lane.from_str(" DONE ") == Lane.DONE
    assert Lane.from_str(Lane.TODO) == Lane.TODO
    with pytest.raises(InvalidLane):
        Lane.from_str("blocked")


def test_card_from_dict_accepts_status_alias():
    card = TaskCard.from_dict({"task_id": "TSK-001", "title": "x", "status": "done", "position": 3})
    assert card.lane == Lane.DONE
    assert card.position == 3


def test_enter_lane_timestamps():
    card = TaskCard(task_id="TSK-001", title="x")
    card.enter_lane(Lane.IN_PROGRESS)
    assert card.started_at is not None
    card.enter_lane(Lane.DONE)
    assert card.completed_at is not None
    card.enter_lane(Lane.TODO)
    assert card.completed_at is None
    assert card.started_at is not None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Position ledger
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_appends_to_end_of_lane(store):
    a, b = add_tasks(store, "todo", "A", "B")
    (c,) = add_tasks(store, "done", "C")
    assert (a.task_id, a.position) == ("TSK-001", 0)
    assert (b.task_id, b.position) == ("TSK-002", 1)
    assert c.position == 0  # empty lane starts at 0


def test_create_after_gap_uses_max_plus_one(store):
    a, b = add_tasks(store, "todo", "A", "B")
    store.set_position(b.task_id, "todo", 10)
    (c,) = add_tasks(store, "todo", "C")
    assert c.position == 11


def test_create_requires_title(store):
    with pytest.raises(ValidationFailed):
        store.create(TaskCard(task_id="", title="  "))


def test_list_by_lane_orders_by_position(store):
    a, b, c = add_tasks(store, "todo", "A", "B", "C")
    store.set_position(a.task_id, "todo", 7)
    assert lane_ids(store, "todo") == [b.task_id, c.task_id, a.task_id]


def test_list_by_lane_breaks_ties_deterministically(store):
    a, b, c = add_tasks(store, "todo", "A", "B", "C")
    store.set_position(c.task_id, "todo", 0)
    first = lane_ids(store, "todo")
    # Tie on position 0 between A and C: older row first
    assert first == [a.task_id, c.task_id, b.task_id]
    # Idempotent reads
    for _ in range(5):
        assert lane_ids(store, "todo") == first


def test_list_by_lane_skips_archived(store):
    a, b = add_tasks(store, "todo", "A", "B")
    store.archive(a.task_id)
    assert lane_ids(store, "todo") == [b.task_id]
    assert len(store.list_by_lane("todo", include_archived=True)) == 2


def test_set_position_single_row(store):
    a, b, c = add_tasks(store, "todo", "A", "B", "C")
    before = store.get(b.task_id).version
    version = store.set_position(b.task_id, "in_review", 4)
    assert version == before + 1
    assert store.get(b.task_id).lane == Lane.IN_REVIEW
    assert snapshot_positions(store.list_by_lane("todo")) == {a.task_id: 0, c.task_id: 2}


def test_set_position_errors(store):
    (a,) = add_tasks(store, "todo", "A")
    with pytest.raises(NotFound):
        store.set_position("TSK-999", "todo", 0)
    with pytest.raises(InvalidReference):
        store.set_position(a.task_id, "blocked", 0)
    with pytest.raises(InvalidReference):
        store.set_position(a.task_id, "todo", -1)


def test_set_position_expected_version(store):
    (a,) = add_tasks(store, "todo", "A")
    store.set_position(a.task_id, "todo", 3, expected_version=0)
    with pytest.raises(ConcurrencyConflict):
        store.set_position(a.task_id, "todo", 5, expected_version=0)
    assert store.get(a.task_id).position == 3


def test_set_position_tracks_workflow_timestamps(store):
    (a,) = add_tasks(store, "todo", "A")
    store.set_position(a.task_id, "in_progress", 0)
    assert store.get(a.task_id).started_at is not None
    store.set_position(a.task_id, "done", 0)
    assert store.get(a.task_id).completed_at is not None
    store.set_position(a.task_id, "todo", 0)
    assert store.get(a.task_id).completed_at is None


def test_update_fields_rejects_ordering_fields(store):
    (a,) = add_tasks(store, "todo", "A")
    with pytest.raises(ValidationFailed):
        store.update_fields(a.task_id, {"position": 4})
    with pytest.raises(ValidationFailed):
        store.update_fields(a.task_id, {"lane": "done"})
    with pytest.raises(ValidationFailed):
        store.update_fields(a.task_id, {"priority": "whenever"})
    updated = store.update_fields(a.task_id, {"title": "A2", "tags": ["x"]})
    assert updated.title == "A2"
    assert updated.tags == ["x"]
    assert updated.position == 0


def test_delete_leaves_gaps(store):
    a, b, c = add_tasks(store, "todo", "A", "B", "C")
    store.delete(b.task_id)
    assert lane_positions(store, "todo") == [0, 2]
    with pytest.raises(NotFound):
        store.delete(b.task_id)


def test_lane_counts(store):
    add_tasks(store, "todo", "A", "B")
    add_tasks(store, "done", "C")
    counts = store.lane_counts()
    assert counts["todo"] == 2
    assert counts["done"] == 1
    assert counts["cancelled"] == 0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Resolver: planning
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _card(task_id, lane, position):
    return TaskCard(task_id=task_id, title=task_id, lane=lane, position=position)


def test_clamp_index():
    assert clamp_index(-3, 4) == 0
    assert clamp_index(2, 4) == 2
    assert clamp_index(9, 4) == 4


def test_plan_uses_midpoint_when_gap_exists():
    siblings = [_card("A", Lane.TODO, 0), _card("B", Lane.TODO, 8)]
    moved = _card("C", Lane.DONE, 0)
    result = plan_move(moved, siblings, Lane.TODO, 1)
    assert result.position == 4
    assert not result.renumbered
    assert [u.task_id for u in result.updates] == ["C"]


def test_plan_renumbers_without_gap():
    siblings = [_card("A", Lane.TODO, 3), _card("B", Lane.TODO, 4)]
    moved = _card("C", Lane.DONE, 0)
    result = plan_move(moved, siblings, Lane.TODO, 1)
    assert result.renumbered
    assert {(u.task_id, u.position) for u in result.updates} == {("C", 1), ("A", 0), ("B", 2)}
    assert result.updates[0].task_id == "C"


def test_plan_renumber_skips_unchanged_rows():
    siblings = [_card("A", Lane.TODO, 0), _card("B", Lane.TODO, 1)]
    moved = _card("C", Lane.DONE, 5)
    result = plan_move(moved, siblings, Lane.TODO, 2)
    assert [(u.task_id, u.position) for u in result.updates] == [("C", 2)]


def test_plan_noop_at_current_index():
    siblings = [_card("A", Lane.TODO, 0), _card("C", Lane.TODO, 9)]
    moved = _card("B", Lane.TODO, 5)
    result = plan_move(moved, siblings, Lane.TODO, 1, current_index=1)
    assert result.noop
    assert result.position == 5


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Resolver: scenarios
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_move_to_head_of_lane(store):
    a, b, c = add_tasks(store, "todo", "A", "B", "C")
    ReorderResolver(store).resolve_move(b.task_id, "todo", 0)
    cards = store.list_by_lane("todo")
    assert [x.task_id for x in cards] == [b.task_id, a.task_id, c.task_id]
    assert cards[0].position < cards[1].position < cards[2].position
    assert store.get(c.task_id).position == 2


def test_move_into_other_lane_at_end(store):
    (x,) = add_tasks(store, "done", "X")
    (y,) = add_tasks(store, "todo", "Y")
    result = ReorderResolver(store).resolve_move(y.task_id, "done", 1)
    assert lane_ids(store, "done") == [x.task_id, y.task_id]
    assert lane_ids(store, "todo") == []
    assert store.get(x.task_id).position == 0
    assert result.lane == Lane.DONE
    assert [u.task_id for u in result.updates] == [y.task_id]


def test_move_between_adjacent_positions_renumbers(store):
    a, b = add_tasks(store, "todo", "A", "B")
    (c,) = add_tasks(store, "in_progress", "C")
    result = ReorderResolver(store).resolve_move(c.task_id, "todo", 1)
    assert result.renumbered
    assert lane_ids(store, "todo") == [a.task_id, c.task_id, b.task_id]
    assert lane_positions(store, "todo") == [0, 1, 2]


def test_move_into_gap_touches_one_row(store):
    a, b = add_tasks(store, "todo", "A", "B")
    store.set_position(b.task_id, "todo", 10)
    (c,) = add_tasks(store, "in_progress", "C")
    versions = {t: store.get(t).version for t in (a.task_id, b.task_id)}

    result = ReorderResolver(store).resolve_move(c.task_id, "todo", 1)

    assert not result.renumbered
    assert result.position == 5
    assert lane_ids(store, "todo") == [a.task_id, c.task_id, b.task_id]
    assert {t: store.get(t).version for t in versions} == versions


def test_target_index_is_clamped(store):
    a, b = add_tasks(store, "todo", "A", "B")
    (c,) = add_tasks(store, "done", "C")
    ReorderResolver(store).resolve_move(c.task_id, "todo", 50)
    assert lane_ids(store, "todo") == [a.task_id, b.task_id, c.task_id]
    ReorderResolver(store).resolve_move(c.task_id, "todo", -4)
    assert lane_ids(store, "todo") == [c.task_id, a.task_id, b.task_id]


def test_noop_move_changes_nothing(store):
    a, b, c = add_tasks(store, "todo", "A", "B", "C")
    store.set_position(b.task_id, "todo", 5)
    store.set_position(c.task_id, "todo", 10)
    before = {card.task_id: (card.position, card.version) for card in store.list_by_lane("todo")}

    resolver = ReorderResolver(store)
    assert resolver.resolve_move(a.task_id, "todo", 0).noop
    assert resolver.resolve_move(b.task_id, "todo", 1).noop
    assert resolver.resolve_move(c.task_id, "todo", 99).noop  # clamps to its own index

    after = {card.task_id: (card.position, card.version) for card in store.list_by_lane("todo")}
    assert after == before


def test_moving_out_leaves_source_lane_untouched(store):
    a, b, c, d = add_tasks(store, "todo", "A", "B", "C", "D")
    store.set_position(d.task_id, "todo", 9)
    before = snapshot_positions(store.list_by_lane("todo"))

    ReorderResolver(store).resolve_move(b.task_id, "in_review", 0)

    del before[b.task_id]
    assert snapshot_positions(store.list_by_lane("todo")) == before


def test_move_unknown_task(store):
    with pytest.raises(NotFound):
        ReorderResolver(store).resolve_move("TSK-404", "todo", 0)


def test_move_archived_task(store):
    (a,) = add_tasks(store, "todo", "A")
    store.archive(a.task_id)
    with pytest.raises(NotFound):
        ReorderResolver(store).resolve_move(a.task_id, "done", 0)


def test_move_invalid_lane(store):
    (a,) = add_tasks(store, "todo", "A")
    with pytest.raises(InvalidLane):
        ReorderResolver(store).resolve_move(a.task_id, "blocked", 0)
    assert store.get(a.task_id).lane == Lane.TODO


def test_move_with_stale_version_writes_nothing(store):
    a, b = add_tasks(store, "todo", "A", "B")
    store.set_position(a.task_id, "todo", 0)  # version 1
    with pytest.raises(ConcurrencyConflict):
        ReorderResolver(store).resolve_move(a.task_id, "todo", 1, expected_version=0)
    assert lane_ids(store, "todo") == [a.task_id, b.task_id]


def test_failed_renumber_rolls_back(store, monkeypatch):
    a, b, c = add_tasks(store, "todo", "A", "B", "C")
    before = snapshot_positions(store.list_by_lane("todo"))

    real = store.set_position
    calls = []

    def flaky(*args, **kwargs):
        calls.append(args[0])
        if len(calls) == 2:
            raise RuntimeError("disk on fire")
        return real(*args, **kwargs)

    monkeypatch.setattr(store, "set_position", flaky)
    with pytest.raises(RuntimeError):
        ReorderResolver(store).resolve_move(c.task_id, "todo", 0)
    monkeypatch.undo()

    assert len(calls) == 2
    assert snapshot_positions(store.list_by_lane("todo")) == before


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Resolver: random replay against a reference model
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_random_moves_match_reference_model(store, seed):
    rng = random.Random(seed)
    lanes = [lane.value for lane in Lane]
    model = {lane: [] for lane in lanes}
    for i in range(12):
        lane = rng.choice(lanes)
        (card,) = add_tasks(store, lane, f"T{i}")
        model[lane].append(card.task_id)

    resolver = ReorderResolver(store)
    all_ids = [tid for ids in model.values() for tid in ids]
    for _ in range(150):
        task_id = rng.choice(all_ids)
        target = rng.choice(lanes)
        index = rng.randint(-1, 14)

        for ids in model.values():
            if task_id in ids:
                ids.remove(task_id)
        model[target].insert(clamp_index(index, len(model[target])), task_id)

        resolver.resolve_move(task_id, target, index)

        positions = lane_positions(store, target)
        assert positions == sorted(set(positions))  # strictly increasing

    for lane in lanes:
        assert lane_ids(store, lane) == model[lane]
