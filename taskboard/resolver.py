"""
Reorder resolver: turns "put task T at index i of lane L" into position writes.

Common case is a single write (midpoint between the new neighbours). When
there is no free integer between them, or the task lands at either end of
the lane, the lane is renumbered 0..n-1 and only rows whose value changed
are written.
"""
import logging
from typing import List, Optional, Sequence

from .errors import NotFound, ConcurrencyConflict
from .schema import Lane, MoveResult, PositionUpdate, TaskCard
from .store import TaskStore

logger = logging.getLogger(__name__)


def clamp_index(index: int, count: int) -> int:
    """Clamp a target index into [0, count]."""
    return max(0, min(int(index), count))


def plan_move(moved: TaskCard, siblings: Sequence[TaskCard], lane: Lane, index: int,
              current_index: Optional[int] = None) -> MoveResult:
    """
    Compute the writes for a move without touching storage.

    `siblings` is the target lane in board order with the moved task removed,
    `index` is already clamped, and `current_index` is the task's index in
    that lane today (None when it lives in another lane). The moved task's own
    write, when there is one, comes first in `updates`.
    """
    if current_index is not None and current_index == index:
        return MoveResult(moved.task_id, lane, moved.position)

    before = siblings[index - 1] if index > 0 else None
    after = siblings[index] if index < len(siblings) else None

    if before is not None and after is not None and after.position - before.position >= 2:
        position = (before.position + after.position) // 2
        update = PositionUpdate(moved.task_id, lane, position)
        return MoveResult(moved.task_id, lane, position, updates=[update])

    # No integer gap, or an end of the lane: renumber in final order
    ordered: List[TaskCard] = list(siblings)
    ordered.insert(index, moved)
    updates = []
    for i, card in enumerate(ordered):
        if card is moved:
            if card.lane != lane or card.position != i:
                updates.insert(0, PositionUpdate(card.task_id, lane, i))
        elif card.position != i:
            updates.append(PositionUpdate(card.task_id, lane, i))
    return MoveResult(moved.task_id, lane, index, updates=updates, renumbered=True)


class ReorderResolver:
    """Applies moves against a TaskStore, one transaction per move."""

    def __init__(self, store: TaskStore):
        self.store = store

    def resolve_move(self, task_id: str, target_lane, target_index: int,
                     expected_version: Optional[int] = None) -> MoveResult:
        """
        Move a task to `target_index` of `target_lane`.

        Raises NotFound, InvalidLane or ConcurrencyConflict; on any error the
        transaction rolls back and nothing is written. Errors are not retried.
        """
        lane = Lane.from_str(target_lane)
        with self.store.transaction() as conn:
            moved = self.store.get(task_id, conn=conn)
            if moved is None or moved.is_archived:
                raise NotFound(f"Task {task_id} not found", task_id=task_id)
            if expected_version is not None and expected_version != moved.version:
                raise ConcurrencyConflict(
                    f"Task {task_id} is at version {moved.version}, expected {expected_version}",
                    task_id=task_id,
                )

            lane_cards = self.store.list_by_lane(lane, conn=conn)
            ids = [c.task_id for c in lane_cards]
            current_index = ids.index(task_id) if task_id in ids else None
            siblings = [c for c in lane_cards if c.task_id != task_id]
            index = clamp_index(target_index, len(siblings))

            result = plan_move(moved, siblings, lane, index, current_index=current_index)
            for update in result.updates:
                self.store.set_position(update.task_id, update.lane, update.position, conn=conn)

        if result.noop:
            logger.debug(f"Move {task_id} -> {lane.value}[{index}] is a no-op")
        else:
            logger.info(
                f"Moved {task_id} {moved.lane.value}@{moved.position} -> "
                f"{lane.value}[{index}]@{result.position}"
                + (f" (renumbered, {len(result.updates)} rows)" if result.renumbered else "")
            )
        return result
