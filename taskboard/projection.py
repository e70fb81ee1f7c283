"""
Optimistic projection: the client-side mirror of the board.

A move is applied locally right away, then confirmed or rolled back when the
server answers. Each move is an attempt with its own snapshot of the task's
pre-move (lane, position, index), kept in an arena keyed by attempt id, so
stacked moves on the same card roll back to the right state and a late reply
to a superseded attempt never clobbers a newer optimistic move.

Attempt lifecycle:
  Applied-locally → Confirmed → (Idle)
                  → Rolled-back → (Idle)
"""
import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from .errors import NotFound, describe_failure
from .schema import Lane, LANE_ORDER, PositionUpdate, TaskCard

logger = logging.getLogger(__name__)


class AttemptStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class TaskSnapshot:
    """Where a card was before a move."""
    lane: Lane
    position: int
    index: int


@dataclass
class MoveAttempt:
    """One optimistic move, tagged with a per-task sequence number."""
    attempt_id: str
    task_id: str
    seq: int
    lane: Lane
    index: int
    snapshot: TaskSnapshot
    status: AttemptStatus = AttemptStatus.PENDING
    server_task: Optional[TaskCard] = None
    updates: List[PositionUpdate] = field(default_factory=list)
    error: Optional[Exception] = None


def _sort_key(card: TaskCard):
    return (card.position, card.created_at, card.task_id)


def _as_update(value) -> PositionUpdate:
    if isinstance(value, PositionUpdate):
        return value
    return PositionUpdate(value["task_id"], Lane.from_str(value["lane"]), int(value["position"]))


class OptimisticProjection:
    """
    Local task collection with optimistic moves.

    Instances are independent; create one per board session and pass it to
    whoever needs it. Safe to settle from worker threads.
    """

    def __init__(self, tasks: Iterable[TaskCard] = ()):
        self._lock = threading.RLock()
        self._tasks: Dict[str, TaskCard] = {}
        self._lanes: Dict[Lane, List[str]] = {lane: [] for lane in LANE_ORDER}
        self._attempts: Dict[str, MoveAttempt] = {}   # arena of live attempts
        self._chains: Dict[str, List[str]] = {}        # task_id -> attempt ids, oldest first
        self._seq: Dict[str, int] = {}
        self.subscribers: Dict[str, list] = {}
        self.last_error: Optional[str] = None
        if tasks:
            self.load(tasks)

    # ──────────────────────────────────────────
    # Events
    # ──────────────────────────────────────────

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """Register a callback ("move_settled", "notice")."""
        self.subscribers.setdefault(event_type, []).append(callback)

    def _emit(self, event_type: str, **kwargs) -> None:
        for callback in self.subscribers.get(event_type, []):
            try:
                callback(**kwargs)
            except Exception:
                logger.exception(f"Error in {event_type} callback")

    # ──────────────────────────────────────────
    # Reads (Board View)
    # ──────────────────────────────────────────

    def get(self, task_id: str) -> Optional[TaskCard]:
        with self._lock:
            card = self._tasks.get(task_id)
            return replace(card) if card else None

    def lane_view(self, lane) -> List[TaskCard]:
        """Cards of one lane in display order."""
        lane = Lane.from_str(lane)
        with self._lock:
            return [replace(self._tasks[tid]) for tid in self._lanes[lane]]

    def board(self) -> Dict[str, List[TaskCard]]:
        """All lanes in workflow order."""
        with self._lock:
            return {lane.value: self.lane_view(lane) for lane in LANE_ORDER}

    def pending(self, task_id: str) -> List[MoveAttempt]:
        """Attempts for a task still waiting on the server."""
        with self._lock:
            return [self._attempts[a] for a in self._chains.get(task_id, [])
                    if self._attempts[a].status is AttemptStatus.PENDING]

    # ──────────────────────────────────────────
    # Authoritative data
    # ──────────────────────────────────────────

    def load(self, tasks: Iterable[TaskCard]) -> None:
        """
        Replace the local mirror with a server listing.

        Outstanding attempts are dropped; their replies will be ignored.
        """
        with self._lock:
            dropped = len(self._attempts)
            self._tasks = {t.task_id: replace(t) for t in tasks if not t.is_archived}
            self._lanes = {lane: [] for lane in LANE_ORDER}
            for card in sorted(self._tasks.values(), key=_sort_key):
                self._lanes[card.lane].append(card.task_id)
            self._attempts.clear()
            self._chains.clear()
        if dropped:
            logger.info(f"Board reloaded, {dropped} in-flight moves dropped")

    def apply_remote(self, task: TaskCard) -> None:
        """
        Merge a task pushed by the server (another client's change).

        While the card has moves in flight its lane/position are left alone;
        the pending replies decide where it ends up.
        """
        with self._lock:
            if task.is_archived:
                self._forget(task.task_id)
                return
            local = self._tasks.get(task.task_id)
            if local is not None and self._chains.get(task.task_id):
                self._tasks[task.task_id] = replace(task, lane=local.lane, position=local.position)
                return
            self._forget(task.task_id)
            self._tasks[task.task_id] = replace(task)
            self._place_by_position(task.task_id)

    def remove(self, task_id: str) -> None:
        with self._lock:
            self._forget(task_id)

    # ──────────────────────────────────────────
    # Moves
    # ──────────────────────────────────────────

    def apply_move(self, task_id: str, lane, index: int) -> MoveAttempt:
        """Apply a move locally (Applied-locally) and return its attempt."""
        lane = Lane.from_str(lane)
        with self._lock:
            card = self._tasks.get(task_id)
            if card is None:
                raise NotFound(f"Task {task_id} not on the board", task_id=task_id)
            snapshot = TaskSnapshot(card.lane, card.position, self._detach(task_id))
            placed = self._insert(task_id, lane, index)
            card.lane = lane
            card.position = placed

            seq = self._seq.get(task_id, 0) + 1
            self._seq[task_id] = seq
            attempt = MoveAttempt(
                attempt_id=f"{task_id}#{seq}",
                task_id=task_id,
                seq=seq,
                lane=lane,
                index=placed,
                snapshot=snapshot,
            )
            self._attempts[attempt.attempt_id] = attempt
            self._chains.setdefault(task_id, []).append(attempt.attempt_id)
        logger.debug(f"Applied {attempt.attempt_id}: {snapshot.lane.value}[{snapshot.index}] -> {lane.value}[{placed}]")
        return attempt

    def is_live(self, attempt: MoveAttempt) -> bool:
        """True while the attempt is pending and has not been discarded by a reload."""
        with self._lock:
            return (attempt.attempt_id in self._chains.get(attempt.task_id, [])
                    and attempt.status is AttemptStatus.PENDING)

    def settle(self, attempt: MoveAttempt, success: bool, task: Optional[TaskCard] = None,
               updates: Optional[Iterable] = None, error: Optional[Exception] = None) -> bool:
        """
        Record the server's answer for an attempt.

        Returns True when the displayed board changed because of it, False when
        the answer was for a superseded or discarded attempt. Subscribers are
        called after the lock is released.
        """
        events = []
        changed = self._settle_locked(attempt, success, task, updates, error, events)
        for event_type, kwargs in events:
            self._emit(event_type, **kwargs)
        return changed

    def _settle_locked(self, attempt, success, task, updates, error, events) -> bool:
        with self._lock:
            chain = self._chains.get(attempt.task_id, [])
            if attempt.attempt_id not in chain:
                logger.debug(f"Ignoring reply for discarded attempt {attempt.attempt_id}")
                events.append(self._settled_event(attempt, success, error, stale=True))
                return False

            attempt.status = AttemptStatus.CONFIRMED if success else AttemptStatus.FAILED
            attempt.server_task = task
            attempt.updates = [_as_update(u) for u in (updates or [])]
            attempt.error = error

            if chain[-1] != attempt.attempt_id:
                # A newer move owns the card; keep this outcome for a later rollback walk
                logger.info(f"Reply for superseded attempt {attempt.attempt_id} "
                            f"({'ok' if success else 'failed'}) kept as informational")
                events.append(self._settled_event(attempt, success, error, stale=True))
                return False

            if success:
                self._confirm(attempt)
            else:
                self._rollback(attempt.task_id)
                message, retryable = describe_failure(error)
                self.last_error = message
                logger.warning(f"Move {attempt.attempt_id} rolled back: {error}")
                events.append(("notice", dict(level="error", message=message,
                                              retryable=retryable, task_id=attempt.task_id)))
            events.append(self._settled_event(attempt, success, error, stale=False))
            return True

    # ──────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────

    def _settled_event(self, attempt: MoveAttempt, success: bool, error, stale: bool) -> tuple:
        card = self._tasks.get(attempt.task_id)
        return "move_settled", dict(
            task_id=attempt.task_id,
            lane=card.lane.value if card else None,
            position=card.position if card else None,
            success=success,
            error=error,
            stale=stale,
        )

    def _confirm(self, attempt: MoveAttempt) -> None:
        """
        Overwrite the optimistic guess with the server's values, end the
        task's chain, then re-sort every lane the answer touched so the view
        follows server positions.
        """
        touched = {self._tasks[attempt.task_id].lane}
        for update in attempt.updates:
            if update.task_id == attempt.task_id:
                continue
            sibling = self._tasks.get(update.task_id)
            if sibling is None:
                continue
            sibling.position = update.position
            touched.add(update.lane)
            if sibling.lane != update.lane:
                self._detach(update.task_id)
                sibling.lane = update.lane
                self._place_by_position(update.task_id)

        server = attempt.server_task
        if server is not None:
            touched.add(server.lane)
            if server.lane != self._tasks[attempt.task_id].lane:
                self._detach(attempt.task_id)
                self._tasks[attempt.task_id] = replace(server)
                self._place_by_position(attempt.task_id)
            else:
                self._tasks[attempt.task_id] = replace(server)

        self._discard_chain(attempt.task_id)
        for lane in touched:
            self._resort(lane)

    def _rollback(self, task_id: str) -> None:
        """
        Undo the newest attempt, then keep walking back through older ones:
        failed ones are undone too, a confirmed one re-applies the server's
        answer, a pending one becomes the newest again.
        """
        chain = self._chains[task_id]
        while chain:
            attempt = self._attempts[chain[-1]]
            if attempt.status is AttemptStatus.PENDING:
                break
            if attempt.status is AttemptStatus.CONFIRMED:
                self._confirm(attempt)
                return
            self._restore(task_id, attempt.snapshot)
            chain.pop()
            del self._attempts[attempt.attempt_id]
        if not chain:
            del self._chains[task_id]

    def _restore(self, task_id: str, snapshot: TaskSnapshot) -> None:
        card = self._tasks[task_id]
        self._detach(task_id)
        self._insert(task_id, snapshot.lane, snapshot.index)
        card.lane = snapshot.lane
        card.position = snapshot.position

    def _resort(self, lane: Lane) -> None:
        """
        Order a lane by position. Cards with moves still in flight keep their
        slot, since their local position is only a guess.
        """
        order = self._lanes[lane]
        settled = iter(sorted((tid for tid in order if not self._chains.get(tid)),
                              key=lambda tid: _sort_key(self._tasks[tid])))
        self._lanes[lane] = [tid if self._chains.get(tid) else next(settled) for tid in order]

    def _discard_chain(self, task_id: str) -> None:
        for attempt_id in self._chains.pop(task_id, []):
            self._attempts.pop(attempt_id, None)

    def _forget(self, task_id: str) -> None:
        if task_id in self._tasks:
            self._detach(task_id)
            del self._tasks[task_id]
        self._discard_chain(task_id)

    def _detach(self, task_id: str) -> int:
        """Remove a card from its lane list; returns the index it had."""
        order = self._lanes[self._tasks[task_id].lane]
        index = order.index(task_id)
        order.pop(index)
        return index

    def _insert(self, task_id: str, lane: Lane, index: int) -> int:
        order = self._lanes[lane]
        index = max(0, min(index, len(order)))
        order.insert(index, task_id)
        return index

    def _place_by_position(self, task_id: str) -> None:
        """Insert a detached card before the first neighbour that sorts after it."""
        card = self._tasks[task_id]
        order = self._lanes[card.lane]
        key = _sort_key(card)
        index = len(order)
        for i, other in enumerate(order):
            if _sort_key(self._tasks[other]) > key:
                index = i
                break
        order.insert(index, task_id)
