"""
Task storage backend (SQLite): the position ledger.

Holds one row per task with its lane and integer position, and answers
"tasks of lane L in order". Every write touches a single row; multi-row
changes are grouped by the caller inside `transaction()`.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager, closing
from pathlib import Path
from typing import List, Optional, Dict, Any, Iterable, Union

from .errors import NotFound, InvalidReference, ValidationFailed, ConcurrencyConflict, TransportFailure
from .schema import TaskCard, Lane, LANE_ORDER, PRIORITIES, TASK_TYPES, utc_now

logger = logging.getLogger(__name__)

LANE_VALUES = tuple(lane.value for lane in Lane)

# Business fields a plain update may touch. Lane and position are owned by the resolver.
EDITABLE_FIELDS = ("title", "description", "priority", "task_type", "project",
                   "assignee", "category", "tags")


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are explicit."""
    conn = sqlite3.connect(db_path, timeout=10, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@contextmanager
def _storage_errors(action: str):
    """Translate sqlite errors into board errors."""
    try:
        yield
    except sqlite3.IntegrityError as e:
        raise InvalidReference(f"{action}: {e}") from e
    except sqlite3.Error as e:
        logger.error(f"Storage error during {action}: {e}")
        raise TransportFailure(f"Storage unavailable ({action})") from e


class TaskStore:
    """SQLite-backed store for board tasks."""

    def __init__(self, db_path: str = None):
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "taskboard" / "board.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        with _storage_errors("init schema"), closing(_connect(self.db_path)) as conn:
            lanes = ", ".join(f"'{v}'" for v in LANE_VALUES)
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    lane TEXT NOT NULL DEFAULT 'todo' CHECK (lane IN ({lanes})),
                    position INTEGER NOT NULL DEFAULT 0 CHECK (position >= 0),
                    version INTEGER NOT NULL DEFAULT 0,
                    description TEXT DEFAULT '',
                    priority TEXT DEFAULT 'medium',
                    task_type TEXT DEFAULT 'task',
                    project TEXT DEFAULT '',
                    assignee TEXT DEFAULT '',
                    category TEXT DEFAULT '',
                    tags TEXT,  -- JSON list
                    is_archived INTEGER DEFAULT 0,
                    started_at TEXT,
                    completed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS activity_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT,
                    event_type TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    details TEXT,  -- JSON object
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_lane_position ON tasks(lane, position)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_activity_task ON activity_log(task_id, created_at)")

    # ──────────────────────────────────────────
    # Connections & transactions
    # ──────────────────────────────────────────

    @contextmanager
    def transaction(self):
        """
        Yield a connection inside BEGIN IMMEDIATE.

        Commits when the block finishes, rolls back on any exception, so a
        multi-row renumber is never visible half-done.
        """
        with _storage_errors("transaction"):
            conn = _connect(self.db_path)
        try:
            with _storage_errors("transaction"):
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def _use(self, conn: Optional[sqlite3.Connection], action: str):
        """Reuse the caller's connection or open a short-lived one."""
        if conn is not None:
            with _storage_errors(action):
                yield conn
            return
        with _storage_errors(action), closing(_connect(self.db_path)) as own:
            yield own

    def reading(self):
        """Short-lived connection for ad-hoc reads."""
        return self._use(None, "read")

    # ──────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────

    def get(self, task_id: str, conn: sqlite3.Connection = None) -> Optional[TaskCard]:
        """Retrieve a task by ID, or None."""
        with self._use(conn, "get") as c:
            row = c.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)).fetchone()
        return self._row_to_card(row) if row else None

    def require(self, task_id: str, conn: sqlite3.Connection = None) -> TaskCard:
        """Like get(), but raises NotFound."""
        card = self.get(task_id, conn=conn)
        if card is None:
            raise NotFound(f"Task {task_id} not found", task_id=task_id)
        return card

    def list_by_lane(self, lane: Union[Lane, str], conn: sqlite3.Connection = None,
                     include_archived: bool = False) -> List[TaskCard]:
        """
        Tasks of one lane in board order.

        Ties on position (possible after concurrent writers) are broken by
        creation time, then id, so repeated reads always agree.
        """
        lane = Lane.from_str(lane)
        sql = "SELECT * FROM tasks WHERE lane = ?"
        if not include_archived:
            sql += " AND is_archived = 0"
        sql += " ORDER BY position ASC, created_at ASC, task_id ASC"
        with self._use(conn, "list_by_lane") as c:
            rows = c.execute(sql, (lane.value,)).fetchall()
        return [self._row_to_card(r) for r in rows]

    def list_all(self, include_archived: bool = False, project: str = None) -> List[TaskCard]:
        """All tasks, grouped by lane in workflow order, then board order."""
        clauses, params = [], []
        if not include_archived:
            clauses.append("is_archived = 0")
        if project:
            clauses.append("project = ?")
            params.append(project)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._use(None, "list_all") as c:
            rows = c.execute(
                f"SELECT * FROM tasks {where} ORDER BY position ASC, created_at ASC, task_id ASC",
                params,
            ).fetchall()
        cards = [self._row_to_card(r) for r in rows]
        rank = {lane: i for i, lane in enumerate(LANE_ORDER)}
        cards.sort(key=lambda card: rank[card.lane])  # stable: keeps position order
        return cards

    def lane_counts(self) -> Dict[str, int]:
        """Number of live tasks per lane (every lane present)."""
        counts = {lane.value: 0 for lane in LANE_ORDER}
        with self._use(None, "lane_counts") as c:
            for row in c.execute("SELECT lane, COUNT(*) FROM tasks WHERE is_archived = 0 GROUP BY lane"):
                counts[row[0]] = row[1]
        return counts

    def end_of_lane(self, lane: Lane, conn: sqlite3.Connection = None) -> int:
        """Position a new task gets: max + 1, or 0 for an empty lane."""
        with self._use(conn, "end_of_lane") as c:
            row = c.execute(
                "SELECT MAX(position) FROM tasks WHERE lane = ? AND is_archived = 0",
                (lane.value,),
            ).fetchone()
        return 0 if row[0] is None else row[0] + 1

    def next_task_id(self, conn: sqlite3.Connection = None) -> str:
        """Next sequential ID (TSK-001, TSK-002, ...)."""
        with self._use(conn, "next_task_id") as c:
            row = c.execute(
                "SELECT MAX(CAST(substr(task_id, 5) AS INTEGER)) FROM tasks WHERE task_id LIKE 'TSK-%'"
            ).fetchone()
        num = row[0] or 0
        return f"TSK-{num + 1:03d}"

    # ──────────────────────────────────────────
    # Writes
    # ──────────────────────────────────────────

    def create(self, card: TaskCard) -> TaskCard:
        """Insert a new task at the end of its lane. Assigns an ID if missing."""
        if not card.title.strip():
            raise ValidationFailed("title is required")
        self._validate_business(card.priority, card.task_type)
        with self.transaction() as conn:
            if not card.task_id:
                card.task_id = self.next_task_id(conn)
            elif self.get(card.task_id, conn=conn):
                raise ValidationFailed(f"Task {card.task_id} already exists")
            card.position = self.end_of_lane(card.lane, conn=conn)
            card.enter_lane(card.lane)
            card.version = 0
            data = card.to_dict()
            conn.execute("""
                INSERT INTO tasks
                (task_id, title, lane, position, version, description, priority, task_type,
                 project, assignee, category, tags, is_archived, started_at, completed_at,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                data["task_id"], data["title"], data["lane"], data["position"], data["version"],
                data["description"], data["priority"], data["task_type"], data["project"],
                data["assignee"], data["category"], json.dumps(data["tags"]),
                1 if data["is_archived"] else 0, data["started_at"], data["completed_at"],
                data["created_at"], data["updated_at"],
            ))
        logger.info(f"Created {card.task_id} in {card.lane.value} at position {card.position}")
        return card

    def set_position(self, task_id: str, lane: Union[Lane, str], position: int,
                     conn: sqlite3.Connection = None, expected_version: Optional[int] = None) -> int:
        """
        Single-row update of a task's lane and position. Returns the new version.

        Raises NotFound for an unknown task, InvalidReference for a lane outside
        the enumeration or a negative position, ConcurrencyConflict when
        expected_version no longer matches the row.
        """
        lane_value = lane.value if isinstance(lane, Lane) else str(lane)
        if lane_value not in LANE_VALUES:
            raise InvalidReference(f"Lane {lane_value!r} is not a valid lane", task_id=task_id)
        if position < 0:
            raise InvalidReference(f"Position must be non-negative, got {position}", task_id=task_id)

        now = utc_now().isoformat()
        sql = """
            UPDATE tasks SET
                lane = ?, position = ?, version = version + 1, updated_at = ?,
                started_at = CASE WHEN ? = 'in_progress' AND started_at IS NULL THEN ? ELSE started_at END,
                completed_at = CASE WHEN ? = 'done' THEN COALESCE(completed_at, ?) ELSE NULL END
            WHERE task_id = ?
        """
        params = [lane_value, position, now, lane_value, now, lane_value, now, task_id]
        if expected_version is not None:
            sql += " AND version = ?"
            params.append(expected_version)

        with self._use(conn, "set_position") as c:
            cur = c.execute(sql, params)
            if cur.rowcount == 0:
                row = c.execute("SELECT version FROM tasks WHERE task_id = ?", (task_id,)).fetchone()
                if row is None:
                    raise NotFound(f"Task {task_id} not found", task_id=task_id)
                raise ConcurrencyConflict(
                    f"Task {task_id} is at version {row[0]}, expected {expected_version}",
                    task_id=task_id,
                )
            version = c.execute("SELECT version FROM tasks WHERE task_id = ?", (task_id,)).fetchone()[0]
        logger.debug(f"set_position {task_id} -> {lane_value}@{position} (v{version})")
        return version

    def update_fields(self, task_id: str, fields: Dict[str, Any]) -> TaskCard:
        """Update business attributes. Lane and position are rejected here."""
        owned = {"lane", "status", "position"} & set(fields)
        if owned:
            raise ValidationFailed(
                f"{', '.join(sorted(owned))} can only be changed by moving the task"
            )
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationFailed(f"Unknown fields: {', '.join(sorted(unknown))}")
        if "title" in fields and not str(fields["title"]).strip():
            raise ValidationFailed("title cannot be empty")
        self._validate_business(fields.get("priority"), fields.get("task_type"))
        if "tags" in fields and not isinstance(fields["tags"], list):
            raise ValidationFailed("tags must be a list")

        with self.transaction() as conn:
            self.require(task_id, conn=conn)
            if fields:
                values = [json.dumps(v) if k == "tags" else v for k, v in fields.items()]
                assignments = ", ".join(f"{k} = ?" for k in fields)
                conn.execute(
                    f"UPDATE tasks SET {assignments}, version = version + 1, updated_at = ? WHERE task_id = ?",
                    (*values, utc_now().isoformat(), task_id),
                )
            return self.require(task_id, conn=conn)

    def archive(self, task_id: str) -> TaskCard:
        """Hide a task from the board. Siblings keep their positions (gaps are fine)."""
        with self.transaction() as conn:
            self.require(task_id, conn=conn)
            conn.execute(
                "UPDATE tasks SET is_archived = 1, version = version + 1, updated_at = ? WHERE task_id = ?",
                (utc_now().isoformat(), task_id),
            )
            return self.require(task_id, conn=conn)

    def delete(self, task_id: str) -> None:
        """Delete a task. Siblings are not renumbered."""
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))
            if cur.rowcount == 0:
                raise NotFound(f"Task {task_id} not found", task_id=task_id)
        logger.info(f"Deleted {task_id}")

    # ──────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────

    @staticmethod
    def _validate_business(priority: Optional[str], task_type: Optional[str]) -> None:
        if priority is not None and priority not in PRIORITIES:
            raise ValidationFailed(f"priority must be one of {PRIORITIES}")
        if task_type is not None and task_type not in TASK_TYPES:
            raise ValidationFailed(f"task_type must be one of {TASK_TYPES}")

    def _row_to_card(self, row: sqlite3.Row) -> TaskCard:
        """Convert a database row to a TaskCard."""
        data = dict(row)
        if data.get("tags"):
            try:
                data["tags"] = json.loads(data["tags"])
            except (json.JSONDecodeError, TypeError):
                data["tags"] = []
        data["is_archived"] = bool(data.get("is_archived", 0))
        return TaskCard.from_dict(data)


def snapshot_positions(cards: Iterable[TaskCard]) -> Dict[str, int]:
    """task_id -> position, handy for before/after comparisons."""
    return {card.task_id: card.position for card in cards}
