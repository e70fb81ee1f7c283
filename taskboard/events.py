"""
Event bridge: fans board changes out to live subscribers and the activity log.

The server publishes one event per successful write (task_created,
task_moved, ...). Subscribers receive it as keyword arguments; a transport
(websocket, SSE, ...) can hang off `subscribe` without the core knowing.
"""
import json
import logging
from typing import Any, Callable, Dict, Optional

from .schema import utc_now
from .store import TaskStore

logger = logging.getLogger(__name__)

EVENT_TYPES = {"task_created", "task_moved", "task_updated", "task_archived",
               "task_deleted", "task_categorized"}


class BoardEventBridge:
    """Routes board changes to subscribers and records them."""

    def __init__(self, store: TaskStore):
        self.store = store
        self.subscribers: Dict[str, list] = {}  # event_type -> list of callbacks

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """Register a callback for an event type ("*" receives everything)."""
        if event_type not in self.subscribers:
            self.subscribers[event_type] = []
        self.subscribers[event_type].append(callback)

    def _emit(self, event_type: str, **kwargs) -> None:
        for callback in self.subscribers.get(event_type, []) + self.subscribers.get("*", []):
            try:
                callback(event_type=event_type, **kwargs)
            except Exception:
                logger.exception(f"Error in {event_type} callback")

    def publish(self, event_type: str, task_id: Optional[str], summary: str, **details) -> int:
        """Record an event and notify subscribers. Returns the event id."""
        event_id = record_event(self.store, task_id, event_type, summary, details or None)
        self._emit(event_type, task_id=task_id, summary=summary, **details)
        return event_id


def record_event(
    store: TaskStore,
    task_id: Optional[str],
    event_type: str,
    summary: str,
    details: Optional[Dict[str, Any]] = None,
) -> int:
    """
    Append a row to the activity log.

    Args:
        store: TaskStore instance
        task_id: Task ID (e.g. TSK-001) or None for board-wide events
        event_type: one of EVENT_TYPES
        summary: Short human-readable line
        details: Optional JSON-serialisable payload

    Returns:
        Event ID (autoincrement integer)
    """
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Invalid event_type: {event_type}")

    with store.transaction() as conn:
        cursor = conn.execute(
            """
            INSERT INTO activity_log (task_id, event_type, summary, details, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (task_id, event_type, summary,
             json.dumps(details) if details else None, utc_now().isoformat()),
        )
        return cursor.lastrowid


def get_recent_events(store: TaskStore, task_id: Optional[str] = None, limit: int = 50) -> list:
    """
    Fetch recent activity, optionally filtered by task_id.

    Returns:
        List of event dicts (most recent first)
    """
    sql = "SELECT * FROM activity_log"
    params: list = []
    if task_id:
        sql += " WHERE task_id = ?"
        params.append(task_id)
    sql += " ORDER BY id DESC LIMIT ?"
    params.append(limit)

    with store.reading() as conn:
        rows = conn.execute(sql, params).fetchall()

    events = []
    for row in rows:
        e = dict(row)
        if e.get("details"):
            try:
                e["details"] = json.loads(e["details"])
            except (json.JSONDecodeError, TypeError):
                e["details"] = {}
        events.append(e)
    return events
