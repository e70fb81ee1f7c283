"""
Task board schema.

Lanes:
  todo → in_progress → in_review → done   (cancelled on the side)

Order inside a lane is carried by an integer `position`. Only relative order
matters; the absolute values are a storage device and may have gaps.
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from .errors import InvalidLane


class Lane(Enum):
    """Fixed set of workflow lanes (task statuses)."""
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"
    CANCELLED = "cancelled"

    @classmethod
    def from_str(cls, value) -> "Lane":
        """Parse a lane name. Raises InvalidLane for anything unknown."""
        if isinstance(value, Lane):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidLane(f"Invalid lane: {value!r}") from None


LANE_ORDER = [Lane.TODO, Lane.IN_PROGRESS, Lane.IN_REVIEW, Lane.DONE, Lane.CANCELLED]

PRIORITIES = ["low", "medium", "high", "critical"]
TASK_TYPES = ["task", "bug", "feature", "epic"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() if isinstance(value, datetime) else value


@dataclass
class TaskCard:
    """A task on the board."""

    task_id: str                      # e.g. TSK-042
    title: str

    # Ordering
    lane: Lane = Lane.TODO
    position: int = 0
    version: int = 0                  # bumped on every row write

    # Business attributes (irrelevant to ordering)
    description: str = ""
    priority: str = "medium"
    task_type: str = "task"
    project: str = ""
    assignee: str = ""
    category: str = ""
    tags: List[str] = field(default_factory=list)

    is_archived: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def enter_lane(self, lane: Lane, now: Optional[datetime] = None) -> None:
        """Switch lane and keep the workflow timestamps consistent."""
        now = now or utc_now()
        if lane == Lane.IN_PROGRESS and not self.started_at:
            self.started_at = now
        if lane == Lane.DONE:
            if not self.completed_at:
                self.completed_at = now
        else:
            self.completed_at = None
        self.lane = lane

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "lane": self.lane.value,
            "position": self.position,
            "version": self.version,
            "description": self.description,
            "priority": self.priority,
            "task_type": self.task_type,
            "project": self.project,
            "assignee": self.assignee,
            "category": self.category,
            "tags": list(self.tags),
            "is_archived": self.is_archived,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskCard":
        # "status" is what the HTTP payloads of older clients call the lane
        lane = data.get("lane") or data.get("status") or Lane.TODO.value
        return cls(
            task_id=data.get("task_id", ""),
            title=data.get("title", ""),
            lane=Lane.from_str(lane),
            position=int(data.get("position") or 0),
            version=int(data.get("version") or 0),
            description=data.get("description") or "",
            priority=data.get("priority") or "medium",
            task_type=data.get("task_type") or "task",
            project=data.get("project") or "",
            assignee=data.get("assignee") or "",
            category=data.get("category") or "",
            tags=list(data.get("tags") or []),
            is_archived=bool(data.get("is_archived", False)),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
        )


@dataclass
class PositionUpdate:
    """One single-row write issued by the resolver."""
    task_id: str
    lane: Lane
    position: int

    def to_dict(self) -> Dict[str, Any]:
        return {"task_id": self.task_id, "lane": self.lane.value, "position": self.position}


@dataclass
class MoveResult:
    """Outcome of a resolved move."""
    task_id: str
    lane: Lane
    position: int
    updates: List[PositionUpdate] = field(default_factory=list)
    renumbered: bool = False

    @property
    def noop(self) -> bool:
        return not self.updates

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "lane": self.lane.value,
            "position": self.position,
            "updates": [u.to_dict() for u in self.updates],
            "renumbered": self.renumbered,
        }
