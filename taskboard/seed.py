"""Demo data for a fresh board."""
import logging
from typing import List

from .schema import Lane, TaskCard
from .store import TaskStore

logger = logging.getLogger(__name__)

DEMO_TASKS = [
    ("Set up CI pipeline", Lane.DONE, "high", "task", "infra"),
    ("Design task detail modal", Lane.IN_REVIEW, "medium", "feature", "web"),
    ("Fix drag-and-drop flicker on slow networks", Lane.IN_PROGRESS, "high", "bug", "web"),
    ("Add comments API", Lane.IN_PROGRESS, "medium", "feature", "api"),
    ("Write onboarding guide", Lane.TODO, "low", "task", "docs"),
    ("Index tasks by lane and position", Lane.TODO, "medium", "task", "api"),
    ("Evaluate websocket transport", Lane.TODO, "low", "task", "api"),
    ("Drop legacy export format", Lane.CANCELLED, "low", "task", "web"),
]


def seed_demo(store: TaskStore) -> List[TaskCard]:
    """Insert the demo tasks, each at the end of its lane. Returns them."""
    created = []
    for title, lane, priority, task_type, project in DEMO_TASKS:
        card = TaskCard(task_id="", title=title, lane=lane, priority=priority,
                        task_type=task_type, project=project)
        created.append(store.create(card))
    logger.info(f"Seeded {len(created)} demo tasks")
    return created
