"""
HTTP client for the board API, and the dispatcher that drives optimistic moves.

MoveDispatcher applies a move to the projection immediately, fires the API
call on an executor and settles the attempt from the completion callback,
so the caller never waits on the network. Moves of one task are sent in
order, one request at a time.
"""
import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Deque, Dict, List, Optional

import requests

from .errors import TransportFailure, error_from_payload
from .projection import MoveAttempt, OptimisticProjection
from .schema import TaskCard

logger = logging.getLogger(__name__)


class BoardClient:
    """Thin wrapper over the JSON API. Raises BoardError subclasses on failure."""

    def __init__(self, base_url: str, timeout: float = 5.0, session: requests.Session = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "BoardClient":
        return cls(config.api_url, timeout=config.request_timeout)

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise TransportFailure(f"{method} {path} failed: {e}") from e

        if r.ok:
            return r.json()
        try:
            payload = r.json()
        except ValueError:
            payload = None
        raise error_from_payload(r.status_code, payload)

    def list_tasks(self, lane: str = None, project: str = None) -> List[TaskCard]:
        params = {k: v for k, v in (("lane", lane), ("project", project)) if v}
        data = self._request("GET", "/api/tasks", params=params)
        return [TaskCard.from_dict(t) for t in data.get("tasks", [])]

    def get_task(self, task_id: str) -> TaskCard:
        return TaskCard.from_dict(self._request("GET", f"/api/tasks/{task_id}")["task"])

    def create_task(self, title: str, **fields) -> TaskCard:
        data = self._request("POST", "/api/tasks", json={"title": title, **fields})
        return TaskCard.from_dict(data["task"])

    def move_task(self, task_id: str, lane: str, index: int, version: Optional[int] = None) -> Dict[str, Any]:
        """PATCH the position endpoint. Returns {task, lane, position, updates, renumbered}."""
        body = {"lane": lane, "index": index}
        if version is not None:
            body["version"] = version
        return self._request("PATCH", f"/api/tasks/{task_id}/position", json=body)


class MoveDispatcher:
    """
    Fire-and-forget moves against a projection.

    Requests for the same task go out one at a time: a newer move waits in a
    per-task queue until the previous reply arrives, so the server applies a
    card's moves in the order the user made them. Different tasks still move
    in parallel.
    """

    def __init__(self, projection: OptimisticProjection, client: BoardClient, executor=None):
        self.projection = projection
        self.client = client
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="board-move")
        self._lock = threading.Lock()
        self._queues: Dict[str, Deque[MoveAttempt]] = {}   # task_id -> moves waiting, present while one is in flight

    def __enter__(self) -> "MoveDispatcher":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self, wait: bool = True) -> None:
        """Shut down the worker pool if this dispatcher created it."""
        if self._owns_executor:
            self.executor.shutdown(wait=wait)

    def refresh(self) -> None:
        """Reload the projection from the server."""
        self.projection.load(self.client.list_tasks())

    def move(self, task_id: str, lane, index: int) -> MoveAttempt:
        attempt = self.projection.apply_move(task_id, lane, index)
        with self._lock:
            queue = self._queues.get(task_id)
            if queue is not None:
                queue.append(attempt)
                logger.debug(f"Queued {attempt.attempt_id} behind an in-flight move")
                return attempt
            self._queues[task_id] = deque()
        self._send(attempt)
        return attempt

    def _send(self, attempt: MoveAttempt) -> None:
        future = self.executor.submit(self.client.move_task, attempt.task_id, attempt.lane.value, attempt.index)
        future.add_done_callback(lambda f: self._on_reply(attempt, f))

    def _on_reply(self, attempt: MoveAttempt, future: Future) -> None:
        try:
            self._settle(attempt, future)
        finally:
            self._send_next(attempt.task_id)

    def _send_next(self, task_id: str) -> None:
        while True:
            with self._lock:
                queue = self._queues.get(task_id)
                if not queue:
                    self._queues.pop(task_id, None)
                    return
                attempt = queue.popleft()
            if self.projection.is_live(attempt):
                self._send(attempt)
                return
            # Discarded by a reload; the server never hears about it
            logger.debug(f"Dropped queued {attempt.attempt_id}")

    def _settle(self, attempt: MoveAttempt, future: Future) -> None:
        try:
            response = future.result()
        except Exception as e:
            # Any failure rolls the card back; the projection reports it to the user
            self.projection.settle(attempt, False, error=e)
            return
        task = TaskCard.from_dict(response["task"]) if response.get("task") else None
        self.projection.settle(attempt, True, task=task, updates=response.get("updates"))
