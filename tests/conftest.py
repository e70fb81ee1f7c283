"""Shared fixtures for task board tests."""

import sys
from concurrent.futures import Future
from pathlib import Path
from urllib.parse import urlsplit

import pytest

# Ensure board_server.py (repo root) is importable without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

from taskboard.schema import Lane, TaskCard
from taskboard.store import TaskStore


@pytest.fixture
def store(tmp_path):
    return TaskStore(str(tmp_path / "board.db"))


def add_tasks(store, lane, *titles):
    """Create tasks at the end of `lane`, in order."""
    return [store.create(TaskCard(task_id="", title=t, lane=Lane.from_str(lane))) for t in titles]


def lane_ids(store, lane):
    return [c.task_id for c in store.list_by_lane(lane)]


def lane_positions(store, lane):
    return [c.position for c in store.list_by_lane(lane)]


class ManualExecutor:
    """Executor whose jobs run only when a test says so, in any order."""

    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.jobs.append((future, fn, args, kwargs))
        return future

    def run(self, i):
        future, fn, args, kwargs = self.jobs[i]
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)


class FlaskResponse:
    def __init__(self, resp):
        self._resp = resp
        self.status_code = resp.status_code
        self.ok = resp.status_code < 400

    def json(self):
        data = self._resp.get_json(silent=True)
        if data is None:
            raise ValueError("response has no JSON body")
        return data


class FlaskSession:
    """Stands in for requests.Session, routing calls to a Flask test client."""

    def __init__(self, app):
        self.client = app.test_client()
        self.calls = []

    def request(self, method, url, timeout=None, params=None, json=None):
        path = urlsplit(url).path
        self.calls.append((method, path))
        resp = self.client.open(path, method=method, query_string=params, json=json)
        return FlaskResponse(resp)
