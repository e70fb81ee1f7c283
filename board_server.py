#!/usr/bin/env python3
"""
Task Board Server
-----------------
JSON API over the SQLite position ledger.

Usage:
    python board_server.py --port 3000 --db ./board.db --seed

API:
    GET    /health                        → { status, db, counts }
    GET    /api/board                     → { lanes: {lane: [task]}, counts }
    GET    /api/tasks?lane=&project=      → { tasks, count }
    POST   /api/tasks                     → 201 { task }
    GET    /api/tasks/<id>                → { task }
    PUT    /api/tasks/<id>                → { task }   (business fields only)
    PATCH  /api/tasks/<id>/position       → { task, lane, position, updates, renumbered }
                                            body: { lane, index, version? }
    POST   /api/tasks/<id>/archive        → { task }
    DELETE /api/tasks/<id>                → { deleted }
    POST   /api/categorize                → categorization
    POST   /api/tasks/<id>/categorize     → { task, categorization }
    GET    /api/events?task_id=&limit=    → { events }

Errors come back as { error, code } with 400 / 404 / 409 / 503.
"""

import argparse
import logging
import sys

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from taskboard.categorizer import apply_categorization, categorize_by_rules
from taskboard.config import BoardConfig
from taskboard.errors import BoardError, ValidationFailed
from taskboard.events import BoardEventBridge, get_recent_events
from taskboard.resolver import ReorderResolver
from taskboard.schema import LANE_ORDER, Lane, TaskCard
from taskboard.seed import seed_demo
from taskboard.store import TaskStore

logger = logging.getLogger("board_server")

CREATE_FIELDS = ("description", "priority", "task_type", "project", "assignee", "category", "tags")


def _json_body() -> dict:
    data = request.get_json(force=True, silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationFailed("JSON body must be an object")
    return data


def _int_arg(data: dict, *names, default=None):
    for name in names:
        if name in data and data[name] is not None:
            value = data[name]
            if isinstance(value, bool) or not isinstance(value, (int, str)):
                raise ValidationFailed(f"{name} must be an integer")
            try:
                return int(value)
            except ValueError:
                raise ValidationFailed(f"{name} must be an integer") from None
    return default


def create_app(config: BoardConfig = None, store: TaskStore = None) -> Flask:
    """Build the Flask app around one store. Tests pass their own."""
    config = config or BoardConfig.load()
    store = store or TaskStore(config.db_path)
    resolver = ReorderResolver(store)
    bridge = BoardEventBridge(store)

    app = Flask(__name__)
    app.json.sort_keys = False  # lanes keep workflow order
    app.extensions["taskboard"] = {"store": store, "resolver": resolver, "events": bridge, "config": config}

    # ── Errors ───────────────────────────────────────────────────────────────

    @app.errorhandler(BoardError)
    def handle_board_error(e: BoardError):
        if e.status >= 500:
            logger.error(f"{request.method} {request.path}: {e.message}")
        else:
            logger.info(f"{request.method} {request.path} → {e.status} {e.code}: {e.message}")
        return jsonify(e.to_dict()), e.status

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        if isinstance(e, HTTPException):
            code = "not_found" if e.code == 404 else "http_error"
            return jsonify({"error": e.description, "code": code}), e.code
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return jsonify({"error": "Internal server error", "code": "internal"}), 500

    # ── Routes ───────────────────────────────────────────────────────────────

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "db": store.db_path, "counts": store.lane_counts()})

    @app.route("/api/board")
    def api_board():
        project = request.args.get("project")
        lanes = {lane.value: [] for lane in LANE_ORDER}
        for card in store.list_all(project=project):
            lanes[card.lane.value].append(card.to_dict())
        return jsonify({
            "lanes": lanes,
            "counts": {lane: len(cards) for lane, cards in lanes.items()},
        })

    @app.route("/api/tasks", methods=["GET"])
    def api_tasks():
        lane = request.args.get("lane")
        project = request.args.get("project")
        include_archived = request.args.get("include_archived", "").lower() in ("1", "true", "yes")
        if lane:
            cards = store.list_by_lane(lane, include_archived=include_archived)
            if project:
                cards = [c for c in cards if c.project == project]
        else:
            cards = store.list_all(include_archived=include_archived, project=project)
        return jsonify({"tasks": [c.to_dict() for c in cards], "count": len(cards)})

    @app.route("/api/tasks", methods=["POST"])
    def api_create_task():
        data = _json_body()
        title = str(data.get("title", "")).strip()
        if not title:
            raise ValidationFailed("title is required")
        lane = Lane.from_str(data.get("lane") or data.get("status") or Lane.TODO.value)
        fields = {k: data[k] for k in CREATE_FIELDS if data.get(k) is not None}
        if "tags" in fields and not isinstance(fields["tags"], list):
            raise ValidationFailed("tags must be a list")

        card = store.create(TaskCard(task_id="", title=title, lane=lane, **fields))
        bridge.publish("task_created", card.task_id, f"Created '{card.title}' in {lane.value}",
                       lane=lane.value, position=card.position)
        return jsonify({"task": card.to_dict(), "id": card.task_id}), 201

    @app.route("/api/tasks/<task_id>", methods=["GET"])
    def api_get_task(task_id):
        return jsonify({"task": store.require(task_id).to_dict()})

    @app.route("/api/tasks/<task_id>", methods=["PUT"])
    def api_update_task(task_id):
        data = _json_body()
        card = store.update_fields(task_id, data)
        bridge.publish("task_updated", task_id, f"Updated {', '.join(sorted(data)) or 'nothing'}",
                       fields=sorted(data))
        return jsonify({"task": card.to_dict()})

    @app.route("/api/tasks/<task_id>/position", methods=["PATCH"])
    def api_move_task(task_id):
        data = _json_body()
        lane = data.get("lane") or data.get("status")
        if not lane:
            raise ValidationFailed("lane is required")
        index = _int_arg(data, "index", "position")
        if index is None:
            raise ValidationFailed("index is required")
        version = _int_arg(data, "version")

        result = resolver.resolve_move(task_id, lane, index, expected_version=version)
        card = store.require(task_id)
        if not result.noop:
            bridge.publish("task_moved", task_id,
                           f"Moved to {result.lane.value} at position {result.position}",
                           lane=result.lane.value, position=result.position,
                           updates=[u.to_dict() for u in result.updates])
        return jsonify({"task": card.to_dict(), **result.to_dict()})

    @app.route("/api/tasks/<task_id>/archive", methods=["POST"])
    def api_archive_task(task_id):
        card = store.archive(task_id)
        bridge.publish("task_archived", task_id, f"Archived '{card.title}'")
        return jsonify({"task": card.to_dict()})

    @app.route("/api/tasks/<task_id>", methods=["DELETE"])
    def api_delete_task(task_id):
        store.delete(task_id)
        bridge.publish("task_deleted", task_id, f"Deleted {task_id}")
        return jsonify({"deleted": task_id})

    @app.route("/api/categorize", methods=["POST"])
    def api_categorize():
        data = _json_body()
        title = str(data.get("title", "")).strip()
        if not title:
            raise ValidationFailed("title is required")
        return jsonify(categorize_by_rules(title, str(data.get("description", ""))))

    @app.route("/api/tasks/<task_id>/categorize", methods=["POST"])
    def api_categorize_task(task_id):
        card = store.require(task_id)
        result = categorize_by_rules(card.title, card.description)
        card = store.update_fields(task_id, apply_categorization(card, result))
        bridge.publish("task_categorized", task_id, f"Categorized as {result['category']}",
                       confidence=result["confidence"])
        return jsonify({"task": card.to_dict(), "categorization": result})

    @app.route("/api/events")
    def api_events():
        limit = request.args.get("limit", type=int) or config.event_log_limit
        events = get_recent_events(store, task_id=request.args.get("task_id"), limit=limit)
        return jsonify({"events": events})

    return app


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(description="Task Board Server")
    parser.add_argument("--config", help="Path to board.yaml")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to board.db (overrides TASKBOARD_DB)")
    parser.add_argument("--seed", action="store_true", help="Insert demo tasks if the board is empty")
    args = parser.parse_args(argv)

    config = BoardConfig.load(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.db:
        config.db_path = args.db
        config.resolve_paths()

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [board] %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    store = TaskStore(config.db_path)
    if args.seed and not store.list_all(include_archived=True):
        seed_demo(store)

    app = create_app(config, store)
    logger.info(f"Serving board on http://{config.host}:{config.port} (db: {config.db_path})")
    app.run(host=config.host, port=config.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
