#!/usr/bin/env python3
"""
Taskboard Server
----------------
JSON API for the task board, calendar and scheduling assistant, backed by
the SQLite stores in pkg/taskboard/.

Usage:
    python taskboard_server.py
    python taskboard_server.py --config ~/.config/taskboard/config.yaml --port 8089

Identity:
    Every /api route reads the caller's user id from the X-User-Id header.
    Authentication itself is handled in front of this server.

API:
    GET    /health                         → { status, db }
    GET    /api/tasks?sessionId&status     → { tasks, count }
    POST   /api/tasks        { tasks: [] } → { tasks }
    PATCH  /api/tasks/<id>                 → { task }
    DELETE /api/tasks/<id>                 → { success }
    GET    /api/board                      → { columns, stats }
    GET    /api/calendar                   → { events }
    GET    /api/schedule/free-slots?duration&start&end → { slots }
    POST   /api/schedule-assistant { message, sessionId? }
    POST   /api/suggestions/accept { suggestion, sessionId?, aiResponseId? }
    POST   /api/upload  (multipart "file")
    GET    /api/chat-sessions              → { sessions }
    POST   /api/chat-sessions { id, title?, messages }
    GET    /api/chat-sessions/<id>         → { session }
    GET    /api/airesponses?id|sessionId   → { response }

Dependencies: flask, pyyaml, requests
"""

import logging
import os
import sys
from datetime import timedelta
from functools import wraps
from typing import Any, Dict, Optional

from flask import Flask, g, jsonify, request

from pkg.taskboard.assistant import LLMClient, ScheduleAssistant
from pkg.taskboard.config import Config
from pkg.taskboard.errors import (
    NotFoundError,
    TaskboardError,
    TransientStoreError,
    UpstreamAIError,
    ValidationError,
)
from pkg.taskboard.schema import TaskStatus, parse_datetime, utc_now
from pkg.taskboard.store import SessionStore, TaskStore

logger = logging.getLogger("taskboard")

app = Flask(__name__)

# Populated by configure(); routes read stores and the assistant from here
_services: Dict[str, Any] = {}


# ── Config ───────────────────────────────────────────────────────────────────

def configure(cfg: Optional[Config] = None, llm=None) -> Dict[str, Any]:
    """(Re)build stores and the assistant. Tests pass their own config and LLM."""
    cfg = cfg or Config.load()
    cfg.resolve_paths()
    day_start, day_end = cfg.working_hours()

    tasks = TaskStore(cfg.db_path)
    sessions = SessionStore(cfg.db_path)
    assistant = ScheduleAssistant(
        tasks,
        sessions,
        llm or LLMClient.from_config(cfg),
        day_start=day_start,
        day_end=day_end,
        tz=cfg.tz(),
    )

    app.config["MAX_CONTENT_LENGTH"] = cfg.max_upload_bytes
    _services.clear()
    _services.update(config=cfg, tasks=tasks, sessions=sessions, assistant=assistant)
    logger.info(f"Using database {cfg.db_path}")
    return _services


def services() -> Dict[str, Any]:
    if not _services:
        configure()
    return _services


# ── Auth ─────────────────────────────────────────────────────────────────────

def require_user(f):
    """Decorator: reject requests without an X-User-Id header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        user_id = request.headers.get("X-User-Id", "").strip()
        if not user_id:
            return jsonify({"error": "Unauthorized"}), 401
        g.user_id = user_id
        return f(*args, **kwargs)
    return decorated


# ── Errors ───────────────────────────────────────────────────────────────────

_STATUS_BY_ERROR = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (UpstreamAIError, 502),
    (TransientStoreError, 503),
]


@app.errorhandler(TaskboardError)
def handle_taskboard_error(e: TaskboardError):
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(e, cls):
            if code >= 500:
                logger.warning(f"{request.method} {request.path} → {code}: {e}")
            return jsonify({"error": str(e)}), code
    logger.error(f"{request.method} {request.path}: unhandled {type(e).__name__}: {e}")
    return jsonify({"error": "Internal server error"}), 500


@app.errorhandler(413)
def handle_too_large(e):
    return jsonify({"error": "File too large"}), 413


def _json_body() -> Dict[str, Any]:
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ── Routes ───────────────────────────────────────────────────────────────────

@app.route("/health")
def health():
    return jsonify({"status": "ok", "db": services()["config"].db_path})


@app.route("/api/tasks", methods=["GET"])
@require_user
def api_list_tasks():
    tasks = services()["tasks"].list_tasks(
        g.user_id,
        session_id=request.args.get("sessionId"),
        status=request.args.get("status"),
    )
    return jsonify({"tasks": [t.to_dict() for t in tasks], "count": len(tasks)})


@app.route("/api/tasks", methods=["POST"])
@require_user
def api_create_tasks():
    data = _json_body()
    created = services()["tasks"].create_tasks(data.get("tasks"), g.user_id)
    return jsonify({"tasks": [t.to_dict() for t in created]}), 201


@app.route("/api/tasks/<task_id>", methods=["PATCH"])
@require_user
def api_patch_task(task_id):
    task = services()["tasks"].patch_task(task_id, _json_body(), g.user_id)
    return jsonify({"task": task.to_dict()})


@app.route("/api/tasks/<task_id>", methods=["DELETE"])
@require_user
def api_delete_task(task_id):
    services()["tasks"].delete_task(task_id, g.user_id)
    return jsonify({"success": True})


@app.route("/api/board")
@require_user
def api_board():
    store = services()["tasks"]
    columns = {s.value: [] for s in TaskStatus}
    for task in store.list_tasks(g.user_id):
        columns[task.status.value].append(task.to_dict())
    return jsonify({"columns": columns, "stats": store.get_stats(g.user_id)})


@app.route("/api/calendar")
@require_user
def api_calendar():
    now = utc_now()
    events = [t.calendar_event(now).to_dict() for t in services()["tasks"].list_tasks(g.user_id)]
    events.sort(key=lambda e: e["start"])
    return jsonify({"events": events})


@app.route("/api/schedule/free-slots")
@require_user
def api_free_slots():
    svc = services()
    tz = svc["config"].tz()
    try:
        duration = float(request.args.get("duration", 60))
    except ValueError:
        raise ValidationError("duration must be a number of minutes")

    start = parse_datetime(request.args.get("start"), "start") or utc_now()
    start = start.astimezone(tz)
    end = parse_datetime(request.args.get("end"), "end")
    end = end.astimezone(tz) if end else start + timedelta(days=7)

    slots = svc["assistant"].free_slots(g.user_id, duration, start, end)
    return jsonify({"slots": [s.to_dict() for s in slots]})


@app.route("/api/schedule-assistant", methods=["POST"])
@require_user
def api_schedule_assistant():
    data = _json_body()
    result = services()["assistant"].ask(g.user_id, data.get("message", ""), data.get("sessionId"))
    return jsonify(result)


@app.route("/api/suggestions/accept", methods=["POST"])
@require_user
def api_accept_suggestion():
    data = _json_body()
    suggestion = data.get("suggestion")
    if not isinstance(suggestion, dict):
        raise ValidationError("suggestion object is required")
    task = services()["assistant"].accept_suggestion(
        g.user_id,
        suggestion,
        session_id=data.get("sessionId", ""),
        ai_response_id=data.get("aiResponseId", ""),
    )
    return jsonify({"task": task.to_dict()}), 201


@app.route("/api/upload", methods=["POST"])
@require_user
def api_upload():
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        raise ValidationError("No file provided")
    result = services()["assistant"].analyze_file(
        g.user_id,
        upload.filename,
        upload.mimetype,
        upload.read(),
    )
    return jsonify({"success": True, **result})


@app.route("/api/chat-sessions", methods=["GET"])
@require_user
def api_list_sessions():
    sessions = services()["sessions"].list_sessions(g.user_id)
    return jsonify({"sessions": [s.to_dict() for s in sessions]})


@app.route("/api/chat-sessions", methods=["POST"])
@require_user
def api_upsert_session():
    data = _json_body()
    session = services()["sessions"].upsert_session(
        data.get("id"), g.user_id, data.get("title"), data.get("messages")
    )
    return jsonify({"session": session.to_dict()})


@app.route("/api/chat-sessions/<session_id>")
@require_user
def api_get_session(session_id):
    session = services()["sessions"].get_session(session_id, g.user_id)
    if session is None:
        raise NotFoundError("Chat session not found")
    return jsonify({"session": session.to_dict()})


@app.route("/api/airesponses")
@require_user
def api_ai_response():
    store = services()["sessions"]
    response_id = request.args.get("id")
    session_id = request.args.get("sessionId")
    if response_id:
        response = store.get_ai_response(response_id)
    elif session_id:
        response = store.latest_ai_response(session_id)
    else:
        raise ValidationError("id or sessionId is required")
    if response is None or response.user_id != g.user_id:
        raise NotFoundError("AI response not found")
    return jsonify({"response": response.to_dict()})


# ── Main ─────────────────────────────────────────────────────────────────────

def main():
    import argparse

    parser = argparse.ArgumentParser(description="Taskboard Server")
    parser.add_argument("--config", help="Path to config.yaml (overrides TASKBOARD_CONFIG)")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to taskboard.db (overrides TASKBOARD_DB)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [taskboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    if args.db:
        os.environ["TASKBOARD_DB"] = args.db
    cfg = Config.load(args.config)
    configure(cfg)

    host = args.host or cfg.host
    port = args.port or cfg.port
    logger.info(f"Taskboard listening on http://{host}:{port} (db: {cfg.db_path})")
    app.run(host=host, port=port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
