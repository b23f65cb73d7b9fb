"""
Tests for the Flask JSON API.
"""
import io
from unittest.mock import MagicMock, patch

import pytest

import taskboard_server
from pkg.taskboard.config import Config
from pkg.taskboard.errors import TransientStoreError, UpstreamAIError

USER = {"X-User-Id": "user-1"}
OTHER = {"X-User-Id": "user-2"}

REPLY = """Here you go.
```json
[{"title": "Outline", "description": "Sketch the outline", "priority": "medium", "category": "writing"},
 {"title": "Review", "description": "Read it once more", "priority": "low", "category": "writing"}]
```"""


@pytest.fixture
def llm():
    fake = MagicMock()
    fake.chat.return_value = REPLY
    return fake


@pytest.fixture
def client(db_path, llm):
    taskboard_server.configure(Config(db_path=db_path), llm=llm)
    taskboard_server.app.config["TESTING"] = True
    with taskboard_server.app.test_client() as c:
        yield c
    taskboard_server._services.clear()


def create(client, *tasks, headers=USER):
    r = client.post("/api/tasks", json={"tasks": list(tasks)}, headers=headers)
    assert r.status_code == 201, r.get_json()
    return r.get_json()["tasks"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Basics
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_health(client, db_path):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.get_json() == {"status": "ok", "db": db_path}


def test_api_requires_user(client):
    r = client.get("/api/tasks")
    assert r.status_code == 401
    assert r.get_json()["error"] == "Unauthorized"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Tasks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_and_list_tasks(client):
    [task] = create(client, {"title": "Write tests", "priority": "high"})
    assert task["status"] == "todo"
    assert task["userId"] == "user-1"

    r = client.get("/api/tasks", headers=USER)
    body = r.get_json()
    assert body["count"] == 1
    assert body["tasks"][0]["id"] == task["id"]

    assert client.get("/api/tasks", headers=OTHER).get_json()["count"] == 0


def test_create_corrects_inverted_dates(client):
    [task] = create(client, {
        "title": "Inverted",
        "startDate": "2024-03-04T10:00:00Z",
        "dueDate": "2024-03-04T08:00:00Z",
    })
    assert task["dueDate"] == "2024-03-04T11:00:00+00:00"


@pytest.mark.parametrize("body", [{}, {"tasks": "nope"}, {"tasks": [{"description": "no title"}]}])
def test_create_rejects_bad_input(client, body):
    r = client.post("/api/tasks", json=body, headers=USER)
    assert r.status_code == 400
    assert "error" in r.get_json()


def test_list_filters(client):
    create(client, {"title": "a", "sessionId": "s1"}, {"title": "b", "sessionId": "s2", "status": "done"})
    assert client.get("/api/tasks?sessionId=s1", headers=USER).get_json()["count"] == 1
    assert client.get("/api/tasks?status=done", headers=USER).get_json()["count"] == 1
    assert client.get("/api/tasks?status=blocked", headers=USER).status_code == 400


def test_patch_task(client):
    [task] = create(client, {"title": "Move me"})
    r = client.patch(f"/api/tasks/{task['id']}", json={
        "startDate": "2024-03-04T13:00:00Z",
        "dueDate": "2024-03-04T14:00:00Z",
        "isAllDay": False,
    }, headers=USER)
    assert r.status_code == 200
    assert r.get_json()["task"]["startDate"] == "2024-03-04T13:00:00+00:00"


def test_patch_errors(client):
    [task] = create(client, {"title": "Move me"})
    assert client.patch("/api/tasks/missing", json={"status": "done"}, headers=USER).status_code == 404
    assert client.patch(f"/api/tasks/{task['id']}", json={"status": "done"}, headers=OTHER).status_code == 404
    r = client.patch(f"/api/tasks/{task['id']}", json={
        "startDate": "2024-03-04T13:00:00Z",
        "dueDate": "2024-03-04T12:00:00Z",
    }, headers=USER)
    assert r.status_code == 400


def test_delete_task(client):
    [task] = create(client, {"title": "Delete me"})
    assert client.delete(f"/api/tasks/{task['id']}", headers=USER).get_json() == {"success": True}
    assert client.delete(f"/api/tasks/{task['id']}", headers=USER).status_code == 404


def test_store_outage_is_503(client):
    with patch.object(taskboard_server.services()["tasks"], "list_tasks",
                      side_effect=TransientStoreError("database is locked")):
        r = client.get("/api/tasks", headers=USER)
    assert r.status_code == 503


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Board, calendar, slots
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_board(client):
    create(client, {"title": "a"}, {"title": "b", "status": "in-progress"}, {"title": "c", "status": "done"})
    body = client.get("/api/board", headers=USER).get_json()
    assert {k: len(v) for k, v in body["columns"].items()} == {"todo": 1, "in-progress": 1, "done": 1}
    assert body["stats"]["total"] == 3


def test_calendar(client):
    create(client, {"title": "Later", "startDate": "2024-03-05T09:00:00Z"},
           {"title": "Sooner", "startDate": "2024-03-04T09:00:00Z", "dueDate": "2024-03-04T11:00:00Z"})
    events = client.get("/api/calendar", headers=USER).get_json()["events"]
    assert [e["title"] for e in events] == ["Sooner", "Later"]
    assert events[1]["end"] == "2024-03-05T10:00:00+00:00"


def test_free_slots(client):
    create(client, {"title": "Busy", "startDate": "2024-03-04T12:00:00Z", "dueDate": "2024-03-04T13:00:00Z"})
    r = client.get(
        "/api/schedule/free-slots?duration=60&start=2024-03-04T00:00:00Z&end=2024-03-05T00:00:00Z",
        headers=USER,
    )
    assert r.status_code == 200
    assert r.get_json()["slots"] == [
        {"start": "2024-03-04T09:00:00+00:00", "end": "2024-03-04T12:00:00+00:00", "durationMinutes": 180.0},
        {"start": "2024-03-04T13:00:00+00:00", "end": "2024-03-04T17:00:00+00:00", "durationMinutes": 240.0},
    ]


@pytest.mark.parametrize("query", ["duration=abc", "duration=0", "start=someday"])
def test_free_slots_bad_params(client, query):
    assert client.get(f"/api/schedule/free-slots?{query}", headers=USER).status_code == 400


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Assistant
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_schedule_assistant(client):
    r = client.post("/api/schedule-assistant", json={"message": "Plan my day"}, headers=USER)
    assert r.status_code == 200
    body = r.get_json()
    assert len(body["suggestions"]) == 2

    session = client.get(f"/api/chat-sessions/{body['sessionId']}", headers=USER).get_json()["session"]
    assert len(session["messages"]) == 2


def test_schedule_assistant_upstream_failure(client, llm):
    first = client.post("/api/schedule-assistant", json={"message": "Plan my day"}, headers=USER).get_json()
    llm.chat.side_effect = UpstreamAIError("model unavailable")

    r = client.post("/api/schedule-assistant",
                    json={"message": "And tomorrow?", "sessionId": first["sessionId"]}, headers=USER)
    assert r.status_code == 502

    session = client.get(f"/api/chat-sessions/{first['sessionId']}", headers=USER).get_json()["session"]
    assert len(session["messages"]) == 2


def test_accept_suggestion(client):
    r = client.post("/api/suggestions/accept", json={
        "suggestion": {"title": "Outline", "description": "Sketch", "priority": "medium",
                       "duration": 30, "startDate": "2024-03-04T10:00:00Z"},
        "sessionId": "s1",
    }, headers=USER)
    assert r.status_code == 201
    task = r.get_json()["task"]
    assert task["dueDate"] == "2024-03-04T10:30:00+00:00"
    assert task["sessionId"] == "s1"

    assert client.post("/api/suggestions/accept", json={}, headers=USER).status_code == 400


def test_upload(client):
    r = client.post(
        "/api/upload",
        data={"file": (io.BytesIO(b"Outline the essay, then review it."), "essay.txt")},
        content_type="multipart/form-data",
        headers=USER,
    )
    assert r.status_code == 200
    body = r.get_json()
    assert body["success"] is True
    assert len(body["tasks"]) == 2
    assert body["fileInfo"]["name"] == "essay.txt"

    listed = client.get(f"/api/tasks?sessionId={body['sessionId']}", headers=USER).get_json()
    assert listed["count"] == 2


def test_upload_without_file(client):
    r = client.post("/api/upload", data={}, content_type="multipart/form-data", headers=USER)
    assert r.status_code == 400


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Chat sessions + AI responses
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_chat_sessions_crud(client):
    r = client.post("/api/chat-sessions", json={
        "id": "s1",
        "title": "Weekly planning",
        "messages": [{"role": "user", "content": "Plan my week"}],
    }, headers=USER)
    assert r.status_code == 200

    sessions = client.get("/api/chat-sessions", headers=USER).get_json()["sessions"]
    assert [s["id"] for s in sessions] == ["s1"]
    assert client.get("/api/chat-sessions/s1", headers=OTHER).status_code == 404

    clash = client.post("/api/chat-sessions", json={"id": "s1", "messages": []}, headers=OTHER)
    assert clash.status_code == 400

    missing_id = client.post("/api/chat-sessions", json={"messages": []}, headers=USER)
    assert missing_id.status_code == 400


def test_ai_responses(client):
    body = client.post("/api/schedule-assistant", json={"message": "Plan my day"}, headers=USER).get_json()

    by_id = client.get(f"/api/airesponses?id={body['aiResponseId']}", headers=USER)
    assert by_id.get_json()["response"]["rawResponse"] == REPLY

    by_session = client.get(f"/api/airesponses?sessionId={body['sessionId']}", headers=USER)
    assert by_session.get_json()["response"]["id"] == body["aiResponseId"]

    assert client.get(f"/api/airesponses?id={body['aiResponseId']}", headers=OTHER).status_code == 404
    assert client.get("/api/airesponses", headers=USER).status_code == 400
