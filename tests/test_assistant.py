"""
Tests for the LLM client and the scheduling assistant.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests

from pkg.taskboard.assistant import LLMClient, ScheduleAssistant
from pkg.taskboard.errors import UpstreamAIError, ValidationError
from pkg.taskboard.schema import TaskStatus
from pkg.taskboard.store import SessionStore, TaskStore

# Monday
NOW = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)

FILE_PROMPT_MARKER = "Analyze this file and suggest tasks"

REPLY_WITH_TASKS = """I'd block out Tuesday morning.
```json
[
  {"title": "Draft report", "description": "Write the first draft", "priority": "high",
   "category": "writing", "duration": 120, "startDate": "2024-03-05T09:00:00Z"},
  {"title": "Book room", "description": "Reserve the meeting room", "priority": "low"}
]
```"""


def completion(content):
    response = MagicMock()
    response.ok = True
    response.status_code = 200
    response.json.return_value = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    return response


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# LLMClient
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestLLMClient:

    def setup_method(self):
        self.http = MagicMock()
        self.client = LLMClient("https://llm.example/v1/", "test-model", api_key="sk-test", session=self.http)

    def test_posts_openai_style_request(self):
        self.http.post.return_value = completion("hello")
        assert self.client.chat([{"role": "user", "content": "hi"}]) == "hello"

        args, kwargs = self.http.post.call_args
        assert args[0] == "https://llm.example/v1/chat/completions"
        assert kwargs["json"]["model"] == "test-model"
        assert kwargs["json"]["messages"] == [{"role": "user", "content": "hi"}]
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"
        assert kwargs["timeout"] == 60.0

    def test_network_error_is_upstream_error(self):
        self.http.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(UpstreamAIError):
            self.client.chat([{"role": "user", "content": "hi"}])

    def test_http_error_is_upstream_error(self):
        bad = MagicMock(ok=False, status_code=500, text="overloaded")
        self.http.post.return_value = bad
        with pytest.raises(UpstreamAIError):
            self.client.chat([{"role": "user", "content": "hi"}])

    def test_malformed_body_is_upstream_error(self):
        response = completion("x")
        response.json.return_value = {"unexpected": True}
        self.http.post.return_value = response
        with pytest.raises(UpstreamAIError):
            self.client.chat([{"role": "user", "content": "hi"}])

    def test_empty_content_is_upstream_error(self):
        self.http.post.return_value = completion("   ")
        with pytest.raises(UpstreamAIError):
            self.client.chat([{"role": "user", "content": "hi"}])


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# ScheduleAssistant
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@pytest.fixture
def stores(db_path):
    return TaskStore(db_path), SessionStore(db_path)


@pytest.fixture
def llm():
    fake = MagicMock()
    fake.chat.return_value = REPLY_WITH_TASKS
    return fake


@pytest.fixture
def assistant(stores, llm):
    tasks, sessions = stores
    return ScheduleAssistant(tasks, sessions, llm, clock=lambda: NOW)


def test_ask_stores_session_and_response(assistant, stores, llm):
    tasks, sessions = stores
    tasks.create_tasks([{
        "title": "Standup",
        "startDate": "2024-03-04T09:00:00Z",
        "dueDate": "2024-03-04T09:15:00Z",
    }], "user-1")

    result = assistant.ask("user-1", "When can I write my report?")

    assert result["reply"] == REPLY_WITH_TASKS
    assert [s["title"] for s in result["suggestions"]] == ["Draft report", "Book room"]

    sent = llm.chat.call_args[0][0]
    assert sent[0]["role"] == "system"
    assert sent[1] == {"role": "user", "content": "When can I write my report?"}
    assert "Standup" in sent[-1]["content"]

    session = sessions.get_session(result["sessionId"], "user-1")
    assert [m.role for m in session.messages] == ["user", "assistant"]
    assert session.title == "When can I write my report?"
    stored = sessions.get_ai_response(result["aiResponseId"])
    assert stored.raw_response == REPLY_WITH_TASKS
    assert "```json" not in stored.formatted_response


def test_ask_continues_existing_session(assistant, stores, llm):
    _, sessions = stores
    first = assistant.ask("user-1", "Plan my week")
    llm.chat.return_value = "Sure, Thursday works."
    second = assistant.ask("user-1", "What about Thursday?", session_id=first["sessionId"])

    assert second["sessionId"] == first["sessionId"]
    sent = llm.chat.call_args[0][0]
    assert [m["role"] for m in sent[1:4]] == ["user", "assistant", "user"]
    session = sessions.get_session(first["sessionId"], "user-1")
    assert len(session.messages) == 4
    assert session.title == "Plan my week"


def test_ask_upstream_failure_leaves_session_untouched(assistant, stores, llm):
    _, sessions = stores
    first = assistant.ask("user-1", "Plan my week")
    llm.chat.side_effect = UpstreamAIError("model down")

    with pytest.raises(UpstreamAIError):
        assistant.ask("user-1", "And next week?", session_id=first["sessionId"])

    session = sessions.get_session(first["sessionId"], "user-1")
    assert len(session.messages) == 2
    assert sessions.latest_ai_response(first["sessionId"]).id == first["aiResponseId"]


def test_ask_requires_message(assistant, llm):
    with pytest.raises(ValidationError):
        assistant.ask("user-1", "   ")
    llm.chat.assert_not_called()


def test_analyze_file_creates_tasks_in_new_session(assistant, stores, llm):
    tasks, sessions = stores
    result = assistant.analyze_file("user-1", "notes.txt", "text/plain", b"Finish the report. Book a room.")

    assert len(result["tasks"]) == 2
    assert result["fileInfo"] == {"name": "notes.txt", "type": "text/plain"}
    assert "writing:" in result["response"]

    stored = tasks.list_tasks("user-1", session_id=result["sessionId"])
    assert {t.title for t in stored} == {"Draft report", "Book room"}
    assert all(t.ai_response_id == result["aiResponseId"] for t in stored)
    assert all(t.status == TaskStatus.TODO for t in stored)

    draft = next(t for t in stored if t.title == "Draft report")
    assert draft.due_date - draft.start_date == timedelta(minutes=120)

    response = sessions.get_ai_response(result["aiResponseId"])
    assert response.file_info == {"name": "notes.txt", "type": "text/plain"}
    assert FILE_PROMPT_MARKER in llm.chat.call_args[0][0][0]["content"]


def test_analyze_file_without_tasks_returns_empty_list(assistant, stores, llm):
    tasks, _ = stores
    llm.chat.return_value = "This file is a shopping list; nothing to schedule."
    result = assistant.analyze_file("user-1", "list.txt", "text/plain", b"milk, eggs")
    assert result["tasks"] == []
    assert tasks.list_tasks("user-1") == []


def test_analyze_file_rejects_empty_upload(assistant, llm):
    with pytest.raises(ValidationError):
        assistant.analyze_file("user-1", "empty.txt", "text/plain", b"  \n")
    llm.chat.assert_not_called()


def test_accept_suggestion_fills_due_from_duration(assistant, stores):
    tasks, _ = stores
    task = assistant.accept_suggestion("user-1", {
        "title": "Review budget",
        "description": "Go over Q2 numbers",
        "priority": "high",
        "duration": 45,
        "startDate": "2024-03-06T14:00:00Z",
    }, session_id="s1")

    stored = tasks.get_task(task.id)
    assert stored.due_date == datetime(2024, 3, 6, 14, 45, tzinfo=timezone.utc)
    assert stored.session_id == "s1"
    assert stored.status == TaskStatus.TODO


def test_accept_suggestion_validates(assistant):
    with pytest.raises(ValidationError):
        assistant.accept_suggestion("user-1", {"title": "", "priority": "low"})
    with pytest.raises(ValidationError):
        assistant.accept_suggestion("user-1", {"title": "x", "duration": "long"})


def test_free_slots_skip_open_tasks_only(assistant, stores):
    tasks, _ = stores
    tasks.create_tasks([
        {"title": "Busy", "startDate": "2024-03-04T10:00:00Z", "dueDate": "2024-03-04T12:00:00Z"},
        {"title": "Finished", "status": "done",
         "startDate": "2024-03-04T13:00:00Z", "dueDate": "2024-03-04T15:00:00Z"},
    ], "user-1")

    start = datetime(2024, 3, 4, tzinfo=timezone.utc)
    slots = assistant.free_slots("user-1", 60, start, start + timedelta(days=1))
    assert [(s.start.hour, s.end.hour) for s in slots] == [(9, 10), (12, 17)]


@pytest.mark.parametrize("duration", [float("nan"), float("inf"), 1e300, 0])
def test_accept_suggestion_rejects_unusable_duration(assistant, duration):
    with pytest.raises(ValidationError):
        assistant.accept_suggestion("user-1", {"title": "x", "priority": "low", "duration": duration})
