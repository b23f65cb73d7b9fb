"""
Scheduling assistant: chat, file analysis and suggestion acceptance.

Talks to any OpenAI-compatible /chat/completions endpoint. Nothing is
written to the session store until the model has answered, so an upstream
failure leaves the conversation exactly as it was.
"""
import logging
from datetime import datetime, time, timedelta, tzinfo
from typing import Any, Callable, Dict, List, Optional, Union

import requests

from .errors import UpstreamAIError, ValidationError
from .schema import (
    AIResponse,
    FreeSlot,
    Message,
    Task,
    TaskStatus,
    TaskSuggestion,
    MAX_SESSION_TITLE,
    new_id,
    utc_now,
)
from .slots import WORK_DAY_END, WORK_DAY_START, find_free_slots
from .suggestions import (
    FILE_ANALYSIS_PROMPT,
    SCHEDULE_ASSISTANT_PROMPT,
    DEFAULT_SUGGESTION_MINUTES,
    build_context_message,
    extract_suggestions,
    format_suggestions,
    parse_duration,
    strip_json_blocks,
)

logger = logging.getLogger(__name__)

CONTEXT_WINDOW = timedelta(days=7)
SESSION_TITLE_CHARS = 50


class LLMClient:
    """Minimal blocking client for an OpenAI-compatible chat API."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "",
        timeout: float = 60.0,
        temperature: float = 0.7,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.temperature = temperature
        self.http = session or requests.Session()

    @classmethod
    def from_config(cls, cfg) -> "LLMClient":
        return cls(
            base_url=cfg.llm_base_url,
            model=cfg.llm_model,
            api_key=cfg.llm_api_key,
            timeout=cfg.llm_timeout,
            temperature=cfg.llm_temperature,
        )

    def chat(self, messages: List[Dict[str, str]]) -> str:
        """Send the conversation and return the assistant's text."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {"model": self.model, "messages": messages, "temperature": self.temperature}

        try:
            r = self.http.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"LLM request failed: {e}")
            raise UpstreamAIError(f"Failed to reach the language model: {e}") from e

        if not r.ok:
            logger.error(f"LLM returned {r.status_code}: {r.text[:200]}")
            raise UpstreamAIError(f"Language model returned HTTP {r.status_code}")

        try:
            content = r.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamAIError("Malformed response from the language model") from e
        if not isinstance(content, str) or not content.strip():
            raise UpstreamAIError("Empty response from the language model")
        return content


class ScheduleAssistant:
    """Glue between the chat model, the stores and the slot finder."""

    def __init__(
        self,
        task_store,
        session_store,
        llm: LLMClient,
        day_start: time = WORK_DAY_START,
        day_end: time = WORK_DAY_END,
        tz: Optional[tzinfo] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.tasks = task_store
        self.sessions = session_store
        self.llm = llm
        self.day_start = day_start
        self.day_end = day_end
        self.tz = tz
        self.clock = clock

    # ──────────────────────────────────────────
    # Chat
    # ──────────────────────────────────────────

    def ask(self, user_id: str, message: str, session_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Answer a scheduling question with the user's calendar as context.

        Returns reply text, parsed suggestions, and the session and AI
        response ids. Raises UpstreamAIError without touching the session
        when the model call fails.
        """
        message = (message or "").strip()
        if not message:
            raise ValidationError("Message is required")

        session = self.sessions.get_session(session_id, user_id) if session_id else None
        session_id = session_id or new_id()
        history = list(session.messages) if session else []

        now = self.clock()
        if self.tz is not None:
            now = now.astimezone(self.tz)
        tasks = self.tasks.list_tasks(user_id)
        open_tasks = [t for t in tasks if t.status != TaskStatus.DONE]
        events = [t.calendar_event(now) for t in open_tasks]
        free = find_free_slots(
            [e.as_busy_slot() for e in events],
            60,
            now,
            now + CONTEXT_WINDOW,
            day_start=self.day_start,
            day_end=self.day_end,
        )

        llm_messages = [{"role": "system", "content": SCHEDULE_ASSISTANT_PROMPT}]
        llm_messages += [{"role": m.role, "content": m.content} for m in history]
        llm_messages.append({"role": "user", "content": message})
        llm_messages.append({
            "role": "system",
            "content": build_context_message(message, events, open_tasks, free),
        })

        reply = self.llm.chat(llm_messages)
        suggestions = extract_suggestions(reply)

        ai_response = AIResponse(
            id=new_id(),
            session_id=session_id,
            user_id=user_id,
            raw_response=reply,
            formatted_response=strip_json_blocks(reply) or format_suggestions(suggestions) or reply,
        )
        history += [Message(role="user", content=message), Message(role="assistant", content=reply)]
        title = session.title if session else message[:SESSION_TITLE_CHARS]
        self.sessions.upsert_session(session_id, user_id, title, history)
        self.sessions.save_ai_response(ai_response)

        logger.info(f"Assistant replied in session {session_id} with {len(suggestions)} suggestion(s)")
        return {
            "reply": reply,
            "suggestions": [s.to_dict() for s in suggestions],
            "sessionId": session_id,
            "aiResponseId": ai_response.id,
        }

    # ──────────────────────────────────────────
    # File analysis
    # ──────────────────────────────────────────

    def analyze_file(self, user_id: str, filename: str, content_type: str, data: bytes) -> Dict[str, Any]:
        """Extract tasks from an uploaded document into a fresh session."""
        text = data.decode("utf-8", errors="replace").strip()
        if not text:
            raise ValidationError("No file content provided")

        file_info = {"name": filename, "type": content_type or "application/octet-stream"}
        reply = self.llm.chat([
            {"role": "system", "content": FILE_ANALYSIS_PROMPT},
            {"role": "user", "content": f"File: {filename} ({file_info['type']})\n\n{text}"},
        ])
        suggestions = extract_suggestions(reply)
        formatted = format_suggestions(suggestions) or strip_json_blocks(reply) or "No tasks were found in the file."
        if not suggestions:
            logger.warning(f"No tasks extracted from {filename}")

        session_id = new_id()
        ai_response = AIResponse(
            id=new_id(),
            session_id=session_id,
            user_id=user_id,
            raw_response=reply,
            formatted_response=formatted,
            file_info=file_info,
        )
        self.sessions.save_ai_response(ai_response)

        created: List[Task] = []
        if suggestions:
            created = self.tasks.create_tasks(
                [self._suggestion_task(s, session_id, ai_response.id) for s in suggestions],
                user_id,
            )

        self.sessions.upsert_session(
            session_id,
            user_id,
            f"File: {filename}"[:MAX_SESSION_TITLE],
            [
                Message(role="user", content=f"Uploaded {filename}", file_info=file_info),
                Message(role="assistant", content=formatted),
            ],
        )
        return {
            "response": formatted,
            "tasks": [t.to_dict() for t in created],
            "sessionId": session_id,
            "aiResponseId": ai_response.id,
            "fileInfo": file_info,
        }

    # ──────────────────────────────────────────
    # Suggestions + slots
    # ──────────────────────────────────────────

    def accept_suggestion(
        self,
        user_id: str,
        suggestion: Union[TaskSuggestion, Dict[str, Any]],
        session_id: str = "",
        ai_response_id: str = "",
    ) -> Task:
        """Turn a suggestion into a stored todo task."""
        if isinstance(suggestion, dict):
            suggestion = self._parse_suggestion(suggestion)
        task = self._suggestion_task(suggestion, session_id, ai_response_id)
        return self.tasks.create_tasks([task], user_id)[0]

    def free_slots(
        self,
        user_id: str,
        duration_minutes: float,
        window_start: datetime,
        window_end: datetime,
    ) -> List[FreeSlot]:
        """Working-hour gaps around the user's open tasks."""
        now = self.clock()
        busy = [
            t.calendar_event(now).as_busy_slot()
            for t in self.tasks.list_tasks(user_id)
            if t.status != TaskStatus.DONE
        ]
        return find_free_slots(
            busy,
            duration_minutes,
            window_start,
            window_end,
            day_start=self.day_start,
            day_end=self.day_end,
        )

    @staticmethod
    def _parse_suggestion(data: Dict[str, Any]) -> TaskSuggestion:
        task = Task.from_dict({k: data.get(k) for k in ("title", "priority", "category", "startDate", "dueDate")})
        raw = data.get("duration")
        duration = DEFAULT_SUGGESTION_MINUTES if raw is None else parse_duration(raw)
        if duration is None:
            raise ValidationError(f"Invalid duration: {raw!r}")
        return TaskSuggestion(
            title=task.title,
            description=str(data.get("description") or ""),
            priority=task.priority,
            category=task.category,
            duration=duration,
            start_date=task.start_date,
            due_date=task.due_date,
        )

    @staticmethod
    def _suggestion_task(s: TaskSuggestion, session_id: str, ai_response_id: str) -> Task:
        due = s.due_date
        if s.start_date and not due:
            due = s.start_date + timedelta(minutes=s.duration)
        return Task(
            id=new_id(),
            title=s.title,
            description=s.description,
            priority=s.priority,
            category=s.category,
            status=TaskStatus.TODO,
            session_id=session_id or "",
            ai_response_id=ai_response_id or "",
            start_date=s.start_date,
            due_date=due,
        )
