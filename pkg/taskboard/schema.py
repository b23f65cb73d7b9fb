"""
Task board schema.

Task lifecycle:
  todo → in-progress → done   (any column can be dragged to any other)

Tasks are canonical. Calendar events are derived views of tasks and are
never persisted on their own.
"""
from enum import Enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any
import uuid

from .errors import ValidationError


# Gap used to repair an end-before-start interval and to size missing due dates
DEFAULT_DURATION = timedelta(hours=1)
DEFAULT_CATEGORY = "general"
MAX_SESSION_TITLE = 500


class TaskStatus(Enum):
    """Kanban columns."""
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    DONE = "done"

    @classmethod
    def from_str(cls, value: str) -> "TaskStatus":
        try:
            return cls(value)
        except ValueError:
            pass
        try:
            return cls[str(value).upper().replace("-", "_")]
        except KeyError:
            raise ValidationError(
                f"Invalid status: '{value}'. Allowed: {', '.join(s.value for s in cls)}"
            )


class TaskPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_str(cls, value: str) -> "TaskPriority":
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(
                f"Invalid priority: '{value}'. Allowed: {', '.join(p.value for p in cls)}"
            )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any, field_name: str = "date") -> Optional[datetime]:
    """
    Parse an ISO-8601 string (or pass through a datetime).

    A trailing 'Z' is accepted. Naive values are taken as UTC.
    Empty values give None; anything unparseable raises ValidationError.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid {field_name}: '{value}' is not an ISO-8601 date")
    else:
        raise ValidationError(f"Invalid {field_name}: expected ISO-8601 string, got {type(value).__name__}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class BusySlot:
    """An occupied calendar interval."""
    start: datetime
    end: datetime


@dataclass(frozen=True)
class FreeSlot:
    """An open interval long enough for the requested task."""
    start: datetime
    end: datetime
    duration_minutes: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": format_datetime(self.start),
            "end": format_datetime(self.end),
            "durationMinutes": self.duration_minutes,
        }


@dataclass
class CalendarEvent:
    """Calendar view of a task. `id` is the task id."""
    id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    priority: TaskPriority = TaskPriority.MEDIUM

    def moved(self, start: datetime, end: datetime, all_day: bool = False) -> "CalendarEvent":
        return replace(self, start=start, end=end, all_day=all_day)

    def as_busy_slot(self) -> BusySlot:
        return BusySlot(start=self.start, end=self.end)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "start": format_datetime(self.start),
            "end": format_datetime(self.end),
            "allDay": self.all_day,
            "priority": self.priority.value,
        }


@dataclass
class Task:
    """Core task record."""

    # Identifiers
    id: str
    title: str
    description: str = ""

    # Classification
    priority: TaskPriority = TaskPriority.MEDIUM
    category: str = DEFAULT_CATEGORY
    status: TaskStatus = TaskStatus.TODO

    # Provenance
    session_id: str = ""
    ai_response_id: str = ""
    user_id: str = ""

    # Scheduling
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    is_all_day: bool = False

    # Metadata
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def ensure_date_order(self) -> bool:
        """Extend due_date past start_date if they are inverted. Returns True if corrected."""
        if self.start_date and self.due_date and self.due_date < self.start_date:
            self.due_date = self.start_date + DEFAULT_DURATION
            return True
        return False

    def calendar_event(self, now: Optional[datetime] = None) -> CalendarEvent:
        """
        Derive the calendar event for this task.

        Missing start → start of today; missing due → start + 1h;
        a zero or negative span is widened to 1h.
        """
        now = now or utc_now()
        start = self.start_date or now.replace(hour=0, minute=0, second=0, microsecond=0)
        end = self.due_date or start + DEFAULT_DURATION
        if end <= start:
            end = start + DEFAULT_DURATION
        return CalendarEvent(
            id=self.id,
            title=self.title,
            start=start,
            end=end,
            all_day=self.is_all_day,
            priority=self.priority,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase shape used by the JSON API."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "category": self.category,
            "status": self.status.value,
            "sessionId": self.session_id,
            "aiResponseId": self.ai_response_id,
            "userId": self.user_id,
            "startDate": format_datetime(self.start_date),
            "dueDate": format_datetime(self.due_date),
            "isAllDay": self.is_all_day,
            "createdAt": format_datetime(self.created_at),
            "updatedAt": format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """
        Build a task from API input, validating as we go.

        Missing id, status, priority and category get their defaults.
        Raises ValidationError on a missing title or a bad enum/date.
        """
        title = str(data.get("title") or "").strip()
        if not title:
            raise ValidationError("Task title is required")

        priority = TaskPriority.MEDIUM
        if data.get("priority"):
            priority = TaskPriority.from_str(data["priority"])

        status = TaskStatus.TODO
        if data.get("status"):
            status = TaskStatus.from_str(data["status"])

        now = utc_now()
        return cls(
            id=data.get("id") or new_id(),
            title=title,
            description=data.get("description") or "",
            priority=priority,
            category=data.get("category") or DEFAULT_CATEGORY,
            status=status,
            session_id=data.get("sessionId") or "",
            ai_response_id=data.get("aiResponseId") or "",
            user_id=data.get("userId") or "",
            start_date=parse_datetime(data.get("startDate"), "startDate"),
            due_date=parse_datetime(data.get("dueDate"), "dueDate"),
            is_all_day=bool(data.get("isAllDay", False)),
            created_at=parse_datetime(data.get("createdAt"), "createdAt") or now,
            updated_at=parse_datetime(data.get("updatedAt"), "updatedAt") or now,
        )


@dataclass
class Message:
    """One chat turn."""
    role: str
    content: str
    file_info: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.file_info:
            data["fileInfo"] = dict(self.file_info)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        role = data.get("role")
        if role not in ("user", "assistant"):
            raise ValidationError(f"'{role}' is not a valid role")
        content = str(data.get("content") or "").strip()
        if not content:
            raise ValidationError("Message content is required")
        file_info = data.get("fileInfo")
        if file_info is not None and not isinstance(file_info, dict):
            raise ValidationError("fileInfo must be an object")
        return cls(role=role, content=content, file_info=file_info)


@dataclass
class ChatSession:
    """Persisted transcript between a user and the assistant."""
    id: str
    user_id: str
    title: str = "New Chat"
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": format_datetime(self.created_at),
            "updatedAt": format_datetime(self.updated_at),
        }


@dataclass
class AIResponse:
    """Raw and formatted model output kept for a session."""
    id: str
    session_id: str
    user_id: str
    raw_response: str
    formatted_response: str
    file_info: Optional[Dict[str, str]] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "userId": self.user_id,
            "rawResponse": self.raw_response,
            "formattedResponse": self.formatted_response,
            "fileInfo": self.file_info,
            "createdAt": format_datetime(self.created_at),
        }


@dataclass
class TaskSuggestion:
    """A task proposed by the assistant, not yet accepted."""
    title: str
    description: str
    priority: TaskPriority = TaskPriority.MEDIUM
    category: str = DEFAULT_CATEGORY
    duration: int = 60  # minutes
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "category": self.category,
            "duration": self.duration,
            "startDate": format_datetime(self.start_date),
            "dueDate": format_datetime(self.due_date),
        }
