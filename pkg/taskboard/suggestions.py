"""
Prompts and response parsing for the scheduling assistant.

The model is asked to put proposed tasks in a fenced ```json block holding
an array. Everything here is tolerant of sloppy model output: bad entries
are dropped, bad fields fall back to defaults, and nothing raises.
"""
import json
import logging
import math
import re
from collections import OrderedDict
from typing import Any, Iterable, List, Optional

from .errors import ValidationError
from .schema import (
    DEFAULT_CATEGORY,
    CalendarEvent,
    FreeSlot,
    Task,
    TaskPriority,
    TaskSuggestion,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger(__name__)

DEFAULT_SUGGESTION_MINUTES = 60
MAX_SUGGESTION_MINUTES = 7 * 24 * 60

# System prompt for chat-based scheduling
SCHEDULE_ASSISTANT_PROMPT = """You are an intelligent scheduling assistant that helps users manage their tasks and calendar.

Your primary functions:
1. Understand the user's existing calendar events and tasks
2. Suggest optimal scheduling for new tasks
3. Find available time slots that work around existing commitments
4. Recommend schedules based on task priority, duration and deadlines
5. Point out conflicts and suggest how to resolve them

When suggesting task schedules, consider:
- Working hours (09:00-17:00 on weekdays unless the user says otherwise)
- Avoiding back-to-back meetings without breaks
- Scheduling high-priority tasks first
- Clustering similar categories of work
- Leaving buffer time between tasks

Always suggest specific dates and times for new tasks.

If you suggest new tasks, put them in a JSON array wrapped in a code block:
```json
[
  {
    "title": "Task title",
    "description": "Description of the task",
    "priority": "high|medium|low",
    "category": "category",
    "duration": 60,
    "startDate": "2024-10-25T09:00:00Z",
    "dueDate": "2024-10-25T10:00:00Z"
  }
]
```

Durations are in minutes and dates are ISO-8601."""

# Prompt used when the user uploads a document
FILE_ANALYSIS_PROMPT = """Analyze this file and suggest tasks. Format your response as follows:
1. First, a JSON array of tasks wrapped in ```json code blocks. Each task has:
   - title: string
   - description: string
   - priority: "low" | "medium" | "high"
   - category: string
2. After the JSON, a brief summary of the analysis."""

_JSON_BLOCK = re.compile(r"```json\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_ARRAY = re.compile(r"\[.*\]", re.DOTALL)


def build_context_message(
    message: str,
    calendar_events: Iterable[CalendarEvent],
    existing_tasks: Iterable[Task],
    free_slots: Optional[Iterable[FreeSlot]] = None,
) -> str:
    """Build the calendar/task context handed to the model next to the user's question."""
    events = [e.to_dict() for e in calendar_events]
    tasks = [
        {
            "title": t.title,
            "priority": t.priority.value,
            "category": t.category,
            "status": t.status.value,
            "startDate": format_datetime(t.start_date),
            "dueDate": format_datetime(t.due_date),
        }
        for t in existing_tasks
    ]
    parts = [
        "Here is the user's current calendar and task context:",
        f"Calendar events: {json.dumps(events, indent=2)}",
        f"Existing tasks: {json.dumps(tasks, indent=2)}",
    ]
    if free_slots is not None:
        slots = [s.to_dict() for s in free_slots]
        parts.append(f"Free working-hour slots: {json.dumps(slots, indent=2)}")
    parts.append(f'The user\'s question is: "{message}"')
    parts.append(
        "Using this context, suggest an optimal schedule for any new tasks. "
        "Be specific with dates and times."
    )
    return "\n\n".join(parts)


def extract_suggestions(text: str) -> List[TaskSuggestion]:
    """Pull task suggestions out of a model reply. Never raises."""
    if not text:
        return []

    match = _JSON_BLOCK.search(text)
    if not match:
        return []
    block = match.group(1).strip()

    try:
        items = json.loads(block)
    except json.JSONDecodeError:
        # Try to salvage the array from surrounding chatter
        inner = _ARRAY.search(block)
        if not inner:
            logger.warning("Suggestion block is not valid JSON")
            return []
        try:
            items = json.loads(inner.group())
        except json.JSONDecodeError:
            logger.warning("Suggestion block is not valid JSON")
            return []

    if not isinstance(items, list):
        return []

    suggestions = []
    for item in items:
        suggestion = _to_suggestion(item)
        if suggestion is not None:
            suggestions.append(suggestion)
    return suggestions


def _to_suggestion(item: Any) -> Optional[TaskSuggestion]:
    if not isinstance(item, dict):
        return None
    title = item.get("title")
    description = item.get("description")
    if not isinstance(title, str) or not title.strip():
        return None
    if not isinstance(description, str) or not description.strip():
        return None
    try:
        priority = TaskPriority.from_str(item.get("priority"))
    except ValidationError:
        return None

    category = item.get("category")
    if not isinstance(category, str) or not category.strip():
        category = DEFAULT_CATEGORY

    duration = parse_duration(item.get("duration"))
    if duration is None:
        duration = DEFAULT_SUGGESTION_MINUTES

    return TaskSuggestion(
        title=title.strip(),
        description=description.strip(),
        priority=priority,
        category=category.strip(),
        duration=duration,
        start_date=_lenient_date(item.get("startDate")),
        due_date=_lenient_date(item.get("dueDate")),
    )


def parse_duration(value: Any) -> Optional[int]:
    """Whole minutes for a positive, finite duration of at most a week, else None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    # json.loads accepts NaN and Infinity
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value <= 0 or value > MAX_SUGGESTION_MINUTES:
        return None
    return max(int(value), 1)


def _lenient_date(value: Any):
    try:
        return parse_datetime(value)
    except ValidationError:
        return None


def strip_json_blocks(text: str) -> str:
    """Reply text without the fenced JSON, for display."""
    return _JSON_BLOCK.sub("", text or "").strip()


def format_suggestions(suggestions: List[TaskSuggestion]) -> str:
    """Human-readable summary of suggestions grouped by category."""
    if not suggestions:
        return ""
    by_category: "OrderedDict[str, List[TaskSuggestion]]" = OrderedDict()
    for s in suggestions:
        by_category.setdefault(s.category, []).append(s)

    sections = []
    for category, items in by_category.items():
        lines = "\n\n".join(f"• {s.title} ({s.priority.value} priority)\n  {s.description}" for s in items)
        sections.append(f"{category}:\n\n{lines}")
    return "I've analyzed the content and organized the tasks by category:\n\n" + "\n\n".join(sections)