"""
Task and chat-session storage backend (SQLite).

Provides CRUD operations and queries for tasks, chat transcripts and
stored AI responses. All timestamps are stored as UTC ISO-8601 strings.
"""
import sqlite3
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Dict, Any, Union

from .errors import NotFoundError, TransientStoreError, ValidationError
from .schema import (
    AIResponse,
    ChatSession,
    Message,
    Task,
    TaskPriority,
    TaskStatus,
    MAX_SESSION_TITLE,
    parse_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_DB = Path.home() / ".local" / "share" / "taskboard" / "taskboard.db"

# Fields a PATCH may touch, mapped to their column names
PATCHABLE_FIELDS = {
    "title": "title",
    "description": "description",
    "priority": "priority",
    "category": "category",
    "status": "status",
    "startDate": "start_date",
    "dueDate": "due_date",
    "isAllDay": "is_all_day",
}


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with WAL mode."""
    conn = sqlite3.connect(db_path, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


@contextmanager
def _transaction(db_path: str) -> Iterator[sqlite3.Connection]:
    """Commit on success, close always. Lock/IO failures become TransientStoreError."""
    try:
        conn = _connect(db_path)
    except sqlite3.OperationalError as e:
        raise TransientStoreError(f"Cannot open task database: {e}") from e
    try:
        yield conn
        conn.commit()
    except sqlite3.OperationalError as e:
        conn.rollback()
        logger.warning(f"SQLite operational error on {db_path}: {e}")
        raise TransientStoreError(str(e)) from e
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _ts(dt: Optional[datetime]) -> Optional[str]:
    """UTC ISO string for storage, so lexical order matches time order."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat()


class _SQLiteStore:
    """Shared path handling and schema creation."""

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = str(DEFAULT_DB)
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with _transaction(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    priority TEXT DEFAULT 'medium',
                    category TEXT DEFAULT 'general',
                    status TEXT DEFAULT 'todo',
                    session_id TEXT DEFAULT '',
                    ai_response_id TEXT DEFAULT '',
                    start_date TEXT,
                    due_date TEXT,
                    is_all_day INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT 'New Chat',
                    messages TEXT NOT NULL,  -- JSON list
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS ai_responses (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    raw_response TEXT NOT NULL,
                    formatted_response TEXT NOT NULL,
                    file_info TEXT,  -- JSON object
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_session ON tasks(session_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_ai_response ON tasks(ai_response_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON chat_sessions(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_ai_responses_session ON ai_responses(session_id, created_at)")


class TaskStore(_SQLiteStore):
    """SQLite-backed store for tasks."""

    def list_tasks(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 500,
    ) -> List[Task]:
        """List a user's tasks, newest first, optionally filtered by session and status."""
        query = "SELECT * FROM tasks WHERE user_id = ?"
        params: List[Any] = [user_id]
        if session_id:
            query += " AND session_id = ?"
            params.append(session_id)
        if status:
            query += " AND status = ?"
            params.append(TaskStatus.from_str(status).value)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with _transaction(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def get_task(self, task_id: str, user_id: Optional[str] = None) -> Optional[Task]:
        """Retrieve a task by ID (scoped to user_id when given)."""
        with _transaction(self.db_path) as conn:
            row = self._fetch_row(conn, task_id, user_id)
        return self._row_to_task(row) if row else None

    def create_tasks(self, tasks: List[Union[Task, Dict[str, Any]]], user_id: str) -> List[Task]:
        """
        Validate and insert a batch of tasks for user_id.

        Missing ids are generated and missing statuses default to todo.
        An inverted start/due pair is repaired by extending the due date.
        The batch is all-or-nothing.
        """
        if not isinstance(tasks, list):
            raise ValidationError("Tasks array is required")

        prepared: List[Task] = []
        for item in tasks:
            if isinstance(item, Task):
                task = item
            elif isinstance(item, dict):
                task = Task.from_dict(item)
            else:
                raise ValidationError(f"Invalid task entry: {item!r}")
            task.user_id = user_id
            if task.ensure_date_order():
                logger.info(f"Task {task.id}: due date before start date, extended to {task.due_date}")
            prepared.append(task)

        try:
            with _transaction(self.db_path) as conn:
                for task in prepared:
                    conn.execute("""
                        INSERT INTO tasks
                        (id, user_id, title, description, priority, category, status,
                         session_id, ai_response_id, start_date, due_date, is_all_day,
                         created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, self._task_values(task))
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Failed to create tasks: {e}") from e

        logger.info(f"Created {len(prepared)} task(s) for user {user_id}")
        return prepared

    def patch_task(self, task_id: str, fields: Dict[str, Any], user_id: Optional[str] = None) -> Task:
        """
        Apply a partial update and return the updated task.

        Rejects startDate > dueDate when both are supplied. When only one of
        the two is supplied, an inversion is repaired by extending dueDate.
        """
        unknown = set(fields) - set(PATCHABLE_FIELDS) - {"id"}
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

        with _transaction(self.db_path) as conn:
            row = self._fetch_row(conn, task_id, user_id)
            if not row:
                raise NotFoundError(f"Task not found: {task_id}")
            task = self._row_to_task(row)

            if "title" in fields:
                title = str(fields["title"] or "").strip()
                if not title:
                    raise ValidationError("Task title is required")
                task.title = title
            if "description" in fields:
                task.description = fields["description"] or ""
            if "priority" in fields:
                task.priority = TaskPriority.from_str(fields["priority"])
            if "category" in fields:
                task.category = fields["category"] or task.category
            if "status" in fields:
                task.status = TaskStatus.from_str(fields["status"])
            if "startDate" in fields:
                task.start_date = parse_datetime(fields["startDate"], "startDate")
            if "dueDate" in fields:
                task.due_date = parse_datetime(fields["dueDate"], "dueDate")
            if "isAllDay" in fields:
                task.is_all_day = bool(fields["isAllDay"])

            both_supplied = "startDate" in fields and "dueDate" in fields
            if both_supplied and task.start_date and task.due_date and task.start_date > task.due_date:
                raise ValidationError("startDate must not be after dueDate")
            task.ensure_date_order()

            task.updated_at = utc_now()
            conn.execute("""
                UPDATE tasks SET title = ?, description = ?, priority = ?, category = ?,
                    status = ?, start_date = ?, due_date = ?, is_all_day = ?, updated_at = ?
                WHERE id = ?
            """, (
                task.title,
                task.description,
                task.priority.value,
                task.category,
                task.status.value,
                _ts(task.start_date),
                _ts(task.due_date),
                1 if task.is_all_day else 0,
                _ts(task.updated_at),
                task.id,
            ))
        return task

    def delete_task(self, task_id: str, user_id: str) -> None:
        """Administrative delete. Not used by the reconciliation path."""
        with _transaction(self.db_path) as conn:
            cur = conn.execute(
                "DELETE FROM tasks WHERE id = ? AND user_id = ?", (task_id, user_id)
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"Task not found: {task_id}")
        logger.info(f"Deleted task {task_id}")

    def get_stats(self, user_id: str) -> Dict[str, Any]:
        """Board statistics grouped by status, priority and category."""
        stats: Dict[str, Any] = {"by_status": {}, "by_priority": {}, "by_category": {}, "total": 0}
        with _transaction(self.db_path) as conn:
            for row in conn.execute(
                "SELECT status, COUNT(*) FROM tasks WHERE user_id = ? GROUP BY status", (user_id,)
            ):
                stats["by_status"][row[0]] = row[1]
                stats["total"] += row[1]
            for row in conn.execute(
                "SELECT priority, COUNT(*) FROM tasks WHERE user_id = ? GROUP BY priority", (user_id,)
            ):
                stats["by_priority"][row[0]] = row[1]
            for row in conn.execute(
                "SELECT category, COUNT(*) FROM tasks WHERE user_id = ? AND status != 'done' GROUP BY category",
                (user_id,),
            ):
                stats["by_category"][row[0]] = row[1]
        return stats

    def _fetch_row(self, conn: sqlite3.Connection, task_id: str, user_id: Optional[str]) -> Optional[sqlite3.Row]:
        if user_id is None:
            return conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return conn.execute(
            "SELECT * FROM tasks WHERE id = ? AND user_id = ?", (task_id, user_id)
        ).fetchone()

    @staticmethod
    def _task_values(task: Task) -> tuple:
        return (
            task.id,
            task.user_id,
            task.title,
            task.description,
            task.priority.value,
            task.category,
            task.status.value,
            task.session_id,
            task.ai_response_id,
            _ts(task.start_date),
            _ts(task.due_date),
            1 if task.is_all_day else 0,
            _ts(task.created_at),
            _ts(task.updated_at),
        )

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        """Convert a database row to a Task object."""
        data = dict(row)
        return Task(
            id=data["id"],
            title=data["title"],
            description=data.get("description") or "",
            priority=TaskPriority(data.get("priority") or "medium"),
            category=data.get("category") or "general",
            status=TaskStatus(data.get("status") or "todo"),
            session_id=data.get("session_id") or "",
            ai_response_id=data.get("ai_response_id") or "",
            user_id=data["user_id"],
            start_date=parse_datetime(data.get("start_date")),
            due_date=parse_datetime(data.get("due_date")),
            is_all_day=bool(data.get("is_all_day", 0)),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )


class SessionStore(_SQLiteStore):
    """SQLite-backed store for chat transcripts and raw AI responses."""

    def upsert_session(
        self,
        session_id: str,
        user_id: str,
        title: Optional[str],
        messages: List[Union[Message, Dict[str, Any]]],
    ) -> ChatSession:
        """Create the session or replace its messages (and title, if given)."""
        if not session_id:
            raise ValidationError("Session ID is required")
        if not isinstance(messages, list):
            raise ValidationError("Messages array is required")
        parsed = [m if isinstance(m, Message) else Message.from_dict(m) for m in messages]
        if title is not None:
            title = str(title).strip()
            if len(title) > MAX_SESSION_TITLE:
                raise ValidationError(f"Title cannot be longer than {MAX_SESSION_TITLE} characters")

        now = utc_now()
        with _transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM chat_sessions WHERE id = ?", (session_id,)).fetchone()
            if row and row["user_id"] != user_id:
                raise ValidationError("A chat session with this ID already exists")

            if row:
                session = self._row_to_session(row)
                session.title = title or session.title
                session.messages = parsed
                session.updated_at = now
                conn.execute(
                    "UPDATE chat_sessions SET title = ?, messages = ?, updated_at = ? WHERE id = ?",
                    (session.title, self._dump_messages(parsed), _ts(now), session_id),
                )
            else:
                session = ChatSession(
                    id=session_id,
                    user_id=user_id,
                    title=title or "New Chat",
                    messages=parsed,
                    created_at=now,
                    updated_at=now,
                )
                conn.execute(
                    "INSERT INTO chat_sessions (id, user_id, title, messages, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (session.id, user_id, session.title, self._dump_messages(parsed), _ts(now), _ts(now)),
                )
        return session

    def get_session(self, session_id: str, user_id: str) -> Optional[ChatSession]:
        with _transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM chat_sessions WHERE id = ? AND user_id = ?", (session_id, user_id)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions(self, user_id: str, limit: int = 100) -> List[ChatSession]:
        """List a user's sessions, most recently updated first."""
        with _transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM chat_sessions WHERE user_id = ? ORDER BY updated_at DESC, rowid DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def save_ai_response(self, response: AIResponse) -> AIResponse:
        if not response.id or not response.session_id:
            raise ValidationError("AI response id and sessionId are required")
        try:
            with _transaction(self.db_path) as conn:
                conn.execute(
                    "INSERT INTO ai_responses (id, session_id, user_id, raw_response, formatted_response, "
                    "file_info, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        response.id,
                        response.session_id,
                        response.user_id,
                        response.raw_response,
                        response.formatted_response,
                        json.dumps(response.file_info) if response.file_info else None,
                        _ts(response.created_at),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Failed to save AI response: {e}") from e
        return response

    def get_ai_response(self, response_id: str) -> Optional[AIResponse]:
        with _transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM ai_responses WHERE id = ?", (response_id,)).fetchone()
        return self._row_to_ai_response(row) if row else None

    def latest_ai_response(self, session_id: str) -> Optional[AIResponse]:
        """Most recent AI response recorded for a session."""
        with _transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM ai_responses WHERE session_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (session_id,),
            ).fetchone()
        return self._row_to_ai_response(row) if row else None

    @staticmethod
    def _dump_messages(messages: List[Message]) -> str:
        return json.dumps([m.to_dict() for m in messages], ensure_ascii=False)

    def _row_to_session(self, row: sqlite3.Row) -> ChatSession:
        data = dict(row)
        try:
            raw_messages = json.loads(data.get("messages") or "[]")
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Session {data['id']}: unreadable messages column, treating as empty")
            raw_messages = []
        return ChatSession(
            id=data["id"],
            user_id=data["user_id"],
            title=data.get("title") or "New Chat",
            messages=[Message.from_dict(m) for m in raw_messages],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
        )

    def _row_to_ai_response(self, row: sqlite3.Row) -> AIResponse:
        data = dict(row)
        file_info = None
        if data.get("file_info"):
            try:
                file_info = json.loads(data["file_info"])
            except (json.JSONDecodeError, TypeError):
                file_info = None
        return AIResponse(
            id=data["id"],
            session_id=data["session_id"],
            user_id=data["user_id"],
            raw_response=data["raw_response"],
            formatted_response=data["formatted_response"],
            file_info=file_info,
            created_at=parse_datetime(data["created_at"]),
        )
