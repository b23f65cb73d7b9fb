"""
Kanban board controller.

Cards move between todo / in-progress / done. A move is applied to the
board at once and persisted through the retry utility; a final failure
puts the card back in its old column.

Moving a card to done stamps the task with a start/due window so it shows
up on the calendar where the work actually happened.
"""
import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import NotFoundError, ValidationError
from .events import TASKS_CHANGED, Notifier, RefreshBus
from .retry import exponential_backoff, retry_with_backoff
from .schema import DEFAULT_DURATION, Task, TaskStatus, utc_now

logger = logging.getLogger(__name__)

PositionLookup = Callable[[str], Optional[Tuple[datetime, datetime]]]


def resolve_completion_window(
    task_id: str,
    live_position: Optional[PositionLookup] = None,
    cache=None,
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """
    Pick the start/due window recorded when a task is completed.

    Precedence: the position currently shown on the calendar, then an
    unconfirmed position in the cache, then the hour ending now.
    """
    if live_position is not None:
        position = live_position(task_id)
        if position is not None:
            return position

    if cache is not None:
        cached = cache.get(task_id)
        if cached is not None:
            return cached.start, cached.end

    now = now or utc_now()
    return now - DEFAULT_DURATION, now


class BoardController:
    """Owns the board's view of tasks and persists column moves."""

    def __init__(
        self,
        gateway,
        reconciler=None,
        cache=None,
        notifier: Optional[Notifier] = None,
        bus: Optional[RefreshBus] = None,
        max_attempts: int = 3,
        backoff: Optional[Callable[[int], float]] = None,
        sleep=asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.gateway = gateway
        self.reconciler = reconciler
        self.cache = cache if cache is not None else getattr(reconciler, "cache", None)
        self.notifier = notifier or Notifier()
        self.bus = bus or RefreshBus()
        self.max_attempts = max_attempts
        self.backoff = backoff or exponential_backoff(1.0)
        self.sleep = sleep
        self.clock = clock
        self._tasks: Dict[str, Task] = {}
        self._generations: Dict[str, int] = {}
        self._confirmed: Dict[str, Task] = {}  # last state the store acknowledged
        self._locks: Dict[str, asyncio.Lock] = {}

    def load(self, tasks: Iterable[Task]) -> Dict[str, List[Task]]:
        self._tasks = {t.id: t for t in tasks}
        self._confirmed = dict(self._tasks)
        return self.columns()

    def task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task not on board: {task_id}")
        return task

    def columns(self) -> Dict[str, List[Task]]:
        """Tasks grouped by status column, newest first within a column."""
        cols: Dict[str, List[Task]] = {s.value: [] for s in TaskStatus}
        for task in sorted(self._tasks.values(), key=lambda t: t.created_at, reverse=True):
            cols[task.status.value].append(task)
        return cols

    async def move_card(
        self,
        task_id: str,
        to_status,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> bool:
        """
        Move a card to another column.

        Returns True when the move is persisted, nothing had to change, or a
        newer move of the same card took over. False when it was reverted
        after the store kept failing.
        """
        task = self.task(task_id)
        status = to_status if isinstance(to_status, TaskStatus) else TaskStatus.from_str(to_status)
        if status == task.status:
            return True
        if start is not None and end is not None and start > end:
            raise ValidationError("startDate must not be after dueDate")

        if status == TaskStatus.DONE and (start is None or end is None):
            live = self.reconciler.position_of if self.reconciler is not None else None
            start, end = resolve_completion_window(task_id, live, self.cache, self.clock())

        fields = {"status": status.value}
        if start is not None:
            fields["startDate"] = start.isoformat()
        if end is not None:
            fields["dueDate"] = end.isoformat()

        moved = replace(
            task,
            status=status,
            start_date=start or task.start_date,
            due_date=end or task.due_date,
        )
        self._tasks[task_id] = moved
        generation = self._generations.get(task_id, 0) + 1
        self._generations[task_id] = generation

        lock = self._locks.setdefault(task_id, asyncio.Lock())
        async with lock:
            if self._generations.get(task_id) != generation:
                logger.debug(f"Skipping superseded move of {task_id} to {status.value}")
                return True

            outcome = await retry_with_backoff(
                lambda: self.gateway.patch_task(task_id, fields),
                max_attempts=self.max_attempts,
                backoff=self.backoff,
                sleep=self.sleep,
                is_cancelled=lambda: self._generations.get(task_id) != generation,
                label=f"move {task_id} → {status.value}",
            )
            if outcome.ok:
                # Moves are serialized, so this is the newest state the store holds
                self._confirmed[task_id] = outcome.value if isinstance(outcome.value, Task) else moved

        if self._generations.get(task_id) != generation:
            return True

        if outcome.ok:
            self._tasks[task_id] = self._confirmed[task_id]
            self.notifier.success(f"Task moved to {status.value}", task_id=task_id)
            self.bus.emit(TASKS_CHANGED, task_id=task_id, status=status.value)
            return True

        self._tasks[task_id] = self._confirmed.get(task_id, task)
        logger.warning(f"Reverted move of {task_id} to {status.value}: {outcome.error}")
        if isinstance(outcome.error, NotFoundError):
            self.notifier.error("Task no longer exists", task_id=task_id)
        else:
            self.notifier.error("Failed to update task status; card moved back", task_id=task_id)
        return False
