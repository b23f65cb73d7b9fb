"""
Task/event reconciliation for the calendar view.

Each task-event pair is in one of three states:

  SYNCED         displayed position == last position confirmed by the store
  PENDING_WRITE  position applied locally, write in flight or queued
  REVERTED       write failed for good; display rolled back, user told

Transitions:
  SYNCED/REVERTED → PENDING_WRITE   drag or resize (optimistic apply + write)
  PENDING_WRITE → SYNCED            store acknowledged
  PENDING_WRITE → PENDING_WRITE     transient failure, retried with backoff
  PENDING_WRITE → REVERTED          retries exhausted, or task gone

Unconfirmed positions are mirrored into a position cache. On load a fresh
cached position wins over the value fetched from the store, so an edit in
progress survives a reload. Cache entries past their TTL are ignored.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import NotFoundError, ValidationError
from .events import Notifier
from .position_cache import JsonFilePositionCache, MemoryPositionCache
from .retry import exponential_backoff, retry_with_backoff
from .schema import CalendarEvent, Task, utc_now

logger = logging.getLogger(__name__)


class SyncState(Enum):
    SYNCED = "synced"
    PENDING_WRITE = "pending_write"
    REVERTED = "reverted"


@dataclass
class _Entry:
    event: CalendarEvent      # what the calendar shows
    confirmed: CalendarEvent  # last position the store acknowledged
    state: SyncState = SyncState.SYNCED
    generation: int = 0       # bumped by every local edit; stale writes compare against it


class TaskEventReconciler:
    """Keeps calendar event positions consistent with the task store."""

    def __init__(
        self,
        gateway,
        cache=None,
        notifier: Optional[Notifier] = None,
        max_attempts: int = 3,
        backoff: Optional[Callable[[int], float]] = None,
        sleep=asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            gateway: object with `async patch_task(task_id, fields) -> Task`
            cache: position cache (MemoryPositionCache, JsonFilePositionCache)
            notifier: toast sink for success/error messages
            max_attempts: total write attempts before reverting
            backoff: retry number → delay seconds
            sleep: awaitable sleep, injectable for tests
            clock: current time, used for events of undated tasks
        """
        self.gateway = gateway
        self.cache = cache if cache is not None else MemoryPositionCache()
        self.notifier = notifier or Notifier()
        self.max_attempts = max_attempts
        self.backoff = backoff or exponential_backoff(1.0)
        self.sleep = sleep
        self.clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(cls, gateway, cfg, notifier: Optional[Notifier] = None, **kwargs) -> "TaskEventReconciler":
        """Reconciler with a file-backed position cache and the configured retry policy."""
        cache = JsonFilePositionCache(cfg.position_cache_path, ttl=cfg.position_ttl)
        return cls(
            gateway,
            cache=cache,
            notifier=notifier,
            max_attempts=cfg.retry_attempts,
            backoff=exponential_backoff(cfg.retry_base_delay),
            **kwargs,
        )

    # ──────────────────────────────────────────
    # Load + queries
    # ──────────────────────────────────────────

    def load(self, tasks: Iterable[Task]) -> List[CalendarEvent]:
        """
        (Re)build events from freshly fetched tasks.

        Precedence per task: an in-memory pending edit, then a fresh cached
        position, then the task's own dates. Tasks missing from `tasks` are
        dropped.
        """
        now = self.clock()
        seen = set()
        for task in tasks:
            seen.add(task.id)
            canonical = task.calendar_event(now)
            entry = self._entries.get(task.id)

            if entry is not None and entry.state == SyncState.PENDING_WRITE:
                # Local intent is newer than anything the store can tell us
                entry.confirmed = canonical
                continue

            cached = self.cache.get(task.id)
            if cached is not None:
                displayed = canonical.moved(cached.start, cached.end, canonical.all_day)
                state = SyncState.PENDING_WRITE
                logger.info(f"Restored unconfirmed position for {task.id} from cache")
            else:
                displayed = canonical
                state = SyncState.SYNCED

            if entry is None:
                self._entries[task.id] = _Entry(event=displayed, confirmed=canonical, state=state)
            else:
                entry.event = displayed
                entry.confirmed = canonical
                entry.state = state

        for task_id in list(self._entries):
            if task_id not in seen:
                del self._entries[task_id]
        return self.events()

    def events(self) -> List[CalendarEvent]:
        """Displayed events, sorted by start."""
        return sorted((e.event for e in self._entries.values()), key=lambda ev: (ev.start, ev.id))

    def state_of(self, task_id: str) -> SyncState:
        return self._entry(task_id).state

    def position_of(self, task_id: str) -> Optional[Tuple[datetime, datetime]]:
        """In-memory displayed position, or None for unknown tasks."""
        entry = self._entries.get(task_id)
        if entry is None:
            return None
        return entry.event.start, entry.event.end

    def confirmed_position(self, task_id: str) -> Tuple[datetime, datetime]:
        entry = self._entry(task_id)
        return entry.confirmed.start, entry.confirmed.end

    # ──────────────────────────────────────────
    # Edits
    # ──────────────────────────────────────────

    async def move_event(self, task_id: str, start: datetime, end: datetime, all_day: bool = False) -> SyncState:
        """Drag: apply the new position now, then persist it."""
        entry = self._entry(task_id)
        if start >= end:
            raise ValidationError(f"Event must start before it ends: {start} >= {end}")

        entry.generation += 1
        entry.event = entry.event.moved(start, end, all_day)
        entry.state = SyncState.PENDING_WRITE
        self.cache.put(task_id, start, end)
        return await self._persist(task_id, entry, entry.generation)

    async def resize_event(self, task_id: str, start: datetime, end: datetime) -> SyncState:
        """Resize: same as a drag, always leaves all-day mode."""
        return await self.move_event(task_id, start, end, all_day=False)

    async def resume_pending(self) -> Dict[str, SyncState]:
        """Write positions restored from the cache that nothing is writing yet."""
        jobs = []
        for task_id, entry in list(self._entries.items()):
            lock = self._locks.get(task_id)
            if entry.state == SyncState.PENDING_WRITE and not (lock and lock.locked()):
                entry.generation += 1
                jobs.append((task_id, self._persist(task_id, entry, entry.generation)))
        results = await asyncio.gather(*(job for _, job in jobs))
        return {task_id: state for (task_id, _), state in zip(jobs, results)}

    def flush(self) -> int:
        """Best-effort save of every pending position into the cache. Returns the count."""
        count = 0
        for task_id, entry in self._entries.items():
            if entry.state == SyncState.PENDING_WRITE:
                self.cache.put(task_id, entry.event.start, entry.event.end)
                count += 1
        return count

    # ──────────────────────────────────────────
    # Persistence
    # ──────────────────────────────────────────

    async def _persist(self, task_id: str, entry: _Entry, generation: int) -> SyncState:
        lock = self._locks.setdefault(task_id, asyncio.Lock())
        async with lock:
            if entry.generation != generation:
                return entry.state  # superseded while queued

            target = entry.event
            fields = {
                "startDate": target.start.isoformat(),
                "dueDate": target.end.isoformat(),
                "isAllDay": target.all_day,
            }
            outcome = await retry_with_backoff(
                lambda: self.gateway.patch_task(task_id, fields),
                max_attempts=self.max_attempts,
                backoff=self.backoff,
                sleep=self.sleep,
                is_cancelled=lambda: entry.generation != generation,
                label=f"patch {task_id}",
            )

        if entry.generation != generation:
            # Writes are serialized per task, so nothing newer has landed yet
            if outcome.ok:
                entry.confirmed = self._confirmed_event(outcome.value, target)
            logger.debug(f"Superseded write for {task_id} (gen {generation}) finished, ok={outcome.ok}")
            return entry.state

        if outcome.ok:
            confirmed = self._confirmed_event(outcome.value, target)
            entry.confirmed = confirmed
            entry.event = confirmed
            entry.state = SyncState.SYNCED
            self.cache.discard(task_id)
            self.notifier.success("Task updated successfully", task_id=task_id)
            return entry.state

        entry.event = entry.confirmed
        entry.state = SyncState.REVERTED
        self.cache.discard(task_id)
        if isinstance(outcome.error, NotFoundError):
            message = "Task no longer exists; the calendar change was undone"
        else:
            message = f"Failed to update task after {outcome.attempts} attempt(s); change reverted"
        logger.warning(f"Reverted {task_id}: {outcome.error}")
        self.notifier.error(message, task_id=task_id)
        return entry.state

    def _confirmed_event(self, result, target: CalendarEvent) -> CalendarEvent:
        """Take the store's dates when it returned a task, else the position we sent."""
        if isinstance(result, Task) and result.start_date and result.due_date:
            return target.moved(result.start_date, result.due_date, result.is_all_day)
        return target

    def _entry(self, task_id: str) -> _Entry:
        entry = self._entries.get(task_id)
        if entry is None:
            raise NotFoundError(f"No calendar event for task {task_id}")
        return entry
