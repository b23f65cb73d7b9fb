"""
Short-lived cache of unconfirmed calendar positions.

A position lands here the moment a drag or resize is applied locally and
leaves once the store confirms (or the edit is reverted). Entries older
than the TTL are treated as absent and evicted on read, so a stale local
edit never overrides fresher store data for long.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Tuple

from .schema import parse_datetime, utc_now
from .errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


@dataclass(frozen=True)
class CachedPosition:
    start: datetime
    end: datetime
    saved_at: datetime


class MemoryPositionCache:
    """In-process cache keyed by task id, with per-entry freshness."""

    def __init__(self, ttl: timedelta = DEFAULT_TTL, clock: Callable[[], datetime] = utc_now):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, CachedPosition] = {}

    def get(self, task_id: str) -> Optional[CachedPosition]:
        """Return a fresh entry, or None. Stale entries are evicted."""
        entry = self._entries.get(task_id)
        if entry is None:
            return None
        if self._is_stale(entry):
            logger.debug(f"Cached position for {task_id} expired (saved {entry.saved_at})")
            del self._entries[task_id]
            self._save()
            return None
        return entry

    def put(self, task_id: str, start: datetime, end: datetime) -> CachedPosition:
        entry = CachedPosition(start=start, end=end, saved_at=self.clock())
        self._entries[task_id] = entry
        self._save()
        return entry

    def discard(self, task_id: str) -> None:
        if self._entries.pop(task_id, None) is not None:
            self._save()

    def items(self) -> Iterator[Tuple[str, CachedPosition]]:
        """Iterate fresh entries (snapshot, safe against concurrent puts)."""
        for task_id in list(self._entries):
            entry = self.get(task_id)
            if entry is not None:
                yield task_id, entry

    def __len__(self) -> int:
        return sum(1 for _ in self.items())

    def _is_stale(self, entry: CachedPosition) -> bool:
        return self.clock() - entry.saved_at > self.ttl

    def _save(self) -> None:
        """Persistence hook; the in-memory cache keeps nothing outside the process."""
        pass


class JsonFilePositionCache(MemoryPositionCache):
    """
    Position cache mirrored to a JSON file so pending edits survive a restart.

    Writes are atomic (temp file + rename). An unreadable file starts the
    cache empty rather than failing.
    """

    def __init__(self, path: str, ttl: timedelta = DEFAULT_TTL, clock: Callable[[], datetime] = utc_now):
        super().__init__(ttl=ttl, clock=clock)
        self.path = Path(path).expanduser()
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable position cache {self.path}: {e}")
            return
        if not isinstance(raw, dict):
            logger.warning(f"Ignoring position cache {self.path}: not a JSON object")
            return

        for task_id, item in raw.items():
            try:
                start = parse_datetime(item["start"], "start")
                end = parse_datetime(item["end"], "end")
                saved_at = parse_datetime(item["savedAt"], "savedAt")
            except (KeyError, TypeError, ValidationError) as e:
                logger.warning(f"Skipping malformed cached position for {task_id}: {e}")
                continue
            if start and end and saved_at:
                self._entries[task_id] = CachedPosition(start=start, end=end, saved_at=saved_at)

    def _save(self) -> None:
        payload = {
            task_id: {
                "start": entry.start.isoformat(),
                "end": entry.end.isoformat(),
                "savedAt": entry.saved_at.isoformat(),
            }
            for task_id, entry in self._entries.items()
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            logger.error(f"Failed to write position cache {self.path}: {e}")
