"""
Free-slot search for the scheduling assistant.

Scans working hours day by day and reports every gap between busy
intervals that can hold a task of the requested length.

Working hours are 09:00-17:00 in the time zone of `window_start`
(naive datetimes are treated as local wall time). Saturdays and Sundays
are skipped outright. Output is deterministic for identical input.
"""
from datetime import datetime, time, timedelta, tzinfo
from typing import Iterable, List, Optional

from .errors import ValidationError
from .schema import BusySlot, FreeSlot

WORK_DAY_START = time(9, 0)
WORK_DAY_END = time(17, 0)
SATURDAY = 5


def _to_local(value: datetime, tz: Optional[tzinfo]) -> datetime:
    if tz is None:
        if value.tzinfo is not None:
            raise ValidationError("Busy slots are timezone-aware but the window is naive")
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def _minutes(delta: timedelta) -> float:
    return delta.total_seconds() / 60.0


def find_free_slots(
    busy_slots: Iterable[BusySlot],
    duration_minutes: float,
    window_start: datetime,
    window_end: datetime,
    day_start: time = WORK_DAY_START,
    day_end: time = WORK_DAY_END,
) -> List[FreeSlot]:
    """Return chronological free slots of at least `duration_minutes`.

    Each business day is clipped to [day_start, day_end) and to the
    [window_start, window_end) horizon. Busy slots are swept in start
    order with a max-pointer, so overlapping or nested busy slots merge.
    A gap exactly as long as the duration is accepted.
    """
    if duration_minutes is None or duration_minutes <= 0:
        raise ValidationError("duration_minutes must be > 0")
    if window_start >= window_end:
        raise ValidationError("window_start must be before window_end")
    if day_start >= day_end:
        raise ValidationError("working day must start before it ends")

    tz = window_start.tzinfo
    window_end = _to_local(window_end, tz)

    busy: List[BusySlot] = []
    for slot in busy_slots:
        if slot.start >= slot.end:
            raise ValidationError(f"Busy slot must start before it ends: {slot.start} >= {slot.end}")
        busy.append(BusySlot(start=_to_local(slot.start, tz), end=_to_local(slot.end, tz)))
    busy.sort(key=lambda b: (b.start, b.end))

    out: List[FreeSlot] = []
    day = window_start.date()
    while datetime.combine(day, time.min, tzinfo=tz) < window_end:
        if day.weekday() >= SATURDAY:
            day += timedelta(days=1)
            continue

        open_at = max(datetime.combine(day, day_start, tzinfo=tz), window_start)
        close_at = min(datetime.combine(day, day_end, tzinfo=tz), window_end)
        if open_at < close_at:
            out.extend(_scan_day(busy, open_at, close_at, duration_minutes))
        day += timedelta(days=1)

    return out


def _scan_day(
    busy: List[BusySlot],
    open_at: datetime,
    close_at: datetime,
    duration_minutes: float,
) -> List[FreeSlot]:
    day_busy = [b for b in busy if b.start < close_at and b.end > open_at]

    slots: List[FreeSlot] = []
    pointer = open_at
    for b in day_busy:
        if b.start > pointer:
            gap = _minutes(b.start - pointer)
            if gap >= duration_minutes:
                slots.append(FreeSlot(start=pointer, end=b.start, duration_minutes=gap))
        pointer = max(pointer, b.end)

    if pointer < close_at:
        gap = _minutes(close_at - pointer)
        if gap >= duration_minutes:
            slots.append(FreeSlot(start=pointer, end=close_at, duration_minutes=gap))
    return slots
