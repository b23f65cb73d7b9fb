#!/usr/bin/env python3
"""
Quick verification that the task board works end-to-end.
"""
import asyncio
from datetime import datetime, timedelta, timezone

from pkg.taskboard.board import BoardController
from pkg.taskboard.client import AsyncTaskGateway
from pkg.taskboard.config import Config
from pkg.taskboard.reconciler import TaskEventReconciler
from pkg.taskboard.schema import BusySlot
from pkg.taskboard.slots import find_free_slots
from pkg.taskboard.store import TaskStore

DB_PATH = "/tmp/taskboard_verify.db"
CACHE_PATH = "/tmp/taskboard_verify_positions.json"
USER = "verify-user"


async def run_checks(store: TaskStore):
    gateway = AsyncTaskGateway(store, user_id=USER)
    cfg = Config(db_path=DB_PATH, position_cache_path=CACHE_PATH)
    reconciler = TaskEventReconciler.from_config(gateway, cfg)
    board = BoardController(gateway, reconciler=reconciler)

    tasks = store.list_tasks(USER)
    reconciler.load(tasks)
    board.load(tasks)

    # Drag
    print("\n[3/5] Dragging the first task on the calendar...")
    task = tasks[0]
    start = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0) + timedelta(days=1)
    state = await reconciler.move_event(task.id, start, start + timedelta(hours=2))
    persisted = store.get_task(task.id)
    print(f"   → State: {state.value}")
    print(f"   → Stored window: {persisted.start_date} – {persisted.due_date}")
    assert persisted.start_date == start

    # Complete
    print("\n[4/5] Moving it to done on the board...")
    ok = await board.move_card(task.id, "done")
    persisted = store.get_task(task.id)
    print(f"   → Persisted: {ok}, status: {persisted.status.value}")
    assert persisted.status.value == "done"
    assert persisted.start_date == start  # completion keeps the calendar position


def main():
    print("=" * 60)
    print("Taskboard Verification")
    print("=" * 60)

    print("\n[1/5] Creating SQLite store...")
    store = TaskStore(DB_PATH)
    print("✅ Store created")

    print("\n[2/5] Creating tasks...")
    created = store.create_tasks([
        {"title": "Draft quarterly report", "priority": "high", "category": "work"},
        {
            "title": "Inverted dates",
            "startDate": "2024-03-04T10:00:00Z",
            "dueDate": "2024-03-04T08:00:00Z",
        },
    ], USER)
    for task in created:
        print(f"✅ {task.id}: {task.title} ({task.start_date} – {task.due_date})")

    asyncio.run(run_checks(store))

    print("\n[5/5] Finding free slots on a busy Monday...")
    monday = datetime(2024, 1, 15, tzinfo=timezone.utc)
    slots = find_free_slots(
        [
            BusySlot(monday.replace(hour=10), monday.replace(hour=11)),
            BusySlot(monday.replace(hour=10, minute=30), monday.replace(hour=12)),
        ],
        60,
        monday,
        monday + timedelta(days=1),
    )
    for slot in slots:
        print(f"   {slot.start:%H:%M} – {slot.end:%H:%M} ({slot.duration_minutes:.0f} min)")

    print("\n" + "=" * 60)
    print("✅ ALL CHECKS PASSED")
    print("=" * 60)
    print(f"Test database: {DB_PATH}")


if __name__ == "__main__":
    main()
