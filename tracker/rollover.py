"""
rollover.py
-----------
Weekly rollover: when the calendar week changes, archive each class's
{name, points} pairs under the old week key and zero everyone's points.

The only state is ``ClassRecord.current_week_key``.  A class whose key
already equals the current key is left alone, so evaluating twice in the
same week is a no-op.
"""

import asyncio
import contextlib
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from tracker.schemas import HistoryEntry, utcnow
from tracker.store import RosterStore

log = logging.getLogger("tracker.rollover")


def week_key(now: datetime) -> str:
    """Return ``"<year>-W<n>"`` for *now*.

    n = ceil((days since Jan 1 + weekday of Jan 1 + 1) / 7), with fractional
    days and Sunday = 0.  This is not ISO-8601 week numbering and can differ
    from calendar tools around year boundaries.
    """
    year_start = now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    days = (now - year_start).total_seconds() / 86400
    jan1_weekday = (year_start.weekday() + 1) % 7
    return f"{now.year}-W{math.ceil((days + jan1_weekday + 1) / 7)}"


def current_week_key() -> str:
    """Week key for the local wall clock."""
    return week_key(datetime.now())


@dataclass
class Rollover:
    class_name: str
    previous_week_key: Optional[str]
    week_key: str
    archived: bool


def roll_over(store: RosterStore, now_key: str, timestamp: Optional[datetime] = None) -> List[Rollover]:
    """Apply the week transition to every class not already on *now_key*."""
    timestamp = timestamp or utcnow()
    changes = []
    for record in store:
        previous = record.current_week_key
        if previous == now_key:
            continue

        archived = False
        # history is append-only: never overwrite an existing week
        if previous and previous not in record.weekly_history:
            record.weekly_history[previous] = [
                HistoryEntry(name=s.name, points=s.points) for s in record.students
            ]
            archived = True

        for student in record.students:
            student.points = 0
            student.last_updated = timestamp
        record.current_week_key = now_key
        record.last_updated = timestamp

        changes.append(Rollover(record.name, previous, now_key, archived))
    return changes


class RolloverScheduler:
    """Runs ``service.run_rollover()`` now and then every *interval* seconds."""

    def __init__(self, service, interval: float = 3600.0):
        self.service = service
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is None or self._task.done():
            loop = asyncio.get_running_loop()
            self._task = loop.create_task(self._run(), name="weekly-rollover")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        while True:
            try:
                self.service.run_rollover()
            except Exception:
                log.exception("Weekly rollover check failed")
            await asyncio.sleep(self.interval)
