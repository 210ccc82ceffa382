"""
persistence.py
--------------
Best-effort JSON snapshot of the roster store.

The whole store is written to one file, replacing the previous snapshot.
A background writer saves whenever a mutation marks the store dirty and at
least every ``interval`` seconds.  Write errors are logged and ignored: the
in-memory store stays authoritative.
"""

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from tracker.rollover import current_week_key
from tracker.schemas import ClassRecord, Student, default_avatar, new_student_id
from tracker.store import RosterStore

log = logging.getLogger("tracker.persistence")

SAMPLE_CLASS = "Sample Class"
SAMPLE_STUDENTS = [("Alice Johnson", 3), ("Bob Smith", 7), ("Carol Davis", 12)]


def sample_class(week_key: str) -> ClassRecord:
    students = [
        Student(id=new_student_id(), name=name, points=points, avatar=default_avatar(name))
        for name, points in SAMPLE_STUDENTS
    ]
    return ClassRecord(name=SAMPLE_CLASS, students=students, current_week_key=week_key)


class SnapshotPersistence:
    def __init__(
        self,
        store: RosterStore,
        path: Path,
        interval: float = 30.0,
        seed_sample_class: bool = True,
        week_key_fn: Callable[[], str] = current_week_key,
    ):
        self.store = store
        self.path = Path(path)
        self.interval = interval
        self.seed_sample_class = seed_sample_class
        self.week_key_fn = week_key_fn
        self._dirty = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._writing: Optional[asyncio.Future] = None

    # ------------------------------------------------------------------
    def load(self) -> None:
        """Fill the store from the snapshot file, falling back to empty/seeded."""
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("snapshot root is not an object")
            self.store.load(raw)
            log.info(f"Loaded {len(self.store)} classes from {self.path}")
        except FileNotFoundError:
            log.info(f"No snapshot at {self.path}, starting with fresh data")
        except (OSError, ValueError, TypeError, ValidationError) as exc:
            log.warning(f"Could not read snapshot {self.path}: {exc}; starting with fresh data")
            self.store.clear()

        if not len(self.store) and self.seed_sample_class:
            record = sample_class(self.week_key_fn())
            self.store.put(record.name, record)
            log.info(f"Seeded {SAMPLE_CLASS!r}")
            self.save()

    # ------------------------------------------------------------------
    def _serialize(self) -> str:
        return json.dumps(self.store.to_dict(), indent=2)

    def _write(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=self.path.name + ".",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp.write(payload)
        try:
            os.replace(tmp.name, self.path)
        except OSError:
            os.unlink(tmp.name)
            raise

    def save(self) -> bool:
        """Write the snapshot synchronously.  Returns False on failure."""
        try:
            self._write(self._serialize())
        except OSError as exc:
            log.error(f"Error saving data to {self.path}: {exc}")
            return False
        return True

    async def flush(self) -> bool:
        """Serialize on the loop, write in a worker thread."""
        self._dirty.clear()
        payload = self._serialize()
        try:
            await asyncio.to_thread(self._write, payload)
        except OSError as exc:
            log.error(f"Error saving data to {self.path}: {exc}")
            return False
        return True

    # ------------------------------------------------------------------
    def mark_dirty(self) -> None:
        self._dirty.set()

    @property
    def dirty(self) -> bool:
        return self._dirty.is_set()

    async def start(self) -> None:
        if self._task is None or self._task.done():
            loop = asyncio.get_running_loop()
            self._task = loop.create_task(self._run(), name="snapshot-writer")

    async def stop(self) -> None:
        """Stop the writer and flush one last time."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        # a write cancelled mid-flight keeps running in its thread
        if self._writing is not None:
            await self._writing
            self._writing = None
        await self.flush()

    async def _run(self) -> None:
        while True:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._dirty.wait(), timeout=self.interval)
            self._writing = asyncio.ensure_future(self.flush())
            await asyncio.shield(self._writing)
