"""
service.py
----------
Roster mutations, independent of HTTP.

Every mutation follows the same pipeline:

    validate -> apply to the store -> mark persistence dirty -> broadcast -> return

A failed validation raises before anything is touched, so nothing is
persisted or broadcast.  Point changes are always computed from the server's
current value, which makes concurrent +1/-1 requests commute.
"""

import logging
import random
from typing import Any, Callable, Dict, List, Optional

from pydantic.alias_generators import to_camel

from tracker.broadcast import Broadcaster, Event
from tracker.errors import ClassAlreadyExists, InvalidInput, StudentNotFound
from tracker.rollover import Rollover, current_week_key, roll_over
from tracker.schemas import (
    ClassRecord,
    Student,
    clamp_points,
    default_avatar,
    new_student_id,
    utcnow,
)
from tracker.store import RosterStore

log = logging.getLogger("tracker.service")

BULK_CHANGES = (1, -1)
PROFILE_FIELDS = ("name", "avatar", "has_custom_avatar")


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"{field} is required")
    return value.strip()


class RosterService:
    def __init__(
        self,
        store: RosterStore,
        broadcaster: Broadcaster,
        persistence=None,
        week_key_fn: Callable[[], str] = current_week_key,
        clock=utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.persistence = persistence
        self.week_key_fn = week_key_fn
        self.clock = clock
        self.rng = rng or random.Random()

    def _committed(self, event: Event, data: Dict[str, Any]) -> int:
        if self.persistence is not None:
            self.persistence.mark_dirty()
        return self.broadcaster.publish(event, data)

    def _student(self, class_name: str, student_id: str):
        record = self.store.get(class_name)
        student = record.find_student(student_id)
        if student is None:
            raise StudentNotFound(class_name, student_id)
        return record, student

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_classes(self) -> Dict[str, Any]:
        return self.store.to_dict()

    def list_students(self, class_name: str) -> Dict[str, Any]:
        record = self.store.get(class_name)
        return {
            "students": [{"name": s.name, "points": s.points} for s in record.students],
            "currentWeek": record.current_week_key,
        }

    def weekly_history(self, class_name: str) -> Dict[str, Any]:
        record = self.store.get(class_name)
        return record.dump()["weeklyHistory"]

    # ------------------------------------------------------------------
    # Classes
    # ------------------------------------------------------------------
    def create_class(self, class_name: Any) -> ClassRecord:
        name = _require_text(class_name, "Class name")
        if "/" in name:
            raise InvalidInput("Class name cannot contain '/'")
        if name in self.store:
            raise ClassAlreadyExists(name)

        record = ClassRecord(name=name, current_week_key=self.week_key_fn(), last_updated=self.clock())
        self.store.put(name, record)
        log.info(f"Created class {name!r}")
        self._committed(Event.CLASS_CREATED, {"className": name, "data": record.dump()})
        return record

    def delete_class(self, class_name: str) -> ClassRecord:
        record = self.store.delete(class_name)
        log.info(f"Deleted class {class_name!r} ({len(record.students)} students)")
        self._committed(Event.CLASS_DELETED, {"className": class_name})
        return record

    # ------------------------------------------------------------------
    # Students
    # ------------------------------------------------------------------
    def add_student(
        self,
        class_name: str,
        name: Any,
        avatar: Optional[str] = None,
        has_custom_avatar: bool = False,
    ) -> Student:
        record = self.store.get(class_name)
        name = _require_text(name, "Student name")
        if avatar is not None and not isinstance(avatar, str):
            raise InvalidInput("avatar must be a string")

        now = self.clock()
        student = Student(
            id=new_student_id(),
            name=name,
            points=0,
            avatar=avatar or default_avatar(name),
            has_custom_avatar=bool(has_custom_avatar),
            last_updated=now,
        )
        record.students.append(student)
        record.last_updated = now
        self._committed(Event.STUDENT_ADDED, {"className": class_name, "student": student.dump()})
        return student

    def delete_student(self, class_name: str, student_id: str) -> Dict[str, Any]:
        record = self.store.get(class_name)
        index = record.index_of(student_id)
        if index < 0:
            raise StudentNotFound(class_name, student_id)

        student = record.students.pop(index)
        record.last_updated = self.clock()
        self._committed(
            Event.STUDENT_DELETED,
            {"className": class_name, "studentId": student_id, "studentIndex": index},
        )
        return {"deletedStudent": student.dump(), "studentIndex": index}

    def update_points(
        self,
        class_name: str,
        student_id: str,
        points: Optional[int] = None,
        change: Optional[int] = None,
    ) -> Student:
        """Set absolute *points* or apply a signed *change*; result is clamped.

        When both are given the absolute value wins.
        """
        record, student = self._student(class_name, student_id)
        if points is None and change is None:
            raise InvalidInput("Either points or change is required")
        for value in (points, change):
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                raise InvalidInput("points and change must be integers")

        if points is not None:
            student.points = clamp_points(points)
        else:
            student.points = clamp_points(student.points + change)
        student.last_updated = self.clock()
        record.last_updated = student.last_updated

        self._committed(
            Event.STUDENT_POINTS_UPDATED,
            {
                "className": class_name,
                "studentId": student_id,
                "points": student.points,
                "timestamp": student.dump()["lastUpdated"],
            },
        )
        return student

    def update_student(self, class_name: str, student_id: str, **fields: Any) -> Student:
        """Merge profile fields; only name, avatar and has_custom_avatar are accepted."""
        record, student = self._student(class_name, student_id)

        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            raise InvalidInput(f"Fields not updatable: {', '.join(sorted(unknown))}")
        updates = {key: value for key, value in fields.items() if value is not None}
        if not updates:
            raise InvalidInput("No updatable fields supplied")
        if "name" in updates:
            updates["name"] = _require_text(updates["name"], "Student name")
        if "avatar" in updates and not isinstance(updates["avatar"], str):
            raise InvalidInput("avatar must be a string")
        if "has_custom_avatar" in updates and not isinstance(updates["has_custom_avatar"], bool):
            raise InvalidInput("hasCustomAvatar must be a boolean")

        for key, value in updates.items():
            setattr(student, key, value)
        student.last_updated = self.clock()
        record.last_updated = student.last_updated

        applied = {key: value for key, value in student.dump().items() if key in _wire_names(updates)}
        self._committed(
            Event.STUDENT_UPDATED,
            {"className": class_name, "studentId": student_id, "updates": applied},
        )
        return student

    # ------------------------------------------------------------------
    # Whole class
    # ------------------------------------------------------------------
    def reset_week(self, class_name: str) -> ClassRecord:
        record = self.store.get(class_name)
        now = self.clock()
        for student in record.students:
            student.points = 0
            student.last_updated = now
        record.last_updated = now
        log.info(f"Manual week reset for {class_name!r}")
        self._committed(Event.WEEK_RESET, {"className": class_name})
        return record

    def adjust_all(self, class_name: str, change: Any) -> ClassRecord:
        record = self.store.get(class_name)
        if isinstance(change, bool) or change not in BULK_CHANGES:
            raise InvalidInput("Change must be +1 or -1")

        now = self.clock()
        for student in record.students:
            student.points = clamp_points(student.points + change)
            student.last_updated = now
        record.last_updated = now
        self._committed(Event.ALL_POINTS_UPDATED, {"className": class_name, "change": change})
        return record

    # ------------------------------------------------------------------
    # Weekly rollover
    # ------------------------------------------------------------------
    def run_rollover(self) -> List[Rollover]:
        now_key = self.week_key_fn()
        changes = roll_over(self.store, now_key, self.clock())
        for change in changes:
            record = self.store.get(change.class_name)
            log.info(
                f"Rolled {change.class_name!r} over {change.previous_week_key} -> {change.week_key}"
            )
            archive = None
            if change.archived:
                archive = [entry.dump() for entry in record.weekly_history[change.previous_week_key]]
            self._committed(
                Event.ROLLOVER_OCCURRED,
                {
                    "className": change.class_name,
                    "weekKey": change.week_key,
                    "previousWeekKey": change.previous_week_key,
                    "archived": archive,
                },
            )
        return changes

    # ------------------------------------------------------------------
    # Ephemeral selection spotlight
    # ------------------------------------------------------------------
    def select_student(
        self,
        class_name: str,
        student_index: Optional[int] = None,
        student_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Announce a highlighted student; picks one at random when no index is given."""
        record = self.store.get(class_name)
        if not record.students:
            raise InvalidInput(f"Class {class_name!r} has no students")

        if student_id is not None and student_index is None:
            student_index = record.index_of(student_id)
            if student_index < 0:
                raise StudentNotFound(class_name, student_id)
        elif student_index is None:
            student_index = self.rng.randrange(len(record.students))
        elif isinstance(student_index, bool) or not isinstance(student_index, int):
            raise InvalidInput("studentIndex must be an integer")
        elif not 0 <= student_index < len(record.students):
            raise InvalidInput(f"studentIndex {student_index} out of range")

        data = {
            "className": class_name,
            "studentIndex": student_index,
            "studentId": record.students[student_index].id,
        }
        self.broadcaster.publish_ephemeral(Event.STUDENT_SELECTED, data)
        return data

    def clear_selection(self, class_name: str) -> Dict[str, Any]:
        self.store.get(class_name)
        data = {"className": class_name}
        self.broadcaster.publish_ephemeral(Event.SELECTION_CLEARED, data)
        return data


def _wire_names(updates: Dict[str, Any]) -> List[str]:
    return [to_camel(key) for key in updates]
