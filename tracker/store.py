"""
store.py
--------
In-memory roster store: class name -> ClassRecord.

No I/O happens here.  Callers run on the event loop thread, so each
operation (and each service mutation built from them) completes before the
next request is looked at.
"""

from typing import Any, Dict, Iterator, List, Mapping

from tracker.errors import ClassNotFound
from tracker.schemas import ClassRecord


class RosterStore:
    def __init__(self):
        # class name -> ClassRecord, insertion ordered
        self._classes: Dict[str, ClassRecord] = {}

    def __contains__(self, class_name: object) -> bool:
        return class_name in self._classes

    def __len__(self) -> int:
        return len(self._classes)

    def __iter__(self) -> Iterator[ClassRecord]:
        return iter(list(self._classes.values()))

    # ------------------------------------------------------------------
    def get(self, class_name: str) -> ClassRecord:
        """Return the record for *class_name* or raise ClassNotFound."""
        try:
            return self._classes[class_name]
        except KeyError:
            raise ClassNotFound(class_name) from None

    # ------------------------------------------------------------------
    def put(self, class_name: str, record: ClassRecord) -> None:
        self._classes[class_name] = record

    # ------------------------------------------------------------------
    def delete(self, class_name: str) -> ClassRecord:
        """Remove a class (and with it every student); return the old record."""
        try:
            return self._classes.pop(class_name)
        except KeyError:
            raise ClassNotFound(class_name) from None

    # ------------------------------------------------------------------
    def list(self) -> List[str]:
        return list(self._classes.keys())

    def clear(self) -> None:
        self._classes.clear()

    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        """Whole store as JSON-ready data (the snapshot layout)."""
        return {name: record.dump() for name, record in self._classes.items()}

    def load(self, data: Mapping[str, Any]) -> None:
        """Replace the contents from a ``to_dict()`` dump.

        Raises pydantic.ValidationError on malformed data; the store is left
        untouched in that case.
        """
        classes = {}
        for name, raw in data.items():
            record = ClassRecord.model_validate({**raw, "name": name})
            classes[name] = record
        self._classes = classes
