"""
errors.py
---------
Error taxonomy shared by the service layer and the HTTP wiring.

Every error carries a ``kind`` (what a client switches on) and the HTTP
status it maps to.
"""

from typing import Any, Dict


class TrackerError(Exception):
    kind = "Error"
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "detail": self.detail}


class NotFound(TrackerError):
    kind = "NotFound"
    status_code = 404


class ClassNotFound(NotFound):
    def __init__(self, class_name: str):
        super().__init__(f"Class not found: {class_name!r}")
        self.class_name = class_name


class StudentNotFound(NotFound):
    def __init__(self, class_name: str, student_id: str):
        super().__init__(f"Student {student_id!r} not found in class {class_name!r}")
        self.class_name = class_name
        self.student_id = student_id


class Conflict(TrackerError):
    kind = "Conflict"
    status_code = 409


class ClassAlreadyExists(Conflict):
    def __init__(self, class_name: str):
        super().__init__(f"Class already exists: {class_name!r}")
        self.class_name = class_name


class InvalidInput(TrackerError):
    kind = "InvalidInput"
    status_code = 400
