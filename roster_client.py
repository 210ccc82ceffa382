"""
roster_client.py
----------------

Client side of the classroom tracker:

* ``RosterMirror`` – a local copy of every class, updated by applying the
  same transformation the server applied for each pushed event.
* ``RosterClient`` – talks to the server: REST for mutations (5 s timeout),
  WebSocket for the event stream, bounded reconnects.

Events carry a server sequence number; the mirror ignores anything it has
already applied, so re-delivery is harmless.  After a reconnect the mirror is
thrown away and rebuilt from the snapshot the server sends first.
"""

import asyncio
import copy
import json
import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
import websockets
from websockets.exceptions import WebSocketException

log = logging.getLogger("tracker.client")

MIN_POINTS = 0
MAX_POINTS = 20


def _clamp(value: int) -> int:
    return max(MIN_POINTS, min(MAX_POINTS, value))


class ClientError(Exception):
    kind = "Error"

    def __init__(self, detail: str, kind: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        if kind is not None:
            self.kind = kind
        self.status_code = status_code


class Disconnected(ClientError):
    """No live event channel; mutation controls should be disabled."""

    kind = "Unavailable"


class ActionFailed(ClientError):
    """The server rejected the request, or it did not answer in time."""


# ---------------------------------------------------------------------------
# Local mirror
# ---------------------------------------------------------------------------
class RosterMirror:
    def __init__(self):
        self.classes: Dict[str, Dict[str, Any]] = {}
        self.selected: Dict[str, int] = {}
        self.last_seq = 0
        # set when a sequence gap shows events were missed
        self.stale = False
        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            "class-created": self._class_created,
            "class-deleted": self._class_deleted,
            "student-added": self._student_added,
            "student-deleted": self._student_deleted,
            "student-points-updated": self._points_updated,
            "student-updated": self._student_updated,
            "week-reset": self._week_reset,
            "all-points-updated": self._all_points_updated,
            "rollover-occurred": self._rollover,
            "student-selected": self._student_selected,
            "selection-cleared": self._selection_cleared,
        }

    # ------------------------------------------------------------------
    def reset(self, classes: Dict[str, Any], seq: int = 0) -> None:
        """Discard everything and start again from a full snapshot."""
        self.classes = copy.deepcopy(classes)
        self.selected = {}
        self.last_seq = seq
        self.stale = False

    def students(self, class_name: str) -> List[Dict[str, Any]]:
        record = self.classes.get(class_name)
        return record["students"] if record else []

    def find(self, class_name: str, student_id: str) -> Optional[Dict[str, Any]]:
        for student in self.students(class_name):
            if student["id"] == student_id:
                return student
        return None

    # ------------------------------------------------------------------
    def apply(self, message: Dict[str, Any]) -> bool:
        """Apply one pushed event.  Returns False when it was ignored."""
        event = message.get("event")
        data = message.get("data") or {}
        seq = message.get("seq")

        if event == "classes-updated":
            self.reset(data.get("classes") or {}, seq or 0)
            return True

        if seq is not None:
            if seq <= self.last_seq:
                return False
            if seq > self.last_seq + 1:
                log.warning(f"missed events {self.last_seq + 1}..{seq - 1}, resync needed")
                self.stale = True
            self.last_seq = seq

        handler = self._handlers.get(event)
        if handler is None:
            log.debug(f"ignoring unknown event {event!r}")
            return False
        handler(data)
        return True

    # ------------------------------------------------------------------
    # Optimistic intents, overwritten by the authoritative event
    # ------------------------------------------------------------------
    def apply_optimistic_change(self, class_name: str, student_id: str, change: int) -> Optional[int]:
        """Adjust points locally; returns the previous value (None if unknown)."""
        student = self.find(class_name, student_id)
        if student is None:
            return None
        previous = student["points"]
        student["points"] = _clamp(previous + change)
        return previous

    def apply_optimistic_points(self, class_name: str, student_id: str, points: int) -> Optional[int]:
        student = self.find(class_name, student_id)
        if student is None:
            return None
        previous = student["points"]
        student["points"] = _clamp(points)
        return previous

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    def _class_created(self, data):
        record = copy.deepcopy(data.get("data") or {})
        record.setdefault("students", [])
        record.setdefault("weeklyHistory", {})
        self.classes[data["className"]] = record

    def _class_deleted(self, data):
        self.classes.pop(data["className"], None)
        self.selected.pop(data["className"], None)

    def _student_added(self, data):
        record = self.classes.get(data["className"])
        if record is None:
            return
        student = dict(data["student"])
        for index, existing in enumerate(record["students"]):
            if existing["id"] == student["id"]:
                record["students"][index] = student
                return
        record["students"].append(student)

    def _student_deleted(self, data):
        class_name = data["className"]
        record = self.classes.get(class_name)
        if record is None:
            return
        before = len(record["students"])
        record["students"] = [s for s in record["students"] if s["id"] != data["studentId"]]
        if len(record["students"]) == before:
            return

        removed = data.get("studentIndex")
        selected = self.selected.get(class_name)
        if selected is None or removed is None:
            return
        if selected == removed:
            del self.selected[class_name]
        elif selected > removed:
            self.selected[class_name] = selected - 1

    def _points_updated(self, data):
        student = self.find(data["className"], data["studentId"])
        if student is not None:
            student["points"] = _clamp(data["points"])
            if data.get("timestamp"):
                student["lastUpdated"] = data["timestamp"]

    def _student_updated(self, data):
        student = self.find(data["className"], data["studentId"])
        if student is not None:
            student.update(data.get("updates") or {})

    def _week_reset(self, data):
        for student in self.students(data["className"]):
            student["points"] = 0

    def _all_points_updated(self, data):
        for student in self.students(data["className"]):
            student["points"] = _clamp(student["points"] + data["change"])

    def _rollover(self, data):
        record = self.classes.get(data["className"])
        if record is None:
            return
        history = record.setdefault("weeklyHistory", {})
        previous = data.get("previousWeekKey")
        if previous and data.get("archived") is not None and previous not in history:
            history[previous] = data["archived"]
        for student in record["students"]:
            student["points"] = 0
        record["currentWeekKey"] = data["weekKey"]

    def _student_selected(self, data):
        self.selected[data["className"]] = data["studentIndex"]

    def _selection_cleared(self, data):
        self.selected.pop(data["className"], None)


# ---------------------------------------------------------------------------
# Network client
# ---------------------------------------------------------------------------
class RosterClient:
    def __init__(
        self,
        base_url: str = "http://localhost:3001",
        timeout: float = 5.0,
        reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        on_event: Optional[Callable[[str, Dict[str, Any]], None]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Parameters
        ----------
        base_url : server root, e.g. ``http://192.168.1.20:3001``.
        timeout : seconds before a REST call is reported as failed.
        reconnect_attempts, reconnect_delay : retry policy for the event channel.
        on_event : called with (event name, data) after each applied event.
        transport : optional httpx transport (tests use ``httpx.MockTransport``).
        """
        self.base_url = base_url.rstrip("/")
        scheme, _, rest = self.base_url.partition("://")
        self.ws_url = f"{'wss' if scheme == 'https' else 'ws'}://{rest}/ws"
        self.timeout = timeout
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.on_event = on_event
        self.mirror = RosterMirror()
        self.connected = False
        # set once a connection delivered its snapshot
        self._established = False
        self._ws = None
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------
    def handle_message(self, raw: str) -> bool:
        try:
            message = json.loads(raw)
        except ValueError:
            log.warning(f"Bad message from server: {raw!r}")
            return False
        applied = self.mirror.apply(message)
        if message.get("event") == "classes-updated":
            self.connected = True
            self._established = True
        if applied and self.on_event is not None:
            self.on_event(message["event"], message.get("data") or {})
        return applied

    async def _listen(self) -> None:
        """One connection lifetime."""
        async with websockets.connect(self.ws_url, open_timeout=self.timeout) as ws:
            self._ws = ws
            try:
                async for raw in ws:
                    self.handle_message(raw)
                    if self.mirror.stale:
                        log.info("Mirror is stale, reconnecting for a fresh snapshot")
                        break
            finally:
                self._ws = None
                self.connected = False

    async def run(self) -> None:
        """Keep the event channel open.

        A connection that delivered its snapshot restores the full retry
        budget, however it ended.  Raises Disconnected once
        ``reconnect_attempts`` reconnects in a row have failed; the user has
        to retry by calling ``run()`` again.
        """
        failures = 0
        while failures <= self.reconnect_attempts:
            if failures:
                await asyncio.sleep(self.reconnect_delay)
            self._established = False
            try:
                await self._listen()
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                log.warning(f"Connection to {self.ws_url} failed: {exc}")
            failures = 1 if self._established else failures + 1
        raise Disconnected(f"Cannot connect to server at {self.ws_url}")

    async def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if self._ws is None or not self.connected:
            raise Disconnected("Not connected to server")
        await self._ws.send(json.dumps({"event": event, "data": data}))

    async def select_random_student(self, class_name: str, student_index: Optional[int] = None) -> None:
        """Ask the server to spotlight a student (random when no index is given)."""
        data: Dict[str, Any] = {"className": class_name}
        if student_index is not None:
            data["studentIndex"] = student_index
        await self._emit("select-random-student", data)

    async def clear_selection(self, class_name: str) -> None:
        await self._emit("clear-selection", {"className": class_name})

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------
    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None, require_connection: bool = True):
        if require_connection and not self.connected:
            raise Disconnected("Not connected to server")
        try:
            response = await self._http.request(method, path, json=body)
        except httpx.TimeoutException as exc:
            raise ActionFailed(f"{method} {path} timed out", kind="Timeout") from exc
        except httpx.TransportError as exc:
            raise ActionFailed(f"{method} {path} failed: {exc}", kind="Unavailable") from exc

        if response.is_error:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            raise ActionFailed(
                payload.get("detail") or response.text,
                kind=payload.get("error", "Error"),
                status_code=response.status_code,
            )
        return response.json()

    @staticmethod
    def _class_path(class_name: str) -> str:
        return f"/api/classes/{quote(class_name, safe='')}"

    def _student_path(self, class_name: str, student_id: str) -> str:
        return f"{self._class_path(class_name)}/students/{quote(student_id, safe='')}"

    async def list_classes(self) -> Dict[str, Any]:
        return (await self._request("GET", "/api/classes", require_connection=False))["classes"]

    async def list_students(self, class_name: str) -> Dict[str, Any]:
        return await self._request("GET", f"{self._class_path(class_name)}/students", require_connection=False)

    async def create_class(self, class_name: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/classes", {"className": class_name})

    async def delete_class(self, class_name: str) -> Dict[str, Any]:
        return await self._request("DELETE", self._class_path(class_name))

    async def add_student(self, class_name: str, name: str, avatar: Optional[str] = None,
                          has_custom_avatar: bool = False) -> Dict[str, Any]:
        student: Dict[str, Any] = {"name": name, "hasCustomAvatar": has_custom_avatar}
        if avatar is not None:
            student["avatar"] = avatar
        result = await self._request("POST", f"{self._class_path(class_name)}/students", {"student": student})
        return result["student"]

    async def delete_student(self, class_name: str, student_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", self._student_path(class_name, student_id))

    async def adjust_points(self, class_name: str, student_id: str, change: int, optimistic: bool = True) -> int:
        previous = None
        if optimistic:
            previous = self.mirror.apply_optimistic_change(class_name, student_id, change)
        try:
            result = await self._request("PUT", f"{self._student_path(class_name, student_id)}/points", {"change": change})
        except ClientError:
            self._revert(class_name, student_id, previous, change)
            raise
        return result["points"]

    async def set_points(self, class_name: str, student_id: str, points: int) -> int:
        result = await self._request("PUT", f"{self._student_path(class_name, student_id)}/points", {"points": points})
        return result["points"]

    async def update_student(self, class_name: str, student_id: str, name: Optional[str] = None,
                             avatar: Optional[str] = None, has_custom_avatar: Optional[bool] = None) -> Dict[str, Any]:
        updates = {"name": name, "avatar": avatar, "hasCustomAvatar": has_custom_avatar}
        body = {key: value for key, value in updates.items() if value is not None}
        result = await self._request("PUT", self._student_path(class_name, student_id), body)
        return result["student"]

    async def reset_week(self, class_name: str) -> Dict[str, Any]:
        return await self._request("POST", f"{self._class_path(class_name)}/reset-week")

    async def adjust_all(self, class_name: str, change: int) -> Dict[str, Any]:
        return await self._request("POST", f"{self._class_path(class_name)}/all-points", {"change": change})

    def _revert(self, class_name: str, student_id: str, previous: Optional[int], change: int) -> None:
        """Undo an optimistic change unless an event already overwrote it."""
        if previous is None:
            return
        student = self.mirror.find(class_name, student_id)
        if student is not None and student["points"] == _clamp(previous + change):
            student["points"] = previous
