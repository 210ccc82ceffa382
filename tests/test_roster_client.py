"""
Tests for the client-side mirror and the REST half of RosterClient
"""
import json

import httpx
import pytest
from fastapi.testclient import TestClient
from websockets.exceptions import ConnectionClosedError

from roster_client import ActionFailed, Disconnected, RosterClient, RosterMirror
from tracker.main import create_app


def student(sid, name, points=0):
    return {"id": sid, "name": name, "points": points, "avatar": "", "hasCustomAvatar": False}


def snapshot(seq=0, **students_by_class):
    classes = {
        name: {"name": name, "students": list(students), "currentWeekKey": "2026-W10", "weeklyHistory": {}}
        for name, students in students_by_class.items()
    }
    return {"event": "classes-updated", "data": {"classes": classes}, "seq": seq}


def event(name, seq, **data):
    return {"event": name, "data": data, "seq": seq}


@pytest.fixture
def mirror():
    mirror = RosterMirror()
    mirror.apply(snapshot(5, Bio=[student("a", "Ann", 3), student("b", "Ben"), student("c", "Cat", 20)]))
    return mirror


def points(mirror, class_name="Bio"):
    return [s["points"] for s in mirror.students(class_name)]


class TestRosterMirror:
    def test_snapshot_resets_everything(self, mirror):
        mirror.selected["Bio"] = 1
        mirror.apply(snapshot(9, Chem=[]))
        assert list(mirror.classes) == ["Chem"]
        assert mirror.selected == {}
        assert mirror.last_seq == 9

    def test_selection_shifts_down_after_earlier_delete(self, mirror):
        mirror.apply({"event": "student-selected", "data": {"className": "Bio", "studentIndex": 2}, "seq": None})
        mirror.apply(event("student-deleted", 6, className="Bio", studentId="b", studentIndex=1))
        assert [s["id"] for s in mirror.students("Bio")] == ["a", "c"]
        assert mirror.selected["Bio"] == 1

    def test_deleting_selected_student_clears_selection(self, mirror):
        mirror.selected["Bio"] = 1
        mirror.apply(event("student-deleted", 6, className="Bio", studentId="b", studentIndex=1))
        assert "Bio" not in mirror.selected

    def test_deleting_later_student_keeps_selection(self, mirror):
        mirror.selected["Bio"] = 0
        mirror.apply(event("student-deleted", 6, className="Bio", studentId="c", studentIndex=2))
        assert mirror.selected["Bio"] == 0

    def test_redelivered_events_are_ignored(self, mirror):
        bump = event("all-points-updated", 6, className="Bio", change=1)
        assert mirror.apply(bump) is True
        assert mirror.apply(bump) is False
        assert points(mirror) == [4, 1, 20]

    def test_old_events_before_snapshot_are_ignored(self, mirror):
        assert mirror.apply(event("week-reset", 5, className="Bio")) is False
        assert points(mirror) == [3, 0, 20]

    def test_sequence_gap_marks_stale(self, mirror):
        mirror.apply(event("week-reset", 8, className="Bio"))
        assert mirror.stale is True
        mirror.apply(snapshot(8, Bio=[]))
        assert mirror.stale is False

    def test_points_and_profile_updates(self, mirror):
        mirror.apply(event("student-points-updated", 6, className="Bio", studentId="b", points=7,
                           timestamp="2026-03-10T10:00:00Z"))
        mirror.apply(event("student-updated", 7, className="Bio", studentId="b",
                           updates={"name": "Benji", "hasCustomAvatar": True}))
        ben = mirror.find("Bio", "b")
        assert ben["points"] == 7
        assert ben["lastUpdated"] == "2026-03-10T10:00:00Z"
        assert ben["name"] == "Benji"
        assert ben["hasCustomAvatar"] is True

    def test_bulk_and_reset(self, mirror):
        mirror.apply(event("all-points-updated", 6, className="Bio", change=-1))
        assert points(mirror) == [2, 0, 19]
        mirror.apply(event("week-reset", 7, className="Bio"))
        assert points(mirror) == [0, 0, 0]

    def test_class_lifecycle(self, mirror):
        mirror.apply(event("class-created", 6, className="Chem",
                           data={"name": "Chem", "students": [], "currentWeekKey": "2026-W10"}))
        mirror.apply(event("student-added", 7, className="Chem", student=student("x", "Xi")))
        assert [s["name"] for s in mirror.students("Chem")] == ["Xi"]
        mirror.selected["Chem"] = 0
        mirror.apply(event("class-deleted", 8, className="Chem"))
        assert "Chem" not in mirror.classes
        assert "Chem" not in mirror.selected

    def test_student_added_twice_is_not_duplicated(self, mirror):
        mirror.apply(event("student-added", 6, className="Bio", student=student("d", "Dee")))
        mirror.apply(event("student-added", 7, className="Bio", student=student("d", "Dee", 1)))
        assert [s["id"] for s in mirror.students("Bio")] == ["a", "b", "c", "d"]
        assert mirror.find("Bio", "d")["points"] == 1

    def test_rollover(self, mirror):
        archived = [{"name": "Ann", "points": 3}, {"name": "Ben", "points": 0}, {"name": "Cat", "points": 20}]
        mirror.apply(event("rollover-occurred", 6, className="Bio", weekKey="2026-W11",
                           previousWeekKey="2026-W10", archived=archived))
        record = mirror.classes["Bio"]
        assert record["currentWeekKey"] == "2026-W11"
        assert record["weeklyHistory"]["2026-W10"] == archived
        assert points(mirror) == [0, 0, 0]

    def test_optimistic_change_overwritten_by_event(self, mirror):
        assert mirror.apply_optimistic_change("Bio", "c", 1) == 20
        assert mirror.find("Bio", "c")["points"] == 20
        mirror.apply_optimistic_change("Bio", "a", 1)
        mirror.apply(event("student-points-updated", 6, className="Bio", studentId="a", points=5))
        assert mirror.find("Bio", "a")["points"] == 5

    def test_events_for_unknown_class_are_harmless(self, mirror):
        mirror.apply(event("student-points-updated", 6, className="Nope", studentId="a", points=5))
        mirror.apply(event("student-deleted", 7, className="Nope", studentId="a", studentIndex=0))
        assert points(mirror) == [3, 0, 20]


class TestMirrorConvergence:
    def test_mirror_matches_server_after_mutations(self, settings):
        mirror = RosterMirror()
        with TestClient(create_app(settings)) as client, client.websocket_connect("/ws") as ws:
            mirror.apply(ws.receive_json())
            client.post("/api/classes", json={"className": "Bio"})
            ids = [
                client.post("/api/classes/Bio/students", json={"student": {"name": n}}).json()["student"]["id"]
                for n in ("Ann", "Ben", "Cat")
            ]
            client.put(f"/api/classes/Bio/students/{ids[0]}/points", json={"change": 3})
            client.put(f"/api/classes/Bio/students/{ids[2]}/points", json={"points": 25})
            client.post("/api/classes/Bio/all-points", json={"change": -1})
            client.put(f"/api/classes/Bio/students/{ids[1]}", json={"name": "Benji"})
            client.delete(f"/api/classes/Bio/students/{ids[0]}")
            for _ in range(9):
                mirror.apply(ws.receive_json())
            server = client.get("/api/classes").json()["classes"]

        def project(classes):
            return {
                name: [(s["id"], s["name"], s["points"]) for s in record["students"]]
                for name, record in classes.items()
            }

        assert project(mirror.classes) == project(server)
        assert mirror.last_seq == 9


def rest_client(handler, connected=True):
    client = RosterClient("http://tracker.test", transport=httpx.MockTransport(handler))
    client.connected = connected
    client.mirror.apply(snapshot(1, Bio=[student("a", "Ann", 3)]))
    return client


class TestRosterClientRest:
    def test_ws_url(self):
        assert RosterClient("https://example.test:3001/").ws_url == "wss://example.test:3001/ws"
        assert RosterClient("http://10.0.0.5:3001").ws_url == "ws://10.0.0.5:3001/ws"

    async def test_adjust_points(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"success": True, "points": 4})

        client = rest_client(handler)
        async with client:
            assert await client.adjust_points("Bio 101", "a", 1) == 4
        assert seen == [("PUT", "/api/classes/Bio 101/students/a/points", {"change": 1})]

    async def test_server_error_kind_is_surfaced(self):
        def handler(request):
            return httpx.Response(404, json={"error": "NotFound", "detail": "Student 'z' not found"})

        async with rest_client(handler) as client:
            with pytest.raises(ActionFailed) as info:
                await client.set_points("Bio", "z", 3)
        assert info.value.kind == "NotFound"
        assert info.value.status_code == 404

    async def test_failed_optimistic_change_is_reverted(self):
        def handler(request):
            return httpx.Response(400, json={"error": "InvalidInput", "detail": "nope"})

        async with rest_client(handler) as client:
            with pytest.raises(ActionFailed):
                await client.adjust_points("Bio", "a", 1)
            assert client.mirror.find("Bio", "a")["points"] == 3

    async def test_timeout_reported_as_failure(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with rest_client(handler) as client:
            with pytest.raises(ActionFailed) as info:
                await client.reset_week("Bio")
        assert info.value.kind == "Timeout"

    async def test_mutations_refused_while_disconnected(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"classes": {}})

        async with rest_client(handler, connected=False) as client:
            with pytest.raises(Disconnected) as info:
                await client.create_class("Bio")
            assert info.value.kind == "Unavailable"
            with pytest.raises(Disconnected):
                await client.select_random_student("Bio")
            assert await client.list_classes() == {}
        assert len(calls) == 1

    async def test_request_bodies(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path, json.loads(request.content or b"null")))
            if request.url.path.endswith("/students") and request.method == "POST":
                return httpx.Response(200, json={"success": True, "student": {"id": "n"}})
            if request.method == "PUT":
                return httpx.Response(200, json={"success": True, "student": {"id": "a"}})
            return httpx.Response(200, json={"success": True})

        async with rest_client(handler) as client:
            await client.create_class("Chem")
            await client.add_student("Chem", "Xi")
            await client.update_student("Chem", "a", has_custom_avatar=False)
            await client.adjust_all("Chem", -1)
            await client.delete_class("Chem")

        assert seen == [
            ("POST", "/api/classes", {"className": "Chem"}),
            ("POST", "/api/classes/Chem/students", {"student": {"name": "Xi", "hasCustomAvatar": False}}),
            ("PUT", "/api/classes/Chem/students/a", {"hasCustomAvatar": False}),
            ("POST", "/api/classes/Chem/all-points", {"change": -1}),
            ("DELETE", "/api/classes/Chem", None),
        ]

    def test_handle_message_sets_connected_and_calls_back(self):
        calls = []
        client = RosterClient("http://tracker.test", on_event=lambda name, data: calls.append(name))
        client.handle_message(json.dumps(snapshot(0)))
        client.handle_message("garbage")
        assert client.connected is True
        assert calls == ["classes-updated"]


class FakeConnection:
    """One scripted connection: refused, or a snapshot followed by an abrupt close."""

    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if self.outcome == "refused":
            raise OSError("connection refused")
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._messages()

    async def _messages(self):
        yield json.dumps(snapshot(0, Bio=[student("a", "Ann", 3)]))
        raise ConnectionClosedError(None, None)

    async def close(self):
        pass


class FakeServer:
    """Replaces websockets.connect; every attempt past the script is refused."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.attempts = 0

    def __call__(self, url, **kwargs):
        self.attempts += 1
        return FakeConnection(self.outcomes.pop(0) if self.outcomes else "refused")


class TestRosterClientReconnect:
    async def run_until_disconnected(self, monkeypatch, server, attempts=3):
        monkeypatch.setattr("roster_client.websockets.connect", server)
        async with RosterClient("http://tracker.test", reconnect_attempts=attempts, reconnect_delay=0) as client:
            with pytest.raises(Disconnected) as exc_info:
                await client.run()
            assert client.connected is False
        return exc_info.value

    async def test_gives_up_when_server_never_answers(self, monkeypatch):
        server = FakeServer()
        error = await self.run_until_disconnected(monkeypatch, server)
        assert error.kind == "Unavailable"
        # first attempt plus three retries
        assert server.attempts == 4

    async def test_snapshot_restores_retry_budget(self, monkeypatch):
        server = FakeServer(*["healthy"] * 6)
        await self.run_until_disconnected(monkeypatch, server)
        assert server.attempts == 6 + 3

    async def test_failures_count_only_in_a_row(self, monkeypatch):
        server = FakeServer("refused", "refused", "healthy", "refused", "refused", "healthy")
        await self.run_until_disconnected(monkeypatch, server)
        assert server.attempts == 6 + 3

    async def test_mirror_rebuilt_from_each_snapshot(self, monkeypatch):
        seen = []
        server = FakeServer("healthy", "healthy")
        monkeypatch.setattr("roster_client.websockets.connect", server)
        async with RosterClient(
            "http://tracker.test",
            reconnect_attempts=1,
            reconnect_delay=0,
            on_event=lambda name, data: seen.append(name),
        ) as client:
            with pytest.raises(Disconnected):
                await client.run()
            assert client.mirror.students("Bio")[0]["name"] == "Ann"
        assert seen == ["classes-updated", "classes-updated"]
