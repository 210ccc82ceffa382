"""
main.py
-------
FastAPI application.

Endpoints
---------
GET    /api/health                                  → status + connected device count
GET    /api/classes                                 → every class record
POST   /api/classes                                 → create class
DELETE /api/classes/{class}                         → delete class (and its students)
GET    /api/classes/{class}/students                → name + points per student
GET    /api/classes/{class}/history                 → archived weeks
POST   /api/classes/{class}/students                → add student
DELETE /api/classes/{class}/students/{id}           → delete student
PUT    /api/classes/{class}/students/{id}/points    → set / adjust points
PUT    /api/classes/{class}/students/{id}           → update name / avatar
POST   /api/classes/{class}/reset-week              → zero every student
POST   /api/classes/{class}/all-points              → +1 / -1 for everyone
WS     /ws                                          → event stream (full snapshot first)
"""

import asyncio
import contextlib
import json
import logging
import socket
from contextlib import asynccontextmanager
from typing import Optional

import psutil
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tracker.broadcast import Broadcaster, ClientEvent
from tracker.config import Settings
from tracker.errors import InvalidInput, TrackerError
from tracker.persistence import SnapshotPersistence
from tracker.rollover import RolloverScheduler
from tracker.schemas import (
    AddStudentRequest,
    AllPointsRequest,
    CreateClassRequest,
    PointsRequest,
    StudentUpdateRequest,
    utcnow,
)
from tracker.service import RosterService
from tracker.store import RosterStore

log = logging.getLogger("tracker")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def network_ip() -> str:
    """First non-loopback IPv4 address, the one other devices on the LAN can reach."""
    for addresses in psutil.net_if_addrs().values():
        for address in addresses:
            if address.family == socket.AF_INET and not address.address.startswith("127."):
                return address.address
    return "localhost"


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build an app with its own store, broadcaster, persistence and scheduler."""
    settings = settings or Settings()

    store = RosterStore()
    persistence = SnapshotPersistence(
        store,
        settings.data_file,
        interval=settings.save_interval,
        seed_sample_class=settings.seed_sample_class,
    )
    service = RosterService(store, Broadcaster(settings.event_queue_size), persistence)
    scheduler = RolloverScheduler(service, settings.rollover_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        persistence.load()
        await persistence.start()
        await scheduler.start()
        log.info(
            f"Classroom tracker ready: {len(store)} classes, "
            f"{sum(len(r.students) for r in store)} students"
        )
        log.info(f"Other devices can connect at http://{network_ip()}:{settings.port}")
        try:
            yield
        finally:
            log.info("Shutting down")
            await scheduler.stop()
            await persistence.stop()

    app = FastAPI(title="Classroom Participation Tracker", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------------------------------------------------------------------------
    # Error mapping
    # ---------------------------------------------------------------------------
    @app.exception_handler(TrackerError)
    async def tracker_error(request: Request, exc: TrackerError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) or "body" for err in exc.errors())
        err = InvalidInput(f"Invalid or missing field(s): {fields}")
        return JSONResponse(status_code=err.status_code, content=err.to_dict())

    # ---------------------------------------------------------------------------
    # REST: reads
    # ---------------------------------------------------------------------------
    @app.get("/api/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": utcnow().isoformat(),
            "connectedDevices": len(service.broadcaster),
        }

    @app.get("/api/classes")
    async def list_classes():
        return {"classes": service.list_classes()}

    @app.get("/api/classes/{class_name}/students")
    async def list_students(class_name: str):
        return service.list_students(class_name)

    @app.get("/api/classes/{class_name}/history")
    async def class_history(class_name: str):
        return {"className": class_name, "weeklyHistory": service.weekly_history(class_name)}

    # ---------------------------------------------------------------------------
    # REST: mutations
    # ---------------------------------------------------------------------------
    @app.post("/api/classes")
    async def create_class(body: CreateClassRequest):
        record = service.create_class(body.class_name)
        return {"success": True, "className": record.name, "class": record.dump()}

    @app.delete("/api/classes/{class_name}")
    async def delete_class(class_name: str):
        service.delete_class(class_name)
        return {"success": True}

    @app.post("/api/classes/{class_name}/students")
    async def add_student(class_name: str, body: AddStudentRequest):
        student = service.add_student(
            class_name,
            body.student.name,
            avatar=body.student.avatar,
            has_custom_avatar=body.student.has_custom_avatar,
        )
        return {"success": True, "student": student.dump()}

    @app.delete("/api/classes/{class_name}/students/{student_id}")
    async def delete_student(class_name: str, student_id: str):
        return {"success": True, **service.delete_student(class_name, student_id)}

    @app.put("/api/classes/{class_name}/students/{student_id}/points")
    async def update_points(class_name: str, student_id: str, body: PointsRequest):
        student = service.update_points(class_name, student_id, points=body.points, change=body.change)
        return {"success": True, "points": student.points}

    @app.put("/api/classes/{class_name}/students/{student_id}")
    async def update_student(class_name: str, student_id: str, body: StudentUpdateRequest):
        student = service.update_student(
            class_name,
            student_id,
            **body.model_dump(exclude_none=True),
        )
        return {"success": True, "student": student.dump()}

    @app.post("/api/classes/{class_name}/reset-week")
    async def reset_week(class_name: str):
        service.reset_week(class_name)
        return {"success": True}

    @app.post("/api/classes/{class_name}/all-points")
    async def adjust_all(class_name: str, body: AllPointsRequest):
        service.adjust_all(class_name, body.change)
        return {"success": True, "change": body.change}

    # ---------------------------------------------------------------------------
    # WebSocket: one connection per device
    # ---------------------------------------------------------------------------
    @app.websocket("/ws")
    async def websocket_events(websocket: WebSocket):
        await websocket.accept()
        user_agent = websocket.headers.get("user-agent", "Unknown")
        subscriber = service.broadcaster.subscribe(websocket, service.list_classes())
        sender = asyncio.create_task(subscriber.pump())
        log.info(f"[{subscriber.id}] Device connected ({user_agent})")

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    _handle_client_message(service, json.loads(raw))
                except (ValueError, KeyError, TypeError, TrackerError) as exc:
                    log.warning(f"[{subscriber.id}] Bad payload: {exc} raw={raw!r}")

        except WebSocketDisconnect:
            log.info(f"[{subscriber.id}] Device disconnected")
        finally:
            service.broadcaster.unsubscribe(subscriber)
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sender

    return app


def _handle_client_message(service: RosterService, message: dict) -> None:
    """Relay an ephemeral selection event from a client to everyone."""
    event = ClientEvent(message["event"])
    data = message.get("data") or {}
    class_name = data["className"]
    if event is ClientEvent.SELECT_RANDOM_STUDENT:
        service.select_student(class_name, data.get("studentIndex"), data.get("studentId"))
    elif event is ClientEvent.CLEAR_SELECTION:
        service.clear_selection(class_name)


settings = Settings()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
