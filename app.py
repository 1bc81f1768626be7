"""
Scan attendance service - main FastAPI application

Barcode scanners post scans here; each scan is matched to the batch's current
class session, classified present/late and merged into the student's
attendance record. Dashboards follow along over a WebSocket.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import config
from database.store import AttendanceStore
from services.attendance_service import AttendanceService
from services.errors import AttendanceError, InvalidDevice
from services.session_scheduler import SessionScheduler
from services.signaling import DASHBOARD_ROOM, ConnectionManager
from services.time_window import get_timezone

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


def create_store() -> AttendanceStore:
    """Store for the configured backend."""
    if config.STORE_BACKEND == "mongodb":
        from database.mongodb import MongoAttendanceStore
        return MongoAttendanceStore(config.MONGODB_URI, config.MONGODB_DATABASE)
    from database.sql_store import SqlAttendanceStore
    return SqlAttendanceStore(config.DATABASE_URL)


# ----- Lifespan Context Manager -----
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup application resources"""
    logger.info("Scan attendance service starting...")

    tz = get_timezone(config.TIMEZONE)
    store = create_store()
    await store.connect(config.STORE_CONNECT_TIMEOUT_SECONDS)

    manager = ConnectionManager()
    scheduler = SessionScheduler(
        store,
        interval_seconds=config.SCHEDULER_INTERVAL_SECONDS,
        early_access_minutes=config.EARLY_ACCESS_MINUTES,
        tz=tz,
    )
    app.state.store = store
    app.state.manager = manager
    app.state.scheduler = scheduler
    app.state.attendance = AttendanceService(
        store,
        manager,
        tz=tz,
        grace_minutes=config.GRACE_PERIOD_MINUTES,
        end_tolerance_minutes=config.END_TOLERANCE_MINUTES,
    )

    if config.SCHEDULER_ENABLED:
        scheduler.start()

    logger.info(f"System ready ({config.STORE_BACKEND} store, timezone {config.TIMEZONE})")

    yield

    # Cleanup
    logger.info("Shutting down...")
    await scheduler.stop()
    await manager.drain()
    await store.close()


# ----- FastAPI App -----
app = FastAPI(
    title="Scan Attendance Service",
    description="Barcode scan ingestion and class session lifecycle",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AttendanceError)
async def attendance_error_handler(request: Request, exc: AttendanceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "code": exc.code, "message": exc.message},
    )


# ----- Request Models -----

class ScanIn(BaseModel):
    registrationNo: str = Field(..., min_length=1)
    timestamp: Optional[Union[int, float, str]] = None
    meta: Dict[str, Any] = Field(default_factory=dict)


class AttendanceUpdate(BaseModel):
    status: str
    notes: Optional[str] = None


# ----- Health -----

@app.get("/health")
async def health(request: Request):
    store: AttendanceStore = request.app.state.store
    manager: ConnectionManager = request.app.state.manager
    return {
        "status": "ok" if await store.ping() else "degraded",
        "dashboards": manager.get_room_count(DASHBOARD_ROOM),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ----- Scans -----

@app.post("/api/scans")
async def ingest_scan(
    request: Request,
    payload: ScanIn,
    x_device_key: Optional[str] = Header(default=None),
):
    """Scanner endpoint. Authenticated by the device's API key."""
    if not x_device_key:
        raise InvalidDevice("Device key required")

    service: AttendanceService = request.app.state.attendance
    result = await service.ingest(
        x_device_key,
        payload.registrationNo.strip(),
        payload.timestamp,
        payload.meta,
    )
    return {"success": True, "data": result.to_dict()}


# ----- Session attendance -----

@app.get("/api/sessions/{session_id}/attendance")
async def session_attendance(request: Request, session_id: str):
    service: AttendanceService = request.app.state.attendance
    return {"success": True, "data": await service.get_session_attendance(session_id)}


@app.patch("/api/sessions/{session_id}/attendance/{student_id}")
async def update_attendance(request: Request, session_id: str, student_id: str, payload: AttendanceUpdate):
    service: AttendanceService = request.app.state.attendance
    record = await service.update_attendance_status(session_id, student_id, payload.status, payload.notes)
    return {"success": True, "data": record}


# ----- Scheduler -----

@app.post("/api/scheduler/tick")
async def run_scheduler_tick(request: Request):
    """Run one lifecycle pass now instead of waiting for the next interval."""
    scheduler: SessionScheduler = request.app.state.scheduler
    summary = await scheduler.tick()
    return {"success": True, "data": summary.to_dict()}


# ----- WebSocket -----

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Dashboards connect here to receive scan and attendance events."""
    manager: ConnectionManager = websocket.app.state.manager
    await manager.connect(websocket)
    try:
        while True:
            message = await websocket.receive_text()
            logger.debug(f"Received: {message}")
    except WebSocketDisconnect:
        await manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host=config.HOST, port=config.PORT)
