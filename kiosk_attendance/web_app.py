import logging
import time
from typing import Iterator, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from pydantic import BaseModel

from .config import CAMERA_INDEX, DB_PATH, DEVICE
from .database import KioskDatabase
from .exceptions import AttendanceError, PersonNotFoundError
from .kiosk_runtime import KioskRuntime
from .reports_service import ReportsService


logger = logging.getLogger("kiosk_attendance.web_app")


class SelectCameraBody(BaseModel):
    camera_index: int


def _mjpeg_frame_generator(runtime: KioskRuntime) -> Iterator[bytes]:
    while True:
        frame = runtime.get_jpeg_frame()
        if frame is None:
            time.sleep(0.03)
            continue
        yield (
            b"--frame\r\n"
            b"Content-Type: image/jpeg\r\n\r\n" + frame + b"\r\n"
        )
        time.sleep(0.03)


def create_web_app(
    camera_index: Optional[int] = None,
    runtime: Optional[KioskRuntime] = None,
    db: Optional[KioskDatabase] = None,
) -> FastAPI:
    app = FastAPI(title="Kiosk Attendance", version="1.0.0")

    db = db or (runtime.db if runtime is not None else KioskDatabase(DB_PATH))
    if runtime is None:
        from .face_engine import FaceEngine

        runtime = KioskRuntime(
            db=db,
            engine=FaceEngine(device=DEVICE),
            camera_index=CAMERA_INDEX if camera_index is None else int(camera_index),
        )
    reports = ReportsService(db, tz=getattr(runtime, "tz", None))

    @app.on_event("startup")
    def _startup() -> None:
        try:
            runtime.start()
        except AttendanceError:
            logger.exception("Kiosk runtime startup failed")

    @app.on_event("shutdown")
    def _shutdown() -> None:
        runtime.stop()

    @app.get("/api/health")
    def health():
        state = runtime.get_state()
        return {"ok": not state.get("halted", False), "error": state.get("error")}

    @app.get("/api/state")
    def state():
        return JSONResponse(runtime.get_state())

    @app.get("/api/events")
    def events(after: int = 0):
        return {"events": runtime.events_since(after)}

    @app.get("/api/stream/camera")
    def camera_stream():
        return StreamingResponse(
            _mjpeg_frame_generator(runtime),
            media_type="multipart/x-mixed-replace; boundary=frame",
        )

    @app.post("/api/camera/select")
    def select_camera(payload: SelectCameraBody):
        result = runtime.switch_camera(payload.camera_index)
        if not result.get("ok"):
            raise HTTPException(status_code=400, detail=result.get("error"))
        return result

    @app.post("/api/identities/refresh")
    def refresh_identities():
        return {"ok": True, "enrolled": runtime.refresh_identities()}

    @app.get("/api/persons")
    def persons():
        return [
            {
                "id": person.id,
                "full_name": person.full_name,
                "role": person.role.value,
                "group": person.group,
                "enrolled_at": person.enrolled_at.isoformat(),
            }
            for person in db.list_persons()
        ]

    @app.delete("/api/persons/{person_id}")
    def delete_person(person_id: str, purge_attendance: bool = False):
        try:
            reports.delete_person(person_id, purge_attendance=purge_attendance)
        except PersonNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        runtime.refresh_identities()
        return {"ok": True}

    @app.get("/api/attendance")
    def attendance(q: str = "", date_from: str = "", date_to: str = "", limit: int = 500):
        rows = reports.attendance_rows(query_text=q, date_from=date_from, date_to=date_to, limit=limit)
        return [
            {
                "id": row.id,
                "person_id": row.person_id,
                "name": row.person_name,
                "role": row.person_role,
                "group": row.person_group,
                "timestamp": row.timestamp.isoformat(),
                "type": row.event_kind.value,
            }
            for row in rows
        ]

    @app.get("/api/attendance/export.csv")
    def export_csv(q: str = "", date_from: str = "", date_to: str = ""):
        return PlainTextResponse(
            reports.attendance_csv(query_text=q, date_from=date_from, date_to=date_to),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="attendance_report.csv"'},
        )

    @app.get("/api/attendance/export.xlsx")
    def export_excel(q: str = "", date_from: str = "", date_to: str = ""):
        return Response(
            reports.attendance_excel(query_text=q, date_from=date_from, date_to=date_to),
            media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            headers={"Content-Disposition": 'attachment; filename="attendance_report.xlsx"'},
        )

    @app.get("/api/reports/summary")
    def summary():
        return reports.summary()

    return app
