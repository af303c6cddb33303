import argparse
import sys
from pathlib import Path

import uvicorn

from kiosk_attendance.config import CAMERA_INDEX, DB_PATH, DEVICE, ENROLLMENT_SAMPLES
from kiosk_attendance.database import KioskDatabase
from kiosk_attendance.exceptions import AttendanceError
from kiosk_attendance.logger import setup_logger
from kiosk_attendance.models import PersonRole
from kiosk_attendance.reports_service import ReportsService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Hands-free face recognition attendance kiosk"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    enroll = subparsers.add_parser("enroll", help="Enroll or update a person's face template")
    enroll.add_argument("--id", required=True, dest="person_id", help="Person ID")
    enroll.add_argument("--name", required=True, help="Full name")
    enroll.add_argument(
        "--role",
        default=PersonRole.STUDENT.value,
        choices=[role.value for role in PersonRole],
        help="Role",
    )
    enroll.add_argument("--group", default="", help="Course or department")
    enroll.add_argument("--samples", type=int, default=ENROLLMENT_SAMPLES, help="Number of face samples")
    enroll.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Camera index")

    kiosk = subparsers.add_parser("kiosk", help="Run the attendance kiosk in an OpenCV window")
    kiosk.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Camera index")

    web = subparsers.add_parser("web", help="Run the kiosk headless with the HTTP API and MJPEG stream")
    web.add_argument("--host", default="0.0.0.0", help="Host interface")
    web.add_argument("--port", type=int, default=8000, help="Port")
    web.add_argument("--camera", type=int, default=None, help="Camera index override")

    list_cmd = subparsers.add_parser("list-persons", help="List enrolled persons")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    delete = subparsers.add_parser("delete-person", help="Delete a person and their templates")
    delete.add_argument("--id", required=True, dest="person_id", help="Person ID")
    delete.add_argument("--purge-attendance", action="store_true", help="Also delete their attendance history")

    export = subparsers.add_parser("export", help="Export attendance records")
    export.add_argument("--output", type=Path, required=True, help="Output .csv or .xlsx path")
    export.add_argument("--query", default="", help="Filter by name, group or person id")
    export.add_argument("--from", dest="date_from", default="", help="Start date (YYYY-MM-DD)")
    export.add_argument("--to", dest="date_to", default="", help="End date (YYYY-MM-DD)")

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        if args.command == "enroll":
            from kiosk_attendance.face_engine import FaceEngine
            from kiosk_attendance.registration_service import RegistrationService

            db = KioskDatabase(DB_PATH)
            service = RegistrationService(db=db, engine=FaceEngine(device=DEVICE))
            descriptors, thumbnail = service.capture_from_camera(
                camera_index=args.camera,
                target_samples=args.samples,
            )
            person = service.enroll(
                person_id=args.person_id,
                full_name=args.name,
                role=args.role,
                group=args.group,
                descriptors=descriptors,
                thumbnail=thumbnail,
                min_samples=args.samples,
            )
            print(f"Enrollment successful for {person.id} ({person.full_name}).")
            return 0

        if args.command == "kiosk":
            from kiosk_attendance.face_engine import FaceEngine
            from kiosk_attendance.kiosk_runtime import KioskRuntime

            runtime = KioskRuntime(
                db=KioskDatabase(DB_PATH),
                engine=FaceEngine(device=DEVICE),
                camera_index=args.camera,
            )
            runtime.run_window()
            if runtime.session.halted:
                print(f"Kiosk halted: {runtime.session.halt_reason}")
                return 1
            print("Kiosk stopped.")
            return 0

        if args.command == "web":
            from kiosk_attendance.web_app import create_web_app

            app = create_web_app(camera_index=args.camera)
            uvicorn.run(app, host=args.host, port=args.port, log_level="info")
            return 0

        if args.command == "list-persons":
            persons = KioskDatabase(DB_PATH).list_persons()
            if not persons:
                print("No persons enrolled.")
                return 0

            print(f"{'Person ID':<16} {'Role':<10} {'Group':<20} {'Name'}")
            print("-" * 72)
            for person in persons[: args.limit]:
                print(f"{person.id:<16} {person.role.value:<10} {person.group:<20} {person.full_name}")
            return 0

        if args.command == "delete-person":
            ReportsService(KioskDatabase(DB_PATH)).delete_person(
                args.person_id,
                purge_attendance=args.purge_attendance,
            )
            print(f"Deleted {args.person_id}.")
            return 0

        if args.command == "export":
            reports = ReportsService(KioskDatabase(DB_PATH))
            args.output.parent.mkdir(parents=True, exist_ok=True)
            if args.output.suffix.lower() == ".xlsx":
                args.output.write_bytes(reports.attendance_excel(args.query, args.date_from, args.date_to))
            else:
                args.output.write_text(reports.attendance_csv(args.query, args.date_from, args.date_to), encoding="utf-8")
            print(f"Exported attendance to {args.output}")
            return 0

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
