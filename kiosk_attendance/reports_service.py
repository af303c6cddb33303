from datetime import date, datetime, tzinfo
from io import BytesIO
from typing import Any, List, Optional

import pandas as pd

from .database import KioskDatabase
from .exceptions import PersonNotFoundError
from .models import AttendanceRecord

EXPORT_COLUMNS = ["ID", "Name", "Role", "Group", "Time", "Type"]


class ReportsService:
    def __init__(self, db: KioskDatabase, tz: Optional[tzinfo] = None):
        self.db = db
        self.tz = tz

    def attendance_rows(
        self,
        query_text: str = "",
        date_from: str = "",
        date_to: str = "",
        limit: int = 2000,
    ) -> List[AttendanceRecord]:
        return self.db.search_attendance(
            query_text=query_text,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
        )

    def attendance_frame(self, query_text: str = "", date_from: str = "", date_to: str = "") -> pd.DataFrame:
        rows = self.attendance_rows(query_text=query_text, date_from=date_from, date_to=date_to, limit=10_000)
        data: list[dict[str, Any]] = [
            {
                "ID": row.person_id,
                "Name": row.person_name,
                "Role": row.person_role,
                "Group": row.person_group,
                "Time": row.timestamp.isoformat(),
                "Type": row.event_kind.value,
            }
            for row in rows
        ]
        return pd.DataFrame(data, columns=EXPORT_COLUMNS)

    def attendance_csv(self, query_text: str = "", date_from: str = "", date_to: str = "") -> str:
        return self.attendance_frame(query_text, date_from, date_to).to_csv(index=False)

    def attendance_excel(self, query_text: str = "", date_from: str = "", date_to: str = "") -> bytes:
        df = self.attendance_frame(query_text, date_from, date_to)
        output = BytesIO()
        with pd.ExcelWriter(output, engine="openpyxl") as writer:
            df.to_excel(writer, index=False, sheet_name="Attendance")
            writer.sheets["Attendance"].freeze_panes = "A2"

        output.seek(0)
        return output.read()

    def local_date(self, now: Optional[datetime] = None) -> date:
        return (now or datetime.now()).astimezone(self.tz).date()

    def summary(self, day: Optional[date] = None, now: Optional[datetime] = None) -> dict:
        """Present/absent counts for one day and check-ins per group overall.

        Without ``day`` the kiosk-local date of ``now`` is used, the same day
        boundary the ledger writes ``attendance_date`` with.
        """
        target = day or self.local_date(now)
        stats = self.db.attendance_stats(target)
        present = stats["present_today"]
        absent = max(0, stats["persons"] - present)
        rate = round(present / stats["persons"], 3) if stats["persons"] else 0.0

        df = self.attendance_frame()
        if df.empty:
            by_group: dict[str, int] = {}
        else:
            by_group = {str(key): int(value) for key, value in df.groupby("Group").size().items()}

        return {
            "date": target.isoformat(),
            "persons": stats["persons"],
            "present": present,
            "absent": absent,
            "rate": rate,
            "attendance_total": stats["attendance_total"],
            "by_group": by_group,
        }

    def delete_person(self, person_id: str, purge_attendance: bool = False) -> None:
        removed = self.db.delete_person(person_id.strip(), purge_attendance=purge_attendance)
        if not removed:
            raise PersonNotFoundError(f"Person {person_id} not found.")
