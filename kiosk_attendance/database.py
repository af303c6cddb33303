import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from .exceptions import DatabaseError
from .models import AttendanceRecord, EnrollmentTemplate, EventKind, Person, PersonRole


class KioskDatabase:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS persons (
                        person_id TEXT PRIMARY KEY,
                        full_name TEXT NOT NULL,
                        role TEXT NOT NULL,
                        group_name TEXT NOT NULL,
                        enrolled_at TEXT NOT NULL,
                        thumbnail TEXT
                    );

                    CREATE TABLE IF NOT EXISTS templates (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        person_id TEXT NOT NULL,
                        descriptor BLOB NOT NULL,
                        descriptor_dim INTEGER NOT NULL,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (person_id) REFERENCES persons(person_id) ON DELETE CASCADE
                    );

                    -- Attendance rows keep a snapshot of the person and outlive the person row.
                    CREATE TABLE IF NOT EXISTS attendance (
                        record_id TEXT PRIMARY KEY,
                        person_id TEXT NOT NULL,
                        person_name TEXT NOT NULL,
                        person_role TEXT NOT NULL,
                        person_group TEXT NOT NULL,
                        timestamp TEXT NOT NULL,
                        attendance_date TEXT NOT NULL,
                        event_kind TEXT NOT NULL
                    );

                    CREATE UNIQUE INDEX IF NOT EXISTS idx_attendance_daily_check_in
                        ON attendance(person_id, attendance_date)
                        WHERE event_kind = 'Check-In';

                    CREATE INDEX IF NOT EXISTS idx_attendance_person
                        ON attendance(person_id, timestamp);
                    """
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to initialize database: {exc}") from exc

    def upsert_person(self, person: Person) -> None:
        if not person.id.strip():
            raise DatabaseError("Person id cannot be empty.")

        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO persons (
                        person_id, full_name, role, group_name, enrolled_at, thumbnail
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(person_id) DO UPDATE SET
                        full_name = excluded.full_name,
                        role = excluded.role,
                        group_name = excluded.group_name,
                        thumbnail = COALESCE(excluded.thumbnail, persons.thumbnail)
                    """,
                    (
                        person.id,
                        person.full_name,
                        PersonRole(person.role).value,
                        person.group,
                        person.enrolled_at.isoformat(timespec="seconds"),
                        person.thumbnail,
                    ),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save person {person.id}: {exc}") from exc

    def get_person(self, person_id: str) -> Optional[Person]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT person_id, full_name, role, group_name, enrolled_at, thumbnail
                    FROM persons
                    WHERE person_id = ?
                    """,
                    (person_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load person {person_id}: {exc}") from exc

        return None if row is None else self._row_to_person(row)

    def list_persons(self) -> List[Person]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT person_id, full_name, role, group_name, enrolled_at, thumbnail
                    FROM persons
                    ORDER BY enrolled_at DESC, person_id ASC
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load persons: {exc}") from exc

        return [self._row_to_person(row) for row in rows]

    def delete_person(self, person_id: str, purge_attendance: bool = False) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM templates WHERE person_id = ?", (person_id,))
                if purge_attendance:
                    conn.execute("DELETE FROM attendance WHERE person_id = ?", (person_id,))
                cursor = conn.execute("DELETE FROM persons WHERE person_id = ?", (person_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to delete person {person_id}: {exc}") from exc

    def add_templates(self, person_id: str, descriptors: Iterable[np.ndarray]) -> int:
        now = datetime.now().isoformat(timespec="seconds")
        rows = []
        for descriptor in descriptors:
            vector = np.asarray(descriptor, dtype=np.float32)
            if vector.ndim != 1:
                raise DatabaseError("Descriptor must be a 1D vector.")
            rows.append((person_id, vector.tobytes(), vector.size, now))

        if not rows:
            return 0

        try:
            with self._connect() as conn:
                conn.executemany(
                    """
                    INSERT INTO templates (person_id, descriptor, descriptor_dim, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    rows,
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save templates for {person_id}: {exc}") from exc
        return len(rows)

    def list_templates(self) -> List[EnrollmentTemplate]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT person_id, descriptor, descriptor_dim
                    FROM templates
                    ORDER BY person_id ASC, id ASC
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load templates: {exc}") from exc

        grouped: Dict[str, EnrollmentTemplate] = {}
        for row in rows:
            vector = np.frombuffer(row["descriptor"], dtype=np.float32, count=row["descriptor_dim"])
            template = grouped.setdefault(row["person_id"], EnrollmentTemplate(person_id=row["person_id"]))
            template.descriptors.append(vector.copy())
        return list(grouped.values())

    def get_attendance_for(self, person_id: str) -> List[AttendanceRecord]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT record_id, person_id, person_name, person_role, person_group,
                           timestamp, event_kind
                    FROM attendance
                    WHERE person_id = ?
                    ORDER BY timestamp ASC
                    """,
                    (person_id,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load attendance for {person_id}: {exc}") from exc

        return [self._row_to_record(row) for row in rows]

    def append_attendance(self, record: AttendanceRecord) -> bool:
        """Insert one record in a single transaction.

        Returns False when the row is rejected as a second check-in for the same
        person and day.
        """
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO attendance (
                        record_id, person_id, person_name, person_role, person_group,
                        timestamp, attendance_date, event_kind
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.person_id,
                        record.person_name,
                        record.person_role,
                        record.person_group,
                        record.timestamp.isoformat(timespec="seconds"),
                        record.timestamp.date().isoformat(),
                        EventKind(record.event_kind).value,
                    ),
                )
                return cursor.rowcount == 1
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to append attendance for {record.person_id}: {exc}") from exc

    def search_attendance(
        self,
        query_text: str = "",
        date_from: str = "",
        date_to: str = "",
        limit: int = 2000,
    ) -> List[AttendanceRecord]:
        sql = """
            SELECT record_id, person_id, person_name, person_role, person_group,
                   timestamp, event_kind
            FROM attendance
            WHERE 1=1
        """
        params: List[Any] = []

        if query_text.strip():
            term = f"%{query_text.strip()}%"
            sql += " AND (person_name LIKE ? OR person_group LIKE ? OR person_id LIKE ?)"
            params.extend([term, term, term])
        if date_from.strip():
            sql += " AND attendance_date >= ?"
            params.append(date_from.strip())
        if date_to.strip():
            sql += " AND attendance_date <= ?"
            params.append(date_to.strip())

        safe_limit = max(1, min(10_000, int(limit)))
        sql += " ORDER BY timestamp DESC LIMIT ?"
        params.append(safe_limit)

        try:
            with self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to search attendance: {exc}") from exc

        return [self._row_to_record(row) for row in rows]

    def attendance_stats(self, day: Optional[date] = None) -> dict[str, int]:
        target = (day or date.today()).isoformat()
        try:
            with self._connect() as conn:
                persons = conn.execute("SELECT COUNT(*) AS c FROM persons").fetchone()["c"]
                total = conn.execute("SELECT COUNT(*) AS c FROM attendance").fetchone()["c"]
                present = conn.execute(
                    "SELECT COUNT(DISTINCT person_id) AS c FROM attendance WHERE attendance_date = ?",
                    (target,),
                ).fetchone()["c"]
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load attendance stats: {exc}") from exc

        return {
            "persons": int(persons),
            "attendance_total": int(total),
            "present_today": int(present),
        }

    @staticmethod
    def _row_to_person(row: sqlite3.Row) -> Person:
        return Person(
            id=row["person_id"],
            full_name=row["full_name"],
            role=PersonRole(row["role"]),
            group=row["group_name"],
            enrolled_at=datetime.fromisoformat(row["enrolled_at"]),
            thumbnail=row["thumbnail"],
        )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> AttendanceRecord:
        return AttendanceRecord(
            id=row["record_id"],
            person_id=row["person_id"],
            person_name=row["person_name"],
            person_role=row["person_role"],
            person_group=row["person_group"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            event_kind=EventKind(row["event_kind"]),
        )
