from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Iterable, Optional, Union
from uuid import uuid4

from .database import KioskDatabase
from .exceptions import DatabaseError, StorageWriteFailure
from .logger import setup_logger
from .models import AttendanceRecord, EventKind, Person


@dataclass(frozen=True)
class Recorded:
    record: AttendanceRecord


@dataclass(frozen=True)
class AlreadyPresentToday:
    person: Person


Decision = Union[Recorded, AlreadyPresentToday]


class AttendanceLedgerGate:
    """Enforces one check-in record per person per local calendar day."""

    def __init__(self, db: KioskDatabase, tz: Optional[tzinfo] = None):
        self.db = db
        self.tz = tz
        self.logger = setup_logger(self.__class__.__name__)

    def local_time(self, moment: datetime) -> datetime:
        # Naive datetimes are taken as system local time.
        return moment.astimezone(self.tz)

    def start_of_day(self, now: datetime) -> datetime:
        return self.local_time(now).replace(hour=0, minute=0, second=0, microsecond=0)

    def evaluate(
        self,
        person: Person,
        now: datetime,
        existing_records: Iterable[AttendanceRecord],
    ) -> Decision:
        day_start = self.start_of_day(now)
        for record in existing_records:
            if record.person_id != person.id:
                continue
            if self.local_time(record.timestamp) >= day_start:
                return AlreadyPresentToday(person=person)

        record = AttendanceRecord(
            id=uuid4().hex,
            person_id=person.id,
            person_name=person.full_name,
            person_role=person.role.value,
            person_group=person.group,
            timestamp=self.local_time(now),
            event_kind=EventKind.CHECK_IN,
        )

        try:
            inserted = self.db.append_attendance(record)
        except DatabaseError as exc:
            raise StorageWriteFailure(f"Attendance for {person.id} was not recorded: {exc}") from exc

        if not inserted:
            # Another writer already holds today's check-in for this person.
            self.logger.info("Store rejected duplicate check-in for %s", person.id)
            return AlreadyPresentToday(person=person)

        self.logger.info("Attendance recorded for %s (%s)", person.full_name, person.id)
        return Recorded(record=record)

    def check_in(self, person: Person, now: datetime) -> Decision:
        try:
            existing = self.db.get_attendance_for(person.id)
        except DatabaseError as exc:
            raise StorageWriteFailure(f"Attendance for {person.id} could not be checked: {exc}") from exc
        return self.evaluate(person, now, existing)
