from datetime import date, timezone

import numpy as np
import pytest
from conftest import T0, make_person, unit_vector

from kiosk_attendance.database import KioskDatabase
from kiosk_attendance.exceptions import DatabaseError
from kiosk_attendance.models import AttendanceRecord, EventKind, PersonRole


def _record(record_id: str, person_id: str = "P1", kind: EventKind = EventKind.CHECK_IN, name: str = "Ana Torres") -> AttendanceRecord:
    return AttendanceRecord(
        id=record_id,
        person_id=person_id,
        person_name=name,
        person_role="Student",
        person_group="Math 101",
        timestamp=T0,
        event_kind=kind,
    )


def test_person_round_trip(db):
    person = db.get_person("P1")

    assert person.full_name == "Ana Torres"
    assert person.role == PersonRole.STUDENT
    assert person.enrolled_at.tzinfo is not None
    assert db.get_person("missing") is None


def test_templates_grouped_per_person(db):
    templates = {template.person_id: template for template in db.list_templates()}

    assert set(templates) == {"P1", "P2"}
    assert len(templates["P1"].descriptors) == 2
    np.testing.assert_allclose(templates["P1"].descriptors[0], unit_vector(1))


def test_add_templates_rejects_matrix(db):
    with pytest.raises(DatabaseError):
        db.add_templates("P1", [np.zeros((2, 2), dtype=np.float32)])


def test_second_check_in_same_day_rejected_by_store(db):
    assert db.append_attendance(_record("a")) is True
    assert db.append_attendance(_record("b")) is False
    assert db.append_attendance(_record("c", kind=EventKind.CHECK_OUT)) is True

    assert [record.id for record in db.get_attendance_for("P1")] == ["a", "c"]


def test_delete_person_keeps_history_unless_purged(db):
    db.append_attendance(_record("a"))
    db.append_attendance(_record("b", person_id="P2", name="Luis Rojas"))

    assert db.delete_person("P1") is True
    assert db.get_person("P1") is None
    assert "P1" not in {template.person_id for template in db.list_templates()}
    assert len(db.get_attendance_for("P1")) == 1

    assert db.delete_person("P2", purge_attendance=True) is True
    assert db.get_attendance_for("P2") == []
    assert db.delete_person("P2") is False


def test_search_and_stats(db):
    db.append_attendance(_record("a"))
    db.append_attendance(_record("b", person_id="P2", name="Luis Rojas"))

    assert [row.id for row in db.search_attendance(query_text="ana")] == ["a"]
    assert db.search_attendance(date_from="2024-01-02") == []
    assert db.attendance_stats(date(2024, 1, 1)) == {
        "persons": 2,
        "attendance_total": 2,
        "present_today": 2,
    }


def test_timestamps_stay_timezone_aware(tmp_path):
    store = KioskDatabase(tmp_path / "tz.db")
    store.upsert_person(make_person("P9"))
    store.append_attendance(_record("z", person_id="P9"))

    assert store.get_attendance_for("P9")[0].timestamp == T0.astimezone(timezone.utc)
