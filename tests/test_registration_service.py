import numpy as np
import pytest
from conftest import ScriptedDetector, unit_vector

from kiosk_attendance import registration_service
from kiosk_attendance.exceptions import AttendanceError, CameraError, DetectionTransientError
from kiosk_attendance.models import PersonRole, Rect
from kiosk_attendance.registration_service import RegistrationService


def test_enroll_stores_person_and_every_descriptor(db):
    service = RegistrationService(db)
    samples = [unit_vector(21)] * 5

    person = service.enroll("P3", " Marta Diaz ", "Teacher", "Chemistry", samples, thumbnail="abc")

    stored = db.get_person("P3")
    templates = {template.person_id: template for template in db.list_templates()}
    assert person.full_name == "Marta Diaz"
    assert stored.role == PersonRole.TEACHER
    assert stored.thumbnail == "abc"
    assert len(templates["P3"].descriptors) == 5


def test_re_enroll_appends_descriptors_and_keeps_enrollment_date(db):
    service = RegistrationService(db)
    original = db.get_person("P1")

    service.enroll("P1", "Ana Torres", "Student", "Math 101", [unit_vector(1)] * 5)

    assert db.get_person("P1").enrolled_at == original.enrolled_at
    templates = {template.person_id: template for template in db.list_templates()}
    assert len(templates["P1"].descriptors) == 7


def test_duplicate_face_is_rejected(db):
    service = RegistrationService(db)

    with pytest.raises(AttendanceError, match="too similar"):
        service.enroll("P9", "Impostor", "Staff", "Ops", [unit_vector(11)] * 5)


@pytest.mark.parametrize(
    "person_id,name,role,count",
    [
        ("", "Name", "Student", 5),
        ("P4", " ", "Student", 5),
        ("P4", "Name", "Janitor", 5),
        ("P4", "Name", "Student", 2),
    ],
)
def test_invalid_enrollment_input(db, person_id, name, role, count):
    with pytest.raises(AttendanceError):
        RegistrationService(db).enroll(person_id, name, role, "G", [unit_vector(30)] * count)


def test_face_crop_thumbnail_is_base64_jpeg():
    frame = np.full((240, 320, 3), 127, dtype=np.uint8)

    encoded = RegistrationService.face_crop_to_base64(frame, Rect(100, 60, 80, 80))

    assert encoded.startswith("/9j/")


def test_capture_requires_engine(db):
    with pytest.raises(AttendanceError):
        RegistrationService(db).capture_from_camera()


class DeadCamera:
    def __init__(self, camera_index=0):
        self.reads = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return None

    def read(self):
        self.reads += 1
        raise DetectionTransientError("frame read failed")


@pytest.fixture
def headless_cv2(monkeypatch):
    keys = []
    monkeypatch.setattr(registration_service.cv2, "imshow", lambda *args: None)
    monkeypatch.setattr(registration_service.cv2, "destroyAllWindows", lambda: None)
    monkeypatch.setattr(registration_service.cv2, "waitKey", lambda delay: keys.pop(0) if keys else -1)
    return keys


def test_capture_gives_up_when_camera_keeps_failing(db, monkeypatch, headless_cv2):
    cameras = []

    def factory(camera_index):
        cameras.append(DeadCamera(camera_index))
        return cameras[-1]

    monkeypatch.setattr(registration_service, "CameraStream", factory)
    service = RegistrationService(db, engine=ScriptedDetector())

    with pytest.raises(CameraError, match="failed 4 reads"):
        service.capture_from_camera(target_samples=1, read_fail_limit=4)

    assert cameras[0].reads == 4


def test_capture_can_be_cancelled_while_camera_fails(db, monkeypatch, headless_cv2):
    monkeypatch.setattr(registration_service, "CameraStream", DeadCamera)
    headless_cv2.extend([-1, ord("q")])
    service = RegistrationService(db, engine=ScriptedDetector())

    with pytest.raises(AttendanceError, match="cancelled"):
        service.capture_from_camera(target_samples=1, read_fail_limit=100)
