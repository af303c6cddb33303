import base64
from datetime import datetime
from typing import List, Optional, Sequence

import cv2
import numpy as np

from .camera import CameraStream
from .config import (
    CAMERA_READ_FAIL_LIMIT,
    DUPLICATE_FACE_DISTANCE_THRESHOLD,
    ENROLLMENT_SAMPLES,
    SAMPLE_EVERY_N_FRAMES,
)
from .database import KioskDatabase
from .exceptions import AttendanceError, CameraError, DetectionTransientError
from .identity_resolver import IdentityResolver
from .logger import setup_logger
from .models import Detection, Person, PersonRole, Rect
from .quality_gate import is_live_quality


class RegistrationService:
    def __init__(self, db: KioskDatabase, engine=None):
        self.db = db
        self.engine = engine
        self.logger = setup_logger(self.__class__.__name__)

    def enroll(
        self,
        person_id: str,
        full_name: str,
        role: str,
        group: str,
        descriptors: Sequence[np.ndarray],
        thumbnail: Optional[str] = None,
        min_samples: int = ENROLLMENT_SAMPLES,
    ) -> Person:
        person_id = person_id.strip()
        full_name = full_name.strip()
        if not person_id:
            raise AttendanceError("Person id cannot be empty.")
        if not full_name:
            raise AttendanceError("Full name cannot be empty.")
        try:
            person_role = PersonRole(role)
        except ValueError as exc:
            choices = ", ".join(item.value for item in PersonRole)
            raise AttendanceError(f"Unknown role '{role}'. Use one of: {choices}.") from exc
        if len(descriptors) < min_samples:
            raise AttendanceError(f"At least {min_samples} face samples are required, got {len(descriptors)}.")

        self._validate_identity_uniqueness(descriptors, person_id)

        existing = self.db.get_person(person_id)
        person = Person(
            id=person_id,
            full_name=full_name,
            role=person_role,
            group=group.strip(),
            enrolled_at=existing.enrolled_at if existing else datetime.now().astimezone(),
            thumbnail=thumbnail,
        )
        self.db.upsert_person(person)
        stored = self.db.add_templates(person_id, descriptors)
        self.logger.info("Enrolled %s (%s) with %d descriptors", full_name, person_id, stored)
        return person

    def capture_from_camera(
        self,
        camera_index: int = 0,
        target_samples: int = ENROLLMENT_SAMPLES,
        sample_every_n_frames: int = SAMPLE_EVERY_N_FRAMES,
        read_fail_limit: int = CAMERA_READ_FAIL_LIMIT,
    ) -> tuple[List[np.ndarray], Optional[str]]:
        if self.engine is None:
            raise AttendanceError("A face engine is required to capture samples.")

        collected: List[np.ndarray] = []
        thumbnail: Optional[str] = None
        frame_index = 0
        read_fail_streak = 0
        window_name = "Enrollment - Press Q to cancel"

        try:
            with CameraStream(camera_index) as cam:
                while len(collected) < target_samples:
                    try:
                        frame = cam.read()
                    except DetectionTransientError as exc:
                        read_fail_streak += 1
                        if read_fail_streak >= max(1, read_fail_limit):
                            raise CameraError(
                                f"Camera {camera_index} failed {read_fail_streak} reads in a row: {exc}"
                            ) from exc
                        self._poll_cancel()
                        continue

                    read_fail_streak = 0
                    frame_index += 1
                    try:
                        detection = self.engine.detect(frame)
                    except DetectionTransientError:
                        detection = None

                    if detection is None:
                        status = "No face detected"
                    elif not is_live_quality(detection):
                        status = "Move closer to the camera"
                    elif frame_index % max(1, sample_every_n_frames) == 0:
                        collected.append(detection.descriptor)
                        if thumbnail is None:
                            thumbnail = self.face_crop_to_base64(frame, detection.box)
                        status = f"Captured sample {len(collected)}/{target_samples}"
                    else:
                        status = "Hold still..."

                    self._draw_enrollment_overlay(frame, detection, status, len(collected), target_samples)
                    cv2.imshow(window_name, frame)
                    self._poll_cancel()
        finally:
            cv2.destroyAllWindows()

        return collected, thumbnail

    @staticmethod
    def _poll_cancel() -> None:
        if cv2.waitKey(1) & 0xFF == ord("q"):
            raise AttendanceError("Enrollment cancelled by user.")

    def _validate_identity_uniqueness(self, descriptors: Sequence[np.ndarray], person_id: str) -> None:
        others = [template for template in self.db.list_templates() if template.person_id != person_id]
        if not others:
            return

        resolver = IdentityResolver(others, threshold=DUPLICATE_FACE_DISTANCE_THRESHOLD)
        mean = np.mean(np.vstack(descriptors).astype(np.float32), axis=0)
        match = resolver.resolve(mean)
        if match.is_known:
            raise AttendanceError(
                f"Captured face is too similar to enrolled person '{match.label}' "
                f"(distance {match.distance:.2f}). Use a different person or capture cleaner samples."
            )

    @staticmethod
    def face_crop_to_base64(frame: np.ndarray, box: Rect, size: int = 160) -> str:
        x1, y1, x2, y2 = box.as_corners()
        h, w = frame.shape[:2]
        pad_x = int((x2 - x1) * 0.25)
        pad_y = int((y2 - y1) * 0.25)

        crop = frame[max(0, y1 - pad_y):min(h, y2 + pad_y), max(0, x1 - pad_x):min(w, x2 + pad_x)]
        if crop.size == 0:
            return ""
        crop = cv2.resize(crop, (size, size), interpolation=cv2.INTER_AREA)
        ok, encoded = cv2.imencode(".jpg", crop, [int(cv2.IMWRITE_JPEG_QUALITY), 50])
        if not ok:
            return ""
        return base64.b64encode(encoded.tobytes()).decode("utf-8")

    @staticmethod
    def _draw_enrollment_overlay(
        frame: np.ndarray,
        detection: Optional[Detection],
        status: str,
        collected: int,
        target_samples: int,
    ) -> None:
        if detection is not None:
            x1, y1, x2, y2 = detection.box.as_corners()
            cv2.rectangle(frame, (x1, y1), (x2, y2), (0, 180, 0), 2)

        cv2.putText(frame, status, (20, 40), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (20, 20, 240), 2, cv2.LINE_AA)
        cv2.putText(
            frame,
            f"Samples: {collected}/{target_samples}",
            (20, 75),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.75,
            (255, 255, 255),
            2,
            cv2.LINE_AA,
        )
