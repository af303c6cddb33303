from typing import Optional, Tuple

import cv2
import numpy as np

from .config import SHOW_DEBUG_OVERLAY
from .feedback import (
    AttendanceAlreadyPresent,
    AttendanceRecorded,
    FeedbackEvent,
    IdentityCleared,
    SessionHalted,
    StorageErrorReported,
)
from .models import Observation, PresenceMode, PresenceSnapshot
from .presence_tracker import STATUS_ALREADY_PRESENT, STATUS_RECORDED, STATUS_STORAGE_ERROR

LIVE_KNOWN_COLOR = (129, 185, 16)
UNKNOWN_COLOR = (139, 116, 100)
NOT_LIVE_COLOR = (11, 158, 245)
BANNER_COLOR = (35, 35, 35)

STATUS_TEXT = {
    STATUS_RECORDED: "ATTENDANCE RECORDED",
    STATUS_ALREADY_PRESENT: "ALREADY CHECKED IN TODAY",
    STATUS_STORAGE_ERROR: "COULD NOT SAVE ATTENDANCE",
}


def box_color(observation: Observation) -> Tuple[int, int, int]:
    if not observation.is_live:
        return NOT_LIVE_COLOR
    if observation.known_label is None:
        return UNKNOWN_COLOR
    return LIVE_KNOWN_COLOR


class OverlayRenderer:
    """OpenCV render sink for the kiosk window and the MJPEG stream."""

    def __init__(self, title: str = "Kiosk Attendance", debug: bool = SHOW_DEBUG_OVERLAY):
        self.title = title
        self.debug = debug
        self.banner: Optional[str] = None

    def __call__(self, event: FeedbackEvent) -> None:
        if isinstance(event, AttendanceRecorded):
            self.banner = f"Welcome, {event.record.person_name}"
        elif isinstance(event, AttendanceAlreadyPresent):
            self.banner = f"{event.person.full_name} is already checked in"
        elif isinstance(event, StorageErrorReported):
            self.banner = "Attendance could not be saved"
        elif isinstance(event, IdentityCleared):
            self.banner = None
        elif isinstance(event, SessionHalted):
            self.banner = f"Stopped: {event.message}"

    def render(self, frame: np.ndarray, observation: Observation, snapshot: PresenceSnapshot) -> np.ndarray:
        if snapshot.mode == PresenceMode.IDLE:
            return self.render_screensaver(frame.shape[1], frame.shape[0])

        canvas = frame.copy()
        if observation.detection is not None:
            self._draw_face_box(canvas, observation)
        if snapshot.current_person is not None:
            self._draw_identity_card(canvas, snapshot)
        if self.banner:
            self._draw_banner(canvas, self.banner)
        if self.debug:
            self._draw_debug(canvas, observation)
        return canvas

    def render_screensaver(self, width: int, height: int) -> np.ndarray:
        canvas = np.full((height, width, 3), 255, dtype=np.uint8)
        self._centered_text(canvas, self.title, height // 2 - 20, 1.1, (40, 40, 40), 2)
        self._centered_text(canvas, "Step closer to check in", height // 2 + 30, 0.7, (150, 100, 20), 2)
        return canvas

    @staticmethod
    def _draw_face_box(canvas: np.ndarray, observation: Observation) -> None:
        x1, y1, x2, y2 = observation.detection.box.as_corners()
        color = box_color(observation)
        cv2.rectangle(canvas, (x1, y1), (x2, y2), color, 3)

        if observation.known_label is not None:
            cv2.rectangle(canvas, (x1, max(0, y1 - 30)), (x2, y1), color, -1)
            cv2.putText(
                canvas,
                observation.known_label,
                (x1 + 8, max(20, y1 - 9)),
                cv2.FONT_HERSHEY_SIMPLEX,
                0.6,
                (255, 255, 255),
                2,
                cv2.LINE_AA,
            )
        elif not observation.is_live:
            cv2.putText(canvas, "...", (x1, max(20, y1 - 10)), cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 2, cv2.LINE_AA)

    @staticmethod
    def _draw_identity_card(canvas: np.ndarray, snapshot: PresenceSnapshot) -> None:
        person = snapshot.current_person
        h, w = canvas.shape[:2]
        top = h - 110
        recorded = snapshot.last_decision == STATUS_RECORDED
        accent = (94, 197, 34) if recorded else (246, 130, 59)

        cv2.rectangle(canvas, (20, top), (w - 20, h - 20), (255, 255, 255), -1)
        cv2.rectangle(canvas, (20, top), (32, h - 20), accent, -1)
        cv2.putText(canvas, person.full_name, (48, top + 32), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (20, 20, 20), 2, cv2.LINE_AA)
        cv2.putText(
            canvas,
            f"{person.role.value} - {person.group}",
            (48, top + 58),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.55,
            (110, 110, 110),
            1,
            cv2.LINE_AA,
        )
        status = STATUS_TEXT.get(snapshot.last_decision or "")
        if status:
            cv2.putText(canvas, status, (48, top + 80), cv2.FONT_HERSHEY_SIMPLEX, 0.55, accent, 2, cv2.LINE_AA)

    @staticmethod
    def _draw_banner(canvas: np.ndarray, message: str) -> None:
        cv2.rectangle(canvas, (0, 0), (canvas.shape[1], 44), BANNER_COLOR, -1)
        cv2.putText(canvas, message, (16, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.7, (255, 255, 255), 2, cv2.LINE_AA)

    @staticmethod
    def _draw_debug(canvas: np.ndarray, observation: Observation) -> None:
        detection = observation.detection
        if detection is None:
            text = "no face"
        else:
            text = f"score={detection.quality_score:.2f} size={min(detection.box.width, detection.box.height):.0f}px"
            if observation.match is not None:
                text += f" dist={observation.match.distance:.3f}"
        cv2.putText(canvas, text, (16, canvas.shape[0] - 8), cv2.FONT_HERSHEY_SIMPLEX, 0.45, (0, 255, 255), 1, cv2.LINE_AA)

    @staticmethod
    def _centered_text(
        canvas: np.ndarray,
        text: str,
        baseline_y: int,
        scale: float,
        color: Tuple[int, int, int],
        thickness: int,
    ) -> None:
        (text_w, _), _ = cv2.getTextSize(text, cv2.FONT_HERSHEY_SIMPLEX, scale, thickness)
        x = max(0, (canvas.shape[1] - text_w) // 2)
        cv2.putText(canvas, text, (x, baseline_y), cv2.FONT_HERSHEY_SIMPLEX, scale, color, thickness, cv2.LINE_AA)
