import os
import time
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .config import CAMERA_BACKEND_ORDER, FRAME_FPS, FRAME_HEIGHT, FRAME_WIDTH
from .exceptions import CameraError, DetectionTransientError

_BACKEND_ALIASES = {
    "auto": "Auto",
    "any": "Auto",
    "dshow": "DirectShow",
    "directshow": "DirectShow",
    "msmf": "Media Foundation",
    "v4l2": "V4L2",
}


def capture_backends(preferred: Tuple[str, ...] = CAMERA_BACKEND_ORDER) -> List[Tuple[str, Optional[int]]]:
    backend_map = {
        "Auto": getattr(cv2, "CAP_ANY", None),
        "DirectShow": getattr(cv2, "CAP_DSHOW", None),
        "Media Foundation": getattr(cv2, "CAP_MSMF", None),
        "V4L2": getattr(cv2, "CAP_V4L2", None),
    }
    names = [_BACKEND_ALIASES.get(item.strip().lower()) for item in preferred]
    ordered = [name for name in names if name]
    if not ordered:
        # DirectShow opens laptop webcams more reliably on Windows.
        ordered = ["DirectShow", "Auto"] if os.name == "nt" else ["Auto", "V4L2"]

    candidates: List[Tuple[str, Optional[int]]] = []
    seen: set = set()
    for name in ordered:
        backend = backend_map.get(name)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def open_camera_capture(camera_index: int) -> Tuple[cv2.VideoCapture, str]:
    attempted: List[str] = []
    for backend_name, backend in capture_backends():
        attempted.append(backend_name)
        cap = cv2.VideoCapture(camera_index) if backend is None else cv2.VideoCapture(camera_index, backend)

        if cap.isOpened():
            # Some backends report opened but never deliver a frame.
            for _ in range(6):
                ok, frame = cap.read()
                if ok and frame is not None:
                    return cap, backend_name
                time.sleep(0.03)
        cap.release()

    tried = ", ".join(attempted) if attempted else "default backend"
    raise CameraError(
        f"Unable to open camera {camera_index} (missing device or permission denied). Tried backends: {tried}."
    )


class CameraStream:
    def __init__(self, camera_index: int = 0):
        self.camera_index = camera_index
        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: Optional[str] = None

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self.cap is not None

    def open(self) -> None:
        self.cap, self.backend_name = open_camera_capture(self.camera_index)
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, FRAME_WIDTH)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, FRAME_HEIGHT)
        self.cap.set(cv2.CAP_PROP_FPS, FRAME_FPS)

    def read(self) -> np.ndarray:
        if self.cap is None:
            raise CameraError("Camera stream is not initialized.")

        success, frame = self.cap.read()
        if not success or frame is None:
            raise DetectionTransientError(f"Failed to read frame from camera {self.camera_index}.")
        return frame

    def close(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None
