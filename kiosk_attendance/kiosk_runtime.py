import threading
import time
from datetime import datetime, tzinfo
from typing import Callable, List, Optional

import cv2
import numpy as np

from .camera import CameraStream
from .config import CAMERA_INDEX, JPEG_QUALITY, TARGET_TICK_FPS, TimingConfig
from .database import KioskDatabase
from .exceptions import CameraError, ConfigurationError, DatabaseError, DetectionTransientError
from .feedback import EventLog, FeedbackBus, FeedbackEvent, event_to_dict
from .identity_resolver import IdentityResolver
from .kiosk_session import KioskSession, TickResult
from .ledger_gate import AttendanceLedgerGate
from .logger import setup_logger
from .overlay import OverlayRenderer
from .presence_tracker import PresenceTracker


class KioskRuntime:
    """Owns the camera, the tick thread and the published view of the session.

    The worker thread is the only writer of the presence state. Other threads
    (HTTP handlers) read the immutable snapshot and JPEG published under
    ``self.lock``.
    """

    def __init__(
        self,
        db: KioskDatabase,
        engine,
        camera_index: int = CAMERA_INDEX,
        timing: Optional[TimingConfig] = None,
        tz: Optional[tzinfo] = None,
        camera_factory: Callable[[int], CameraStream] = CameraStream,
        target_fps: int = TARGET_TICK_FPS,
    ):
        self.db = db
        self.engine = engine
        self.camera_index = camera_index
        self.camera_factory = camera_factory
        self.tz = tz
        self.logger = setup_logger(self.__class__.__name__)

        self.bus = FeedbackBus()
        self.event_log = EventLog()
        self.overlay = OverlayRenderer()
        self.bus.subscribe(self.event_log)
        self.bus.subscribe(self.overlay)
        self.bus.subscribe(self._log_event)

        ledger = AttendanceLedgerGate(db, tz=tz)
        self.tracker = PresenceTracker(db, ledger, self.bus, timing=timing, now=self._now())
        self.session = KioskSession(
            detector=engine,
            resolver=IdentityResolver(db.list_templates()),
            tracker=self.tracker,
            bus=self.bus,
        )

        self.frame_sleep_seconds = (1.0 / target_fps) if target_fps > 0 else 0.0
        self.jpeg_quality = int(np.clip(JPEG_QUALITY, 45, 95))
        self.read_fail_streak = 0
        self.read_fail_warn_threshold = 10
        self.join_timeout = 3.0

        self.camera: Optional[CameraStream] = None
        self.worker: Optional[threading.Thread] = None
        self.stop_event = threading.Event()
        self.lock = threading.Lock()

        self.last_jpeg: Optional[bytes] = None
        self.last_state: dict = self.tracker.snapshot().to_dict()
        self.last_error: Optional[str] = None
        self.latest_fps: float = 0.0

    def _now(self) -> datetime:
        return datetime.now(self.tz) if self.tz is not None else datetime.now().astimezone()

    def start(self) -> None:
        if self.worker and self.worker.is_alive():
            return

        camera = self.camera_factory(self.camera_index)
        try:
            camera.open()
        except CameraError as exc:
            with self.lock:
                self.last_error = str(exc)
            self.session.halt(str(exc), self._now())
            raise

        self.camera = camera
        generation = self.session.restart(self._now())
        with self.lock:
            self.last_error = None
            self.last_state = self.tracker.snapshot().to_dict()

        # One stop event per worker; a worker that outlives stop() still sees its own.
        self.stop_event = threading.Event()
        self.worker = threading.Thread(
            target=self._loop,
            args=(camera, generation, self.stop_event),
            name="kiosk-tick-loop",
            daemon=True,
        )
        self.worker.start()
        self.logger.info("Kiosk runtime started on camera %s (%s)", self.camera_index, camera.backend_name)

    def stop(self) -> None:
        self.stop_event.set()
        self.session.invalidate()
        if self.worker and self.worker.is_alive():
            self.worker.join(timeout=self.join_timeout)
            if self.worker.is_alive():
                self.logger.warning(
                    "Tick loop still busy after %.1fs; it exits after its current tick",
                    self.join_timeout,
                )
        self.worker = None

        if self.camera is not None:
            self.camera.close()
            self.camera = None
        self.logger.info("Kiosk runtime stopped")

    def switch_camera(self, camera_index: int) -> dict:
        self.logger.info("Switching camera %s -> %s", self.camera_index, camera_index)
        self.stop()
        self.camera_index = int(camera_index)
        try:
            self.start()
        except ConfigurationError as exc:
            return {"ok": False, "camera_index": self.camera_index, "error": str(exc)}
        return {"ok": True, "camera_index": self.camera_index}

    def refresh_identities(self) -> int:
        resolver = IdentityResolver(self.db.list_templates(), threshold=self.session.resolver.threshold)
        self.session.replace_resolver(resolver)
        self.logger.info("Identity templates reloaded for %d persons", resolver.enrolled_count)
        return resolver.enrolled_count

    def get_jpeg_frame(self) -> Optional[bytes]:
        with self.lock:
            return self.last_jpeg

    def get_state(self) -> dict:
        with self.lock:
            state = dict(self.last_state)
            state.update(
                {
                    "camera_index": self.camera_index,
                    "running": self.worker is not None and self.worker.is_alive(),
                    "halted": self.session.halted,
                    "fps": round(self.latest_fps, 1),
                    "enrolled_count": self.session.resolver.enrolled_count,
                    "last_event_seq": self.event_log.last_seq,
                    "error": self.last_error,
                }
            )
        return state

    def events_since(self, after: int = 0) -> List[dict]:
        return [
            {"seq": item.seq, **event_to_dict(item.event)}
            for item in self.event_log.since(after)
        ]

    def run_window(self, window_name: str = "Kiosk Attendance - Press Q to exit") -> None:
        """Drive the session from the calling thread and show it in an OpenCV window."""
        camera = self.camera_factory(self.camera_index)
        with camera:
            generation = self.session.restart(self._now())
            while not self.session.halted:
                frame, result = self._step(camera, generation)
                if frame is not None and result is not None:
                    cv2.imshow(window_name, self.overlay.render(frame, result.observation, result.snapshot))
                key = cv2.waitKey(1) & 0xFF
                if key == ord("q"):
                    break
        cv2.destroyAllWindows()

    def _step(self, camera: CameraStream, generation: int) -> tuple[Optional[np.ndarray], Optional[TickResult]]:
        try:
            frame = camera.read()
            self.read_fail_streak = 0
        except DetectionTransientError as exc:
            frame = None
            self.read_fail_streak += 1
            if self.read_fail_streak == self.read_fail_warn_threshold:
                self.logger.warning("Camera %s keeps failing: %s", self.camera_index, exc)

        # A missed frame still ticks so grace and idle deadlines keep moving.
        result = self.session.run_tick(frame, self._now(), generation=generation)
        return frame, result

    def _loop(self, camera: CameraStream, generation: int, stop_event: threading.Event) -> None:
        prev_time = time.perf_counter()
        while not stop_event.is_set() and generation == self.session.generation:
            loop_started = time.perf_counter()
            try:
                frame, result = self._step(camera, generation)
            except DatabaseError as exc:
                self.logger.error("Store failure during tick: %s", exc)
                frame, result = None, None
            except Exception:
                self.logger.exception("Tick failed")
                frame, result = None, None

            if stop_event.is_set() or generation != self.session.generation:
                break

            if self.session.halted:
                with self.lock:
                    self.last_error = self.session.halt_reason
                break

            if result is not None:
                self._publish(frame, result, loop_started - prev_time)
            prev_time = loop_started

            if self.frame_sleep_seconds > 0.0:
                remaining = self.frame_sleep_seconds - (time.perf_counter() - loop_started)
                if remaining > 0.0:
                    stop_event.wait(remaining)

    def _publish(self, frame: Optional[np.ndarray], result: TickResult, delta: float) -> None:
        jpeg = None
        if frame is not None:
            rendered = self.overlay.render(frame, result.observation, result.snapshot)
            ok, encoded = cv2.imencode(".jpg", rendered, [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality])
            if ok:
                jpeg = encoded.tobytes()

        with self.lock:
            self.last_state = result.snapshot.to_dict()
            if jpeg is not None:
                self.last_jpeg = jpeg
            if delta > 0.0:
                self.latest_fps = 1.0 / delta

    def _log_event(self, event: FeedbackEvent) -> None:
        self.logger.info("Feedback event: %s", event.kind)
