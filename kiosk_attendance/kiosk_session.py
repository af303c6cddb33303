import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import numpy as np

from .config import LIVE_SCORE_THRESHOLD, MIN_FACE_PX
from .exceptions import ConfigurationError, DetectionTransientError
from .feedback import FeedbackBus, SessionHalted
from .identity_resolver import IdentityResolver
from .logger import setup_logger
from .models import Detection, Observation, PresenceSnapshot
from .presence_tracker import PresenceTracker
from .quality_gate import is_live_quality


@dataclass(frozen=True)
class TickResult:
    generation: int
    observation: Observation
    snapshot: PresenceSnapshot


class KioskSession:
    """One tick = detect, quality-gate, resolve, then feed the presence tracker.

    ``generation`` is bumped on every restart; a tick whose detection finishes
    after a restart is dropped instead of touching the fresh state.
    """

    def __init__(
        self,
        detector,
        resolver: IdentityResolver,
        tracker: PresenceTracker,
        bus: FeedbackBus,
        min_face_px: int = MIN_FACE_PX,
        live_score_threshold: float = LIVE_SCORE_THRESHOLD,
    ):
        self.detector = detector
        self.resolver = resolver
        self.tracker = tracker
        self.bus = bus
        self.min_face_px = min_face_px
        self.live_score_threshold = live_score_threshold
        self.generation = 0
        self.halted = False
        self.halt_reason: Optional[str] = None
        self.lock = threading.RLock()
        self.logger = setup_logger(self.__class__.__name__)

    def replace_resolver(self, resolver: IdentityResolver) -> None:
        self.resolver = resolver

    def invalidate(self) -> int:
        """Orphan any in-flight tick without touching the presence state."""
        with self.lock:
            self.generation += 1
            return self.generation

    def restart(self, now: Optional[datetime] = None) -> int:
        with self.lock:
            self.invalidate()
            self.halted = False
            self.halt_reason = None
            self.tracker.reset(now or datetime.now().astimezone())
            return self.generation

    def halt(self, message: str, now: Optional[datetime] = None) -> None:
        if self.halted:
            return
        self.halted = True
        self.halt_reason = message
        self.logger.error("Kiosk session halted: %s", message)
        self.bus.emit(SessionHalted(at=now or datetime.now().astimezone(), message=message))

    def observe(self, detection: Optional[Detection]) -> Observation:
        if detection is None:
            return Observation()
        live = is_live_quality(detection, self.min_face_px, self.live_score_threshold)
        if not live:
            return Observation(detection=detection, is_live=False)
        return Observation(detection=detection, is_live=True, match=self.resolver.resolve(detection.descriptor))

    def detect(self, frame: Optional[np.ndarray]) -> Optional[Detection]:
        if frame is None:
            return None
        try:
            return self.detector.detect(frame)
        except DetectionTransientError as exc:
            self.logger.debug("Transient detection failure: %s", exc)
            return None

    def run_tick(
        self,
        frame: Optional[np.ndarray],
        now: Optional[datetime] = None,
        generation: Optional[int] = None,
    ) -> Optional[TickResult]:
        if self.halted:
            return None

        started_generation = self.generation if generation is None else generation
        try:
            detection = self.detect(frame)
            # Restart takes the same lock, so a stale tick cannot land on fresh state.
            with self.lock:
                if started_generation != self.generation:
                    self.logger.debug("Dropping detection from stale session %d", started_generation)
                    return None

                observation = self.observe(detection)
                snapshot = self.tracker.tick(observation, now or datetime.now().astimezone())
        except ConfigurationError as exc:
            self.halt(str(exc), now)
            return None

        return TickResult(generation=started_generation, observation=observation, snapshot=snapshot)
