import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import numpy as np
import pytest

os.environ.setdefault("KIOSK_LOG_DIR", tempfile.mkdtemp(prefix="kiosk-logs-"))

from kiosk_attendance.config import TimingConfig  # noqa: E402
from kiosk_attendance.database import KioskDatabase  # noqa: E402
from kiosk_attendance.exceptions import DetectionTransientError  # noqa: E402
from kiosk_attendance.feedback import FeedbackBus, FeedbackEvent  # noqa: E402
from kiosk_attendance.ledger_gate import AttendanceLedgerGate  # noqa: E402
from kiosk_attendance.models import (  # noqa: E402
    Detection,
    IdentityMatch,
    Observation,
    Person,
    PersonRole,
    Rect,
    UNKNOWN_LABEL,
)
from kiosk_attendance.presence_tracker import PresenceTracker  # noqa: E402

T0 = datetime(2024, 1, 1, 9, 0, 0, tzinfo=timezone.utc)
DIM = 16


def at(ms: int) -> datetime:
    return T0 + timedelta(milliseconds=ms)


def unit_vector(seed: int, dim: int = DIM) -> np.ndarray:
    rng = np.random.default_rng(seed)
    vector = rng.normal(size=dim).astype(np.float32)
    return vector / np.linalg.norm(vector)


def make_person(person_id: str = "P1", full_name: str = "Ana Torres", group: str = "Math 101") -> Person:
    return Person(
        id=person_id,
        full_name=full_name,
        role=PersonRole.STUDENT,
        group=group,
        enrolled_at=T0 - timedelta(days=30),
    )


def make_detection(size: float = 150.0, score: float = 0.95, descriptor: Optional[np.ndarray] = None) -> Detection:
    return Detection(
        box=Rect(x=40, y=30, width=size, height=size),
        quality_score=score,
        descriptor=unit_vector(0) if descriptor is None else descriptor,
    )


def match(label: str) -> Observation:
    return Observation(detection=make_detection(), is_live=True, match=IdentityMatch(label=label, distance=0.2))


def unknown_face() -> Observation:
    return Observation(detection=make_detection(), is_live=True, match=IdentityMatch(label=UNKNOWN_LABEL, distance=0.9))


def not_live_face() -> Observation:
    return Observation(detection=make_detection(size=80), is_live=False)


NO_FACE = Observation()


class CountingLedger(AttendanceLedgerGate):
    def __init__(self, db, tz=timezone.utc):
        super().__init__(db, tz=tz)
        self.calls: List[str] = []

    def check_in(self, person, now):
        self.calls.append(person.id)
        return super().check_in(person, now)


class ScriptedDetector:
    """Returns queued detections; an exception instance in the queue is raised."""

    def __init__(self, script=()):
        self.script = list(script)
        self.calls = 0

    def detect(self, frame):
        self.calls += 1
        if not self.script:
            return None
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FlakyDetector(ScriptedDetector):
    def __init__(self):
        super().__init__([DetectionTransientError("usb hiccup")])


@pytest.fixture
def db(tmp_path) -> KioskDatabase:
    database = KioskDatabase(tmp_path / "kiosk.db")
    database.upsert_person(make_person("P1", "Ana Torres", "Math 101"))
    database.upsert_person(make_person("P2", "Luis Rojas", "Physics 200"))
    database.add_templates("P1", [unit_vector(1), unit_vector(1)])
    database.add_templates("P2", [unit_vector(11), unit_vector(11)])
    return database


@pytest.fixture
def events() -> List[FeedbackEvent]:
    return []


@pytest.fixture
def bus(events) -> FeedbackBus:
    feedback = FeedbackBus()
    feedback.subscribe(events.append)
    return feedback


@pytest.fixture
def ledger(db) -> CountingLedger:
    return CountingLedger(db)


@pytest.fixture
def timing() -> TimingConfig:
    return TimingConfig(
        match_lock_ms=1000,
        grace_ms=2000,
        idle_timeout_ms=15000,
        match_lock_scope="person",
        storage_retry_limit=3,
        storage_retry_backoff_ms=2000,
    )


@pytest.fixture
def tracker(db, ledger, bus, timing) -> PresenceTracker:
    return PresenceTracker(db, ledger, bus, timing=timing, now=T0)


def kinds(events) -> List[str]:
    return [event.kind for event in events]
