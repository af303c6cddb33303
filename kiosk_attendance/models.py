from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

import numpy as np


UNKNOWN_LABEL = "unknown"


class PersonRole(str, Enum):
    STUDENT = "Student"
    TEACHER = "Teacher"
    STAFF = "Staff"


class EventKind(str, Enum):
    CHECK_IN = "Check-In"
    CHECK_OUT = "Check-Out"


class PresenceMode(str, Enum):
    IDLE = "Idle"
    ACTIVE = "Active"


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    def as_corners(self) -> tuple[int, int, int, int]:
        return (
            int(self.x),
            int(self.y),
            int(self.x + self.width),
            int(self.y + self.height),
        )

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)


@dataclass
class Detection:
    box: Rect
    quality_score: float
    descriptor: np.ndarray


@dataclass(frozen=True)
class IdentityMatch:
    label: str
    distance: float

    @property
    def is_known(self) -> bool:
        return self.label != UNKNOWN_LABEL


@dataclass(frozen=True)
class Person:
    id: str
    full_name: str
    role: PersonRole
    group: str
    enrolled_at: datetime
    thumbnail: Optional[str] = None


@dataclass
class EnrollmentTemplate:
    person_id: str
    descriptors: List[np.ndarray] = field(default_factory=list)


@dataclass(frozen=True)
class AttendanceRecord:
    id: str
    person_id: str
    person_name: str
    person_role: str
    person_group: str
    timestamp: datetime
    event_kind: EventKind = EventKind.CHECK_IN


@dataclass(frozen=True)
class Observation:
    """What one tick saw: the detection (if any) and the verdicts computed for it."""

    detection: Optional[Detection] = None
    is_live: bool = False
    match: Optional[IdentityMatch] = None

    @property
    def has_face(self) -> bool:
        return self.detection is not None

    @property
    def known_label(self) -> Optional[str]:
        if self.detection is None or not self.is_live:
            return None
        if self.match is None or not self.match.is_known:
            return None
        return self.match.label


@dataclass
class StorageRetry:
    person_id: str
    attempts: int
    next_attempt_at: datetime


@dataclass
class PresenceState:
    mode: PresenceMode
    current_person: Optional[Person]
    last_detection_at: datetime
    pending_clear_deadline: Optional[datetime] = None
    match_locked_until: Optional[datetime] = None
    person_locks: Dict[str, datetime] = field(default_factory=dict)
    last_decision: Optional[str] = None
    retry: Optional[StorageRetry] = None

    @classmethod
    def initial(cls, now: datetime) -> "PresenceState":
        return cls(
            mode=PresenceMode.IDLE,
            current_person=None,
            last_detection_at=now,
        )


@dataclass(frozen=True)
class PresenceSnapshot:
    mode: PresenceMode
    current_person: Optional[Person]
    last_detection_at: datetime
    last_decision: Optional[str]
    pending_clear: bool

    @classmethod
    def of(cls, state: PresenceState) -> "PresenceSnapshot":
        return cls(
            mode=state.mode,
            current_person=state.current_person,
            last_detection_at=state.last_detection_at,
            last_decision=state.last_decision,
            pending_clear=state.pending_clear_deadline is not None,
        )

    def to_dict(self) -> dict:
        person = self.current_person
        return {
            "mode": self.mode.value,
            "screensaver": self.mode == PresenceMode.IDLE,
            "person": None
            if person is None
            else {
                "id": person.id,
                "full_name": person.full_name,
                "role": person.role.value,
                "group": person.group,
                "thumbnail": person.thumbnail,
            },
            "last_detection_at": self.last_detection_at.isoformat(),
            "attendance_status": self.last_decision,
            "pending_clear": self.pending_clear,
        }
