from datetime import datetime, timedelta
from typing import Optional

from .config import TimingConfig
from .database import KioskDatabase
from .exceptions import DatabaseError, StorageWriteFailure
from .feedback import (
    AttendanceAlreadyPresent,
    AttendanceRecorded,
    FeedbackBus,
    IdentityCleared,
    IdentityShown,
    PresenceBecameIdle,
    PresenceDismissedIdle,
    StorageErrorReported,
)
from .ledger_gate import AttendanceLedgerGate, Recorded
from .logger import setup_logger
from .models import Observation, Person, PresenceMode, PresenceSnapshot, PresenceState, StorageRetry

STATUS_RECORDED = "success"
STATUS_ALREADY_PRESENT = "already-checked-in"
STATUS_STORAGE_ERROR = "storage-error"


class PresenceTracker:
    """Turns per-tick observations into idle/active mode, the shown identity and
    check-in attempts.

    All state lives in ``self.state`` and is only touched from ``tick`` and
    ``reset``; both must be called from the single thread that owns the loop.
    Grace and idle deadlines are checked inside ticks, there are no timers.
    """

    def __init__(
        self,
        db: KioskDatabase,
        ledger: AttendanceLedgerGate,
        bus: FeedbackBus,
        timing: Optional[TimingConfig] = None,
        now: Optional[datetime] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.bus = bus
        self.timing = timing or TimingConfig()
        self.logger = setup_logger(self.__class__.__name__)
        self.state = PresenceState.initial(now or datetime.now().astimezone())

    @property
    def match_lock(self) -> timedelta:
        return timedelta(milliseconds=self.timing.match_lock_ms)

    @property
    def grace(self) -> timedelta:
        return timedelta(milliseconds=self.timing.grace_ms)

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(milliseconds=self.timing.idle_timeout_ms)

    def snapshot(self) -> PresenceSnapshot:
        return PresenceSnapshot.of(self.state)

    def reset(self, now: datetime) -> None:
        self.state = PresenceState.initial(now)
        self.logger.info("Presence state reset")

    def tick(self, observation: Observation, now: datetime) -> PresenceSnapshot:
        if observation.has_face:
            label = observation.known_label
            person = self._lookup(label) if label is not None else None
            if person is not None:
                self._on_known_face(person, now)
            else:
                self._on_face_present(now)
        else:
            self._on_no_face(now)
        return self.snapshot()

    def _lookup(self, label: str) -> Optional[Person]:
        try:
            person = self.db.get_person(label)
        except DatabaseError as exc:
            self.logger.warning("Person lookup failed for %s: %s", label, exc)
            return None
        if person is None:
            self.logger.warning("Matched label %s has no person record", label)
        return person

    def _on_face_present(self, now: datetime) -> None:
        state = self.state
        state.pending_clear_deadline = None
        state.last_detection_at = now
        if state.mode == PresenceMode.IDLE:
            state.mode = PresenceMode.ACTIVE
            self.bus.emit(PresenceDismissedIdle(at=now))

    def _on_known_face(self, person: Person, now: datetime) -> None:
        self._on_face_present(now)
        state = self.state

        current = state.current_person
        if current is not None and current.id == person.id:
            self._retry_storage_if_due(person, now)
            return

        if self._is_locked(person.id, now):
            return

        state.current_person = person
        state.last_decision = None
        state.retry = None
        self._lock(person.id, now)
        self.bus.emit(IdentityShown(at=now, person=person))
        self._record_attendance(person, now, attempt=1)

    def _on_no_face(self, now: datetime) -> None:
        state = self.state

        if state.current_person is not None and state.pending_clear_deadline is None:
            state.pending_clear_deadline = now + self.grace

        if state.pending_clear_deadline is not None and now >= state.pending_clear_deadline:
            cleared = state.current_person
            state.current_person = None
            state.last_decision = None
            state.pending_clear_deadline = None
            state.retry = None
            self.bus.emit(IdentityCleared(at=now, person=cleared))

        if (
            state.mode == PresenceMode.ACTIVE
            and state.current_person is None
            and now - state.last_detection_at > self.idle_timeout
        ):
            state.mode = PresenceMode.IDLE
            self.bus.emit(PresenceBecameIdle(at=now))

    def _is_locked(self, person_id: str, now: datetime) -> bool:
        if self.timing.match_lock_scope == "global":
            until = self.state.match_locked_until
        else:
            until = self.state.person_locks.get(person_id)
        return until is not None and now < until

    def _lock(self, person_id: str, now: datetime) -> None:
        until = now + self.match_lock
        self.state.match_locked_until = until
        locks = {key: value for key, value in self.state.person_locks.items() if value > now}
        locks[person_id] = until
        self.state.person_locks = locks

    def _record_attendance(self, person: Person, now: datetime, attempt: int) -> None:
        state = self.state
        try:
            decision = self.ledger.check_in(person, now)
        except StorageWriteFailure as exc:
            self.logger.error("Attendance write failed for %s (attempt %d): %s", person.id, attempt, exc)
            state.last_decision = STATUS_STORAGE_ERROR
            if attempt < self.timing.storage_retry_limit:
                backoff = self.timing.storage_retry_backoff_ms * (2 ** (attempt - 1))
                state.retry = StorageRetry(
                    person_id=person.id,
                    attempts=attempt,
                    next_attempt_at=now + timedelta(milliseconds=backoff),
                )
            else:
                state.retry = None
            self.bus.emit(StorageErrorReported(at=now, person=person, message=str(exc)))
            return

        state.retry = None
        if isinstance(decision, Recorded):
            state.last_decision = STATUS_RECORDED
            self.bus.emit(AttendanceRecorded(at=now, record=decision.record))
        else:
            state.last_decision = STATUS_ALREADY_PRESENT
            self.bus.emit(AttendanceAlreadyPresent(at=now, person=person))

    def _retry_storage_if_due(self, person: Person, now: datetime) -> None:
        retry = self.state.retry
        if retry is None or retry.person_id != person.id or now < retry.next_attempt_at:
            return
        self.logger.info("Retrying attendance write for %s", person.id)
        self._record_attendance(person, now, attempt=retry.attempts + 1)
