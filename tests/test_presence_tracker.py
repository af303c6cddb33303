from datetime import timezone

from conftest import NO_FACE, CountingLedger, at, kinds, match, not_live_face, unknown_face

from kiosk_attendance.config import TimingConfig
from kiosk_attendance.exceptions import StorageWriteFailure
from kiosk_attendance.models import PresenceMode
from kiosk_attendance.presence_tracker import (
    STATUS_ALREADY_PRESENT,
    STATUS_RECORDED,
    STATUS_STORAGE_ERROR,
    PresenceTracker,
)


def test_initial_state_is_idle_without_person(tracker):
    state = tracker.state
    assert state.mode == PresenceMode.IDLE
    assert state.current_person is None
    assert state.pending_clear_deadline is None
    assert state.match_locked_until is None


def test_first_match_wakes_shows_identity_and_records(tracker, ledger, events):
    snapshot = tracker.tick(match("P1"), at(0))

    assert snapshot.mode == PresenceMode.ACTIVE
    assert snapshot.current_person.id == "P1"
    assert snapshot.last_decision == STATUS_RECORDED
    assert ledger.calls == ["P1"]
    assert kinds(events) == ["PresenceDismissedIdle", "IdentityShown", "AttendanceRecorded"]


def test_contiguous_matches_invoke_ledger_once(tracker, ledger):
    for step in range(40):
        tracker.tick(match("P1"), at(step * 100))

    assert ledger.calls == ["P1"]
    assert tracker.state.current_person.id == "P1"


def test_repeated_tick_at_same_instant_does_not_double_write(tracker, ledger, db):
    tracker.tick(match("P1"), at(0))
    tracker.tick(match("P1"), at(0))
    tracker.tick(match("P1"), at(500))

    assert ledger.calls == ["P1"]
    assert len(db.get_attendance_for("P1")) == 1


def test_single_missed_frame_keeps_identity(tracker, ledger, events):
    tracker.tick(match("P1"), at(0))
    tracker.tick(NO_FACE, at(100))
    tracker.tick(match("P1"), at(200))

    assert tracker.state.current_person.id == "P1"
    assert tracker.state.pending_clear_deadline is None
    assert ledger.calls == ["P1"]
    assert "IdentityCleared" not in kinds(events)


def test_flicker_sequence_within_grace_never_clears(tracker, ledger, events):
    stream = [match("P1"), NO_FACE, NO_FACE, match("P1")]
    for step, observation in enumerate(stream):
        tracker.tick(observation, at(step * 500))
        assert tracker.state.current_person is not None

    assert ledger.calls == ["P1"]
    assert "IdentityCleared" not in kinds(events)


def test_grace_deadline_is_set_once(tracker):
    tracker.tick(match("P1"), at(0))
    tracker.tick(NO_FACE, at(100))
    deadline = tracker.state.pending_clear_deadline
    tracker.tick(NO_FACE, at(600))

    assert deadline == at(2100)
    assert tracker.state.pending_clear_deadline == deadline


def test_identity_clears_after_grace(tracker, events):
    tracker.tick(match("P1"), at(0))
    tracker.tick(NO_FACE, at(100))
    tracker.tick(NO_FACE, at(2099))
    assert tracker.state.current_person is not None

    snapshot = tracker.tick(NO_FACE, at(2100))

    assert snapshot.current_person is None
    assert snapshot.last_decision is None
    assert tracker.state.pending_clear_deadline is None
    assert snapshot.mode == PresenceMode.ACTIVE
    assert kinds(events)[-1] == "IdentityCleared"


def test_same_person_returning_after_clear_hits_already_present(tracker, ledger, events):
    tracker.tick(match("P1"), at(0))
    tracker.tick(NO_FACE, at(100))
    tracker.tick(NO_FACE, at(2200))
    snapshot = tracker.tick(match("P1"), at(3000))

    assert ledger.calls == ["P1", "P1"]
    assert snapshot.last_decision == STATUS_ALREADY_PRESENT
    assert kinds(events)[-2:] == ["IdentityShown", "AttendanceAlreadyPresent"]


def test_goes_idle_after_timeout_without_person(tracker, events):
    tracker.tick(unknown_face(), at(0))
    tracker.tick(NO_FACE, at(15000))
    assert tracker.state.mode == PresenceMode.ACTIVE

    tracker.tick(NO_FACE, at(15001))

    assert tracker.state.mode == PresenceMode.IDLE
    assert kinds(events) == ["PresenceDismissedIdle", "PresenceBecameIdle"]


def test_never_idles_while_person_is_current(db, ledger, bus):
    tracker = PresenceTracker(db, ledger, bus, timing=TimingConfig(grace_ms=60_000, idle_timeout_ms=1000), now=at(0))
    tracker.tick(match("P1"), at(0))
    tracker.tick(NO_FACE, at(5000))
    tracker.tick(NO_FACE, at(30_000))

    assert tracker.state.current_person is not None
    assert tracker.state.mode == PresenceMode.ACTIVE


def test_detection_after_idle_reactivates_within_one_tick(tracker, events):
    tracker.tick(NO_FACE, at(0))
    tracker.tick(unknown_face(), at(1000))
    tracker.tick(NO_FACE, at(20_000))
    assert tracker.state.mode == PresenceMode.IDLE

    snapshot = tracker.tick(not_live_face(), at(20_100))

    assert snapshot.mode == PresenceMode.ACTIVE
    assert kinds(events)[-1] == "PresenceDismissedIdle"


def test_unknown_or_not_live_face_never_touches_ledger(tracker, ledger):
    tracker.tick(unknown_face(), at(0))
    tracker.tick(not_live_face(), at(100))

    assert ledger.calls == []
    assert tracker.state.current_person is None
    assert tracker.state.last_detection_at == at(100)


def test_any_face_cancels_pending_clear(tracker):
    tracker.tick(match("P1"), at(0))
    tracker.tick(NO_FACE, at(100))
    assert tracker.state.pending_clear_deadline is not None

    tracker.tick(unknown_face(), at(200))

    assert tracker.state.pending_clear_deadline is None
    assert tracker.state.current_person.id == "P1"


def test_label_without_person_record_is_treated_as_unknown(tracker, ledger, db):
    db.delete_person("P2")
    tracker.tick(match("P2"), at(0))

    assert tracker.state.current_person is None
    assert tracker.state.mode == PresenceMode.ACTIVE
    assert ledger.calls == []


def test_different_person_is_not_blocked_by_lock(tracker, ledger, events):
    tracker.tick(match("P1"), at(0))
    snapshot = tracker.tick(match("P2"), at(200))

    assert snapshot.current_person.id == "P2"
    assert ledger.calls == ["P1", "P2"]
    assert kinds(events).count("IdentityShown") == 2


def test_per_person_lock_suppresses_quick_flip_back(tracker, ledger):
    tracker.tick(match("P1"), at(0))
    tracker.tick(match("P2"), at(200))
    tracker.tick(match("P1"), at(400))
    assert tracker.state.current_person.id == "P2"

    tracker.tick(match("P1"), at(1000))

    assert tracker.state.current_person.id == "P1"
    assert ledger.calls == ["P1", "P2", "P1"]


def test_global_lock_blocks_swap_until_elapsed(db, bus):
    ledger = CountingLedger(db, tz=timezone.utc)
    tracker = PresenceTracker(
        db,
        ledger,
        bus,
        timing=TimingConfig(match_lock_ms=1000, match_lock_scope="global"),
        now=at(0),
    )
    tracker.tick(match("P1"), at(0))
    tracker.tick(match("P2"), at(500))
    assert tracker.state.current_person.id == "P1"

    tracker.tick(match("P2"), at(1000))

    assert tracker.state.current_person.id == "P2"
    assert ledger.calls == ["P1", "P2"]


def test_invariant_person_implies_active_across_mixed_stream(tracker):
    stream = [NO_FACE, match("P1"), NO_FACE, unknown_face(), NO_FACE, NO_FACE, match("P2"), NO_FACE]
    for step, observation in enumerate(stream * 4):
        tracker.tick(observation, at(step * 3000))
        state = tracker.state
        if state.current_person is not None:
            assert state.mode == PresenceMode.ACTIVE


def test_reset_restores_initial_values(tracker):
    tracker.tick(match("P1"), at(0))
    tracker.tick(NO_FACE, at(100))
    tracker.reset(at(500))

    state = tracker.state
    assert state.mode == PresenceMode.IDLE
    assert state.current_person is None
    assert state.last_detection_at == at(500)
    assert state.pending_clear_deadline is None
    assert state.match_locked_until is None


class FailingLedger(CountingLedger):
    def __init__(self, db, failures):
        super().__init__(db)
        self.failures = failures

    def check_in(self, person, now):
        if self.failures > 0:
            self.failures -= 1
            self.calls.append(person.id)
            raise StorageWriteFailure("disk full")
        return super().check_in(person, now)


def test_storage_failure_reports_and_keeps_person(db, bus, events, timing):
    ledger = FailingLedger(db, failures=1)
    tracker = PresenceTracker(db, ledger, bus, timing=timing, now=at(0))

    snapshot = tracker.tick(match("P1"), at(0))

    assert snapshot.current_person.id == "P1"
    assert snapshot.last_decision == STATUS_STORAGE_ERROR
    assert kinds(events) == ["PresenceDismissedIdle", "IdentityShown", "StorageErrorReported"]
    assert db.get_attendance_for("P1") == []


def test_storage_failure_retries_with_backoff_while_matched(db, bus, events, timing):
    ledger = FailingLedger(db, failures=1)
    tracker = PresenceTracker(db, ledger, bus, timing=timing, now=at(0))

    tracker.tick(match("P1"), at(0))
    tracker.tick(match("P1"), at(1500))
    assert ledger.calls == ["P1"]

    snapshot = tracker.tick(match("P1"), at(2000))

    assert ledger.calls == ["P1", "P1"]
    assert snapshot.last_decision == STATUS_RECORDED
    assert len(db.get_attendance_for("P1")) == 1
    assert kinds(events)[-1] == "AttendanceRecorded"


def test_storage_retry_is_bounded(db, bus, timing):
    ledger = FailingLedger(db, failures=10)
    tracker = PresenceTracker(db, ledger, bus, timing=timing, now=at(0))

    for step in range(60):
        tracker.tick(match("P1"), at(step * 500))

    assert len(ledger.calls) == timing.storage_retry_limit
    assert tracker.state.retry is None
