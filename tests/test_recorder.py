from datetime import timedelta

import pytest

from conftest import LECTURE_START, Clock, default_match_config, seed_lecture
from lecture_attendance.config import MatchConfig
from lecture_attendance.exceptions import NotFoundError
from lecture_attendance.models import GeoPoint, PresenceMethod, SessionLocation
from lecture_attendance.recorder import PresenceRecorder, RecordOutcome
from lecture_attendance.storage import PRESENCE_EVENTS

CAMPUS = SessionLocation(latitude=12.9716, longitude=77.5946, radius_m=100.0)


def _recorder(store, clock):
    return PresenceRecorder(store, default_match_config, clock=clock)


def test_second_match_inside_lockout_is_skipped(store):
    _, session, alice, _ = seed_lecture(store, starts_at=LECTURE_START)
    clock = Clock(LECTURE_START + timedelta(minutes=10))
    recorder = _recorder(store, clock)

    first = recorder.try_record_presence(session.id, alice.id, confidence=0.8)
    clock.advance(minutes=5)
    second = recorder.try_record_presence(session.id, alice.id, confidence=0.8)

    assert first.outcome is RecordOutcome.RECORDED
    assert first.total_count == 1
    assert first.event.method is PresenceMethod.FACE
    assert second.outcome is RecordOutcome.ALREADY_LOCKED_OUT
    assert store.count(PRESENCE_EVENTS, session_id=session.id) == 1


def test_after_lockout_storage_keeps_first_event(store):
    _, session, alice, _ = seed_lecture(store, starts_at=LECTURE_START)
    clock = Clock(LECTURE_START + timedelta(minutes=10))
    recorder = _recorder(store, clock)

    first = recorder.try_record_presence(session.id, alice.id, confidence=0.8)
    clock.advance(minutes=11)
    second = recorder.try_record_presence(session.id, alice.id, confidence=0.6)

    assert second.outcome is RecordOutcome.ALREADY_RECORDED
    assert second.event.marked_at == first.event.marked_at
    assert second.event.confidence == pytest.approx(0.8)
    assert store.count(PRESENCE_EVENTS, session_id=session.id) == 1


def test_storage_is_authoritative_across_recorders(store):
    _, session, alice, _ = seed_lecture(store, starts_at=LECTURE_START)
    clock = Clock(LECTURE_START + timedelta(minutes=10))

    assert _recorder(store, clock).try_record_presence(session.id, alice.id).outcome is RecordOutcome.RECORDED
    other_device = _recorder(store, clock)
    assert other_device.try_record_presence(session.id, alice.id).outcome is RecordOutcome.ALREADY_RECORDED
    assert other_device.lockout.is_locked_out(alice.id, clock.now, timedelta(minutes=10))


def test_disabled_session_is_checked_first(store):
    _, session, alice, _ = seed_lecture(store, enabled=False, starts_at=LECTURE_START)
    clock = Clock(LECTURE_START - timedelta(days=1))

    result = _recorder(store, clock).try_record_presence(session.id, alice.id)
    assert result.outcome is RecordOutcome.SESSION_EVENTS_DISABLED
    assert store.count(PRESENCE_EVENTS) == 0


def test_session_outside_window(store):
    _, session, alice, _ = seed_lecture(store, starts_at=LECTURE_START)
    clock = Clock(LECTURE_START + timedelta(hours=2, seconds=1))

    result = _recorder(store, clock).try_record_presence(session.id, alice.id)
    assert result.outcome is RecordOutcome.SESSION_NOT_ACTIVE
    assert not result.recorded


def test_window_bounds_are_inclusive(store):
    _, session, alice, bob = seed_lecture(store, starts_at=LECTURE_START)
    assert _recorder(store, Clock(LECTURE_START)).try_record_presence(session.id, alice.id).recorded
    end = Clock(LECTURE_START + timedelta(hours=2))
    assert _recorder(store, end).try_record_presence(session.id, bob.id).recorded


def test_geofence_checkin(store):
    _, session, alice, bob = seed_lecture(store, starts_at=LECTURE_START, location=CAMPUS)
    clock = Clock(LECTURE_START + timedelta(minutes=5))
    recorder = _recorder(store, clock)

    far = recorder.try_record_presence(
        session.id, alice.id, method=PresenceMethod.GEOFENCE, subject_location=GeoPoint(13.5, 77.5946)
    )
    missing = recorder.try_record_presence(session.id, alice.id, method=PresenceMethod.GEOFENCE)
    near = recorder.try_record_presence(
        session.id, bob.id, method=PresenceMethod.GEOFENCE, subject_location=GeoPoint(12.9716, 77.5947)
    )

    assert far.outcome is RecordOutcome.OUTSIDE_GEOFENCE
    assert missing.outcome is RecordOutcome.OUTSIDE_GEOFENCE
    assert near.outcome is RecordOutcome.RECORDED
    assert near.event.method is PresenceMethod.GEOFENCE
    assert not recorder.lockout.is_locked_out(alice.id, clock.now, timedelta(minutes=10))


def test_face_match_without_location_skips_geofence(store):
    _, session, alice, _ = seed_lecture(store, starts_at=LECTURE_START, location=CAMPUS)
    clock = Clock(LECTURE_START + timedelta(minutes=5))

    result = _recorder(store, clock).try_record_presence(session.id, alice.id, confidence=0.7)
    assert result.outcome is RecordOutcome.RECORDED


def test_zero_lockout_window_disables_lockout(store):
    _, session, alice, _ = seed_lecture(store, starts_at=LECTURE_START)
    clock = Clock(LECTURE_START + timedelta(minutes=5))
    recorder = PresenceRecorder(
        store,
        lambda: MatchConfig(threshold=0.45, lockout_window=timedelta(0)),
        clock=clock,
    )

    recorder.try_record_presence(session.id, alice.id)
    assert recorder.try_record_presence(session.id, alice.id).outcome is RecordOutcome.ALREADY_RECORDED


def test_unknown_session_raises(store):
    recorder = _recorder(store, Clock(LECTURE_START))
    with pytest.raises(NotFoundError):
        recorder.try_record_presence("missing", "subject")
