from datetime import timedelta

import pytest

from conftest import ALICE, BOB, Clock, FakeFaceModel, LECTURE_START, default_match_config, encoded_face, seed_lecture
from lecture_attendance.checkin import CheckinService
from lecture_attendance.enrollment import EnrollmentService, decode_image
from lecture_attendance.exceptions import ConflictError, FaceDetectionError, MultipleFacesDetected, NotFoundError
from lecture_attendance.face import FaceModelLoader
from lecture_attendance.models import GeoPoint, Group, PresenceMethod, SessionLocation
from lecture_attendance.recorder import PresenceRecorder, RecordOutcome
from lecture_attendance.storage import GROUPS, MEMBERSHIPS, SUBJECTS

MODEL = FakeFaceModel({10: ALICE, 20: BOB})


def test_decode_rejects_garbage():
    with pytest.raises(FaceDetectionError):
        decode_image(b"not an image")
    assert decode_image(encoded_face(10)).shape == (200, 200, 3)


def test_enroll_and_re_enroll(store):
    service = EnrollmentService(store, MODEL)
    subject = service.enroll(" R010 ", "Dana", encoded_face(10))

    assert subject.external_key == "R010"
    assert subject.embedding == ALICE
    with pytest.raises(ConflictError):
        service.enroll("R010", "Dana", encoded_face(10))

    updated = service.re_enroll("R010", encoded_face(20))
    assert updated.id == subject.id
    assert updated.embedding == BOB


def test_enroll_rejects_ambiguous_photo(store):
    service = EnrollmentService(store, FakeFaceModel({10: ALICE}, faces_per_image=2))
    with pytest.raises(MultipleFacesDetected):
        service.enroll("R010", "Dana", encoded_face(10))
    assert store.get_all(SUBJECTS) == []


def test_membership_management_does_not_load_model(store):
    def no_model():
        raise AssertionError("model should not load")

    service = EnrollmentService(store, model_loader=FaceModelLoader(no_model))
    group, _, alice, _ = seed_lecture(store)
    other = store.create(GROUPS, Group(code="MA201", title="Linear Algebra"))

    service.add_to_group("R001", other.id)
    service.add_to_group("R001", other.id)
    assert sorted(store.groups_for_subject(alice.id)) == sorted([group.id, other.id])

    assert service.remove_from_group("R001", other.id) is True
    assert service.remove_from_group("R001", other.id) is False

    service.delete("R001")
    assert store.get_all(MEMBERSHIPS, subject_id=alice.id) == []
    with pytest.raises(NotFoundError):
        service.delete("R001")


def test_self_service_checkin(store):
    campus = SessionLocation(latitude=12.9716, longitude=77.5946, radius_m=100.0)
    _, session, _, _ = seed_lecture(store, starts_at=LECTURE_START, location=campus)
    clock = Clock(LECTURE_START + timedelta(minutes=20))
    service = CheckinService(store, PresenceRecorder(store, default_match_config, clock=clock), clock=clock)

    candidates = service.active_sessions("R001")
    assert [c.session.id for c in candidates] == [session.id]
    assert not candidates[0].already_recorded

    assert service.check_in("R001", session.id, None).outcome is RecordOutcome.OUTSIDE_GEOFENCE
    result = service.check_in("R001", session.id, GeoPoint(12.9716, 77.5946))
    assert result.outcome is RecordOutcome.RECORDED
    assert result.event.method is PresenceMethod.GEOFENCE
    assert service.active_sessions("R001")[0].already_recorded

    with pytest.raises(NotFoundError):
        service.lookup("R999")
