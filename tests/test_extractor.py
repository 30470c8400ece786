import pytest

from conftest import ALICE, FakeFaceModel, face_image
from lecture_attendance.exceptions import FaceTooSmall, MultipleFacesDetected, NoFaceDetected
from lecture_attendance.face import EmbeddingExtractor, ExtractionMode


def test_enrollment_returns_single_face_embedding():
    extractor = EmbeddingExtractor(FakeFaceModel({10: ALICE}))
    result = extractor.extract(face_image(10), ExtractionMode.ENROLLMENT)

    assert result is not None
    assert result.embedding.tolist() == ALICE
    assert result.box.width == 200


def test_enrollment_without_face_raises():
    extractor = EmbeddingExtractor(FakeFaceModel({10: ALICE}))
    with pytest.raises(NoFaceDetected):
        extractor.extract(face_image(99), ExtractionMode.ENROLLMENT)


def test_enrollment_with_two_faces_raises():
    extractor = EmbeddingExtractor(FakeFaceModel({10: ALICE}, faces_per_image=2))
    with pytest.raises(MultipleFacesDetected):
        extractor.extract(face_image(10), ExtractionMode.ENROLLMENT)


def test_enrollment_with_small_face_raises():
    extractor = EmbeddingExtractor(FakeFaceModel({10: ALICE}, box_size=149))
    with pytest.raises(FaceTooSmall):
        extractor.extract(face_image(10), ExtractionMode.ENROLLMENT)


def test_live_mode_returns_none_instead_of_raising():
    assert EmbeddingExtractor(FakeFaceModel({10: ALICE})).extract(face_image(99)) is None
    assert EmbeddingExtractor(FakeFaceModel({10: ALICE}, box_size=120)).extract(face_image(10)) is None


def test_live_mode_takes_highest_scoring_face():
    model = FakeFaceModel({10: ALICE}, faces_per_image=3)
    result = EmbeddingExtractor(model).extract(face_image(10), ExtractionMode.LIVE)

    assert result is not None
    assert result.score == pytest.approx(0.9)


def test_minimum_size_is_inclusive():
    extractor = EmbeddingExtractor(FakeFaceModel({10: ALICE}, box_size=150))
    assert extractor.extract(face_image(10), ExtractionMode.ENROLLMENT) is not None
