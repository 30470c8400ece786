import pytest

from lecture_attendance.exceptions import DimensionMismatch
from lecture_attendance.matching import CohortMember, confidence_from_distance, euclidean_distance, match


def test_distance_is_symmetric_and_zero_for_identical_vectors():
    a = [0.1, 0.2, 0.3]
    b = [0.3, -0.2, 0.9]
    assert euclidean_distance(a, b) == pytest.approx(euclidean_distance(b, a))
    assert euclidean_distance(a, a) == 0.0


def test_distance_rejects_mismatched_lengths():
    with pytest.raises(DimensionMismatch):
        euclidean_distance([1.0, 0.0], [1.0, 0.0, 0.0])


def test_match_picks_nearest_member_within_threshold():
    cohort = [
        CohortMember("a", [1.0, 0.0], display_name="Alice", external_key="R001"),
        CohortMember("b", [0.0, 1.0], display_name="Bob", external_key="R002"),
    ]
    result = match([0.9, 0.1], cohort, threshold=0.45)

    assert result is not None
    assert result.subject_id == "a"
    assert result.external_key == "R001"
    assert result.distance == pytest.approx(0.1414, abs=1e-3)
    assert result.confidence == pytest.approx(1 - result.distance)


def test_no_match_when_best_distance_exceeds_threshold():
    cohort = [CohortMember("a", [1.0, 0.0]), CohortMember("b", [0.0, 1.0])]
    assert match([0.5, 0.5], cohort, threshold=0.45) is None


def test_threshold_is_inclusive():
    cohort = [CohortMember("a", [0.0, 0.0])]
    result = match([0.3, 0.4], cohort, threshold=0.5)
    assert result is not None
    assert result.distance == pytest.approx(0.5)


def test_ties_resolve_to_first_member():
    cohort = [CohortMember("first", [1.0, 0.0]), CohortMember("second", [-1.0, 0.0])]
    result = match([0.0, 0.0], cohort, threshold=1.0)
    assert result is not None
    assert result.subject_id == "first"


def test_empty_cohort_has_no_match():
    assert match([1.0, 0.0], [], threshold=1.0) is None


def test_match_checks_every_member_dimension():
    cohort = [CohortMember("a", [1.0, 0.0]), CohortMember("b", [1.0, 0.0, 0.0])]
    with pytest.raises(DimensionMismatch):
        match([1.0, 0.0], cohort, threshold=0.45)


def test_confidence_never_negative():
    assert confidence_from_distance(1.7) == 0.0
    assert confidence_from_distance(0.25) == pytest.approx(0.75)
