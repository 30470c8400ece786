from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .exceptions import DimensionMismatch


@dataclass(frozen=True)
class CohortMember:
    subject_id: str
    embedding: Sequence[float]
    display_name: str = ""
    external_key: str = ""


@dataclass(frozen=True)
class Match:
    subject_id: str
    distance: float
    display_name: str = ""
    external_key: str = ""

    @property
    def confidence(self) -> float:
        return confidence_from_distance(self.distance)


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    left = np.asarray(a, dtype=np.float64).reshape(-1)
    right = np.asarray(b, dtype=np.float64).reshape(-1)
    if left.shape != right.shape:
        raise DimensionMismatch(f"Embedding lengths differ: {left.size} != {right.size}.")
    return float(np.linalg.norm(left - right))


def confidence_from_distance(distance: float) -> float:
    """Presentation transform of a distance; not a probability."""
    return max(0.0, 1.0 - float(distance))


def match(
    live_embedding: Sequence[float],
    cohort: Sequence[CohortMember],
    threshold: float,
) -> Optional[Match]:
    """Nearest cohort member by Euclidean distance, if it lies within ``threshold``.

    Every member is scanned; on equal distances the earliest member wins.
    """
    if not cohort:
        return None

    query = np.asarray(live_embedding, dtype=np.float64).reshape(-1)
    for member in cohort:
        if len(member.embedding) != query.size:
            raise DimensionMismatch(
                f"Embedding for subject {member.subject_id} has {len(member.embedding)} values, "
                f"live embedding has {query.size}."
            )

    matrix = np.asarray([member.embedding for member in cohort], dtype=np.float64)
    distances = np.linalg.norm(matrix - query, axis=1)
    idx = int(np.argmin(distances))
    best = float(distances[idx])
    if best > threshold:
        return None

    member = cohort[idx]
    return Match(
        subject_id=member.subject_id,
        distance=best,
        display_name=member.display_name,
        external_key=member.external_key,
    )
