"""Map a probability vector onto the label vocabulary and keep the top K."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from visionrank.errors import VocabularyMismatchError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike


@dataclass(frozen=True)
class Prediction:
    """A single ranked label."""

    label: str
    probability: float


def rank_predictions(probabilities: ArrayLike, labels: Sequence[str], k: int) -> list[Prediction]:
    """Return the ``min(k, len(labels))`` most probable labels, highest first.

    Equal probabilities keep vocabulary order, so the result is deterministic.

    Raises:
        VocabularyMismatchError: If the vector and vocabulary lengths differ.
        ValueError: If ``k`` is negative.
    """
    if k < 0:
        raise ValueError(f"k must be non-negative, got {k}")
    probs = np.asarray(probabilities, dtype=np.float64).reshape(-1)
    if probs.size != len(labels):
        raise VocabularyMismatchError(
            f"Model produced {probs.size} scores but the vocabulary has {len(labels)} labels"
        )

    order = np.argsort(-probs, kind="stable")[:k]
    return [Prediction(label=labels[i], probability=float(probs[i])) for i in order]
