"""The per-request classification pipeline.

    normalize -> decode -> project -> build_tensor -> infer -> rank

Each stage is a plain function of the previous stage's output. ``run_stages``
chains them and stops at the first failure, tagging the error with the stage
it came from. Nothing is retried and no partial result is returned.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import partial
from typing import TYPE_CHECKING, Any, NamedTuple

from visionrank.errors import (
    DecodeError,
    InferenceError,
    PipelineError,
    ShapeMismatchError,
    Stage,
)
from visionrank.ml.inference import InferenceEngine
from visionrank.ml.preprocessing import build_tensor, decode_image, normalize_image, project_rgb
from visionrank.ml.ranking import Prediction, rank_predictions

if TYPE_CHECKING:
    from collections.abc import Iterable

    import numpy as np
    from numpy.typing import NDArray

    from visionrank.config import Settings
    from visionrank.ml.model_manager import LoadedModel, ModelManager

logger = logging.getLogger(__name__)

StageFn = Callable[[Any], Any]

# Error raised when a stage fails with something other than a PipelineError.
_FALLBACK_ERRORS: dict[Stage, type[PipelineError]] = {
    Stage.NORMALIZE: DecodeError,
    Stage.DECODE: DecodeError,
    Stage.PROJECT: ShapeMismatchError,
    Stage.BUILD_TENSOR: ShapeMismatchError,
    Stage.INFER: InferenceError,
    Stage.RANK: InferenceError,
}


class Scores(NamedTuple):
    """Output of the inference stage: the model that ran and its probabilities."""

    model: LoadedModel
    probabilities: NDArray[np.float32]


def run_stages(value: Any, stages: Iterable[tuple[Stage, StageFn]]) -> Any:
    """Feed ``value`` through ``stages`` in order, aborting on the first failure.

    Raises:
        PipelineError: The failing stage's error, with ``stage`` set.
    """
    for stage, fn in stages:
        logger.debug("Stage %s started", stage)
        try:
            value = fn(value)
        except PipelineError as exc:
            if exc.stage is None:
                exc.stage = stage
            logger.warning("Pipeline aborted at %s: %s", exc.stage, exc.message)
            raise
        except Exception as exc:
            error = _FALLBACK_ERRORS[stage](f"{type(exc).__name__}: {exc}", stage)
            logger.warning("Pipeline aborted at %s: %s", stage, error.message)
            raise error from exc
    return value


def _infer(model_manager: ModelManager, tensor: NDArray[np.int32]) -> Scores:
    model = model_manager.get_model()
    return Scores(model=model, probabilities=InferenceEngine(model).predict(tensor))


def _rank(top_k: int, scores: Scores) -> list[Prediction]:
    return rank_predictions(scores.probabilities, scores.model.labels, top_k)


def build_stages(
    mimetype: str,
    top_k: int,
    settings: Settings,
    model_manager: ModelManager,
) -> list[tuple[Stage, StageFn]]:
    width, height = settings.input_width, settings.input_height
    return [
        (Stage.NORMALIZE, partial(normalize_image, width=width, height=height, max_pixels=settings.max_image_pixels)),
        (Stage.DECODE, partial(decode_image, mimetype=mimetype)),
        (Stage.PROJECT, partial(project_rgb, width=width, height=height)),
        (Stage.BUILD_TENSOR, partial(build_tensor, height=height, width=width)),
        (Stage.INFER, partial(_infer, model_manager)),
        (Stage.RANK, partial(_rank, top_k)),
    ]


def run_pipeline(
    data: bytes,
    mimetype: str,
    top_k: int,
    *,
    settings: Settings,
    model_manager: ModelManager,
) -> list[Prediction]:
    """Classify one encoded image and return its top-K predictions.

    Raises:
        PipelineError: Tagged with the stage that failed.
        ValueError: If ``top_k`` is less than 1.
    """
    if top_k < 1:
        raise ValueError(f"top_k must be at least 1, got {top_k}")

    predictions: list[Prediction] = run_stages(data, build_stages(mimetype, top_k, settings, model_manager))
    logger.debug("Top prediction %s (%.4f)", predictions[0].label, predictions[0].probability)
    return predictions
