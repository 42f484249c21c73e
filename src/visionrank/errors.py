"""Error taxonomy for the classification pipeline.

Every core failure is a ``PipelineError``. The pipeline tags it with the
stage it escaped from, so callers can report which step failed and why.
"""

from __future__ import annotations

from enum import StrEnum


class Stage(StrEnum):
    NORMALIZE = "normalize"
    DECODE = "decode"
    PROJECT = "project"
    BUILD_TENSOR = "build_tensor"
    INFER = "infer"
    RANK = "rank"


class PipelineError(Exception):
    """Base class for failures raised by a pipeline stage."""

    def __init__(self, message: str, stage: Stage | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage is None:
            return self.message
        return f"{self.stage}: {self.message}"


class DecodeError(PipelineError):
    """Bytes could not be parsed as an image of the expected format."""


class UnsupportedFormatError(PipelineError):
    """No decoder is registered for the declared mimetype."""


class ShapeMismatchError(PipelineError):
    """A buffer length does not match the dimensions it claims."""


class ModelLoadError(PipelineError):
    """The model artifact or its label vocabulary is unreachable or malformed."""


class InferenceError(PipelineError):
    """The forward pass failed or the tensor does not fit the model."""


class VocabularyMismatchError(PipelineError):
    """The probability vector and the label vocabulary differ in length."""


class PipelineTimeoutError(PipelineError):
    """The pipeline did not finish within its deadline."""


class SearchError(Exception):
    """The external search lookup failed."""
