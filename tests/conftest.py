"""Shared fixtures: synthetic images and a stand-in ONNX session."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from visionrank.ml.model_manager import LoadedModel

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence


def _make_session(
    input_shape: Sequence[int | str | None],
    input_type: str,
    scores: Sequence[float],
) -> MagicMock:
    model_input = MagicMock()
    model_input.name = "input_1"
    model_input.shape = list(input_shape)
    model_input.type = input_type
    model_output = MagicMock()
    model_output.name = "predictions"

    session = MagicMock()
    session.get_inputs.return_value = [model_input]
    session.get_outputs.return_value = [model_output]
    session.run.return_value = [np.asarray([scores], dtype=np.float32)]
    return session


class StaticModelManager:
    """ModelManager double that always serves the same LoadedModel."""

    def __init__(self, model: LoadedModel) -> None:
        self.model = model
        self.loaded = False
        self.load_count = 0

    @property
    def model_name(self) -> str:
        return self.model.name

    @property
    def loaded_model(self) -> LoadedModel | None:
        return self.model if self.loaded else None

    def get_model(self) -> LoadedModel:
        if not self.loaded:
            self.loaded = True
            self.load_count += 1
        return self.model

    def invalidate(self) -> None:
        self.loaded = False

    def reload(self) -> LoadedModel:
        self.invalidate()
        return self.get_model()

    def get_loaded_models(self) -> list[str]:
        return [self.model.name] if self.loaded else []

    def shutdown(self) -> None:
        self.loaded = False


@pytest.fixture()
def make_image() -> Callable[..., bytes]:
    """Return a factory encoding a solid-colour image in a Pillow format."""

    def _make(
        fmt: str = "JPEG",
        size: tuple[int, int] = (10, 10),
        color: tuple[int, ...] = (255, 0, 0),
        mode: str = "RGB",
        **save_kwargs: object,
    ) -> bytes:
        buf = io.BytesIO()
        Image.new(mode, size, color).save(buf, format=fmt, **save_kwargs)
        return buf.getvalue()

    return _make


@pytest.fixture()
def make_model() -> Callable[..., LoadedModel]:
    """Return a factory building a LoadedModel around a mocked session."""

    def _make(
        labels: Sequence[str] = ("tabby", "goldfish", "fire engine"),
        scores: Sequence[float] | None = None,
        input_shape: Sequence[int | str | None] = ("batch", 4, 4, 3),
        input_type: str = "tensor(int32)",
    ) -> LoadedModel:
        if scores is None:
            scores = [0.2, 0.1, 0.7][: len(labels)]
        session = _make_session(input_shape, input_type, scores)
        return LoadedModel.from_session("test-model.onnx", session, list(labels))

    return _make


@pytest.fixture()
def make_manager(make_model: Callable[..., LoadedModel]) -> Callable[..., StaticModelManager]:
    def _make(**model_kwargs: object) -> StaticModelManager:
        return StaticModelManager(make_model(**model_kwargs))

    return _make
