"""Tests for stage chaining and the end-to-end pipeline."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from unittest.mock import patch

import numpy as np
import pytest

from visionrank.config import Settings
from visionrank.errors import (
    DecodeError,
    InferenceError,
    ModelLoadError,
    ShapeMismatchError,
    Stage,
    UnsupportedFormatError,
    VocabularyMismatchError,
)
from visionrank.ml.pipeline import build_stages, run_pipeline, run_stages
from visionrank.ml.ranking import Prediction

if TYPE_CHECKING:
    from collections.abc import Callable

    from conftest import StaticModelManager


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {"input_width": 4, "input_height": 4}
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# run_stages
# ---------------------------------------------------------------------------


class TestRunStages:
    def test_chains_outputs_in_order(self) -> None:
        stages = [(Stage.NORMALIZE, lambda v: v + 1), (Stage.DECODE, lambda v: v * 10)]
        assert run_stages(1, stages) == 20

    def test_pipeline_error_is_tagged_with_failing_stage(self) -> None:
        def fail(_: object) -> None:
            raise ShapeMismatchError("bad length")

        later_calls: list[object] = []
        stages = [
            (Stage.DECODE, lambda v: v),
            (Stage.PROJECT, fail),
            (Stage.BUILD_TENSOR, later_calls.append),
        ]

        with pytest.raises(ShapeMismatchError) as excinfo:
            run_stages(b"x", stages)

        assert excinfo.value.stage is Stage.PROJECT
        assert str(excinfo.value) == "project: bad length"
        assert later_calls == []

    def test_existing_stage_tag_is_kept(self) -> None:
        def fail(_: object) -> None:
            raise DecodeError("tagged elsewhere", stage=Stage.NORMALIZE)

        with pytest.raises(DecodeError) as excinfo:
            run_stages(b"x", [(Stage.DECODE, fail)])
        assert excinfo.value.stage is Stage.NORMALIZE

    def test_unexpected_exception_becomes_stage_error(self) -> None:
        def fail(_: object) -> None:
            raise KeyError("missing")

        with pytest.raises(InferenceError) as excinfo:
            run_stages(b"x", [(Stage.INFER, fail)])

        assert excinfo.value.stage is Stage.INFER
        assert isinstance(excinfo.value.__cause__, KeyError)

    def test_failure_is_logged_with_stage(self, caplog: pytest.LogCaptureFixture) -> None:
        def fail(_: object) -> None:
            raise DecodeError("not a PNG")

        with caplog.at_level(logging.WARNING, logger="visionrank.ml.pipeline"), pytest.raises(DecodeError):
            run_stages(b"x", [(Stage.DECODE, fail)])
        assert "decode" in caplog.text
        assert "not a PNG" in caplog.text


def test_build_stages_is_the_fixed_six_stage_sequence(make_manager: Callable[..., StaticModelManager]) -> None:
    stages = build_stages("image/png", 3, _settings(), make_manager())
    assert [stage for stage, _ in stages] == [
        Stage.NORMALIZE,
        Stage.DECODE,
        Stage.PROJECT,
        Stage.BUILD_TENSOR,
        Stage.INFER,
        Stage.RANK,
    ]


# ---------------------------------------------------------------------------
# run_pipeline
# ---------------------------------------------------------------------------


class TestRunPipeline:
    def test_red_jpeg_end_to_end(
        self,
        make_image: Callable[..., bytes],
        make_manager: Callable[..., StaticModelManager],
    ) -> None:
        manager = make_manager(scores=[0.2, 0.1, 0.7])
        data = make_image("JPEG", size=(10, 10), color=(255, 0, 0))

        predictions = run_pipeline(data, "image/jpeg", 2, settings=_settings(), model_manager=manager)

        assert [p.label for p in predictions] == ["fire engine", "tabby"]
        assert predictions[0].probability == pytest.approx(0.7)

        tensor = manager.model.session.run.call_args.args[1]["input_1"]
        assert tensor.shape == (1, 4, 4, 3)
        assert tensor.dtype == np.int32
        assert np.all(np.abs(tensor - np.array([255, 0, 0])) <= 5)

    def test_tensor_is_deterministic(
        self,
        make_image: Callable[..., bytes],
        make_manager: Callable[..., StaticModelManager],
    ) -> None:
        manager = make_manager()
        data = make_image("JPEG", size=(10, 10), color=(255, 0, 0))

        run_pipeline(data, "image/jpeg", 1, settings=_settings(), model_manager=manager)
        run_pipeline(data, "image/jpeg", 1, settings=_settings(), model_manager=manager)

        first, second = (c.args[1]["input_1"] for c in manager.model.session.run.call_args_list)
        np.testing.assert_array_equal(first, second)

    @pytest.mark.parametrize(("fmt", "mimetype"), [("PNG", "image/png"), ("BMP", "image/bmp")])
    def test_lossless_formats_reach_the_model_exactly(
        self,
        make_image: Callable[..., bytes],
        make_manager: Callable[..., StaticModelManager],
        fmt: str,
        mimetype: str,
    ) -> None:
        manager = make_manager()
        data = make_image(fmt, size=(9, 3), color=(10, 200, 30))

        run_pipeline(data, mimetype, 1, settings=_settings(), model_manager=manager)

        tensor = manager.model.session.run.call_args.args[1]["input_1"]
        assert tensor.reshape(-1, 3).tolist() == [[10, 200, 30]] * 16

    def test_transparent_png_drops_alpha(
        self,
        make_image: Callable[..., bytes],
        make_manager: Callable[..., StaticModelManager],
    ) -> None:
        manager = make_manager()
        data = make_image("PNG", size=(4, 4), color=(0, 128, 255, 0), mode="RGBA")

        run_pipeline(data, "image/png", 1, settings=_settings(), model_manager=manager)

        tensor = manager.model.session.run.call_args.args[1]["input_1"]
        assert tensor.reshape(-1, 3).tolist() == [[0, 128, 255]] * 16

    def test_gif_fails_at_decode_stage(
        self,
        make_image: Callable[..., bytes],
        make_manager: Callable[..., StaticModelManager],
    ) -> None:
        manager = make_manager()

        with pytest.raises(UnsupportedFormatError) as excinfo:
            run_pipeline(make_image("GIF"), "image/gif", 1, settings=_settings(), model_manager=manager)

        assert excinfo.value.stage is Stage.DECODE
        assert manager.load_count == 0

    def test_garbage_fails_at_normalize_stage(self, make_manager: Callable[..., StaticModelManager]) -> None:
        with pytest.raises(DecodeError) as excinfo:
            run_pipeline(b"\x00" * 64, "image/png", 1, settings=_settings(), model_manager=make_manager())
        assert excinfo.value.stage is Stage.NORMALIZE

    def test_model_load_failure_is_tagged_infer(self, make_image: Callable[..., bytes]) -> None:
        class BrokenManager:
            def get_model(self) -> None:
                raise ModelLoadError("Artifact not found: models/classifier.onnx")

        with pytest.raises(ModelLoadError) as excinfo:
            run_pipeline(
                make_image("PNG"),
                "image/png",
                1,
                settings=_settings(),
                model_manager=BrokenManager(),  # type: ignore[arg-type]
            )
        assert excinfo.value.stage is Stage.INFER

    def test_model_input_mismatch_is_tagged_infer(
        self,
        make_image: Callable[..., bytes],
        make_manager: Callable[..., StaticModelManager],
    ) -> None:
        manager = make_manager(input_shape=(1, 224, 224, 3))

        with pytest.raises(InferenceError) as excinfo:
            run_pipeline(make_image("PNG"), "image/png", 1, settings=_settings(), model_manager=manager)
        assert excinfo.value.stage is Stage.INFER

    def test_vocabulary_mismatch_is_tagged_rank(
        self,
        make_image: Callable[..., bytes],
        make_manager: Callable[..., StaticModelManager],
    ) -> None:
        manager = make_manager(labels=("tabby", "goldfish"), scores=[0.1, 0.2, 0.7])

        with pytest.raises(VocabularyMismatchError) as excinfo:
            run_pipeline(make_image("PNG"), "image/png", 1, settings=_settings(), model_manager=manager)
        assert excinfo.value.stage is Stage.RANK

    def test_unexpected_ranker_failure_is_not_a_vocabulary_mismatch(
        self,
        make_image: Callable[..., bytes],
        make_manager: Callable[..., StaticModelManager],
    ) -> None:
        manager = make_manager()

        with (
            patch("visionrank.ml.pipeline.rank_predictions", side_effect=TypeError("labels must be strings")),
            pytest.raises(InferenceError) as excinfo,
        ):
            run_pipeline(make_image("PNG"), "image/png", 1, settings=_settings(), model_manager=manager)

        assert not isinstance(excinfo.value, VocabularyMismatchError)
        assert excinfo.value.stage is Stage.RANK
        assert "labels must be strings" in excinfo.value.message

    def test_top_k_must_be_positive(
        self,
        make_image: Callable[..., bytes],
        make_manager: Callable[..., StaticModelManager],
    ) -> None:
        with pytest.raises(ValueError, match="top_k"):
            run_pipeline(make_image("PNG"), "image/png", 0, settings=_settings(), model_manager=make_manager())

    def test_top_k_larger_than_vocabulary(
        self,
        make_image: Callable[..., bytes],
        make_manager: Callable[..., StaticModelManager],
    ) -> None:
        predictions = run_pipeline(
            make_image("PNG"), "image/png", 50, settings=_settings(), model_manager=make_manager()
        )
        assert predictions == [
            Prediction("fire engine", pytest.approx(0.7)),
            Prediction("tabby", pytest.approx(0.2)),
            Prediction("goldfish", pytest.approx(0.1)),
        ]
