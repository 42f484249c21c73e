"""Model manager: fetch, load, and cache the classification model.

The classifier and its label vocabulary are process-wide and read-only once
loaded. ``get_model`` is a single-flight lazy initializer: the first caller
loads while every concurrent caller waits on the same lock and then reuses
the result. ``invalidate``/``reload`` replace the cached model explicitly.

Locations may be a filesystem path, an ``http(s)://`` URL, or
``hf://<owner>/<repo>/<path/in/repo>`` for the HuggingFace Hub.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol
from urllib.parse import urlparse

import httpx
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from visionrank.errors import ModelLoadError

if TYPE_CHECKING:
    from visionrank.config import Settings

logger = logging.getLogger(__name__)

HF_SCHEME = "hf://"
DOWNLOAD_TIMEOUT_SECONDS: float = 60.0


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for classifier lifecycle management."""

    @property
    def model_name(self) -> str:
        """Return the configured model location."""
        ...

    @property
    def loaded_model(self) -> LoadedModel | None:
        """Return the cached model without loading it."""
        ...

    def get_model(self) -> LoadedModel:
        """Return the cached model, loading it on first use."""
        ...

    def invalidate(self) -> None:
        """Drop the cached model so the next ``get_model`` reloads it."""
        ...

    def reload(self) -> LoadedModel:
        """Invalidate and load again immediately."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Release the cached model."""
        ...


# ---------------------------------------------------------------------------
# Loaded model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoadedModel:
    """An ONNX session paired with the label vocabulary for its outputs."""

    name: str
    session: InferenceSession
    labels: tuple[str, ...]
    input_name: str
    input_shape: tuple[int | str | None, ...]
    input_type: str
    output_names: tuple[str, ...]

    @classmethod
    def from_session(cls, name: str, session: InferenceSession, labels: list[str]) -> LoadedModel:
        inputs = session.get_inputs()
        if len(inputs) != 1:
            raise ModelLoadError(f"Model '{name}' must have exactly one input, found {len(inputs)}")
        model_input = inputs[0]
        return cls(
            name=name,
            session=session,
            labels=tuple(labels),
            input_name=model_input.name,
            input_shape=tuple(model_input.shape),
            input_type=model_input.type,
            output_names=tuple(output.name for output in session.get_outputs()),
        )

    def summary(self) -> str:
        return (
            f"{self.name}: input {self.input_name} {list(self.input_shape)} {self.input_type}, "
            f"outputs {list(self.output_names)}, {len(self.labels)} labels"
        )


# ---------------------------------------------------------------------------
# Location resolution
# ---------------------------------------------------------------------------


def resolve_location(location: str, models_dir: Path) -> Path:
    """Return a local file for ``location``, downloading it if needed.

    Raises:
        ModelLoadError: If the artifact cannot be found or fetched.
    """
    if location.startswith(HF_SCHEME):
        return _download_from_hub(location, models_dir)
    if location.startswith(("http://", "https://")):
        return _download_from_url(location, models_dir)

    path = Path(location).expanduser()
    if not path.is_file():
        raise ModelLoadError(f"Artifact not found: {path}")
    return path


def _download_from_hub(location: str, models_dir: Path) -> Path:
    parts = PurePosixPath(location[len(HF_SCHEME) :]).parts
    if len(parts) < 3:
        raise ModelLoadError(f"Expected hf://<owner>/<repo>/<file>, got '{location}'")
    repo_id = "/".join(parts[:2])
    subfolder = "/".join(parts[2:-1]) or None
    try:
        downloaded = hf_hub_download(
            repo_id=repo_id,
            filename=parts[-1],
            subfolder=subfolder,
            local_dir=str(models_dir),
        )
    except Exception as exc:  # noqa: BLE001 - hub raises a wide range of network/auth errors
        raise ModelLoadError(f"Cannot download {location}: {exc}") from exc
    logger.info("Downloaded %s to %s", location, downloaded)
    return Path(downloaded)


def _download_from_url(location: str, models_dir: Path) -> Path:
    filename = PurePosixPath(urlparse(location).path).name
    if not filename:
        raise ModelLoadError(f"Cannot derive a filename from '{location}'")
    target = models_dir / filename
    if target.is_file():
        return target

    part_file = target.with_suffix(target.suffix + ".part")
    try:
        with httpx.stream("GET", location, follow_redirects=True, timeout=DOWNLOAD_TIMEOUT_SECONDS) as response:
            response.raise_for_status()
            with part_file.open("wb") as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)
    except (httpx.HTTPError, OSError) as exc:
        part_file.unlink(missing_ok=True)
        raise ModelLoadError(f"Cannot download {location}: {exc}") from exc

    part_file.replace(target)
    logger.info("Downloaded %s to %s", location, target)
    return target


def load_labels(path: Path) -> list[str]:
    """Read a label vocabulary.

    JSON files hold either a list of names or an object with a ``classes``
    list; any other file is read as one label per line.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ModelLoadError(f"Cannot read labels from {path}: {exc}") from exc

    if path.suffix.lower() == ".json":
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ModelLoadError(f"Malformed label file {path}: {exc}") from exc
        labels = payload.get("classes") if isinstance(payload, dict) else payload
        if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
            raise ModelLoadError(f"Label file {path} must hold a list of strings")
    else:
        labels = [line.strip() for line in text.splitlines() if line.strip()]

    if not labels:
        raise ModelLoadError(f"Label file {path} is empty")
    return labels


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class ClassifierModelManager:
    """Owns the single process-wide classifier session and its labels."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._model: LoadedModel | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def model_name(self) -> str:
        return self._settings.model_location

    @property
    def loaded_model(self) -> LoadedModel | None:
        """The cached model, or None; never triggers a load or waits on one."""
        return self._model

    def get_model(self) -> LoadedModel:
        """Return the cached model, loading it exactly once under the lock."""
        with self._lock:
            if self._model is None:
                self._model = self._load()
            return self._model

    def invalidate(self) -> None:
        with self._lock:
            if self._model is not None:
                logger.info("Invalidated cached model %s", self._model.name)
            self._model = None

    def reload(self) -> LoadedModel:
        with self._lock:
            self._model = None
            self._model = self._load()
            return self._model

    def get_loaded_models(self) -> list[str]:
        model = self._model
        return [] if model is None else [model.name]

    def shutdown(self) -> None:
        with self._lock:
            self._model = None
            logger.info("Model session released")

    # -- Internal -----------------------------------------------------------

    def _load(self) -> LoadedModel:
        self._models_dir.mkdir(parents=True, exist_ok=True)
        model_path = resolve_location(self._settings.model_location, self._models_dir)
        labels = load_labels(resolve_location(self._settings.labels_location, self._models_dir))

        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except Exception as exc:  # noqa: BLE001 - onnxruntime raises its own untyped errors
            raise ModelLoadError(f"Cannot load ONNX model {model_path}: {exc}") from exc

        model = LoadedModel.from_session(self._settings.model_location, session, labels)
        logger.info("Loaded model %s", model.summary())
        return model

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
