"""Inference execution: the forward pass and its concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> pipeline -> ONNX inference

Requests beyond the semaphore limit queue for ``queue_timeout`` seconds, then
get 503. A running pipeline that exceeds ``pipeline_timeout`` yields 504.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from typing import TYPE_CHECKING, TypeVar

import numpy as np

from visionrank.errors import InferenceError, PipelineTimeoutError

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from visionrank.config import Settings
    from visionrank.ml.model_manager import LoadedModel

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ONNX tensor element types we know how to feed.
ONNX_DTYPES: dict[str, type[np.generic]] = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(int32)": np.int32,
    "tensor(int64)": np.int64,
    "tensor(uint8)": np.uint8,
}


def _dims_match(declared: tuple[int | str | None, ...], actual: tuple[int, ...]) -> bool:
    if len(declared) != len(actual):
        return False
    # Symbolic ("batch") or unknown (None / -1) dimensions accept any size.
    return all(not isinstance(d, int) or d < 0 or d == a for d, a in zip(declared, actual, strict=True))


class InferenceEngine:
    """Runs one forward pass of a loaded classifier."""

    def __init__(self, model: LoadedModel) -> None:
        self._model = model

    def predict(self, tensor: NDArray[np.integer]) -> NDArray[np.float32]:
        """Return the probability vector for a single-image batch.

        The tensor is cast to the model's declared element type; values are
        passed through unchanged.

        Raises:
            InferenceError: If the tensor does not fit the declared input or
                the runtime fails.
        """
        model = self._model
        if not _dims_match(model.input_shape, tensor.shape):
            raise InferenceError(
                f"Tensor shape {list(tensor.shape)} does not match model input "
                f"{model.input_name} {list(model.input_shape)}"
            )
        dtype = ONNX_DTYPES.get(model.input_type)
        if dtype is None:
            raise InferenceError(f"Unsupported model input type {model.input_type}")

        try:
            outputs = model.session.run(None, {model.input_name: tensor.astype(dtype, copy=False)})
        except Exception as exc:  # noqa: BLE001 - onnxruntime raises its own untyped errors
            raise InferenceError(f"Forward pass failed: {exc}") from exc

        if not outputs:
            raise InferenceError("Model produced no outputs")
        scores = np.asarray(outputs[0])
        if scores.ndim >= 2:
            scores = scores[0]
        return scores.reshape(-1).astype(np.float32, copy=False)


class InferencePool:
    """Manages the semaphore and thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="visionrank-pipeline",
        )
        self._queue_timeout = settings.queue_timeout
        self._deadline = settings.pipeline_timeout
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool.

        Acquires the semaphore (with timeout) and runs the function in the
        executor under the pipeline deadline. The slot is released when the
        worker thread returns, even if the caller gave up on it earlier.

        Raises:
            TimeoutError: If the semaphore cannot be acquired within the timeout.
            PipelineTimeoutError: If the function outlives the deadline.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._queue_timeout)
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        loop = asyncio.get_running_loop()
        try:
            future = self._executor.submit(func, *args)
        except RuntimeError:
            self._release()
            raise

        try:
            return await asyncio.wait_for(asyncio.wrap_future(future), timeout=self._deadline)
        except TimeoutError:
            logger.warning("Pipeline exceeded its %.1fs deadline", self._deadline)
            raise PipelineTimeoutError(f"Pipeline did not finish within {self._deadline:.1f}s") from None
        finally:
            if future.done():
                self._release()
            else:
                # The worker thread cannot be interrupted, so it keeps its slot until it returns.
                future.add_done_callback(partial(self._release_from_worker, loop))

    def _release(self) -> None:
        self._semaphore.release()
        with self._counter_lock:
            self._active_count -= 1

    def _release_from_worker(self, loop: asyncio.AbstractEventLoop, _future: Future[object]) -> None:
        if not loop.is_closed():
            loop.call_soon_threadsafe(self._release)

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
