"""Inference concurrency layer and classification engine.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

Requests beyond the semaphore limit queue until a slot frees up, or until
the optional queue timeout expires.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

from cattlescan.errors import AnalysisError

if TYPE_CHECKING:
    from collections.abc import Callable

    from cattlescan.config import Settings
    from cattlescan.ml.classifier_handle import ClassifierHandle
    from cattlescan.ml.image_classifier import ClassificationResult
    from cattlescan.ml.preprocessing import DecodedImage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Manages the semaphore and thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._queue_timeout = settings.queue_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool.

        Acquires the semaphore, runs the function in the executor, then
        releases.

        Raises:
            TimeoutError: If a queue timeout is configured and no slot frees
                up within it.
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
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

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


class InferenceEngine:
    """Classifies decoded images with the shared classifier."""

    def __init__(self, handle: ClassifierHandle, pool: InferencePool) -> None:
        self._handle = handle
        self._pool = pool

    async def classify(self, image: DecodedImage) -> list[ClassificationResult]:
        """Return ranked label/score pairs for ``image``.

        The classifier's own ranking is returned unchanged.

        Raises:
            ModelInitError: If the classifier cannot be initialized.
            AnalysisError: If classification fails or yields nothing.
            TimeoutError: If the inference queue timeout expires.
        """
        await self._handle.initialize()
        classifier = self._handle.classifier

        try:
            results = await self._pool.run(classifier.classify, image.pixels)
        except TimeoutError:
            raise
        except Exception as exc:
            logger.exception("Classification failed")
            raise AnalysisError("Classification failed") from exc

        if not results:
            raise AnalysisError("Classifier returned no results")
        logger.debug("Top label %r (%.3f)", results[0].label, results[0].score)
        return list(results)
