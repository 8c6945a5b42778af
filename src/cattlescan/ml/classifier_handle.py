"""Lazily initialized, shared classifier handle.

Lifecycle::

    UNINITIALIZED -> INITIALIZING -> READY
                                  -> FAILED -> INITIALIZING -> ...

At most one initialization attempt runs at a time. Callers that arrive while
an attempt is in flight await that attempt and observe its outcome. A failed
attempt does not poison the handle: the next ``initialize()`` starts over.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import TYPE_CHECKING

from cattlescan.errors import ModelInitError

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from cattlescan.ml.image_classifier import ImageClassifier
    from cattlescan.ml.model_manager import Backend

logger = logging.getLogger(__name__)


def _consume_outcome(task: asyncio.Task[None]) -> None:
    # Mark the failure as retrieved even if every waiter was cancelled.
    if not task.cancelled():
        task.exception()


class ClassifierState(StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class ClassifierHandle:
    """Owns the classifier used by the inference engine.

    Args:
        loader: Blocking callable that builds a classifier on one backend.
            Runs in the default executor.
        backends: Backends to try, in order. Normally the accelerated backend
            followed by the CPU fallback.
    """

    def __init__(
        self,
        loader: Callable[[Backend], ImageClassifier],
        backends: Sequence[Backend],
    ) -> None:
        if not backends:
            raise ValueError("At least one backend is required")
        self._loader = loader
        self._backends = list(backends)
        self._state = ClassifierState.UNINITIALIZED
        self._classifier: ImageClassifier | None = None
        self._backend: Backend | None = None
        self._init_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ClassifierState:
        return self._state

    @property
    def backend(self) -> Backend | None:
        """Backend the classifier was built on; informational only."""
        return self._backend

    @property
    def classifier(self) -> ImageClassifier:
        """Return the ready classifier.

        Raises:
            ModelInitError: If the handle has not been initialized.
        """
        if self._classifier is None:
            raise ModelInitError(f"Classifier is not ready (state={self._state})")
        return self._classifier

    async def initialize(self) -> None:
        """Make the classifier ready, sharing any attempt already in flight.

        Raises:
            ModelInitError: If every backend failed to construct.
        """
        if self._state is ClassifierState.READY:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
            self._init_task.add_done_callback(_consume_outcome)
        # Shield so one cancelled waiter does not cancel the shared attempt.
        await asyncio.shield(self._init_task)

    def close(self) -> None:
        """Drop the classifier; the next ``initialize()`` loads it again."""
        if self._state is ClassifierState.INITIALIZING:
            raise RuntimeError("Cannot close a classifier while it is initializing")
        self._classifier = None
        self._backend = None
        self._state = ClassifierState.UNINITIALIZED
        logger.info("Classifier closed")

    async def _initialize(self) -> None:
        self._state = ClassifierState.INITIALIZING
        loop = asyncio.get_running_loop()
        last_error: BaseException | None = None
        try:
            for backend in self._backends:
                try:
                    classifier = await loop.run_in_executor(None, self._loader, backend)
                except Exception as exc:
                    last_error = exc
                    logger.warning("Backend %s failed to initialize: %s", backend.name, exc)
                    continue
                self._classifier = classifier
                self._backend = backend
                self._state = ClassifierState.READY
                logger.info("Classifier ready on backend %s", backend.name)
                return

            self._state = ClassifierState.FAILED
            logger.error("All %d classifier backends failed", len(self._backends))
            raise ModelInitError("Failed to initialize classifier on any backend") from last_error
        finally:
            if self._state is ClassifierState.INITIALIZING:
                # Cancelled mid-attempt.
                self._state = ClassifierState.UNINITIALIZED
            self._init_task = None
