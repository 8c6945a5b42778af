"""Tests for the lazily initialized classifier handle."""

from __future__ import annotations

import asyncio
import gc
import threading
import time

import pytest

from cattlescan.errors import ModelInitError
from cattlescan.ml.classifier_handle import ClassifierHandle, ClassifierState
from cattlescan.ml.image_classifier import ClassificationResult
from cattlescan.ml.model_manager import CPU_BACKEND, Backend

ACCELERATED = Backend(name="CUDAExecutionProvider", providers=("CUDAExecutionProvider", "CPUExecutionProvider"))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClassifier:
    def __init__(self, backend: Backend) -> None:
        self.backend = backend

    @property
    def model_name(self) -> str:
        return "fake"

    def classify(self, image: object) -> list[ClassificationResult]:
        return [ClassificationResult(label="ox", score=0.9)]


class RecordingLoader:
    """Builds fake classifiers, failing for the named backends."""

    def __init__(self, failing: set[str] | None = None, delay: float = 0.0) -> None:
        self.failing = failing or set()
        self.delay = delay
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, backend: Backend) -> FakeClassifier:
        with self._lock:
            self.calls.append(backend.name)
        time.sleep(self.delay)
        if backend.name in self.failing:
            raise RuntimeError(f"{backend.name} unavailable")
        return FakeClassifier(backend)


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestClassifierHandle:
    def test_starts_uninitialized(self) -> None:
        handle = ClassifierHandle(RecordingLoader(), [CPU_BACKEND])
        assert handle.state is ClassifierState.UNINITIALIZED
        assert handle.backend is None

    def test_classifier_before_initialize_raises(self) -> None:
        handle = ClassifierHandle(RecordingLoader(), [CPU_BACKEND])
        with pytest.raises(ModelInitError, match="not ready"):
            _ = handle.classifier

    def test_requires_a_backend(self) -> None:
        with pytest.raises(ValueError, match="backend"):
            ClassifierHandle(RecordingLoader(), [])

    async def test_initialize_uses_accelerated_backend_first(self) -> None:
        loader = RecordingLoader()
        handle = ClassifierHandle(loader, [ACCELERATED, CPU_BACKEND])

        await handle.initialize()

        assert handle.state is ClassifierState.READY
        assert handle.backend == ACCELERATED
        assert loader.calls == [ACCELERATED.name]
        assert handle.classifier is not None

    async def test_falls_back_to_cpu_when_accelerated_fails(self) -> None:
        loader = RecordingLoader(failing={ACCELERATED.name})
        handle = ClassifierHandle(loader, [ACCELERATED, CPU_BACKEND])

        await handle.initialize()

        assert handle.state is ClassifierState.READY
        assert handle.backend == CPU_BACKEND
        assert loader.calls == [ACCELERATED.name, CPU_BACKEND.name]

    async def test_initialize_is_idempotent(self) -> None:
        loader = RecordingLoader()
        handle = ClassifierHandle(loader, [CPU_BACKEND])

        await handle.initialize()
        first = handle.classifier
        await handle.initialize()

        assert handle.classifier is first
        assert loader.calls == [CPU_BACKEND.name]

    async def test_concurrent_initialize_runs_one_attempt_sequence(self) -> None:
        loader = RecordingLoader(failing={ACCELERATED.name}, delay=0.05)
        handle = ClassifierHandle(loader, [ACCELERATED, CPU_BACKEND])

        await asyncio.gather(*(handle.initialize() for _ in range(10)))

        assert loader.calls == [ACCELERATED.name, CPU_BACKEND.name]
        assert handle.state is ClassifierState.READY

    async def test_all_backends_failing_raises_model_init_error(self) -> None:
        loader = RecordingLoader(failing={ACCELERATED.name, CPU_BACKEND.name})
        handle = ClassifierHandle(loader, [ACCELERATED, CPU_BACKEND])

        with pytest.raises(ModelInitError) as exc_info:
            await handle.initialize()

        assert handle.state is ClassifierState.FAILED
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert loader.calls == [ACCELERATED.name, CPU_BACKEND.name]

    async def test_concurrent_callers_all_see_the_failure(self) -> None:
        loader = RecordingLoader(failing={CPU_BACKEND.name}, delay=0.05)
        handle = ClassifierHandle(loader, [CPU_BACKEND])

        outcomes = await asyncio.gather(*(handle.initialize() for _ in range(5)), return_exceptions=True)

        assert all(isinstance(o, ModelInitError) for o in outcomes)
        assert loader.calls == [CPU_BACKEND.name]

    async def test_failed_initialize_can_be_retried(self) -> None:
        loader = RecordingLoader(failing={ACCELERATED.name, CPU_BACKEND.name})
        handle = ClassifierHandle(loader, [ACCELERATED, CPU_BACKEND])
        with pytest.raises(ModelInitError):
            await handle.initialize()

        loader.failing.clear()
        await handle.initialize()

        assert handle.state is ClassifierState.READY
        assert loader.calls == [ACCELERATED.name, CPU_BACKEND.name, ACCELERATED.name]

    async def test_close_allows_reinitialization(self) -> None:
        loader = RecordingLoader()
        handle = ClassifierHandle(loader, [CPU_BACKEND])
        await handle.initialize()

        handle.close()
        assert handle.state is ClassifierState.UNINITIALIZED
        assert handle.backend is None

        await handle.initialize()
        assert loader.calls == [CPU_BACKEND.name, CPU_BACKEND.name]

    async def test_cancelled_waiter_leaves_failure_retrieved(self) -> None:
        loader = RecordingLoader(failing={CPU_BACKEND.name}, delay=0.1)
        handle = ClassifierHandle(loader, [CPU_BACKEND])
        loop = asyncio.get_running_loop()
        reported: list[dict[str, object]] = []
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(lambda _loop, context: reported.append(context))
        try:
            waiter = asyncio.create_task(handle.initialize())
            await asyncio.sleep(0.01)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter

            while handle.state is not ClassifierState.FAILED:
                await asyncio.sleep(0.01)
            await asyncio.sleep(0)
            gc.collect()
        finally:
            loop.set_exception_handler(previous_handler)

        assert reported == []
        loader.failing.clear()
        await handle.initialize()
        assert handle.state is ClassifierState.READY
