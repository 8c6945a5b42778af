"""Error kinds surfaced by the analysis pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cattlescan.analysis.results import AnalysisResult


class CattleScanError(Exception):
    """Base class for all CattleScan errors."""


class ModelInitError(CattleScanError):
    """Every classifier backend failed to construct.

    The handle that raised it may be initialized again later.
    """


class AnalysisError(CattleScanError):
    """Classification produced no usable output or result mapping failed."""


class StoreWriteError(CattleScanError):
    """A record could not be persisted.

    When raised by the pipeline, ``result`` holds the analysis that was
    computed before the write failed; it is still valid and may be shown.
    """

    def __init__(self, message: str, result: AnalysisResult | None = None) -> None:
        super().__init__(message)
        self.result = result
