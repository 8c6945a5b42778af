"""Analysis results handed back to the caller."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Measurements:
    """Estimated body measurements in centimeters."""

    body_length: int
    height_at_withers: int
    chest_width: int


@dataclass(frozen=True)
class AnalysisResult:
    """Species, breed, confidence and measurements for one analyzed image."""

    species: str
    breed: str
    confidence: int
    measurements: Measurements
