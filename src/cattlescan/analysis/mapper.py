"""Map raw classifier output to a cattle analysis result.

Measurements and breed are heuristic placeholders, not calibrated vision
outputs: measurements are random draws from typical adult cattle ranges
scaled by the image aspect ratio, and breed is drawn at random from a
confidence-dependent pool without looking at the label text. A real breed
or measurement model can replace either step without changing the result
shape.
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from cattlescan.analysis.results import AnalysisResult, Measurements
from cattlescan.errors import AnalysisError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cattlescan.ml.image_classifier import ClassificationResult

logger = logging.getLogger(__name__)

SPECIES = "Cattle"

# Label fragments that mark a classification as cattle.
CATTLE_TERMS = ("cow", "bull", "cattle")

CATTLE_BREEDS = (
    "Holstein",
    "Angus",
    "Hereford",
    "Charolais",
    "Brahman",
    "Simmental",
    "Limousin",
    "Shorthorn",
    "Devon",
    "Jersey",
    "Guernsey",
    "Brown Swiss",
)
POPULAR_BREEDS = ("Holstein", "Angus", "Hereford")

POPULAR_BREED_THRESHOLD = 0.8

MIN_SIZE_MULTIPLIER = 0.9
MAX_SIZE_MULTIPLIER = 1.2
ASPECT_RATIO_WEIGHT = 0.8


@dataclass(frozen=True)
class MeasurementRange:
    """Uniform range ``[minimum, minimum + span)`` in centimeters."""

    minimum: float
    span: float

    def draw(self, rng: RandomSource) -> float:
        return self.minimum + rng.random() * self.span


BODY_LENGTH = MeasurementRange(minimum=180, span=40)
HEIGHT_AT_WITHERS = MeasurementRange(minimum=130, span=25)
CHEST_WIDTH = MeasurementRange(minimum=60, span=20)


class RandomSource(Protocol):
    """Anything that yields uniform floats in [0, 1), e.g. ``random.Random``."""

    def random(self) -> float: ...


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def size_multiplier(width: float, height: float) -> float:
    """Scale factor from aspect ratio, clamped to [0.9, 1.2]."""
    if not (width > 0 and height > 0 and math.isfinite(width) and math.isfinite(height)):
        raise ValueError(f"Invalid image dimensions {width}x{height}")
    aspect_ratio = width / height
    return min(max(aspect_ratio * ASPECT_RATIO_WEIGHT, MIN_SIZE_MULTIPLIER), MAX_SIZE_MULTIPLIER)


def select_target(results: Sequence[ClassificationResult]) -> ClassificationResult:
    """First result whose label mentions cattle, else the top-ranked one."""
    if not results:
        raise ValueError("No classification results")
    for result in results:
        label = result.label.lower()
        if any(term in label for term in CATTLE_TERMS):
            return result
    return results[0]


def confidence_percent(score: float) -> int:
    if not math.isfinite(score):
        raise ValueError(f"Invalid score {score!r}")
    return min(max(round_half_up(score * 100), 0), 100)


def _pick(options: Sequence[str], rng: RandomSource) -> str:
    index = min(int(rng.random() * len(options)), len(options) - 1)
    return options[index]


class DomainMapper:
    """Turns ranked classifier output into an ``AnalysisResult``.

    Args:
        rng: Uniform random source for the measurement and breed heuristics.
            Defaults to a fresh ``random.Random``.
    """

    def __init__(self, rng: RandomSource | None = None) -> None:
        self._rng: RandomSource = rng if rng is not None else random.Random()

    def estimate_measurements(self, width: float, height: float) -> Measurements:
        multiplier = size_multiplier(width, height)
        body_length = BODY_LENGTH.draw(self._rng)
        height_at_withers = HEIGHT_AT_WITHERS.draw(self._rng)
        chest_width = CHEST_WIDTH.draw(self._rng)
        return Measurements(
            body_length=round_half_up(body_length * multiplier),
            height_at_withers=round_half_up(height_at_withers * multiplier),
            chest_width=round_half_up(chest_width * multiplier),
        )

    def choose_breed(self, score: float) -> str:
        if score > POPULAR_BREED_THRESHOLD:
            return _pick(POPULAR_BREEDS, self._rng)
        return _pick(CATTLE_BREEDS, self._rng)

    def map(self, results: Sequence[ClassificationResult], width: float, height: float) -> AnalysisResult:
        """Build the analysis result for one classified image.

        Raises:
            AnalysisError: If any step fails; no partial result is returned.
        """
        try:
            target = select_target(results)
            confidence = confidence_percent(target.score)
            measurements = self.estimate_measurements(width, height)
            breed = self.choose_breed(target.score)
        except Exception as exc:
            raise AnalysisError(f"Could not map classification: {exc}") from exc

        logger.info("Mapped %r (%d%%) to breed %s", target.label, confidence, breed)
        return AnalysisResult(
            species=SPECIES,
            breed=breed,
            confidence=confidence,
            measurements=measurements,
        )
