"""Animal records: unpersisted drafts and their stored counterparts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from cattlescan.analysis.results import AnalysisResult, Measurements


@dataclass(frozen=True)
class UnpersistedRecord:
    """A record that has not been inserted yet and therefore has no id."""

    image_url: str
    breed: str
    species: str
    confidence: int
    measurements: Measurements
    detected_at: datetime
    synced: bool = False
    farmer_id: str | None = None

    @classmethod
    def from_result(
        cls,
        result: AnalysisResult,
        image_url: str,
        detected_at: datetime,
        farmer_id: str | None = None,
    ) -> UnpersistedRecord:
        return cls(
            image_url=image_url,
            breed=result.breed,
            species=result.species,
            confidence=result.confidence,
            measurements=result.measurements,
            detected_at=detected_at,
            farmer_id=farmer_id,
        )


@dataclass(frozen=True)
class PersistedRecord:
    """A stored record. Only the record store creates these."""

    id: int
    image_url: str
    breed: str
    species: str
    confidence: int
    measurements: Measurements
    detected_at: datetime
    synced: bool
    farmer_id: str | None


@dataclass(frozen=True)
class RecordStats:
    """Summary figures over all stored records."""

    total: int
    average_confidence: int
    breed_count: int
    unsynced: int


def filter_records(records: Iterable[PersistedRecord], term: str) -> list[PersistedRecord]:
    """Keep records whose breed or species contains ``term``, ignoring case.

    An empty term keeps every record. Order is preserved.
    """
    needle = term.lower()
    return [r for r in records if needle in r.breed.lower() or needle in r.species.lower()]
