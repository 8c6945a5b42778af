"""Analysis pipeline: classify, map, and record a livestock photo."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from cattlescan.errors import StoreWriteError
from cattlescan.storage.records import UnpersistedRecord, filter_records

if TYPE_CHECKING:
    from collections.abc import Callable

    from cattlescan.analysis.mapper import DomainMapper
    from cattlescan.analysis.results import AnalysisResult
    from cattlescan.ml.inference import InferenceEngine
    from cattlescan.ml.preprocessing import DecodedImage
    from cattlescan.storage.record_store import RecordStore
    from cattlescan.storage.records import PersistedRecord, RecordStats

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AnalysisPipeline:
    """Runs one image through the engine and mapper, then stores the result."""

    def __init__(
        self,
        engine: InferenceEngine,
        mapper: DomainMapper,
        store: RecordStore,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._engine = engine
        self._mapper = mapper
        self._store = store
        self._clock = clock

    async def analyze(self, image: DecodedImage) -> AnalysisResult:
        """Classify ``image`` and map the ranking to an analysis result.

        Raises:
            ModelInitError: If the classifier cannot be initialized.
            AnalysisError: If classification or mapping fails.
        """
        results = await self._engine.classify(image)
        return self._mapper.map(results, image.width, image.height)

    async def record(
        self,
        result: AnalysisResult,
        image_url: str,
        farmer_id: str | None = None,
    ) -> PersistedRecord:
        """Persist ``result`` as a new, unsynced record.

        Raises:
            StoreWriteError: If the write fails. ``result`` is attached to the
                error so the caller can still show it.
        """
        draft = UnpersistedRecord.from_result(result, image_url, self._clock(), farmer_id=farmer_id)
        loop = asyncio.get_running_loop()
        try:
            record = await loop.run_in_executor(None, self._store.insert, draft)
        except StoreWriteError as exc:
            logger.error("Analysis succeeded but the record was not saved: %s", exc)
            raise StoreWriteError(str(exc), result=result) from exc
        logger.info("Saved record %d: %s %s (%d%%)", record.id, record.species, record.breed, record.confidence)
        return record

    async def analyze_and_record(
        self,
        image: DecodedImage,
        image_url: str,
        farmer_id: str | None = None,
    ) -> tuple[AnalysisResult, PersistedRecord]:
        result = await self.analyze(image)
        record = await self.record(result, image_url, farmer_id=farmer_id)
        return result, record

    async def records(self, term: str = "", unsynced: bool = False) -> list[PersistedRecord]:
        """Return stored records, newest first, optionally narrowed.

        Args:
            term: Breed or species substring; empty keeps everything.
            unsynced: Only records not yet delivered to the remote store.
        """
        loop = asyncio.get_running_loop()
        query = self._store.list_unsynced if unsynced else self._store.list_all
        found = await loop.run_in_executor(None, query)
        return filter_records(found, term) if term else found

    async def stats(self) -> RecordStats:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._store.stats)
