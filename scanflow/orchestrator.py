from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from .file_queue import FileQueue, FileStatus, ScannedFile, SyncStatus
from .preprocess import DocumentPreprocessor, PageImage
from .schema import FieldRegistry, Region

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """The batch cannot run as configured; nothing has been touched."""


class Extractor(Protocol):
    async def extract(
        self, image: PageImage, regions: Sequence[Region], hints: Optional[str] = None
    ) -> dict[str, str]: ...


class RegionDetector(Protocol):
    async def detect(self, image: PageImage, hints: Optional[str] = None) -> List[Region]: ...


class PersistenceStore(Protocol):
    async def persist(
        self, batch_id: str, file_name: str, data: dict[str, str], regions: Sequence[Region]
    ) -> bool: ...


class SpreadsheetAppender(Protocol):
    async def append_row(self, spreadsheet_id: str, access_token: str, row: Sequence[str]) -> bool: ...


ImageLoader = Callable[[ScannedFile], Awaitable[PageImage]]
ProgressCallback = Callable[[ScannedFile], None]


def new_batch_id() -> str:
    return f"batch_{uuid.uuid4().hex[:12]}"


@dataclass
class Batch:
    """One session's worth of work: a field registry, hints, and the file queue."""

    regions: FieldRegistry = field(default_factory=FieldRegistry)
    files: FileQueue = field(default_factory=FileQueue)
    ai_hints: Optional[str] = None
    batch_id: str = field(default_factory=new_batch_id)
    is_processing: bool = field(default=False, compare=False)

    def enqueue(self, paths: Sequence[Path | str | ScannedFile]) -> List[ScannedFile]:
        return self.files.enqueue(paths)


@dataclass(frozen=True)
class SpreadsheetTarget:
    spreadsheet_id: str
    access_token: str


@dataclass
class BatchReport:
    """Counts for one run; per-file detail lives on the queue entries."""

    batch_id: str
    visited: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    completed: int = 0
    errors: int = 0
    synced: int = 0
    sync_failed: int = 0
    rows_appended: int = 0
    rows_failed: int = 0


class BatchOrchestrator:
    """
    Drives every file of a batch through extraction, persistence and
    spreadsheet sync, one file at a time and in queue order.

    Stage failures are recorded on the file and never stop the run.
    """

    def __init__(
        self,
        extractor: Extractor,
        *,
        detector: Optional[RegionDetector] = None,
        store: Optional[PersistenceStore] = None,
        spreadsheet: Optional[SpreadsheetAppender] = None,
        spreadsheet_target: Optional[SpreadsheetTarget] = None,
        preprocessor: Optional[DocumentPreprocessor] = None,
        image_loader: Optional[ImageLoader] = None,
        on_update: Optional[ProgressCallback] = None,
    ):
        if (spreadsheet is None) != (spreadsheet_target is None):
            raise ConfigurationError("A spreadsheet collaborator needs a spreadsheet target, and vice versa")
        self.extractor = extractor
        self.detector = detector
        self.store = store
        self.spreadsheet = spreadsheet
        self.spreadsheet_target = spreadsheet_target
        self.preprocessor = preprocessor or DocumentPreprocessor()
        self.image_loader = image_loader or self._load_image
        self.on_update = on_update

    @property
    def sync_configured(self) -> bool:
        return self.store is not None

    async def _load_image(self, scanned: ScannedFile) -> PageImage:
        if scanned.preview is None:
            scanned.preview = await self.preprocessor.load_async(Path(scanned.file_ref))
        return scanned.preview

    def _notify(self, scanned: ScannedFile) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(scanned)
        except Exception:
            logger.exception("Progress callback failed for %s", scanned.name)

    def should_skip(self, scanned: ScannedFile) -> bool:
        if scanned.status is not FileStatus.COMPLETED:
            return False
        return not self.sync_configured or scanned.sync_status is SyncStatus.SYNCED

    async def process_all(self, batch: Batch) -> BatchReport:
        """
        Run the whole queue. Raises ConfigurationError before touching any
        file when the batch has no fields defined or is already being run.
        """
        if len(batch.regions) == 0:
            raise ConfigurationError("Please define at least one region to extract.")
        if batch.is_processing:
            raise ConfigurationError(f"Batch {batch.batch_id} is already processing")

        batch.is_processing = True
        try:
            return await self._run(batch)
        finally:
            batch.is_processing = False

    async def _run(self, batch: Batch) -> BatchReport:
        # Edits to the registry during the run only affect the next run.
        regions = batch.regions.snapshot()
        report = BatchReport(batch_id=batch.batch_id)
        logger.info(
            "Starting batch %s: %d file(s), %d field(s)", batch.batch_id, len(batch.files), len(regions)
        )

        for scanned in batch.files:
            if scanned.id not in batch.files:
                continue  # removed while an earlier file was in flight
            if self.should_skip(scanned):
                logger.debug("Skipping settled file %s", scanned.name)
                report.skipped.append(scanned.id)
                continue
            report.visited.append(scanned.id)
            await self._process_file(batch, scanned, regions, report)

        logger.info(
            "Batch %s finished: %d completed, %d error(s), %d skipped",
            batch.batch_id,
            report.completed,
            report.errors,
            len(report.skipped),
        )
        return report

    async def _process_file(
        self, batch: Batch, scanned: ScannedFile, regions: List[Region], report: BatchReport
    ) -> None:
        scanned.start_processing()
        self._notify(scanned)

        logger.info("Extracting fields for %s", scanned.name)
        try:
            image = await self.image_loader(scanned)
            data = await self.extractor.extract(image, regions, batch.ai_hints)
        except Exception as exc:
            logger.exception("Extraction failed for %s", scanned.name)
            scanned.fail(f"Extraction failed: {exc}" if str(exc) else "Extraction failed")
            if self.sync_configured:
                scanned.set_sync(SyncStatus.FAILED)
            if self.spreadsheet is not None:
                scanned.set_sheet(SyncStatus.FAILED)
            report.errors += 1
            self._notify(scanned)
            return

        scanned.complete({r.name: data.get(r.name, "") for r in regions})
        report.completed += 1
        if self.sync_configured:
            scanned.set_sync(SyncStatus.SYNCING)
        self._notify(scanned)

        if self.store is not None:
            await self._persist(batch, scanned, regions, report)
        if self.spreadsheet is not None:
            await self._append_row(scanned, regions, report)

    async def _persist(
        self, batch: Batch, scanned: ScannedFile, regions: List[Region], report: BatchReport
    ) -> None:
        try:
            ok = await self.store.persist(batch.batch_id, scanned.name, scanned.extracted_data or {}, regions)
        except Exception:
            logger.exception("Persistence failed for %s", scanned.name)
            ok = False
        scanned.set_sync(SyncStatus.SYNCED if ok is True else SyncStatus.FAILED)
        if ok is True:
            report.synced += 1
        else:
            logger.warning("Could not persist %s", scanned.name)
            report.sync_failed += 1
        self._notify(scanned)

    async def _append_row(self, scanned: ScannedFile, regions: List[Region], report: BatchReport) -> None:
        data = scanned.extracted_data or {}
        row = [data.get(r.name, "") for r in regions]
        target = self.spreadsheet_target
        scanned.set_sheet(SyncStatus.SYNCING)
        try:
            ok = await self.spreadsheet.append_row(target.spreadsheet_id, target.access_token, row)
        except Exception:
            logger.exception("Spreadsheet append failed for %s", scanned.name)
            ok = False
        scanned.set_sheet(SyncStatus.SYNCED if ok is True else SyncStatus.FAILED)
        if ok is True:
            report.rows_appended += 1
        else:
            report.rows_failed += 1
        self._notify(scanned)

    async def auto_detect(self, batch: Batch, scanned: Optional[ScannedFile] = None) -> List[Region]:
        """
        Seed the registry from one file (the first queued one by default).

        On failure or an empty answer the registry is left as it was.
        """
        if self.detector is None:
            raise ConfigurationError("No region detector configured")
        if scanned is None:
            scanned = next(iter(batch.files), None)
        if scanned is None:
            return []
        try:
            image = await self.image_loader(scanned)
            detected = await self.detector.detect(image, batch.ai_hints)
        except Exception:
            logger.exception("Auto-detection failed for %s", scanned.name)
            return []
        if not detected:
            logger.info("Auto-detection found no fields in %s", scanned.name)
            return []
        batch.regions.replace(detected)
        logger.info("Auto-detection seeded %d field(s) from %s", len(batch.regions), scanned.name)
        return list(batch.regions)

    async def enqueue(self, batch: Batch, paths: Sequence[Path | str | ScannedFile]) -> List[ScannedFile]:
        """Queue files; the first upload into an empty registry triggers auto-detection."""
        added = batch.enqueue(paths)
        if added and len(batch.regions) == 0 and self.detector is not None:
            await self.auto_detect(batch, added[0])
        return added
