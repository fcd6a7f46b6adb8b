from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from .preprocess import PageImage

logger = logging.getLogger(__name__)


class InvalidTransition(RuntimeError):
    """A status change that the file lifecycle does not allow."""


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class SyncStatus(str, Enum):
    UNSYNCED = "unsynced"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


_STATUS_TRANSITIONS: Dict[FileStatus, frozenset] = {
    FileStatus.PENDING: frozenset({FileStatus.PROCESSING}),
    FileStatus.PROCESSING: frozenset({FileStatus.COMPLETED, FileStatus.ERROR}),
    # settled files go back to processing on a re-run, or to pending on reset
    FileStatus.COMPLETED: frozenset({FileStatus.PROCESSING, FileStatus.PENDING}),
    FileStatus.ERROR: frozenset({FileStatus.PROCESSING, FileStatus.PENDING}),
}

_SYNC_TRANSITIONS: Dict[SyncStatus, frozenset] = {
    SyncStatus.UNSYNCED: frozenset({SyncStatus.SYNCING, SyncStatus.FAILED}),
    SyncStatus.SYNCING: frozenset({SyncStatus.SYNCED, SyncStatus.FAILED}),
    SyncStatus.SYNCED: frozenset({SyncStatus.SYNCING, SyncStatus.FAILED, SyncStatus.UNSYNCED}),
    SyncStatus.FAILED: frozenset({SyncStatus.SYNCING, SyncStatus.FAILED, SyncStatus.UNSYNCED}),
}


def new_file_id() -> str:
    return uuid.uuid4().hex[:9]


@dataclass
class ScannedFile:
    """One document in the queue, with its two independent status axes."""

    file_ref: Path
    display_name: Optional[str] = None
    preview: Optional[PageImage] = None
    id: str = field(default_factory=new_file_id)
    status: FileStatus = FileStatus.PENDING
    sync_status: SyncStatus = SyncStatus.UNSYNCED
    sheet_status: SyncStatus = SyncStatus.UNSYNCED
    extracted_data: Optional[dict[str, str]] = None
    error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.display_name or Path(self.file_ref).name

    def start_processing(self) -> None:
        self._move(FileStatus.PROCESSING)
        self.extracted_data = None
        self.error = None

    def complete(self, data: dict[str, str]) -> None:
        self._move(FileStatus.COMPLETED)
        self.extracted_data = dict(data)
        self.error = None

    def fail(self, message: str) -> None:
        self._move(FileStatus.ERROR)
        self.extracted_data = None
        self.error = message

    def reset(self) -> None:
        """Back to pending so the next run extracts it again (the "recalibrate" action)."""
        if self.status is FileStatus.PENDING:
            return
        self._move(FileStatus.PENDING)
        self.extracted_data = None
        self.error = None
        self.sync_status = SyncStatus.UNSYNCED
        self.sheet_status = SyncStatus.UNSYNCED

    def set_sync(self, status: SyncStatus) -> None:
        self.sync_status = _advance(self.sync_status, status, _SYNC_TRANSITIONS, "sync")

    def set_sheet(self, status: SyncStatus) -> None:
        self.sheet_status = _advance(self.sheet_status, status, _SYNC_TRANSITIONS, "sheet")

    def _move(self, status: FileStatus) -> None:
        self.status = _advance(self.status, status, _STATUS_TRANSITIONS, "status")


def _advance(current, target, table, axis: str):
    if target not in table[current]:
        raise InvalidTransition(f"{axis}: {current.value} -> {target.value} is not allowed")
    return target


class FileQueue:
    """
    Ordered files of a batch, keyed by file id.

    Entries are mutated in place by the orchestrator; operators only add,
    remove or reset them.
    """

    def __init__(self, files: Iterable[ScannedFile] = ()):
        self._files: Dict[str, ScannedFile] = {}
        self.enqueue(files)

    def __len__(self) -> int:
        return len(self._files)

    def __iter__(self) -> Iterator[ScannedFile]:
        return iter(list(self._files.values()))

    def __contains__(self, file_id: object) -> bool:
        return file_id in self._files

    def get(self, file_id: str) -> ScannedFile:
        try:
            return self._files[file_id]
        except KeyError:
            raise KeyError(f"Unknown file: {file_id}") from None

    def enqueue(self, files: Iterable[ScannedFile | Path | str]) -> List[ScannedFile]:
        added: List[ScannedFile] = []
        for item in files:
            entry = item if isinstance(item, ScannedFile) else ScannedFile(file_ref=Path(item))
            if entry.id in self._files:
                raise ValueError(f"File id already queued: {entry.id}")
            self._files[entry.id] = entry
            added.append(entry)
        return added

    def remove(self, file_id: str) -> bool:
        """
        Drop a file from the queue. A file that is mid-pipeline is left alone
        and False is returned; removing an unknown id is also a no-op.
        """
        entry = self._files.get(file_id)
        if entry is None:
            return False
        if entry.status is FileStatus.PROCESSING:
            logger.debug("Ignoring removal of %s while it is processing", entry.name)
            return False
        del self._files[file_id]
        return True

    def reset(self, file_id: str) -> ScannedFile:
        entry = self.get(file_id)
        entry.reset()
        return entry

    def by_status(self, status: FileStatus) -> List[ScannedFile]:
        return [f for f in self._files.values() if f.status is status]

    def completed(self) -> List[ScannedFile]:
        return self.by_status(FileStatus.COMPLETED)
