"""Shared fakes for the pipeline collaborators. No network, no model calls."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from scanflow.file_queue import ScannedFile
from scanflow.orchestrator import Batch, BatchOrchestrator
from scanflow.preprocess import PageImage
from scanflow.schema import FieldRegistry, Region
from scanflow.sync import SyncError


class FakeExtractor:
    def __init__(self, values: Optional[dict[str, dict[str, str]]] = None, fail_for: Sequence[str] = ()):
        self.values = values or {}
        self.fail_for = set(fail_for)
        self.calls: List[tuple] = []

    async def extract(self, image: PageImage, regions: Sequence[Region], hints: Optional[str] = None):
        name = image.data.decode()
        self.calls.append((name, [r.name for r in regions], hints))
        if name in self.fail_for:
            raise RuntimeError("model unavailable")
        per_file = self.values.get(name, {})
        return {r.name: per_file.get(r.name, f"{r.name}@{name}") for r in regions}


class FakeStore:
    def __init__(self, result=True, raise_for: Sequence[str] = ()):
        self.result = result
        self.raise_for = set(raise_for)
        self.calls: List[tuple] = []

    async def persist(self, batch_id, file_name, data, regions):
        self.calls.append((batch_id, file_name, dict(data), [r.name for r in regions]))
        if file_name in self.raise_for:
            raise ConnectionError("store offline")
        if callable(self.result):
            return self.result(file_name)
        return self.result


class FakeSheet:
    """Fails or raises for rows whose values came from one of the named files."""

    def __init__(self, fail_for: Sequence[str] = (), raise_for: Sequence[str] = ()):
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.rows: List[tuple] = []

    async def append_row(self, spreadsheet_id, access_token, row):
        self.rows.append((spreadsheet_id, access_token, list(row)))
        sources = {cell.rsplit("@", 1)[-1] for cell in row if "@" in cell}
        if sources & self.raise_for:
            raise SyncError("Missing Spreadsheet ID or Access Token")
        return not (sources & self.fail_for)


class FakeDetector:
    def __init__(self, regions: Optional[List[Region]] = None, error: Optional[Exception] = None):
        self.regions = regions or []
        self.error = error
        self.calls: List[tuple] = []

    async def detect(self, image: PageImage, hints: Optional[str] = None):
        self.calls.append((image.data.decode(), hints))
        if self.error is not None:
            raise self.error
        return list(self.regions)


async def name_loader(scanned: ScannedFile) -> PageImage:
    """Encode the file name as the image payload so fakes can tell files apart."""
    return PageImage(data=Path(scanned.file_ref).name.encode(), media_type="image/png", width=10, height=14)


@pytest.fixture
def invoice_registry() -> FieldRegistry:
    return FieldRegistry(
        [
            Region(name="Invoice Number", x=60.0, y=5.0, width=30.0, height=5.0),
            Region(name="Total", x=70.0, y=85.0, width=20.0, height=6.0),
        ]
    )


@pytest.fixture
def make_batch(invoice_registry):
    def _make(*names: str, hints: Optional[str] = None) -> Batch:
        batch = Batch(regions=invoice_registry, ai_hints=hints)
        batch.enqueue([Path(n) for n in names])
        return batch

    return _make


@pytest.fixture
def make_orchestrator():
    def _make(extractor=None, **kwargs) -> BatchOrchestrator:
        return BatchOrchestrator(extractor or FakeExtractor(), image_loader=name_loader, **kwargs)

    return _make
