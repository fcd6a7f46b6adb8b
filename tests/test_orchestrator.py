from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import FakeDetector, FakeExtractor, FakeSheet, FakeStore, name_loader
from scanflow.file_queue import FileStatus, ScannedFile, SyncStatus
from scanflow.orchestrator import Batch, BatchOrchestrator, ConfigurationError, SpreadsheetTarget
from scanflow.preprocess import PageImage
from scanflow.schema import FieldRegistry, Region


class TestProcessAll:
    @pytest.mark.asyncio
    async def test_invoice_example(self, make_batch, make_orchestrator):
        batch = make_batch("invoice.png")
        extractor = FakeExtractor(values={"invoice.png": {"Invoice Number": "INV-001", "Total": "42.00"}})

        await make_orchestrator(extractor).process_all(batch)

        (f,) = list(batch.files)
        assert f.status is FileStatus.COMPLETED
        assert f.extracted_data == {"Invoice Number": "INV-001", "Total": "42.00"}
        assert f.sync_status is SyncStatus.UNSYNCED
        assert f.error is None

    @pytest.mark.asyncio
    async def test_empty_registry_is_configuration_error(self, make_orchestrator):
        batch = Batch()
        batch.enqueue([Path("a.png"), Path("b.png")])
        extractor = FakeExtractor()

        with pytest.raises(ConfigurationError):
            await make_orchestrator(extractor).process_all(batch)

        assert extractor.calls == []
        assert all(f.status is FileStatus.PENDING for f in batch.files)

    @pytest.mark.asyncio
    async def test_failed_file_does_not_stop_batch(self, make_batch, make_orchestrator):
        batch = make_batch("a.png", "b.png", "c.png")
        extractor = FakeExtractor(fail_for=["b.png"])

        report = await make_orchestrator(extractor).process_all(batch)

        a, b, c = list(batch.files)
        assert [call[0] for call in extractor.calls] == ["a.png", "b.png", "c.png"]
        assert a.status is FileStatus.COMPLETED
        assert c.status is FileStatus.COMPLETED
        assert b.status is FileStatus.ERROR
        assert b.extracted_data is None
        assert b.error.startswith("Extraction failed")
        assert report.completed == 2 and report.errors == 1

    @pytest.mark.asyncio
    async def test_completed_data_covers_every_region(self, make_batch, make_orchestrator):
        class PartialExtractor(FakeExtractor):
            async def extract(self, image, regions, hints=None):
                await super().extract(image, regions, hints)
                return {"Total": "10"}

        batch = make_batch("a.png")
        await make_orchestrator(PartialExtractor()).process_all(batch)

        (f,) = list(batch.files)
        assert f.extracted_data == {"Invoice Number": "", "Total": "10"}

    @pytest.mark.asyncio
    async def test_passes_hints_and_regions_to_extractor(self, make_batch, make_orchestrator):
        batch = make_batch("a.png", hints="Totals are handwritten")
        extractor = FakeExtractor()

        await make_orchestrator(extractor).process_all(batch)

        assert extractor.calls == [("a.png", ["Invoice Number", "Total"], "Totals are handwritten")]

    @pytest.mark.asyncio
    async def test_image_load_failure_is_stage_failure(self, make_batch):
        async def broken_loader(scanned):
            raise OSError("cannot read file")

        batch = make_batch("a.png")
        orchestrator = BatchOrchestrator(FakeExtractor(), image_loader=broken_loader)

        await orchestrator.process_all(batch)

        (f,) = list(batch.files)
        assert f.status is FileStatus.ERROR
        assert "cannot read file" in f.error

    @pytest.mark.asyncio
    async def test_processing_is_visible_before_extraction(self, make_batch):
        seen = []
        batch = make_batch("a.png")

        class ObservingExtractor(FakeExtractor):
            async def extract(self, image, regions, hints=None):
                seen.append([f.status for f in batch.files])
                return await super().extract(image, regions, hints)

        await BatchOrchestrator(ObservingExtractor(), image_loader=name_loader).process_all(batch)

        assert seen == [[FileStatus.PROCESSING]]

    @pytest.mark.asyncio
    async def test_progress_callback_sees_each_transition(self, make_batch):
        events = []
        batch = make_batch("a.png")
        orchestrator = BatchOrchestrator(
            FakeExtractor(),
            store=FakeStore(),
            image_loader=name_loader,
            on_update=lambda f: events.append((f.status.value, f.sync_status.value)),
        )

        await orchestrator.process_all(batch)

        assert events == [
            ("processing", "unsynced"),
            ("completed", "syncing"),
            ("completed", "synced"),
        ]

    @pytest.mark.asyncio
    async def test_registry_edits_during_run_do_not_leak(self, make_batch):
        batch = make_batch("a.png", "b.png")

        class RenamingExtractor(FakeExtractor):
            async def extract(self, image, regions, hints=None):
                result = await super().extract(image, regions, hints)
                first = next(iter(batch.regions))
                if first.name == "Invoice Number":
                    batch.regions.rename(first.id, "Invoice No")
                return result

        extractor = RenamingExtractor()
        await BatchOrchestrator(extractor, image_loader=name_loader).process_all(batch)

        assert [call[1] for call in extractor.calls] == [["Invoice Number", "Total"]] * 2
        assert batch.regions.names() == ["Invoice No", "Total"]


class TestSkipRule:
    @pytest.mark.asyncio
    async def test_rerun_without_sync_skips_completed(self, make_batch, make_orchestrator):
        batch = make_batch("a.png", "b.png")
        extractor = FakeExtractor()
        orchestrator = make_orchestrator(extractor)
        await orchestrator.process_all(batch)
        before = [(f.status, f.extracted_data) for f in batch.files]

        report = await orchestrator.process_all(batch)

        assert len(extractor.calls) == 2
        assert report.visited == []
        assert len(report.skipped) == 2
        assert [(f.status, f.extracted_data) for f in batch.files] == before

    @pytest.mark.asyncio
    async def test_rerun_with_sync_skips_synced(self, make_batch, make_orchestrator):
        batch = make_batch("a.png")
        extractor, store = FakeExtractor(), FakeStore()
        orchestrator = make_orchestrator(extractor, store=store)
        await orchestrator.process_all(batch)

        await orchestrator.process_all(batch)

        assert len(extractor.calls) == 1
        assert len(store.calls) == 1
        (f,) = list(batch.files)
        assert f.sync_status is SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_completed_but_unsynced_is_extracted_again(self, make_batch, make_orchestrator):
        batch = make_batch("a.png")
        attempts = iter([False, True])
        extractor = FakeExtractor()
        store = FakeStore(result=lambda name: next(attempts))
        orchestrator = make_orchestrator(extractor, store=store)

        await orchestrator.process_all(batch)
        (f,) = list(batch.files)
        assert (f.status, f.sync_status) == (FileStatus.COMPLETED, SyncStatus.FAILED)

        await orchestrator.process_all(batch)

        assert len(extractor.calls) == 2
        assert (f.status, f.sync_status) == (FileStatus.COMPLETED, SyncStatus.SYNCED)

    @pytest.mark.asyncio
    async def test_new_files_processed_after_earlier_run(self, make_batch, make_orchestrator):
        batch = make_batch("a.png")
        extractor = FakeExtractor()
        orchestrator = make_orchestrator(extractor)
        await orchestrator.process_all(batch)

        batch.enqueue([Path("b.png")])
        await orchestrator.process_all(batch)

        assert [call[0] for call in extractor.calls] == ["a.png", "b.png"]

    @pytest.mark.asyncio
    async def test_error_files_are_retried(self, make_batch, make_orchestrator):
        batch = make_batch("a.png")
        extractor = FakeExtractor(fail_for=["a.png"])
        orchestrator = make_orchestrator(extractor)
        await orchestrator.process_all(batch)

        extractor.fail_for.clear()
        await orchestrator.process_all(batch)

        (f,) = list(batch.files)
        assert f.status is FileStatus.COMPLETED
        assert f.error is None

    @pytest.mark.asyncio
    async def test_reset_file_is_reprocessed_without_sync(self, make_batch, make_orchestrator):
        batch = make_batch("a.png")
        extractor = FakeExtractor()
        orchestrator = make_orchestrator(extractor)
        await orchestrator.process_all(batch)

        (f,) = list(batch.files)
        batch.files.reset(f.id)
        await orchestrator.process_all(batch)

        assert len(extractor.calls) == 2


class TestPersistenceStage:
    @pytest.mark.asyncio
    async def test_persist_receives_batch_context(self, make_batch, make_orchestrator):
        batch = make_batch("a.png")
        store = FakeStore()

        await make_orchestrator(store=store).process_all(batch)

        (call,) = store.calls
        assert call[0] == batch.batch_id
        assert call[1] == "a.png"
        assert call[2] == {"Invoice Number": "Invoice Number@a.png", "Total": "Total@a.png"}
        assert call[3] == ["Invoice Number", "Total"]

    @pytest.mark.asyncio
    async def test_false_and_raise_both_mark_failed(self, make_batch, make_orchestrator):
        batch = make_batch("a.png", "b.png", "c.png")
        store = FakeStore(result=lambda name: name != "a.png", raise_for=["b.png"])

        report = await make_orchestrator(store=store).process_all(batch)

        a, b, c = list(batch.files)
        assert a.sync_status is SyncStatus.FAILED
        assert b.sync_status is SyncStatus.FAILED
        assert c.sync_status is SyncStatus.SYNCED
        assert all(f.status is FileStatus.COMPLETED for f in (a, b, c))
        assert report.synced == 1 and report.sync_failed == 2

    @pytest.mark.asyncio
    async def test_extraction_failure_marks_sync_failed(self, make_batch, make_orchestrator):
        batch = make_batch("a.png")
        store = FakeStore()

        await make_orchestrator(FakeExtractor(fail_for=["a.png"]), store=store).process_all(batch)

        (f,) = list(batch.files)
        assert f.sync_status is SyncStatus.FAILED
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_display_name_is_used(self, make_orchestrator, invoice_registry):
        batch = Batch(regions=invoice_registry)
        batch.enqueue([ScannedFile(file_ref=Path("scan_0001.png"), display_name="March invoice")])
        store = FakeStore()

        await make_orchestrator(store=store).process_all(batch)

        assert store.calls[0][1] == "March invoice"


class TestSpreadsheetStage:
    @pytest.mark.asyncio
    async def test_rows_follow_registry_order(self, make_batch, make_orchestrator):
        batch = make_batch("a.png", "b.png")
        sheet = FakeSheet(fail_for=["a.png"])
        target = SpreadsheetTarget("sheet-1", "token")

        report = await make_orchestrator(spreadsheet=sheet, spreadsheet_target=target).process_all(batch)

        assert sheet.rows == [
            ("sheet-1", "token", ["Invoice Number@a.png", "Total@a.png"]),
            ("sheet-1", "token", ["Invoice Number@b.png", "Total@b.png"]),
        ]
        assert all(len(row) == len(batch.regions) for _, _, row in sheet.rows)
        a, b = list(batch.files)
        assert a.sheet_status is SyncStatus.FAILED
        assert b.sheet_status is SyncStatus.SYNCED
        assert a.status is FileStatus.COMPLETED
        assert report.rows_appended == 1 and report.rows_failed == 1

    @pytest.mark.asyncio
    async def test_raising_append_marks_file_and_continues(self, make_batch, make_orchestrator):
        batch = make_batch("a.png", "b.png")
        sheet = FakeSheet(raise_for=["a.png"])
        target = SpreadsheetTarget("sheet-1", "token")

        report = await make_orchestrator(spreadsheet=sheet, spreadsheet_target=target).process_all(batch)

        a, b = list(batch.files)
        assert len(sheet.rows) == 2
        assert a.sheet_status is SyncStatus.FAILED
        assert a.status is FileStatus.COMPLETED
        assert b.sheet_status is SyncStatus.SYNCED
        assert report.rows_appended == 1 and report.rows_failed == 1

    @pytest.mark.asyncio
    async def test_extraction_failure_marks_sheet_failed(self, make_batch, make_orchestrator):
        batch = make_batch("a.png", "b.png")
        sheet = FakeSheet()
        target = SpreadsheetTarget("sheet-1", "token")
        orchestrator = make_orchestrator(
            FakeExtractor(fail_for=["a.png"]), spreadsheet=sheet, spreadsheet_target=target
        )

        await orchestrator.process_all(batch)

        a, b = list(batch.files)
        assert a.status is FileStatus.ERROR
        assert a.sheet_status is SyncStatus.FAILED
        assert b.sheet_status is SyncStatus.SYNCED
        assert [row for _, _, row in sheet.rows] == [["Invoice Number@b.png", "Total@b.png"]]

    def test_collaborator_requires_target(self):
        with pytest.raises(ConfigurationError):
            BatchOrchestrator(FakeExtractor(), spreadsheet=FakeSheet())


class TestAutoDetect:
    @pytest.mark.asyncio
    async def test_first_upload_seeds_registry(self):
        detector = FakeDetector(
            [
                Region(name="Date", x=10, y=10, width=20, height=5),
                Region(name="Date", x=10, y=20, width=20, height=5),
            ]
        )
        orchestrator = BatchOrchestrator(FakeExtractor(), detector=detector, image_loader=name_loader)
        batch = Batch(ai_hints="Look for dates")

        await orchestrator.enqueue(batch, [Path("first.png"), Path("second.png")])

        assert detector.calls == [("first.png", "Look for dates")]
        assert batch.regions.names() == ["Date", "Date (2)"]
        assert batch.regions.active.name == "Date"

    @pytest.mark.asyncio
    async def test_existing_registry_is_not_reseeded(self, invoice_registry):
        detector = FakeDetector([Region(name="Date", x=10, y=10, width=20, height=5)])
        orchestrator = BatchOrchestrator(FakeExtractor(), detector=detector, image_loader=name_loader)
        batch = Batch(regions=invoice_registry)

        await orchestrator.enqueue(batch, [Path("a.png")])

        assert detector.calls == []
        assert batch.regions.names() == ["Invoice Number", "Total"]

    @pytest.mark.asyncio
    async def test_detection_failure_leaves_registry(self, invoice_registry):
        detector = FakeDetector(error=RuntimeError("quota"))
        orchestrator = BatchOrchestrator(FakeExtractor(), detector=detector, image_loader=name_loader)
        batch = Batch(regions=invoice_registry)
        batch.enqueue([Path("a.png")])

        assert await orchestrator.auto_detect(batch) == []
        assert batch.regions.names() == ["Invoice Number", "Total"]

    @pytest.mark.asyncio
    async def test_without_detector(self):
        orchestrator = BatchOrchestrator(FakeExtractor(), image_loader=name_loader)
        batch = Batch(regions=FieldRegistry())

        added = await orchestrator.enqueue(batch, [Path("a.png")])

        assert len(added) == 1
        with pytest.raises(ConfigurationError):
            await orchestrator.auto_detect(batch)


class TestImageLoading:
    @pytest.mark.asyncio
    async def test_existing_preview_is_used(self, invoice_registry):
        preview = PageImage(data=b"cached.png", media_type="image/png", width=10, height=14)
        batch = Batch(regions=invoice_registry)
        batch.enqueue([ScannedFile(file_ref=Path("does-not-exist.png"), preview=preview)])
        extractor = FakeExtractor()

        await BatchOrchestrator(extractor).process_all(batch)

        assert extractor.calls[0][0] == "cached.png"
        assert next(iter(batch.files)).status is FileStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_preview_is_loaded_once(self, tmp_path, invoice_registry):
        from PIL import Image

        path = tmp_path / "scan.png"
        Image.new("RGB", (8, 8), "white").save(path)
        batch = Batch(regions=invoice_registry)
        (scanned,) = batch.enqueue([path])
        orchestrator = BatchOrchestrator(FakeExtractor(values={}))
        image = await orchestrator.image_loader(scanned)

        assert scanned.preview is image
        assert await orchestrator.image_loader(scanned) is image


class TestConcurrentRuns:
    @pytest.mark.asyncio
    async def test_second_run_is_refused_while_first_is_in_flight(self, make_batch):
        batch = make_batch("a.png", "b.png")

        class SlowExtractor(FakeExtractor):
            async def extract(self, image, regions, hints=None):
                await asyncio.sleep(0.01)
                return await super().extract(image, regions, hints)

        extractor = SlowExtractor()
        orchestrator = BatchOrchestrator(extractor, image_loader=name_loader)

        first, second = await asyncio.gather(
            orchestrator.process_all(batch), orchestrator.process_all(batch), return_exceptions=True
        )

        assert first.completed == 2
        assert isinstance(second, ConfigurationError)
        assert len(extractor.calls) == 2
        assert all(f.status is FileStatus.COMPLETED for f in batch.files)
        assert batch.is_processing is False

    @pytest.mark.asyncio
    async def test_flag_cleared_after_run(self, make_batch, make_orchestrator):
        batch = make_batch("a.png")
        orchestrator = make_orchestrator()

        await orchestrator.process_all(batch)
        batch.enqueue([Path("b.png")])
        report = await orchestrator.process_all(batch)

        assert report.completed == 1
        assert batch.is_processing is False
