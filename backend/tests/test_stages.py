import logging
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from sqlalchemy import func, select
from stubs import (
    BrokenReformatter,
    ListBook,
    MemoryBlobStore,
    RecordingQueue,
    ScriptedClassifier,
    StubCatalogue,
    StubSearch,
    StubVision,
    UpperReformatter,
    memory_session_factory,
    prose,
)

from coverscan.errors import DownloadError, DownloadTooLargeError
from coverscan.models.entities import Book, Upload, UploadStatus
from coverscan.services.collaborators import BookMatch, Candidate, CoverAnalysis, PageClass
from coverscan.services.locator import ContentLocator, LocatorSettings
from coverscan.services.pipeline.acquisition import (
    ALL_DOWNLOADS_FAILED_MESSAGE,
    NO_CANDIDATES_MESSAGE,
    TOO_LARGE_MESSAGE,
    AcquisitionStage,
    author_last_name,
)
from coverscan.services.pipeline.base import FAULT_MESSAGE, OutcomeKind, StageOutcome, with_stage_logging
from coverscan.services.pipeline.extraction import NO_TEXT_MESSAGE, ExtractionStage
from coverscan.services.pipeline.identity import IdentityStage
from coverscan.services.pipeline.ingest import IngestStage
from coverscan.services.pipeline.vision import LOW_CONFIDENCE_MESSAGE, NOT_A_BOOK_MESSAGE, VisionStage

MB = 1024 * 1024

DUNE = CoverAnalysis(
    is_book=True,
    confidence=0.95,
    title="Dune",
    author="Frank Herbert",
    fiction=True,
    raw={"isBook": True, "confidence": 0.95, "title": "Dune", "author": "Frank Herbert", "fiction": True},
)


class StageTestCase(unittest.TestCase):
    after: str | None = None

    def setUp(self) -> None:
        self.engine, self.Session = memory_session_factory()
        self.queue = RecordingQueue()
        self._tmp = TemporaryDirectory()
        self.download_dir = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()
        self.engine.dispose()

    def add_upload(self, status: UploadStatus = UploadStatus.PROCESSING, **fields) -> str:
        fields.setdefault("last_stage", self.after)
        session = self.Session()
        upload = Upload(status=status, **fields)
        session.add(upload)
        session.commit()
        upload_id = upload.id
        session.close()
        return upload_id

    def load(self, upload_id: str) -> Upload:
        session = self.Session()
        try:
            return session.get(Upload, upload_id)
        finally:
            session.close()


class IngestStageTests(StageTestCase):
    def test_stores_image_and_enqueues_vision(self) -> None:
        blob_store = MemoryBlobStore()
        upload_id = self.add_upload(UploadStatus.PENDING)

        outcome = IngestStage(self.Session, self.queue, blob_store).handle(upload_id, b"jpeg", "my cover.jpg")

        self.assertIs(outcome.kind, OutcomeKind.ADVANCED)
        upload = self.load(upload_id)
        self.assertEqual(upload.status, UploadStatus.PROCESSING)
        self.assertEqual(upload.last_stage, "ingest")
        self.assertEqual(upload.image_url, f"memory://bucket/{upload_id}/my_cover.jpg")
        self.assertEqual(blob_store.objects[f"{upload_id}/my_cover.jpg"], b"jpeg")
        self.assertEqual(self.queue.jobs, [("vision", upload_id, {})])

    def test_duplicate_delivery_is_a_no_op(self) -> None:
        blob_store = MemoryBlobStore()
        upload_id = self.add_upload(UploadStatus.PENDING)
        stage = IngestStage(self.Session, self.queue, blob_store)

        stage.handle(upload_id, b"jpeg", "cover.jpg")
        second = stage.handle(upload_id, b"jpeg", "cover.jpg")

        self.assertIs(second.kind, OutcomeKind.SKIPPED)
        self.assertEqual(self.queue.stage_names, ["vision"])

    def test_missing_upload(self) -> None:
        outcome = IngestStage(self.Session, self.queue, MemoryBlobStore()).handle("nope", b"jpeg", "cover.jpg")

        self.assertIs(outcome.kind, OutcomeKind.MISSING)
        self.assertEqual(self.queue.jobs, [])

    def test_empty_image_fails(self) -> None:
        upload_id = self.add_upload(UploadStatus.PENDING)

        outcome = IngestStage(self.Session, self.queue, MemoryBlobStore()).handle(upload_id, b"", "cover.jpg")

        self.assertIs(outcome.kind, OutcomeKind.FAILED)
        self.assertEqual(self.load(upload_id).status, UploadStatus.FAILED)


class VisionStageTests(StageTestCase):
    after = "ingest"

    def _stage(self, vision: StubVision) -> VisionStage:
        return VisionStage(
            self.Session,
            self.queue,
            MemoryBlobStore(),
            vision,
            confidence_threshold=0.5,
            presign_ttl=60,
        )

    def test_accepts_confident_complete_cover(self) -> None:
        upload_id = self.add_upload(image_url="memory://bucket/u/cover.jpg")
        vision = StubVision(DUNE)

        outcome = self._stage(vision).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.ADVANCED)
        self.assertEqual(vision.urls, ["memory://bucket/u/cover.jpg?ttl=60"])
        upload = self.load(upload_id)
        self.assertEqual((upload.extracted_title, upload.extracted_author), ("Dune", "Frank Herbert"))
        self.assertTrue(upload.extracted_fiction)
        self.assertEqual(upload.vision_payload["title"], "Dune")
        self.assertEqual(upload.last_stage, "vision")
        self.assertEqual(self.queue.stage_names, ["identity"])

    def test_duplicate_delivery_keeps_first_analysis(self) -> None:
        upload_id = self.add_upload(image_url="memory://bucket/u/cover.jpg")
        self._stage(StubVision(DUNE)).handle(upload_id)
        messiah = CoverAnalysis(True, 0.9, "Dune Messiah", "Frank Herbert", True)
        vision = StubVision(messiah)

        second = self._stage(vision).handle(upload_id)

        self.assertIs(second.kind, OutcomeKind.SKIPPED)
        self.assertEqual(vision.urls, [])
        self.assertEqual(self.load(upload_id).extracted_title, "Dune")
        self.assertEqual(self.queue.stage_names, ["identity"])

    def test_delivery_before_ingest_finished_is_skipped(self) -> None:
        upload_id = self.add_upload(image_url="memory://bucket/u/cover.jpg", last_stage=None)
        vision = StubVision(DUNE)

        outcome = self._stage(vision).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.SKIPPED)
        self.assertEqual(vision.urls, [])
        self.assertEqual(self.queue.jobs, [])

    def test_low_confidence_fails_without_enqueue(self) -> None:
        upload_id = self.add_upload(image_url="memory://bucket/u/cover.jpg")
        analysis = CoverAnalysis(True, 0.05, "Dune", "Frank Herbert", True, raw={"confidence": 0.05})

        outcome = self._stage(StubVision(analysis)).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.FAILED)
        upload = self.load(upload_id)
        self.assertEqual(upload.status, UploadStatus.FAILED)
        self.assertEqual(upload.status_message, LOW_CONFIDENCE_MESSAGE)
        self.assertEqual(upload.confidence, 0.05)
        self.assertEqual(upload.vision_payload, {"confidence": 0.05})
        self.assertEqual(self.queue.jobs, [])

    def test_confidence_equal_to_threshold_fails(self) -> None:
        upload_id = self.add_upload(image_url="memory://bucket/u/cover.jpg")
        analysis = CoverAnalysis(True, 0.5, "Dune", "Frank Herbert", True)

        outcome = self._stage(StubVision(analysis)).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.FAILED)

    def test_not_a_book(self) -> None:
        upload_id = self.add_upload(image_url="memory://bucket/u/cover.jpg")

        self._stage(StubVision(CoverAnalysis(False, 0.9))).handle(upload_id)

        self.assertEqual(self.load(upload_id).status_message, NOT_A_BOOK_MESSAGE)

    def test_incomplete_data_fails(self) -> None:
        upload_id = self.add_upload(image_url="memory://bucket/u/cover.jpg")
        analysis = CoverAnalysis(True, 0.9, "Dune", "Frank Herbert", None)

        outcome = self._stage(StubVision(analysis)).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.FAILED)
        self.assertEqual(self.queue.jobs, [])

    def test_known_book_with_content_completes_immediately(self) -> None:
        session = self.Session()
        book = Book(title="Dune", author="Frank Herbert", fiction=True, page_content="A beginning is the time...")
        session.add(book)
        session.commit()
        book_id = book.id
        session.close()
        upload_id = self.add_upload(image_url="memory://bucket/u/cover.jpg")

        outcome = self._stage(StubVision(DUNE)).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.COMPLETED)
        upload = self.load(upload_id)
        self.assertEqual(upload.status, UploadStatus.COMPLETED)
        self.assertEqual(upload.book_id, book_id)
        self.assertEqual(self.queue.jobs, [])

    def test_fault_marks_failed_and_reraises(self) -> None:
        upload_id = self.add_upload(image_url="memory://bucket/u/cover.jpg")
        stage = self._stage(StubVision(error=ConnectionError("vision down")))

        with self.assertRaises(ConnectionError):
            stage.handle(upload_id)

        upload = self.load(upload_id)
        self.assertEqual(upload.status, UploadStatus.FAILED)
        self.assertEqual(upload.status_message, FAULT_MESSAGE)
        self.assertIsNone(upload.extracted_title)

        retry = stage.handle(upload_id)
        self.assertIs(retry.kind, OutcomeKind.SKIPPED)
        self.assertEqual(self.queue.jobs, [])


class IdentityStageTests(StageTestCase):
    after = "vision"

    def test_match_refines_title_and_author(self) -> None:
        upload_id = self.add_upload(extracted_title="dune", extracted_author="herbert", extracted_fiction=True)
        search = StubSearch(BookMatch("Dune", ["Frank Herbert"], "vol1", "9780441172719"))

        outcome = IdentityStage(self.Session, self.queue, search).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.ADVANCED)
        upload = self.load(upload_id)
        self.assertEqual((upload.refined_title, upload.refined_author), ("Dune", "Frank Herbert"))
        self.assertEqual(upload.isbn, "9780441172719")
        self.assertEqual(upload.resolved_author, "Frank Herbert")
        self.assertEqual(self.queue.stage_names, ["acquisition"])

    def test_duplicate_delivery_searches_once(self) -> None:
        upload_id = self.add_upload(extracted_title="Dune", extracted_author="Frank Herbert", extracted_fiction=True)
        search = StubSearch(BookMatch("Dune", ["Frank Herbert"]))
        stage = IdentityStage(self.Session, self.queue, search)

        stage.handle(upload_id)
        second = stage.handle(upload_id)

        self.assertIs(second.kind, OutcomeKind.SKIPPED)
        self.assertEqual(search.queries, [("Dune", "Frank Herbert")])
        self.assertEqual(self.queue.stage_names, ["acquisition"])

    def test_no_match_proceeds_with_cover_values(self) -> None:
        upload_id = self.add_upload(extracted_title="Dune", extracted_author="Frank Herbert", extracted_fiction=True)

        with self.assertLogs("coverscan.services.pipeline.identity", level="WARNING"):
            outcome = IdentityStage(self.Session, self.queue, StubSearch(None)).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.ADVANCED)
        upload = self.load(upload_id)
        self.assertIsNone(upload.refined_title)
        self.assertEqual(upload.resolved_title, "Dune")
        self.assertEqual(upload.status, UploadStatus.PROCESSING)


class AcquisitionStageTests(StageTestCase):
    after = "identity"

    def _stage(self, catalogue: StubCatalogue, max_bytes: int = 100 * MB) -> AcquisitionStage:
        return AcquisitionStage(
            self.Session,
            self.queue,
            catalogue,
            download_dir=self.download_dir,
            fiction_format_order=["epub", "pdf"],
            nonfiction_format_order=["pdf", "epub"],
            max_bytes=max_bytes,
        )

    def _dune_upload(self) -> str:
        return self.add_upload(
            extracted_title="Dune",
            extracted_author="Frank Herbert",
            extracted_fiction=True,
            refined_title="Dune",
            refined_author="Frank Herbert",
        )

    def test_searches_by_title_and_last_name(self) -> None:
        catalogue = StubCatalogue([Candidate("epub", 2 * MB, 600, "abc", "Dune")])
        upload_id = self._dune_upload()

        outcome = self._stage(catalogue).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.ADVANCED)
        self.assertEqual(catalogue.queries, [("Dune", "Herbert")])
        upload = self.load(upload_id)
        self.assertEqual(upload.book_format, "epub")
        self.assertTrue(upload.book_path.endswith("Dune_abc.epub"))
        self.assertTrue(Path(upload.book_path).exists())
        self.assertEqual(self.queue.stage_names, ["extraction"])

    def test_duplicate_delivery_downloads_once(self) -> None:
        catalogue = StubCatalogue([Candidate("epub", 2 * MB, 600, "abc", "Dune")])
        upload_id = self._dune_upload()
        stage = self._stage(catalogue)

        stage.handle(upload_id)
        second = stage.handle(upload_id)

        self.assertIs(second.kind, OutcomeKind.SKIPPED)
        self.assertEqual(catalogue.downloads, ["abc"])
        self.assertEqual(self.queue.stage_names, ["extraction"])

    def test_oversized_only_candidate_is_never_downloaded(self) -> None:
        catalogue = StubCatalogue([Candidate("epub", 150 * MB, 600, "huge", "Dune")])
        upload_id = self._dune_upload()

        outcome = self._stage(catalogue).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.FAILED)
        self.assertEqual(catalogue.downloads, [])
        self.assertEqual(self.load(upload_id).status_message, NO_CANDIDATES_MESSAGE)

    def test_download_error_moves_to_next_candidate(self) -> None:
        catalogue = StubCatalogue(
            [Candidate("epub", 5 * MB, 600, "first", "Dune"), Candidate("epub", 2 * MB, 600, "second", "Dune")],
            failures={"first": DownloadError("mirror offline")},
        )
        upload_id = self._dune_upload()

        outcome = self._stage(catalogue).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.ADVANCED)
        self.assertEqual(catalogue.downloads, ["first", "second"])
        self.assertIn("second", self.load(upload_id).book_path)

    def test_every_download_failing_fails_the_stage(self) -> None:
        catalogue = StubCatalogue(
            [Candidate("pdf", 5 * MB, 600, "only", "Dune")],
            failures={"only": DownloadError("timeout")},
        )
        upload_id = self._dune_upload()

        self._stage(catalogue).handle(upload_id)

        upload = self.load(upload_id)
        self.assertEqual(upload.status, UploadStatus.FAILED)
        self.assertEqual(upload.status_message, ALL_DOWNLOADS_FAILED_MESSAGE)
        self.assertEqual(self.queue.jobs, [])

    def test_too_large_mid_transfer_fails_without_trying_others(self) -> None:
        catalogue = StubCatalogue(
            [Candidate("epub", 5 * MB, 600, "first", "Dune"), Candidate("epub", 2 * MB, 600, "second", "Dune")],
            failures={"first": DownloadTooLargeError("ceiling")},
        )
        upload_id = self._dune_upload()

        outcome = self._stage(catalogue).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.FAILED)
        self.assertEqual(catalogue.downloads, ["first"])
        self.assertEqual(self.load(upload_id).status_message, TOO_LARGE_MESSAGE)


class ExtractionStageTests(StageTestCase):
    after = "acquisition"

    def _stage(self, units: list[str], labels: dict[int, PageClass], reformatter=None) -> ExtractionStage:
        locator = ContentLocator(ScriptedClassifier(labels), LocatorSettings())
        return ExtractionStage(
            self.Session,
            self.queue,
            locator,
            reformatter,
            book_opener=lambda path, book_format: ListBook(units),
        )

    def _ready_upload(self, title: str = "Dune") -> str:
        return self.add_upload(
            extracted_title=title,
            extracted_author="Frank Herbert",
            extracted_fiction=False,
            book_path="/tmp/dune.pdf",
            book_format="pdf",
        )

    def test_repeated_extraction_keeps_one_book_with_latest_content(self) -> None:
        first_id = self._ready_upload()
        second_id = self._ready_upload()

        self._stage([prose("alpha")], {1: PageClass.CONTENT}).handle(first_id)
        self._stage([prose("omega")], {1: PageClass.CONTENT}).handle(second_id)

        session = self.Session()
        books = session.scalars(select(Book)).all()
        self.assertEqual(len(books), 1)
        self.assertEqual(books[0].page_content, prose("omega"))
        linked = session.scalar(select(func.count()).select_from(Upload).where(Upload.book_id == books[0].id))
        self.assertEqual(linked, 2)
        session.close()

    def test_reformatter_output_is_stored(self) -> None:
        upload_id = self._ready_upload()

        self._stage([prose("alpha")], {1: PageClass.CONTENT}, UpperReformatter()).handle(upload_id)

        session = self.Session()
        self.assertEqual(session.scalar(select(Book.page_content)), prose("alpha").upper())
        session.close()

    def test_reformatter_error_keeps_raw_text(self) -> None:
        upload_id = self._ready_upload()

        outcome = self._stage([prose("alpha")], {1: PageClass.CONTENT}, BrokenReformatter()).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.COMPLETED)
        session = self.Session()
        self.assertEqual(session.scalar(select(Book.page_content)), prose("alpha"))
        session.close()

    def test_empty_book_fails(self) -> None:
        upload_id = self._ready_upload()

        outcome = self._stage(["   "], {}).handle(upload_id)

        self.assertIs(outcome.kind, OutcomeKind.FAILED)
        self.assertEqual(self.load(upload_id).status_message, NO_TEXT_MESSAGE)

    def test_duplicate_delivery_is_a_no_op(self) -> None:
        upload_id = self._ready_upload()
        classifier = ScriptedClassifier({1: PageClass.CONTENT})
        stage = ExtractionStage(
            self.Session,
            self.queue,
            ContentLocator(classifier, LocatorSettings()),
            book_opener=lambda path, book_format: ListBook([prose("alpha")]),
        )

        stage.handle(upload_id)
        second = stage.handle(upload_id)

        self.assertIs(second.kind, OutcomeKind.SKIPPED)
        self.assertEqual(classifier.ordinals, [1])
        upload = self.load(upload_id)
        self.assertEqual((upload.status, upload.last_stage), (UploadStatus.COMPLETED, "extraction"))
        self.assertEqual(self.queue.jobs, [])


class StatusMonotonicityTests(StageTestCase):
    def test_terminal_uploads_are_never_touched_again(self) -> None:
        upload_id = self.add_upload(UploadStatus.COMPLETED, extracted_title="Dune", extracted_author="Frank Herbert")

        for stage in (
            IdentityStage(self.Session, self.queue, StubSearch(None)),
            AcquisitionStage(self.Session, self.queue, StubCatalogue([]), download_dir=self.download_dir),
        ):
            self.assertIs(stage.handle(upload_id).kind, OutcomeKind.SKIPPED)

        self.assertEqual(self.load(upload_id).status, UploadStatus.COMPLETED)
        self.assertEqual(self.queue.jobs, [])


class EndToEndTests(StageTestCase):
    def test_dune_photo_becomes_chapter_four(self) -> None:
        units = [
            "DUNE",
            prose("chaptertwo"),
            prose("partone"),
            prose("chapterfour"),
        ]
        classifier = ScriptedClassifier({2: PageClass.CONTENT, 4: PageClass.CONTENT})
        catalogue = StubCatalogue(
            [
                Candidate("pdf", 9 * MB, 900, "pdfcopy", "Dune"),
                Candidate("epub", 1 * MB, 0, "smallepub", "Dune"),
                Candidate("epub", 3 * MB, 0, "bigepub", "Dune"),
            ]
        )
        opened: list[tuple[str, str]] = []

        def open_book(path, book_format):
            opened.append((path, book_format))
            return ListBook(units)

        stages = {
            stage.name: stage
            for stage in (
                IngestStage(self.Session, self.queue, MemoryBlobStore()),
                VisionStage(self.Session, self.queue, MemoryBlobStore(), StubVision(DUNE), 0.5, 60),
                IdentityStage(self.Session, self.queue, StubSearch(BookMatch("Dune", ["Frank Herbert"]))),
                AcquisitionStage(
                    self.Session,
                    self.queue,
                    catalogue,
                    download_dir=self.download_dir,
                    fiction_format_order=["epub", "pdf"],
                    nonfiction_format_order=["pdf", "epub"],
                    max_bytes=100 * MB,
                ),
                ExtractionStage(
                    self.Session,
                    self.queue,
                    ContentLocator(classifier, LocatorSettings()),
                    None,
                    book_opener=open_book,
                ),
            )
        }
        upload_id = self.add_upload(UploadStatus.PENDING)

        outcome = stages["ingest"].handle(upload_id, b"jpeg", "dune.jpg")
        delivered = 0
        while delivered < len(self.queue.jobs):
            stage_name, job_upload_id, _ = self.queue.jobs[delivered]
            delivered += 1
            outcome = stages[stage_name].handle(job_upload_id)

        self.assertIs(outcome.kind, OutcomeKind.COMPLETED)
        self.assertEqual(self.queue.stage_names, ["vision", "identity", "acquisition", "extraction"])
        self.assertEqual(catalogue.downloads, ["bigepub"])
        self.assertEqual(opened[0][1], "epub")
        self.assertEqual(classifier.ordinals, [2, 3, 4])
        upload = self.load(upload_id)
        self.assertEqual(upload.status, UploadStatus.COMPLETED)
        session = self.Session()
        book = session.get(Book, upload.book_id)
        self.assertEqual((book.title, book.author, book.fiction), ("Dune", "Frank Herbert", True))
        self.assertEqual(book.page_content, prose("chapterfour"))
        session.close()


class StageLoggingTests(unittest.TestCase):
    def test_logs_start_and_outcome(self) -> None:
        def handler(upload_id):
            return StageOutcome(OutcomeKind.ADVANCED, upload_id)

        wrapped = with_stage_logging("vision", handler)
        with self.assertLogs("coverscan.services.pipeline.base.vision", level="INFO") as captured:
            wrapped("u1")

        self.assertIn("Starting vision for upload u1", captured.output[0])
        self.assertIn("advanced", captured.output[1])

    def test_logs_and_reraises_failures(self) -> None:
        def handler(upload_id):
            raise ValueError("boom")

        wrapped = with_stage_logging("acquisition", handler)
        with self.assertLogs("coverscan.services.pipeline.base.acquisition", level="ERROR") as captured:
            with self.assertRaises(ValueError):
                wrapped("u1")

        self.assertIn("Failed acquisition for upload u1", captured.output[0])


def test_author_last_name():
    assert author_last_name("Frank Herbert") == "Herbert"
    assert author_last_name("Ursula K. Le Guin") == "Guin"
    assert author_last_name("  ") == ""


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    unittest.main()
