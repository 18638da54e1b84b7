from sqlalchemy.orm import Session, sessionmaker

from coverscan.config import get_settings
from coverscan.models.entities import Upload
from coverscan.services.books import find_book
from coverscan.services.collaborators import BlobStore, CoverAnalysis, VisionClassifier
from coverscan.services.pipeline.base import STAGE_IDENTITY, STAGE_INGEST, STAGE_VISION, Stage, StageOutcome, StageQueue

NOT_A_BOOK_MESSAGE = "No book was detected in this photo. Please retake it with the cover in frame."
LOW_CONFIDENCE_MESSAGE = (
    "We could not confidently recognise a book cover. Please retake the photo in better light, facing the cover."
)
INCOMPLETE_MESSAGE = "A book was detected but its title or author could not be read. Please retake the photo closer."


class VisionStage(Stage):
    """
    Classify the stored cover photo.

    The vision response is persisted whatever the verdict. The upload advances only
    when the image is a book, the confidence clears the threshold, and title,
    author and fiction flag were all read. When a Book with the same identity
    already holds extracted content the upload is linked to it and completed.
    """

    name = STAGE_VISION
    previous_stage = STAGE_INGEST
    next_stage = STAGE_IDENTITY

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        queue: StageQueue,
        blob_store: BlobStore,
        classifier: VisionClassifier,
        confidence_threshold: float | None = None,
        presign_ttl: int | None = None,
    ) -> None:
        super().__init__(session_factory, queue)
        settings = get_settings()
        self._blob_store = blob_store
        self._classifier = classifier
        self._threshold = (
            settings.vision_confidence_threshold if confidence_threshold is None else confidence_threshold
        )
        self._presign_ttl = settings.presign_ttl_seconds if presign_ttl is None else presign_ttl

    def run(self, session: Session, upload: Upload) -> StageOutcome:
        if not upload.image_url:
            return self.fail(upload, "No stored image was found for this upload.")

        signed_url = self._blob_store.presign(upload.image_url, self._presign_ttl)
        analysis = self._classifier.analyze_cover(signed_url)
        self._record(upload, analysis)

        if not analysis.is_book:
            return self.fail(upload, NOT_A_BOOK_MESSAGE)
        if analysis.confidence <= self._threshold:
            self._logger.info(
                "Upload %s confidence %.2f is not above %.2f", upload.id, analysis.confidence, self._threshold
            )
            return self.fail(upload, LOW_CONFIDENCE_MESSAGE)
        if not analysis.is_complete:
            return self.fail(upload, INCOMPLETE_MESSAGE)

        existing = find_book(session, analysis.title, analysis.author, analysis.fiction)
        if existing is not None and existing.page_content:
            self._logger.info("Upload %s matches processed book %s; skipping download", upload.id, existing.id)
            upload.book = existing
            return self.complete(upload)

        return self.advance(upload)

    @staticmethod
    def _record(upload: Upload, analysis: CoverAnalysis) -> None:
        upload.vision_payload = analysis.raw or None
        upload.confidence = analysis.confidence
        upload.extracted_title = analysis.title
        upload.extracted_author = analysis.author
        upload.extracted_fiction = analysis.fiction
