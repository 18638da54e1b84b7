from collections.abc import Callable

from sqlalchemy.orm import Session, sessionmaker

from coverscan.models.entities import Upload
from coverscan.services.books import upsert_book
from coverscan.services.collaborators import TextReformatter
from coverscan.services.formats import BookUnits, open_book
from coverscan.services.locator import ContentLocator
from coverscan.services.pipeline.base import STAGE_ACQUISITION, STAGE_EXTRACTION, Stage, StageOutcome, StageQueue

NO_TEXT_MESSAGE = "The downloaded book had no extractable text."


class ExtractionStage(Stage):
    """
    Locate the first real page of the downloaded book and store it on the Book.

    Reformatting is optional and never blocks completion: a reformatter error
    keeps the raw located text.
    """

    name = STAGE_EXTRACTION
    previous_stage = STAGE_ACQUISITION

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        queue: StageQueue,
        locator: ContentLocator,
        reformatter: TextReformatter | None = None,
        book_opener: Callable[[str, str | None], BookUnits] = open_book,
    ) -> None:
        super().__init__(session_factory, queue)
        self._locator = locator
        self._reformatter = reformatter
        self._open_book = book_opener

    def run(self, session: Session, upload: Upload) -> StageOutcome:
        if not upload.book_path:
            return self.fail(upload, "No downloaded book was found for this upload.")
        title = upload.resolved_title
        author = upload.resolved_author
        if not title or not author:
            return self.fail(upload, "The book title and author are missing. Please retake the photo.")

        fiction = bool(upload.extracted_fiction)
        book_units = self._open_book(upload.book_path, upload.book_format)
        located = self._locator.locate(book_units, fiction)
        text = located.text.strip()
        if not text:
            return self.fail(upload, NO_TEXT_MESSAGE)
        self._logger.info(
            "Upload %s: using unit %d of %d%s",
            upload.id,
            located.ordinal,
            book_units.unit_count(),
            " (fallback)" if located.is_fallback else "",
        )

        book = upsert_book(session, title, author, fiction, self._reformat(text))
        upload.book = book
        return self.complete(upload)

    def _reformat(self, text: str) -> str:
        if self._reformatter is None:
            return text
        try:
            formatted = self._reformatter.format(text)
        except Exception:
            self._logger.warning("Reformatting failed; keeping raw text", exc_info=True)
            return text
        return formatted.strip() or text
