from sqlalchemy.orm import Session, sessionmaker

from coverscan.models.entities import Upload
from coverscan.services.collaborators import BibliographicSearch
from coverscan.services.pipeline.base import (
    STAGE_ACQUISITION,
    STAGE_IDENTITY,
    STAGE_VISION,
    Stage,
    StageOutcome,
    StageQueue,
)


class IdentityStage(Stage):
    name = STAGE_IDENTITY
    previous_stage = STAGE_VISION
    next_stage = STAGE_ACQUISITION

    def __init__(self, session_factory: sessionmaker[Session], queue: StageQueue, search: BibliographicSearch) -> None:
        super().__init__(session_factory, queue)
        self._search = search

    def run(self, session: Session, upload: Upload) -> StageOutcome:
        if not upload.extracted_title or not upload.extracted_author:
            return self.fail(upload, "The book title and author are missing. Please retake the photo.")

        match = self._search.search(upload.extracted_title, upload.extracted_author)
        if match is None:
            # Unrefined values flow downstream through resolved_title / resolved_author.
            self._logger.warning(
                "No bibliographic match for %r by %r; continuing with cover values",
                upload.extracted_title,
                upload.extracted_author,
            )
            return self.advance(upload)

        upload.refined_title = match.title or None
        upload.refined_author = match.primary_author
        upload.isbn = match.isbn
        self._logger.info("Upload %s resolved to %r by %r", upload.id, upload.refined_title, upload.refined_author)
        return self.advance(upload)
