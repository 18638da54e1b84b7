from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from coverscan.config import get_settings
from coverscan.errors import DownloadError, DownloadTooLargeError
from coverscan.models.entities import Upload
from coverscan.services.collaborators import Candidate, CatalogueScraper
from coverscan.services.libgen import SUPPORTED_FORMATS
from coverscan.services.pipeline.base import (
    STAGE_ACQUISITION,
    STAGE_EXTRACTION,
    STAGE_IDENTITY,
    Stage,
    StageOutcome,
    StageQueue,
)
from coverscan.utils.text import safe_filename

NO_CANDIDATES_MESSAGE = "We could not find a downloadable copy of this book."
ALL_DOWNLOADS_FAILED_MESSAGE = "We found this book but every download attempt failed."
TOO_LARGE_MESSAGE = "The available copy of this book is too large to process."


def author_last_name(author: str) -> str:
    parts = author.split()
    return parts[-1] if parts else ""


def rank_candidates(
    candidates: list[Candidate],
    fiction: bool,
    format_order: list[str],
    max_bytes: int,
) -> list[Candidate]:
    """
    Order catalogue candidates for download.

    Candidates in an unsupported format, outside ``format_order`` or above
    ``max_bytes`` are dropped. The rest are grouped by their position in
    ``format_order``; within a format non-fiction prefers the most pages and
    fiction the largest file.
    """
    allowed = [fmt for fmt in format_order if fmt in SUPPORTED_FORMATS]
    eligible = [
        candidate
        for candidate in candidates
        if candidate.format.lower() in allowed and candidate.size_bytes <= max_bytes
    ]

    def sort_key(candidate: Candidate) -> tuple[int, int]:
        secondary = candidate.size_bytes if fiction else candidate.page_count
        return allowed.index(candidate.format.lower()), -secondary

    return sorted(eligible, key=sort_key)


class AcquisitionStage(Stage):
    name = STAGE_ACQUISITION
    previous_stage = STAGE_IDENTITY
    next_stage = STAGE_EXTRACTION

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        queue: StageQueue,
        catalogue: CatalogueScraper,
        download_dir: str | Path | None = None,
        fiction_format_order: list[str] | None = None,
        nonfiction_format_order: list[str] | None = None,
        max_bytes: int | None = None,
    ) -> None:
        super().__init__(session_factory, queue)
        settings = get_settings()
        self._catalogue = catalogue
        self._download_dir = Path(download_dir or settings.download_dir)
        self._fiction_order = fiction_format_order or settings.fiction_format_order
        self._nonfiction_order = nonfiction_format_order or settings.nonfiction_format_order
        self._max_bytes = max_bytes or settings.max_download_bytes

    def run(self, session: Session, upload: Upload) -> StageOutcome:
        title = upload.resolved_title
        author = upload.resolved_author
        if not title or not author:
            return self.fail(upload, "The book title and author are missing. Please retake the photo.")

        fiction = bool(upload.extracted_fiction)
        candidates = self._catalogue.search(title, author_last_name(author))
        format_order = self._fiction_order if fiction else self._nonfiction_order
        ranked = rank_candidates(candidates, fiction, format_order, self._max_bytes)
        self._logger.info(
            "Upload %s: %d of %d candidates eligible for download", upload.id, len(ranked), len(candidates)
        )
        if not ranked:
            return self.fail(upload, NO_CANDIDATES_MESSAGE)

        for candidate in ranked:
            fmt = candidate.format.lower()
            dest_path = self._download_dir / f"{safe_filename(candidate.title or title)}_{candidate.download_ref}.{fmt}"
            try:
                path = self._catalogue.download(candidate.download_ref, dest_path)
            except DownloadTooLargeError as exc:
                self._logger.warning("Discarded %s: %s", candidate.download_ref, exc)
                return self.fail(upload, TOO_LARGE_MESSAGE)
            except DownloadError as exc:
                self._logger.warning("Download of %s failed, trying next candidate: %s", candidate.download_ref, exc)
                continue

            upload.book_path = str(path)
            upload.book_format = fmt
            self._logger.info("Upload %s acquired %s copy at %s", upload.id, fmt, path)
            return self.advance(upload)

        return self.fail(upload, ALL_DOWNLOADS_FAILED_MESSAGE)
