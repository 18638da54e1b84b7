import enum
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from coverscan.models.entities import Upload, UploadStatus

STAGE_INGEST = "ingest"
STAGE_VISION = "vision"
STAGE_IDENTITY = "identity"
STAGE_ACQUISITION = "acquisition"
STAGE_EXTRACTION = "extraction"

STAGE_ORDER = (STAGE_INGEST, STAGE_VISION, STAGE_IDENTITY, STAGE_ACQUISITION, STAGE_EXTRACTION)

FAULT_MESSAGE = "Something went wrong while processing this photo. Please try again."


class OutcomeKind(str, enum.Enum):
    ADVANCED = "advanced"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    MISSING = "missing"


@dataclass(slots=True)
class StageOutcome:
    kind: OutcomeKind
    upload_id: str
    message: str | None = None


class StageQueue(ABC):
    @abstractmethod
    def enqueue(self, stage_name: str, upload_id: str, **payload) -> None:
        ...


class Stage(ABC):
    """
    Shared contract for every pipeline stage.

    ``handle`` loads the upload and skips it unless it sits in ``expected_status``
    with ``previous_stage`` as its last finished stage. It then runs the stage
    body, commits, and enqueues ``next_stage`` when the body advanced. Business
    failures come back as ``FAILED`` outcomes. Any exception marks the upload
    failed in a fresh transaction and is re-raised so the queue can apply its
    retry policy.
    """

    name: str
    previous_stage: str | None = None
    next_stage: str | None = None
    expected_status: UploadStatus = UploadStatus.PROCESSING

    def __init__(self, session_factory: sessionmaker[Session], queue: StageQueue) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self._logger = logging.getLogger(type(self).__module__)

    def handle(self, upload_id: str) -> StageOutcome:
        return self._execute(upload_id, self.run)

    @abstractmethod
    def run(self, session: Session, upload: Upload) -> StageOutcome:
        ...

    def _execute(self, upload_id: str, work: Callable[[Session, Upload], StageOutcome]) -> StageOutcome:
        session = self._session_factory()
        try:
            upload = session.get(Upload, upload_id)
            if upload is None:
                self._logger.warning("Upload %s not found; dropping %s job", upload_id, self.name)
                return StageOutcome(OutcomeKind.MISSING, upload_id)
            if upload.status != self.expected_status:
                self._logger.info(
                    "Upload %s is %s, expected %s; skipping %s",
                    upload_id,
                    upload.status.value,
                    self.expected_status.value,
                    self.name,
                )
                return StageOutcome(OutcomeKind.SKIPPED, upload_id)
            if upload.last_stage != self.previous_stage:
                self._logger.info(
                    "Upload %s last finished %s, expected %s; skipping %s",
                    upload_id,
                    upload.last_stage,
                    self.previous_stage,
                    self.name,
                )
                return StageOutcome(OutcomeKind.SKIPPED, upload_id)

            try:
                outcome = work(session, upload)
                session.commit()
                if outcome.kind is OutcomeKind.ADVANCED and self.next_stage:
                    self._queue.enqueue(self.next_stage, upload_id)
            except Exception:
                session.rollback()
                self._mark_failed_after_fault(upload_id)
                raise
            return outcome
        finally:
            session.close()

    def advance(self, upload: Upload, message: str | None = None) -> StageOutcome:
        upload.status = UploadStatus.PROCESSING
        upload.last_stage = self.name
        return StageOutcome(OutcomeKind.ADVANCED, upload.id, message)

    def complete(self, upload: Upload, message: str | None = None) -> StageOutcome:
        upload.status = UploadStatus.COMPLETED
        upload.last_stage = self.name
        upload.status_message = None
        return StageOutcome(OutcomeKind.COMPLETED, upload.id, message)

    def fail(self, upload: Upload, message: str) -> StageOutcome:
        self._logger.warning("Upload %s failed in %s: %s", upload.id, self.name, message)
        upload.status = UploadStatus.FAILED
        upload.status_message = message
        return StageOutcome(OutcomeKind.FAILED, upload.id, message)

    def _mark_failed_after_fault(self, upload_id: str) -> None:
        session = self._session_factory()
        try:
            upload = session.get(Upload, upload_id)
            if upload is None or upload.status.is_terminal:
                return
            upload.status = UploadStatus.FAILED
            upload.status_message = FAULT_MESSAGE
            session.commit()
        except Exception:
            session.rollback()
            self._logger.exception("Failed to mark upload %s as failed after a %s fault", upload_id, self.name)
        finally:
            session.close()


def with_stage_logging(stage_name: str, handler: Callable[..., StageOutcome]) -> Callable[..., StageOutcome]:
    """Wrap a stage handler with start, outcome, duration and failure logging."""
    logger = logging.getLogger(f"{__name__}.{stage_name}")

    def wrapped(upload_id: str, *args, **kwargs) -> StageOutcome:
        started = time.perf_counter()
        logger.info("Starting %s for upload %s", stage_name, upload_id)
        try:
            outcome = handler(upload_id, *args, **kwargs)
        except Exception:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.exception("Failed %s for upload %s after %.2fms", stage_name, upload_id, elapsed_ms)
            raise
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Completed %s for upload %s: %s in %.2fms",
            stage_name,
            upload_id,
            outcome.kind.value,
            elapsed_ms,
        )
        return outcome

    return wrapped
