from functools import partial

from sqlalchemy.orm import Session, sessionmaker

from coverscan.models.entities import Upload, UploadStatus
from coverscan.services.collaborators import BlobStore
from coverscan.services.pipeline.base import STAGE_INGEST, STAGE_VISION, Stage, StageOutcome, StageQueue
from coverscan.services.storage import sanitize_key


class IngestStage(Stage):
    """Store the uploaded photo and move the upload into processing."""

    name = STAGE_INGEST
    next_stage = STAGE_VISION
    expected_status = UploadStatus.PENDING

    def __init__(self, session_factory: sessionmaker[Session], queue: StageQueue, blob_store: BlobStore) -> None:
        super().__init__(session_factory, queue)
        self._blob_store = blob_store

    def handle(self, upload_id: str, image: bytes = b"", file_name: str = "upload") -> StageOutcome:
        return self._execute(upload_id, partial(self.run, image=image, file_name=file_name))

    def run(self, session: Session, upload: Upload, image: bytes = b"", file_name: str = "upload") -> StageOutcome:
        if not image:
            return self.fail(upload, "The uploaded image was empty. Please take the photo again.")
        key = f"{upload.id}/{sanitize_key(file_name)}"
        upload.image_url = self._blob_store.put(key, image)
        self._logger.info("Stored %d bytes for upload %s at %s", len(image), upload.id, upload.image_url)
        return self.advance(upload)
