import base64
import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from coverscan.api.schemas import BookItem, UploadItem, UploadSummary
from coverscan.config import get_settings
from coverscan.db.session import get_session
from coverscan.dependencies import stage_queue
from coverscan.models.entities import Upload, UploadStatus
from coverscan.services.pipeline.base import STAGE_INGEST, StageQueue

router = APIRouter(prefix="/uploads", tags=["uploads"])
logger = logging.getLogger(__name__)


@router.post(
    "",
    response_model=UploadItem,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_upload(
    file: UploadFile = File(...),
    db: Session = Depends(get_session),
    queue: StageQueue = Depends(stage_queue),
):
    if not (file.content_type or "").startswith("image/"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only image uploads are supported.")

    image = await file.read()
    if not image:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="The uploaded image is empty.")
    max_bytes = get_settings().max_upload_bytes
    if len(image) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Images must be at most {max_bytes} bytes.",
        )

    upload = Upload(status=UploadStatus.PENDING)
    db.add(upload)
    db.commit()

    try:
        queue.enqueue(
            STAGE_INGEST,
            upload.id,
            image_b64=base64.b64encode(image).decode("ascii"),
            file_name=file.filename or "upload",
        )
    except Exception as exc:
        logger.exception("Could not enqueue ingest for upload %s", upload.id)
        upload.status = UploadStatus.FAILED
        upload.status_message = "The upload could not be queued. Please try again."
        db.commit()
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Queue unavailable.") from exc

    return _upload_to_schema(upload)


@router.get(
    "",
    response_model=list[UploadSummary],
)
def list_uploads(
    limit: int = 50,
    db: Session = Depends(get_session),
):
    stmt = select(Upload).order_by(Upload.created_at.desc()).limit(min(max(limit, 1), 200))
    return [
        UploadSummary(
            id=upload.id,
            status=upload.status.value,
            status_message=upload.status_message,
            title=upload.resolved_title,
            author=upload.resolved_author,
            created_at=upload.created_at,
        )
        for upload in db.execute(stmt).scalars().all()
    ]


@router.get(
    "/{upload_id}",
    response_model=UploadItem,
)
def get_upload(
    upload_id: str,
    db: Session = Depends(get_session),
):
    stmt = select(Upload).where(Upload.id == upload_id).options(selectinload(Upload.book))
    upload = db.execute(stmt).scalar_one_or_none()
    if not upload:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload not found.")
    return _upload_to_schema(upload)


def _upload_to_schema(upload: Upload) -> UploadItem:
    book = None
    if upload.book is not None:
        book = BookItem(
            id=upload.book.id,
            title=upload.book.title,
            author=upload.book.author,
            fiction=upload.book.fiction,
            page_content=upload.book.page_content,
        )
    return UploadItem(
        id=upload.id,
        status=upload.status.value,
        status_message=upload.status_message,
        last_stage=upload.last_stage,
        image_url=upload.image_url,
        extracted_title=upload.extracted_title,
        extracted_author=upload.extracted_author,
        extracted_fiction=upload.extracted_fiction,
        confidence=upload.confidence,
        refined_title=upload.refined_title,
        refined_author=upload.refined_author,
        isbn=upload.isbn,
        book_format=upload.book_format,
        book=book,
        created_at=upload.created_at,
        updated_at=upload.updated_at,
    )
