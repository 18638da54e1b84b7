from datetime import datetime

from pydantic import BaseModel


class BookItem(BaseModel):
    id: str
    title: str
    author: str
    fiction: bool
    page_content: str | None = None


class UploadSummary(BaseModel):
    id: str
    status: str
    status_message: str | None = None
    title: str | None = None
    author: str | None = None
    created_at: datetime


class UploadItem(BaseModel):
    id: str
    status: str
    status_message: str | None = None
    last_stage: str | None = None
    image_url: str | None = None
    extracted_title: str | None = None
    extracted_author: str | None = None
    extracted_fiction: bool | None = None
    confidence: float | None = None
    refined_title: str | None = None
    refined_author: str | None = None
    isbn: str | None = None
    book_format: str | None = None
    book: BookItem | None = None
    created_at: datetime
    updated_at: datetime
