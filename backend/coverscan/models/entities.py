import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Enum, Float, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from coverscan.db.session import Base
from coverscan.errors import InvalidStatusTransition


class UploadStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.COMPLETED, UploadStatus.FAILED)


def _new_id() -> str:
    return str(uuid4())


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (UniqueConstraint("title", "author", "fiction", name="uq_books_title_author_fiction"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    author: Mapped[str] = mapped_column(String(256), nullable=False)
    fiction: Mapped[bool] = mapped_column(Boolean, nullable=False)
    page_content: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    uploads: Mapped[list["Upload"]] = relationship(back_populates="book")


class Upload(Base):
    __tablename__ = "uploads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    status: Mapped[UploadStatus] = mapped_column(
        Enum(UploadStatus, values_callable=lambda members: [member.value for member in members]),
        nullable=False,
        default=UploadStatus.PENDING,
    )
    status_message: Mapped[str | None] = mapped_column(Text)
    last_stage: Mapped[str | None] = mapped_column(String(32))
    image_url: Mapped[str | None] = mapped_column(String(1024))

    extracted_title: Mapped[str | None] = mapped_column(String(512))
    extracted_author: Mapped[str | None] = mapped_column(String(256))
    extracted_fiction: Mapped[bool | None] = mapped_column(Boolean)
    confidence: Mapped[float | None] = mapped_column(Float)
    vision_payload: Mapped[dict | None] = mapped_column(JSON)

    refined_title: Mapped[str | None] = mapped_column(String(512))
    refined_author: Mapped[str | None] = mapped_column(String(256))
    isbn: Mapped[str | None] = mapped_column(String(32))

    book_path: Mapped[str | None] = mapped_column(String(1024))
    book_format: Mapped[str | None] = mapped_column(String(16))

    book_id: Mapped[str | None] = mapped_column(ForeignKey("books.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    book: Mapped[Book | None] = relationship(back_populates="uploads")

    @validates("status")
    def _check_status(self, key: str, value: UploadStatus | str) -> UploadStatus:
        new_status = UploadStatus(value)
        current = self.status
        if current is None:
            return new_status
        current = UploadStatus(current)
        if current.is_terminal and new_status != current:
            raise InvalidStatusTransition(f"Upload {self.id} is {current.value}; cannot move to {new_status.value}.")
        if new_status == UploadStatus.PENDING and current != UploadStatus.PENDING:
            raise InvalidStatusTransition(f"Upload {self.id} cannot return to pending from {current.value}.")
        return new_status

    @property
    def resolved_title(self) -> str | None:
        return self.refined_title or self.extracted_title

    @property
    def resolved_author(self) -> str | None:
        return self.refined_author or self.extracted_author
