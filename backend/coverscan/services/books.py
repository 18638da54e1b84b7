import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coverscan.models.entities import Book

logger = logging.getLogger(__name__)


def find_book(session: Session, title: str, author: str, fiction: bool) -> Book | None:
    return session.scalar(
        select(Book).where(Book.title == title, Book.author == author, Book.fiction == fiction)
    )


def upsert_book(session: Session, title: str, author: str, fiction: bool, page_content: str) -> Book:
    """
    Insert or update the Book identified by ``(title, author, fiction)``.

    The insert runs inside a savepoint so a concurrent writer winning the unique
    constraint turns into an update of its row instead of an error.
    """
    book = find_book(session, title, author, fiction)
    if book is None:
        try:
            with session.begin_nested():
                book = Book(title=title, author=author, fiction=fiction, page_content=page_content)
                session.add(book)
            logger.info("Created book %s for %r by %r", book.id, title, author)
            return book
        except IntegrityError:
            logger.info("Book %r by %r was created concurrently; updating it", title, author)
            book = find_book(session, title, author, fiction)
            if book is None:
                raise

    book.page_content = page_content
    logger.info("Updated page content for book %s", book.id)
    return book
