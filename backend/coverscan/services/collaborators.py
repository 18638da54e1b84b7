"""Contracts for the external services the pipeline depends on.

Stage code only talks to these interfaces; concrete adapters live beside this
module (S3, OpenAI, Google Books, Library Genesis) and tests substitute small
in-memory fakes.
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class PageClass(str, enum.Enum):
    CONTENT = "CONTENT"
    FRONTMATTER = "FRONTMATTER"


@dataclass(slots=True)
class CoverAnalysis:
    is_book: bool
    confidence: float
    title: str | None = None
    author: str | None = None
    fiction: bool | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return bool(self.title) and bool(self.author) and self.fiction is not None


@dataclass(slots=True)
class BookMatch:
    title: str
    authors: list[str]
    volume_id: str | None = None
    isbn: str | None = None

    @property
    def primary_author(self) -> str | None:
        return self.authors[0] if self.authors else None


@dataclass(slots=True)
class Candidate:
    format: str
    size_bytes: int
    page_count: int
    download_ref: str
    title: str = ""


class BlobStore(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes) -> str:
        ...

    @abstractmethod
    def get(self, url: str) -> bytes:
        ...

    @abstractmethod
    def presign(self, url: str, ttl: int) -> str:
        ...


class VisionClassifier(ABC):
    @abstractmethod
    def analyze_cover(self, image_url: str) -> CoverAnalysis:
        ...


class BibliographicSearch(ABC):
    @abstractmethod
    def search(self, title: str, author: str) -> BookMatch | None:
        ...


class CatalogueScraper(ABC):
    @abstractmethod
    def search(self, title: str, author_last_name: str) -> list[Candidate]:
        ...

    @abstractmethod
    def download(self, download_ref: str, dest_path: Path) -> Path:
        """Download to ``dest_path``; raise ``DownloadTooLargeError`` past the size ceiling."""


class TextClassifier(ABC):
    @abstractmethod
    def classify(self, sample: str, ordinal: int, is_fiction: bool) -> PageClass:
        ...


class TextReformatter(ABC):
    @abstractmethod
    def format(self, raw_text: str) -> str:
        ...
