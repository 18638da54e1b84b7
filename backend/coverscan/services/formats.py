"""Page-unit access for downloaded books.

A PDF exposes its literal pages. An EPUB exposes its page map when the
publisher shipped one, otherwise its reading-order chapters with frontmatter
chapters (judged by table-of-contents titles) filtered out.
"""

from __future__ import annotations

import enum
import logging
import posixpath
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import ebooklib
from bs4 import BeautifulSoup
from ebooklib import epub
from pypdf import PdfReader

from coverscan.errors import UnsupportedFormatError
from coverscan.utils.text import first_page_excerpt, looks_like_frontmatter_title, strip_html

PAGE_MAP_MEDIA_TYPE = "application/oebps-page-map+xml"


class BookFormat(str, enum.Enum):
    PDF = "pdf"
    EPUB = "epub"

    @classmethod
    def from_path(cls, path: str | Path) -> BookFormat:
        suffix = Path(path).suffix.lower().lstrip(".")
        try:
            return cls(suffix)
        except ValueError as exc:
            raise UnsupportedFormatError(f"Unsupported file format: .{suffix}") from exc


class BookUnits(ABC):
    """Ordered, 1-based sequence of content units."""

    format: BookFormat

    @abstractmethod
    def unit_count(self) -> int:
        ...

    @abstractmethod
    def unit_text(self, ordinal: int) -> str:
        ...

    def _check_ordinal(self, ordinal: int) -> None:
        count = self.unit_count()
        if ordinal < 1 or ordinal > count:
            raise IndexError(f"Unit {ordinal} out of range; book has {count} units.")


class PdfBook(BookUnits):
    format = BookFormat.PDF

    def __init__(self, path: str | Path) -> None:
        self._reader = PdfReader(str(path))

    def unit_count(self) -> int:
        return len(self._reader.pages)

    def unit_text(self, ordinal: int) -> str:
        self._check_ordinal(ordinal)
        text = self._reader.pages[ordinal - 1].extract_text() or ""
        return text.strip()


@dataclass(slots=True)
class PageMarker:
    href: str
    label: str


class EpubBook(BookUnits):
    format = BookFormat.EPUB

    def __init__(self, path: str | Path) -> None:
        self._logger = logging.getLogger(__name__)
        self._book = epub.read_epub(str(path))
        self._documents = self._spine_documents()
        self._page_markers = self._page_markers_from_book()
        if self._page_markers:
            self._logger.debug("Using %d page markers from %s", len(self._page_markers), path)
            self._chapters: list[tuple[epub.EpubItem, str | None]] = []
        else:
            self._chapters = self._content_chapters()
            self._logger.debug("Using %d chapters from %s", len(self._chapters), path)

    @property
    def uses_page_map(self) -> bool:
        return bool(self._page_markers)

    def unit_count(self) -> int:
        return len(self._page_markers) if self._page_markers else len(self._chapters)

    def unit_text(self, ordinal: int) -> str:
        self._check_ordinal(ordinal)
        if self._page_markers:
            return self._page_text(self._page_markers[ordinal - 1])
        chapter, start = self._chapters[ordinal - 1]
        markup = chapter.get_content().decode("utf-8", errors="replace")
        if start:
            markup = _from_anchor(markup, start)
        return first_page_excerpt(strip_html(markup))

    def _spine_documents(self) -> list[epub.EpubItem]:
        documents = []
        for entry in self._book.spine:
            idref, linear = entry if isinstance(entry, tuple) else (entry, "yes")
            item = self._book.get_item_with_id(idref)
            if item is None or isinstance(item, epub.EpubNav):
                continue
            if item.get_type() != ebooklib.ITEM_DOCUMENT or linear == "no":
                continue
            documents.append(item)
        return documents

    def _content_chapters(self) -> list[tuple[epub.EpubItem, str | None]]:
        """
        Spine documents minus those whose table-of-contents entries are all frontmatter.

        A document shared by frontmatter and content entries is kept and starts at
        its first content anchor.
        """
        entries = self._toc_entries()
        chapters: list[tuple[epub.EpubItem, str | None]] = []
        for document in self._documents:
            targeting = [
                (title, href) for title, href in entries if _href_in(document.get_name(), {_strip_fragment(href)})
            ]
            content_hrefs = [href for title, href in targeting if not looks_like_frontmatter_title(title)]
            if targeting and not content_hrefs:
                continue
            start = None
            if targeting and looks_like_frontmatter_title(targeting[0][0]):
                start = _fragment(content_hrefs[0])
            chapters.append((document, start))
        skipped = len(self._documents) - len(chapters)
        if skipped:
            self._logger.debug("Skipped %d frontmatter chapters listed in the table of contents", skipped)
        return chapters or [(document, None) for document in self._documents]

    def _toc_entries(self) -> list[tuple[str, str]]:
        entries: list[tuple[str, str]] = []

        def walk(nodes) -> None:
            for node in nodes:
                if isinstance(node, tuple) and len(node) == 2:
                    section, children = node
                    if getattr(section, "href", None):
                        entries.append((section.title or "", section.href))
                    walk(children)
                elif isinstance(node, (list, tuple)):
                    walk(node)
                elif getattr(node, "href", None):
                    entries.append((node.title or "", node.href))

        walk(self._book.toc or [])
        if not entries:
            for nav in self._book.get_items():
                if isinstance(nav, epub.EpubNav):
                    entries.extend(_nav_links(nav.get_content(), "toc", nav.get_name()))
        return entries

    def _page_markers_from_book(self) -> list[PageMarker]:
        for item in self._book.get_items():
            if item.media_type == PAGE_MAP_MEDIA_TYPE:
                markers = parse_page_map(item.get_content(), item.get_name())
                if markers:
                    return markers

        for item in self._book.get_items():
            if isinstance(item, epub.EpubNav):
                links = _nav_links(item.get_content(), "page-list", item.get_name())
                if links:
                    return [PageMarker(href=href, label=label) for label, href in links]

        for item in self._book.get_items():
            if item.media_type == "application/x-dtbncx+xml":
                markers = parse_ncx_page_list(item.get_content(), item.get_name())
                if markers:
                    return markers
        return []

    def _page_text(self, marker: PageMarker) -> str:
        base = _strip_fragment(marker.href)
        document = next((doc for doc in self._documents if _href_in(doc.get_name(), {base})), None)
        if document is None:
            self._logger.warning("Page marker %s points at a document outside the spine", marker.href)
            return ""
        markup = document.get_content().decode("utf-8", errors="replace")
        fragment = _fragment(marker.href)
        if fragment:
            markup = _from_anchor(markup, fragment)
        return first_page_excerpt(strip_html(markup))


def _strip_fragment(href: str) -> str:
    return href.split("#", 1)[0]


def _fragment(href: str) -> str | None:
    _, _, fragment = href.partition("#")
    return fragment or None


def _from_anchor(markup: str, fragment: str) -> str:
    """Cut ``markup`` so it starts at the tag carrying ``id=fragment``; unchanged when absent."""
    anchor = re.search(rf"id=[\"']{re.escape(fragment)}[\"']", markup)
    if anchor is None:
        return markup
    tag_start = markup.rfind("<", 0, anchor.start())
    return markup[tag_start if tag_start != -1 else anchor.start():]


def _href_in(name: str, hrefs: set[str]) -> bool:
    for href in hrefs:
        if not href:
            continue
        if name == href or name.endswith("/" + href) or href.endswith("/" + name):
            return True
    return False


def _resolve(base_name: str, href: str) -> str:
    directory = posixpath.dirname(base_name)
    path, _, fragment = href.partition("#")
    resolved = posixpath.normpath(posixpath.join(directory, path)) if path else base_name
    return f"{resolved}#{fragment}" if fragment else resolved


def _nav_links(markup: bytes | str, nav_type: str, base_name: str) -> list[tuple[str, str]]:
    soup = BeautifulSoup(markup, "html.parser")
    links: list[tuple[str, str]] = []
    for nav in soup.find_all("nav"):
        types = (nav.get("epub:type") or "").split()
        if nav_type not in types:
            continue
        for anchor in nav.find_all("a", href=True):
            links.append((anchor.get_text(" ", strip=True), _resolve(base_name, anchor["href"])))
    return links


def parse_page_map(markup: bytes | str, base_name: str = "") -> list[PageMarker]:
    soup = BeautifulSoup(markup, features="xml")
    return [
        PageMarker(href=_resolve(base_name, page["href"]), label=page.get("name", ""))
        for page in soup.find_all("page")
        if page.get("href")
    ]


def parse_ncx_page_list(markup: bytes | str, base_name: str = "") -> list[PageMarker]:
    soup = BeautifulSoup(markup, features="xml")
    markers = []
    for target in soup.find_all("pageTarget"):
        content = target.find("content")
        if content is None or not content.get("src"):
            continue
        label = target.find("text")
        markers.append(
            PageMarker(
                href=_resolve(base_name, content["src"]),
                label=label.get_text(strip=True) if label else "",
            )
        )
    return markers


def open_book(path: str | Path, book_format: BookFormat | str | None = None) -> BookUnits:
    resolved = BookFormat(book_format) if book_format else BookFormat.from_path(path)
    if resolved is BookFormat.PDF:
        return PdfBook(path)
    return EpubBook(path)


def extract_page_text(path: str | Path, ordinal: int, book_format: BookFormat | str | None = None) -> str:
    return open_book(path, book_format).unit_text(ordinal)
