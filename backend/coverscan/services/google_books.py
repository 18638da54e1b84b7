import logging
from typing import Any

import requests

from coverscan.config import get_settings
from coverscan.services.collaborators import BibliographicSearch, BookMatch


class GoogleBooksService(BibliographicSearch):
    def __init__(self, session: requests.Session | None = None) -> None:
        settings = get_settings()
        self._api_key = settings.google_books_api_key or ""
        self._base_url = settings.google_books_url
        self._timeout = settings.request_timeout_seconds
        self._session = session or requests.Session()
        self._logger = logging.getLogger(__name__)

    def search(self, title: str, author: str) -> BookMatch | None:
        params = {"q": f"{title} inauthor:{author}"}
        if self._api_key:
            params["key"] = self._api_key
        response = self._session.get(self._base_url, params=params, timeout=self._timeout)
        response.raise_for_status()
        items = response.json().get("items") or []

        for item in items:
            if _matches(item, title, author):
                return _to_match(item)

        self._logger.warning("No matching volume for title=%r author=%r among %d results", title, author, len(items))
        return None


def _matches(item: dict[str, Any], title: str, author: str) -> bool:
    info = item.get("volumeInfo") or {}
    candidate_title = (info.get("title") or "").lower()
    authors = [a.lower() for a in info.get("authors") or []]
    return title.lower() in candidate_title and any(author.lower() in a for a in authors)


def _to_match(item: dict[str, Any]) -> BookMatch:
    info = item.get("volumeInfo") or {}
    isbn = None
    for identifier in info.get("industryIdentifiers") or []:
        if identifier.get("type") == "ISBN_13":
            isbn = identifier.get("identifier")
            break
    return BookMatch(
        title=info.get("title") or "",
        authors=list(info.get("authors") or []),
        volume_id=item.get("id"),
        isbn=isbn,
    )
