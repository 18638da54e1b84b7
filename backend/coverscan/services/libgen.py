import logging
import re
import time
from pathlib import Path

import requests
from bs4 import BeautifulSoup

from coverscan.config import get_settings
from coverscan.errors import DownloadError, DownloadTooLargeError
from coverscan.services.collaborators import Candidate, CatalogueScraper

SUPPORTED_FORMATS = ("pdf", "epub")

_SIZE_PATTERN = re.compile(r"^([\d.]+)\s*([KMG]B)$", re.IGNORECASE)
_MD5_PATTERN = re.compile(r"md5=([a-fA-F0-9]+)")
_UNIT_BYTES = {"KB": 1024, "MB": 1024**2, "GB": 1024**3}
_CHUNK_SIZE = 64 * 1024


def parse_size_bytes(value: str) -> int:
    """Convert a listing size such as ``"5.2 MB"`` to bytes; unparseable sizes are 0."""
    match = _SIZE_PATTERN.match(value.strip())
    if not match:
        return 0
    try:
        number = float(match.group(1))
    except ValueError:
        return 0
    return int(number * _UNIT_BYTES[match.group(2).upper()])


def parse_search_results(html: str) -> list[Candidate]:
    soup = BeautifulSoup(html, "html.parser")
    candidates: list[Candidate] = []
    table = soup.find("table", class_="c")
    if table is None:
        return candidates

    for index, row in enumerate(table.find_all("tr")):
        if index == 0:
            continue
        cells = row.find_all("td")
        if len(cells) < 9:
            continue
        link = cells[2].find("a", href=re.compile(r"^book/index\.php"))
        if link is None:
            continue
        md5_match = _MD5_PATTERN.search(link.get("href", ""))
        extension = cells[8].get_text(strip=True).lower()
        if not md5_match or extension not in SUPPORTED_FORMATS:
            continue
        pages_text = cells[5].get_text(strip=True)
        pages_match = re.match(r"\d+", pages_text)
        candidates.append(
            Candidate(
                format=extension,
                size_bytes=parse_size_bytes(cells[7].get_text(strip=True)),
                page_count=int(pages_match.group(0)) if pages_match else 0,
                download_ref=md5_match.group(1).lower(),
                title=link.get_text(" ", strip=True),
            )
        )
    return candidates


class LibgenService(CatalogueScraper):
    def __init__(self, session: requests.Session | None = None) -> None:
        settings = get_settings()
        self._base_url = settings.libgen_base_url.rstrip("/")
        self._mirror_url = settings.libgen_mirror_url.rstrip("/")
        self._timeout = settings.request_timeout_seconds
        self._download_timeout = settings.download_timeout_seconds
        self._max_bytes = settings.max_download_bytes
        self._session = session or requests.Session()
        self._logger = logging.getLogger(__name__)

    def search(self, title: str, author_last_name: str) -> list[Candidate]:
        query = f"{title} {author_last_name}"
        params = {
            "req": query,
            "phrase": 1,
            "view": "simple",
            "column": "def",
            "sort": "extension",
            "sortmode": "DESC",
        }
        self._logger.info("Searching catalogue for %r", query)
        response = self._session.get(f"{self._base_url}/search.php", params=params, timeout=self._timeout)
        response.raise_for_status()
        candidates = parse_search_results(response.text)
        self._logger.info("Catalogue returned %d candidates in supported formats", len(candidates))
        return candidates

    def download(self, download_ref: str, dest_path: Path) -> Path:
        download_url = self._resolve_download_link(download_ref)
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = dest_path.with_name(dest_path.name + ".tmp")
        deadline = time.monotonic() + self._download_timeout

        try:
            with self._session.get(download_url, stream=True, timeout=self._timeout) as response:
                response.raise_for_status()
                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self._max_bytes:
                    raise DownloadTooLargeError(
                        f"Declared size {int(declared)} bytes exceeds the {self._max_bytes} byte ceiling."
                    )
                written = 0
                with temp_path.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if not chunk:
                            continue
                        written += len(chunk)
                        if written > self._max_bytes:
                            raise DownloadTooLargeError(
                                f"Download passed the {self._max_bytes} byte ceiling after {written} bytes."
                            )
                        if time.monotonic() > deadline:
                            raise DownloadError(f"Download exceeded {self._download_timeout:.0f}s.")
                        handle.write(chunk)
        except requests.RequestException as exc:
            temp_path.unlink(missing_ok=True)
            raise DownloadError(f"Download of {download_ref} failed: {exc}") from exc
        except DownloadError:
            temp_path.unlink(missing_ok=True)
            raise

        if written == 0:
            temp_path.unlink(missing_ok=True)
            raise DownloadError(f"Download of {download_ref} was empty.")

        temp_path.replace(dest_path)
        self._logger.info("Downloaded %s (%.2f MB)", dest_path, written / (1024 * 1024))
        return dest_path

    def _resolve_download_link(self, md5: str) -> str:
        mirror_page = f"{self._mirror_url}/{md5}"
        try:
            response = self._session.get(mirror_page, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise DownloadError(f"Mirror page {mirror_page} unavailable: {exc}") from exc
        soup = BeautifulSoup(response.text, "html.parser")
        link = soup.select_one("#download h2 a")
        if link is None or not link.get("href"):
            raise DownloadError(f"Download link not found on {mirror_page}")
        return link["href"]
