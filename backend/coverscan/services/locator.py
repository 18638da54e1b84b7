import logging
from collections import deque
from dataclasses import dataclass

from coverscan.config import get_settings
from coverscan.services.collaborators import PageClass, TextClassifier
from coverscan.services.formats import BookUnits
from coverscan.utils.text import jaccard, long_word_set


@dataclass(slots=True)
class LocatedUnit:
    ordinal: int
    text: str
    is_fallback: bool = False


@dataclass(slots=True)
class LocatorSettings:
    scan_limit: int = 20
    min_chars: int = 50
    sample_chars: int = 1000
    dedupe_window: int = 5
    dedupe_threshold: float = 0.8

    @classmethod
    def from_settings(cls) -> "LocatorSettings":
        settings = get_settings()
        return cls(
            scan_limit=settings.content_scan_limit,
            min_chars=settings.content_min_chars,
            sample_chars=settings.classification_sample_chars,
            dedupe_window=settings.dedupe_window,
            dedupe_threshold=settings.dedupe_threshold,
        )


class ContentLocator:
    """
    Find the first unit of a book that carries real content rather than frontmatter.

    Units are scanned in order up to ``scan_limit``. Units too short to judge are
    skipped, as are units whose long-word set overlaps one of the last few
    examined units by more than ``dedupe_threshold`` (repeated boilerplate).
    Every surviving unit is sent to the classifier. Non-fiction returns the first
    CONTENT unit. Fiction treats the first CONTENT unit as a half-title or part
    divider and returns the second one. When nothing classifies as CONTENT the
    raw text of unit 1 is returned.
    """

    def __init__(self, classifier: TextClassifier, settings: LocatorSettings | None = None) -> None:
        self._classifier = classifier
        self._settings = settings or LocatorSettings.from_settings()
        self._logger = logging.getLogger(__name__)

    def locate(self, book: BookUnits, is_fiction: bool) -> LocatedUnit:
        settings = self._settings
        total = book.unit_count()
        limit = min(total, settings.scan_limit)
        recent: deque[frozenset[str]] = deque(maxlen=max(settings.dedupe_window, 1))
        fallback_text = ""
        anchor: LocatedUnit | None = None

        for ordinal in range(1, limit + 1):
            text = book.unit_text(ordinal).strip()
            if ordinal == 1:
                fallback_text = text
            if len(text) < settings.min_chars:
                self._logger.debug("Unit %d skipped: %d chars", ordinal, len(text))
                continue

            words = long_word_set(text)
            duplicate = any(jaccard(words, seen) > settings.dedupe_threshold for seen in recent)
            recent.append(words)
            if duplicate:
                self._logger.debug("Unit %d skipped: near-duplicate of a recent unit", ordinal)
                continue

            label = PageClass(self._classifier.classify(text[: settings.sample_chars], ordinal, is_fiction))
            self._logger.debug("Unit %d classified %s", ordinal, label.value)
            if label is not PageClass.CONTENT:
                continue

            if not is_fiction:
                return LocatedUnit(ordinal=ordinal, text=text)
            if anchor is not None:
                self._logger.info("Fiction content starts at unit %d (anchor %d)", ordinal, anchor.ordinal)
                return LocatedUnit(ordinal=ordinal, text=text)
            anchor = LocatedUnit(ordinal=ordinal, text=text)

        if anchor is not None:
            self._logger.info("Only one content unit within %d units; using unit %d", limit, anchor.ordinal)
            return anchor

        self._logger.info("No content unit within %d of %d units; falling back to unit 1", limit, total)
        return LocatedUnit(ordinal=1, text=fallback_text, is_fallback=True)
