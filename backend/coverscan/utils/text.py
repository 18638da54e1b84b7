import re

from bs4 import BeautifulSoup

CHARS_PER_PAGE = 3000
WORDS_PER_PAGE = 400

_WORD_REGEX = re.compile(r"\S+")
_LONG_WORD_REGEX = re.compile(r"[^\W_]+")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_END = re.compile(r"[.!?][\"'”’)]?")
_SAFE_NAME = re.compile(r"[^a-zA-Z0-9]")
_FRONTMATTER_PATTERNS = [
    re.compile(r"^(the\s+)?cover$", re.IGNORECASE),
    re.compile(r"^(half[\s-]?)?title(\s+page)?$", re.IGNORECASE),
    re.compile(r"copyright", re.IGNORECASE),
    re.compile(r"^dedication", re.IGNORECASE),
    re.compile(r"^epigraph", re.IGNORECASE),
    re.compile(r"^(table\s+of\s+)?contents$", re.IGNORECASE),
    re.compile(r"^preface", re.IGNORECASE),
    re.compile(r"^foreword", re.IGNORECASE),
    re.compile(r"^acknowledge?ments?", re.IGNORECASE),
    re.compile(r"^list\s+of\s+(figures|tables|illustrations|maps|abbreviations)", re.IGNORECASE),
    re.compile(r"^(also\s+by|other\s+books\s+by|books\s+by)\b", re.IGNORECASE),
    re.compile(r"^praise\s+for", re.IGNORECASE),
    re.compile(r"^about\s+the\s+(author|publisher|translator)", re.IGNORECASE),
    re.compile(r"^(a\s+)?note\s+on\s+the\s+(text|translation|edition)", re.IGNORECASE),
]


def strip_html(markup: str | bytes) -> str:
    """Return the visible text of an HTML fragment, one block per line."""
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    text = soup.get_text(separator="\n")
    lines = [" ".join(line.split()) for line in text.splitlines()]
    collapsed: list[str] = []
    for line in lines:
        if line or (collapsed and collapsed[-1]):
            collapsed.append(line)
    return "\n".join(collapsed).strip()


def first_page_excerpt(
    text: str,
    chars_per_page: int = CHARS_PER_PAGE,
    words_per_page: int = WORDS_PER_PAGE,
) -> str:
    """
    Cut a chapter down to roughly one printed page.

    Short text is returned whole. Longer text is cut after ``words_per_page``
    words, then pulled back to a paragraph break or sentence end when one falls
    in the second half of the excerpt.
    """
    stripped = text.strip()
    if len(stripped) <= chars_per_page:
        return stripped

    end = len(stripped)
    for count, match in enumerate(_WORD_REGEX.finditer(stripped), start=1):
        if count == words_per_page:
            end = match.end()
            break
    page_text = stripped[:end]
    half = len(page_text) / 2

    paragraph_breaks = [m.start() for m in _PARAGRAPH_BREAK.finditer(page_text)]
    if paragraph_breaks and paragraph_breaks[-1] > half:
        return page_text[: paragraph_breaks[-1]].rstrip()

    sentence_ends = [m.end() for m in _SENTENCE_END.finditer(page_text)]
    if sentence_ends and sentence_ends[-1] > half:
        return page_text[: sentence_ends[-1]]

    return page_text


def long_word_set(text: str, min_length: int = 4) -> frozenset[str]:
    """Lower-cased words longer than three characters, used for near-duplicate checks."""
    return frozenset(word for word in _LONG_WORD_REGEX.findall(text.lower()) if len(word) >= min_length)


def jaccard(left: frozenset[str], right: frozenset[str]) -> float:
    if not left and not right:
        return 0.0
    union = len(left | right)
    return len(left & right) / union if union else 0.0


def looks_like_frontmatter_title(title: str | None) -> bool:
    if not title:
        return False
    stripped = " ".join(title.split()).strip(" .:")
    if not stripped:
        return False
    return any(pattern.search(stripped) for pattern in _FRONTMATTER_PATTERNS)


def safe_filename(value: str, limit: int = 50) -> str:
    return _SAFE_NAME.sub("_", value)[:limit] or "book"
