COVER_ANALYSIS_TOOL = {
    "type": "function",
    "function": {
        "name": "analyze_book_cover",
        "description": (
            "Analyze an image to detect if a book is present. If it is, extract the book metadata: "
            "title, author, and whether it is fiction."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "isBook": {"type": "boolean", "description": "Whether or not the image is definitely a book cover"},
                "confidence": {
                    "type": "number",
                    "description": "Confidence level (0.0 to 1.0) that the cover truly is a book",
                },
                "title": {"type": ["string", "null"], "description": "Detected title of the book, or null"},
                "author": {"type": ["string", "null"], "description": "Detected author of the book, or null"},
                "fiction": {
                    "type": ["boolean", "null"],
                    "description": "Whether the book is fiction, or null if unknown",
                },
            },
            "required": ["isBook", "confidence", "title", "author", "fiction"],
        },
    },
}

COVER_ANALYSIS_PROMPT = (
    "You are a specialized assistant for analyzing images of book covers.\n"
    "Detect whether the image shows a book. If so, read the title and author and judge whether it is fiction.\n"
    "Use any text you see or standard knowledge. If unsure, answer false for isBook or leave title/author null.\n"
    "Here is the image of what might be a book cover."
)

PAGE_CLASSIFICATION_TOOL = {
    "type": "function",
    "function": {
        "name": "classify_page_content",
        "description": (
            "Classify whether the given text belongs to the main content or is frontmatter "
            "(table of contents, copyright, foreword, etc.)."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "classification": {
                    "type": "string",
                    "enum": ["CONTENT", "FRONTMATTER"],
                    "description": '"CONTENT" is real book content. "FRONTMATTER" is anything prefatory.',
                },
            },
            "required": ["classification"],
        },
    },
}

PAGE_CLASSIFICATION_SYSTEM_PROMPT = (
    'You classify pages of a book as either "CONTENT" or "FRONTMATTER".\n'
    "Consider structural patterns and semantic meaning.\n"
    "FRONTMATTER includes title pages, copyright information, dedications, tables of contents, prefaces, "
    "forewords, acknowledgments, lists of figures or tables, publisher information, ISBN numbers, "
    "edition notices and epigraphs.\n"
)

_FICTION_GUIDANCE = (
    "This book is fiction. CONTENT is narrative prose: a prologue or the opening of chapter one where "
    "the story itself begins. Part dividers and half-title pages are FRONTMATTER."
)

_NONFICTION_GUIDANCE = (
    "This book is non-fiction. CONTENT is the main informational text: chapter one or a substantive "
    "introduction written as part of the argument. Prefaces, forewords and notes on the edition are FRONTMATTER."
)


def page_classification_user_prompt(sample: str, ordinal: int, is_fiction: bool) -> str:
    guidance = _FICTION_GUIDANCE if is_fiction else _NONFICTION_GUIDANCE
    return (
        f"{guidance}\n"
        f"Book type: {'Fiction' if is_fiction else 'Non-Fiction'}\n"
        f"Current page number: {ordinal}\n"
        f'"""{sample}"""'
    )


FORMAT_SNIPPET_TOOL = {
    "type": "function",
    "function": {
        "name": "format_extracted_snippet",
        "description": "Return the extracted text reformatted for display, using minimal markdown or paragraphs.",
        "parameters": {
            "type": "object",
            "properties": {
                "formattedText": {
                    "type": "string",
                    "description": "The reformatted text with minimal markdown or simple line breaks.",
                },
            },
            "required": ["formattedText"],
        },
    },
}

FORMAT_SNIPPET_SYSTEM_PROMPT = (
    "You are a text reformatter. You take raw text from a book page and reformat it for display in a UI.\n"
    "Fix broken line wraps and hyphenation, keep paragraph breaks, and include a chapter title if there is one.\n"
    "Do not summarize or rewrite the text."
)


def format_snippet_user_prompt(raw_text: str) -> str:
    return f'Raw extracted text:\n"""\n{raw_text}\n"""'
