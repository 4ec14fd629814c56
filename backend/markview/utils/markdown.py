"""Deriving document names from markdown content."""

import re

DEFAULT_DOCUMENT_NAME = "Untitled"
MAX_FILENAME_LENGTH = 100

_HEADING_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_MARKDOWN_CHARS_RE = re.compile(r"[#*_`\[\]]")
_INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE_RE = re.compile(r"\s+")


def extract_heading(content: str) -> str | None:
    """Return the text of the first level-1 heading, markdown markers stripped."""
    match = _HEADING_RE.search(content)
    if not match:
        return None
    heading = _MARKDOWN_CHARS_RE.sub("", match.group(1).strip()).strip()
    return heading or None


def sanitize_filename(name: str) -> str:
    """Remove characters that are invalid in filenames and cap the length."""
    cleaned = _INVALID_FILENAME_CHARS_RE.sub("", name)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    return cleaned[:MAX_FILENAME_LENGTH]


def derive_name(content: str, default: str = DEFAULT_DOCUMENT_NAME) -> str:
    """Name a document after its first heading, or ``default`` when it has none."""
    heading = extract_heading(content)
    if heading:
        name = sanitize_filename(heading)
        if name:
            return name
    return default
