"""Tests for document naming and the content hash."""

import pytest

from markview.utils.hashing import content_hash
from markview.utils.markdown import (
    DEFAULT_DOCUMENT_NAME,
    MAX_FILENAME_LENGTH,
    derive_name,
    extract_heading,
    sanitize_filename,
)


class TestExtractHeading:
    def test_first_level_one_heading(self):
        content = "intro\n# Shopping List\n# Second"
        assert extract_heading(content) == "Shopping List"

    def test_ignores_deeper_headings(self):
        assert extract_heading("## Sub\n### Deeper") is None

    def test_strips_emphasis_markers(self):
        assert extract_heading("# **Bold** _and_ `code` [link]") == "Bold and code link"

    def test_no_heading(self):
        assert extract_heading("just text") is None

    def test_heading_of_only_markers(self):
        assert extract_heading("# ***") is None


class TestSanitizeFilename:
    def test_removes_invalid_characters(self):
        assert sanitize_filename('a/b\\c:d*e?f"g<h>i|j') == "abcdefghij"

    def test_collapses_whitespace(self):
        assert sanitize_filename("  a   b  ") == "a b"

    def test_caps_length(self):
        assert len(sanitize_filename("x" * 500)) == MAX_FILENAME_LENGTH


class TestDeriveName:
    def test_uses_heading(self):
        assert derive_name("# Meeting Notes\nbody") == "Meeting Notes"

    def test_falls_back_to_default(self):
        assert derive_name("no heading here") == DEFAULT_DOCUMENT_NAME
        assert derive_name("") == "Untitled"

    def test_heading_that_sanitizes_to_nothing(self):
        assert derive_name("# ???") == DEFAULT_DOCUMENT_NAME

    def test_custom_default(self):
        assert derive_name("", default="Draft") == "Draft"


class TestContentHash:
    @pytest.mark.parametrize(
        "content,expected",
        [
            ("", "00000000"),
            ("a", "00000061"),
            ("ab", "00000c21"),
        ],
    )
    def test_known_values(self, content, expected):
        assert content_hash(content) == expected

    def test_is_eight_hex_digits(self):
        digest = content_hash("# A much longer document\n" * 50)
        assert len(digest) == 8
        int(digest, 16)

    def test_differs_for_different_content(self):
        assert content_hash("hello") != content_hash("hellp")

    def test_is_deterministic(self):
        assert content_hash("same") == content_hash("same")
