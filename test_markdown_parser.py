#!/usr/bin/env python3
"""
Test suite for markdown structure helpers.

Tests frontmatter detection, fenced code ranges, tag extraction, tag-line
lookup and prose extraction.
"""

import unittest

import pytest

from markdown_parser import (
    code_line_indices,
    extract_prose,
    extract_tags,
    find_last_tag_line,
    frontmatter_bounds,
    is_tag_line,
    mask_tags,
    parse_markdown,
)


class TestFrontmatter(unittest.TestCase):
    """Test frontmatter bounds detection."""

    def test_detects_closed_frontmatter(self):
        lines = ["---", "title: Note", "---", "Body"]
        self.assertEqual(frontmatter_bounds(lines), (0, 2))

    def test_unclosed_frontmatter_is_ignored(self):
        lines = ["---", "title: Note", "Body"]
        self.assertIsNone(frontmatter_bounds(lines))

    def test_delimiter_must_be_first_line(self):
        lines = ["Intro", "---", "x", "---"]
        self.assertIsNone(frontmatter_bounds(lines))

    def test_empty_document(self):
        self.assertIsNone(frontmatter_bounds([]))


class TestCodeRanges(unittest.TestCase):
    """Test fenced code block detection."""

    def test_closed_fence_protects_contents(self):
        lines = ["text", "```", "#not-a-tag", "```", "after"]
        self.assertEqual(code_line_indices(lines), {1, 2, 3})

    def test_fence_with_info_string(self):
        lines = ["```python", "x = '#nope'", "```"]
        self.assertEqual(code_line_indices(lines), {0, 1, 2})

    def test_unclosed_fence_protects_nothing(self):
        lines = ["```", "#tag"]
        self.assertEqual(code_line_indices(lines), set())

    def test_multiple_blocks(self):
        lines = ["```", "a", "```", "b", "```", "c", "```"]
        self.assertEqual(code_line_indices(lines), {0, 1, 2, 4, 5, 6})


# ============================================================================
# Tag Extraction Tests
# ============================================================================

def test_extract_tags_in_order_without_duplicates():
    text = "Intro #alpha and #beta\n\n#alpha #gamma/sub"
    assert extract_tags(text) == ["alpha", "beta", "gamma/sub"]


def test_extract_tags_skips_code_blocks():
    text = "Real #one\n\n```\n#fake\n```\n"
    assert extract_tags(text) == ["one"]


def test_extract_tags_scans_frontmatter():
    text = "---\ntags: #fm\n---\nBody #body\n"
    assert extract_tags(text) == ["fm", "body"]


def test_heading_markers_are_not_tags():
    assert extract_tags("# Title\n\n## Section\n") == []


def test_tag_characters():
    assert extract_tags("#a-b_c/d!") == ["a-b_c/d"]


# ============================================================================
# Tag Line Tests
# ============================================================================

@pytest.mark.parametrize("line,expected", [
    ("#one", True),
    ("#one #two", True),
    ("  #one   #two  ", True),
    ("text #one", False),
    ("#one text", False),
    ("", False),
    ("# Heading", False),
])
def test_is_tag_line(line, expected):
    assert is_tag_line(line) is expected


def test_find_last_tag_line_after_frontmatter():
    lines = ["---", "#fm", "---", "Body", "#a", "More", "#b #c"]
    assert find_last_tag_line(lines) == 6


def test_find_last_tag_line_ignores_frontmatter_only():
    lines = ["---", "#fm", "---", "Body"]
    assert find_last_tag_line(lines) is None


def test_find_last_tag_line_ignores_code():
    lines = ["#real", "```", "#code", "```"]
    assert find_last_tag_line(lines) == 0


# ============================================================================
# Prose Extraction Tests
# ============================================================================

def test_extract_prose_drops_code_and_frontmatter():
    text = "---\ntitle: x\n---\n# Heading\n\nSome prose.\n\n```\ncode here\n```\n\n- item one\n"
    prose = extract_prose(text)
    assert "Heading" in prose
    assert "Some prose." in prose
    assert "item one" in prose
    assert "code here" not in prose
    assert "title" not in prose


def test_parse_markdown_returns_block_tokens():
    types = [t.type for t in parse_markdown("# Title\n\n```\nx\n```\n")]
    assert "heading_open" in types
    assert "fence" in types


# ============================================================================
# Tag Masking Tests
# ============================================================================

def test_mask_tags_preserves_offsets():
    text = "docker #devops here\n\n#one #two\n"
    masked = mask_tags(text)
    assert len(masked) == len(text)
    assert "#" not in masked
    assert masked.index("here") == text.index("here")


def test_mask_tags_leaves_code_blocks():
    text = "#tag\n```\n#keep\n```\n"
    assert mask_tags(text) == "    \n```\n#keep\n```\n"


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
