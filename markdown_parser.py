#!/usr/bin/env python3
"""
Markdown Document Structure Helpers

This module locates the structural regions of a markdown note that tagging
cares about: frontmatter, fenced code blocks, inline tags and tag-only lines.
It also extracts prose text for keyword discovery using markdown-it-py.

Key Features:
- Frontmatter bounds ("---" delimited block at the top of the note)
- Fenced code block line ranges (closed fences only)
- Ordered, de-duplicated tag extraction outside code blocks
- Tag masking so rules never match the tags they write
- Tag-only line detection for tag insertion
- Prose extraction from the markdown AST
"""

import re
from typing import Dict, Iterator, List, Optional, Set, Tuple
from markdown_it import MarkdownIt
from markdown_it.token import Token


TAG_CHARS = r'A-Za-z0-9_/\-'
TAG_PATTERN = re.compile(rf'#([{TAG_CHARS}]+)')
TAG_LINE_PATTERN = re.compile(rf'^#[{TAG_CHARS}]+(\s+#[{TAG_CHARS}]+)*\s*$')
VALID_TAG = re.compile(rf'^[{TAG_CHARS}]+$')
FENCE_MARKER = '```'

_md = MarkdownIt()


def parse_markdown(text: str) -> List[Token]:
    """
    Parse markdown text to AST tokens.

    Args:
        text: Markdown text to parse

    Returns:
        List of markdown-it-py tokens representing the AST
    """
    return _md.parse(text)


def frontmatter_bounds(lines: List[str]) -> Optional[Tuple[int, int]]:
    """
    Locate the frontmatter block.

    Frontmatter exists only when the first line is exactly "---" and a later
    line is exactly "---".

    Args:
        lines: Document lines without line terminators

    Returns:
        (first_line, closing_line) indices, or None if there is no frontmatter

    Example:
        >>> frontmatter_bounds(["---", "title: x", "---", "Body"])
        (0, 2)
        >>> frontmatter_bounds(["Body"]) is None
        True
    """
    if not lines or lines[0].rstrip('\r') != '---':
        return None
    for index in range(1, len(lines)):
        if lines[index].rstrip('\r') == '---':
            return (0, index)
    return None


def is_fence(line: str) -> bool:
    """Check whether a line opens or closes a fenced code block."""
    return line.lstrip().startswith(FENCE_MARKER)


def code_line_indices(lines: List[str]) -> Set[int]:
    """
    Compute the set of line indices inside closed fenced code blocks.

    Fence lines toggle the in-code state as the document is scanned. Fence
    lines themselves are included. A fence that is never closed does not
    protect anything after it.

    Args:
        lines: Document lines without line terminators

    Returns:
        Set of 0-based line indices that belong to code blocks

    Example:
        >>> sorted(code_line_indices(["a", "```", "#x", "```", "b"]))
        [1, 2, 3]
    """
    protected: Set[int] = set()
    open_at: Optional[int] = None
    for index, line in enumerate(lines):
        if not is_fence(line):
            continue
        if open_at is None:
            open_at = index
        else:
            protected.update(range(open_at, index + 1))
            open_at = None
    return protected


def iter_tag_matches(text: str) -> Iterator[re.Match]:
    """
    Iterate tag matches outside fenced code blocks, in document order.

    Match offsets are relative to the line the match was found on; callers
    that need the line use iter_lines_with_tags() instead.
    """
    for _, _, match in iter_lines_with_tags(text):
        yield match


def iter_lines_with_tags(text: str) -> Iterator[Tuple[int, str, re.Match]]:
    """Yield (line_index, line, match) for every tag found outside code blocks."""
    lines = text.split('\n')
    protected = code_line_indices(lines)
    for index, line in enumerate(lines):
        if index in protected:
            continue
        for match in TAG_PATTERN.finditer(line):
            yield index, line, match


def extract_tags(text: str) -> List[str]:
    """
    Extract tags present in a document.

    Tags are "#" followed by one or more of letters, digits, "-", "_" or
    "/". Occurrences inside fenced code blocks are ignored. Frontmatter is
    scanned like the rest of the document.

    Args:
        text: Document text

    Returns:
        Tag names without the leading "#", de-duplicated, in order of first
        appearance

    Example:
        >>> extract_tags("Intro #alpha\\n\\n#beta #alpha")
        ['alpha', 'beta']
    """
    seen: Dict[str, None] = {}
    for match in iter_tag_matches(text):
        seen.setdefault(match.group(1), None)
    return list(seen)


def mask_tags(text: str) -> str:
    """
    Blank out tags outside fenced code blocks.

    Each tag is replaced by spaces of the same length, so offsets into the
    masked text are valid offsets into the original.

    Example:
        >>> mask_tags("docker #devops")
        'docker        '
    """
    lines = text.split('\n')
    protected = code_line_indices(lines)
    for index, line in enumerate(lines):
        if index not in protected:
            lines[index] = TAG_PATTERN.sub(lambda m: ' ' * len(m.group(0)), line)
    return '\n'.join(lines)


def is_tag_line(line: str) -> bool:
    """
    Check whether a line contains only tags separated by whitespace.

    Example:
        >>> is_tag_line("#one #two")
        True
        >>> is_tag_line("text #one")
        False
    """
    return TAG_LINE_PATTERN.match(line.strip()) is not None


def find_last_tag_line(lines: List[str]) -> Optional[int]:
    """
    Find the last tag-only line after any frontmatter, outside code blocks.

    Args:
        lines: Document lines without line terminators

    Returns:
        Line index, or None if the document has no tag line
    """
    bounds = frontmatter_bounds(lines)
    body_start = bounds[1] + 1 if bounds else 0
    protected = code_line_indices(lines)
    found = None
    for index in range(body_start, len(lines)):
        if index not in protected and is_tag_line(lines[index]):
            found = index
    return found


def extract_prose(text: str) -> str:
    """
    Extract prose text from a markdown document.

    Inline content of paragraphs, headings and list items is kept; fenced and
    indented code blocks are dropped. Frontmatter is removed before parsing.

    Args:
        text: Markdown document

    Returns:
        Prose blocks joined by blank lines
    """
    lines = text.split('\n')
    bounds = frontmatter_bounds(lines)
    if bounds:
        text = '\n'.join(lines[bounds[1] + 1:])

    parts = []
    for token in parse_markdown(text):
        if token.type in ('fence', 'code_block'):
            continue
        if token.type == 'inline' and token.content.strip():
            parts.append(token.content)
    return '\n\n'.join(parts)
