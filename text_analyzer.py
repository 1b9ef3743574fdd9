#!/usr/bin/env python3
"""
Text Analyzer Protocol

This module defines the contract between the tagging core and the natural
language analysis backend. The core never performs linguistic analysis itself;
it consumes tokens, sentence spans, paragraphs, entities and sentiment scores
through the TextAnalyzer protocol.

Key Features:
- Token, SentenceSpan and EntitySpan value types with character offsets
- Universal POS tag set shared by rule validation and pattern matching
- Blank-line paragraph segmentation shared by all analyzers
- Span lookup helpers used for scope resolution
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence


# Universal part-of-speech tags understood by pattern rules and pos filters
POS_TAGS = (
    'ADJ', 'ADP', 'ADV', 'AUX', 'CCONJ', 'DET', 'INTJ', 'NOUN', 'NUM',
    'PART', 'PRON', 'PROPN', 'PUNCT', 'SCONJ', 'SPACE', 'SYM', 'VERB', 'X',
)

# Entity types an analyzer may report
ENTITY_TYPES = (
    'DATE', 'TIME', 'CARDINAL', 'ORDINAL', 'MONEY', 'PERCENT', 'DURATION',
    'EMAIL', 'URL', 'HASHTAG', 'MENTION', 'EMOJI', 'EMOTICON',
    'PERSON', 'ORG', 'GPE', 'LOC', 'EVENT', 'PRODUCT', 'NORP', 'FAC',
    'WORK_OF_ART', 'LAW', 'LANGUAGE', 'QUANTITY',
)

PARAGRAPH_BREAK = re.compile(r'\n\s*\n')


class AnalyzerError(Exception):
    """Exception raised when the analysis backend fails on a document."""
    pass


@dataclass
class Token:
    """
    A single analyzed token.

    Attributes:
        surface: Token text as it appears in the document
        pos: Universal POS tag
        lemma: Dictionary form
        stem: Stemmed form
        start: Character offset of the first character
        end: Character offset one past the last character
    """
    surface: str
    pos: str
    lemma: str
    stem: str
    start: int
    end: int


@dataclass
class SentenceSpan:
    """A sentence with its character range in the source text."""
    text: str
    start: int
    end: int


@dataclass
class EntitySpan:
    """A detected entity. Only the start offset is reported by analyzers."""
    text: str
    type: str
    start: int


class TextAnalyzer(Protocol):
    """Interface every analysis backend implements."""

    def tokenize(self, text: str) -> List[Token]:
        ...

    def segment_sentences(self, text: str) -> List[SentenceSpan]:
        ...

    def segment_paragraphs(self, text: str) -> List[str]:
        ...

    def extract_entities(self, text: str) -> List[EntitySpan]:
        ...

    def sentiment(self, text: str) -> float:
        ...


def split_paragraphs(text: str) -> List[str]:
    """
    Split text into blank-line delimited paragraphs.

    Args:
        text: Source text

    Returns:
        Non-empty paragraph strings, stripped of surrounding whitespace

    Example:
        >>> split_paragraphs("First para.\\n\\nSecond para.")
        ['First para.', 'Second para.']
    """
    return [p.strip() for p in PARAGRAPH_BREAK.split(text) if p.strip()]


def find_span(spans: Sequence[SentenceSpan], offset: int) -> Optional[SentenceSpan]:
    """
    Find the span containing a character offset.

    An offset that falls in the gap between two spans (whitespace, blank
    lines) resolves to the nearest preceding span.

    Args:
        spans: Spans ordered by start offset
        offset: Character offset to locate

    Returns:
        Containing span, or None if spans is empty
    """
    found = None
    for span in spans:
        if span.start > offset:
            break
        found = span
    if found is None and spans:
        found = spans[0]
    return found
