#!/usr/bin/env python3
"""
Discovery - find candidate keywords and patterns across existing notes.

Helps users decide which rules to write:
- discover_keywords: most frequent content lemmas (nouns, verbs, adjectives,
  proper nouns)
- discover_patterns: what a POS pattern matches, most frequent first
- discover_keyword: where a specific keyword appears, with line context

Keyword and pattern discovery analyze prose only (frontmatter and code
blocks are excluded). Keyword search runs on the full text so reported line
numbers match the file.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Set, Tuple

from markdown_parser import extract_prose
from match_engine import MatchEngine
from rule_store import Rule
from tag_reconciler import walk_documents
from text_analyzer import TextAnalyzer

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
KEYWORD_POS = ('NOUN', 'VERB', 'ADJ', 'PROPN')
MIN_KEYWORD_LENGTH = 3


@dataclass
class KeywordCount:
    """A candidate keyword with occurrence and document counts."""
    keyword: str
    count: int
    file_count: int
    files: List[Path] = field(default_factory=list)


@dataclass
class PatternCount:
    """Text matched by a POS pattern and how often it occurred."""
    text: str
    count: int


@dataclass
class KeywordSample:
    """One occurrence of a keyword in a document."""
    path: Path
    line: int
    text: str
    context: str


def collect_documents(roots: Iterable[Path], extension: str = '.md') -> Iterator[Tuple[Path, str]]:
    """
    Yield (path, text) for every readable document under the roots.

    Unreadable or non-UTF-8 files are logged and skipped.
    """
    for root in roots:
        for path in walk_documents(Path(root), extension):
            try:
                yield path, path.read_text(encoding='utf-8')
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Skipping %s: %s", path, e)


def discover_keywords(analyzer: TextAnalyzer, documents: Iterable[Tuple[Path, str]],
                      limit: int = DEFAULT_LIMIT) -> List[KeywordCount]:
    """
    Rank content lemmas by frequency.

    Args:
        analyzer: Text analysis backend
        documents: (path, text) pairs
        limit: Maximum number of results

    Returns:
        KeywordCount list, most frequent first, ties broken alphabetically
    """
    counts: Counter = Counter()
    files: Dict[str, Set[Path]] = {}
    for path, text in documents:
        prose = extract_prose(text)
        if not prose.strip():
            continue
        for token in analyzer.tokenize(prose):
            if token.pos not in KEYWORD_POS:
                continue
            keyword = (token.lemma or token.surface).lower()
            if len(keyword) < MIN_KEYWORD_LENGTH or not any(c.isalpha() for c in keyword):
                continue
            counts[keyword] += 1
            files.setdefault(keyword, set()).add(path)

    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]
    return [
        KeywordCount(keyword, count, len(files[keyword]), sorted(files[keyword]))
        for keyword, count in ranked
    ]


def discover_patterns(analyzer: TextAnalyzer, documents: Iterable[Tuple[Path, str]],
                      pattern: str, limit: int = DEFAULT_LIMIT) -> List[PatternCount]:
    """
    Count the texts a POS pattern matches.

    Raises:
        MatchError: If the pattern names an unknown POS tag
    """
    engine = MatchEngine(analyzer)
    rule = Rule(id='discover-pattern', type='pattern', match=pattern, tags=['discover'])
    counts: Counter = Counter()
    for _, text in documents:
        prose = extract_prose(text)
        if not prose.strip():
            continue
        for occurrence in engine.matches(rule, prose):
            counts[occurrence.text.lower()] += 1
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]
    return [PatternCount(text, count) for text, count in ranked]


def discover_keyword(analyzer: TextAnalyzer, documents: Iterable[Tuple[Path, str]],
                     word: str, lemma: bool = False, stem: bool = False) -> List[KeywordSample]:
    """
    Find every occurrence of a keyword.

    Args:
        analyzer: Text analysis backend
        documents: (path, text) pairs
        word: Keyword to search for
        lemma: Compare lemmas
        stem: Compare stems

    Returns:
        KeywordSample list in document order

    Raises:
        ValueError: If both lemma and stem are requested
    """
    if lemma and stem:
        raise ValueError("Cannot use both lemma and stem options")
    engine = MatchEngine(analyzer)
    rule = Rule(id='discover-keyword', type='keyword', match=word, tags=['discover'],
                lemma=lemma, stem=stem)
    samples = []
    for path, text in documents:
        lines = text.split('\n')
        for occurrence in engine.matches(rule, text):
            line_index = text.count('\n', 0, occurrence.start)
            samples.append(KeywordSample(path, line_index + 1, occurrence.text,
                                         lines[line_index].strip()))
    return samples
