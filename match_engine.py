#!/usr/bin/env python3
"""
Match Engine - dispatches a rule to its matching strategy.

Each rule type has one matcher registered in MATCHERS. A matcher takes the
analyzer, the rule and the document text and yields MatchOccurrence objects
left to right without overlap.

Supported Rule Types:
- pattern: contiguous token window whose POS tags equal the pattern
- keyword: token surface form, lemma or stem equal to the keyword
- literal: case-insensitive phrase search
- entity: analyzer entities of the requested type
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List

from rule_store import RULE_TYPES, Rule
from text_analyzer import POS_TAGS, AnalyzerError, TextAnalyzer


class MatchError(Exception):
    """Exception raised when a rule cannot be matched against a document."""
    pass


@dataclass
class MatchOccurrence:
    """
    A raw match produced by a matcher.

    Attributes:
        text: Matched text as it appears in the document
        start: Character offset of the match start
        end: Character offset one past the match end
        pos_tags: POS tags of the matched tokens (empty for literal/entity)
    """
    text: str
    start: int
    end: int
    pos_tags: List[str] = field(default_factory=list)


def parse_pos_pattern(pattern: str) -> List[str]:
    """
    Split a pattern rule's match string into POS tags.

    Raises:
        MatchError: If a name is not a known POS tag
    """
    tags = [name.upper() for name in pattern.split()]
    unknown = [t for t in tags if t not in POS_TAGS]
    if unknown:
        raise MatchError(f"Unknown part-of-speech tag(s) in pattern: {', '.join(unknown)}")
    return tags


def match_pattern(analyzer: TextAnalyzer, rule: Rule, text: str) -> Iterator[MatchOccurrence]:
    wanted = parse_pos_pattern(rule.match)
    if not wanted:
        return
    tokens = analyzer.tokenize(text)
    size = len(wanted)
    index = 0
    while index + size <= len(tokens):
        window = tokens[index:index + size]
        if [t.pos for t in window] == wanted:
            start, end = window[0].start, window[-1].end
            yield MatchOccurrence(text[start:end], start, end, [t.pos for t in window])
            index += size
        else:
            index += 1


def match_keyword(analyzer: TextAnalyzer, rule: Rule, text: str) -> Iterator[MatchOccurrence]:
    keyword = rule.match.lower()
    for token in analyzer.tokenize(text):
        if rule.lemma:
            form = token.lemma
        elif rule.stem:
            form = token.stem
        else:
            form = token.surface
        if form.lower() == keyword:
            yield MatchOccurrence(token.surface, token.start, token.end, [token.pos])


def match_literal(analyzer: TextAnalyzer, rule: Rule, text: str) -> Iterator[MatchOccurrence]:
    # re.finditer resumes after each match, so occurrences never overlap
    for match in re.finditer(re.escape(rule.match), text, re.IGNORECASE):
        yield MatchOccurrence(match.group(0), match.start(), match.end())


def match_entity(analyzer: TextAnalyzer, rule: Rule, text: str) -> Iterator[MatchOccurrence]:
    wanted = rule.match.upper()
    entities = [e for e in analyzer.extract_entities(text) if e.type.upper() == wanted]
    for entity in sorted(entities, key=lambda e: e.start):
        yield MatchOccurrence(entity.text, entity.start, entity.start + len(entity.text))


# Matcher registry mapping rule types to implementations
MATCHERS: Dict[str, Callable[[TextAnalyzer, Rule, str], Iterator[MatchOccurrence]]] = {
    'pattern': match_pattern,
    'keyword': match_keyword,
    'literal': match_literal,
    'entity': match_entity,
}

_missing = set(RULE_TYPES) - set(MATCHERS)
if _missing:
    raise ImportError(f"No matcher registered for rule type(s): {', '.join(sorted(_missing))}")


class MatchEngine:
    """
    Produces raw occurrences of a rule in a document.

    Args:
        analyzer: Text analysis backend
    """

    def __init__(self, analyzer: TextAnalyzer):
        self.analyzer = analyzer

    def matches(self, rule: Rule, text: str) -> Iterator[MatchOccurrence]:
        """
        Yield occurrences of rule in text, ordered by position.

        Every call returns a fresh generator. An empty result is not an error.

        Raises:
            MatchError: If the rule type is unknown, the pattern names an
                unknown POS tag, or the analyzer fails
        """
        matcher = MATCHERS.get(rule.type)
        if matcher is None:
            raise MatchError(f"Unknown rule type '{rule.type}' for rule {rule.id}")
        return self._run(matcher, rule, text)

    def _run(self, matcher, rule: Rule, text: str) -> Iterator[MatchOccurrence]:
        try:
            yield from matcher(self.analyzer, rule, text)
        except AnalyzerError as e:
            raise MatchError(f"Analyzer failed for rule {rule.id}: {e}") from e

    def find_all(self, rule: Rule, text: str) -> List[MatchOccurrence]:
        """Collect all occurrences of rule in text."""
        return list(self.matches(rule, text))
