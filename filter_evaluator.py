#!/usr/bin/env python3
"""
Filter Evaluator - applies compound filters to raw match occurrences.

A FilterSpec combines three optional categories with AND:
- pos: the occurrence must carry one of the allowed POS tags
- requireEntity: one of the listed entity types must exist within scope
- sentiment: the scope text's sentiment must fall within [min, max]

Scopes resolve relative to the occurrence start:
- sentence: sentence containing the occurrence
- paragraph: blank-line delimited paragraph containing the occurrence
- document: the whole document
- match: the occurrence text itself
"""

from typing import Dict, Iterable, List, Optional, Tuple

from match_engine import MatchError, MatchOccurrence
from rule_store import SCOPES, EntityFilter, FilterSpec, SentimentFilter
from text_analyzer import (
    POS_TAGS,
    AnalyzerError,
    EntitySpan,
    SentenceSpan,
    TextAnalyzer,
    find_span,
)


class FilterParseError(ValueError):
    """Exception raised when a filter option string cannot be parsed."""
    pass


class _DocumentContext:
    """Per-document cache of analyzer results used while filtering."""

    def __init__(self, analyzer: TextAnalyzer, text: str):
        self.analyzer = analyzer
        self.text = text
        self._entities: Optional[List[EntitySpan]] = None
        self._sentences: Optional[List[SentenceSpan]] = None
        self._paragraphs: Optional[List[SentenceSpan]] = None
        self._sentiment: Dict[str, float] = {}

    def entities(self) -> List[EntitySpan]:
        if self._entities is None:
            self._entities = self.analyzer.extract_entities(self.text)
        return self._entities

    def sentences(self) -> List[SentenceSpan]:
        if self._sentences is None:
            self._sentences = self.analyzer.segment_sentences(self.text)
        return self._sentences

    def paragraphs(self) -> List[SentenceSpan]:
        if self._paragraphs is None:
            spans = []
            cursor = 0
            for paragraph in self.analyzer.segment_paragraphs(self.text):
                start = self.text.find(paragraph, cursor)
                if start < 0:
                    continue
                spans.append(SentenceSpan(paragraph, start, start + len(paragraph)))
                cursor = start + len(paragraph)
            self._paragraphs = spans
        return self._paragraphs

    def sentiment(self, text: str) -> float:
        if text not in self._sentiment:
            self._sentiment[text] = self.analyzer.sentiment(text)
        return self._sentiment[text]

    def scope_range(self, scope: str, occurrence: MatchOccurrence) -> Tuple[int, int]:
        """Character range covered by scope around the occurrence."""
        if scope == 'match':
            return occurrence.start, occurrence.end
        if scope in ('sentence', 'paragraph'):
            spans = self.sentences() if scope == 'sentence' else self.paragraphs()
            span = find_span(spans, occurrence.start)
            if span is not None:
                return span.start, span.end
        return 0, len(self.text)

    def scope_text(self, scope: str, occurrence: MatchOccurrence) -> str:
        if scope == 'match':
            return occurrence.text
        if scope in ('sentence', 'paragraph'):
            spans = self.sentences() if scope == 'sentence' else self.paragraphs()
            span = find_span(spans, occurrence.start)
            if span is not None:
                return span.text
        return self.text


class FilterEvaluator:
    """
    Evaluates FilterSpecs against match occurrences.

    Args:
        analyzer: Text analysis backend
        default_scope: Sentiment scope used when a filter names none
    """

    def __init__(self, analyzer: TextAnalyzer, default_scope: str = 'sentence'):
        if default_scope not in SCOPES:
            raise ValueError(f"Unknown scope: {default_scope}")
        self.analyzer = analyzer
        self.default_scope = default_scope

    def evaluate(self, text: str, occurrence: MatchOccurrence, spec: Optional[FilterSpec]) -> bool:
        """
        Decide whether one occurrence survives the filter.

        Args:
            text: Full document text
            occurrence: Raw match from the match engine
            spec: Filter to apply; None or empty always passes

        Returns:
            True if every configured category passes

        Raises:
            MatchError: If the analyzer fails
        """
        return self._evaluate(_DocumentContext(self.analyzer, text), occurrence, spec)

    def apply_all(self, text: str, occurrences: Iterable[MatchOccurrence],
                  spec: Optional[FilterSpec]) -> List[MatchOccurrence]:
        """
        Filter a sequence of occurrences from the same document.

        Analyzer results are computed at most once per document.

        Returns:
            Surviving occurrences in their original order
        """
        if spec is None or spec.is_empty():
            return list(occurrences)
        context = _DocumentContext(self.analyzer, text)
        return [o for o in occurrences if self._evaluate(context, o, spec)]

    def _evaluate(self, context: _DocumentContext, occurrence: MatchOccurrence,
                  spec: Optional[FilterSpec]) -> bool:
        if spec is None:
            return True
        try:
            if spec.pos and not self._pos_passes(occurrence, spec.pos):
                return False
            if spec.require_entity and not self._entities_pass(context, occurrence, spec.require_entity):
                return False
            if spec.sentiment is not None and not self._sentiment_passes(context, occurrence, spec.sentiment):
                return False
        except AnalyzerError as e:
            raise MatchError(f"Analyzer failed while filtering: {e}") from e
        return True

    def _pos_passes(self, occurrence: MatchOccurrence, allowed: List[str]) -> bool:
        # Occurrences without POS information fail closed
        if not occurrence.pos_tags:
            return False
        wanted = {p.upper() for p in allowed}
        return any(p.upper() in wanted for p in occurrence.pos_tags)

    def _entities_pass(self, context: _DocumentContext, occurrence: MatchOccurrence,
                       requirements: List[EntityFilter]) -> bool:
        for requirement in requirements:
            wanted = {t.upper() for t in requirement.types}
            start, end = context.scope_range(requirement.scope or 'document', occurrence)
            for entity in context.entities():
                if entity.type.upper() in wanted and start <= entity.start < end:
                    return True
        return False

    def _sentiment_passes(self, context: _DocumentContext, occurrence: MatchOccurrence,
                          bounds: SentimentFilter) -> bool:
        scope = bounds.scope or self.default_scope
        score = context.sentiment(context.scope_text(scope, occurrence))
        if bounds.min is not None and score < bounds.min:
            return False
        if bounds.max is not None and score > bounds.max:
            return False
        return True


def _number(value: float) -> str:
    return f"{value:g}"


def describe_filters(spec: Optional[FilterSpec]) -> List[str]:
    """
    Render a filter as short human-readable strings.

    Example:
        >>> describe_filters(FilterSpec(pos=["VERB", "NOUN"]))
        ['pos(VERB,NOUN)']
    """
    if spec is None:
        return []
    parts = []
    if spec.pos:
        parts.append(f"pos({','.join(spec.pos)})")
    for requirement in spec.require_entity or []:
        scope = f":{requirement.scope}" if requirement.scope else ''
        parts.append(f"entity({','.join(requirement.types)}{scope})")
    if spec.sentiment is not None:
        bounds = []
        if spec.sentiment.min is not None:
            bounds.append(f"min:{_number(spec.sentiment.min)}")
        if spec.sentiment.max is not None:
            bounds.append(f"max:{_number(spec.sentiment.max)}")
        scope = f":{spec.sentiment.scope}" if spec.sentiment.scope else ''
        parts.append(f"sentiment({','.join(bounds)}{scope})")
    return parts


def _split_scope(value: str) -> Tuple[str, Optional[str]]:
    if ':' not in value:
        return value, None
    head, scope = value.rsplit(':', 1)
    if scope not in SCOPES:
        raise FilterParseError(f"Unknown scope '{scope}'. Expected one of: {', '.join(SCOPES)}")
    return head, scope


def _parse_score(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        raise FilterParseError(f"Invalid sentiment value: {value}")


def parse_filters(pos: Optional[str] = None,
                  require_entity: Optional[List[str]] = None,
                  sentiment_min: Optional[str] = None,
                  sentiment_max: Optional[str] = None,
                  sentiment_between: Optional[str] = None) -> Optional[FilterSpec]:
    """
    Build a FilterSpec from command-line option strings.

    Formats:
        pos: "VERB,NOUN"
        require_entity: ["DATE,TIME", "URL:sentence"]
        sentiment_min / sentiment_max: "0.5" or "0.5:paragraph"
        sentiment_between: "-0.2,0.2" or "-0.2,0.2:document"

    Returns:
        FilterSpec, or None if no option was given

    Raises:
        FilterParseError: If any option is malformed

    Example:
        >>> parse_filters(sentiment_min="0.5:paragraph").sentiment
        SentimentFilter(min=0.5, max=None, scope='paragraph')
    """
    spec = FilterSpec()

    if pos:
        names = [p.strip().upper() for p in pos.split(',') if p.strip()]
        unknown = [p for p in names if p not in POS_TAGS]
        if unknown:
            raise FilterParseError(f"Unknown part-of-speech tag(s): {', '.join(unknown)}")
        spec.pos = names

    if require_entity:
        requirements = []
        for option in require_entity:
            types_part, scope = _split_scope(option)
            types = [t.strip().upper() for t in types_part.split(',') if t.strip()]
            if not types:
                raise FilterParseError(f"No entity types given in '{option}'")
            requirements.append(EntityFilter(types=types, scope=scope))
        spec.require_entity = requirements

    if sentiment_between is not None:
        if sentiment_min is not None or sentiment_max is not None:
            raise FilterParseError("Use either a sentiment range or min/max bounds, not both")
        bounds, scope = _split_scope(sentiment_between)
        pieces = bounds.split(',')
        if len(pieces) != 2:
            raise FilterParseError(f"Sentiment range must be 'MIN,MAX', got '{bounds}'")
        spec.sentiment = SentimentFilter(
            min=_parse_score(pieces[0].strip()),
            max=_parse_score(pieces[1].strip()),
            scope=scope,
        )
    elif sentiment_min is not None or sentiment_max is not None:
        sentiment = SentimentFilter()
        scopes = set()
        if sentiment_min is not None:
            value, scope = _split_scope(sentiment_min)
            sentiment.min = _parse_score(value)
            scopes.add(scope)
        if sentiment_max is not None:
            value, scope = _split_scope(sentiment_max)
            sentiment.max = _parse_score(value)
            scopes.add(scope)
        scopes.discard(None)
        if len(scopes) > 1:
            raise FilterParseError("Sentiment min and max must use the same scope")
        sentiment.scope = scopes.pop() if scopes else None
        spec.sentiment = sentiment

    return None if spec.is_empty() else spec
