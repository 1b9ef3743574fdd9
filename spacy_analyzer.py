#!/usr/bin/env python3
"""
spaCy-backed Text Analyzer.

Provides tokens, POS tags, lemmas, sentences and named entities from a spaCy
pipeline, stems from snowballstemmer and sentiment from VADER. Models are
loaded lazily on first use.

Entity types reported:
- spaCy NER labels (DATE, TIME, CARDINAL, MONEY, PERSON, ORG, ...)
- URL and EMAIL from spaCy's like_url / like_email token flags
- HASHTAG, MENTION and EMOTICON from surface patterns
"""

import logging
import re
from typing import Any, List, Optional, Tuple

from text_analyzer import (
    AnalyzerError,
    EntitySpan,
    SentenceSpan,
    Token,
    split_paragraphs,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = 'en_core_web_sm'

SURFACE_ENTITIES = (
    ('HASHTAG', re.compile(r'(?<![\w#])#[A-Za-z][\w/-]*')),
    ('MENTION', re.compile(r'(?<![\w@])@\w+')),
    ('EMOTICON', re.compile(r'(?<!\S)[:;=][-^]?[()DPp](?!\S)')),
)


class SpacyAnalyzer:
    """
    TextAnalyzer implementation using spaCy, snowballstemmer and VADER.

    Args:
        model_name: spaCy pipeline to load
    """

    def __init__(self, model_name: str = DEFAULT_MODEL):
        self.model_name = model_name
        self._nlp: Any = None
        self._stemmer: Any = None
        self._sentiment: Any = None
        self._last: Optional[Tuple[str, Any]] = None

    def load(self):
        """
        Load every backend model.

        Raises:
            AnalyzerError: If a library or model is missing
        """
        self._load_nlp()
        self._load_stemmer()
        self._load_sentiment()

    def _load_nlp(self) -> Any:
        if self._nlp is not None:
            return self._nlp
        try:
            import spacy
        except ImportError as exc:
            raise AnalyzerError("spaCy is not installed. Install it with: pip install spacy") from exc
        try:
            self._nlp = spacy.load(self.model_name)
        except OSError as exc:
            raise AnalyzerError(
                f"spaCy model '{self.model_name}' not found. "
                f"Install it with: python -m spacy download {self.model_name}"
            ) from exc
        logger.info("spaCy model loaded: %s", self.model_name)
        return self._nlp

    def _load_stemmer(self) -> Any:
        if self._stemmer is None:
            import snowballstemmer
            self._stemmer = snowballstemmer.stemmer('english')
        return self._stemmer

    def _load_sentiment(self) -> Any:
        if self._sentiment is None:
            from vaderSentiment.vaderSentiment import SentimentIntensityAnalyzer
            self._sentiment = SentimentIntensityAnalyzer()
        return self._sentiment

    def _doc(self, text: str) -> Any:
        cached = self._last
        if cached is not None and cached[0] == text:
            return cached[1]
        nlp = self._load_nlp()
        try:
            doc = nlp(text)
        except (ValueError, RuntimeError) as exc:
            raise AnalyzerError(f"spaCy failed to analyze text: {exc}") from exc
        self._last = (text, doc)
        return doc

    def tokenize(self, text: str) -> List[Token]:
        stemmer = self._load_stemmer()
        tokens = []
        for tok in self._doc(text):
            if tok.is_space:
                continue
            surface = tok.text
            tokens.append(Token(
                surface=surface,
                pos=tok.pos_,
                lemma=tok.lemma_ or surface,
                stem=stemmer.stemWord(surface.lower()),
                start=tok.idx,
                end=tok.idx + len(surface),
            ))
        return tokens

    def segment_sentences(self, text: str) -> List[SentenceSpan]:
        return [
            SentenceSpan(sent.text, sent.start_char, sent.end_char)
            for sent in self._doc(text).sents
            if sent.text.strip()
        ]

    def segment_paragraphs(self, text: str) -> List[str]:
        return split_paragraphs(text)

    def extract_entities(self, text: str) -> List[EntitySpan]:
        doc = self._doc(text)
        entities = [EntitySpan(ent.text, ent.label_, ent.start_char) for ent in doc.ents]
        for tok in doc:
            if tok.like_email:
                entities.append(EntitySpan(tok.text, 'EMAIL', tok.idx))
            elif tok.like_url:
                entities.append(EntitySpan(tok.text, 'URL', tok.idx))
        for label, pattern in SURFACE_ENTITIES:
            for match in pattern.finditer(text):
                entities.append(EntitySpan(match.group(0), label, match.start()))
        entities.sort(key=lambda e: e.start)
        return entities

    def sentiment(self, text: str) -> float:
        """VADER compound score in [-1, 1]."""
        if not text.strip():
            return 0.0
        return float(self._load_sentiment().polarity_scores(text)['compound'])
