"""Shared fixtures: a deterministic analyzer and rule builders."""

import re

import pytest

from rule_store import Rule
from text_analyzer import EntitySpan, SentenceSpan, Token, split_paragraphs


# word -> (pos, lemma, stem)
DEFAULT_LEXICON = {
    'docker': ('PROPN', 'docker', 'docker'),
    'deployment': ('NOUN', 'deployment', 'deploy'),
    'deploy': ('VERB', 'deploy', 'deploy'),
    'deployed': ('VERB', 'deploy', 'deploy'),
    'deploying': ('VERB', 'deploy', 'deploy'),
    'meeting': ('NOUN', 'meeting', 'meet'),
    'meetings': ('NOUN', 'meeting', 'meet'),
    'met': ('VERB', 'meet', 'met'),
    'running': ('VERB', 'run', 'run'),
    'runs': ('VERB', 'run', 'run'),
    'great': ('ADJ', 'great', 'great'),
    'terrible': ('ADJ', 'terrible', 'terribl'),
    'okay': ('ADJ', 'okay', 'okay'),
    'new': ('ADJ', 'new', 'new'),
    'idea': ('NOUN', 'idea', 'idea'),
    'ideas': ('NOUN', 'idea', 'idea'),
    'plan': ('NOUN', 'plan', 'plan'),
    'design': ('NOUN', 'design', 'design'),
    'server': ('NOUN', 'server', 'server'),
    'the': ('DET', 'the', 'the'),
    'a': ('DET', 'a', 'a'),
    'is': ('AUX', 'be', 'is'),
    'was': ('AUX', 'be', 'was'),
    'we': ('PRON', 'we', 'we'),
    'and': ('CCONJ', 'and', 'and'),
    'on': ('ADP', 'on', 'on'),
    'quickly': ('ADV', 'quickly', 'quick'),
}

WORD = re.compile(r"[A-Za-z0-9']+")
SENTENCE = re.compile(r'[^.!?\n]+[.!?]*')
ENTITY_PATTERNS = (
    ('DATE', re.compile(r'\b\d{4}-\d{2}-\d{2}\b')),
    ('URL', re.compile(r'https?://\S+')),
    ('EMAIL', re.compile(r'\b[\w.]+@[\w]+\.\w+\b')),
)


class FakeAnalyzer:
    """
    Deterministic analyzer for tests.

    Tokens are alphanumeric runs looked up in a lexicon (unknown words are
    NOUN). Sentences end at . ! ? or a newline. Sentiment is scripted: the
    first configured keyword found in the scored text determines the score.
    """

    def __init__(self, lexicon=None, sentiments=None):
        self.lexicon = {**DEFAULT_LEXICON, **(lexicon or {})}
        self.sentiments = dict(sentiments or {})
        self.entity_calls = 0
        self.sentiment_calls = 0

    def tokenize(self, text):
        tokens = []
        for match in WORD.finditer(text):
            word = match.group(0)
            pos, lemma, stem = self.lexicon.get(word.lower(), ('NOUN', word.lower(), word.lower()))
            tokens.append(Token(word, pos, lemma, stem, match.start(), match.end()))
        return tokens

    def segment_sentences(self, text):
        spans = []
        for match in SENTENCE.finditer(text):
            chunk = match.group(0)
            if not chunk.strip():
                continue
            lead = len(chunk) - len(chunk.lstrip())
            start = match.start() + lead
            spans.append(SentenceSpan(chunk.strip(), start, start + len(chunk.strip())))
        return spans

    def segment_paragraphs(self, text):
        return split_paragraphs(text)

    def extract_entities(self, text):
        self.entity_calls += 1
        entities = []
        for label, pattern in ENTITY_PATTERNS:
            for match in pattern.finditer(text):
                entities.append(EntitySpan(match.group(0), label, match.start()))
        return sorted(entities, key=lambda e: e.start)

    def sentiment(self, text):
        self.sentiment_calls += 1
        lowered = text.lower()
        for keyword, score in self.sentiments.items():
            if keyword in lowered:
                return score
        return 0.0


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def make_analyzer():
    return FakeAnalyzer


@pytest.fixture
def make_rule():
    """Build Rule objects with sensible defaults."""
    def _make(rule_type, match, tags, rule_id=None, **kwargs):
        return Rule(
            id=rule_id or f"{rule_type}-{match.lower().replace(' ', '-')}",
            type=rule_type,
            match=match,
            tags=list(tags),
            **kwargs,
        )
    return _make
