#!/usr/bin/env python3
"""
Rule Store - typed CRUD and persistence for tagging rules.

Rules are kept in a single JSON document of the form:

    {"rules": [...], "groups": {...}, "settings": {...}}

Every operation reloads the document and every mutation writes it back
atomically, so separate CLI invocations always see each other's changes.

Key Features:
- Rule, FilterSpec and Group dataclasses with camelCase wire mapping
- Two-layer validation: JSON Schema (structure) plus semantic checks
- Deterministic id generation from rule type and match text
- Best-effort import of JSON or YAML, single-save per batch
- Group registry with cascading removal
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from jsonschema import Draft7Validator

from app_config import DEFAULT_SETTINGS, load_json, save_json_atomic
from markdown_parser import VALID_TAG
from text_analyzer import POS_TAGS

logger = logging.getLogger(__name__)

RULE_TYPES = ('pattern', 'keyword', 'literal', 'entity')
SCOPES = ('sentence', 'paragraph', 'document', 'match')
EXPORT_FORMATS = ('json', 'yaml')
IMMUTABLE_FIELDS = ('id', 'type', 'match', 'created')
SLUG_LENGTH = 50


# Structural schema for a rule draft. Required fields and cross-field
# constraints are checked semantically so that every message is readable.
RULE_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "type": {"type": "string"},
        "match": {"type": "string"},
        "lemma": {"type": "boolean"},
        "stem": {"type": "boolean"},
        "tags": {"type": "array", "items": {"type": "string"}},
        "groups": {"type": "array", "items": {"type": "string"}},
        "enabled": {"type": "boolean"},
        "description": {"type": "string"},
        "created": {"type": "string"},
        "modified": {"type": "string"},
        "filters": {
            "type": "object",
            "properties": {
                "pos": {
                    "type": "array",
                    "items": {"type": "string", "enum": list(POS_TAGS)},
                },
                "requireEntity": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "types": {
                                "type": "array",
                                "items": {"type": "string"},
                                "minItems": 1,
                            },
                            "scope": {"type": "string", "enum": list(SCOPES)},
                        },
                        "required": ["types"],
                    },
                },
                "sentiment": {
                    "type": "object",
                    "properties": {
                        "min": {"type": "number"},
                        "max": {"type": "number"},
                        "scope": {"type": "string", "enum": list(SCOPES)},
                    },
                },
            },
        },
    },
}

_schema_validator = Draft7Validator(RULE_SCHEMA)


class RuleStoreError(Exception):
    """Base exception for rule store errors."""
    pass


class RuleValidationError(RuleStoreError):
    """Exception raised when a rule draft fails validation."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


@dataclass
class EntityFilter:
    """Entity requirement: any of types must appear within scope."""
    types: List[str]
    scope: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'types': list(self.types)}
        if self.scope:
            data['scope'] = self.scope
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EntityFilter':
        return cls(types=list(data.get('types') or []), scope=data.get('scope'))


@dataclass
class SentimentFilter:
    """Sentiment bounds, inclusive. Either bound may be absent."""
    min: Optional[float] = None
    max: Optional[float] = None
    scope: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.min is not None:
            data['min'] = self.min
        if self.max is not None:
            data['max'] = self.max
        if self.scope:
            data['scope'] = self.scope
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SentimentFilter':
        return cls(min=data.get('min'), max=data.get('max'), scope=data.get('scope'))


@dataclass
class FilterSpec:
    """
    Compound filter attached to a rule.

    Attributes:
        pos: Allowed POS tags (any one suffices)
        require_entity: Entity requirements (any entry suffices)
        sentiment: Sentiment bounds
    """
    pos: Optional[List[str]] = None
    require_entity: Optional[List[EntityFilter]] = None
    sentiment: Optional[SentimentFilter] = None

    def is_empty(self) -> bool:
        return not self.pos and not self.require_entity and self.sentiment is None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.pos:
            data['pos'] = list(self.pos)
        if self.require_entity:
            data['requireEntity'] = [e.to_dict() for e in self.require_entity]
        if self.sentiment is not None:
            data['sentiment'] = self.sentiment.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FilterSpec':
        entities = data.get('requireEntity')
        sentiment = data.get('sentiment')
        return cls(
            pos=list(data['pos']) if data.get('pos') else None,
            require_entity=[EntityFilter.from_dict(e) for e in entities] if entities else None,
            sentiment=SentimentFilter.from_dict(sentiment) if sentiment is not None else None,
        )


@dataclass
class Rule:
    """
    A persisted tagging rule.

    Attributes:
        id: Unique identifier derived from type and match
        type: One of RULE_TYPES
        match: POS sequence, keyword, phrase or entity type
        tags: Tags applied when the rule fires (never empty)
        lemma: Keyword rules compare lemmas
        stem: Keyword rules compare stems
        filters: Optional compound filter
        groups: Group names used for organization
        enabled: Disabled rules never fire
        description: Free-form note
        created: ISO-8601 creation timestamp
        modified: ISO-8601 timestamp of the last update
    """
    id: str
    type: str
    match: str
    tags: List[str]
    lemma: bool = False
    stem: bool = False
    filters: Optional[FilterSpec] = None
    groups: List[str] = field(default_factory=list)
    enabled: bool = True
    description: Optional[str] = None
    created: Optional[str] = None
    modified: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to wire form, omitting absent optional fields."""
        data: Dict[str, Any] = {'id': self.id, 'type': self.type, 'match': self.match}
        if self.lemma:
            data['lemma'] = True
        if self.stem:
            data['stem'] = True
        if self.filters is not None and not self.filters.is_empty():
            data['filters'] = self.filters.to_dict()
        data['tags'] = list(self.tags)
        if self.groups:
            data['groups'] = list(self.groups)
        data['enabled'] = self.enabled
        if self.description:
            data['description'] = self.description
        if self.created:
            data['created'] = self.created
        if self.modified:
            data['modified'] = self.modified
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Rule':
        """Build a Rule from wire form. Unknown keys are ignored."""
        filters = data.get('filters')
        return cls(
            id=data['id'],
            type=data['type'],
            match=data['match'],
            tags=list(data['tags']),
            lemma=bool(data.get('lemma', False)),
            stem=bool(data.get('stem', False)),
            filters=FilterSpec.from_dict(filters) if filters else None,
            groups=list(data.get('groups') or []),
            enabled=bool(data.get('enabled', True)),
            description=data.get('description'),
            created=data.get('created'),
            modified=data.get('modified'),
        )


@dataclass
class Group:
    """Named collection of rules. Groups do not affect matching."""
    description: Optional[str] = None
    additional_tags: List[str] = field(default_factory=list)
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.description:
            data['description'] = self.description
        if self.additional_tags:
            data['additionalTags'] = list(self.additional_tags)
        data['enabled'] = self.enabled
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Group':
        return cls(
            description=data.get('description'),
            additional_tags=list(data.get('additionalTags') or []),
            enabled=bool(data.get('enabled', True)),
        )


@dataclass
class ValidationResult:
    """Outcome of validating a rule draft."""
    valid: bool
    errors: List[str]


@dataclass
class ImportResult:
    """Outcome of an import: counts plus one message per skipped record."""
    imported: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def slugify(text: str) -> str:
    """
    Derive the slug part of a rule id.

    Example:
        >>> slugify("Machine Learning!")
        'machine-learning'
    """
    slug = re.sub(r'[^a-z0-9]+', '-', text.lower()).strip('-')
    return slug[:SLUG_LENGTH]


def generate_rule_id(rule_type: str, match: str, existing_ids) -> str:
    """
    Generate a rule id unique within existing_ids.

    Example:
        >>> generate_rule_id("keyword", "meeting", {"keyword-meeting"})
        'keyword-meeting-2'
    """
    base = f"{rule_type}-{slugify(match)}"
    candidate = base
    suffix = 2
    while candidate in existing_ids:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def normalize_tags(tags) -> Any:
    """Strip whitespace and a leading "#" from each tag. Non-lists pass through."""
    if not isinstance(tags, list):
        return tags
    return [t.strip().lstrip('#') if isinstance(t, str) else t for t in tags]


def _format_schema_error(error) -> str:
    location = '.'.join(str(part) for part in error.absolute_path)
    return f"{location}: {error.message}" if location else error.message


def validate_rule(draft: Dict[str, Any]) -> ValidationResult:
    """
    Validate a rule draft.

    Collects every violation rather than stopping at the first one.

    Args:
        draft: Rule in wire form (id and timestamps optional)

    Returns:
        ValidationResult with valid flag and error messages

    Example:
        >>> validate_rule({"type": "literal", "match": "x", "tags": []}).errors
        ['At least one tag is required']
    """
    if not isinstance(draft, dict):
        return ValidationResult(False, ["Rule must be an object"])

    errors = [
        _format_schema_error(e)
        for e in sorted(_schema_validator.iter_errors(draft),
                        key=lambda e: [str(p) for p in e.absolute_path])
    ]

    rule_type = draft.get('type')
    if not rule_type:
        errors.append("Rule type is required")
    elif rule_type not in RULE_TYPES:
        errors.append("Rule type must be 'pattern', 'keyword', 'literal', or 'entity'")

    match = draft.get('match')
    if not isinstance(match, str) or not match.strip():
        errors.append("Match pattern/keyword/phrase is required")
    elif rule_type == 'pattern':
        for name in match.split():
            if name.upper() not in POS_TAGS:
                errors.append(f"Unknown part-of-speech tag in pattern: {name}")

    tags = draft.get('tags')
    if not isinstance(tags, list) or not tags:
        errors.append("At least one tag is required")
    else:
        for tag in tags:
            if isinstance(tag, str) and not VALID_TAG.match(tag):
                errors.append(
                    f"Invalid tag '{tag}': tags may only contain letters, digits, '-', '_' and '/'"
                )

    if draft.get('lemma') and draft.get('stem'):
        errors.append("Cannot use both lemma and stem options")
    elif (draft.get('lemma') or draft.get('stem')) and rule_type in RULE_TYPES and rule_type != 'keyword':
        errors.append("Lemma and stem options only apply to keyword rules")

    filters = draft.get('filters')
    sentiment = filters.get('sentiment') if isinstance(filters, dict) else None
    if isinstance(sentiment, dict):
        errors.extend(_sentiment_errors(sentiment.get('min'), sentiment.get('max')))

    return ValidationResult(valid=not errors, errors=errors)


def _sentiment_errors(low, high) -> List[str]:
    errors = []
    numeric = (int, float)
    low_ok = isinstance(low, numeric) and not isinstance(low, bool)
    high_ok = isinstance(high, numeric) and not isinstance(high, bool)
    if low_ok and not -1 <= low <= 1:
        errors.append("Sentiment min must be between -1 and 1")
    if high_ok and not -1 <= high <= 1:
        errors.append("Sentiment max must be between -1 and 1")
    if low_ok and high_ok and low > high:
        errors.append("Sentiment min must be less than or equal to max")
    return errors


class RuleStore:
    """
    File-backed rule repository.

    Args:
        path: Location of rules.json
        clock: Callable returning the current timestamp string
    """

    def __init__(self, path: Path, clock: Optional[Callable[[], str]] = None):
        self.path = Path(path)
        self._clock = clock or utc_now

    # Persistence

    def _load(self) -> Dict[str, Any]:
        data = load_json(self.path, {})
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed rule file %s", self.path)
            data = {}
        if not isinstance(data.get('rules'), list):
            data['rules'] = []
        if not isinstance(data.get('groups'), dict):
            data['groups'] = {}
        if not isinstance(data.get('settings'), dict):
            data['settings'] = {}
        return data

    def _save(self, data: Dict[str, Any]):
        document: Dict[str, Any] = {'rules': data['rules']}
        if data['groups']:
            document['groups'] = data['groups']
        if data['settings']:
            document['settings'] = data['settings']
        save_json_atomic(self.path, document)

    def _parse_rules(self, records: List[Any]) -> List[Rule]:
        rules = []
        for record in records:
            try:
                rules.append(Rule.from_dict(record))
            except (KeyError, TypeError, AttributeError) as e:
                logger.warning("Skipping malformed stored rule %r: %s", record, e)
        return rules

    def _new_record(self, draft: Dict[str, Any], existing_ids, created: Optional[str]) -> Dict[str, Any]:
        record = dict(draft)
        record['id'] = generate_rule_id(record['type'], record['match'], existing_ids)
        record['created'] = created or self._clock()
        record.setdefault('enabled', True)
        return Rule.from_dict(record).to_dict()

    # CRUD

    def add(self, draft: Dict[str, Any]) -> Rule:
        """
        Validate and persist a new rule.

        Args:
            draft: Rule fields in wire form; id and created are assigned here

        Returns:
            The stored Rule

        Raises:
            RuleValidationError: If the draft is invalid (nothing is written)
        """
        draft = {k: v for k, v in draft.items() if k not in ('id', 'created', 'modified')}
        draft['tags'] = normalize_tags(draft.get('tags'))
        result = validate_rule(draft)
        if not result.valid:
            raise RuleValidationError(result.errors)

        data = self._load()
        existing_ids = {r.get('id') for r in data['rules'] if isinstance(r, dict)}
        record = self._new_record(draft, existing_ids, None)
        data['rules'].append(record)
        self._save(data)
        logger.debug("Added rule %s", record['id'])
        return Rule.from_dict(record)

    def get(self, rule_id: str) -> Optional[Rule]:
        for rule in self.list():
            if rule.id == rule_id:
                return rule
        return None

    def list(self, enabled_only: bool = False, disabled_only: bool = False,
             group: Optional[str] = None) -> List[Rule]:
        """
        List rules in stored order.

        Args:
            enabled_only: Only enabled rules
            disabled_only: Only disabled rules
            group: Only rules belonging to this group
        """
        rules = self._parse_rules(self._load()['rules'])
        if enabled_only:
            rules = [r for r in rules if r.enabled]
        if disabled_only:
            rules = [r for r in rules if not r.enabled]
        if group:
            rules = [r for r in rules if group in r.groups]
        return rules

    def update(self, rule_id: str, changes: Dict[str, Any]) -> Optional[Rule]:
        """
        Apply changes to an existing rule.

        id, type, match and created never change; those keys in changes are
        ignored. A change whose value is None removes the field.

        Returns:
            Updated Rule, or None if no rule has rule_id

        Raises:
            RuleValidationError: If the merged rule is invalid
        """
        data = self._load()
        for index, record in enumerate(data['rules']):
            if isinstance(record, dict) and record.get('id') == rule_id:
                break
        else:
            return None

        merged = dict(record)
        for key, value in changes.items():
            if key in IMMUTABLE_FIELDS or key == 'modified':
                continue
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = normalize_tags(value) if key == 'tags' else value

        result = validate_rule(merged)
        if not result.valid:
            raise RuleValidationError(result.errors)

        merged['modified'] = self._clock()
        data['rules'][index] = Rule.from_dict(merged).to_dict()
        self._save(data)
        return Rule.from_dict(data['rules'][index])

    def remove(self, rule_id: str) -> bool:
        data = self._load()
        remaining = [r for r in data['rules'] if not (isinstance(r, dict) and r.get('id') == rule_id)]
        if len(remaining) == len(data['rules']):
            return False
        data['rules'] = remaining
        self._save(data)
        return True

    def set_enabled(self, rule_id: str, enabled: bool) -> Optional[Rule]:
        return self.update(rule_id, {'enabled': enabled})

    def enable(self, rule_id: str) -> Optional[Rule]:
        return self.set_enabled(rule_id, True)

    def disable(self, rule_id: str) -> Optional[Rule]:
        return self.set_enabled(rule_id, False)

    def validate(self, draft: Dict[str, Any]) -> ValidationResult:
        return validate_rule(draft)

    def stats(self) -> Dict[str, int]:
        rules = self.list()
        enabled = sum(1 for r in rules if r.enabled)
        return {'total': len(rules), 'enabled': enabled, 'disabled': len(rules) - enabled}

    def settings(self) -> Dict[str, Any]:
        """Stored settings layered over DEFAULT_SETTINGS."""
        return {**DEFAULT_SETTINGS, **self._load()['settings']}

    # Import / export

    def export(self, fmt: str = 'json') -> str:
        """
        Serialize the whole store.

        Args:
            fmt: "json" or "yaml"

        Raises:
            RuleStoreError: If fmt is not supported
        """
        if fmt not in EXPORT_FORMATS:
            raise RuleStoreError(f"Unsupported export format: {fmt}")
        data = self._load()
        document: Dict[str, Any] = {'rules': [r.to_dict() for r in self._parse_rules(data['rules'])]}
        if data['groups']:
            document['groups'] = data['groups']
        if data['settings']:
            document['settings'] = data['settings']
        if fmt == 'yaml':
            return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)
        return json.dumps(document, indent=2)

    def import_rules(self, serialized: str) -> ImportResult:
        """
        Import rules from a JSON or YAML document.

        Accepts a full store document ({"rules": [...], "groups": {...}}), a
        list of rules, or a single rule object. Ids are always regenerated;
        created and modified timestamps are kept when present. Invalid records
        are skipped and reported, never aborting the batch. Imported groups
        are merged into existing groups.

        Args:
            serialized: Document text

        Returns:
            ImportResult with counts and per-record errors
        """
        result = ImportResult()
        try:
            payload = _parse_document(serialized)
        except ValueError as e:
            result.errors.append(str(e))
            return result

        groups: Dict[str, Any] = {}
        if isinstance(payload, dict) and 'rules' in payload:
            records = payload['rules']
            groups = payload.get('groups') or {}
        elif isinstance(payload, dict):
            records = [payload]
        else:
            records = payload
        if not isinstance(records, list) or not isinstance(groups, dict):
            result.errors.append("Expected a rule, a list of rules or a rules document")
            return result

        data = self._load()
        existing_ids = {r.get('id') for r in data['rules'] if isinstance(r, dict)}
        for number, record in enumerate(records, start=1):
            if not isinstance(record, dict):
                result.skipped += 1
                result.errors.append(f"Rule {number}: Rule must be an object")
                continue
            draft = {k: v for k, v in record.items() if k != 'id'}
            draft['tags'] = normalize_tags(draft.get('tags'))
            check = validate_rule(draft)
            if not check.valid:
                result.skipped += 1
                result.errors.append(f"Rule {number}: {'; '.join(check.errors)}")
                continue
            created = draft.pop('created', None)
            new_record = self._new_record(draft, existing_ids, created)
            existing_ids.add(new_record['id'])
            data['rules'].append(new_record)
            result.imported += 1

        for name, group in groups.items():
            if isinstance(group, dict):
                data['groups'][name] = Group.from_dict(group).to_dict()
            else:
                result.errors.append(f"Group {name}: Group must be an object")

        if result.imported or groups:
            self._save(data)
        return result

    # Groups

    def groups(self) -> Dict[str, Group]:
        return {
            name: Group.from_dict(group)
            for name, group in self._load()['groups'].items()
            if isinstance(group, dict)
        }

    def get_group(self, name: str) -> Optional[Group]:
        return self.groups().get(name)

    def save_group(self, name: str, group: Group):
        data = self._load()
        data['groups'][name] = group.to_dict()
        self._save(data)

    def remove_group(self, name: str) -> bool:
        """Remove a group and strip its name from every rule's groups."""
        data = self._load()
        if name not in data['groups']:
            return False
        del data['groups'][name]
        for record in data['rules']:
            if isinstance(record, dict) and name in (record.get('groups') or []):
                record['groups'] = [g for g in record['groups'] if g != name]
                if not record['groups']:
                    del record['groups']
        self._save(data)
        return True


def _parse_document(serialized: str) -> Any:
    """Parse JSON, falling back to YAML. Raises ValueError when neither parses."""
    try:
        return json.loads(serialized)
    except json.JSONDecodeError as json_error:
        try:
            payload = yaml.safe_load(serialized)
        except yaml.YAMLError:
            raise ValueError(f"Invalid JSON: {json_error}")
        if not isinstance(payload, (dict, list)):
            raise ValueError(f"Invalid JSON: {json_error}")
        return payload
