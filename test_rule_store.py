#!/usr/bin/env python3
"""
Test suite for the rule store.

Tests validation, id generation, CRUD, groups, import and export.
"""

import json
import unittest
from pathlib import Path
import tempfile

import pytest
import yaml
from jsonschema import Draft7Validator

from rule_store import (
    RULE_SCHEMA,
    FilterSpec,
    Group,
    Rule,
    RuleStore,
    RuleStoreError,
    RuleValidationError,
    SentimentFilter,
    generate_rule_id,
    slugify,
    validate_rule,
)


def fixed_clock():
    return "2024-01-01T00:00:00.000Z"


@pytest.fixture
def store(tmp_path):
    return RuleStore(tmp_path / "rules.json", clock=fixed_clock)


# ============================================================================
# Validation Tests
# ============================================================================

def test_schema_is_valid_json_schema():
    """Rule schema itself must be a valid JSON Schema Draft 7."""
    Draft7Validator.check_schema(RULE_SCHEMA)


def test_minimal_valid_rule():
    result = validate_rule({"type": "keyword", "match": "docker", "tags": ["devops"]})
    assert result.valid
    assert result.errors == []


def test_missing_type():
    result = validate_rule({"match": "docker", "tags": ["devops"]})
    assert "Rule type is required" in result.errors


def test_unknown_type():
    result = validate_rule({"type": "regex", "match": "x", "tags": ["t"]})
    assert "Rule type must be 'pattern', 'keyword', 'literal', or 'entity'" in result.errors


def test_collects_every_violation():
    result = validate_rule({
        "type": "keyword",
        "match": "",
        "tags": [],
        "lemma": True,
        "stem": True,
        "filters": {"sentiment": {"min": 2, "max": -3}},
    })
    assert not result.valid
    assert "Match pattern/keyword/phrase is required" in result.errors
    assert "At least one tag is required" in result.errors
    assert "Cannot use both lemma and stem options" in result.errors
    assert "Sentiment min must be between -1 and 1" in result.errors
    assert "Sentiment max must be between -1 and 1" in result.errors
    assert "Sentiment min must be less than or equal to max" in result.errors


def test_inverted_sentiment_bounds():
    result = validate_rule({
        "type": "literal", "match": "x", "tags": ["t"],
        "filters": {"sentiment": {"min": 0.5, "max": 0.1}},
    })
    assert result.errors == ["Sentiment min must be less than or equal to max"]


def test_single_sentiment_bound_is_valid():
    result = validate_rule({
        "type": "literal", "match": "x", "tags": ["t"],
        "filters": {"sentiment": {"max": -0.2}},
    })
    assert result.valid


def test_schema_rejects_unknown_pos_filter():
    result = validate_rule({
        "type": "keyword", "match": "x", "tags": ["t"],
        "filters": {"pos": ["VERBISH"]},
    })
    assert not result.valid
    assert any(e.startswith("filters.pos.0:") for e in result.errors)


def test_schema_rejects_bad_scope():
    result = validate_rule({
        "type": "keyword", "match": "x", "tags": ["t"],
        "filters": {"requireEntity": [{"types": ["DATE"], "scope": "chapter"}]},
    })
    assert not result.valid


def test_pattern_rejects_unknown_pos_name():
    result = validate_rule({"type": "pattern", "match": "ADJ THING", "tags": ["t"]})
    assert "Unknown part-of-speech tag in pattern: THING" in result.errors


def test_invalid_tag_characters():
    result = validate_rule({"type": "literal", "match": "x", "tags": ["has space"]})
    assert not result.valid


def test_lemma_only_for_keyword_rules():
    result = validate_rule({"type": "literal", "match": "x", "tags": ["t"], "lemma": True})
    assert "Lemma and stem options only apply to keyword rules" in result.errors


# ============================================================================
# Id Generation Tests
# ============================================================================

@pytest.mark.parametrize("text,expected", [
    ("Machine Learning", "machine-learning"),
    ("  --Hello, World!--  ", "hello-world"),
    ("ADJ NOUN", "adj-noun"),
])
def test_slugify(text, expected):
    assert slugify(text) == expected


def test_slug_is_truncated():
    assert len(slugify("x" * 80)) == 50


def test_generate_rule_id_collisions():
    existing = {"keyword-docker", "keyword-docker-2"}
    assert generate_rule_id("keyword", "docker", existing) == "keyword-docker-3"
    assert generate_rule_id("literal", "docker", existing) == "literal-docker"


# ============================================================================
# CRUD Tests
# ============================================================================

class TestRuleStoreCrud(unittest.TestCase):
    """Test add/get/list/update/remove against a temporary file."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "rules.json"
        self.store = RuleStore(self.path, clock=fixed_clock)

    def tearDown(self):
        self.tmp.cleanup()

    def test_add_assigns_id_and_created(self):
        rule = self.store.add({"type": "keyword", "match": "Docker", "tags": ["#devops"]})
        self.assertEqual(rule.id, "keyword-docker")
        self.assertEqual(rule.tags, ["devops"])
        self.assertEqual(rule.created, fixed_clock())
        self.assertTrue(rule.enabled)

    def test_add_persists_wire_format(self):
        self.store.add({
            "type": "pattern", "match": "ADJ NOUN", "tags": ["ideas"],
            "filters": {"sentiment": {"min": 0.5}},
        })
        data = json.loads(self.path.read_text())
        record = data["rules"][0]
        self.assertEqual(record["id"], "pattern-adj-noun")
        self.assertEqual(record["filters"], {"sentiment": {"min": 0.5}})
        self.assertNotIn("lemma", record)

    def test_duplicate_match_gets_suffix(self):
        self.store.add({"type": "keyword", "match": "docker", "tags": ["a"]})
        second = self.store.add({"type": "keyword", "match": "docker", "tags": ["b"]})
        self.assertEqual(second.id, "keyword-docker-2")

    def test_invalid_rule_is_not_written(self):
        with self.assertRaises(RuleValidationError) as ctx:
            self.store.add({"type": "keyword", "match": "docker", "tags": []})
        self.assertIn("At least one tag is required", ctx.exception.errors)
        self.assertFalse(self.path.exists())

    def test_get_and_list_filters(self):
        self.store.add({"type": "keyword", "match": "a", "tags": ["t"], "groups": ["work"]})
        self.store.add({"type": "keyword", "match": "b", "tags": ["t"], "enabled": False})
        self.assertEqual(self.store.get("keyword-a").match, "a")
        self.assertIsNone(self.store.get("missing"))
        self.assertEqual([r.id for r in self.store.list(enabled_only=True)], ["keyword-a"])
        self.assertEqual([r.id for r in self.store.list(disabled_only=True)], ["keyword-b"])
        self.assertEqual([r.id for r in self.store.list(group="work")], ["keyword-a"])

    def test_update_keeps_identity_fields(self):
        self.store.add({"type": "keyword", "match": "docker", "tags": ["devops"]})
        updated = self.store.update("keyword-docker", {
            "id": "other", "match": "podman", "type": "literal",
            "tags": ["containers"], "description": "Container notes",
        })
        self.assertEqual(updated.id, "keyword-docker")
        self.assertEqual(updated.match, "docker")
        self.assertEqual(updated.type, "keyword")
        self.assertEqual(updated.tags, ["containers"])
        self.assertEqual(updated.modified, fixed_clock())

    def test_update_rejects_invalid_result(self):
        self.store.add({"type": "keyword", "match": "docker", "tags": ["devops"]})
        with self.assertRaises(RuleValidationError):
            self.store.update("keyword-docker", {"tags": []})
        self.assertEqual(self.store.get("keyword-docker").tags, ["devops"])

    def test_update_none_removes_field(self):
        self.store.add({"type": "keyword", "match": "docker", "tags": ["devops"],
                        "filters": {"pos": ["NOUN"]}})
        updated = self.store.update("keyword-docker", {"filters": None})
        self.assertIsNone(updated.filters)

    def test_update_missing_rule(self):
        self.assertIsNone(self.store.update("missing", {"tags": ["x"]}))

    def test_remove(self):
        self.store.add({"type": "keyword", "match": "docker", "tags": ["devops"]})
        self.assertTrue(self.store.remove("keyword-docker"))
        self.assertFalse(self.store.remove("keyword-docker"))
        self.assertEqual(self.store.list(), [])

    def test_enable_disable_and_stats(self):
        self.store.add({"type": "keyword", "match": "a", "tags": ["t"]})
        self.store.add({"type": "keyword", "match": "b", "tags": ["t"]})
        self.store.disable("keyword-a")
        self.assertEqual(self.store.stats(), {"total": 2, "enabled": 1, "disabled": 1})
        self.store.enable("keyword-a")
        self.assertTrue(self.store.get("keyword-a").enabled)
        self.assertIsNone(self.store.set_enabled("missing", True))

    def test_corrupt_file_loads_empty(self):
        self.path.write_text("{not json")
        self.assertEqual(self.store.list(), [])
        rule = self.store.add({"type": "literal", "match": "x", "tags": ["t"]})
        self.assertEqual(rule.id, "literal-x")

    def test_settings_defaults_and_overrides(self):
        self.path.write_text(json.dumps({"rules": [], "settings": {"pruneDisabledRuleTags": True}}))
        settings = self.store.settings()
        self.assertTrue(settings["pruneDisabledRuleTags"])
        self.assertEqual(settings["defaultScope"], "sentence")


# ============================================================================
# Group Tests
# ============================================================================

def test_group_save_and_cascade_remove(store):
    store.save_group("work", Group(description="Work notes", additional_tags=["job"]))
    store.add({"type": "keyword", "match": "a", "tags": ["t"], "groups": ["work", "misc"]})
    store.add({"type": "keyword", "match": "b", "tags": ["t"], "groups": ["work"]})

    assert store.get_group("work").additional_tags == ["job"]
    assert store.remove_group("work") is True
    assert store.get_group("work") is None
    assert store.get("keyword-a").groups == ["misc"]
    assert store.get("keyword-b").groups == []
    assert store.remove_group("work") is False


# ============================================================================
# Import / Export Tests
# ============================================================================

def test_export_import_round_trip(tmp_path, store):
    store.add({"type": "keyword", "match": "docker", "tags": ["devops"], "lemma": True})
    store.add({"type": "pattern", "match": "ADJ NOUN", "tags": ["ideas"],
               "filters": {"sentiment": {"min": 0.5, "scope": "paragraph"}}})
    store.add({"type": "entity", "match": "URL", "tags": ["links"], "enabled": False})
    store.save_group("work", Group(description="Work"))

    exported = store.export()
    target = RuleStore(tmp_path / "other.json", clock=lambda: "later")
    result = target.import_rules(exported)

    assert result.imported == 3
    assert result.errors == []

    def strip_ids(rules):
        return [{k: v for k, v in r.to_dict().items() if k != "id"} for r in rules]

    assert strip_ids(target.list()) == strip_ids(store.list())
    assert target.groups() == store.groups()


def test_export_yaml(store):
    store.add({"type": "literal", "match": "stand-up", "tags": ["meetings"]})
    document = yaml.safe_load(store.export("yaml"))
    assert document["rules"][0]["match"] == "stand-up"


def test_export_unknown_format(store):
    with pytest.raises(RuleStoreError):
        store.export("xml")


def test_import_is_best_effort(store):
    payload = json.dumps({"rules": [
        {"type": "keyword", "match": "ok", "tags": ["t"]},
        {"type": "keyword", "match": "bad", "tags": []},
        "not a rule",
        {"type": "literal", "match": "fine", "tags": ["t"]},
    ]})
    result = store.import_rules(payload)
    assert result.imported == 2
    assert result.skipped == 2
    assert result.errors[0] == "Rule 2: At least one tag is required"
    assert result.errors[1].startswith("Rule 3:")


def test_import_regenerates_ids(store):
    store.add({"type": "keyword", "match": "docker", "tags": ["devops"]})
    result = store.import_rules(json.dumps({
        "id": "keyword-docker", "type": "keyword", "match": "docker", "tags": ["devops"],
    }))
    assert result.imported == 1
    assert [r.id for r in store.list()] == ["keyword-docker", "keyword-docker-2"]


def test_import_yaml_document(store):
    result = store.import_rules("rules:\n  - type: literal\n    match: hello\n    tags: [greeting]\n")
    assert result.imported == 1
    assert store.get("literal-hello").tags == ["greeting"]


def test_import_unparseable(store):
    result = store.import_rules("{broken: [")
    assert result.imported == 0
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Invalid JSON")


def test_import_merges_groups(store):
    store.save_group("home", Group(description="Home"))
    store.import_rules(json.dumps({"rules": [], "groups": {"work": {"description": "Work"}}}))
    assert set(store.groups()) == {"home", "work"}


# ============================================================================
# Dataclass Mapping Tests
# ============================================================================

def test_rule_wire_mapping():
    rule = Rule(
        id="keyword-x", type="keyword", match="x", tags=["t"], stem=True,
        filters=FilterSpec(sentiment=SentimentFilter(min=-0.5)),
    )
    data = rule.to_dict()
    assert data["stem"] is True
    assert data["filters"] == {"sentiment": {"min": -0.5}}
    assert "description" not in data
    assert Rule.from_dict(data) == rule


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
