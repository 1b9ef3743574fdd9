#!/usr/bin/env python3
"""
Tag Reconciler - keeps a document's tags in sync with the rule set.

For each document the reconciler:
1. Runs every enabled rule through the match engine and filter evaluator
2. Collects the tags of the rules that fired (expected tags)
3. Computes the managed tags (tags declared by enabled rules)
4. Extracts the tags already present outside code blocks
5. Removes existing managed tags that are no longer expected
6. Adds expected tags that are missing

Tags that no enabled rule declares are never touched. Reconciling the result
a second time with the same rules is a no-op.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from app_config import write_text_atomic
from filter_evaluator import FilterEvaluator
from markdown_parser import TAG_CHARS, code_line_indices, extract_tags, find_last_tag_line, mask_tags
from match_engine import MatchEngine, MatchError
from rule_store import Rule

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    """
    Outcome of reconciling one document.

    Attributes:
        modified: True if the document text changed
        added_tags: Tags added, in rule order
        removed_tags: Tags removed, in document order
        fired_rule_ids: Ids of rules with at least one surviving occurrence
    """
    modified: bool = False
    added_tags: List[str] = field(default_factory=list)
    removed_tags: List[str] = field(default_factory=list)
    fired_rule_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            'modified': self.modified,
            'addedTags': list(self.added_tags),
            'removedTags': list(self.removed_tags),
            'firedRuleIds': list(self.fired_rule_ids),
        }


def _unique(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(items))


def remove_tags(text: str, tags: List[str]) -> str:
    """
    Delete every occurrence of the given tags outside fenced code blocks.

    "#tag" is only removed when the next character cannot continue a tag, so
    removing "meeting" leaves "#meeting-notes" alone. Whitespace left on an
    edited line is collapsed, lines emptied by the removal are dropped along
    with the extra blank line they leave behind, and trailing blank lines are
    collapsed. Edited lines keep their own line ending.

    Args:
        text: Document text
        tags: Tag names without "#"

    Returns:
        Updated document text
    """
    if not tags:
        return text
    alternatives = '|'.join(re.escape(t) for t in sorted(tags, key=len, reverse=True))
    pattern = re.compile(rf'#(?:{alternatives})(?![{TAG_CHARS}])')

    lines = text.split('\n')
    protected = code_line_indices(lines)
    edited: List[Optional[str]] = []
    for index, line in enumerate(lines):
        if index in protected:
            edited.append(line)
            continue
        updated, count = pattern.subn('', line)
        if not count:
            edited.append(line)
        elif not updated.strip():
            edited.append(None)
        else:
            indent = line[:len(line) - len(line.lstrip())]
            body = re.sub(r'[ \t]{2,}', ' ', updated.strip())
            eol = '\r' if line.endswith('\r') else ''
            edited.append(indent + body + eol)

    kept: List[str] = []
    after_drop = False
    for line in edited:
        if line is None:
            after_drop = True
            continue
        if not line.strip():
            # Collapse the blank run around a dropped line to a single blank
            if after_drop and (not kept or not kept[-1].strip()):
                continue
        else:
            after_drop = False
        kept.append(line)

    while kept and not kept[-1].strip():
        kept.pop()
    if not kept:
        return ''
    return '\n'.join(kept) + ('\n' if text.endswith('\n') else '')


def add_tags(text: str, tags: List[str]) -> str:
    """
    Insert tags into a document.

    Tags are appended to the last tag-only line after any frontmatter. When
    the document has no such line, trailing blank lines are trimmed and a
    blank line plus a new tag line are appended. CRLF documents stay CRLF.

    Args:
        text: Document text
        tags: Tag names without "#"

    Returns:
        Updated document text

    Example:
        >>> add_tags("Body text\\n", ["a", "b"])
        'Body text\\n\\n#a #b\\n'
    """
    if not tags:
        return text
    tag_string = ' '.join(f'#{t}' for t in tags)
    newline = '\r\n' if '\r\n' in text else '\n'
    trailing_newline = text.endswith('\n')

    if not text.strip():
        return tag_string + (newline if trailing_newline else '')

    lines = text.split('\n')
    if trailing_newline:
        lines = lines[:-1]
    if newline == '\r\n':
        lines = [line[:-1] if line.endswith('\r') else line for line in lines]

    index = find_last_tag_line(lines)
    if index is not None:
        lines[index] = f"{lines[index].rstrip()} {tag_string}"
    else:
        while lines and not lines[-1].strip():
            lines.pop()
        lines.extend(['', tag_string])

    return newline.join(lines) + (newline if trailing_newline else '')


class TagReconciler:
    """
    Computes and applies tag diffs for documents.

    Args:
        engine: Match engine producing raw occurrences
        evaluator: Filter evaluator pruning occurrences
        prune_disabled: Treat tags of disabled rules as managed, so disabling
            a rule removes its exclusive tags on the next reconcile
    """

    def __init__(self, engine: MatchEngine, evaluator: FilterEvaluator, prune_disabled: bool = False):
        self.engine = engine
        self.evaluator = evaluator
        self.prune_disabled = prune_disabled

    def evaluate_rules(self, text: str, rules: List[Rule]) -> Tuple[List[str], List[str]]:
        """
        Determine which enabled rules fire on text.

        Rules see the document with its tags blanked out, so a tag written by
        one pass never makes a rule fire on the next.

        Returns:
            (fired_rule_ids, expected_tags), both in rule order

        Raises:
            MatchError: If a rule cannot be matched
        """
        fired: List[str] = []
        expected: List[str] = []
        masked = mask_tags(text)
        for rule in rules:
            if not rule.enabled:
                continue
            occurrences = self.engine.matches(rule, masked)
            if self.evaluator.apply_all(masked, occurrences, rule.filters):
                fired.append(rule.id)
                expected.extend(rule.tags)
        return fired, _unique(expected)

    def managed_tags(self, rules: List[Rule]) -> set:
        return {
            tag
            for rule in rules
            if rule.enabled or self.prune_disabled
            for tag in rule.tags
        }

    def reconcile(self, text: str, rules: List[Rule]) -> Tuple[str, ReconciliationResult]:
        """
        Reconcile a document's tags with the rule set.

        Args:
            text: Document text
            rules: Full rule list (disabled rules are skipped)

        Returns:
            (new_text, ReconciliationResult). new_text is text itself when
            nothing changed.

        Raises:
            MatchError: If a rule cannot be matched
        """
        fired, expected = self.evaluate_rules(text, rules)
        managed = self.managed_tags(rules)
        existing = extract_tags(text)
        existing_set = set(existing)
        expected_set = set(expected)

        to_remove = [t for t in existing if t in managed and t not in expected_set]
        to_add = [t for t in expected if t not in existing_set]

        result = ReconciliationResult(fired_rule_ids=fired)
        if not to_remove and not to_add:
            return text, result

        new_text = add_tags(remove_tags(text, to_remove), to_add)
        result.added_tags = to_add
        result.removed_tags = to_remove
        result.modified = new_text != text
        return new_text, result

    def process_file(self, path: Path, rules: List[Rule], dry_run: bool = False) -> ReconciliationResult:
        """
        Reconcile a file on disk.

        The file is rewritten atomically only when it changed and dry_run is
        False; a dry run reports exactly what a real run would do.

        Raises:
            OSError: If the file cannot be read or written
            UnicodeDecodeError: If the file is not UTF-8
            MatchError: If a rule cannot be matched
        """
        path = Path(path)
        with open(path, 'r', encoding='utf-8', newline='') as f:
            text = f.read()
        new_text, result = self.reconcile(text, rules)
        if result.modified and not dry_run:
            write_text_atomic(path, new_text)
            logger.debug("Updated %s: +%s -%s", path, result.added_tags, result.removed_tags)
        return result


def is_hidden(path: Path, root: Path) -> bool:
    """Check whether any directory between root and path starts with a dot."""
    try:
        parts = Path(path).relative_to(root).parts[:-1]
    except ValueError:
        parts = Path(path).parts[:-1]
    return any(part.startswith('.') for part in parts)


def walk_documents(root: Path, extension: str = '.md') -> Iterator[Path]:
    """
    Yield document files under root in sorted order.

    Dot-prefixed directories are skipped. Unreadable directories are logged
    and skipped.

    Args:
        root: Directory to walk
        extension: File suffix to include

    Yields:
        Paths of matching files
    """
    def on_error(error: OSError):
        logger.warning("Skipping unreadable directory %s: %s", error.filename, error.strerror)

    for directory, subdirs, files in os.walk(root, onerror=on_error):
        subdirs[:] = sorted(d for d in subdirs if not d.startswith('.'))
        for name in sorted(files):
            if name.endswith(extension):
                yield Path(directory) / name


def sync_documents(reconciler: TagReconciler, roots: Iterable[Path],
                   rules_loader: Callable[[], List[Rule]],
                   dry_run: bool = False,
                   extension: str = '.md') -> Iterator[Tuple[Path, ReconciliationResult]]:
    """
    Reconcile every document under the given roots.

    Rules are reloaded for each file. Files that cannot be read, decoded or
    matched are logged as warnings and skipped.

    Yields:
        (path, ReconciliationResult) for each successfully processed file
    """
    for root in roots:
        for path in walk_documents(Path(root), extension):
            try:
                result = reconciler.process_file(path, rules_loader(), dry_run=dry_run)
            except (OSError, UnicodeDecodeError, MatchError) as e:
                logger.warning("Skipping %s: %s", path, e)
                continue
            yield path, result
