#!/usr/bin/env python3
"""Command-line interface for rule-based note tagging."""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from app_config import (
    ALIASES_FILE,
    RULES_FILE,
    WATCH_STATE_FILE,
    AliasConfig,
    AliasError,
    config_dir,
    configure_logging,
    write_text_atomic,
)
from discovery import DEFAULT_LIMIT, collect_documents, discover_keyword, discover_keywords, discover_patterns
from filter_evaluator import FilterEvaluator, FilterParseError, describe_filters, parse_filters
from match_engine import MatchEngine, MatchError
from rule_store import (
    EXPORT_FORMATS,
    RULE_TYPES,
    Group,
    Rule,
    RuleStore,
    RuleStoreError,
    RuleValidationError,
)
from spacy_analyzer import SpacyAnalyzer
from tag_reconciler import ReconciliationResult, TagReconciler, sync_documents
from text_analyzer import AnalyzerError, TextAnalyzer
from watch_loop import WatchLoop, WatchStateStore


def make_analyzer(settings: Dict[str, Any]) -> TextAnalyzer:
    """Create the analysis backend named in settings."""
    return SpacyAnalyzer(settings['spacyModel'])


def requires_analysis(rules: List[Rule]) -> bool:
    """Check whether any enabled rule needs linguistic analysis."""
    for rule in rules:
        if not rule.enabled:
            continue
        if rule.type != 'literal' or (rule.filters is not None and not rule.filters.is_empty()):
            return True
    return False


def prepare_analyzer(settings: Dict[str, Any], rules: List[Rule]) -> TextAnalyzer:
    """Create the analyzer, loading models up front when rules will need them."""
    analyzer = make_analyzer(settings)
    if requires_analysis(rules) and hasattr(analyzer, 'load'):
        analyzer.load()
    return analyzer


def build_reconciler(analyzer: TextAnalyzer, settings: Dict[str, Any]) -> TagReconciler:
    return TagReconciler(
        MatchEngine(analyzer),
        FilterEvaluator(analyzer, settings['defaultScope']),
        prune_disabled=bool(settings['pruneDisabledRuleTags']),
    )


def open_store(args) -> RuleStore:
    return RuleStore(config_dir(args.config_dir) / RULES_FILE)


def open_aliases(args) -> AliasConfig:
    return AliasConfig(config_dir(args.config_dir) / ALIASES_FILE)


def parse_tag_list(value: str) -> List[str]:
    """Split a comma-separated tag list, dropping "#" prefixes and blanks."""
    tags = [t.strip().lstrip('#') for t in value.split(',')]
    return list(dict.fromkeys(t for t in tags if t))


def format_tags(tags: List[str]) -> str:
    return ' '.join(f'#{t}' for t in tags)


def match_display(rule: Rule) -> str:
    if rule.type == 'literal':
        return f'"{rule.match}"'
    if rule.type == 'entity':
        return f"{rule.match} entities"
    if rule.lemma:
        return f"{rule.match} (lemma)"
    if rule.stem:
        return f"{rule.match} (stem)"
    return rule.match


def print_result(path: Path, result: ReconciliationResult):
    print(str(path))
    if result.added_tags:
        print(f"  + {format_tags(result.added_tags)}")
    if result.removed_tags:
        print(f"  - {format_tags(result.removed_tags)}")


# Rule commands

def tag_when(args) -> int:
    """Create a rule from command-line options."""
    filters = parse_filters(
        pos=args.pos,
        require_entity=args.require_entity,
        sentiment_min=args.sentiment_min,
        sentiment_max=args.sentiment_max,
        sentiment_between=args.sentiment_between,
    )
    draft: Dict[str, Any] = {
        'type': args.rule_type,
        'match': args.match,
        'tags': parse_tag_list(args.tags),
    }
    if args.lemma:
        draft['lemma'] = True
    if args.stem:
        draft['stem'] = True
    if filters is not None:
        draft['filters'] = filters.to_dict()
    if args.group:
        draft['groups'] = [args.group]
    if args.description:
        draft['description'] = args.description

    rule = open_store(args).add(draft)
    print(f"Created rule: {rule.id}")
    print(f"  Match: {match_display(rule)}")
    print(f"  Tags: {format_tags(rule.tags)}")
    described = describe_filters(rule.filters)
    if described:
        print(f"  Filters: {', '.join(described)}")
    return 0


def tag_list(args) -> int:
    store = open_store(args)
    rules = store.list(enabled_only=args.enabled, disabled_only=args.disabled, group=args.group)
    if not rules:
        print("No rules configured.")
        print("\nCreate a rule with:")
        print("  autotag tag when pattern 'VERB NOUN' --tags action")
        print("  autotag tag when keyword deploy --lemma --tags devops")
        return 0

    stats = store.stats()
    print(f"Rules ({stats['total']} total, {stats['enabled']} enabled):\n")
    for rule in rules:
        print(rule.id if rule.enabled else f"{rule.id} (disabled)")
        print(f"  Type: {rule.type}")
        print(f"  Match: {match_display(rule)}")
        print(f"  Tags: {format_tags(rule.tags)}")
        described = describe_filters(rule.filters)
        if described:
            print(f"  Filters: {', '.join(described)}")
        if rule.groups:
            print(f"  Groups: {', '.join(rule.groups)}")
        print()
    return 0


def tag_show(args) -> int:
    rule = open_store(args).get(args.rule_id)
    if rule is None:
        print(f"Error: Rule '{args.rule_id}' not found", file=sys.stderr)
        return 1
    print(f"Rule: {rule.id}")
    print(f"Type: {rule.type}")
    print(f"Match: {match_display(rule)}")
    print(f"Tags: {format_tags(rule.tags)}")
    described = describe_filters(rule.filters)
    if described:
        print("Filters:")
        for item in described:
            print(f"  - {item}")
    if rule.groups:
        print(f"Groups: {', '.join(rule.groups)}")
    if rule.description:
        print(f"Description: {rule.description}")
    print(f"Enabled: {'yes' if rule.enabled else 'no'}")
    if rule.created:
        print(f"Created: {rule.created}")
    if rule.modified:
        print(f"Modified: {rule.modified}")
    return 0


def tag_remove(args) -> int:
    if not open_store(args).remove(args.rule_id):
        print(f"Error: Rule '{args.rule_id}' not found", file=sys.stderr)
        return 1
    print(f"Removed rule: {args.rule_id}")
    return 0


def tag_enable(args) -> int:
    return _set_enabled(args, True)


def tag_disable(args) -> int:
    return _set_enabled(args, False)


def _set_enabled(args, enabled: bool) -> int:
    if open_store(args).set_enabled(args.rule_id, enabled) is None:
        print(f"Error: Rule '{args.rule_id}' not found", file=sys.stderr)
        return 1
    print(f"{'Enabled' if enabled else 'Disabled'} rule: {args.rule_id}")
    return 0


def tag_stats(args) -> int:
    stats = open_store(args).stats()
    print(f"Total: {stats['total']}")
    print(f"Enabled: {stats['enabled']}")
    print(f"Disabled: {stats['disabled']}")
    return 0


def tag_export(args) -> int:
    text = open_store(args).export(args.format)
    if args.output:
        write_text_atomic(Path(args.output), text if text.endswith('\n') else text + '\n')
        print(f"Exported rules to {args.output}")
    else:
        print(text)
    return 0


def tag_import(args) -> int:
    try:
        text = Path(args.file).read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        print(f"Error: Cannot read {args.file}: {e}", file=sys.stderr)
        return 1
    result = open_store(args).import_rules(text)
    print(f"Imported {result.imported} rules")
    if result.skipped:
        print(f"Skipped {result.skipped} rules")
    for error in result.errors:
        print(f"[WARN] {error}", file=sys.stderr)
    return 1 if result.errors and not result.imported else 0


def group_list(args) -> int:
    store = open_store(args)
    groups = store.groups()
    if not groups:
        print("No groups configured.")
        return 0
    for name, group in groups.items():
        count = len(store.list(group=name))
        status = '' if group.enabled else ' (disabled)'
        print(f"{name}{status}: {count} rules")
        if group.description:
            print(f"  {group.description}")
        if group.additional_tags:
            print(f"  Tags: {format_tags(group.additional_tags)}")
    return 0


def group_add(args) -> int:
    group = Group(
        description=args.description,
        additional_tags=parse_tag_list(args.tags) if args.tags else [],
    )
    open_store(args).save_group(args.name, group)
    print(f"Saved group: {args.name}")
    return 0


def group_remove(args) -> int:
    if not open_store(args).remove_group(args.name):
        print(f"Error: Group '{args.name}' not found", file=sys.stderr)
        return 1
    print(f"Removed group: {args.name}")
    return 0


# Document commands

def sync(args) -> int:
    """Reconcile every document under the selected directories."""
    directories = open_aliases(args).directories(args.alias)
    store = open_store(args)
    settings = store.settings()
    rules = store.list()
    enabled = [r for r in rules if r.enabled]
    if not enabled and not (settings['pruneDisabledRuleTags'] and rules):
        print("No enabled rules configured.")
        print("\nCreate a rule with:")
        print("  autotag tag when pattern 'VERB NOUN' --tags action")
        print("  autotag tag when keyword deploy --lemma --tags devops")
        return 1

    reconciler = build_reconciler(prepare_analyzer(settings, rules), settings)
    suffix = " (dry run)" if args.dry_run else ""
    print(f"Syncing {len(directories)} directories with {len(enabled)} rules{suffix}...\n")

    processed = modified = added = removed = 0
    for path, result in sync_documents(reconciler, directories, store.list,
                                       dry_run=args.dry_run, extension=settings['extension']):
        processed += 1
        if not result.modified:
            continue
        modified += 1
        added += len(result.added_tags)
        removed += len(result.removed_tags)
        print_result(path, result)

    print(f"\n{'=' * 50}")
    print(f"Processed: {processed} files")
    print(f"Modified: {modified} files")
    print(f"Tags added: {added}")
    print(f"Tags removed: {removed}")
    if args.dry_run:
        target = f" {args.alias}" if args.alias else ""
        print(f"\nThis was a dry run. Run 'autotag sync{target}' to apply changes.")
    return 0


def watch(args) -> int:
    """Watch the selected directories and reconcile documents as they change."""
    directories = open_aliases(args).directories(args.alias)
    store = open_store(args)
    settings = store.settings()
    reconciler = build_reconciler(prepare_analyzer(settings, store.list()), settings)
    state_store = WatchStateStore(config_dir(args.config_dir) / WATCH_STATE_FILE)

    def on_result(path: Path, result: Optional[ReconciliationResult]):
        if result is not None and result.modified:
            print_result(path, result)

    loop = WatchLoop(
        directories,
        lambda path: reconciler.process_file(path, store.list()),
        state_store,
        debounce=args.debounce if args.debounce is not None else float(settings['debounceSeconds']),
        extension=settings['extension'],
        on_result=on_result,
    )
    print(f"Watching {', '.join(str(d) for d in directories)} (Ctrl+C to stop)")
    try:
        asyncio.run(loop.run())
    except KeyboardInterrupt:
        print("\nStopped.")
    return 0


def discover_keywords_command(args) -> int:
    directories = open_aliases(args).directories(args.alias)
    settings = open_store(args).settings()
    analyzer = make_analyzer(settings)
    documents = collect_documents(directories, settings['extension'])
    keywords = discover_keywords(analyzer, documents, limit=args.limit)
    if not keywords:
        print("No keywords found.")
        return 0
    print(f"Top keywords ({len(keywords)} results):\n")
    for item in keywords:
        print(f"  {item.keyword:<20} ({item.count} occurrences in {item.file_count} files)")
    print("\nAdd a keyword rule:")
    print("  autotag tag when keyword <keyword> --lemma --tags <your-tags>")
    return 0


def discover_pattern_command(args) -> int:
    directories = open_aliases(args).directories(args.alias)
    settings = open_store(args).settings()
    analyzer = make_analyzer(settings)
    documents = collect_documents(directories, settings['extension'])
    matches = discover_patterns(analyzer, documents, args.pattern, limit=args.limit)
    if not matches:
        print(f"No matches found for pattern: {args.pattern}")
        return 0
    print(f"Pattern \"{args.pattern}\" matches ({len(matches)} results):\n")
    for item in matches:
        print(f"  {item.text:<30} ({item.count} occurrences)")
    print("\nCreate a pattern rule:")
    print(f"  autotag tag when pattern \"{args.pattern}\" --tags <your-tags>")
    return 0


def discover_keyword_command(args) -> int:
    directories = open_aliases(args).directories(args.alias)
    settings = open_store(args).settings()
    analyzer = make_analyzer(settings)
    documents = collect_documents(directories, settings['extension'])
    samples = discover_keyword(analyzer, documents, args.word,
                               lemma=args.lemma, stem=args.stem)
    if not samples:
        print(f"No matches found for keyword: {args.word}")
        return 0
    mode = " (lemma)" if args.lemma else " (stem)" if args.stem else ""
    shown = samples[:args.limit]
    print(f"Keyword \"{args.word}\"{mode} found {len(samples)} times\n")
    print(f"Sample matches (showing {len(shown)} of {len(samples)}):\n")
    for sample in shown:
        print(f"  {sample.path}:{sample.line}: {sample.context}")
    flag = " --lemma" if args.lemma else " --stem" if args.stem else ""
    print("\nCreate a keyword rule:")
    print(f"  autotag tag when keyword \"{args.word}\"{flag} --tags <your-tags>")
    return 0


def alias(args) -> int:
    """List, show, set or make default a directory alias."""
    aliases = open_aliases(args)
    if args.name is None:
        configured = aliases.aliases()
        if not configured:
            print("No aliases configured.")
            return 0
        default = aliases.default()
        print("Configured aliases:")
        for name, path in configured.items():
            marker = " (default)" if name == default else ""
            print(f"  {name}: {path}{marker}")
        return 0

    if args.path is None:
        print(str(aliases.directories(args.name)[0]))
        return 0

    if args.path == 'default':
        aliases.set_default(args.name)
        print(f"Set '{args.name}' as default alias.")
        return 0

    first = not aliases.aliases()
    resolved = aliases.set_alias(args.name, args.path)
    print(f"Alias '{args.name}' set to '{resolved}'")
    if first:
        print(f"Set '{args.name}' as default alias.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='autotag',
        description="Tag markdown notes automatically from declarative rules",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s tag when keyword docker --tags devops
  %(prog)s tag when pattern "ADJ NOUN" --tags ideas --sentiment-min 0.5
  %(prog)s alias notes ~/notes
  %(prog)s sync --dry-run
        """
    )
    parser.add_argument('--config-dir', help='Configuration directory (default: $AUTOTAG_HOME or ~/.config/autotag)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', required=True, help='Command to run')

    # tag subcommands
    parser_tag = subparsers.add_parser('tag', help='Manage tagging rules')
    tag_sub = parser_tag.add_subparsers(dest='tag_command', required=True)

    parser_when = tag_sub.add_parser('when', help='Create a rule')
    parser_when.add_argument('rule_type', choices=RULE_TYPES, help='Rule type')
    parser_when.add_argument('match', help='POS pattern, keyword, phrase or entity type')
    parser_when.add_argument('--tags', required=True, help='Comma-separated tags')
    forms = parser_when.add_mutually_exclusive_group()
    forms.add_argument('--lemma', action='store_true', help='Match keyword lemmas')
    forms.add_argument('--stem', action='store_true', help='Match keyword stems')
    parser_when.add_argument('--pos', help='Allowed POS tags, comma-separated')
    parser_when.add_argument('--require-entity', action='append', metavar='TYPES[:SCOPE]',
                             help='Require one of these entity types (repeatable)')
    parser_when.add_argument('--sentiment-min', metavar='N[:SCOPE]', help='Minimum sentiment')
    parser_when.add_argument('--sentiment-max', metavar='N[:SCOPE]', help='Maximum sentiment')
    parser_when.add_argument('--sentiment-between', metavar='MIN,MAX[:SCOPE]', help='Sentiment range')
    parser_when.add_argument('--group', help='Add the rule to a group')
    parser_when.add_argument('--description', help='Rule description')

    parser_list = tag_sub.add_parser('list', help='List rules')
    state = parser_list.add_mutually_exclusive_group()
    state.add_argument('--enabled', action='store_true', help='Only enabled rules')
    state.add_argument('--disabled', action='store_true', help='Only disabled rules')
    parser_list.add_argument('--group', help='Only rules in this group')

    for name, help_text in (('show', 'Show rule details'), ('remove', 'Remove a rule'),
                            ('enable', 'Enable a rule'), ('disable', 'Disable a rule')):
        sub = tag_sub.add_parser(name, help=help_text)
        sub.add_argument('rule_id', help='Rule id')

    tag_sub.add_parser('stats', help='Show rule counts')

    parser_export = tag_sub.add_parser('export', help='Export rules')
    parser_export.add_argument('--format', choices=EXPORT_FORMATS, default='json', help='Output format')
    parser_export.add_argument('--output', help='Write to file instead of stdout')

    parser_import = tag_sub.add_parser('import', help='Import rules from a JSON or YAML file')
    parser_import.add_argument('file', help='File to import')

    parser_group = tag_sub.add_parser('group', help='Manage rule groups')
    group_sub = parser_group.add_subparsers(dest='group_command', required=True)
    group_sub.add_parser('list', help='List groups')
    parser_group_add = group_sub.add_parser('add', help='Create or update a group')
    parser_group_add.add_argument('name', help='Group name')
    parser_group_add.add_argument('--description', help='Group description')
    parser_group_add.add_argument('--tags', help='Comma-separated additional tags')
    parser_group_remove = group_sub.add_parser('remove', help='Remove a group')
    parser_group_remove.add_argument('name', help='Group name')

    # sync subcommand
    parser_sync = subparsers.add_parser('sync', help='Reconcile tags in all documents')
    parser_sync.add_argument('alias', nargs='?', help='Directory alias (default: all aliases)')
    parser_sync.add_argument('--dry-run', action='store_true', help='Report changes without writing')

    # discover subcommands
    parser_discover = subparsers.add_parser('discover', help='Discover keywords and patterns')
    discover_sub = parser_discover.add_subparsers(dest='discover_command', required=True)
    parser_keywords = discover_sub.add_parser('keywords', help='Frequent keywords')
    parser_keywords.add_argument('alias', nargs='?', help='Directory alias')
    parser_keywords.add_argument('--limit', type=int, default=DEFAULT_LIMIT, help='Maximum results')
    parser_pattern = discover_sub.add_parser('pattern', help='What a POS pattern matches')
    parser_pattern.add_argument('pattern', help='POS pattern, e.g. "ADJ NOUN"')
    parser_pattern.add_argument('alias', nargs='?', help='Directory alias')
    parser_pattern.add_argument('--limit', type=int, default=DEFAULT_LIMIT, help='Maximum results')
    parser_keyword = discover_sub.add_parser('keyword', help='Where a keyword appears')
    parser_keyword.add_argument('word', help='Keyword to search for')
    parser_keyword.add_argument('alias', nargs='?', help='Directory alias')
    keyword_forms = parser_keyword.add_mutually_exclusive_group()
    keyword_forms.add_argument('--lemma', action='store_true', help='Match lemmas')
    keyword_forms.add_argument('--stem', action='store_true', help='Match stems')
    parser_keyword.add_argument('--limit', type=int, default=DEFAULT_LIMIT, help='Maximum samples')

    # alias subcommand
    parser_alias = subparsers.add_parser('alias', help='Manage directory aliases')
    parser_alias.add_argument('name', nargs='?', help='Alias name')
    parser_alias.add_argument('path', nargs='?', help="Directory path, or 'default'")

    # watch subcommand
    parser_watch = subparsers.add_parser('watch', help='Reconcile documents as they change')
    parser_watch.add_argument('alias', nargs='?', help='Directory alias (default: all aliases)')
    parser_watch.add_argument('--debounce', type=float, help='Seconds to wait after the last change')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the tagging tool."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    # Dispatch to handler functions
    handlers: Dict[str, callable] = {
        'tag when': tag_when,
        'tag list': tag_list,
        'tag show': tag_show,
        'tag remove': tag_remove,
        'tag enable': tag_enable,
        'tag disable': tag_disable,
        'tag stats': tag_stats,
        'tag export': tag_export,
        'tag import': tag_import,
        'tag group list': group_list,
        'tag group add': group_add,
        'tag group remove': group_remove,
        'sync': sync,
        'watch': watch,
        'alias': alias,
        'discover keywords': discover_keywords_command,
        'discover pattern': discover_pattern_command,
        'discover keyword': discover_keyword_command,
    }

    command = ' '.join(
        part for part in (
            args.command,
            getattr(args, 'tag_command', None),
            getattr(args, 'group_command', None),
            getattr(args, 'discover_command', None),
        ) if part
    )
    handler = handlers.get(command)
    if handler is None:
        print(f"Error: Unknown command '{command}'", file=sys.stderr)
        return 1

    try:
        return handler(args)
    except RuleValidationError as e:
        print("Error: Invalid rule", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        return 1
    except (RuleStoreError, AliasError, FilterParseError, MatchError, AnalyzerError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
