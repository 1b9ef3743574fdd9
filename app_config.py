#!/usr/bin/env python3
"""
Configuration and persistence helpers.

Resolves the configuration directory, loads and saves the JSON documents
kept there, and manages directory aliases used by the CLI.

Files in the configuration directory:
- rules.json: rule definitions, groups and settings
- config.json: directory aliases and the default alias
- watcher-state.json: content hashes recorded by the watch loop
"""

import json
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = 'AUTOTAG_HOME'
RULES_FILE = 'rules.json'
ALIASES_FILE = 'config.json'
WATCH_STATE_FILE = 'watcher-state.json'

DEFAULT_SETTINGS: Dict[str, Any] = {
    'defaultScope': 'sentence',
    'pruneDisabledRuleTags': False,
    'extension': '.md',
    'spacyModel': 'en_core_web_sm',
    'debounceSeconds': 1.0,
}


class AliasError(Exception):
    """Exception raised when a directory alias cannot be resolved or stored."""
    pass


def config_dir(override: Optional[str] = None) -> Path:
    """
    Resolve the configuration directory.

    Precedence: explicit override, then $AUTOTAG_HOME, then ~/.config/autotag.
    The directory is not created here; writers create it on first save.
    """
    if override:
        return Path(override).expanduser()
    env = os.environ.get(CONFIG_DIR_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / '.config' / 'autotag'


def load_json(path: Path, default: Any) -> Any:
    """
    Load a JSON document, failing open.

    A missing file returns the default silently. A corrupt or unreadable file
    logs a warning and also returns the default.

    Args:
        path: File to read
        default: Value returned when the file cannot be used

    Returns:
        Parsed JSON value or default
    """
    if not path.exists():
        return default
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable %s: %s", path, e)
        return default


def save_json_atomic(path: Path, data: Any):
    """
    Write a JSON document atomically.

    The document is written to a temporary file in the same directory and
    renamed over the target, so readers never observe a partial file.
    """
    write_text_atomic(path, json.dumps(data, indent=2) + '\n')


def write_text_atomic(path: Path, text: str):
    """Write text to path via a sibling temporary file and os.replace()."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=path.parent)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class AliasConfig:
    """
    Directory aliases stored in config.json.

    The document shape is {"aliases": {name: path}, "default": name}. The
    first alias registered becomes the default.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load(self) -> Dict[str, Any]:
        data = load_json(self.path, {})
        if not isinstance(data, dict):
            data = {}
        aliases = data.get('aliases')
        data['aliases'] = aliases if isinstance(aliases, dict) else {}
        return data

    def aliases(self) -> Dict[str, str]:
        return dict(self._load()['aliases'])

    def default(self) -> Optional[str]:
        return self._load().get('default')

    def set_alias(self, name: str, directory: str) -> Path:
        """
        Register or replace an alias.

        Raises:
            AliasError: If the directory does not exist
        """
        resolved = Path(directory).expanduser().resolve()
        if not resolved.is_dir():
            raise AliasError(f"Directory not found: {directory}")
        data = self._load()
        data['aliases'][name] = str(resolved)
        if not data.get('default'):
            data['default'] = name
        save_json_atomic(self.path, data)
        return resolved

    def set_default(self, name: str):
        data = self._load()
        if name not in data['aliases']:
            raise AliasError(f"Unknown alias: {name}")
        data['default'] = name
        save_json_atomic(self.path, data)

    def directories(self, name: Optional[str] = None) -> List[Path]:
        """
        Resolve the directories a command operates on.

        Args:
            name: Alias to resolve; None selects every configured alias

        Raises:
            AliasError: If the alias is unknown or no aliases are configured
        """
        aliases = self._load()['aliases']
        if name is not None:
            if name not in aliases:
                raise AliasError(f"Alias '{name}' not found")
            return [Path(aliases[name])]
        if not aliases:
            raise AliasError("No aliases configured. Use 'autotag alias <name> <path>' to add directories.")
        return [Path(p) for p in aliases.values()]


def configure_logging(verbose: bool = False):
    """Configure root logging for CLI use: WARNING by default, DEBUG when verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='[%(levelname)s] %(message)s',
        stream=sys.stderr,
        force=True,
    )
