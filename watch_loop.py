#!/usr/bin/env python3
"""
Watch Loop - continuous reconciliation of a document tree.

On start the loop walks every root once and schedules each document. After
that it schedules documents reported by watchfiles as added or modified. Each
path has its own debounce timer: a new event for the same path cancels the
pending timer and starts a fresh one.

When a timer fires the document is hashed. If the hash differs from the one
recorded in the state file the reconciler runs in a worker thread. The hash
taken after reconciliation is stored whether or not the document changed, so
the reconciler's own writes do not trigger another pass.

Stopping cancels timers that have not fired and waits for reconciliations
already running. No hash is recorded once shutdown has begun.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from watchfiles import Change, awatch

from app_config import load_json, save_json_atomic
from match_engine import MatchError
from rule_store import utc_now
from tag_reconciler import ReconciliationResult, is_hidden, walk_documents

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 1.0
WATCHED_CHANGES = (Change.added, Change.modified)


@dataclass
class WatchState:
    """
    Durable watcher state.

    Attributes:
        processed_files: Map of document path to content hash
        last_check: Timestamp of the last recorded hash
    """
    processed_files: Dict[str, str] = field(default_factory=dict)
    last_check: Optional[str] = None


class WatchStateStore:
    """
    Loads and saves WatchState as JSON.

    The file shape is {"processedFiles": [[path, hash], ...], "lastCheck": ts}.
    Loading fails open to an empty state; saving is atomic.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> WatchState:
        data = load_json(self.path, {})
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed watcher state %s", self.path)
            return WatchState()
        processed: Dict[str, str] = {}
        for entry in data.get('processedFiles') or []:
            if isinstance(entry, list) and len(entry) == 2 and all(isinstance(v, str) for v in entry):
                processed[entry[0]] = entry[1]
        last_check = data.get('lastCheck')
        return WatchState(processed, last_check if isinstance(last_check, str) else None)

    def save(self, state: WatchState):
        save_json_atomic(self.path, {
            'processedFiles': [[path, digest] for path, digest in state.processed_files.items()],
            'lastCheck': state.last_check,
        })


def hash_file(path: Path) -> str:
    """SHA-256 hex digest of a file's contents."""
    return hashlib.sha256(Path(path).read_bytes()).hexdigest()


class WatchLoop:
    """
    Debounced, hash-gated reconciliation driven by filesystem events.

    Args:
        roots: Directories to watch
        reconcile_file: Callable reconciling one path, run in a worker thread
        state_store: Persistence for content hashes
        debounce: Seconds to wait after the last event for a path
        extension: Document suffix to track
        watch_factory: Async iterator factory with the watchfiles.awatch
            signature; replaceable for testing
        on_result: Optional callback invoked with (path, result) after each
            reconciliation
        clock: Callable returning the current timestamp string
    """

    def __init__(self, roots: Sequence[Path],
                 reconcile_file: Callable[[Path], Optional[ReconciliationResult]],
                 state_store: WatchStateStore,
                 debounce: float = DEFAULT_DEBOUNCE,
                 extension: str = '.md',
                 watch_factory: Callable[..., Any] = awatch,
                 on_result: Optional[Callable[[Path, Optional[ReconciliationResult]], None]] = None,
                 clock: Callable[[], str] = utc_now):
        self.roots = [Path(r) for r in roots]
        self.debounce = debounce
        self.extension = extension
        self.state_store = state_store
        self._reconcile_file = reconcile_file
        self._watch_factory = watch_factory
        self._on_result = on_result
        self._clock = clock
        self._state = WatchState()
        self._pending: Dict[str, asyncio.Task] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None
        self._closing = False

    @property
    def state(self) -> WatchState:
        return self._state

    def is_tracked(self, path: Path) -> bool:
        """Check suffix and reject paths inside dot-prefixed directories."""
        path = Path(path)
        if not path.name.endswith(self.extension):
            return False
        for root in self.roots:
            if path.is_relative_to(root):
                return not is_hidden(path, root)
        return not is_hidden(path, path.anchor or Path('/'))

    async def run(self):
        """
        Watch until stop() is called or the task is cancelled.

        Pending timers are cancelled and the watcher is released on exit,
        including on cancellation.
        """
        self._state = self.state_store.load()
        self._stop_event = asyncio.Event()
        self._closing = False
        watcher = None
        try:
            for root in self.roots:
                for path in walk_documents(root, self.extension):
                    self.schedule(path)

            watcher = self._watch_factory(*self.roots, stop_event=self._stop_event)
            logger.info("Watching %s", ', '.join(str(r) for r in self.roots))
            async for changes in watcher:
                for change, raw_path in changes:
                    path = Path(raw_path)
                    if change in WATCHED_CHANGES and self.is_tracked(path):
                        self.schedule(path)
        finally:
            await self.stop()
            if watcher is not None and hasattr(watcher, 'aclose'):
                await watcher.aclose()
            logger.info("Stopped watching")

    def schedule(self, path: Path):
        """Restart the debounce timer for path."""
        if self._closing:
            return
        key = str(path)
        pending = self._pending.get(key)
        if pending is not None and not pending.done():
            pending.cancel()
        self._pending[key] = asyncio.create_task(self._debounced(Path(path)))

    async def _debounced(self, path: Path):
        await asyncio.sleep(self.debounce)
        if self._closing:
            return
        key = str(path)
        task = asyncio.current_task()
        if self._pending.get(key) is task:
            del self._pending[key]
        # fired timers are awaited by stop()
        self._in_flight.add(task)
        try:
            await self.process(path)
        finally:
            self._in_flight.discard(task)

    async def process(self, path: Path) -> Optional[ReconciliationResult]:
        """
        Reconcile path if its content hash changed since it was last seen.

        Returns:
            ReconciliationResult, or None when the file was unchanged or
            could not be processed
        """
        key = str(path)
        try:
            before = await asyncio.to_thread(hash_file, path)
        except OSError as e:
            logger.warning("Cannot read %s: %s", path, e)
            return None
        if before == self._state.processed_files.get(key):
            logger.debug("Unchanged: %s", path)
            return None

        try:
            result = await asyncio.to_thread(self._reconcile_file, path)
            after = await asyncio.to_thread(hash_file, path)
        except (OSError, UnicodeDecodeError, MatchError) as e:
            logger.warning("Failed to process %s: %s", path, e)
            return None

        async with self._lock:
            if self._closing:
                logger.debug("Shutting down, not recording %s", path)
                return result
            self._state.processed_files[key] = after
            self._state.last_check = self._clock()
            self.state_store.save(self._state)

        if self._on_result is not None:
            self._on_result(path, result)
        return result

    async def stop(self):
        """
        Cancel pending timers and wait for running reconciliations, then
        signal the watcher to stop.

        Reconciliations already running are allowed to finish, but their
        hashes are not recorded.
        """
        self._closing = True
        timers: List[asyncio.Task] = [t for t in self._pending.values() if not t.done()]
        for task in timers:
            task.cancel()
        current = asyncio.current_task()
        running = [t for t in self._in_flight if not t.done() and t is not current]
        tasks = timers + running
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
        if self._stop_event is not None:
            self._stop_event.set()
