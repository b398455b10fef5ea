from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

from keelson.core.models import ResourceKind
from keelson.store.manifests import declared_kinds


class FileChange(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class ManifestChange:
    """One manifest file that differs from the last applied state of the tree.

    `kinds` covers both the kinds the file declared before and the kinds it
    declares now, so removing a Workload from a file still reports it.
    """

    path: str
    change: FileChange
    kinds: FrozenSet[ResourceKind] = frozenset()


@dataclass(frozen=True)
class ManifestChangeSet:
    changes: List[ManifestChange] = field(default_factory=list)

    @property
    def paths(self) -> List[str]:
        return [change.path for change in self.changes]

    @property
    def kinds(self) -> FrozenSet[ResourceKind]:
        kinds: FrozenSet[ResourceKind] = frozenset()
        for change in self.changes:
            kinds = kinds | change.kinds
        return kinds

    def __bool__(self) -> bool:
        return bool(self.changes)


@dataclass(frozen=True)
class _FileEntry:
    mtime_ns: int
    size: int
    kinds: FrozenSet[ResourceKind]


class ManifestWatcher:
    """Polls a manifest tree and reports settled change sets.

    A change set is only reported once no file has changed for `debounce_ms`,
    and it is the net difference against the tree as it was when the previous
    change set was reported. Editors that write a file twice, or a file that
    is created and deleted inside one window, therefore yield one entry or none.
    """

    def __init__(
        self,
        root_dir: Path,
        interval_ms: int = 1000,
        debounce_ms: int = 300,
        include_patterns: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
        config_file_name: str = "keelson.yaml",
    ) -> None:
        self.root_dir = root_dir
        self.interval_ms = interval_ms
        self.debounce_ms = debounce_ms
        self.include_patterns = include_patterns or ["*.yaml", "*.yml"]
        self.exclude_patterns = exclude_patterns or []
        self.config_file_name = config_file_name

        self.running = False
        self._baseline: Dict[str, _FileEntry] = {}
        self._current: Dict[str, _FileEntry] = {}
        self._last_change_at: Optional[float] = None

    def start(self) -> None:
        self._baseline = self._snapshot({})
        self._current = dict(self._baseline)
        self._last_change_at = None
        self.running = True

    def stop(self) -> None:
        self.running = False
        self._last_change_at = None

    @property
    def pending(self) -> bool:
        """True while changes have been seen but their debounce window is still open."""
        return self._last_change_at is not None

    def tracked_paths(self) -> List[str]:
        return sorted(self._current)

    def poll(self, now: float) -> Optional[ManifestChangeSet]:
        """Take one snapshot; return the settled change set once the debounce window closes."""
        if not self.running:
            raise RuntimeError("ManifestWatcher is not started. Call start() before poll().")

        snapshot = self._snapshot(self._current)
        if self._stat_key(snapshot) != self._stat_key(self._current):
            self._current = snapshot
            self._last_change_at = now
            return None

        if self._last_change_at is None or now - self._last_change_at < self.debounce_ms / 1000.0:
            return None

        self._last_change_at = None
        change_set = self._diff(self._baseline, self._current)
        self._baseline = dict(self._current)
        return change_set if change_set else None

    def _snapshot(self, previous: Dict[str, _FileEntry]) -> Dict[str, _FileEntry]:
        snapshot: Dict[str, _FileEntry] = {}
        if not self.root_dir.is_dir():
            return snapshot

        for path in self.root_dir.rglob("*"):
            if not path.is_file():
                continue
            relative = path.relative_to(self.root_dir).as_posix()
            if relative == self.config_file_name or not self._is_tracked(relative, path.name):
                continue

            try:
                stat = path.stat()
            except OSError:
                continue
            known = previous.get(relative)
            if known is not None and (known.mtime_ns, known.size) == (stat.st_mtime_ns, stat.st_size):
                snapshot[relative] = known
            else:
                snapshot[relative] = _FileEntry(stat.st_mtime_ns, stat.st_size, declared_kinds(path))

        return snapshot

    def _is_tracked(self, relative_path: str, filename: str) -> bool:
        def matches(pattern: str) -> bool:
            return fnmatch(relative_path, pattern) or fnmatch(filename, pattern)

        if not any(matches(pattern) for pattern in self.include_patterns):
            return False
        return not any(matches(pattern) for pattern in self.exclude_patterns)

    @staticmethod
    def _stat_key(snapshot: Dict[str, _FileEntry]) -> Dict[str, Tuple[int, int]]:
        return {path: (entry.mtime_ns, entry.size) for path, entry in snapshot.items()}

    @staticmethod
    def _diff(before: Dict[str, _FileEntry], after: Dict[str, _FileEntry]) -> ManifestChangeSet:
        changes: List[ManifestChange] = []
        for path in sorted(set(before) | set(after)):
            old = before.get(path)
            new = after.get(path)
            if old is None and new is not None:
                changes.append(ManifestChange(path, FileChange.ADDED, new.kinds))
            elif new is None and old is not None:
                changes.append(ManifestChange(path, FileChange.REMOVED, old.kinds))
            elif old is not None and new is not None and (old.mtime_ns, old.size) != (new.mtime_ns, new.size):
                changes.append(ManifestChange(path, FileChange.MODIFIED, old.kinds | new.kinds))
        return ManifestChangeSet(changes=changes)
