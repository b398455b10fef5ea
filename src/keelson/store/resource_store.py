from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from pydantic import BaseModel, Field, ValidationError

from keelson.core.errors import (
    CursorExpired,
    NotFound,
    ResourceConflict,
    StoreCorruption,
    VersionPinned,
)
from keelson.core.models import (
    ChangeEvent,
    ChangeType,
    GenerationRef,
    Resource,
    ResourceKind,
    normalize_spec,
)

logger = logging.getLogger(__name__)

ResourceKey = Tuple[ResourceKind, str]


def _detached(resource: Resource) -> Resource:
    # Stored generations are never handed out, so callers cannot edit them in place.
    return resource.model_copy(deep=True)


@dataclass
class _Entry:
    """All retained generations of one (kind, name)."""

    kind: ResourceKind
    name: str
    current: Optional[Resource] = None
    high_water: int = 0
    generations: Dict[int, Resource] = field(default_factory=dict)
    pins: Dict[int, int] = field(default_factory=dict)


class _EntrySnapshot(BaseModel):
    kind: ResourceKind
    name: str
    high_water: int
    current_generation: Optional[int] = None
    generations: List[Resource] = Field(default_factory=list)
    pins: Dict[int, int] = Field(default_factory=dict)


class StoreSnapshot(BaseModel):
    """Durable form of the store written by `ResourceStore.save`."""

    revision: int = 0
    entries: List[_EntrySnapshot] = Field(default_factory=list)


class ResourceStore:
    """
    Single source of truth for declared resources, keyed by (kind, name).

    Every put of a changed spec creates a new immutable generation. Prior
    generations stay readable while instances pin them and are dropped by
    `collect_garbage` afterwards. Every mutation advances a store-wide revision
    and emits one `ChangeEvent` to watchers.
    """

    def __init__(self, event_history_limit: int = 10000) -> None:
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._entries: Dict[ResourceKey, _Entry] = {}
        self._revision = 0
        self._events: Deque[ChangeEvent] = deque()
        self._event_history_limit = event_history_limit
        self._dropped_through = 0

    @property
    def revision(self) -> int:
        with self._lock:
            return self._revision

    def put(self, resource: Resource, expected_generation: Optional[int] = None) -> int:
        """Store a resource document and return its current generation.

        Re-applying a spec identical to the current generation is a no-op.
        When `expected_generation` is given the write only succeeds if the
        current generation matches (0 meaning "absent"); otherwise the last
        writer wins.
        """
        kind = ResourceKind(resource.kind)
        spec = normalize_spec(kind, resource.spec)
        key = (kind, resource.name)

        with self._lock:
            entry = self._entries.get(key)
            current = entry.current if entry is not None else None

            if expected_generation is not None:
                actual = current.generation if current is not None else 0
                if actual != expected_generation:
                    raise ResourceConflict(kind.value, resource.name, expected_generation, actual)

            if current is not None and current.spec == spec:
                return current.generation

            if entry is None:
                entry = _Entry(kind=kind, name=resource.name)
                self._entries[key] = entry

            self._revision += 1
            generation = entry.high_water + 1
            stored = Resource(
                kind=kind,
                name=resource.name,
                spec=spec,
                generation=generation,
                revision=self._revision,
                created_revision=current.created_revision if current is not None else self._revision,
            )
            entry.generations[generation] = stored
            entry.current = stored
            entry.high_water = generation

            change_type = ChangeType.CREATED if current is None else ChangeType.UPDATED
            self._emit(ChangeEvent(
                type=change_type,
                kind=kind,
                name=resource.name,
                generation=generation,
                revision=self._revision,
            ))

        logger.debug("%s %s/%s generation=%d", change_type.value, kind.value, resource.name, generation)
        return generation

    def get(self, kind: ResourceKind, name: str) -> Resource:
        """Return the current generation of a resource."""
        with self._lock:
            entry = self._entries.get((ResourceKind(kind), name))
            if entry is None or entry.current is None:
                raise NotFound(ResourceKind(kind).value, name)
            return _detached(entry.current)

    def get_generation(self, kind: ResourceKind, name: str, generation: int) -> Resource:
        """Return one explicit generation, current or retained."""
        kind = ResourceKind(kind)
        with self._lock:
            entry = self._entries.get((kind, name))
            if entry is None or generation < 1 or generation > entry.high_water:
                raise NotFound(kind.value, f"{name}@{generation}")

            stored = entry.generations.get(generation)
            if stored is None:
                raise VersionPinned(kind.value, name, generation)
            return _detached(stored)

    def exists(self, kind: ResourceKind, name: str) -> bool:
        with self._lock:
            entry = self._entries.get((ResourceKind(kind), name))
            return entry is not None and entry.current is not None

    def delete(self, kind: ResourceKind, name: str) -> None:
        """Remove the current generation; pinned generations stay readable."""
        kind = ResourceKind(kind)
        with self._lock:
            entry = self._entries.get((kind, name))
            if entry is None or entry.current is None:
                raise NotFound(kind.value, name)

            deleted = entry.current
            entry.current = None
            self._revision += 1
            self._emit(ChangeEvent(
                type=ChangeType.DELETED,
                kind=kind,
                name=name,
                generation=deleted.generation,
                revision=self._revision,
            ))
            self._collect_entry(entry)

        logger.debug("Deleted %s/%s generation=%d", kind.value, name, deleted.generation)

    def list(self, kind: Optional[ResourceKind] = None) -> List[Resource]:
        """Return current resources in declaration order."""
        with self._lock:
            resources = [
                _detached(entry.current)
                for entry in self._entries.values()
                if entry.current is not None and (kind is None or entry.kind == ResourceKind(kind))
            ]
        return sorted(resources, key=lambda resource: resource.created_revision)

    def pin(self, kind: ResourceKind, name: str, generation: int) -> GenerationRef:
        """Hold a reference to a generation so garbage collection keeps it."""
        kind = ResourceKind(kind)
        with self._lock:
            self.get_generation(kind, name, generation)
            entry = self._entries[(kind, name)]
            entry.pins[generation] = entry.pins.get(generation, 0) + 1
        return GenerationRef(kind=kind, name=name, generation=generation)

    def unpin(self, ref: GenerationRef) -> None:
        with self._lock:
            entry = self._entries.get((ref.kind, ref.name))
            if entry is None or ref.generation not in entry.pins:
                return
            entry.pins[ref.generation] -= 1
            if entry.pins[ref.generation] <= 0:
                del entry.pins[ref.generation]

    def pin_count(self, kind: ResourceKind, name: str, generation: int) -> int:
        with self._lock:
            entry = self._entries.get((ResourceKind(kind), name))
            if entry is None:
                return 0
            return entry.pins.get(generation, 0)

    def release_pins(self) -> int:
        """Drop every pin and collect what they held. Returns the number of pins released."""
        with self._lock:
            released = sum(sum(entry.pins.values()) for entry in self._entries.values())
            for entry in self._entries.values():
                entry.pins.clear()
        self.collect_garbage()
        return released

    def collect_garbage(self) -> List[GenerationRef]:
        """Drop every non-current generation that no instance pins."""
        collected: List[GenerationRef] = []
        with self._lock:
            for entry in self._entries.values():
                collected.extend(self._collect_entry(entry))

        if collected:
            logger.debug("Collected %d retained generations", len(collected))
        return collected

    def verify(self) -> None:
        """Check store invariants; raises StoreCorruption on any violation."""
        with self._lock:
            for key, entry in self._entries.items():
                label = f"{entry.kind.value}/{entry.name}"
                if key != (entry.kind, entry.name):
                    raise StoreCorruption(f"{label} is filed under the wrong key {key}.")

                current = entry.current
                if current is not None:
                    if current.generation != entry.high_water:
                        raise StoreCorruption(
                            f"{label} current generation {current.generation} is not the latest ({entry.high_water})."
                        )
                    if entry.generations.get(current.generation) is not current:
                        raise StoreCorruption(f"{label} current generation is not retained.")

                for generation, stored in entry.generations.items():
                    if stored.generation != generation or generation > entry.high_water:
                        raise StoreCorruption(f"{label} has an inconsistent generation {generation}.")

                for generation, count in entry.pins.items():
                    if count <= 0 or generation not in entry.generations:
                        raise StoreCorruption(f"{label} pins generation {generation} which is not retained.")

            previous = self._dropped_through
            for event in self._events:
                if event.revision != previous + 1:
                    raise StoreCorruption(f"Event history skips from revision {previous} to {event.revision}.")
                previous = event.revision

    def events_since(self, cursor: int, kinds: Optional[Set[ResourceKind]] = None) -> Tuple[List[ChangeEvent], int]:
        """Return events after `cursor` and the revision the caller has now seen."""
        with self._lock:
            if cursor < self._dropped_through:
                raise CursorExpired(cursor, self._dropped_through + 1)

            events = [
                event
                for event in self._events
                if event.revision > cursor and (kinds is None or event.kind in kinds)
            ]
            return events, max(cursor, self._revision)

    def watch(self, kinds: Optional[Iterable[ResourceKind]] = None, cursor: int = 0) -> "WatchSubscription":
        """Subscribe to change events after `cursor`."""
        kind_set = {ResourceKind(kind) for kind in kinds} if kinds is not None else None
        with self._lock:
            if cursor < self._dropped_through:
                raise CursorExpired(cursor, self._dropped_through + 1)
        return WatchSubscription(self, kind_set, cursor)

    def wait_for_revision(self, revision: int, timeout: Optional[float], cancelled: threading.Event) -> bool:
        """Block until the store moves past `revision`, the watcher is cancelled or time runs out."""
        with self._changed:
            return self._changed.wait_for(
                lambda: self._revision > revision or cancelled.is_set(),
                timeout=timeout,
            )

    def wake_watchers(self) -> None:
        with self._changed:
            self._changed.notify_all()

    def save(self, path: Path) -> Path:
        """Persist current and retained generations as a JSON snapshot."""
        with self._lock:
            snapshot = StoreSnapshot(
                revision=self._revision,
                entries=[
                    _EntrySnapshot(
                        kind=entry.kind,
                        name=entry.name,
                        high_water=entry.high_water,
                        current_generation=entry.current.generation if entry.current is not None else None,
                        generations=[entry.generations[g] for g in sorted(entry.generations)],
                        pins=dict(entry.pins),
                    )
                    for entry in self._entries.values()
                ],
            )

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
        return path

    @classmethod
    def load(cls, path: Path, event_history_limit: int = 10000) -> "ResourceStore":
        """Restore a store from `save` output. A missing file yields an empty store."""
        store = cls(event_history_limit=event_history_limit)
        if not path.exists():
            return store

        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            snapshot = StoreSnapshot.model_validate(payload)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise StoreCorruption(f"Unreadable store snapshot {path}: {exc}") from exc

        for item in snapshot.entries:
            entry = _Entry(kind=item.kind, name=item.name, high_water=item.high_water)
            entry.generations = {stored.generation: stored for stored in item.generations}
            entry.pins = dict(item.pins)
            if item.current_generation is not None:
                entry.current = entry.generations.get(item.current_generation)
                if entry.current is None:
                    raise StoreCorruption(
                        f"Snapshot current generation {item.current_generation} of "
                        f"{item.kind.value}/{item.name} is missing."
                    )
            store._entries[(item.kind, item.name)] = entry

        store._revision = snapshot.revision
        store._dropped_through = snapshot.revision
        store.verify()
        return store

    def _emit(self, event: ChangeEvent) -> None:
        self._events.append(event)
        while len(self._events) > self._event_history_limit:
            dropped = self._events.popleft()
            self._dropped_through = dropped.revision
        self._changed.notify_all()

    def _collect_entry(self, entry: _Entry) -> List[GenerationRef]:
        current_generation = entry.current.generation if entry.current is not None else None
        collected: List[GenerationRef] = []
        for generation in sorted(entry.generations):
            if generation == current_generation or entry.pins.get(generation, 0) > 0:
                continue
            del entry.generations[generation]
            collected.append(GenerationRef(kind=entry.kind, name=entry.name, generation=generation))
        return collected


class WatchSubscription:
    """
    Cancellable, restartable subscription to store change events.

    Delivery is at-least-once: `resume()` restarts from the last acknowledged
    revision, so events delivered but not acknowledged are delivered again.
    """

    def __init__(self, store: ResourceStore, kinds: Optional[Set[ResourceKind]], cursor: int) -> None:
        self._store = store
        self._kinds = kinds
        self._cursor = cursor
        self._acked = cursor
        self._buffer: Deque[ChangeEvent] = deque()
        self._cancelled = threading.Event()

    @property
    def cursor(self) -> int:
        """Revision up to which events have been delivered."""
        return self._cursor

    @property
    def acked(self) -> int:
        return self._acked

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def poll(self) -> List[ChangeEvent]:
        """Return every pending event without blocking."""
        self._fill()
        events = list(self._buffer)
        self._buffer.clear()
        return events

    def next_event(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Return the next event, waiting up to `timeout` seconds (None waits indefinitely)."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._buffer:
            if self.cancelled:
                return None
            self._fill()
            if self._buffer:
                break

            # Revisions of filtered-out kinds wake the wait too; keep the rest of the timeout.
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return None
            if not self._store.wait_for_revision(self._cursor, remaining, self._cancelled):
                return None
        return self._buffer.popleft()

    def ack(self, revision: int) -> None:
        """Mark every event up to `revision` as applied."""
        if revision > self._acked:
            self._acked = min(revision, self._cursor)

    def cancel(self) -> None:
        self._cancelled.set()
        self._store.wake_watchers()

    def resume(self) -> "WatchSubscription":
        """Open a fresh subscription at the last acknowledged revision."""
        return self._store.watch(self._kinds, cursor=self._acked)

    def __iter__(self) -> Iterator[ChangeEvent]:
        while not self.cancelled:
            event = self.next_event(timeout=None)
            if event is None:
                continue
            yield event

    def _fill(self) -> None:
        events, seen = self._store.events_since(self._cursor, self._kinds)
        self._buffer.extend(events)
        self._cursor = seen
