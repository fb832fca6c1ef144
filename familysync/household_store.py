from __future__ import annotations

import copy
import threading
from typing import Any, Callable, Iterable

from familysync.models import ALL_COLLECTIONS, TRACKED_COLLECTIONS
from familysync.reconciler import apply_remap


RemapListener = Callable[[str, str, str], None]


class HouseholdStore:
    """In-memory owner of every synchronized collection.

    All writers (UI mutations, undo/redo replay, realtime merges, retry
    flushes) go through ``lock``; readers get deep copies so nothing outside
    the store can mutate its state in place.
    """

    def __init__(self, autocomplete_limit: int = 50) -> None:
        self._lock = threading.RLock()
        self._collections: dict[str, list[Any]] = {name: [] for name in ALL_COLLECTIONS}
        self._remap_listeners: list[RemapListener] = []
        self._expected_echoes: dict[str, list[dict[str, Any]]] = {name: [] for name in ALL_COLLECTIONS}
        self._autocomplete: list[str] = []
        self._autocomplete_limit = max(1, autocomplete_limit)

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def _require(self, name: str) -> None:
        if name not in self._collections:
            raise KeyError(f"Unknown collection: {name}")

    def get(self, name: str) -> list[Any]:
        self._require(name)
        with self._lock:
            return copy.deepcopy(self._collections[name])

    def replace(self, name: str, items: Iterable[Any]) -> None:
        self._require(name)
        with self._lock:
            self._collections[name] = copy.deepcopy(list(items))

    def composite(self) -> dict[str, list[Any]]:
        with self._lock:
            return {name: copy.deepcopy(self._collections[name]) for name in TRACKED_COLLECTIONS}

    def find(self, name: str, entity_id: str) -> Any | None:
        self._require(name)
        with self._lock:
            for item in self._collections[name]:
                if item.id == entity_id:
                    return copy.deepcopy(item)
        return None

    def insert(self, name: str, entity: Any, *, front: bool = False) -> None:
        self._require(name)
        with self._lock:
            item = copy.deepcopy(entity)
            if front:
                self._collections[name].insert(0, item)
            else:
                self._collections[name].append(item)

    def put(self, name: str, entity: Any) -> bool:
        self._require(name)
        with self._lock:
            items = self._collections[name]
            for index, item in enumerate(items):
                if item.id == entity.id:
                    items[index] = copy.deepcopy(entity)
                    return True
        return False

    def remove(self, name: str, entity_id: str) -> bool:
        self._require(name)
        with self._lock:
            items = self._collections[name]
            kept = [item for item in items if item.id != entity_id]
            self._collections[name] = kept
            return len(kept) != len(items)

    def add_remap_listener(self, listener: RemapListener) -> None:
        self._remap_listeners.append(listener)

    def remap_id(self, collection: str, old_id: str, new_id: str) -> None:
        """Swap a provisional id for the persisted one across every collection."""
        self._require(collection)
        with self._lock:
            changed = apply_remap(self._collections, collection, old_id, new_id)
            self._collections.update(changed)
            for listener in list(self._remap_listeners):
                listener(collection, old_id, new_id)

    def expect_echo(self, collection: str, record: dict[str, Any]) -> None:
        """Register the wire record of a create in flight so its notification can be recognized."""
        self._require(collection)
        with self._lock:
            self._expected_echoes[collection].append(dict(record))

    def claim_echo(self, collection: str, record: dict[str, Any]) -> bool:
        """Consume a matching expected echo; every registered field must agree."""
        self._require(collection)
        with self._lock:
            expected = self._expected_echoes[collection]
            for index, fields in enumerate(expected):
                if all(record.get(key) == value for key, value in fields.items()):
                    del expected[index]
                    return True
        return False

    def forget_echo(self, collection: str, record: dict[str, Any]) -> None:
        self._require(collection)
        with self._lock:
            expected = self._expected_echoes[collection]
            if record in expected:
                expected.remove(record)

    def remember_suggestion(self, text: str) -> None:
        value = str(text or "").strip()
        if not value:
            return
        with self._lock:
            self._autocomplete = [x for x in self._autocomplete if x.casefold() != value.casefold()]
            self._autocomplete.insert(0, value)
            del self._autocomplete[self._autocomplete_limit :]

    def suggestions(self, prefix: str = "", limit: int = 10) -> list[str]:
        needle = str(prefix or "").strip().casefold()
        with self._lock:
            matches = [x for x in self._autocomplete if x.casefold().startswith(needle)]
        return matches[: max(1, limit)]
