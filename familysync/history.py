from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from familysync.household_store import HouseholdStore
from familysync.models import EVENTS, SHOPPING, TODOS, TRACKED_COLLECTIONS, USERS, ReconcileResult
from familysync.reconciler import apply_remap
from familysync.state_store import StateStore
from familysync.sync_engine import SyncEngine


@dataclass(frozen=True)
class HistorySnapshot:
    events: tuple[Any, ...] = ()
    shopping: tuple[Any, ...] = ()
    todos: tuple[Any, ...] = ()
    users: tuple[Any, ...] = ()

    @classmethod
    def capture(cls, composite: Mapping[str, Iterable[Any]]) -> "HistorySnapshot":
        return cls(
            events=tuple(copy.deepcopy(list(composite.get(EVENTS, [])))),
            shopping=tuple(copy.deepcopy(list(composite.get(SHOPPING, [])))),
            todos=tuple(copy.deepcopy(list(composite.get(TODOS, [])))),
            users=tuple(copy.deepcopy(list(composite.get(USERS, [])))),
        )

    def collection(self, name: str) -> list[Any]:
        if name not in TRACKED_COLLECTIONS:
            raise KeyError(f"Collection is not history-tracked: {name}")
        return copy.deepcopy(list(getattr(self, name)))

    def as_dict(self) -> dict[str, list[Any]]:
        return {name: self.collection(name) for name in TRACKED_COLLECTIONS}

    def remapped(self, collection: str, old_id: str, new_id: str) -> "HistorySnapshot":
        """Return a copy with ``old_id`` replaced, or ``self`` when nothing refers to it."""
        current = {name: list(getattr(self, name)) for name in TRACKED_COLLECTIONS}
        changed = apply_remap(current, collection, old_id, new_id)
        if not changed:
            return self
        current.update(changed)
        return HistorySnapshot.capture(current)


class HistoryManager:
    """Bounded linear undo/redo over composite snapshots of the tracked collections.

    Undo and redo replay all four collections through ``SyncEngine.apply_collection``
    so the remote store converges on the restored state, without recording a new
    undo entry.
    """

    def __init__(
        self,
        store: HouseholdStore,
        engine: SyncEngine,
        limit: int = 50,
        state_store: StateStore | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.limit = max(1, int(limit))
        self.state_store = state_store
        self._undo: list[HistorySnapshot] = []
        self._redo: list[HistorySnapshot] = []
        store.add_remap_listener(self._on_remap)

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    @property
    def undo_depth(self) -> int:
        return len(self._undo)

    @property
    def redo_depth(self) -> int:
        return len(self._redo)

    def _push(self, stack: list[HistorySnapshot], snapshot: HistorySnapshot) -> None:
        stack.append(snapshot)
        overflow = len(stack) - self.limit
        if overflow > 0:
            del stack[:overflow]

    def snapshot_before_mutation(self) -> None:
        with self.store.lock:
            self._push(self._undo, HistorySnapshot.capture(self.store.composite()))
            self._redo.clear()

    def mutate(self, collection: str, items: Iterable[Any], *, track: bool = True) -> ReconcileResult | None:
        """Replace ``collection`` and sync it; snapshot first unless ``track`` is off."""
        next_items = list(items)
        with self.store.lock:
            if self.store.get(collection) == next_items:
                return None
            if track and collection in TRACKED_COLLECTIONS:
                self.snapshot_before_mutation()
            return self.engine.apply_collection(collection, next_items)

    def mark_seen(self, user_id: str) -> ReconcileResult | None:
        with self.store.lock:
            items = [item.mark_seen_by(user_id) for item in self.store.get(SHOPPING)]
            return self.mutate(SHOPPING, items, track=False)

    def _replay(self, snapshot: HistorySnapshot) -> None:
        # Users first so restored entities never reference a user the remote store lacks.
        for name in (USERS, EVENTS, SHOPPING, TODOS):
            self.engine.apply_collection(name, snapshot.collection(name))

    def _step(self, source: list[HistorySnapshot], target: list[HistorySnapshot], action: str) -> bool:
        with self.store.lock:
            if not source:
                return False
            snapshot = source.pop()
            self._push(target, HistorySnapshot.capture(self.store.composite()))
            self._replay(snapshot)
            if self.state_store is not None:
                self.state_store.record_audit_event(
                    collection="history",
                    entity_id=action,
                    action=action,
                    details={"undo_depth": len(self._undo), "redo_depth": len(self._redo)},
                )
            return True

    def undo(self) -> bool:
        return self._step(self._undo, self._redo, "undo")

    def redo(self) -> bool:
        return self._step(self._redo, self._undo, "redo")

    def _on_remap(self, collection: str, old_id: str, new_id: str) -> None:
        self._undo[:] = [snapshot.remapped(collection, old_id, new_id) for snapshot in self._undo]
        self._redo[:] = [snapshot.remapped(collection, old_id, new_id) for snapshot in self._redo]
